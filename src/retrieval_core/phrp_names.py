"""File names of peptide-search result (PHRP) artifacts.

The synopsis file name depends on the search tool; every companion file is
``<synopsis name without .txt>_<suffix>.txt``.
"""

from __future__ import annotations

import enum
import re

MSGFPLUS_ZIP_SUFFIX = "_msgfplus.zip"
MSGFPLUS_MZID_GZ_SUFFIX = "_msgfplus.mzid.gz"
PEPXML_ZIP_SUFFIX = "_pepXML.zip"

_SPLIT_FASTA_MZID = re.compile(r"_msgfplus_Part\d+\.mzid\.gz$", re.IGNORECASE)
_MSGFPLUS = re.compile("msgfplus", re.IGNORECASE)


class PeptideHitResultType(enum.Enum):
    UNKNOWN = ""
    SEQUEST = "_syn.txt"
    XTANDEM = "_xt.txt"
    MSGFPLUS = "_msgfplus_syn.txt"
    MSALIGN = "_msalign_syn.txt"
    MODA = "_moda_syn.txt"
    MODPLUS = "_modp_syn.txt"
    MSPATHFINDER = "_mspath_syn.txt"
    TOPPIC = "_toppic_syn.txt"
    MAXQUANT = "_maxq_syn.txt"
    MSFRAGGER = "_msfragger_syn.txt"
    DIANN = "_diann_syn.txt"

    @property
    def synopsis_suffix(self) -> str:
        return self.value

    @classmethod
    def from_result_type(cls, result_type: str) -> PeptideHitResultType:
        """Map a job's result type (``MSG_Peptide_Hit``, ``MSGFPlus``, ...) to a member."""
        key = (result_type or "").strip().lower()
        if key.endswith("_peptide_hit"):
            key = key[: -len("_peptide_hit")]
        return _RESULT_TYPE_ALIASES.get(key, cls.UNKNOWN)


_RESULT_TYPE_ALIASES = {
    "peptide_hit": PeptideHitResultType.SEQUEST,
    "sequest": PeptideHitResultType.SEQUEST,
    "xt": PeptideHitResultType.XTANDEM,
    "xtandem": PeptideHitResultType.XTANDEM,
    "msg": PeptideHitResultType.MSGFPLUS,
    "msgfdb": PeptideHitResultType.MSGFPLUS,
    "msgfplus": PeptideHitResultType.MSGFPLUS,
    "msa": PeptideHitResultType.MSALIGN,
    "msalign": PeptideHitResultType.MSALIGN,
    "moda": PeptideHitResultType.MODA,
    "modplus": PeptideHitResultType.MODPLUS,
    "msp": PeptideHitResultType.MSPATHFINDER,
    "mspathfinder": PeptideHitResultType.MSPATHFINDER,
    "tpc": PeptideHitResultType.TOPPIC,
    "toppic": PeptideHitResultType.TOPPIC,
    "mxq": PeptideHitResultType.MAXQUANT,
    "maxquant": PeptideHitResultType.MAXQUANT,
    "msf": PeptideHitResultType.MSFRAGGER,
    "msfragger": PeptideHitResultType.MSFRAGGER,
    "diann": PeptideHitResultType.DIANN,
}


def synopsis_file_name(result_type: PeptideHitResultType | str, dataset: str) -> str:
    if isinstance(result_type, str):
        result_type = PeptideHitResultType.from_result_type(result_type)
    if result_type is PeptideHitResultType.UNKNOWN:
        return ""
    return dataset + result_type.synopsis_suffix


def _companion(synopsis_name: str, suffix: str) -> str:
    if not synopsis_name:
        return ""
    base = synopsis_name[:-4] if synopsis_name.lower().endswith(".txt") else synopsis_name
    return f"{base}_{suffix}.txt"


def result_to_seq_map_file_name(synopsis_name: str) -> str:
    return _companion(synopsis_name, "ResultToSeqMap")


def seq_info_file_name(synopsis_name: str) -> str:
    return _companion(synopsis_name, "SeqInfo")


def seq_to_protein_map_file_name(synopsis_name: str) -> str:
    return _companion(synopsis_name, "SeqToProteinMap")


def mod_summary_file_name(synopsis_name: str) -> str:
    return _companion(synopsis_name, "ModSummary")


def msgf_file_name(synopsis_name: str) -> str:
    return _companion(synopsis_name, "MSGF")


def phrp_files_for_job(result_type: PeptideHitResultType | str, dataset: str) -> list[tuple[str, bool]]:
    """PHRP files to retrieve for one job as ``(name, required)`` pairs, synopsis first."""
    synopsis = synopsis_file_name(result_type, dataset)
    if not synopsis:
        return []
    return [
        (synopsis, True),
        (result_to_seq_map_file_name(synopsis), True),
        (seq_info_file_name(synopsis), True),
        (seq_to_protein_map_file_name(synopsis), True),
        (mod_summary_file_name(synopsis), True),
        (msgf_file_name(synopsis), False),
    ]


def legacy_msgfdb_name(file_name: str) -> str:
    """Name a file had before MS-GF+ results were renamed from ``msgfdb``.

    ``Dataset_msgfplus_syn.txt`` becomes ``Dataset_msgfdb_syn.txt``; names
    without ``msgfplus`` are returned unchanged.
    """
    return _MSGFPLUS.sub("msgfdb", file_name)


def mzid_file_candidates(dataset: str, split_fasta_result_id: int = 0) -> tuple[str, str]:
    """Return the ``(zip name, gzip name)`` an MS-GF+ .mzid file may be stored as.

    Results were stored as ``_msgfplus.zip`` until 2014 and as
    ``_msgfplus.mzid.gz`` since; split-FASTA searches add ``_Part<n>``.
    """
    if split_fasta_result_id > 0:
        base = f"{dataset}_msgfplus_Part{split_fasta_result_id}"
        return base + ".zip", base + ".mzid.gz"
    return dataset + MSGFPLUS_ZIP_SUFFIX, dataset + MSGFPLUS_MZID_GZ_SUFFIX


def is_mzid_file(file_name_or_path: str) -> tuple[bool, bool]:
    """Return ``(is_mzid, is_split_fasta)`` for a file name or path."""
    lower = file_name_or_path.lower()
    if lower.endswith(MSGFPLUS_MZID_GZ_SUFFIX) or lower.endswith(MSGFPLUS_ZIP_SUFFIX):
        return True, False
    if _SPLIT_FASTA_MZID.search(file_name_or_path):
        return True, True
    return False, False
