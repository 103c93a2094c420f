"""Tests for retrieval_core.phrp_names module."""

from __future__ import annotations

import pytest

from retrieval_core.phrp_names import (
    PeptideHitResultType,
    is_mzid_file,
    legacy_msgfdb_name,
    mzid_file_candidates,
    phrp_files_for_job,
    synopsis_file_name,
)


class TestPeptideHitResultType:
    """Test PeptideHitResultType.from_result_type."""

    @pytest.mark.parametrize(
        ("result_type", "expected"),
        [
            ("MSG_Peptide_Hit", PeptideHitResultType.MSGFPLUS),
            ("Peptide_Hit", PeptideHitResultType.SEQUEST),
            ("XT_Peptide_Hit", PeptideHitResultType.XTANDEM),
            ("TPC_Peptide_Hit", PeptideHitResultType.TOPPIC),
            ("msfragger", PeptideHitResultType.MSFRAGGER),
            ("SIC", PeptideHitResultType.UNKNOWN),
            ("", PeptideHitResultType.UNKNOWN),
        ],
    )
    def test_from_result_type(self, result_type: str, expected: PeptideHitResultType) -> None:
        assert PeptideHitResultType.from_result_type(result_type) is expected


class TestFileNames:
    """Test the PHRP file name helpers."""

    def test_synopsis_file_name(self) -> None:
        assert synopsis_file_name("MSG_Peptide_Hit", "QC_Shew_01") == "QC_Shew_01_msgfplus_syn.txt"
        assert synopsis_file_name(PeptideHitResultType.SEQUEST, "QC_Shew_01") == "QC_Shew_01_syn.txt"
        assert synopsis_file_name("SIC", "QC_Shew_01") == ""

    def test_phrp_files_for_job(self) -> None:
        files = phrp_files_for_job("MSG_Peptide_Hit", "QC")
        assert files == [
            ("QC_msgfplus_syn.txt", True),
            ("QC_msgfplus_syn_ResultToSeqMap.txt", True),
            ("QC_msgfplus_syn_SeqInfo.txt", True),
            ("QC_msgfplus_syn_SeqToProteinMap.txt", True),
            ("QC_msgfplus_syn_ModSummary.txt", True),
            ("QC_msgfplus_syn_MSGF.txt", False),
        ]

    def test_unknown_result_type_has_no_files(self) -> None:
        assert phrp_files_for_job("SIC", "QC") == []

    def test_legacy_msgfdb_name(self) -> None:
        assert legacy_msgfdb_name("QC_msgfplus_syn.txt") == "QC_msgfdb_syn.txt"
        assert legacy_msgfdb_name("QC_MSGFPlus_fht.txt") == "QC_msgfdb_fht.txt"
        assert legacy_msgfdb_name("QC_xt.txt") == "QC_xt.txt"


class TestMzidNames:
    """Test the .mzid file name helpers."""

    def test_candidates(self) -> None:
        assert mzid_file_candidates("QC") == ("QC_msgfplus.zip", "QC_msgfplus.mzid.gz")
        assert mzid_file_candidates("QC", 3) == ("QC_msgfplus_Part3.zip", "QC_msgfplus_Part3.mzid.gz")

    @pytest.mark.parametrize(
        ("name", "expected"),
        [
            ("QC_msgfplus.mzid.gz", (True, False)),
            ("/work/QC_MSGFPLUS.ZIP", (True, False)),
            ("QC_msgfplus_Part2.mzid.gz", (True, True)),
            ("QC_msgfplus_syn.txt", (False, False)),
        ],
    )
    def test_is_mzid_file(self, name: str, expected: tuple[bool, bool]) -> None:
        assert is_mzid_file(name) == expected
