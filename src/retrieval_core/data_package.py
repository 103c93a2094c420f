"""Batch retrieval for the jobs and datasets of a data package.

An aggregation job works on the results of many analysis jobs. For each
job the handler temporarily swaps the job's dataset and folder info into
the shared ``JobParams`` (restored when the job is done, also on failure),
retrieves the job's peptide-search result files and records where the
dataset's instrument data lives.

When two jobs for the same dataset produce identically named files, the
second job's copies are staged in ``FileRename`` and moved into the working
directory as ``Job<job>_<name>``.
"""

from __future__ import annotations

import gzip
import logging
import os
import re
import shlex
import shutil
import xml.etree.ElementTree as ET
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any

from retrieval_core.archive_codec import ArchiveCodec
from retrieval_core.cloud_index import extract_file_id, is_cloud_path
from retrieval_core.config import read_yaml
from retrieval_core.copy_engine import parent_directory
from retrieval_core.file_search import CDTA_ZIPPED_EXTENSION, FileSearch
from retrieval_core.logging_config import LogContext
from retrieval_core.msxml_cache import DOT_GZ_EXTENSION, MsxmlType
from retrieval_core.params import (
    JOB_PARAM_DATASET_ARCHIVE_PATH,
    JOB_PARAM_DATASET_FOLDER_NAME,
    JOB_PARAM_DATASET_ID,
    JOB_PARAM_DATASET_NAME,
    JOB_PARAM_DATASET_STORAGE_PATH,
    JOB_PARAM_DICTIONARY_DATASET_FILE_PATHS,
    JOB_PARAM_INPUT_FOLDER_NAME,
    JOB_PARAM_INSTRUMENT_DATA_PURGED,
    JOB_PARAM_JOB,
    JOB_PARAM_MSXML_OUTPUT_TYPE,
    JOB_PARAM_RAW_DATA_TYPE,
    JOB_PARAM_SHARED_RESULTS_FOLDERS,
    JOB_PARAM_TOOL_NAME,
    JOB_PARAMETERS_SECTION,
    STEP_PARAMETERS_SECTION,
    JobParams,
)
from retrieval_core.phrp_names import (
    MSGFPLUS_MZID_GZ_SUFFIX,
    MSGFPLUS_ZIP_SUFFIX,
    PEPXML_ZIP_SUFFIX,
    PeptideHitResultType,
    is_mzid_file,
    legacy_msgfdb_name,
    mzid_file_candidates,
    phrp_files_for_job,
    synopsis_file_name,
)
from retrieval_core.probe import matching_files
from retrieval_core.resolver import (
    DOT_MZML_EXTENSION,
    DOT_MZXML_EXTENSION,
    DOT_RAW_EXTENSION,
    RAW_DATA_TYPE_DOT_RAW_FILES,
)
from retrieval_core.stability import stable_api
from retrieval_core.utils.io import read_first_line, read_tsv, write_text_atomic, write_tsv

logger = logging.getLogger(__name__)

DATA_PKG_JOB_METADATA_FILE = "DataPkgJobMetadata.txt"
JOB_INFO_FILE_PREFIX = "JobInfoFile_Job"
INSTRUMENT_DATA_SCRIPT = "RetrieveInstrumentData.sh"
FILE_RENAME_DIR = "FileRename"
CACHE_INFO_FILE_PATTERN = "*_CacheInfo.txt"
UNDEFINED_RESULTS_FOLDER = "Undefined_Directory"

_METADATA_COLUMNS = ("Job", "SearchUsedMzML")


# ----------------------------------------------------------------------
# Package contents
# ----------------------------------------------------------------------


@dataclass
class DataPackageDatasetInfo:
    dataset: str
    dataset_id: int
    dataset_folder_name: str = ""
    raw_data_type: str = ""
    server_storage_path: str = ""
    archive_storage_path: str = ""
    instrument_data_purged: bool = False
    is_directory_based: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DataPackageDatasetInfo:
        return cls(
            dataset=str(data["dataset"]),
            dataset_id=int(data["dataset_id"]),
            dataset_folder_name=str(data.get("dataset_folder_name") or ""),
            raw_data_type=str(data.get("raw_data_type") or ""),
            server_storage_path=str(data.get("server_storage_path") or ""),
            archive_storage_path=str(data.get("archive_storage_path") or ""),
            instrument_data_purged=bool(data.get("instrument_data_purged", False)),
        )


@dataclass
class DataPackageJobInfo:
    """One analysis job in a data package."""

    job: int
    dataset: str
    dataset_id: int
    tool: str = ""
    result_type: str = ""
    dataset_folder_name: str = ""
    raw_data_type: str = ""
    results_folder_name: str = ""
    shared_results_folders: str = ""
    server_storage_path: str = ""
    archive_storage_path: str = ""
    instrument_data_purged: bool = False
    number_of_cloned_steps: int = 0

    @property
    def peptide_hit_result_type(self) -> PeptideHitResultType:
        return PeptideHitResultType.from_result_type(self.result_type)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DataPackageJobInfo:
        return cls(
            job=int(data["job"]),
            dataset=str(data["dataset"]),
            dataset_id=int(data["dataset_id"]),
            tool=str(data.get("tool") or ""),
            result_type=str(data.get("result_type") or ""),
            dataset_folder_name=str(data.get("dataset_folder_name") or ""),
            raw_data_type=str(data.get("raw_data_type") or ""),
            results_folder_name=str(data.get("results_folder_name") or ""),
            shared_results_folders=str(data.get("shared_results_folders") or ""),
            server_storage_path=str(data.get("server_storage_path") or ""),
            archive_storage_path=str(data.get("archive_storage_path") or ""),
            instrument_data_purged=bool(data.get("instrument_data_purged", False)),
            number_of_cloned_steps=int(data.get("number_of_cloned_steps") or 0),
        )

    @classmethod
    def pseudo_job(cls, dataset: DataPackageDatasetInfo) -> DataPackageJobInfo:
        """Job stand-in for a dataset that has no jobs in the package."""
        return cls(
            job=0,
            dataset=dataset.dataset,
            dataset_id=dataset.dataset_id,
            dataset_folder_name=dataset.dataset_folder_name,
            raw_data_type=dataset.raw_data_type,
            results_folder_name=UNDEFINED_RESULTS_FOLDER,
            server_storage_path=dataset.server_storage_path,
            archive_storage_path=dataset.archive_storage_path,
            instrument_data_purged=dataset.instrument_data_purged,
        )

    def dataset_info(self) -> DataPackageDatasetInfo:
        return DataPackageDatasetInfo(
            dataset=self.dataset,
            dataset_id=self.dataset_id,
            dataset_folder_name=self.dataset_folder_name,
            raw_data_type=self.raw_data_type,
            server_storage_path=self.server_storage_path,
            archive_storage_path=self.archive_storage_path,
            instrument_data_purged=self.instrument_data_purged,
        )


@dataclass
class DataPackageRetrievalOptions:
    """What to retrieve for each job.

    Attributes:
        create_job_path_files: Write ``JobInfoFile_Job<job>.txt`` files with
            the remote paths instead of copying result files
        retrieve_msxml_file: Also retrieve each dataset's mzML/mzXML file
            (or its instrument file when no mzML/mzXML exists)
        retrieve_dta_files: Retrieve the spectra file each search used
        retrieve_mzid_files: Retrieve MS-GF+ .mzid files
        retrieve_pepxml_files: Retrieve ``_pepXML.zip`` files
        retrieve_phrp_files: Retrieve the synopsis file and its companions
        assume_instrument_data_unpurged: Look for instrument data on primary
            storage even when the dataset is flagged as purged
        remote_transfer_directory_path: Where ``DataPkgJobMetadata.txt`` is cached
    """

    create_job_path_files: bool = False
    retrieve_msxml_file: bool = False
    retrieve_dta_files: bool = False
    retrieve_mzid_files: bool = False
    retrieve_pepxml_files: bool = False
    retrieve_phrp_files: bool = False
    assume_instrument_data_unpurged: bool = False
    remote_transfer_directory_path: str = ""


@dataclass
class InstrumentDataToRetrieve:
    """An existing mzML/mzXML file for a job's dataset; empty paths mean use the instrument file."""

    job: DataPackageJobInfo
    msxml_path: str = ""
    sidecar_path: str = ""


@dataclass
class DataPackage:
    data_package_id: int = 0
    data_package_path: str = ""
    jobs: list[DataPackageJobInfo] = field(default_factory=list)
    datasets: list[DataPackageDatasetInfo] = field(default_factory=list)


def load_data_package(path: Path) -> DataPackage:
    """Load a data package definition from YAML.

    Datasets referenced by jobs but not listed under ``datasets`` are added
    from the job entries.

    Raises:
        ConfigValidationError: If the file does not match the data_package schema
    """
    data = read_yaml(Path(path), "data_package") or {}
    jobs = [DataPackageJobInfo.from_dict(item) for item in data.get("jobs") or []]
    datasets = [DataPackageDatasetInfo.from_dict(item) for item in data.get("datasets") or []]

    known_ids = {item.dataset_id for item in datasets}
    for job in jobs:
        if job.dataset_id not in known_ids:
            datasets.append(job.dataset_info())
            known_ids.add(job.dataset_id)

    return DataPackage(
        data_package_id=int(data.get("data_package_id") or 0),
        data_package_path=str(data.get("data_package_path") or ""),
        jobs=jobs,
        datasets=datasets,
    )


def load_data_package_jobs(path: Path) -> list[DataPackageJobInfo]:
    return load_data_package(path).jobs


def job_info_file_path(job: int, work_dir: str | Path) -> Path:
    return Path(work_dir) / f"{JOB_INFO_FILE_PREFIX}{job}.txt"


def load_cached_job_metadata(metadata_path: Path) -> dict[int, bool]:
    """Read ``DataPkgJobMetadata.txt``: job number to whether its search used an mzML file."""
    metadata: dict[int, bool] = {}
    if not metadata_path.is_file():
        return metadata
    try:
        rows = read_tsv(metadata_path)
    except OSError as exc:
        logger.error("Error reading %s: %s", metadata_path, exc)
        return metadata

    if rows and any(column not in rows[0] for column in _METADATA_COLUMNS):
        logger.warning("%s is missing one of the columns %s", metadata_path, ", ".join(_METADATA_COLUMNS))
        return metadata

    for row in rows:
        try:
            job = int(row["Job"])
        except (TypeError, ValueError):
            continue
        metadata[job] = (row.get("SearchUsedMzML") or "").strip().lower() == "true"
    return metadata


def save_cached_job_metadata(metadata_path: Path, metadata: dict[int, bool]) -> None:
    try:
        write_tsv(metadata_path, _METADATA_COLUMNS, ((job, str(used)) for job, used in metadata.items()))
    except OSError as exc:
        logger.error("Error writing %s: %s", metadata_path, exc)


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def search_used_mzml(mzid_path: str | Path, codec: ArchiveCodec, work_dir: str | Path) -> bool:
    """Return True if an MS-GF+ .mzid file names an .mzML (or .mzML.gz) file as its SpectraData.

    ``_msgfplus.zip`` files are unzipped into ``work_dir`` for inspection and
    the unzipped copy is deleted afterwards.
    """
    mzid_file = Path(mzid_path)
    if not mzid_file.is_file():
        logger.error(
            "Unable to examine the mzid file to determine whether MS-GF+ searched a .mzML file; file not found: %s",
            mzid_file,
        )
        return False

    local_file = mzid_file
    delete_local = False
    if mzid_file.suffix.lower() == ".zip":
        result = codec.unzip_file(mzid_file, Path(work_dir))
        if not result or not result.value:
            logger.error("Error unzipping %s", mzid_file)
            return False
        local_file = Path(result.value[0].path)
        delete_local = True

    try:
        opener = gzip.open if local_file.suffix.lower() == DOT_GZ_EXTENSION else open
        with opener(local_file, "rb") as stream:
            for _event, element in ET.iterparse(stream, events=("start",)):
                if _local_name(element.tag) != "SpectraData":
                    continue
                location = element.get("location")
                if location is None:
                    logger.error(".mzid file has node SpectraData but it does not have attribute location: %s", local_file.name)
                    return False
                spectra_file = re.split(r"[\\/]", location)[-1].lower()
                return spectra_file.endswith(DOT_MZML_EXTENSION.lower()) or spectra_file.endswith(
                    (DOT_MZML_EXTENSION + DOT_GZ_EXTENSION).lower()
                )
        logger.error(".mzid file did not have node SpectraData: %s", local_file.name)
        return False
    except (ET.ParseError, OSError, EOFError) as exc:
        logger.error("Error examining %s to determine whether MS-GF+ searched a .mzML file: %s", local_file.name, exc)
        return False
    finally:
        if delete_local:
            local_file.unlink(missing_ok=True)


def _retrieval_command(dataset: str, raw_path: str, is_directory: bool) -> str:
    """Shell line that copies instrument data into the current directory unless it is already there."""
    _, clean_path = extract_file_id(raw_path)
    source_name = PurePosixPath(clean_path.replace("\\", "/")).name

    if is_directory:
        target_name = source_name
    else:
        # Match the dataset name's case; lowercase extension
        target_name = dataset + os.path.splitext(source_name)[1].lower()

    if is_cloud_path(raw_path):
        return f"# cloud archive: {dataset} {target_name}"

    copy = "cp -r" if is_directory else "cp"
    return f"[ -e {shlex.quote(target_name)} ] || {copy} {shlex.quote(raw_path)} ./{shlex.quote(target_name)}"


# ----------------------------------------------------------------------
# Handler
# ----------------------------------------------------------------------


@stable_api
class DataPackageFileHandler:
    """Retrieves the result files and instrument data for a data package."""

    def __init__(
        self,
        params: JobParams,
        file_search: FileSearch,
        jobs: Iterable[DataPackageJobInfo] = (),
        datasets: Iterable[DataPackageDatasetInfo] = (),
        *,
        debug_level: int = 1,
    ) -> None:
        self.params = params
        self.file_search = file_search
        self.jobs = list(jobs)
        self.datasets = list(datasets)
        self.debug_level = debug_level

    @classmethod
    def from_package(cls, params: JobParams, file_search: FileSearch, package: DataPackage, **kwargs: Any) -> DataPackageFileHandler:
        return cls(params, file_search, package.jobs, package.datasets, **kwargs)

    @property
    def work_dir(self) -> Path:
        return self.file_search.work_dir

    @property
    def codec(self) -> ArchiveCodec:
        return self.file_search.copy_engine.codec

    @property
    def msxml_cache(self):
        return self.file_search.msxml_cache

    # ------------------------------------------------------------------
    # Per-job parameter context
    # ------------------------------------------------------------------

    def job_overrides(self, job: DataPackageJobInfo) -> dict[str, dict[str, Any]]:
        """Parameters to swap in while working on ``job``, keyed by section."""
        return {
            STEP_PARAMETERS_SECTION: {
                JOB_PARAM_JOB: job.job,
                JOB_PARAM_TOOL_NAME: job.tool,
                JOB_PARAM_INPUT_FOLDER_NAME: job.results_folder_name,
                JOB_PARAM_SHARED_RESULTS_FOLDERS: job.shared_results_folders,
            },
            JOB_PARAMETERS_SECTION: {
                JOB_PARAM_DATASET_NAME: job.dataset,
                JOB_PARAM_DATASET_ID: job.dataset_id,
                JOB_PARAM_DATASET_FOLDER_NAME: job.dataset_folder_name or job.dataset,
                JOB_PARAM_DATASET_STORAGE_PATH: job.server_storage_path,
                JOB_PARAM_DATASET_ARCHIVE_PATH: job.archive_storage_path,
                JOB_PARAM_INSTRUMENT_DATA_PURGED: int(job.instrument_data_purged),
                JOB_PARAM_RAW_DATA_TYPE: job.raw_data_type,
            },
        }

    @contextmanager
    def job_context(self, job: DataPackageJobInfo) -> Iterator[None]:
        overrides = self.job_overrides(job)
        with self.params.override(STEP_PARAMETERS_SECTION, **overrides[STEP_PARAMETERS_SECTION]):
            with self.params.override(JOB_PARAMETERS_SECTION, **overrides[JOB_PARAMETERS_SECTION]):
                with LogContext(dataset=job.dataset, job=job.job):
                    yield

    @contextmanager
    def dataset_context(self, dataset: DataPackageDatasetInfo) -> Iterator[None]:
        """Swap in a dataset's storage info; the step parameters (input and shared folders) are kept."""
        overrides = self.job_overrides(DataPackageJobInfo.pseudo_job(dataset))
        with self.params.override(JOB_PARAMETERS_SECTION, **overrides[JOB_PARAMETERS_SECTION]):
            with LogContext(dataset=dataset.dataset):
                yield

    # ------------------------------------------------------------------
    # Peptide-hit jobs
    # ------------------------------------------------------------------

    def retrieve_data_package_peptide_hit_job_phrp_files(self, options: DataPackageRetrievalOptions) -> bool:
        """Retrieve the PHRP files of every peptide-hit job in the package.

        Also writes ``RetrieveInstrumentData.sh`` with commands that copy
        each dataset's instrument data, and stores the dataset paths in the
        packed job parameter ``PackedParam_DatasetFilePaths``.

        Raises:
            InvalidPathError: If a ``_CacheInfo.txt`` file names a relative mzML path
        """
        if not self.datasets and not self.jobs:
            logger.error("Did not find any datasets associated with this job's data package")
            return False

        peptide_hit_jobs = [job for job in self.jobs if job.peptide_hit_result_type is not PeptideHitResultType.UNKNOWN]
        additional_jobs = [job for job in self.jobs if job.peptide_hit_result_type is PeptideHitResultType.UNKNOWN]
        for job in additional_jobs:
            if job.result_type.lower().endswith("peptide_hit"):
                logger.warning("PeptideHit ResultType not recognized for job %s: %s", job.job, job.result_type)

        # Start with an empty download queue
        self.file_search.process_download_queue()

        metadata_path = None
        cached_metadata: dict[int, bool] = {}
        if options.remote_transfer_directory_path.strip():
            metadata_path = Path(options.remote_transfer_directory_path) / DATA_PKG_JOB_METADATA_FILE
            cached_metadata = load_cached_job_metadata(metadata_path)
        metadata_count_at_start = len(cached_metadata)

        commands: dict[int, str] = {}
        dataset_raw_file_paths: dict[str, str] = {}
        instrument_data: list[InstrumentDataToRetrieve] = []

        work_items = [(job, True) for job in peptide_hit_jobs] + [(job, False) for job in additional_jobs]
        for job, is_peptide_hit in work_items:
            with self.job_context(job):
                if is_peptide_hit and not self._process_one_peptide_hit_job(options, cached_metadata, job):
                    return False
                if job.dataset_id not in commands and not self._retrieve_data_package_instrument_file(
                    job, options, commands, instrument_data, dataset_raw_file_paths
                ):
                    return False

        for dataset in self.datasets:
            if dataset.dataset_id in commands:
                continue
            job = DataPackageJobInfo.pseudo_job(dataset)
            with self.job_context(job):
                if not self._retrieve_data_package_instrument_file(
                    job, options, commands, instrument_data, dataset_raw_file_paths
                ):
                    return False

        if metadata_path is not None and cached_metadata and len(cached_metadata) != metadata_count_at_start:
            save_cached_job_metadata(metadata_path, cached_metadata)

        if not commands:
            logger.error("Did not find any datasets associated with this job's data package")
            return False

        self._write_instrument_data_script(commands.values())
        self.params.store_packed_dictionary(dataset_raw_file_paths, JOB_PARAM_DICTIONARY_DATASET_FILE_PATHS)

        if options.retrieve_msxml_file:
            return self.retrieve_data_package_msxml_files(instrument_data, options)
        return True

    def _write_instrument_data_script(self, commands: Iterable[str]) -> None:
        script_path = self.work_dir / INSTRUMENT_DATA_SCRIPT
        write_text_atomic(script_path, "#!/bin/sh\n" + "".join(f"{line}\n" for line in commands))
        script_path.chmod(0o755)

    def _process_one_peptide_hit_job(
        self,
        options: DataPackageRetrievalOptions,
        cached_metadata: dict[int, bool],
        job: DataPackageJobInfo,
    ) -> bool:
        result_type = job.peptide_hit_result_type
        synopsis_name = synopsis_file_name(result_type, job.dataset)

        # File name -> required
        files_to_get: dict[str, bool] = {}
        if options.retrieve_phrp_files:
            files_to_get.update(phrp_files_for_job(result_type, job.dataset))

        zip_candidates: list[str] = []
        gzip_candidates: list[str] = []
        if options.retrieve_mzid_files and result_type is PeptideHitResultType.MSGFPLUS:
            # Main .mzid names come before the split-FASTA ones
            for split_id in range(job.number_of_cloned_steps + 1):
                zip_name, gzip_name = mzid_file_candidates(job.dataset, split_id)
                zip_candidates.append(zip_name)
                gzip_candidates.append(gzip_name)
                files_to_get.setdefault(gzip_name, False)
                files_to_get.setdefault(zip_name, False)

        zipped_pepxml = ""
        if (options.retrieve_pepxml_files and result_type is not PeptideHitResultType.UNKNOWN) or (
            result_type is PeptideHitResultType.SEQUEST
        ):
            zipped_pepxml = job.dataset + PEPXML_ZIP_SUFFIX
            files_to_get.setdefault(zipped_pepxml, False)

        # A synopsis file already here means another job for this dataset was processed
        prefix_required = not options.create_job_path_files and (self.work_dir / synopsis_name).is_file()
        if prefix_required:
            local_dir = self.work_dir / FILE_RENAME_DIR
            local_dir.mkdir(parents=True, exist_ok=True)
        else:
            local_dir = self.work_dir

        ok, found_files, pending_renames = self._process_peptide_hit_job_files(
            options, local_dir, prefix_required, files_to_get
        )
        if not ok:
            return False
        if not self.file_search.process_download_queue(local_dir):
            return False

        prefix = f"Job{job.job}_"
        for file_name in pending_renames:
            new_path = self._rename_duplicate_phrp_file(local_dir / file_name, prefix, job.job)
            if new_path is None:
                return False
            old_path = str(local_dir / file_name)
            if old_path in found_files:
                found_files.remove(old_path)
            found_files.append(str(new_path))

        if options.retrieve_dta_files:
            candidate_mzid = {name.lower() for name in [*zip_candidates, *gzip_candidates]}
            if not self._find_and_process_peak_data_file(options, candidate_mzid, cached_metadata, job, local_dir, found_files):
                return False

        if options.create_job_path_files:
            return self._write_job_info_file(job, found_files)
        return self._unzip_job_files(
            job, local_dir, prefix if prefix_required else "", found_files, zip_candidates, gzip_candidates, zipped_pepxml
        )

    def _process_peptide_hit_job_files(
        self,
        options: DataPackageRetrievalOptions,
        local_dir: Path,
        prefix_required: bool,
        files_to_get: dict[str, bool],
    ) -> tuple[bool, list[str], list[str]]:
        """Copy (or locate) one job's files.

        Returns:
            (success, found file paths, names of files that need a job prefix)
        """
        resolver = self.file_search.resolver
        copy_engine = self.file_search.copy_engine
        found_files: list[str] = []
        pending_renames: list[str] = []
        source_dir = ""
        mzid_found = False

        for file_name, required in files_to_get.items():
            is_mzid, split_fasta = is_mzid_file(file_name)
            if mzid_found and split_fasta:
                continue

            # Files share a directory; cloud hits carry a per-file id so they are looked up one by one
            if not source_dir or is_cloud_path(source_dir):
                resolution = resolver.find_data_file(file_name, log_not_found=False)
                if not resolution.found:
                    alternative = legacy_msgfdb_name(file_name)
                    if alternative != file_name:
                        resolution = resolver.find_data_file(alternative, log_not_found=False)
                source_dir = resolution.path if resolution.found else ""

            log_level = logging.ERROR if required else logging.DEBUG
            if not source_dir:
                if required:
                    logger.error("Required PHRP file not found: %s", file_name)
                    return False, found_files, pending_renames
                continue

            if options.create_job_path_files and not is_cloud_path(source_dir):
                source_path = Path(source_dir) / file_name
                alternative_path = Path(source_dir) / legacy_msgfdb_name(file_name)
                if source_path.is_file():
                    found_files.append(str(source_path))
                elif alternative_path.is_file():
                    found_files.append(str(alternative_path))
                elif required:
                    message = f"Required PHRP file not found: {source_path}"
                    if file_name.lower().endswith((MSGFPLUS_ZIP_SUFFIX, MSGFPLUS_MZID_GZ_SUFFIX)):
                        message += "; confirm the job used MS-GF+ and not MSGFDB"
                    logger.warning("%s", message)
                    return False, found_files, pending_renames
                else:
                    continue
                if is_mzid and not split_fasta:
                    mzid_found = True
                continue

            retrieved = file_name
            copied = copy_engine.copy_file_to_work_dir(file_name, source_dir, local_dir, log_level)
            if not copied:
                alternative = legacy_msgfdb_name(file_name)
                if alternative != file_name:
                    copied = copy_engine.copy_file_to_work_dir(alternative, source_dir, local_dir, log_level)
                    if copied:
                        retrieved = alternative

            if not copied:
                if required:
                    logger.error("copy_file_to_work_dir returned false for %s using directory %s", file_name, source_dir)
                    return False, found_files, pending_renames
                continue

            logger.info("Copied %s from directory %s", retrieved, source_dir)
            found_files.append(str(local_dir / retrieved))
            if is_mzid and not split_fasta:
                mzid_found = True
            if prefix_required:
                pending_renames.append(retrieved)
            else:
                self.params.add_result_file_to_skip(retrieved)

        return True, found_files, pending_renames

    def _rename_duplicate_phrp_file(self, source: Path, prefix: str, job: int) -> Path | None:
        target = self.work_dir / (prefix + source.name)
        try:
            source.replace(target)
        except OSError as exc:
            logger.error(
                "Error renaming PHRP file %s for job %s (data package has multiple jobs for the same dataset): %s",
                source.name,
                job,
                exc,
            )
            return None
        self.params.add_result_file_to_skip(target.name)
        return target

    def _find_and_process_peak_data_file(
        self,
        options: DataPackageRetrievalOptions,
        candidate_mzid: set[str],
        cached_metadata: dict[int, bool],
        job: DataPackageJobInfo,
        local_dir: Path,
        found_files: list[str],
    ) -> bool:
        """Retrieve the spectra file the job's search used: its mzML file or the concatenated DTA file."""
        mzid_to_inspect = ""
        for found in found_files:
            name = Path(found).name.lower()
            if any(name.endswith(candidate) for candidate in candidate_mzid):
                mzid_to_inspect = found
                break

        used_mzml = False
        if mzid_to_inspect:
            if job.job in cached_metadata:
                used_mzml = cached_metadata[job.job]
            else:
                used_mzml = search_used_mzml(mzid_to_inspect, self.codec, self.work_dir)
                cached_metadata[job.job] = used_mzml

        if used_mzml:
            remote_mzml = self._find_mzml_for_job(job)
            if not remote_mzml:
                return True
            if options.create_job_path_files and not is_cloud_path(remote_mzml):
                if remote_mzml not in found_files:
                    found_files.append(remote_mzml)
                return True

            _, clean_path = extract_file_id(remote_mzml)
            file_name = PurePosixPath(clean_path.replace("\\", "/")).name
            if (local_dir / file_name).is_file():
                return True
            source_dir = remote_mzml if is_cloud_path(remote_mzml) else str(parent_directory(remote_mzml))
            if self.file_search.copy_engine.copy_file_to_work_dir(file_name, source_dir, local_dir, logging.ERROR):
                logger.info("Copied %s from directory %s", file_name, source_dir)
                found_files.append(str(local_dir / file_name))
            return True

        if options.create_job_path_files:
            resolution = self.file_search.find_cdta_file()
            if not resolution.found:
                logger.error("%s", resolution.reason)
                return False
            found_files.append(resolution.path)
            return True

        if not self.file_search.retrieve_dta_files():
            return False
        # Usually named Dataset_dta.zip; the exact name is not critical
        found_files.append(str(self.work_dir / (job.dataset + CDTA_ZIPPED_EXTENSION)))
        return True

    def _find_mzml_for_job(self, job: DataPackageJobInfo) -> str:
        """Read the remote mzML path from the ``_CacheInfo.txt`` file in the job's input folders."""
        file_search = self.file_search
        resolution = file_search.resolver.find_data_file(CACHE_INFO_FILE_PATTERN, log_not_found=False)
        if not resolution.found:
            logger.warning("No %s file found for job %s; cannot determine the mzML file it used", CACHE_INFO_FILE_PATTERN, job.job)
            return ""

        if is_cloud_path(resolution.path):
            cloud = file_search.cloud
            file_id, _ = extract_file_id(resolution.path)
            descriptor = next((item for item in cloud.all_found if item.file_id == file_id), None) if cloud else None
            if descriptor is None or not cloud.add_file_to_download_queue(descriptor):
                logger.error("Unable to queue the CacheInfo file found in the cloud archive: %s", resolution.path)
                return ""
            if not file_search.process_download_queue():
                return ""
            cache_info_name = descriptor.filename
            source_description = "the cloud archive"
        else:
            cache_info_files = matching_files(resolution.path, CACHE_INFO_FILE_PATTERN)
            if not cache_info_files:
                logger.error("Directory %s should have a _CacheInfo.txt file, but none was found", resolution.path)
                return ""
            cache_info_name = cache_info_files[0].name
            source_description = resolution.path
            if not file_search.copy_engine.copy_file_to_work_dir(cache_info_name, resolution.path, self.work_dir, logging.ERROR):
                return ""

        local_cache_info = self.work_dir / cache_info_name
        if not local_cache_info.is_file():
            logger.error("CacheInfo file not found in the working directory; should have been retrieved from %s", source_description)
            return ""

        remote_path = read_first_line(local_cache_info).strip()
        if remote_path:
            logger.info("Found remote mzML file for job %s: %s", job.job, remote_path)
        else:
            logger.error("CacheInfo file retrieved from %s was empty", source_description)
        local_cache_info.unlink(missing_ok=True)
        return remote_path

    def _move_to_job_subdirectory(self, job: DataPackageJobInfo, source: Path) -> Path:
        job_dir = self.work_dir / f"Job{job.job}"
        job_dir.mkdir(parents=True, exist_ok=True)
        target = job_dir / source.name
        shutil.move(str(source), str(target))
        return target

    def _write_job_info_file(self, job: DataPackageJobInfo, found_files: list[str]) -> bool:
        """Append the job's file paths to ``JobInfoFile_Job<job>.txt``.

        Files in the working directory move to ``Job<job>/`` so several jobs
        for one dataset can coexist; ``_msgfplus.zip`` files become ``.mzid.gz``.
        """
        work_dir = self.work_dir.resolve()
        lines: list[str] = []
        try:
            for file_path in found_files:
                current = Path(file_path)
                if current.name.lower().endswith(MSGFPLUS_ZIP_SUFFIX) and current.is_file():
                    gzipped = self._convert_mzid_zip(current, self.work_dir)
                    if gzipped is not None:
                        lines.append(str(self._move_to_job_subdirectory(job, gzipped)))
                        continue

                if current.is_file() and current.parent.resolve() == work_dir:
                    lines.append(str(self._move_to_job_subdirectory(job, current)))
                    continue

                lines.append(file_path)

            with job_info_file_path(job.job, self.work_dir).open("a", encoding="utf-8") as writer:
                for line in lines:
                    writer.write(line + "\n")
        except OSError as exc:
            logger.error("Error creating the job info file for job %s: %s", job.job, exc)
            return False
        return True

    def _convert_mzid_zip(self, zip_path: Path, staging_dir: Path) -> Path | None:
        """Unzip a ``_msgfplus.zip`` file and gzip the .mzid it holds; returns the .mzid.gz path."""
        unzipped = self.codec.unzip_file(zip_path, staging_dir)
        if not unzipped or not unzipped.value:
            logger.error("Error unzipping %s: %s", zip_path.name, unzipped.message or "archive is empty")
            return None
        gzipped = self.codec.gzip_file(Path(unzipped.value[0].path), delete_source=True)
        if not gzipped:
            logger.error("Error gzipping %s: %s", unzipped.value[0].name, gzipped.message)
            return None
        return Path(gzipped.value)

    def _unzip_job_files(
        self,
        job: DataPackageJobInfo,
        staging_dir: Path,
        prefix: str,
        found_files: list[str],
        zip_candidates: list[str],
        gzip_candidates: list[str],
        zipped_pepxml: str,
    ) -> bool:
        """Unzip the ``_pepXML.zip`` file and make sure the .mzid file is available as ``.mzid.gz``.

        With a job prefix, extracted files are produced in ``staging_dir``
        and moved into the working directory with the prefix added.
        """
        if zip_candidates or gzip_candidates:
            matched: Path | None = None
            for name in gzip_candidates:
                candidate = self.work_dir / (prefix + name)
                if candidate.is_file():
                    matched = candidate
                    break

            if matched is None:
                for name in zip_candidates:
                    candidate = self.work_dir / (prefix + name)
                    if not candidate.is_file():
                        continue
                    matched = self._convert_mzid_zip(candidate, staging_dir)
                    if matched is not None and prefix:
                        matched = self._rename_duplicate_phrp_file(matched, prefix, job.job)
                    break

            if matched is None:
                logger.error(
                    "Could not find either the _msgfplus.zip file or the _msgfplus.mzid.gz file for dataset %s", job.dataset
                )
                return False
            if str(matched) not in found_files:
                found_files.append(str(matched))

        if zipped_pepxml:
            zip_path = self.work_dir / (prefix + zipped_pepxml)
            if zip_path.is_file():
                result = self.codec.unzip_file(zip_path, staging_dir)
                if not result:
                    logger.error("Error unzipping %s: %s", zip_path.name, result.message)
                    return False
                for entry in result.value or []:
                    extracted = Path(entry.path)
                    if prefix:
                        renamed = self._rename_duplicate_phrp_file(extracted, prefix, job.job)
                        if renamed is None:
                            return False
                        extracted = renamed
                    found_files.append(str(extracted))
        return True

    # ------------------------------------------------------------------
    # Instrument data
    # ------------------------------------------------------------------

    def _find_existing_msxml_file(self, job: DataPackageJobInfo) -> InstrumentDataToRetrieve | None:
        """Look for the job's mzML file in the cache, then its mzXML file."""
        if self.msxml_cache is None:
            return None
        for msxml_type in (MsxmlType.MZML, MsxmlType.MZXML):
            lookup = self.msxml_cache.find_msxml_file_for_job_in_cache(
                msxml_type, can_regenerate=False, check_output_folder=True, warn_not_found=False
            )
            if lookup.found and lookup.source_path is not None:
                return InstrumentDataToRetrieve(job, str(lookup.source_path), str(lookup.sidecar_path or ""))
        return None

    def _retrieve_data_package_instrument_file(
        self,
        job: DataPackageJobInfo,
        options: DataPackageRetrievalOptions,
        commands: dict[int, str],
        instrument_data: list[InstrumentDataToRetrieve],
        dataset_raw_file_paths: dict[str, str],
    ) -> bool:
        """Record the retrieval command for a job's instrument data; nothing is copied here."""
        if options.retrieve_msxml_file:
            existing = self._find_existing_msxml_file(job)
            if existing is not None:
                instrument_data.append(existing)
            elif job.raw_data_type.lower() == RAW_DATA_TYPE_DOT_RAW_FILES:
                instrument_data.append(InstrumentDataToRetrieve(job))
            else:
                logger.error(
                    "mzML/mzXML file not found for dataset %s (job %s) and the dataset is not a .raw file, "
                    "so the missing mzML file cannot be created",
                    job.dataset,
                    job.job,
                )
                return False

        resolution, is_directory = self.file_search.resolver.find_dataset_file_or_directory(
            job.raw_data_type, assume_unpurged=options.assume_instrument_data_unpurged
        )
        if not resolution.found:
            return True

        commands[job.dataset_id] = _retrieval_command(job.dataset, resolution.path, is_directory)
        dataset_raw_file_paths[job.dataset] = resolution.path
        return True

    def retrieve_data_package_msxml_files(
        self,
        instrument_data: list[InstrumentDataToRetrieve],
        options: DataPackageRetrievalOptions,
    ) -> bool:
        """Retrieve (or reference) the mzML/mzXML file of each dataset, once per dataset.

        Datasets without a usable mzML/mzXML file get their instrument data
        instead, so the file can be generated.
        """
        for extension in (DOT_RAW_EXTENSION, DOT_MZXML_EXTENSION, DOT_MZML_EXTENSION, DOT_GZ_EXTENSION):
            self.params.add_result_file_extension_to_skip(extension)

        storage_path_info_only = options.create_job_path_files
        datasets_processed: set[str] = set()

        for item in instrument_data:
            if item.job.dataset in datasets_processed:
                continue
            with self.job_context(item.job):
                success = bool(item.msxml_path) and self.msxml_cache is not None
                if success:
                    success = self.msxml_cache.retrieve_msxml_file_using_source_file(
                        storage_path_info_only, item.msxml_path, item.sidecar_path or None
                    )

                if success:
                    if storage_path_info_only:
                        logger.info("msXML file found for job %s at %s", item.job.job, item.msxml_path)
                    else:
                        logger.info("Copied msXML file for job %s from %s", item.job.job, item.msxml_path)
                elif not self.file_search.retrieve_spectra(item.job.raw_data_type, storage_path_info_only, 1):
                    logger.error("Error occurred retrieving instrument data file for job %s", item.job.job)
                    return False
            datasets_processed.add(item.job.dataset)

        return True

    # ------------------------------------------------------------------
    # Datasets
    # ------------------------------------------------------------------

    def retrieve_data_package_dataset_files(
        self,
        retrieve_msxml_files: bool,
        skip_datasets_with_existing_mzml: bool = False,
    ) -> tuple[bool, dict[str, str]]:
        """Copy every dataset's instrument data (or mzML/mzXML file) into the working directory.

        Args:
            retrieve_msxml_files: Retrieve cached mzML/mzXML files instead of instrument data
            skip_datasets_with_existing_mzml: Leave out datasets that already
                have a cached mzML/mzXML file

        Returns:
            (success, dataset name -> local file or directory path)
        """
        dataset_raw_file_paths: dict[str, str] = {}
        if not self.datasets:
            logger.error("Did not find any datasets associated with this job's data package")
            return False, dataset_raw_file_paths

        self.file_search.process_download_queue()
        msxml_type = MsxmlType.from_name(self.params.get_job_parameter(JOB_PARAM_MSXML_OUTPUT_TYPE, ""))

        for dataset in self.datasets:
            with self.dataset_context(dataset):
                if skip_datasets_with_existing_mzml and self.msxml_cache is not None:
                    lookup = self.msxml_cache.find_msxml_file_for_job_in_cache(msxml_type, False, True, False)
                    if lookup.found and lookup.source_path is not None:
                        logger.info(
                            "Skipping dataset %s since an existing %s file was found in %s",
                            dataset.dataset,
                            msxml_type.value,
                            lookup.source_path.parent,
                        )
                        continue
                    if lookup.message:
                        if retrieve_msxml_files:
                            logger.warning(
                                "Error looking for the %s file for dataset %s: %s", msxml_type.value, dataset.dataset, lookup.message
                            )
                        else:
                            logger.info(
                                "%s file not found for dataset %s; will copy the instrument file locally",
                                msxml_type.value,
                                dataset.dataset,
                            )

                if retrieve_msxml_files:
                    success = self._retrieve_dataset_msxml_file(dataset_raw_file_paths, dataset, msxml_type)
                else:
                    success = self._retrieve_dataset_file(dataset_raw_file_paths, dataset)
            if not success:
                return False, dataset_raw_file_paths

        return True, dataset_raw_file_paths

    def _retrieve_dataset_file(self, dataset_raw_file_paths: dict[str, str], dataset: DataPackageDatasetInfo) -> bool:
        resolution, is_directory = self.file_search.resolver.find_dataset_file_or_directory(dataset.raw_data_type)
        if not resolution.found:
            logger.error("find_dataset_file_or_directory could not find the dataset file for dataset %s", dataset.dataset)
            return False

        if is_cloud_path(resolution.path):
            return self._download_dataset_file(dataset_raw_file_paths, dataset, resolution.path)

        source = Path(resolution.path)
        local_path = self.work_dir / source.name
        copy_engine = self.file_search.copy_engine
        if is_directory:
            success = copy_engine.copy_directory(source, local_path)
        else:
            success = copy_engine.copy_file_with_retry(source, local_path)
        if not success:
            logger.error("Error copying dataset file %s", source)
            return False

        dataset.is_directory_based = is_directory
        dataset_raw_file_paths[dataset.dataset] = str(local_path)
        return True

    def _download_dataset_file(
        self,
        dataset_raw_file_paths: dict[str, str],
        dataset: DataPackageDatasetInfo,
        cloud_path: str,
    ) -> bool:
        cloud = self.file_search.cloud
        if cloud is None or not cloud.add_file_to_download_queue(cloud_path):
            logger.error("Unable to queue the dataset file for download from the cloud archive: %s", cloud_path)
            return False
        if not self.file_search.process_download_queue():
            return False

        _, clean_path = extract_file_id(cloud_path)
        file_name = PurePosixPath(clean_path).name
        for local_path in cloud.downloaded_files:
            if Path(local_path).name.lower() != file_name.lower():
                continue
            if not Path(local_path).is_file():
                logger.error("Dataset file retrieved from the cloud archive not found in the working directory: %s", local_path)
                return False
            dataset.is_directory_based = False
            dataset_raw_file_paths[dataset.dataset] = local_path
            return True

        logger.error("Dataset file could not be retrieved from the cloud archive: %s", cloud_path)
        return False

    def _retrieve_dataset_msxml_file(
        self,
        dataset_raw_file_paths: dict[str, str],
        dataset: DataPackageDatasetInfo,
        msxml_type: MsxmlType,
    ) -> bool:
        if self.msxml_cache is None:
            logger.error("No mzML/mzXML cache is configured; cannot retrieve the %s file for dataset %s", msxml_type.value, dataset.dataset)
            return False
        lookup = self.msxml_cache.retrieve_cached_msxml_file(msxml_type, unzip=True)
        if not lookup.found:
            logger.error(
                "retrieve_cached_msxml_file could not find the %s file for dataset %s: %s",
                msxml_type.value,
                dataset.dataset,
                lookup.message,
            )
            return False

        dataset.is_directory_based = False
        dataset_raw_file_paths[dataset.dataset] = str(self.work_dir / (dataset.dataset + msxml_type.extension))
        return True
