"""Shared cache of mzML/mzXML files.

Converted spectra files are cached below
``<cache root>/<ToolName_Version>/<YYYY_Q>/<Dataset>.<ext>.gz`` with a
``.hashcheck`` sidecar next to each file. A cache hit is only trusted after
the sidecar check passes; files found below the dataset directory (offline
conversions) have no sidecar and are used as is.
"""

from __future__ import annotations

import enum
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path

from retrieval_core.candidates import shared_results_folders
from retrieval_core.cloud_index import is_cloud_path
from retrieval_core.copy_engine import STORAGE_PATH_INFO_FILE_SUFFIX, CopyEngine
from retrieval_core.exceptions import ConfigurationError
from retrieval_core.params import (
    JOB_PARAM_DATASET_ARCHIVE_PATH,
    JOB_PARAM_DATASET_STORAGE_PATH,
    JOB_PARAM_INPUT_FOLDER_NAME,
    JOB_PARAM_MSXML_CACHE_FOLDER_PATH,
    JOB_PARAM_OUTPUT_FOLDER_NAME,
    JOB_PARAM_SHARED_RESULTS_FOLDERS,
    JOB_PARAM_STEP,
    JOB_PARAMETERS_SECTION,
    STEP_PARAMETERS_SECTION,
    JobParams,
    get_dataset_name,
)
from retrieval_core.resolver import DOT_MZML_EXTENSION, DOT_MZXML_EXTENSION, Resolver
from retrieval_core.sidecar import evict_stale_copy, sidecar_path_for, validate_file_vs_sidecar
from retrieval_core.stability import stable_api
from retrieval_core.utils.paths import matches

logger = logging.getLogger(__name__)

DOT_GZ_EXTENSION = ".gz"
MSXML_GEN_PREFIX = "MSXML_Gen"
RECHECK_INTERVAL_DAYS = 1

_TOOL_NAME_VERSION = re.compile(r"^(?P<tool>.+\d+_\d+)_\d+$")
_YEAR_QUARTER = re.compile(r"^[0-9]{4}_0*[1-4]$")


class MsxmlType(enum.Enum):
    MZML = "mzML"
    MZXML = "mzXML"

    @property
    def extension(self) -> str:
        return DOT_MZML_EXTENSION if self is MsxmlType.MZML else DOT_MZXML_EXTENSION

    @classmethod
    def from_name(cls, name: str) -> MsxmlType:
        """``"mzxml"`` (any case, with or without a dot) means mzXML; anything else mzML."""
        return cls.MZXML if name.lstrip(".").lower() == "mzxml" else cls.MZML


@dataclass
class MsxmlCacheLookup:
    """Outcome of a cache lookup.

    ``source_path`` may be set even when ``found`` is False: it then names
    the cached file that failed validation.
    """

    found: bool
    source_path: Path | None = None
    sidecar_path: Path | None = None
    message: str = ""
    missing_from_cache: bool = False

    def __bool__(self) -> bool:
        return self.found


def get_msxml_tool_name_version_folder(folder_name: str) -> str:
    """Strip the dataset (or data package) ID from ``ToolName_Version_ID``.

    ``MSXML_Gen_1_120_275966`` becomes ``MSXML_Gen_1_120``.

    Raises:
        ValueError: If the name is not in the expected form
    """
    match = _TOOL_NAME_VERSION.match(folder_name)
    if not match:
        raise ValueError(
            f"Directory name is not in the expected form of ToolName_Version_DatasetID: {folder_name}"
        )
    return match.group("tool")


def get_dataset_year_quarter(directory_path: str) -> str:
    """Return the last ``YYYY_Q`` component of a storage path ("" if none).

    ``2014_1``, ``2014_01`` and ``2014_4`` are all valid.
    """
    if not directory_path:
        return ""
    parts = re.split(r"[\\/]+", directory_path)
    for part in reversed(parts):
        if _YEAR_QUARTER.match(part):
            return part
    return ""


def get_msxml_cache_folder_path(cache_root: str | Path, params: JobParams, tool_name_version_folder: str = "") -> Path:
    """Cache directory for the job's dataset: ``<root>/<ToolName_Version>/<YYYY_Q>``.

    When ``tool_name_version_folder`` is empty it is derived from the
    job's output folder name.

    Raises:
        ConfigurationError: If the job parameters do not allow building the path
    """
    if not tool_name_version_folder:
        output_folder = params.get_job_parameter(JOB_PARAM_OUTPUT_FOLDER_NAME, "")
        if not output_folder:
            raise ConfigurationError(
                "OutputFolderName is empty; cannot construct MSXmlCache path", parameter=JOB_PARAM_OUTPUT_FOLDER_NAME
            )
        try:
            tool_name_version_folder = get_msxml_tool_name_version_folder(output_folder)
        except ValueError as exc:
            raise ConfigurationError(
                f"{exc}; cannot construct MSXmlCache path", parameter=JOB_PARAM_OUTPUT_FOLDER_NAME
            ) from exc

    storage_path = params.get_param(JOB_PARAMETERS_SECTION, JOB_PARAM_DATASET_STORAGE_PATH) or params.get_param(
        JOB_PARAMETERS_SECTION, JOB_PARAM_DATASET_ARCHIVE_PATH
    )
    if not storage_path:
        raise ConfigurationError(
            "Job parameters do not contain DatasetStoragePath or DatasetArchivePath; cannot construct MSXmlCache path",
            parameter=JOB_PARAM_DATASET_STORAGE_PATH,
        )

    year_quarter = get_dataset_year_quarter(storage_path)
    if not year_quarter:
        raise ConfigurationError(
            f"Unable to extract the dataset Year_Quarter code from {storage_path}; cannot construct MSXmlCache path",
            parameter=JOB_PARAM_DATASET_STORAGE_PATH,
        )
    return Path(cache_root) / tool_name_version_folder / year_quarter


def _newest(paths: list[Path]) -> Path:
    return max(paths, key=lambda item: item.stat().st_mtime)


def _files_named(directory: Path, name: str, recursive: bool = False) -> list[Path]:
    try:
        entries = directory.rglob("*") if recursive else directory.iterdir()
        return [entry for entry in entries if entry.is_file() and entry.name.lower() == name.lower()]
    except OSError:
        return []


@stable_api
class MsxmlCache:
    """Finds and retrieves a job's mzML/mzXML file from the shared cache."""

    def __init__(
        self,
        params: JobParams,
        cache_root: str | Path,
        work_dir: Path,
        copy_engine: CopyEngine,
        resolver: Resolver | None = None,
        *,
        debug_level: int = 1,
    ) -> None:
        self.params = params
        self.cache_root = str(cache_root or "")
        self.work_dir = Path(work_dir)
        self.copy_engine = copy_engine
        self.resolver = resolver
        self.debug_level = debug_level

    @property
    def dataset_name(self) -> str:
        return get_dataset_name(self.params)

    def _cache_root(self) -> str:
        return self.cache_root or self.params.get_param(JOB_PARAM_MSXML_CACHE_FOLDER_PATH)

    def _dataset_directory(self) -> Path | None:
        if self.resolver is None:
            return None
        result = self.resolver.find_valid_directory(max_attempts=1, log_not_found=False)
        if not result.found or is_cloud_path(result.path):
            return None
        return Path(result.path)

    def _find_in_directory(self, directory: Path, msxml_type: MsxmlType) -> Path | None:
        gzipped_name = self.dataset_name + msxml_type.extension + DOT_GZ_EXTENSION
        found = _files_named(directory, gzipped_name)
        if not found and msxml_type is MsxmlType.MZXML:
            # Older .mzXML files were not gzipped
            found = _files_named(directory, self.dataset_name + DOT_MZXML_EXTENSION)
        return _newest(found) if found else None

    def _find_in_dataset_directory(self, msxml_type: MsxmlType, folder_pattern: str) -> list[Path]:
        dataset_dir = self._dataset_directory()
        if dataset_dir is None:
            return []
        found: list[Path] = []
        try:
            subdirectories = sorted(entry for entry in dataset_dir.iterdir() if entry.is_dir())
        except OSError:
            return []
        for subdirectory in subdirectories:
            if not matches(subdirectory.name, folder_pattern):
                continue
            match = self._find_in_directory(subdirectory, msxml_type)
            if match is not None:
                found.append(match)
        return found

    def _tool_folders_to_search(self, extension: str, check_output_folder: bool) -> tuple[list[str], str]:
        folders: list[str] = []
        input_folder = self.params.get_job_parameter(JOB_PARAM_INPUT_FOLDER_NAME, "")
        step = self.params.get_job_parameter(STEP_PARAMETERS_SECTION, JOB_PARAM_STEP, 0)
        shared = shared_results_folders(self.params)

        if input_folder:
            # Later steps only have an MSXML_Gen input folder when the previous step made the file
            if step <= 2 or input_folder.lower().startswith(MSXML_GEN_PREFIX.lower()):
                folders.append(input_folder)
            elif not shared:
                return [], (
                    f"Input directory {input_folder} (defined by job parameter {JOB_PARAM_INPUT_FOLDER_NAME}) "
                    f"does not start with {MSXML_GEN_PREFIX}; cannot retrieve the {extension} file"
                )

        for name in shared:
            if name not in folders:
                folders.append(name)

        if not folders:
            if check_output_folder:
                output_folder = self.params.get_job_parameter(JOB_PARAM_OUTPUT_FOLDER_NAME, "")
                if output_folder:
                    folders.append(output_folder)
                described = f"{JOB_PARAM_INPUT_FOLDER_NAME}, {JOB_PARAM_OUTPUT_FOLDER_NAME}, and {JOB_PARAM_SHARED_RESULTS_FOLDERS}"
            else:
                described = f"{JOB_PARAM_INPUT_FOLDER_NAME} and {JOB_PARAM_SHARED_RESULTS_FOLDERS}"
            if not folders:
                return [], f"Job parameters {described} are empty; cannot retrieve the {extension} file"

        return folders, ""

    def find_msxml_file_for_job_in_cache(
        self,
        extension: str | MsxmlType,
        can_regenerate: bool = False,
        check_output_folder: bool = False,
        warn_not_found: bool = True,
    ) -> MsxmlCacheLookup:
        """Find ``<Dataset><ext>`` or ``<Dataset><ext>.gz`` in the cache.

        Tool folders come from the job's input folder (only for steps 1 and 2
        or MSXML_Gen folders) plus the shared results folders. When none of
        the cache directories exist, ``<tool>*`` folders below the dataset
        directory are searched and the newest match is used without a
        sidecar check.

        Raises:
            ConfigurationError: If no cache root is configured
        """
        if isinstance(extension, MsxmlType):
            extension = extension.extension
        if not extension:
            return MsxmlCacheLookup(False, message="File extension is empty; should be .mzML or .mzXML")
        if not extension.startswith("."):
            extension = "." + extension

        cache_root = self._cache_root()
        if not cache_root or not cache_root.strip():
            raise ConfigurationError(
                f"Manager parameter {JOB_PARAM_MSXML_CACHE_FOLDER_PATH} is not defined",
                parameter=JOB_PARAM_MSXML_CACHE_FOLDER_PATH,
            )
        if not os.path.isdir(cache_root):
            return MsxmlCacheLookup(False, message=f"MSXmlCache directory not found: {cache_root}")

        folders, message = self._tool_folders_to_search(extension, check_output_folder)
        if not folders:
            return MsxmlCacheLookup(False, message=message)

        tool_folders: list[str] = []
        for folder in folders:
            try:
                tool_folders.append(get_msxml_tool_name_version_folder(folder))
            except ValueError:
                message = (
                    f"Directory in job param {JOB_PARAM_INPUT_FOLDER_NAME} or {JOB_PARAM_SHARED_RESULTS_FOLDERS} "
                    f"is not in the expected form of ToolName_Version_DatasetID ({folder}); "
                    f"will not try to find the {extension} file in this directory"
                )
                logger.debug("%s", message)
        if not tool_folders:
            return MsxmlCacheLookup(
                False,
                message=message
                or f"Directories in job params {JOB_PARAM_INPUT_FOLDER_NAME} and {JOB_PARAM_SHARED_RESULTS_FOLDERS} "
                "were not in the expected form of ToolName_Version_DatasetID",
            )

        file_name = self.dataset_name + extension
        source_file: Path | None = None
        source_dir: Path | None = None
        missing_dirs: list[str] = []

        for tool_folder in tool_folders:
            try:
                candidate_dir = get_msxml_cache_folder_path(cache_root, self.params, tool_folder)
            except ConfigurationError as exc:
                message = exc.message
                continue
            if not candidate_dir.is_dir():
                missing_dirs.append(str(candidate_dir))
                continue
            source_dir = candidate_dir
            for name in (file_name, file_name + DOT_GZ_EXTENSION):
                if (candidate_dir / name).is_file():
                    source_file = candidate_dir / name
                    break
            if source_file is not None:
                break

        use_sidecar = source_dir is not None
        if source_dir is None:
            # Offline conversions are stored below the dataset directory
            msxml_type = MsxmlType.from_name(extension)
            found: list[Path] = []
            for tool_folder in tool_folders:
                found.extend(self._find_in_dataset_directory(msxml_type, tool_folder + "*"))
            if not found:
                if missing_dirs:
                    message = f"Cache directory does not exist ({' or '.join(missing_dirs)})"
                return MsxmlCacheLookup(False, message=message, missing_from_cache=True)
            source_file = _newest(found)
            source_dir = source_file.parent

        if source_file is None:
            return MsxmlCacheLookup(
                False,
                message=f"msXML file not found in the source directory(s): {','.join(tool_folders)}",
                missing_from_cache=True,
            )

        if not use_sidecar:
            return MsxmlCacheLookup(True, source_path=source_file)

        sidecar = sidecar_path_for(source_file)
        valid, reason = validate_file_vs_sidecar(
            source_file, sidecar, check_date=True, compute_hash=False, recheck_interval_days=RECHECK_INTERVAL_DAYS
        )
        if not valid:
            message = f"Cached {extension} file does not match the hashcheck file in {source_dir}"
            message += "; will re-generate it" if can_regenerate else "; you must manually re-create it"
            if warn_not_found:
                logger.warning("%s: %s", message, reason)
            return MsxmlCacheLookup(False, source_path=source_file, sidecar_path=sidecar, message=message, missing_from_cache=True)

        return MsxmlCacheLookup(True, source_path=source_file, sidecar_path=sidecar)

    def retrieve_cached_msxml_file(
        self,
        extension: str | MsxmlType,
        unzip: bool,
        can_regenerate: bool = False,
        check_output_folder: bool = False,
        warn_not_found: bool = True,
    ) -> MsxmlCacheLookup:
        """Copy the job's cached mzML/mzXML file into the working directory.

        A gzipped copy and its uncompressed name are registered as result
        files to skip; with ``unzip`` the local copy is decompressed.
        """
        lookup = self.find_msxml_file_for_job_in_cache(extension, can_regenerate, check_output_folder, warn_not_found)
        if not lookup.found or lookup.source_path is None:
            return lookup

        source = lookup.source_path
        if not self.copy_engine.copy_file_to_work_dir(source.name, source.parent, self.work_dir, logging.ERROR):
            return MsxmlCacheLookup(False, source_path=source, message=f"Error copying {source}")
        logger.info("Copied %s to %s", source, self.work_dir)

        if source.suffix.lower() != DOT_GZ_EXTENSION:
            return lookup

        self.params.add_result_file_to_skip(source.name)
        self.params.add_result_file_to_skip(source.name[: -len(DOT_GZ_EXTENSION)])
        if not unzip:
            return lookup

        result = self.copy_engine.codec.gunzip_file(self.work_dir / source.name)
        if not result:
            return MsxmlCacheLookup(False, source_path=source, message=result.message or f"Error unzipping {source.name}")
        return lookup

    def retrieve_cached_mzml_file(self, unzip: bool = True) -> MsxmlCacheLookup:
        return self.retrieve_cached_msxml_file(MsxmlType.MZML, unzip)

    def retrieve_cached_mzxml_file(self, unzip: bool = True) -> MsxmlCacheLookup:
        return self.retrieve_cached_msxml_file(MsxmlType.MZXML, unzip)

    def find_newest_msxml_file_in_cache(self, msxml_type: MsxmlType | str) -> MsxmlCacheLookup:
        """Find the newest cached spectra file for the dataset, whichever tool made it.

        With a known year-quarter only ``<tool>/<YYYY_Q>`` directories are
        checked; otherwise the whole cache is searched. ``MSXML*`` folders
        below the dataset directory are the fallback.
        """
        if isinstance(msxml_type, str):
            msxml_type = MsxmlType.from_name(msxml_type)

        cache_root = self._cache_root()
        if not cache_root or not cache_root.strip():
            logger.warning("Manager parameter %s is not defined", JOB_PARAM_MSXML_CACHE_FOLDER_PATH)
            return MsxmlCacheLookup(False, message=f"{JOB_PARAM_MSXML_CACHE_FOLDER_PATH} is not defined")
        cache_dir = Path(cache_root)
        if not cache_dir.is_dir():
            logger.warning("Warning: MsXML cache directory not found: %s", cache_root)
            return MsxmlCacheLookup(False, message=f"MsXML cache directory not found: {cache_root}")

        storage_path = self.params.get_param(JOB_PARAMETERS_SECTION, JOB_PARAM_DATASET_STORAGE_PATH)
        if not storage_path:
            storage_path = self.params.get_param(JOB_PARAMETERS_SECTION, JOB_PARAM_DATASET_ARCHIVE_PATH)
        year_quarter = get_dataset_year_quarter(storage_path)

        gzipped_name = self.dataset_name + msxml_type.extension + DOT_GZ_EXTENSION
        found: list[Path] = []
        if not year_quarter:
            found = _files_named(cache_dir, gzipped_name, recursive=True)
            if not found and msxml_type is MsxmlType.MZXML:
                found = _files_named(cache_dir, self.dataset_name + DOT_MZXML_EXTENSION, recursive=True)
        else:
            for tool_dir in sorted(entry for entry in cache_dir.iterdir() if entry.is_dir()):
                quarter_dir = tool_dir / year_quarter
                if not quarter_dir.is_dir():
                    continue
                match = self._find_in_directory(quarter_dir, msxml_type)
                if match is not None:
                    found.append(match)

        use_sidecar = bool(found)
        if not found:
            found = self._find_in_dataset_directory(msxml_type, "MSXML*")
        if not found:
            return MsxmlCacheLookup(False, message=f"No {msxml_type.value} file found for {self.dataset_name}")

        newest = _newest(found)
        if not use_sidecar:
            return MsxmlCacheLookup(True, source_path=newest)

        sidecar = sidecar_path_for(newest)
        valid, reason = validate_file_vs_sidecar(
            newest, sidecar, check_date=True, compute_hash=False, recheck_interval_days=RECHECK_INTERVAL_DAYS
        )
        if not valid:
            logger.warning("Warning: %s", reason)
            return MsxmlCacheLookup(False, source_path=newest, sidecar_path=sidecar, message=reason)
        return MsxmlCacheLookup(True, source_path=newest, sidecar_path=sidecar)

    def retrieve_msxml_file_using_source_file(
        self,
        storage_path_info_only: bool,
        source_path: str | Path,
        sidecar_path: str | Path | None = None,
    ) -> bool:
        """Copy (or reference) a known mzML/mzXML file and verify it against its sidecar.

        In reference-only mode the remote file is compared without hashing.
        After a copy the local file is hashed; on a mismatch the local copy
        and the remote file are deleted so the file gets regenerated.
        """
        source_text = str(source_path)
        if is_cloud_path(source_text):
            if self.copy_engine.cloud is None:
                logger.error("Cloud archive path given but no cloud index is configured: %s", source_text)
                return False
            return self.copy_engine.cloud.add_file_to_download_queue(source_text)

        source = Path(source_text)
        if source.is_file() and self.copy_engine.copy_file_to_work_dir(
            source.name, source.parent, self.work_dir, logging.ERROR, storage_path_info_only
        ):
            if sidecar_path and Path(sidecar_path).is_file():
                return self._verify_retrieved_file(source, Path(sidecar_path), storage_path_info_only)
            return True

        if self.debug_level >= 1:
            logger.info("MzXML (or MzML) file not found; will need to generate it: %s", source.name)
        return False

    def _verify_retrieved_file(self, source: Path, sidecar: Path, storage_path_info_only: bool) -> bool:
        if storage_path_info_only:
            target = source
            compute_hash = False
        else:
            target = self.work_dir / source.name
            compute_hash = True

        valid, reason = validate_file_vs_sidecar(target, sidecar, check_date=True, compute_hash=compute_hash)
        if valid:
            return True

        logger.error("MzXML/MzML file validation error: %s", reason)
        if storage_path_info_only:
            pointer = self.work_dir / (source.name + STORAGE_PATH_INFO_FILE_SUFFIX)
            try:
                pointer.unlink(missing_ok=True)
            except OSError as exc:
                logger.warning("Unable to delete %s: %s", pointer, exc)
        else:
            # Hash mismatch: the remote copy is stale too
            evict_stale_copy(target, source)
        return False
