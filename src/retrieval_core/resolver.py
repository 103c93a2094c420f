"""Find which tier holds a dataset's directory or a job's input file.

Candidates are probed strictly in order and the first hit wins. A miss is a
normal ``ResolutionResult`` whose path is the primary-storage location, so
callers always have a concrete place to name in their messages.
"""

from __future__ import annotations

import logging
import os

from retrieval_core.candidates import (
    Candidate,
    Tier,
    TierAvailability,
    build_data_file_candidates,
    build_directory_candidates,
    primary_storage_path,
)
from retrieval_core.cloud_index import add_file_to_cloud_directory_path, append_file_id
from retrieval_core.params import (
    JOB_PARAM_JOB,
    JOB_PARAM_RAW_DATA_TYPE,
    STEP_PARAMETERS_SECTION,
    ParameterStore,
    get_dataset_name,
)
from retrieval_core.probe import TierProbe, matching_directories
from retrieval_core.result import ResolutionResult
from retrieval_core.stability import stable_api
from retrieval_core.utils.paths import join

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3

DOT_RAW_EXTENSION = ".raw"
DOT_D_EXTENSION = ".d"
DOT_UIMF_EXTENSION = ".uimf"
DOT_WIFF_EXTENSION = ".wiff"
DOT_MZML_EXTENSION = ".mzML"
DOT_MZXML_EXTENSION = ".mzXML"
BRUKER_ZERO_SER_FOLDER = "0.ser"
ZIPPED_S_FOLDERS_PATTERN = "s*.zip"

RAW_DATA_TYPE_DOT_RAW_FILES = "dot_raw_files"
RAW_DATA_TYPE_DOT_D_FOLDERS = "dot_d_folders"
RAW_DATA_TYPE_DOT_RAW_FOLDER = "dot_raw_folder"
RAW_DATA_TYPE_DOT_UIMF_FILES = "dot_uimf_files"
RAW_DATA_TYPE_DOT_WIFF_FILES = "dot_wiff_files"
RAW_DATA_TYPE_DOT_MZML_FILES = "dot_mzml_files"
RAW_DATA_TYPE_DOT_MZXML_FILES = "dot_mzxml_files"
RAW_DATA_TYPE_ZIPPED_S_FOLDERS = "zipped_s_folders"

# Raw data types stored as a single Dataset.<ext> file
DATASET_FILE_EXTENSIONS = {
    RAW_DATA_TYPE_DOT_RAW_FILES: DOT_RAW_EXTENSION,
    RAW_DATA_TYPE_DOT_UIMF_FILES: DOT_UIMF_EXTENSION,
    RAW_DATA_TYPE_DOT_WIFF_FILES: DOT_WIFF_EXTENSION,
    RAW_DATA_TYPE_DOT_MZML_FILES: DOT_MZML_EXTENSION,
    RAW_DATA_TYPE_DOT_MZXML_FILES: DOT_MZXML_EXTENSION,
}

# Raw data types stored as a Dataset.<ext> directory
DATASET_DIRECTORY_EXTENSIONS = {
    RAW_DATA_TYPE_DOT_D_FOLDERS: DOT_D_EXTENSION,
    RAW_DATA_TYPE_DOT_RAW_FOLDER: DOT_RAW_EXTENSION,
}


@stable_api
class Resolver:
    """Resolves artifact locations for one job."""

    def __init__(
        self,
        params: ParameterStore,
        probe: TierProbe,
        availability: TierAvailability | None = None,
        *,
        debug_level: int = 1,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> None:
        self.params = params
        self.probe = probe
        self.availability = availability or TierAvailability()
        self.debug_level = debug_level
        self.max_attempts = max_attempts

    @property
    def dataset_name(self) -> str:
        return get_dataset_name(self.params)

    def _log_miss(self, message: str, exhaustive: bool) -> None:
        if exhaustive:
            logger.error("%s", message)
        else:
            logger.warning("%s", message)

    def find_valid_directory(
        self,
        dataset_name: str = "",
        file_pattern: str = "",
        folder_pattern: str = "",
        max_attempts: int | None = None,
        log_not_found: bool = True,
        retrieving_instrument_data: bool = False,
        assume_unpurged: bool = False,
    ) -> ResolutionResult:
        """Find the dataset directory holding a file and/or subfolder.

        Args:
            dataset_name: Dataset to look for (defaults to the job's dataset)
            file_pattern: File that must exist in the directory; may contain wildcards
            folder_pattern: Subfolder that must exist; may contain wildcards
            max_attempts: Existence-check attempts per filesystem candidate
                (defaults to the resolver's configured attempts)
            log_not_found: Log when no tier has the artifact
            retrieving_instrument_data: Skip primary storage when the job says
                the instrument data was purged
            assume_unpurged: Only check transfer and primary storage, once,
                without logging

        Returns:
            ResolutionResult; a cloud hit has the bare cloud path and the ids
            of every matching file
        """
        dataset_name = dataset_name or self.dataset_name
        if max_attempts is None:
            max_attempts = self.max_attempts
        if assume_unpurged:
            max_attempts = 1
            log_not_found = False

        candidates = build_directory_candidates(
            self.params,
            dataset_name,
            self.availability,
            retrieving_instrument_data=retrieving_instrument_data,
            assume_unpurged=assume_unpurged,
        )
        default_path = primary_storage_path(self.params, dataset_name)
        recurse_cloud = folder_pattern.lower() == "*" + DOT_D_EXTENSION

        miss_encountered = False
        for candidate in candidates:
            if self.debug_level > 3:
                logger.debug("Looking for directory %s", candidate.path)

            result = self.probe.probe(
                candidate, file_pattern, folder_pattern, max_attempts, log_not_found, recurse=recurse_cloud
            )
            if result:
                self._log_found(candidate.path, file_pattern, folder_pattern, miss_encountered)
                return ResolutionResult.hit(candidate.path, sorted(item.file_id for item in result.cloud_files))

            if not candidate.is_cloud and file_pattern and folder_pattern:
                # The file may sit one level down, inside the requested subfolder
                nested = join(candidate.path, folder_pattern)
                if self.probe.probe_directory(nested, file_pattern, "", max_attempts, False):
                    self._log_found(nested, file_pattern, "", miss_encountered)
                    return ResolutionResult.hit(nested)

            miss_encountered = True

        reason = "Could not find a valid dataset directory"
        if file_pattern:
            reason += f" containing file {file_pattern}"
        if log_not_found and self.debug_level >= 1:
            job = self.params.get_param(STEP_PARAMETERS_SECTION, JOB_PARAM_JOB) or self.params.get_param(JOB_PARAM_JOB)
            self._log_miss(f"{reason}, Job {job}, Dataset {dataset_name}", self._directory_search_exhaustive(candidates))
        return ResolutionResult.not_found(default_path, reason)

    def _directory_search_exhaustive(self, candidates: list[Candidate]) -> bool:
        if any(candidate.tier is Tier.ARCHIVE for candidate in candidates):
            return True
        return not self.availability.archive_available

    def _log_found(self, path: str, file_pattern: str, folder_pattern: str, after_miss: bool) -> None:
        if not (self.debug_level >= 4 or (self.debug_level >= 1 and after_miss)):
            return
        message = f"Valid dataset directory has been found: {path}"
        if file_pattern:
            message += f" (matched file {file_pattern})"
        if folder_pattern:
            message += f" (matched directory {folder_pattern})"
        logger.debug("%s", message)

    def find_data_file(
        self,
        file_pattern: str,
        search_archive: bool = True,
        log_not_found: bool = True,
    ) -> ResolutionResult:
        """Find the directory holding a job input file.

        Searches the input folder, then each shared results folder, then the
        dataset folder, in the transfer, primary, cloud and archive tiers.
        A cloud hit is returned as ``<cloud dir>@CloudFileID_<id>``.
        """
        default_path = primary_storage_path(self.params)
        if not file_pattern or not file_pattern.strip():
            logger.error("File name or pattern to find is an empty string")
            return ResolutionResult.not_found(default_path, "empty file name")

        candidates = build_data_file_candidates(self.params, self.availability, search_archive=search_archive)
        for candidate in candidates:
            result = self.probe.probe(candidate, file_pattern, "", max_attempts=1, log_missing=False)
            if not result:
                continue
            if self.debug_level >= 2:
                logger.debug("Data file found: %s in %s", file_pattern, candidate.path)
            if candidate.is_cloud:
                file_ids = [item.file_id for item in result.cloud_files]
                return ResolutionResult.hit(append_file_id(candidate.path, file_ids[0]), file_ids)
            return ResolutionResult.hit(candidate.path)

        exhaustive = search_archive or (
            not self.availability.archive_available and self.availability.cloud_search_disabled
        )
        if log_not_found:
            if exhaustive:
                logger.error("Data file not found: %s", file_pattern)
            else:
                logger.warning("Warning: Data file not found (did not check archive): %s", file_pattern)
        return ResolutionResult.not_found(default_path, f"Data file not found: {file_pattern}")

    def find_dataset_file(
        self,
        extension: str,
        max_attempts: int | None = None,
        assume_unpurged: bool = False,
    ) -> ResolutionResult:
        """Find ``<dataset><extension>``; the result path is the file itself."""
        if not extension.startswith("."):
            extension = "." + extension
        dataset_name = self.dataset_name
        file_name = dataset_name + extension

        result = self.find_valid_directory(
            dataset_name,
            file_name,
            max_attempts=max_attempts,
            retrieving_instrument_data=True,
            assume_unpurged=assume_unpurged,
        )
        if result.found and result.cloud_file_ids:
            if len(result.cloud_file_ids) > 1:
                logger.warning("Found more than one cloud file for %s; using the newest file ID", file_name)
            file_path = add_file_to_cloud_directory_path(result.path, file_name)
            return ResolutionResult.hit(append_file_id(file_path, result.cloud_file_ids[-1]), result.cloud_file_ids)

        file_path = join(result.path, file_name)
        if result.found:
            return ResolutionResult.hit(file_path)
        return ResolutionResult.not_found(file_path, result.reason)

    def find_dot_x_folder(self, extension: str, assume_unpurged: bool = False) -> ResolutionResult:
        """Find an instrument data directory such as ``Dataset.d`` below the dataset directory."""
        if not extension.startswith("."):
            extension = "." + extension
        pattern = "*" + extension
        result = self.find_valid_directory(
            self.dataset_name,
            folder_pattern=pattern,
            retrieving_instrument_data=True,
            assume_unpurged=assume_unpurged,
        )
        if not result.found or result.cloud_file_ids:
            return result
        subdirectories = matching_directories(result.path, pattern)
        if subdirectories:
            return ResolutionResult.hit(str(subdirectories[0]))
        return ResolutionResult.not_found(result.path, f"No {pattern} directory in {result.path}")

    def find_s_folders(self, assume_unpurged: bool = False) -> ResolutionResult:
        """Find the dataset directory's ``0.ser`` folder, or the directory holding zipped s-folders."""
        result = self.find_valid_directory(
            self.dataset_name,
            folder_pattern=BRUKER_ZERO_SER_FOLDER,
            log_not_found=False,
            retrieving_instrument_data=True,
            assume_unpurged=assume_unpurged,
        )
        if result.found:
            if result.cloud_file_ids:
                return result
            return ResolutionResult.hit(os.path.join(result.path, BRUKER_ZERO_SER_FOLDER))
        return self.find_valid_directory(
            self.dataset_name,
            ZIPPED_S_FOLDERS_PATTERN,
            retrieving_instrument_data=True,
            assume_unpurged=assume_unpurged,
        )

    def find_dataset_file_or_directory(
        self,
        raw_data_type: str = "",
        max_attempts: int | None = None,
        assume_unpurged: bool = False,
    ) -> tuple[ResolutionResult, bool]:
        """Locate the instrument data for the job's raw data type.

        Returns:
            (result, is_directory)
        """
        raw_data_type = (raw_data_type or self.params.get_param(JOB_PARAM_RAW_DATA_TYPE)).lower()

        if raw_data_type in DATASET_FILE_EXTENSIONS:
            extension = DATASET_FILE_EXTENSIONS[raw_data_type]
            return self.find_dataset_file(extension, max_attempts, assume_unpurged), False
        if raw_data_type in DATASET_DIRECTORY_EXTENSIONS:
            return self.find_dot_x_folder(DATASET_DIRECTORY_EXTENSIONS[raw_data_type], assume_unpurged), True
        if raw_data_type == RAW_DATA_TYPE_ZIPPED_S_FOLDERS:
            return self.find_s_folders(assume_unpurged), True

        logger.error("Unsupported raw data type: %s", raw_data_type or "<empty>")
        return ResolutionResult.not_found(primary_storage_path(self.params), f"Unsupported raw data type: {raw_data_type}"), False
