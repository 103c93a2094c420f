"""High-level retrieval operations for one job.

Each operation resolves an artifact with the ``Resolver`` and brings it
into the working directory with the ``CopyEngine``. Cloud hits are only
queued; call ``process_download_queue`` once the job's files have all been
requested. Every failure is logged once and reported as ``False`` (or an
empty result); nothing here raises for a missing file.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from pathlib import Path, PurePosixPath

from retrieval_core.cloud_index import (
    CloudArchiveIndex,
    add_file_to_cloud_directory_path,
    is_cloud_path,
    newest_transaction,
)
from retrieval_core.copy_engine import CopyEngine
from retrieval_core.msxml_cache import MsxmlCache
from retrieval_core.params import JOB_PARAM_JOB, STEP_PARAMETERS_SECTION, JobParams, get_dataset_name
from retrieval_core.phrp_names import legacy_msgfdb_name
from retrieval_core.probe import matching_files
from retrieval_core.resolver import (
    BRUKER_ZERO_SER_FOLDER,
    DATASET_FILE_EXTENSIONS,
    DOT_D_EXTENSION,
    DOT_RAW_EXTENSION,
    RAW_DATA_TYPE_DOT_D_FOLDERS,
    RAW_DATA_TYPE_DOT_RAW_FOLDER,
    RAW_DATA_TYPE_ZIPPED_S_FOLDERS,
    ZIPPED_S_FOLDERS_PATTERN,
    Resolver,
)
from retrieval_core.result import ResolutionResult
from retrieval_core.stability import stable_api

logger = logging.getLogger(__name__)

CDTA_EXTENSION = "_dta.txt"
CDTA_ZIPPED_EXTENSION = "_dta.zip"

SCAN_STATS_FILE_SUFFIX = "_ScanStats.txt"
SCAN_STATS_EX_FILE_SUFFIX = "_ScanStatsEx.txt"
SIC_STATS_FILE_SUFFIX = "_SICStats.txt"
REPORTER_IONS_FILE_SUFFIX = "_ReporterIons.txt"

# Bruker files not needed to read .d folders
DOT_D_FILES_TO_SKIP = ("analysis.baf", "analysis.tdf", "analysis.tdf_bin")


def _safe_to_ignore(file_name: str, non_critical_suffixes: Iterable[str]) -> bool:
    lower = file_name.lower()
    return any(lower.endswith(suffix.lower()) for suffix in non_critical_suffixes)


@stable_api
class FileSearch:
    """Retrieves a job's input files into its working directory."""

    def __init__(
        self,
        params: JobParams,
        resolver: Resolver,
        copy_engine: CopyEngine,
        work_dir: str | Path,
        msxml_cache: MsxmlCache | None = None,
        *,
        debug_level: int = 1,
    ) -> None:
        self.params = params
        self.resolver = resolver
        self.copy_engine = copy_engine
        self.work_dir = Path(work_dir)
        self.msxml_cache = msxml_cache
        self.debug_level = debug_level

    @property
    def dataset_name(self) -> str:
        return get_dataset_name(self.params)

    @property
    def cloud(self) -> CloudArchiveIndex | None:
        return self.copy_engine.cloud

    def _queue_cloud_path(self, path: str, unzip_required: bool = False) -> bool:
        if self.cloud is None:
            logger.error("Cloud archive path given but no cloud index is configured: %s", path)
            return False
        return self.cloud.add_file_to_download_queue(path, unzip_required)

    def _file_exists_in_work_dir(self, file_name: str) -> bool:
        return (self.work_dir / file_name).is_file()

    def process_download_queue(self, target_dir: str | Path | None = None) -> bool:
        """Download every queued cloud file (into the working directory by default)."""
        if self.cloud is None:
            return True
        result = self.cloud.process_download_queue(Path(target_dir) if target_dir else self.work_dir)
        if not result:
            logger.error("%s", result.message or "Error processing the cloud download queue")
            return False
        return True

    def gunzip_file(self, gzip_file_path: str | Path) -> bool:
        result = self.copy_engine.codec.gunzip_file(Path(gzip_file_path))
        if not result:
            logger.error("%s", result.message)
        return bool(result)

    # ------------------------------------------------------------------
    # Job result files
    # ------------------------------------------------------------------

    def find_and_retrieve_misc_files(
        self,
        file_name_or_pattern: str,
        unzip: bool = False,
        search_archive: bool = True,
        log_not_found: bool = True,
        log_remote_path: bool = False,
    ) -> bool:
        """Copy every file matching a name or wildcard from the job's result folders.

        Returns:
            True if at least one file was copied (or queued for download)
        """
        resolution = self.resolver.find_data_file(file_name_or_pattern, search_archive, log_not_found)
        if not resolution.found:
            return False

        if is_cloud_path(resolution.path):
            return self._queue_cloud_path(resolution.path, unzip)

        files_retrieved = 0
        for source in matching_files(resolution.path, file_name_or_pattern):
            if not self.copy_engine.copy_file_to_work_dir(source.name, resolution.path, self.work_dir, logging.ERROR):
                return False
            if log_remote_path:
                logger.info("Retrieved file %s", source)
            files_retrieved += 1

            if not unzip:
                continue
            logger.info("Unzipping file %s", source.name)
            result = self.copy_engine.codec.decompress(self.work_dir / source.name, self.work_dir)
            if not result:
                logger.error("Unable to unzip %s; keeping it for inspection", source.name)
                return False
            if self.debug_level >= 3:
                logger.info("Unzipped file %s", source.name)

        return files_retrieved > 0

    def find_and_retrieve_phrp_data_file(
        self,
        file_name: str,
        synopsis_name: str = "",
        add_to_skip: bool = True,
        log_not_found: bool = True,
        log_remote_path: bool = False,
    ) -> str | None:
        """Retrieve a PHRP file, falling back to its ``_msgfdb`` name.

        Returns:
            The name of the file actually retrieved, or None
        """
        retrieved = file_name
        success = self.find_and_retrieve_misc_files(file_name, False, True, log_not_found, log_remote_path)

        if not success and "msgfplus" in file_name.lower():
            # Only jobs whose synopsis still uses the old name have legacy companions
            if not synopsis_name or "msgfdb" in synopsis_name.lower():
                alternative = legacy_msgfdb_name(file_name)
                if alternative != file_name:
                    success = self.find_and_retrieve_misc_files(alternative, False, True, log_not_found)
                    if success:
                        retrieved = alternative

        if not success:
            return None
        if add_to_skip:
            self.params.add_result_file_to_skip(retrieved)
        return retrieved

    def retrieve_file(
        self,
        file_name: str,
        source_dir: str | Path,
        max_attempts: int = 3,
        log_level: int = logging.ERROR,
    ) -> bool:
        """Copy one file from a known directory to the working directory."""
        return self.copy_engine.copy_file_to_work_dir(
            file_name, source_dir, self.work_dir, log_level, False, max(max_attempts, 1)
        )

    # ------------------------------------------------------------------
    # Concatenated DTA files
    # ------------------------------------------------------------------

    def _dataset_directory(self) -> Path | None:
        result = self.resolver.find_valid_directory(max_attempts=1, log_not_found=False)
        if not result.found or is_cloud_path(result.path):
            return None
        return Path(result.path)

    def find_cdta_file(self) -> ResolutionResult:
        """Find the job's ``_dta.zip`` file, or the unzipped ``_dta.txt`` file.

        When neither is in the job's result folders, the dataset directory is
        searched recursively and a single ``_dta.zip`` match is accepted.
        """
        zipped_name = self.dataset_name + CDTA_ZIPPED_EXTENSION
        resolution = self.resolver.find_data_file(zipped_name)
        if resolution.found:
            if is_cloud_path(resolution.path):
                return ResolutionResult.hit(
                    add_file_to_cloud_directory_path(resolution.path, zipped_name), resolution.cloud_file_ids
                )
            return ResolutionResult.hit(str(Path(resolution.path) / zipped_name))

        unzipped_name = self.dataset_name + CDTA_EXTENSION
        resolution = self.resolver.find_data_file(unzipped_name)
        if resolution.found:
            logger.warning(
                "Warning: could not find the _dta.zip file, but was able to find %s in directory %s",
                unzipped_name,
                resolution.path,
            )
            if is_cloud_path(resolution.path):
                return resolution
            return ResolutionResult.hit(str(Path(resolution.path) / unzipped_name))

        # Older jobs may no longer know their shared results folder
        dataset_dir = self._dataset_directory()
        if dataset_dir is not None:
            found = sorted(
                item for item in dataset_dir.rglob("*") if item.is_file() and item.name.lower() == zipped_name.lower()
            )
            if len(found) == 1:
                if self.debug_level >= 2:
                    logger.debug("Data file found by searching the dataset directory: %s", found[0])
                return ResolutionResult.hit(str(found[0]))
            if len(found) > 1:
                job = self.params.get_job_parameter(STEP_PARAMETERS_SECTION, JOB_PARAM_JOB, 0)
                logger.warning(
                    "Multiple versions of file %s were found in the dataset directory; "
                    "unable to auto-determine which one to use for job %s: %s",
                    zipped_name,
                    job,
                    self.dataset_name,
                )

        return ResolutionResult.not_found(resolution.path, f"Could not find {zipped_name} using find_data_file")

    def retrieve_dta_files(self) -> bool:
        """Retrieve and unzip the concatenated DTA file.

        Files already in the working directory are not copied again; the
        ``_dta.zip`` file is deleted after unzipping.
        """
        target_zip = self.work_dir / (self.dataset_name + CDTA_ZIPPED_EXTENSION)
        target_txt = self.work_dir / (self.dataset_name + CDTA_EXTENSION)

        if not target_txt.is_file() and not target_zip.is_file():
            resolution = self.find_cdta_file()
            if not resolution.found:
                logger.error("%s", resolution.reason)
                return False

            if is_cloud_path(resolution.path):
                if not self._queue_cloud_path(resolution.path) or not self.process_download_queue():
                    return False
            else:
                source = Path(resolution.path)
                if not self.copy_engine.copy_file_to_work_dir(source.name, source.parent, self.work_dir, logging.ERROR):
                    if self.debug_level >= 2:
                        logger.info("copy_file_to_work_dir returned false for %s using directory %s", source.name, source.parent)
                    return False
                if self.debug_level >= 1:
                    logger.info("Copied %s from directory %s", source.name, source.parent)

        if target_txt.is_file():
            return True
        if not target_zip.is_file():
            logger.error("%s not found in the working directory; cannot unzip", target_zip.name)
            return False

        logger.info("Unzipping concatenated DTA file")
        result = self.copy_engine.codec.unzip_file(target_zip, self.work_dir)
        if not result:
            logger.error("Unable to unzip %s; keeping it for inspection", target_zip.name)
            return False
        if self.debug_level >= 1:
            logger.debug("Concatenated DTA file unzipped")

        try:
            target_zip.unlink()
        except OSError as exc:
            logger.error("Error deleting the _dta.zip file: %s", exc)
        return True

    # ------------------------------------------------------------------
    # Instrument data
    # ------------------------------------------------------------------

    def retrieve_dataset_file(
        self,
        extension: str,
        storage_path_info_only: bool = False,
        max_attempts: int | None = None,
    ) -> bool:
        resolution = self.resolver.find_dataset_file(extension, max_attempts)
        if not resolution.found:
            return False

        if is_cloud_path(resolution.path):
            return self._queue_cloud_path(resolution.path)

        source = Path(resolution.path)
        if not source.is_file():
            logger.error("Source dataset file not found: %s", source)
            return False
        if self.debug_level >= 1:
            logger.debug("Retrieving file %s", source)
        return self.copy_engine.copy_file_to_work_dir(
            source.name, source.parent, self.work_dir, logging.ERROR, storage_path_info_only
        )

    def retrieve_spectra(
        self,
        raw_data_type: str,
        storage_path_info_only: bool = False,
        max_attempts: int | None = None,
    ) -> bool:
        """Retrieve the instrument data file(s) for a raw data type.

        With ``storage_path_info_only`` a ``_StoragePathInfo.txt`` pointer is
        written instead of copying the data.
        """
        logger.info("Retrieving spectra file(s)")
        raw_data_type = (raw_data_type or "").lower()

        if raw_data_type == RAW_DATA_TYPE_DOT_D_FOLDERS:
            return self.retrieve_dot_x_folder(DOT_D_EXTENSION, storage_path_info_only, DOT_D_FILES_TO_SKIP)
        if raw_data_type == RAW_DATA_TYPE_DOT_RAW_FOLDER:
            return self.retrieve_dot_x_folder(DOT_RAW_EXTENSION, storage_path_info_only)
        if raw_data_type == RAW_DATA_TYPE_ZIPPED_S_FOLDERS:
            return self.retrieve_s_folders(storage_path_info_only, max_attempts)
        if raw_data_type in DATASET_FILE_EXTENSIONS:
            return self.retrieve_dataset_file(DATASET_FILE_EXTENSIONS[raw_data_type], storage_path_info_only, max_attempts)

        if not raw_data_type:
            logger.error("Invalid data type specified: <empty>")
        else:
            logger.error("Data type %s is not supported by retrieve_spectra", raw_data_type)
        return False

    def _retrieve_dot_x_folder_files(
        self,
        source_dir: Path,
        storage_path_info_only: bool,
        file_names_to_skip: Iterable[str],
    ) -> bool:
        if not source_dir.is_dir():
            logger.error("Source dataset directory not found: %s", source_dir)
            return False

        target_dir = self.work_dir / source_dir.name
        if storage_path_info_only:
            return self.copy_engine.create_storage_path_info_file(source_dir, target_dir)

        if self.debug_level >= 1:
            logger.info("Retrieving directory %s", source_dir)
        return self.copy_engine.copy_directory(source_dir, target_dir, file_names_to_skip)

    def retrieve_dot_x_folder(
        self,
        extension: str,
        storage_path_info_only: bool = False,
        file_names_to_skip: Iterable[str] = (),
    ) -> bool:
        """Retrieve an instrument data directory such as ``Dataset.d``.

        When the directory is only in the cloud archive, files still on
        primary storage are copied first and only the rest are queued.
        """
        file_names_to_skip = list(file_names_to_skip)
        resolution = self.resolver.find_dot_x_folder(extension)
        if not resolution.found:
            return False

        if not is_cloud_path(resolution.path):
            return self._retrieve_dot_x_folder_files(Path(resolution.path), storage_path_info_only, file_names_to_skip)

        if self.cloud is None:
            logger.error("Cloud archive path given but no cloud index is configured: %s", resolution.path)
            return False
        cloud_files = list(self.cloud.recently_found)

        local_files: set[str] = set()
        if extension.lower() == DOT_D_EXTENSION:
            # Purged .d folders usually keep most files on primary storage
            on_storage = self.resolver.find_dot_x_folder(extension, assume_unpurged=True)
            if on_storage.found and not is_cloud_path(on_storage.path):
                source_dir = Path(on_storage.path)
                if not self._retrieve_dot_x_folder_files(source_dir, storage_path_info_only, file_names_to_skip):
                    return False
                local_dir = self.work_dir / source_dir.name
                if local_dir.is_dir():
                    for local_file in local_dir.rglob("*"):
                        if local_file.is_file():
                            local_files.add(local_file.relative_to(self.work_dir).as_posix().lower())

        for descriptor in cloud_files:
            if descriptor.is_directory or descriptor.relative_path.lower() in local_files:
                continue
            self.cloud.add_file_to_download_queue(descriptor)
        return True

    def retrieve_s_folders(self, storage_path_info_only: bool = False, max_attempts: int | None = None) -> bool:
        """Retrieve Bruker FTICR data: the ``0.ser`` folder, or the zipped s-folders.

        Zipped s-folders are unzipped into ``<work>/<dataset>/<zip name>``
        and the zip files are deleted.
        """
        dataset = self.dataset_name
        resolution = self.resolver.find_valid_directory(
            dataset,
            folder_pattern=BRUKER_ZERO_SER_FOLDER,
            max_attempts=max_attempts,
            retrieving_instrument_data=True,
        )
        if resolution.found and not is_cloud_path(resolution.path):
            zero_ser = Path(resolution.path) / BRUKER_ZERO_SER_FOLDER
            if zero_ser.is_dir():
                target_dir = self.work_dir / BRUKER_ZERO_SER_FOLDER
                if storage_path_info_only:
                    return self.copy_engine.create_storage_path_info_file(zero_ser, target_dir)
                target_dir.mkdir(parents=True, exist_ok=True)
                for source in sorted(item for item in zero_ser.iterdir() if item.is_file()):
                    if not self.copy_engine.copy_file_to_work_dir(source.name, zero_ser, target_dir):
                        return False
                return True

        if not self._copy_s_folders_to_work_dir(storage_path_info_only):
            return False
        if storage_path_info_only:
            return True

        zip_files = matching_files(self.work_dir, ZIPPED_S_FOLDERS_PATTERN)
        if not zip_files:
            logger.error("No zipped s-folders found in working directory")
            return False

        dataset_work_dir = self.work_dir / dataset
        dataset_work_dir.mkdir(parents=True, exist_ok=True)
        for zip_path in zip_files:
            if self.debug_level > 3:
                logger.debug("Unzipping file %s", zip_path)
            target_dir = dataset_work_dir / zip_path.stem
            target_dir.mkdir(parents=True, exist_ok=True)
            result = self.copy_engine.codec.unzip_file(zip_path, target_dir)
            if not result:
                logger.error("Error unzipping file %s: %s", zip_path, result.message)
                return False

        for zip_path in zip_files:
            try:
                zip_path.unlink()
            except OSError as exc:
                logger.error("Exception deleting file %s: %s", zip_path, exc)
                return False
        return True

    def _copy_s_folders_to_work_dir(self, storage_path_info_only: bool) -> bool:
        resolution = self.resolver.find_valid_directory(
            self.dataset_name, ZIPPED_S_FOLDERS_PATTERN, retrieving_instrument_data=True
        )
        if not resolution.found:
            return False
        if is_cloud_path(resolution.path):
            logger.error("Zipped s-folders for %s are only in the cloud archive; cannot retrieve them", self.dataset_name)
            return False

        zip_files = matching_files(resolution.path, ZIPPED_S_FOLDERS_PATTERN)
        if not zip_files:
            return False

        for source in zip_files:
            if self.debug_level > 3:
                logger.debug("Copying file %s to work directory", source)
            destination = self.work_dir / source.name
            if storage_path_info_only:
                if not self.copy_engine.create_storage_path_info_file(source, destination):
                    logger.error("Error creating storage path info file for %s", source)
                    return False
            elif not self.copy_engine.copy_file_with_retry(source, destination, overwrite=False):
                logger.error("Error copying file %s", source)
                return False
        return True

    # ------------------------------------------------------------------
    # MASIC results
    # ------------------------------------------------------------------

    def retrieve_scan_and_sic_stats_files(
        self,
        retrieve_sic_stats: bool = False,
        storage_path_info_only: bool = False,
        retrieve_scan_stats: bool = True,
        retrieve_scan_stats_ex: bool = True,
        retrieve_reporter_ions: bool = False,
        non_critical_suffixes: Iterable[str] = (),
    ) -> bool:
        """Retrieve the dataset's MASIC results from its newest SIC folder.

        On the filesystem the SIC folder with the newest ``_ScanStats.txt``
        (by modification time) wins; in the cloud archive the newest upload
        (highest transaction id) wins. Files ending in one of
        ``non_critical_suffixes`` may be missing.
        """
        dataset = self.dataset_name
        non_critical_suffixes = list(non_critical_suffixes)

        suffixes: list[str] = []
        if retrieve_sic_stats:
            suffixes.append(SIC_STATS_FILE_SUFFIX)
        if retrieve_scan_stats:
            suffixes.append(SCAN_STATS_FILE_SUFFIX)
        if retrieve_scan_stats_ex:
            suffixes.append(SCAN_STATS_EX_FILE_SUFFIX)
        if retrieve_reporter_ions:
            suffixes.append(REPORTER_IONS_FILE_SUFFIX)

        if all(self._file_exists_in_work_dir(dataset + suffix) for suffix in suffixes):
            return True

        # Retrieval order: ScanStats, ScanStatsEx, SICStats, ReporterIons
        ordered = [
            suffix
            for suffix in (SCAN_STATS_FILE_SUFFIX, SCAN_STATS_EX_FILE_SUFFIX, SIC_STATS_FILE_SUFFIX, REPORTER_IONS_FILE_SUFFIX)
            if suffix in suffixes
        ]
        files_to_get = [dataset + suffix for suffix in ordered]

        scan_stats_name = dataset + SCAN_STATS_FILE_SUFFIX
        resolution = self.resolver.find_valid_directory(dataset, "", "SIC*", 1, log_not_found=False)
        if not resolution.path:
            logger.error("Dataset directory path not found in retrieve_scan_and_sic_stats_files")
            return False

        if is_cloud_path(resolution.path):
            if self.cloud is None:
                logger.error("Cloud archive path given but no cloud index is configured: %s", resolution.path)
                return False
            candidates = [
                item
                for item in self.cloud.recently_found
                if not item.is_directory and item.filename.lower() == scan_stats_name.lower()
            ]
            best = newest_transaction(candidates)
            if best is None:
                logger.error("MASIC ScanStats file not found in the SIC results directory(s) in the cloud archive")
                return False
            sic_dir_name = PurePosixPath(best.subdir).name
            logger.info("Retrieving MASIC result files from the cloud archive, subdirectory %s", sic_dir_name)
            for file_name in files_to_get:
                if not self._retrieve_sic_file_cloud(file_name, sic_dir_name, non_critical_suffixes):
                    return False
            return True

        dataset_dir = Path(resolution.path)
        if not dataset_dir.is_dir():
            logger.error("Dataset directory not found: %s", dataset_dir)
            return False

        subdirectories = sorted(item for item in dataset_dir.glob("SIC*") if item.is_dir())
        if not subdirectories:
            logger.warning("Dataset directory does not contain any MASIC results directories: %s", dataset_dir)
            return False

        newest: Path | None = None
        newest_mtime = 0.0
        for subdirectory in subdirectories:
            scan_stats = subdirectory / scan_stats_name
            if scan_stats.is_file() and (newest is None or scan_stats.stat().st_mtime > newest_mtime):
                newest = scan_stats
                newest_mtime = scan_stats.stat().st_mtime

        if newest is None:
            logger.error("MASIC ScanStats file not found below the dataset directory %s", dataset_dir)
            return False

        masic_dir = newest.parent
        logger.info("Retrieving MASIC result files from %s", masic_dir)
        for file_name in files_to_get:
            if not self._retrieve_sic_file(file_name, masic_dir, storage_path_info_only, non_critical_suffixes):
                return False
        return True

    def _retrieve_sic_file_cloud(self, file_name: str, sic_dir_name: str, non_critical_suffixes: list[str]) -> bool:
        found = self.cloud.find_files(file_name, sic_dir_name, self.dataset_name)
        if found:
            if self.debug_level >= 3:
                logger.debug("Found MASIC results file in the cloud archive, %s/%s", sic_dir_name, file_name)
            self.cloud.add_file_to_download_queue(found[0])
            return True
        if _safe_to_ignore(file_name, non_critical_suffixes):
            return True
        logger.error("%s not found in the cloud archive, subdirectory %s", file_name, sic_dir_name)
        return False

    def _retrieve_sic_file(
        self,
        file_name: str,
        masic_dir: Path,
        storage_path_info_only: bool,
        non_critical_suffixes: list[str],
    ) -> bool:
        ignore = _safe_to_ignore(file_name, non_critical_suffixes)
        log_level = logging.DEBUG if ignore else logging.ERROR
        if self.debug_level >= 3:
            logger.debug("Copying MASIC results file: %s", masic_dir / file_name)

        if self.copy_engine.copy_file_to_work_dir(
            file_name, masic_dir, self.work_dir, log_level, storage_path_info_only, max_copy_attempts=2
        ):
            return True
        if ignore:
            if self.debug_level >= 3:
                logger.debug("  File not found; this is not a problem")
            return True
        logger.error("%s not found at %s", file_name, masic_dir)
        return False
