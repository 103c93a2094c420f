"""Materializes resolved artifacts in the job's working directory.

Three outcomes are possible for a file: a byte copy, a
``<name>_StoragePathInfo.txt`` pointer whose first line is the remote path
(when the consumer only needs to know where the file lives), or, for cloud
paths, an entry in the cloud download queue that a later
``process_download_queue`` call drains.
"""

from __future__ import annotations

import logging
import os
import shutil
import time
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

from retrieval_core.archive_codec import ArchiveCodec
from retrieval_core.cloud_index import (
    CloudArchiveIndex,
    add_file_to_cloud_directory_path,
    extract_file_id,
    is_cloud_path,
)
from retrieval_core.config import RetryConfig
from retrieval_core.exceptions import InvalidPathError
from retrieval_core.probe import file_exists_with_retry
from retrieval_core.result import ResolutionResult
from retrieval_core.stability import stable_api
from retrieval_core.utils.io import read_first_line, write_text_atomic
from retrieval_core.utils.logging import log_at

logger = logging.getLogger(__name__)

STORAGE_PATH_INFO_FILE_SUFFIX = "_StoragePathInfo.txt"


@dataclass(frozen=True)
class RetrievalOptions:
    """Per-call retrieval switches."""

    storage_path_info_only: bool = False
    unzip: bool = False
    search_archive: bool = True
    max_attempts: int = 3
    log_level: int = logging.ERROR


def resolve_storage_path_info(path: str | Path) -> str:
    """Return the remote path recorded in a ``_StoragePathInfo.txt`` file.

    Raises:
        OSError: If the file cannot be read
    """
    return read_first_line(Path(path)).strip()


def parent_directory(file_path: str | Path) -> Path:
    """Directory holding a resolved file.

    Raises:
        InvalidPathError: If the path is relative or has no parent
    """
    path = Path(file_path)
    if not path.is_absolute() or path.parent == path:
        raise InvalidPathError(
            f"Cannot determine the parent directory of {file_path}", context={"path": str(file_path)}
        )
    return path.parent


@stable_api
class CopyEngine:
    def __init__(
        self,
        cloud: CloudArchiveIndex | None = None,
        codec: ArchiveCodec | None = None,
        retry: RetryConfig | None = None,
        *,
        debug_level: int = 1,
    ) -> None:
        self.cloud = cloud
        self.codec = codec or ArchiveCodec(debug_level=debug_level)
        self.retry = retry or RetryConfig()
        self.debug_level = debug_level

    def _queue_cloud_file(self, file_name: str, source_dir: str, unzip_required: bool = False) -> bool:
        if self.cloud is None:
            logger.error("Cloud archive path given but no cloud index is configured: %s", source_dir)
            return False
        file_id, _ = extract_file_id(source_dir)
        encoded = source_dir if file_id else add_file_to_cloud_directory_path(source_dir, file_name)
        return self.cloud.add_file_to_download_queue(encoded, unzip_required)

    def copy_file_to_work_dir(
        self,
        file_name: str,
        source_dir: str | Path,
        target_dir: str | Path,
        log_level: int = logging.ERROR,
        create_storage_path_info_only: bool = False,
        max_copy_attempts: int = 3,
    ) -> bool:
        """Copy ``source_dir/file_name`` into ``target_dir``.

        Args:
            file_name: Name of the file to copy
            source_dir: Directory holding the file; a cloud path queues a download instead
            target_dir: Destination directory
            log_level: Level for the "not found" message; DEBUG marks the file optional
            create_storage_path_info_only: Write a pointer file instead of copying
            max_copy_attempts: Copy attempts when errors occur

        Returns:
            True if the file was copied, referenced or queued
        """
        source_dir = str(source_dir)
        if is_cloud_path(source_dir):
            return self._queue_cloud_file(file_name, source_dir)

        source_path = os.path.join(source_dir, file_name)
        destination_path = os.path.join(str(target_dir), file_name)
        try:
            if not file_exists_with_retry(source_path, 1, log_level, max_attempts=1):
                return False

            if create_storage_path_info_only:
                return self.create_storage_path_info_file(source_path, destination_path)

            if self.copy_file_with_retry(source_path, destination_path, True, max_copy_attempts):
                if self.debug_level > 3:
                    logger.info("File copied: %s", source_path)
                return True
        except OSError as exc:
            logger.error("Error copying %s to the working directory: %s", source_path, exc)
            return False

        logger.error("Error copying file %s", source_path)
        return False

    def copy_file_to_work_dir_with_rename(
        self,
        dataset_name: str,
        file_name: str,
        source_dir: str | Path,
        target_dir: str | Path,
        log_level: int = logging.ERROR,
        create_storage_path_info_only: bool = False,
        max_copy_attempts: int = 3,
    ) -> bool:
        """Copy a file, naming the copy ``<dataset_name><original extension>``."""
        source_path = os.path.join(str(source_dir), file_name)
        if not file_exists_with_retry(source_path, self.retry.copy_holdoff_seconds, log_level, self.retry.max_attempts):
            return False

        destination_path = os.path.join(str(target_dir), dataset_name + Path(file_name).suffix)
        if create_storage_path_info_only:
            return self.create_storage_path_info_file(source_path, destination_path)

        if self.copy_file_with_retry(source_path, destination_path, True, max_copy_attempts):
            return True
        logger.error("Error copying file %s", source_path)
        return False

    def copy_file_with_retry(
        self,
        source_path: str | Path,
        destination_path: str | Path,
        overwrite: bool = True,
        max_attempts: int = 3,
        holdoff_seconds: float | None = None,
    ) -> bool:
        """Copy a file (with its timestamps), retrying after errors."""
        holdoff = self.retry.copy_holdoff_seconds if holdoff_seconds is None else holdoff_seconds
        attempts_left = max(max_attempts, 1)
        destination = Path(destination_path)

        while True:
            if destination.exists() and not overwrite:
                logger.error("Tried to overwrite an existing file when overwrite is false: %s", destination)
                return False
            try:
                destination.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(source_path, destination)
                return True
            except OSError as exc:
                attempts_left -= 1
                logger.error(
                    "Exception copying file %s to %s; Retry Count = %d: %s", source_path, destination, attempts_left, exc
                )
                if attempts_left <= 0:
                    return False
                time.sleep(holdoff)

    def create_storage_path_info_file(self, source_path: str | Path, destination_path: str | Path) -> bool:
        """Write ``<destination>_StoragePathInfo.txt`` holding ``source_path``."""
        info_path = f"{destination_path}{STORAGE_PATH_INFO_FILE_SUFFIX}"
        try:
            write_text_atomic(Path(info_path), f"{source_path}\n")
        except OSError as exc:
            logger.error("Error creating storage path info file %s: %s", info_path, exc)
            return False
        return True

    def copy_directory(
        self,
        source_dir: str | Path,
        target_dir: str | Path,
        file_names_to_skip: Iterable[str] = (),
    ) -> bool:
        """Copy a directory tree, leaving out files whose names are in ``file_names_to_skip``."""
        skip = {name.lower() for name in file_names_to_skip}
        try:
            shutil.copytree(
                source_dir,
                target_dir,
                ignore=lambda _dir, names: [name for name in names if name.lower() in skip],
                dirs_exist_ok=True,
            )
        except (OSError, shutil.Error) as exc:
            logger.error("Error copying directory %s to %s: %s", source_dir, target_dir, exc)
            return False
        return True

    def materialize(
        self,
        resolution: ResolutionResult,
        file_name: str,
        target_dir: str | Path,
        options: RetrievalOptions | None = None,
    ) -> bool:
        """Bring a resolved file into ``target_dir`` according to ``options``."""
        options = options or RetrievalOptions()
        if not resolution.found:
            log_at(logger, options.log_level, "Cannot retrieve %s: %s", file_name, resolution.reason or "not found")
            return False

        if is_cloud_path(resolution.path):
            return self._queue_cloud_file(file_name, resolution.path, unzip_required=options.unzip)

        if not self.copy_file_to_work_dir(
            file_name,
            resolution.path,
            target_dir,
            options.log_level,
            options.storage_path_info_only,
            options.max_attempts,
        ):
            return False

        if options.unzip and not options.storage_path_info_only:
            local_path = Path(target_dir) / file_name
            if local_path.suffix.lower() in (".zip", ".gz"):
                return bool(self.codec.decompress(local_path, Path(target_dir)))
        return True
