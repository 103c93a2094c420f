"""Existence checks against one candidate location.

Filesystem probes retry with a hold-off to ride out transient share
glitches; cloud probes are a single index query. A probe never raises: an
unexpected error is logged and counts as "not found".
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass, field
from pathlib import Path

from retrieval_core.candidates import Candidate
from retrieval_core.cloud_index import CloudArchiveIndex, CloudFileDescriptor
from retrieval_core.config import DEFAULT_HOLDOFF_SECONDS, MAX_HOLDOFF_SECONDS
from retrieval_core.utils.logging import log_at
from retrieval_core.utils.paths import has_wildcard, matches

logger = logging.getLogger(__name__)

MAX_PROBE_ATTEMPTS = 10
DIRECTORY_PROBE_HOLDOFF_SECONDS = 1


def _clamp_attempts(max_attempts: int) -> int:
    return min(max(max_attempts, 1), MAX_PROBE_ATTEMPTS)


def _clamp_holdoff(holdoff_seconds: float, max_holdoff_seconds: float = MAX_HOLDOFF_SECONDS) -> float:
    if holdoff_seconds <= 0:
        holdoff_seconds = DEFAULT_HOLDOFF_SECONDS
    return min(holdoff_seconds, max_holdoff_seconds)


def directory_exists_with_retry(
    path: str | Path,
    holdoff_seconds: float = DEFAULT_HOLDOFF_SECONDS,
    max_attempts: int = 3,
    log_missing: bool = True,
    debug_level: int = 1,
    max_holdoff_seconds: float = MAX_HOLDOFF_SECONDS,
) -> bool:
    """Check for a directory, retrying in case of a temporary glitch.

    Args:
        path: Directory to look for
        holdoff_seconds: Wait between attempts; values <= 0 mean 5 seconds
        max_attempts: Number of checks, clamped to 1..10
        log_missing: Log a warning when the directory is still missing
        debug_level: At 2 or higher every failed attempt is logged
        max_holdoff_seconds: Cap on the wait between attempts (600 seconds by default)

    Returns:
        True if the directory exists
    """
    attempts = _clamp_attempts(max_attempts)
    holdoff = _clamp_holdoff(holdoff_seconds, max_holdoff_seconds)

    for remaining in range(attempts, 0, -1):
        if os.path.isdir(path):
            return True
        if log_missing and (debug_level >= 2 or remaining == 1):
            logger.warning("Directory %s not found. Retry count = %d", path, remaining)
        if remaining > 1:
            time.sleep(holdoff)
    return False


def file_exists_with_retry(
    path: str | Path,
    holdoff_seconds: float = DEFAULT_HOLDOFF_SECONDS,
    log_level: int = logging.ERROR,
    max_attempts: int = 3,
    max_holdoff_seconds: float = MAX_HOLDOFF_SECONDS,
) -> bool:
    """Check for a file, retrying in case of a temporary glitch.

    Each failed attempt is only logged when ``log_level`` is ERROR; the
    final miss is always logged at ``log_level``.
    """
    attempts = _clamp_attempts(max_attempts)
    holdoff = _clamp_holdoff(holdoff_seconds, max_holdoff_seconds)

    for remaining in range(attempts, 0, -1):
        if os.path.isfile(path):
            return True
        if log_level >= logging.ERROR:
            log_at(logger, log_level, "File %s not found. Retry count = %d", path, remaining)
        if remaining > 1:
            time.sleep(holdoff)

    if attempts == 1:
        log_at(logger, log_level, "File not found: %s", path)
    else:
        log_at(logger, log_level, "File not found after %d tries: %s", attempts, path)
    return False


def matching_files(directory: str | Path, pattern: str) -> list[Path]:
    """Top-level files of ``directory`` whose names match ``pattern`` (case-insensitive)."""
    try:
        return sorted(entry for entry in Path(directory).iterdir() if entry.is_file() and matches(entry.name, pattern))
    except OSError:
        return []


def matching_directories(directory: str | Path, pattern: str) -> list[Path]:
    try:
        return sorted(entry for entry in Path(directory).iterdir() if entry.is_dir() and matches(entry.name, pattern))
    except OSError:
        return []


@dataclass
class ProbeResult:
    found: bool
    cloud_files: list[CloudFileDescriptor] = field(default_factory=list)

    def __bool__(self) -> bool:
        return self.found


class TierProbe:
    """Tests candidates for a file and/or subfolder."""

    def __init__(
        self,
        cloud: CloudArchiveIndex | None = None,
        *,
        debug_level: int = 1,
        holdoff_seconds: float = DIRECTORY_PROBE_HOLDOFF_SECONDS,
        max_holdoff_seconds: float = MAX_HOLDOFF_SECONDS,
    ) -> None:
        self.cloud = cloud
        self.debug_level = debug_level
        self.holdoff_seconds = holdoff_seconds
        self.max_holdoff_seconds = max_holdoff_seconds

    def probe(
        self,
        candidate: Candidate,
        file_pattern: str = "",
        folder_pattern: str = "",
        max_attempts: int = 3,
        log_missing: bool = True,
        recurse: bool = False,
    ) -> ProbeResult:
        try:
            if candidate.is_cloud:
                files = self.probe_cloud(candidate, file_pattern, folder_pattern, recurse)
                return ProbeResult(bool(files), files)
            found = self.probe_directory(
                candidate.path, file_pattern, folder_pattern, max_attempts, log_missing and candidate.log_if_missing
            )
            return ProbeResult(found)
        except Exception:
            logger.exception("Exception looking for directory: %s", candidate.path)
            return ProbeResult(False)

    def probe_cloud(
        self,
        candidate: Candidate,
        file_pattern: str = "",
        folder_pattern: str = "",
        recurse: bool = False,
    ) -> list[CloudFileDescriptor]:
        if self.cloud is None:
            return []
        subdir = folder_pattern or candidate.subdir
        files = self.cloud.find_files(file_pattern or "*", subdir, candidate.dataset, recurse)
        if not files and self.debug_level > 3:
            logger.debug(
                "Cloud archive has no files for dataset %s matching %s (subdirectory %s)",
                candidate.dataset,
                file_pattern or "*",
                subdir or "<root>",
            )
        return files

    def probe_directory(
        self,
        path: str,
        file_pattern: str = "",
        folder_pattern: str = "",
        max_attempts: int = 3,
        log_missing: bool = True,
    ) -> bool:
        """Check that ``path`` exists and holds the file and/or folder requested.

        Wildcard patterns are matched against the top level only; literal
        names go through the retrying existence checks.
        """
        if not self._directory_exists(path, max_attempts, log_missing):
            return False

        if file_pattern:
            if has_wildcard(file_pattern):
                if not matching_files(path, file_pattern):
                    return False
            elif not file_exists_with_retry(
                os.path.join(path, file_pattern),
                self.holdoff_seconds,
                logging.DEBUG,
                max_attempts,
                self.max_holdoff_seconds,
            ):
                return False

        if folder_pattern:
            if has_wildcard(folder_pattern):
                return bool(matching_directories(path, folder_pattern))
            return self._directory_exists(os.path.join(path, folder_pattern), max_attempts, log_missing)
        return True

    def _directory_exists(self, path: str, max_attempts: int, log_missing: bool) -> bool:
        return directory_exists_with_retry(
            path, self.holdoff_seconds, max_attempts, log_missing, self.debug_level, self.max_holdoff_seconds
        )
