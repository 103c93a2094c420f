"""Zip and gzip handling for retrieved artifacts.

Every decompression records the names and absolute paths it actually
produced in ``most_recent_unzipped_files``; callers use that listing to find
the extracted file, whose name can differ in case or base name from the one
they expected.
"""

from __future__ import annotations

import enum
import gzip
import logging
import os
import shutil
import time
import zipfile
import zlib
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

from retrieval_core.config import DEFAULT_ZIP_CRC_CHECK_THRESHOLD_BYTES
from retrieval_core.result import Err, Ok, Result
from retrieval_core.stability import stable_api
from retrieval_core.utils.paths import matches

logger = logging.getLogger(__name__)

GZIP_SUFFIX = ".gz"
ZIP_SUFFIX = ".zip"

_CHUNK_SIZE = 1024 * 1024


class OverwriteMode(enum.Enum):
    OVERWRITE_SILENTLY = "overwrite_silently"
    DO_NOT_OVERWRITE = "do_not_overwrite"
    THROW = "throw"


@dataclass(frozen=True)
class ExtractedEntry:
    """One file produced by a decompression call."""

    name: str
    path: str


def is_path_safe(member_path: str, dest_dir: Path) -> tuple[bool, str | None]:
    """Check that a zip member stays inside ``dest_dir`` once extracted.

    Returns:
        Tuple of (is_safe, error_reason)
    """
    normalized = os.path.normpath(member_path)

    if os.path.isabs(normalized) or member_path.startswith(("/", "\\")):
        return False, f"absolute_path:{member_path}"

    if normalized == ".." or normalized.startswith("..") or "/../" in normalized:
        return False, f"path_traversal:{member_path}"

    try:
        final_path = (dest_dir / normalized).resolve()
        final_path.relative_to(dest_dir.resolve())
    except ValueError:
        return False, f"escapes_dest:{member_path}"
    except OSError as e:
        return False, f"path_resolution_error:{member_path}:{e}"

    return True, None


def _zip_entry_mtime(info: zipfile.ZipInfo) -> float:
    return time.mktime(info.date_time + (0, 0, -1))


@stable_api
class ArchiveCodec:
    """Zip/gzip operations with a record of the most recent output."""

    def __init__(
        self,
        debug_level: int = 1,
        crc_check_threshold_bytes: int = DEFAULT_ZIP_CRC_CHECK_THRESHOLD_BYTES,
    ) -> None:
        self.debug_level = debug_level
        self.crc_check_threshold_bytes = crc_check_threshold_bytes
        self.most_recent_unzipped_files: list[ExtractedEntry] = []
        self.most_recent_zip_file_path = ""
        self.message = ""

    def _fail(self, error: str, message: str, exc: BaseException | None = None) -> Result:
        self.message = message
        if exc is not None:
            logger.error("%s: %s", message, exc)
        else:
            logger.error("%s", message)
        return Err(error, message)

    def _report_stats(self, path: Path, start: float, operation: str) -> None:
        if self.debug_level < 2:
            return
        elapsed = max(time.monotonic() - start, 0.001)
        try:
            size_mb = path.stat().st_size / 1024 / 1024
        except OSError:
            return
        logger.info("%s %s: %.1f MB in %.2f seconds (%.1f MB/sec)", operation, path.name, size_mb, elapsed, size_mb / elapsed)

    # ------------------------------------------------------------------
    # Decompression
    # ------------------------------------------------------------------

    def unzip_file(
        self,
        zip_path: Path,
        target_dir: Path | None = None,
        file_filter: str = "*",
        overwrite: OverwriteMode = OverwriteMode.OVERWRITE_SILENTLY,
    ) -> Result[list[ExtractedEntry]]:
        """Extract a zip file.

        Args:
            zip_path: The archive
            target_dir: Output directory; defaults to the archive's directory
            file_filter: Wildcard applied to each entry's base name
            overwrite: Behaviour when an extracted file already exists

        Returns:
            Ok(listing of extracted entries) or Err; an unsafe member path,
            an existing file under ``OverwriteMode.THROW`` or a corrupt
            archive all fail the whole call
        """
        zip_path = Path(zip_path)
        self.message = ""
        self.most_recent_zip_file_path = str(zip_path)
        self.most_recent_unzipped_files = []

        if not zip_path.is_file():
            return self._fail("zip_not_found", f"Zip file not found: {zip_path}")

        target_dir = Path(target_dir) if target_dir else zip_path.parent
        file_filter = file_filter or "*"
        if self.debug_level >= 3:
            logger.info("Unzipping file: %s", zip_path)
        start = time.monotonic()

        try:
            target_dir.mkdir(parents=True, exist_ok=True)
            with zipfile.ZipFile(zip_path, "r") as zf:
                for info in zf.infolist():
                    if info.is_dir():
                        continue
                    entry_name = info.filename.replace("\\", "/").rsplit("/", 1)[-1]
                    if not matches(entry_name, file_filter):
                        continue

                    is_safe, reason = is_path_safe(info.filename, target_dir)
                    if not is_safe:
                        return self._fail("unsafe_path", f"Unsafe path in archive {zip_path}: {reason}")

                    target = target_dir / info.filename
                    if target.exists():
                        if overwrite is OverwriteMode.THROW:
                            return self._fail(
                                "file_exists", f"Cannot unzip {entry_name} since a file already exists at {target}"
                            )
                        if overwrite is OverwriteMode.DO_NOT_OVERWRITE:
                            logger.warning("Skipping overwrite of existing file: %s", target)
                            continue

                    target.parent.mkdir(parents=True, exist_ok=True)
                    with zf.open(info) as src, target.open("wb") as dst:
                        shutil.copyfileobj(src, dst, _CHUNK_SIZE)
                    entry_mtime = _zip_entry_mtime(info)
                    os.utime(target, (entry_mtime, entry_mtime))
                    self.most_recent_unzipped_files.append(ExtractedEntry(target.name, str(target.resolve())))
        except (zipfile.BadZipFile, zlib.error, OSError, EOFError) as exc:
            return self._fail("unzip_failed", f"Error unzipping file {zip_path}", exc)

        self._report_stats(zip_path, start, "Unzipped")
        return Ok(list(self.most_recent_unzipped_files), archive=str(zip_path))

    def gunzip_file(
        self,
        gz_path: Path,
        target_dir: Path | None = None,
        overwrite: OverwriteMode = OverwriteMode.OVERWRITE_SILENTLY,
    ) -> Result[list[ExtractedEntry]]:
        """Decompress a ``.gz`` file, stripping exactly the ``.gz`` suffix.

        The output takes the modification time stored in the gzip header,
        clamped so it is never newer than the ``.gz`` file itself.

        Raises:
            FileExistsError: If the output exists and ``overwrite`` is THROW
        """
        gz_path = Path(gz_path)
        self.message = ""
        self.most_recent_zip_file_path = str(gz_path)
        self.most_recent_unzipped_files = []

        if not gz_path.is_file():
            return self._fail("gzip_not_found", f"GZip file not found: {gz_path}")
        if gz_path.suffix.lower() != GZIP_SUFFIX:
            return self._fail("not_gzip", f"Not a GZipped file; must have extension .gz: {gz_path}")

        target_dir = Path(target_dir) if target_dir else gz_path.parent
        target = target_dir / gz_path.name[: -len(GZIP_SUFFIX)]

        if target.exists():
            if overwrite is OverwriteMode.DO_NOT_OVERWRITE:
                self.message = f"Decompressed file already exists; will not overwrite: {target}"
                logger.info("%s", self.message)
                return Ok([], archive=str(gz_path), skipped=True)
            if overwrite is OverwriteMode.THROW:
                raise FileExistsError(f"Decompressed file already exists: {target}")

        if self.debug_level >= 3:
            logger.info("Unzipping file: %s", gz_path)
        start = time.monotonic()

        try:
            target_dir.mkdir(parents=True, exist_ok=True)
            with gzip.open(gz_path, "rb") as src, target.open("wb") as dst:
                shutil.copyfileobj(src, dst, _CHUNK_SIZE)
                header_mtime = getattr(src, "mtime", None)
        except (gzip.BadGzipFile, zlib.error, OSError, EOFError) as exc:
            return self._fail("gunzip_failed", f"Error unzipping .gz file {gz_path}", exc)

        gz_mtime = gz_path.stat().st_mtime
        new_mtime = header_mtime if header_mtime else target.stat().st_mtime
        if new_mtime > gz_mtime:
            new_mtime = gz_mtime
        os.utime(target, (new_mtime, new_mtime))

        self.most_recent_unzipped_files.append(ExtractedEntry(target.name, str(target.resolve())))
        self._report_stats(gz_path, start, "Gunzipped")
        return Ok(list(self.most_recent_unzipped_files), archive=str(gz_path))

    def decompress(self, path: Path, target_dir: Path | None = None) -> Result[list[ExtractedEntry]]:
        """Unzip or gunzip depending on the extension."""
        suffix = Path(path).suffix.lower()
        if suffix == ZIP_SUFFIX:
            return self.unzip_file(path, target_dir)
        if suffix == GZIP_SUFFIX:
            return self.gunzip_file(path, target_dir)
        return self._fail("unknown_container", f"Not a .zip or .gz file: {path}")

    # ------------------------------------------------------------------
    # Compression
    # ------------------------------------------------------------------

    def gzip_file(self, source: Path, target_dir: Path | None = None, delete_source: bool = False) -> Result[Path]:
        """Compress ``source`` to ``<name>.gz``.

        The original file name and modification time are written to the gzip
        header and the ``.gz`` file gets the source's modification time.
        """
        source = Path(source)
        self.message = ""
        if not source.is_file():
            return self._fail("source_not_found", f"File to gzip not found: {source}")

        target_dir = Path(target_dir) if target_dir else source.parent
        target = target_dir / f"{source.name}{GZIP_SUFFIX}"
        self.most_recent_zip_file_path = str(target)
        start = time.monotonic()

        try:
            target_dir.mkdir(parents=True, exist_ok=True)
            if target.exists():
                target.unlink()
            source_mtime = source.stat().st_mtime
            with source.open("rb") as src, target.open("wb") as raw:
                with gzip.GzipFile(filename=source.name, mode="wb", fileobj=raw, mtime=int(source_mtime)) as dst:
                    shutil.copyfileobj(src, dst, _CHUNK_SIZE)
            os.utime(target, (source_mtime, source_mtime))
        except OSError as exc:
            return self._fail("gzip_failed", f"Error gzipping file {source}", exc)

        self._report_stats(source, start, "Gzipped")
        if delete_source:
            self._delete_source(source)
        return Ok(target)

    def zip_file(self, source: Path, delete_source: bool = False, target: Path | None = None) -> Result[Path]:
        """Zip a single file; the archive defaults to ``<stem>.zip`` beside it."""
        source = Path(source)
        if not source.is_file():
            return self._fail("source_not_found", f"File to zip not found: {source}")
        target = Path(target) if target else source.with_suffix(ZIP_SUFFIX)
        if target.exists():
            try:
                target.unlink()
            except OSError as exc:
                return self._fail("zip_failed", f"Error deleting existing zip file {target}", exc)
        result = self.zip_files([source], target)
        if result.is_ok and delete_source:
            self._delete_source(source)
        return result

    def zip_files(self, paths: Iterable[Path], target: Path) -> Result[Path]:
        """Create ``target`` holding each file at the archive root."""
        target = Path(target)
        self.message = ""
        self.most_recent_zip_file_path = str(target)
        files = [Path(p) for p in paths]
        missing = [str(p) for p in files if not p.is_file()]
        if missing:
            return self._fail("source_not_found", f"Files to zip not found: {', '.join(missing)}")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with zipfile.ZipFile(target, "w", compression=zipfile.ZIP_DEFLATED) as zf:
                for path in files:
                    zf.write(path, arcname=path.name)
        except (OSError, zipfile.BadZipFile) as exc:
            return self._fail("zip_failed", f"Error creating zip file {target}", exc)
        return Ok(target, files=len(files))

    def zip_directory(
        self,
        directory: Path,
        target: Path,
        recurse: bool = True,
        file_filter: str = "*",
    ) -> Result[Path]:
        """Zip the files of a directory, keeping paths relative to it."""
        directory = Path(directory)
        target = Path(target)
        self.message = ""
        self.most_recent_zip_file_path = str(target)
        if not directory.is_dir():
            return self._fail("source_not_found", f"Directory to zip not found: {directory}")

        candidates = directory.rglob("*") if recurse else directory.glob("*")
        files = sorted(
            p for p in candidates if p.is_file() and matches(p.name, file_filter or "*") and p.resolve() != target.resolve()
        )
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with zipfile.ZipFile(target, "w", compression=zipfile.ZIP_DEFLATED) as zf:
                for path in files:
                    zf.write(path, arcname=path.relative_to(directory).as_posix())
        except (OSError, zipfile.BadZipFile) as exc:
            return self._fail("zip_failed", f"Error zipping directory {directory}", exc)
        return Ok(target, files=len(files))

    def add_to_zip_file(self, zip_path: Path, file_to_add: Path) -> Result[Path]:
        """Append a file to an existing archive, or create it."""
        zip_path = Path(zip_path)
        file_to_add = Path(file_to_add)
        if not file_to_add.is_file():
            return self._fail("source_not_found", f"File not found; cannot add to zip file: {file_to_add}")
        mode = "a" if zip_path.exists() else "w"
        try:
            with zipfile.ZipFile(zip_path, mode, compression=zipfile.ZIP_DEFLATED) as zf:
                if file_to_add.name in zf.namelist():
                    return self._fail("duplicate_entry", f"{file_to_add.name} already exists in {zip_path}")
                zf.write(file_to_add, arcname=file_to_add.name)
        except (OSError, zipfile.BadZipFile) as exc:
            return self._fail("zip_failed", f"Error adding {file_to_add.name} to zip file {zip_path}", exc)
        return Ok(zip_path)

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify_zip_file(self, zip_path: Path, crc_check_threshold_bytes: int | None = None) -> Result[None]:
        """Check that a zip file is intact.

        The archive is always opened; archives no larger than the threshold
        also have every entry decompressed, which checks its CRC32 and its
        byte count. One bad entry fails the whole check.
        """
        zip_path = Path(zip_path)
        threshold = self.crc_check_threshold_bytes if crc_check_threshold_bytes is None else crc_check_threshold_bytes
        if not zip_path.is_file():
            return self._fail("zip_not_found", f"Zip file not found: {zip_path}")
        try:
            with zipfile.ZipFile(zip_path, "r") as zf:
                if zip_path.stat().st_size > threshold:
                    return Ok(None, crc_checked=False)
                for info in zf.infolist():
                    if info.is_dir():
                        continue
                    total = 0
                    with zf.open(info) as reader:
                        for chunk in iter(lambda: reader.read(_CHUNK_SIZE), b""):
                            total += len(chunk)
                    if total != info.file_size:
                        return self._fail(
                            "size_mismatch",
                            f"Zip entry {info.filename} in {zip_path} has {total} bytes; expected {info.file_size}",
                        )
        except (zipfile.BadZipFile, zlib.error, OSError, EOFError) as exc:
            return self._fail("verify_failed", f"Error verifying zip file {zip_path}", exc)
        return Ok(None, crc_checked=True)

    def verify_gzip_file(self, gz_path: Path) -> Result[None]:
        """Decompress a ``.gz`` file to nowhere, confirming its CRC."""
        gz_path = Path(gz_path)
        if not gz_path.is_file():
            return self._fail("gzip_not_found", f"GZip file not found: {gz_path}")
        try:
            with gzip.open(gz_path, "rb") as reader:
                while reader.read(_CHUNK_SIZE):
                    pass
        except (gzip.BadGzipFile, zlib.error, OSError, EOFError) as exc:
            return self._fail("verify_failed", f"Error verifying gzip file {gz_path}", exc)
        return Ok(None)

    def _delete_source(self, source: Path) -> None:
        try:
            source.unlink()
        except OSError as exc:
            logger.warning("Unable to delete source file %s: %s", source, exc)
