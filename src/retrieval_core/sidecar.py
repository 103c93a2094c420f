"""Integrity sidecar records (``<data file>.hashcheck``).

A sidecar lets a cached copy be validated without re-transferring or
re-hashing the source. The format is plain text, one ``key=value`` per line,
``#`` lines are comments::

    # Hashcheck file created 2024-03-01 10:15:00
    size=123456
    modification_date_utc=2024-03-01 10:14:58
    hash=0cc175b9c0f1b6a831c399e269772661
    hashtype=md5
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path

from retrieval_core.stability import stable_api
from retrieval_core.utils.hash import SUPPORTED_HASH_TYPES, compute_file_hash
from retrieval_core.utils.io import write_text_atomic

logger = logging.getLogger(__name__)

SIDECAR_SUFFIX = ".hashcheck"
DATE_TOLERANCE_SECONDS = 2.0
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_DATE_FORMATS = (
    DATE_FORMAT,
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%dT%H:%M:%SZ",
    "%Y-%m-%d %H:%M:%S.%f",
    "%Y-%m-%dT%H:%M:%S.%f",
    "%m/%d/%Y %I:%M:%S %p",
    "%m/%d/%Y %H:%M:%S",
)


@dataclass
class SidecarRecord:
    size: int = 0
    modification_date_utc: datetime | None = None
    hash: str = ""
    hash_type: str = "md5"


def sidecar_path_for(data_path: Path | str) -> Path:
    return Path(f"{data_path}{SIDECAR_SUFFIX}")


def parse_utc_timestamp(text: str) -> datetime | None:
    """Parse a sidecar timestamp; naive values are taken as UTC."""
    text = text.strip()
    if not text:
        return None
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        parsed = None
        for fmt in _DATE_FORMATS:
            try:
                parsed = datetime.strptime(text, fmt)
                break
            except ValueError:
                continue
    if parsed is None:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _file_mtime_utc(path: Path) -> datetime:
    return datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)


def read_sidecar(sidecar_path: Path) -> SidecarRecord:
    """Read a sidecar file. Unknown keys are ignored.

    Raises:
        OSError: If the file cannot be read
    """
    record = SidecarRecord()
    for raw_line in Path(sidecar_path).read_text(encoding="utf-8", errors="replace").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = (part.strip() for part in line.split("=", 1))
        key = key.lower()
        if key == "size":
            try:
                record.size = int(value)
            except ValueError:
                logger.warning("Invalid size value in %s: %s", sidecar_path, value)
        elif key == "modification_date_utc":
            record.modification_date_utc = parse_utc_timestamp(value)
        elif key == "hash":
            record.hash = value.lower()
        elif key == "hashtype":
            record.hash_type = value.lower() or "md5"
    return record


def write_sidecar(sidecar_path: Path, record: SidecarRecord) -> Path:
    modified = record.modification_date_utc or datetime.now(timezone.utc)
    now = datetime.now(timezone.utc).strftime(DATE_FORMAT)
    lines = [
        f"# Hashcheck file created {now}",
        f"size={record.size}",
        f"modification_date_utc={modified.strftime(DATE_FORMAT)}",
        f"hash={record.hash}",
        f"hashtype={record.hash_type}",
    ]
    write_text_atomic(Path(sidecar_path), "\n".join(lines) + "\n")
    return Path(sidecar_path)


@stable_api
def create_sidecar_file(data_path: Path, compute_hash: bool = True, hash_type: str = "md5") -> Path | None:
    """Create ``<data_path>.hashcheck`` for a file.

    Args:
        data_path: The data file
        compute_hash: When False the sidecar gets an empty hash
        hash_type: "md5" (default) or "sha256"

    Returns:
        Path to the sidecar, or None if the data file is missing or unreadable
    """
    data_path = Path(data_path)
    if not data_path.is_file():
        logger.warning("Cannot create sidecar file; data file not found: %s", data_path)
        return None
    hash_type = hash_type.lower()
    if hash_type not in SUPPORTED_HASH_TYPES:
        raise ValueError(f"Unsupported hash type: {hash_type}")

    digest = ""
    if compute_hash:
        digest = compute_file_hash(data_path, hash_type) or ""
        if not digest:
            logger.error("Error computing %s hash of %s", hash_type, data_path)
            return None

    record = SidecarRecord(
        size=data_path.stat().st_size,
        modification_date_utc=_file_mtime_utc(data_path),
        hash=digest,
        hash_type=hash_type,
    )
    return write_sidecar(sidecar_path_for(data_path), record)


@stable_api
def validate_file_vs_sidecar(
    data_path: Path,
    sidecar_path: Path | None = None,
    check_date: bool = True,
    compute_hash: bool = False,
    check_size: bool = True,
    recheck_interval_days: float = 0,
) -> tuple[bool, str]:
    """Check a data file against its sidecar record.

    The size comparison is skipped when ``check_size`` is False.
    Modification times more than two seconds apart fail when ``check_date``
    is set. The hash is only recomputed when ``compute_hash`` is set or the
    sidecar is older than ``recheck_interval_days``; in the latter case a
    matching hash refreshes the sidecar.

    Returns:
        (valid, error_message); the message is empty when valid
    """
    data_path = Path(data_path)
    sidecar = Path(sidecar_path) if sidecar_path else sidecar_path_for(data_path)

    if not data_path.is_file():
        return False, f"Data file not found: {data_path}"
    if not sidecar.is_file():
        return False, f"Sidecar file not found: {sidecar}"

    try:
        record = read_sidecar(sidecar)
    except OSError as exc:
        return False, f"Error reading sidecar file {sidecar}: {exc}"

    actual_size = data_path.stat().st_size
    if check_size and actual_size != record.size:
        return False, f"File size mismatch: expected {record.size:,} bytes, actual {actual_size:,} bytes: {data_path}"

    if check_date:
        if record.modification_date_utc is None:
            return False, f"Sidecar file has no valid modification_date_utc: {sidecar}"
        delta = abs((_file_mtime_utc(data_path) - record.modification_date_utc).total_seconds())
        if delta > DATE_TOLERANCE_SECONDS:
            return (
                False,
                f"File modification date mismatch ({delta:.1f} seconds): expected "
                f"{record.modification_date_utc.strftime(DATE_FORMAT)} UTC for {data_path}",
            )

    recheck_due = False
    if recheck_interval_days > 0:
        sidecar_age = datetime.now(timezone.utc) - _file_mtime_utc(sidecar)
        recheck_due = sidecar_age > timedelta(days=recheck_interval_days)

    if (compute_hash or recheck_due) and record.hash:
        hash_type = record.hash_type if record.hash_type in SUPPORTED_HASH_TYPES else "md5"
        actual_hash = compute_file_hash(data_path, hash_type)
        if actual_hash is None:
            return False, f"Unable to compute {hash_type} hash of {data_path}"
        if actual_hash != record.hash:
            return False, f"{hash_type.upper()} hash mismatch: expected {record.hash}, actual {actual_hash}: {data_path}"
        if recheck_due:
            write_sidecar(sidecar, record)
            logger.debug("Refreshed sidecar check date: %s", sidecar)

    return True, ""


def evict_stale_copy(local_path: Path, remote_path: Path | None = None) -> None:
    """Delete a cached copy that failed validation so it gets regenerated.

    When ``remote_path`` is given the remote file and its sidecar are removed
    as well.
    """
    targets = [Path(local_path), sidecar_path_for(local_path)]
    if remote_path is not None:
        targets.extend([Path(remote_path), sidecar_path_for(remote_path)])
    for target in targets:
        try:
            if target.exists():
                target.unlink()
                logger.info("Deleted stale file %s", target)
        except OSError as exc:
            logger.warning("Unable to delete stale file %s: %s", target, exc)
