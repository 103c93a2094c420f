from __future__ import annotations

import hashlib
import logging
from pathlib import Path

logger = logging.getLogger("retrieval_core.utils")

SUPPORTED_HASH_TYPES = ("md5", "sha256")


def compute_file_hash(path: Path, hash_type: str = "md5") -> str | None:
    """Hash a file in 1 MiB chunks.

    Args:
        path: File to hash
        hash_type: "md5" or "sha256"

    Returns:
        Lowercase hex digest, or None if the file could not be read

    Raises:
        ValueError: If hash_type is not supported
    """
    hash_type = hash_type.lower()
    if hash_type not in SUPPORTED_HASH_TYPES:
        raise ValueError(f"Unsupported hash type: {hash_type}")
    try:
        h = hashlib.new(hash_type)
        with Path(path).open("rb") as f:
            for chunk in iter(lambda: f.read(1024 * 1024), b""):
                h.update(chunk)
        return h.hexdigest()
    except OSError:
        logger.warning("Failed to compute %s hash for %s", hash_type, path, exc_info=True)
        return None
