"""Shared utility functions for tiered retrieval."""

from retrieval_core.utils.hash import compute_file_hash
from retrieval_core.utils.io import (
    ensure_dir,
    read_first_line,
    read_tsv,
    write_text_atomic,
    write_tsv,
)
from retrieval_core.utils.logging import log_at
from retrieval_core.utils.paths import has_wildcard, join, matches

__all__ = [
    "compute_file_hash",
    "ensure_dir",
    "has_wildcard",
    "join",
    "log_at",
    "matches",
    "read_first_line",
    "read_tsv",
    "write_text_atomic",
    "write_tsv",
]
