from __future__ import annotations

import fnmatch
import os


def has_wildcard(pattern: str) -> bool:
    return any(ch in pattern for ch in "*?[")


def matches(name: str, pattern: str) -> bool:
    """Case-insensitive wildcard match of a single path component."""
    return fnmatch.fnmatch(name.lower(), pattern.lower())


def join(*parts: str) -> str:
    """Join path parts, skipping empty ones."""
    kept = [part for part in parts if part]
    if not kept:
        return ""
    return os.path.join(*kept)
