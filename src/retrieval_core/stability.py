from __future__ import annotations

import contextlib
from typing import TypeVar

T = TypeVar("T")

STABLE = "stable"


def stable_api(obj: T) -> T:
    """Mark a public retrieval API object as stable for tooling and documentation."""
    # Bound methods and builtins reject new attributes; leave those unmarked.
    with contextlib.suppress(AttributeError, TypeError):
        obj.__stability__ = STABLE
    return obj


def is_stable(obj: object) -> bool:
    return getattr(obj, "__stability__", None) == STABLE
