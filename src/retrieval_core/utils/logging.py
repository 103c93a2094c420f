from __future__ import annotations

import logging
from typing import Any


def log_at(logger: logging.Logger, level: int, message: str, *args: Any) -> None:
    """Log at a caller-chosen level.

    Callers mark an artifact as optional by passing ``logging.DEBUG`` and as
    required by passing ``logging.ERROR``.
    """
    logger.log(level, message, *args)
