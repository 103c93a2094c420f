from __future__ import annotations

import contextvars
import json
import logging
import re
import time
from typing import Any

_CONFIGURED = False

# Context variables for structured logging (dataset, job, tier, ...)
_log_context: contextvars.ContextVar[dict[str, Any] | None] = contextvars.ContextVar(
    "log_context", default=None
)

# Credentials that can appear in cloud index URLs
_URL_USERINFO = re.compile(r"(?P<scheme>https?://)[^/\s:@]+:[^/\s@]+@")
_TOKEN_PARAM = re.compile(r"(?P<key>(?:token|api_key|apikey|password)=)[^&\s]+", re.IGNORECASE)


def redact(text: str) -> str:
    text = _URL_USERINFO.sub(r"\g<scheme>***:***@", text)
    return _TOKEN_PARAM.sub(r"\g<key>***", text)


def get_log_context() -> dict[str, Any]:
    """Get the current logging context."""
    ctx = _log_context.get()
    return ctx.copy() if ctx else {}


def set_log_context(**kwargs: Any) -> None:
    """Set the current logging context (replaces existing)."""
    _log_context.set(dict(kwargs))


def update_log_context(**kwargs: Any) -> None:
    """Update the current logging context (merges with existing)."""
    current = get_log_context()
    current.update(kwargs)
    _log_context.set(current)


def clear_log_context() -> None:
    _log_context.set({})


class LogContext:
    """Context manager binding fields (dataset, job) for the duration of a block."""

    def __init__(self, **kwargs: Any):
        self.kwargs = kwargs
        self.token: contextvars.Token | None = None

    def __enter__(self) -> LogContext:
        current = get_log_context()
        current.update(self.kwargs)
        self.token = _log_context.set(current)
        return self

    def __exit__(self, *args: Any) -> None:
        if self.token is not None:
            _log_context.reset(self.token)


class TextFormatter(logging.Formatter):
    def __init__(self) -> None:
        super().__init__("%(asctime)s | %(levelname)s | %(name)s | %(message)s")
        self.converter = time.gmtime

    def format(self, record: logging.LogRecord) -> str:
        formatted = super().format(record)
        context = get_log_context()
        if context:
            fields = " ".join(f"{key}={value}" for key, value in sorted(context.items()))
            formatted = f"{formatted} | {fields}"
        return redact(formatted)


class JsonFormatter(logging.Formatter):
    def __init__(self) -> None:
        super().__init__()
        self.converter = time.gmtime

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": self.formatTime(record, "%Y-%m-%dT%H:%M:%SZ"),
            "level": record.levelname,
            "logger": record.name,
            "message": redact(record.getMessage()),
        }

        context = get_log_context()
        if context:
            payload["context"] = context

        if record.exc_info:
            payload["exc_info"] = redact(self.formatException(record.exc_info))
        return json.dumps(payload, ensure_ascii=False, default=str)


def _resolve_level(level: str | int | None) -> int:
    if isinstance(level, int):
        return level
    if level is None:
        return logging.INFO
    return logging._nameToLevel.get(str(level).upper(), logging.INFO)


def configure_logging(*, level: str | int | None = None, fmt: str = "text") -> None:
    global _CONFIGURED
    if _CONFIGURED:
        return

    root = logging.getLogger()
    root.setLevel(_resolve_level(level))

    if not root.handlers:
        handler = logging.StreamHandler()
        if fmt.lower() == "json":
            handler.setFormatter(JsonFormatter())
        else:
            handler.setFormatter(TextFormatter())
        root.addHandler(handler)

    _CONFIGURED = True


def add_logging_args(parser: Any) -> None:
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Logging level (default: INFO)",
    )
    parser.add_argument(
        "--log-format",
        default="text",
        choices=["text", "json"],
        help="Logging format (default: text)",
    )
