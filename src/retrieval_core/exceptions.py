from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping


@dataclass
class RetrievalError(Exception):
    message: str
    code: str = "retrieval_error"
    context: dict[str, Any] = field(default_factory=dict)

    def __init__(self, message: str, *, code: str | None = None, context: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.code
        self.context = dict(context or {})

    def as_log_fields(self) -> dict[str, Any]:
        return {
            "error_code": self.code,
            "error_message": self.message,
            "error_context": self.context,
        }


class ConfigurationError(RetrievalError):
    """A required job or manager parameter is missing; no retry can fix it."""

    code = "configuration_error"

    def __init__(self, message: str, *, parameter: str | None = None, context: Mapping[str, Any] | None = None) -> None:
        merged = dict(context or {})
        if parameter:
            merged["parameter"] = parameter
        super().__init__(message, context=merged)


class ConfigValidationError(RetrievalError):
    code = "config_validation_error"


class YamlParseError(RetrievalError):
    code = "yaml_parse_error"


class InvalidPathError(RetrievalError):
    code = "invalid_path"


class CloudIndexError(RetrievalError):
    code = "cloud_index_error"
