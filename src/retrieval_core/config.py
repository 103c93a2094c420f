"""Settings files for the retrieval engine.

Settings and job-parameter files are YAML, validated against the JSON
schemas shipped in ``retrieval_core/schemas``.
"""

from __future__ import annotations

import dataclasses
import json
import logging
from functools import cache
from importlib import resources
from pathlib import Path
from typing import Any

import yaml
from jsonschema import Draft7Validator, FormatChecker

from retrieval_core.exceptions import ConfigValidationError, YamlParseError
from retrieval_core.stability import stable_api

logger = logging.getLogger(__name__)

_FALLBACK_SCHEMA_DIR = Path(__file__).resolve().parent / "schemas"

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_HOLDOFF_SECONDS = 5
MAX_HOLDOFF_SECONDS = 600
DEFAULT_COPY_HOLDOFF_SECONDS = 15
DEFAULT_ZIP_CRC_CHECK_THRESHOLD_BYTES = 4 * 1024 * 1024 * 1024


@stable_api
@dataclasses.dataclass
class RetryConfig:
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    holdoff_seconds: float = DEFAULT_HOLDOFF_SECONDS
    max_holdoff_seconds: float = MAX_HOLDOFF_SECONDS
    copy_holdoff_seconds: float = DEFAULT_COPY_HOLDOFF_SECONDS


@stable_api
@dataclasses.dataclass
class RetrievalSettings:
    """Manager-level settings shared by every retrieval call of a job."""

    work_dir: Path
    msxml_cache_path: str = ""
    cloud_index_url: str = ""
    cloud_search_disabled: bool = False
    archive_available: bool = False
    debug_level: int = 1
    retry: RetryConfig = dataclasses.field(default_factory=RetryConfig)
    zip_crc_check_threshold_bytes: int = DEFAULT_ZIP_CRC_CHECK_THRESHOLD_BYTES

    @classmethod
    def from_dict(cls, data: dict[str, Any], *, base_dir: Path | None = None) -> RetrievalSettings:
        work_dir = Path(data.get("work_dir") or ".")
        if base_dir is not None and not work_dir.is_absolute():
            work_dir = base_dir / work_dir
        retry = RetryConfig(**(data.get("retry") or {}))
        return cls(
            work_dir=work_dir,
            msxml_cache_path=str(data.get("msxml_cache_path") or ""),
            cloud_index_url=str(data.get("cloud_index_url") or ""),
            cloud_search_disabled=bool(data.get("cloud_search_disabled", False)),
            archive_available=bool(data.get("archive_available", False)),
            debug_level=int(data.get("debug_level", 1)),
            retry=retry,
            zip_crc_check_threshold_bytes=int(
                data.get("zip_crc_check_threshold_bytes", DEFAULT_ZIP_CRC_CHECK_THRESHOLD_BYTES)
            ),
        )


def _load_schema_from_package(schema_name: str) -> dict[str, Any] | None:
    try:
        schema_path = resources.files("retrieval_core").joinpath(
            "schemas",
            f"{schema_name}.schema.json",
        )
        return json.loads(schema_path.read_text(encoding="utf-8"))
    except (FileNotFoundError, ModuleNotFoundError, AttributeError):
        return None


@cache
def load_schema(schema_name: str) -> dict[str, Any]:
    schema = _load_schema_from_package(schema_name)
    if schema is not None:
        return schema
    schema_path = _FALLBACK_SCHEMA_DIR / f"{schema_name}.schema.json"
    if not schema_path.exists():
        raise FileNotFoundError(f"Schema not found: {schema_path}")
    return json.loads(schema_path.read_text(encoding="utf-8"))


def validate_config(config: Any, schema_name: str, *, config_path: Path | None = None) -> None:
    schema = load_schema(schema_name)
    validator = Draft7Validator(schema, format_checker=FormatChecker())
    errors = sorted(validator.iter_errors(config), key=lambda exc: list(exc.path))
    if not errors:
        return
    location = str(config_path) if config_path else "<config>"
    lines = [f"Schema validation failed for {location} ({schema_name})."]
    error_details: list[dict[str, str]] = []
    for error in errors[:10]:
        path = ".".join(str(p) for p in error.path) if error.path else "<root>"
        lines.append(f"- {path}: {error.message}")
        error_details.append({"path": path, "message": error.message})
    if len(errors) > 10:
        lines.append(f"... and {len(errors) - 10} more errors.")
    raise ConfigValidationError(
        "\n".join(lines),
        context={
            "path": location,
            "schema": schema_name,
            "errors": error_details,
            "truncated": len(errors) > 10,
        },
    )


def read_yaml(path: Path, schema_name: str | None = None) -> Any:
    path = Path(path)
    text = path.read_text(encoding="utf-8")
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise YamlParseError(
            f"YAML parse error in {path}: {exc}",
            context={"path": str(path), "error": str(exc)},
        ) from exc
    if data is None:
        data = {}
    if schema_name:
        validate_config(data, schema_name, config_path=path)
    return data


@stable_api
def load_settings(path: Path) -> RetrievalSettings:
    """Load and validate a retrieval settings file.

    Relative ``work_dir`` values are resolved against the settings file's
    directory.
    """
    path = Path(path)
    data = read_yaml(path, "retrieval_settings")
    settings = RetrievalSettings.from_dict(data, base_dir=path.parent)
    logger.debug("Loaded retrieval settings from %s (work_dir=%s)", path, settings.work_dir)
    return settings
