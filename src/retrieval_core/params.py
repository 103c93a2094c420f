"""Job parameter store and result-skip registry.

``JobParams`` is the in-process implementation of the parameter-store
interface consumed by the resolver: sectioned string key/value pairs with
typed lookups. It also collects the names and extensions of files that were
retrieved purely as inputs, so the result-collection stage never re-uploads
them.
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Protocol, TypeVar, runtime_checkable

from retrieval_core.config import read_yaml
from retrieval_core.stability import stable_api

logger = logging.getLogger(__name__)

T = TypeVar("T", bool, int, float, str)

STEP_PARAMETERS_SECTION = "StepParameters"
JOB_PARAMETERS_SECTION = "JobParameters"

JOB_PARAM_JOB = "Job"
JOB_PARAM_STEP = "Step"
JOB_PARAM_TOOL_NAME = "ToolName"
JOB_PARAM_DATASET_NAME = "DatasetName"
JOB_PARAM_DATASET_ID = "DatasetID"
JOB_PARAM_DATASET_FOLDER_NAME = "DatasetFolderName"
JOB_PARAM_INPUT_FOLDER_NAME = "InputFolderName"
JOB_PARAM_OUTPUT_FOLDER_NAME = "OutputFolderName"
JOB_PARAM_SHARED_RESULTS_FOLDERS = "SharedResultsFolders"
JOB_PARAM_TRANSFER_FOLDER_PATH = "TransferFolderPath"
JOB_PARAM_DATASET_STORAGE_PATH = "DatasetStoragePath"
JOB_PARAM_DATASET_ARCHIVE_PATH = "DatasetArchivePath"
JOB_PARAM_INSTRUMENT_DATA_PURGED = "InstrumentDataPurged"
JOB_PARAM_DATA_PACKAGE_PATH = "DataPackagePath"
JOB_PARAM_MSXML_CACHE_FOLDER_PATH = "MSXMLCacheFolderPath"
JOB_PARAM_MSXML_OUTPUT_TYPE = "MSXMLOutputType"
JOB_PARAM_RAW_DATA_TYPE = "RawDataType"
JOB_PARAM_DICTIONARY_DATASET_FILE_PATHS = "PackedParam_DatasetFilePaths"

_TRUE_VALUES = {"true", "1", "yes", "y", "on"}
_FALSE_VALUES = {"false", "0", "no", "n", "off", ""}


@runtime_checkable
class ParameterStore(Protocol):
    def get_param(self, section_or_key: str, key: str | None = None) -> str: ...

    def get_job_parameter(self, *args: Any) -> Any: ...


@runtime_checkable
class ResultSkipRegistry(Protocol):
    def add_result_file_to_skip(self, file_name: str) -> None: ...

    def add_result_file_extension_to_skip(self, extension: str) -> None: ...


def _coerce(value: Any, default: T) -> T:
    if isinstance(default, bool):
        text = str(value).strip().lower()
        if text in _TRUE_VALUES:
            return True
        if text in _FALSE_VALUES:
            return False
        return default
    if isinstance(default, int):
        try:
            return int(float(str(value).strip()))
        except ValueError:
            return default
    if isinstance(default, float):
        try:
            return float(str(value).strip())
        except ValueError:
            return default
    return str(value)


@stable_api
class JobParams:
    """Sectioned job parameters plus the result-skip lists for one job."""

    def __init__(self, sections: Mapping[str, Mapping[str, Any]] | None = None) -> None:
        self._sections: dict[str, dict[str, str]] = {}
        for section, values in (sections or {}).items():
            for key, value in (values or {}).items():
                self.set_param(section, key, value)
        self.result_files_to_skip: set[str] = set()
        self.result_file_extensions_to_skip: set[str] = set()

    @classmethod
    def from_yaml(cls, path: Path) -> JobParams:
        data = read_yaml(Path(path), "job_params")
        return cls(data)

    @property
    def sections(self) -> dict[str, dict[str, str]]:
        return copy.deepcopy(self._sections)

    def _ordered_sections(self) -> list[str]:
        ordered = [name for name in (STEP_PARAMETERS_SECTION, JOB_PARAMETERS_SECTION) if name in self._sections]
        ordered.extend(name for name in self._sections if name not in ordered)
        return ordered

    def _lookup(self, section: str | None, key: str) -> str | None:
        if section is not None:
            return self._sections.get(section, {}).get(key)
        for name in self._ordered_sections():
            values = self._sections[name]
            if key in values:
                return values[key]
        return None

    def get_param(self, section_or_key: str, key: str | None = None) -> str:
        """Return a parameter as a string ("" when absent).

        ``get_param(key)`` searches every section, step parameters first;
        ``get_param(section, key)`` reads a single section.
        """
        if key is None:
            value = self._lookup(None, section_or_key)
        else:
            value = self._lookup(section_or_key, key)
        return "" if value is None else value

    def get_job_parameter(self, *args: Any) -> Any:
        """Typed lookup: ``(section, key, default)`` or ``(key, default)``.

        The return type follows the type of ``default``; unparseable values
        fall back to the default.
        """
        if len(args) == 3:
            section, key, default = args
        elif len(args) == 2:
            section, (key, default) = None, args
        else:
            raise TypeError("get_job_parameter expects (section, key, default) or (key, default)")
        value = self._lookup(section, key)
        if value is None:
            return default
        return _coerce(value, default)

    def set_param(self, section: str, key: str, value: Any) -> None:
        if value is None:
            text = ""
        elif isinstance(value, bool):
            text = "true" if value else "false"
        else:
            text = str(value)
        self._sections.setdefault(section, {})[key] = text

    @contextmanager
    def override(self, section: str = JOB_PARAMETERS_SECTION, **values: Any) -> Iterator[JobParams]:
        """Temporarily replace parameters; the previous state is restored on exit.

        Restoration also happens when the block raises, so a failed per-job
        retrieval never leaves another job's dataset info behind.
        """
        saved = copy.deepcopy(self._sections)
        try:
            for key, value in values.items():
                self.set_param(section, key, value)
            yield self
        finally:
            self._sections = saved

    def add_result_file_to_skip(self, file_name: str) -> None:
        if file_name:
            self.result_files_to_skip.add(file_name)

    def add_result_file_extension_to_skip(self, extension: str) -> None:
        if extension:
            self.result_file_extensions_to_skip.add(extension)

    def should_skip_result_file(self, file_name: str) -> bool:
        if file_name in self.result_files_to_skip:
            return True
        lower = file_name.lower()
        return any(lower.endswith(ext.lower()) for ext in self.result_file_extensions_to_skip)

    def store_packed_dictionary(self, values: Mapping[str, str], param_name: str) -> None:
        """Store a dictionary as a single tab-separated ``key=value`` parameter."""
        packed = "\t".join(f"{key}={value}" for key, value in values.items())
        self.set_param(JOB_PARAMETERS_SECTION, param_name, packed)

    def get_packed_dictionary(self, param_name: str) -> dict[str, str]:
        packed = self.get_param(JOB_PARAMETERS_SECTION, param_name)
        result: dict[str, str] = {}
        for item in packed.split("\t"):
            if "=" not in item:
                continue
            key, value = item.split("=", 1)
            result[key] = value
        return result


def get_dataset_name(params: ParameterStore) -> str:
    return params.get_param(JOB_PARAMETERS_SECTION, JOB_PARAM_DATASET_NAME) or params.get_param(
        JOB_PARAM_DATASET_NAME
    )
