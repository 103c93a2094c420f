"""Tiered resolution and retrieval of analysis job input files."""

from retrieval_core.__version__ import __version__
from retrieval_core.archive_codec import ArchiveCodec
from retrieval_core.candidates import Tier, TierAvailability
from retrieval_core.cloud_index import CloudArchiveIndex, HttpCloudIndexClient
from retrieval_core.config import RetrievalSettings, RetryConfig, load_settings
from retrieval_core.copy_engine import CopyEngine
from retrieval_core.data_package import DataPackageFileHandler, DataPackageRetrievalOptions, load_data_package
from retrieval_core.exceptions import ConfigurationError, RetrievalError
from retrieval_core.file_search import FileSearch
from retrieval_core.msxml_cache import MsxmlCache
from retrieval_core.params import JobParams
from retrieval_core.probe import TierProbe
from retrieval_core.resolver import Resolver
from retrieval_core.result import ResolutionResult, Result
from retrieval_core.session import RetrievalSession

__all__ = [
    "__version__",
    "ArchiveCodec",
    "CloudArchiveIndex",
    "ConfigurationError",
    "CopyEngine",
    "DataPackageFileHandler",
    "DataPackageRetrievalOptions",
    "FileSearch",
    "HttpCloudIndexClient",
    "JobParams",
    "MsxmlCache",
    "ResolutionResult",
    "Resolver",
    "Result",
    "RetrievalError",
    "RetrievalSession",
    "RetrievalSettings",
    "RetryConfig",
    "Tier",
    "TierAvailability",
    "TierProbe",
    "load_data_package",
    "load_settings",
]
