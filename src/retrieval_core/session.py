"""Wiring for one job's retrieval components.

A ``RetrievalSession`` owns the objects a job needs: the cloud index and
its download queue, the archive codec, the copy engine, the tier probe,
the resolver, the mzML/mzXML cache and the file-search facade. The cloud
index client may be shared between sessions; each session gets its own
queue.
"""

from __future__ import annotations

import dataclasses
import logging
from pathlib import Path

from retrieval_core.archive_codec import ArchiveCodec
from retrieval_core.candidates import TierAvailability
from retrieval_core.cloud_index import CloudArchiveIndex, CloudIndexClient, HttpCloudIndexClient
from retrieval_core.config import RetrievalSettings
from retrieval_core.copy_engine import CopyEngine
from retrieval_core.data_package import DataPackage, DataPackageFileHandler
from retrieval_core.file_search import FileSearch
from retrieval_core.logging_config import LogContext
from retrieval_core.msxml_cache import MsxmlCache
from retrieval_core.params import JOB_PARAM_JOB, STEP_PARAMETERS_SECTION, JobParams, get_dataset_name
from retrieval_core.probe import TierProbe
from retrieval_core.resolver import Resolver
from retrieval_core.stability import stable_api

logger = logging.getLogger(__name__)


@stable_api
@dataclasses.dataclass
class RetrievalSession:
    settings: RetrievalSettings
    params: JobParams
    codec: ArchiveCodec
    cloud: CloudArchiveIndex | None
    copy_engine: CopyEngine
    resolver: Resolver
    msxml_cache: MsxmlCache
    file_search: FileSearch

    @classmethod
    def from_settings(
        cls,
        settings: RetrievalSettings,
        params: JobParams,
        client: CloudIndexClient | None = None,
    ) -> RetrievalSession:
        """Build every component from the settings.

        Args:
            settings: Manager-level settings
            params: The job's parameters
            client: Cloud index client; defaults to an HTTP client when
                ``cloud_index_url`` is set. Without either, cloud search is
                disabled.
        """
        debug_level = settings.debug_level
        retry = settings.retry
        work_dir = Path(settings.work_dir)
        work_dir.mkdir(parents=True, exist_ok=True)

        codec = ArchiveCodec(debug_level=debug_level, crc_check_threshold_bytes=settings.zip_crc_check_threshold_bytes)

        cloud_search_disabled = settings.cloud_search_disabled
        if client is None and settings.cloud_index_url and not cloud_search_disabled:
            client = HttpCloudIndexClient(settings.cloud_index_url, max_attempts=retry.max_attempts)
        if client is None:
            cloud_search_disabled = True
        cloud = None if cloud_search_disabled else CloudArchiveIndex(client, codec=codec)

        availability = TierAvailability(
            cloud_search_disabled=cloud_search_disabled,
            archive_available=settings.archive_available,
        )
        copy_engine = CopyEngine(cloud, codec, retry, debug_level=debug_level)
        probe = TierProbe(
            cloud,
            debug_level=debug_level,
            holdoff_seconds=retry.holdoff_seconds,
            max_holdoff_seconds=retry.max_holdoff_seconds,
        )
        resolver = Resolver(params, probe, availability, debug_level=debug_level, max_attempts=retry.max_attempts)
        msxml_cache = MsxmlCache(
            params, settings.msxml_cache_path, work_dir, copy_engine, resolver, debug_level=debug_level
        )
        file_search = FileSearch(params, resolver, copy_engine, work_dir, msxml_cache, debug_level=debug_level)

        logger.debug(
            "Retrieval session ready (work_dir=%s, cloud=%s, archive=%s)",
            work_dir,
            "disabled" if cloud is None else "enabled",
            "available" if settings.archive_available else "unavailable",
        )
        return cls(settings, params, codec, cloud, copy_engine, resolver, msxml_cache, file_search)

    @property
    def work_dir(self) -> Path:
        return self.file_search.work_dir

    def log_context(self) -> LogContext:
        return LogContext(
            dataset=get_dataset_name(self.params),
            job=self.params.get_job_parameter(STEP_PARAMETERS_SECTION, JOB_PARAM_JOB, 0),
        )

    def data_package_handler(self, package: DataPackage) -> DataPackageFileHandler:
        return DataPackageFileHandler.from_package(
            self.params, self.file_search, package, debug_level=self.settings.debug_level
        )

    def process_download_queue(self) -> bool:
        return self.file_search.process_download_queue()
