"""
Shared pytest fixtures for tiered retrieval tests.

Provides common mocks and fixtures for:
- A storage layout with transfer, primary and archive tiers
- Job parameters for a single-dataset job
- An in-memory cloud archive index client
- Component wiring (probe, resolver, copy engine, file search)
"""

from __future__ import annotations

import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import pytest

SRC_ROOT = Path(__file__).resolve().parents[1] / "src"
if SRC_ROOT.is_dir():
    sys.path.insert(0, str(SRC_ROOT))

from retrieval_core.archive_codec import ArchiveCodec  # noqa: E402
from retrieval_core.candidates import TierAvailability  # noqa: E402
from retrieval_core.cloud_index import CloudArchiveIndex, CloudFileDescriptor  # noqa: E402
from retrieval_core.config import RetryConfig  # noqa: E402
from retrieval_core.copy_engine import CopyEngine  # noqa: E402
from retrieval_core.file_search import FileSearch  # noqa: E402
from retrieval_core.msxml_cache import MsxmlCache  # noqa: E402
from retrieval_core.params import JobParams  # noqa: E402
from retrieval_core.probe import TierProbe  # noqa: E402
from retrieval_core.resolver import Resolver  # noqa: E402

DATASET = "QC_Shew_01"
DATASET_ID = 5000
JOB = 1234
INPUT_FOLDER = "SEQ202401011200_Auto1234"
MSXML_FOLDER = "MSXML_Gen_1_120_5000"


# =============================================================================
# Sleep suppression
# =============================================================================


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch: pytest.MonkeyPatch) -> list[float]:
    """Record hold-off sleeps instead of waiting."""
    calls: list[float] = []
    monkeypatch.setattr("time.sleep", calls.append)
    return calls


# =============================================================================
# Storage layout fixtures
# =============================================================================


@dataclass
class StorageLayout:
    root: Path
    transfer_root: Path
    storage_root: Path
    archive_root: Path
    work_dir: Path
    cache_root: Path

    def dataset_dir(self, tier_root: Path, dataset: str = DATASET) -> Path:
        path = tier_root / dataset
        path.mkdir(parents=True, exist_ok=True)
        return path

    def write_file(self, path: Path, content: bytes | str = b"data") -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, str):
            path.write_text(content, encoding="utf-8")
        else:
            path.write_bytes(content)
        return path


@pytest.fixture
def storage(tmp_path: Path) -> StorageLayout:
    """Empty tier roots below tmp_path; the primary and archive roots end in a year-quarter."""
    layout = StorageLayout(
        root=tmp_path,
        transfer_root=tmp_path / "transfer",
        storage_root=tmp_path / "proto" / "LTQ_Orb" / "2024_1",
        archive_root=tmp_path / "archive" / "LTQ_Orb" / "2024_1",
        work_dir=tmp_path / "work",
        cache_root=tmp_path / "MSXML_Cache",
    )
    for path in (layout.transfer_root, layout.storage_root, layout.archive_root, layout.work_dir, layout.cache_root):
        path.mkdir(parents=True, exist_ok=True)
    return layout


def job_param_sections(storage: StorageLayout, **overrides: Any) -> dict[str, dict[str, Any]]:
    step = {
        "Job": JOB,
        "Step": 1,
        "ToolName": "MSGFPlus",
        "InputFolderName": INPUT_FOLDER,
        "SharedResultsFolders": MSXML_FOLDER,
        "OutputFolderName": "MSG202401011300_Auto1234",
    }
    job = {
        "DatasetName": DATASET,
        "DatasetID": DATASET_ID,
        "DatasetFolderName": DATASET,
        "TransferFolderPath": str(storage.transfer_root),
        "DatasetStoragePath": str(storage.storage_root),
        "DatasetArchivePath": str(storage.archive_root),
        "RawDataType": "dot_raw_files",
        "InstrumentDataPurged": 0,
    }
    for key, value in overrides.items():
        if key in step:
            step[key] = value
        else:
            job[key] = value
    return {"StepParameters": step, "JobParameters": job}


@pytest.fixture
def job_params(storage: StorageLayout) -> JobParams:
    return JobParams(job_param_sections(storage))


# =============================================================================
# Cloud index fixtures
# =============================================================================


class FakeCloudClient:
    """In-memory stand-in for the cloud index service."""

    def __init__(self) -> None:
        self.files: list[CloudFileDescriptor] = []
        self.contents: dict[int, bytes] = {}
        self.queries: list[tuple[str, str, str, bool]] = []
        self.downloads: list[int] = []
        self.query_error: Exception | None = None
        self.failing_downloads: set[int] = set()

    def add(
        self,
        file_id: int,
        filename: str,
        subdir: str = "",
        *,
        dataset: str = DATASET,
        transaction_id: int = 1,
        content: bytes = b"cloud data",
        is_directory: bool = False,
    ) -> CloudFileDescriptor:
        descriptor = CloudFileDescriptor(
            file_id=file_id,
            filename=filename,
            subdir=subdir,
            transaction_id=transaction_id,
            dataset=dataset,
            size=len(content),
            is_directory=is_directory,
        )
        self.files.append(descriptor)
        self.contents[file_id] = content
        return descriptor

    def query(self, dataset: str, subdir: str, filename: str, recurse: bool) -> list[CloudFileDescriptor]:
        self.queries.append((dataset, subdir, filename, recurse))
        if self.query_error is not None:
            raise self.query_error
        return [item for item in self.files if item.dataset == dataset]

    def download(self, descriptor: CloudFileDescriptor, target_path: Path) -> None:
        self.downloads.append(descriptor.file_id)
        if descriptor.file_id in self.failing_downloads:
            raise OSError(f"simulated download failure for {descriptor.file_id}")
        target_path = Path(target_path)
        target_path.parent.mkdir(parents=True, exist_ok=True)
        target_path.write_bytes(self.contents.get(descriptor.file_id, b""))


class BatchCloudClient(FakeCloudClient):
    """Fake client that takes the whole download queue in one call."""

    def __init__(self) -> None:
        super().__init__()
        self.batches: list[list[int]] = []

    def download_many(self, descriptors: list[CloudFileDescriptor], target_dir: Path) -> None:
        self.batches.append([descriptor.file_id for descriptor in descriptors])
        for descriptor in descriptors:
            target = Path(target_dir) / descriptor.filename
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(self.contents.get(descriptor.file_id, b""))


@pytest.fixture
def cloud_client() -> FakeCloudClient:
    return FakeCloudClient()


@pytest.fixture
def cloud(cloud_client: FakeCloudClient) -> CloudArchiveIndex:
    return CloudArchiveIndex(cloud_client, codec=ArchiveCodec())


# =============================================================================
# Component wiring
# =============================================================================


def build_file_search(
    params: JobParams,
    storage: StorageLayout,
    cloud: CloudArchiveIndex | None = None,
    *,
    archive_available: bool = False,
    with_cache: bool = True,
) -> FileSearch:
    availability = TierAvailability(cloud_search_disabled=cloud is None, archive_available=archive_available)
    codec = cloud.codec if cloud is not None else ArchiveCodec()
    copy_engine = CopyEngine(cloud, codec, RetryConfig(copy_holdoff_seconds=0.01))
    resolver = Resolver(params, TierProbe(cloud), availability)
    msxml_cache = None
    if with_cache:
        msxml_cache = MsxmlCache(params, storage.cache_root, storage.work_dir, copy_engine, resolver)
    return FileSearch(params, resolver, copy_engine, storage.work_dir, msxml_cache)
