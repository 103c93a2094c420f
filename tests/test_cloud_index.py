"""Tests for retrieval_core.cloud_index module."""

from __future__ import annotations

import zipfile
from io import BytesIO
from pathlib import Path
from unittest.mock import Mock

import pytest
import requests
from conftest import BatchCloudClient

from retrieval_core.cloud_index import (
    CloudArchiveIndex,
    CloudFileDescriptor,
    HttpCloudIndexClient,
    add_file_to_cloud_directory_path,
    append_file_id,
    cloud_path,
    extract_file_id,
    is_cloud_path,
    newest_transaction,
)
from retrieval_core.exceptions import CloudIndexError

DATASET = "QC_Shew_01"


# =============================================================================
# Helpers
# =============================================================================


class FakeClock:
    def __init__(self, now: float = 1_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _zip_bytes(members: dict[str, bytes]) -> bytes:
    buffer = BytesIO()
    with zipfile.ZipFile(buffer, "w") as zf:
        for name, data in members.items():
            zf.writestr(name, data)
    return buffer.getvalue()


def _connection_error() -> CloudIndexError:
    return CloudIndexError("connection refused", context={"connection": True})


# =============================================================================
# Encoded path helpers
# =============================================================================


class TestCloudPathHelpers:
    """Test the encoded cloud path helpers."""

    def test_cloud_path_skips_empty_parts(self) -> None:
        assert cloud_path() == "//CloudArchive"
        assert cloud_path("QC_Shew_01", "", "SIC1") == "//CloudArchive/QC_Shew_01/SIC1"

    def test_is_cloud_path_accepts_backslashes(self) -> None:
        assert is_cloud_path("\\\\CloudArchive\\QC_Shew_01")
        assert not is_cloud_path("/proto/QC_Shew_01")

    def test_extract_file_id(self) -> None:
        assert extract_file_id("//CloudArchive/QC/a.raw@CloudFileID_42") == (42, "//CloudArchive/QC/a.raw")
        assert extract_file_id("//CloudArchive/QC/a.raw") == (0, "//CloudArchive/QC/a.raw")

    def test_add_file_keeps_id_at_end(self) -> None:
        directory = append_file_id("//CloudArchive/QC_Shew_01/", 9)
        assert add_file_to_cloud_directory_path(directory, "a.raw") == "//CloudArchive/QC_Shew_01/a.raw@CloudFileID_9"
        assert add_file_to_cloud_directory_path("//CloudArchive", "a.raw") == "//CloudArchive/a.raw"

    def test_newest_transaction(self) -> None:
        items = [
            CloudFileDescriptor(1, "a_ScanStats.txt", transaction_id=10),
            CloudFileDescriptor(2, "a_ScanStats.txt", transaction_id=30),
            CloudFileDescriptor(3, "a_ScanStats.txt", transaction_id=20),
        ]
        assert newest_transaction(items).file_id == 2
        assert newest_transaction([]) is None

    def test_descriptor_from_dict_normalizes_subdir(self) -> None:
        descriptor = CloudFileDescriptor.from_dict(
            {"file_id": "5", "filename": "a.txt", "subdir": "\\SIC1\\", "transaction_id": None}
        )
        assert descriptor.file_id == 5
        assert descriptor.subdir == "SIC1"
        assert descriptor.relative_path == "SIC1/a.txt"


# =============================================================================
# CloudArchiveIndex
# =============================================================================


class TestFindFiles:
    """Test CloudArchiveIndex.find_files filtering and bookkeeping."""

    def test_filters_by_name_and_subdirectory(self, cloud_client, cloud: CloudArchiveIndex) -> None:
        cloud_client.add(1, "QC_Shew_01.raw")
        cloud_client.add(2, "QC_Shew_01_syn.txt", "SEQ1")
        cloud_client.add(3, "QC_Shew_01_fht.txt", "SEQ1")

        assert [f.file_id for f in cloud.find_files("*.raw", "", DATASET)] == [1]
        assert [f.file_id for f in cloud.find_files("*_syn.txt", "SEQ1", DATASET)] == [2]
        assert cloud.find_files("*_syn.txt", "", DATASET) == []
        assert [f.file_id for f in cloud.find_files("*_syn.txt", "", DATASET, recurse=True)] == [2]

    def test_subdirectory_wildcard(self, cloud_client, cloud: CloudArchiveIndex) -> None:
        cloud_client.add(1, "QC_Shew_01_SICstats.txt", "SIC202401")
        assert [f.file_id for f in cloud.find_files("*", "SIC*", DATASET)] == [1]

    def test_all_found_accumulates_without_duplicates(self, cloud_client, cloud: CloudArchiveIndex) -> None:
        cloud_client.add(1, "a.raw")
        cloud_client.add(2, "b.txt")

        cloud.find_files("a.raw", "", DATASET)
        cloud.find_files("*", "", DATASET)
        cloud.find_files("b.txt", "", DATASET)

        assert [f.file_id for f in cloud.recently_found] == [2]
        assert [f.file_id for f in cloud.all_found] == [1, 2]

    def test_query_error_returns_empty(self, cloud_client, cloud: CloudArchiveIndex) -> None:
        cloud_client.add(1, "a.raw")
        cloud_client.query_error = CloudIndexError("bad request")
        assert cloud.find_files("a.raw", "", DATASET) == []
        assert cloud.is_disabled is False


class TestAutoDisable:
    """Three connection errors disable querying for a while."""

    def test_disable_and_re_enable(self, cloud_client) -> None:
        clock = FakeClock()
        cloud = CloudArchiveIndex(cloud_client, clock=clock)
        cloud_client.add(1, "a.raw")
        cloud_client.query_error = _connection_error()

        for _ in range(3):
            cloud.find_files("a.raw", "", DATASET)
        assert cloud.is_disabled
        assert len(cloud_client.queries) == 3

        cloud_client.query_error = None
        assert cloud.find_files("a.raw", "", DATASET) == []
        assert len(cloud_client.queries) == 3

        clock.now += 15 * 60 + 1
        assert [f.file_id for f in cloud.find_files("a.raw", "", DATASET)] == [1]
        assert cloud.is_disabled is False

    def test_success_resets_error_count(self, cloud_client) -> None:
        cloud = CloudArchiveIndex(cloud_client, clock=FakeClock())
        cloud_client.add(1, "a.raw")

        for _ in range(2):
            cloud_client.query_error = _connection_error()
            cloud.find_files("a.raw", "", DATASET)
            cloud.find_files("a.raw", "", DATASET)
            cloud_client.query_error = None
            cloud.find_files("a.raw", "", DATASET)

        assert cloud.is_disabled is False


class TestDownloadQueue:
    """Test queueing and processing downloads."""

    def test_queue_requires_known_file_id(self, cloud_client, cloud: CloudArchiveIndex) -> None:
        cloud_client.add(1, "a.raw")
        assert cloud.add_file_to_download_queue("//CloudArchive/QC_Shew_01/a.raw") is False
        assert cloud.add_file_to_download_queue("//CloudArchive/QC_Shew_01/a.raw@CloudFileID_1") is False

        cloud.find_files("a.raw", "", DATASET)
        assert cloud.add_file_to_download_queue("//CloudArchive/QC_Shew_01/a.raw@CloudFileID_1") is True
        assert list(cloud.files_to_download) == [1]

    def test_empty_queue_is_a_noop(self, cloud: CloudArchiveIndex, tmp_path: Path) -> None:
        result = cloud.process_download_queue(tmp_path)
        assert result.is_noop
        assert result
        assert result.to_dict() == {"status": "noop", "reason": "Download queue is empty"}

    def test_process_downloads_and_empties_queue(self, cloud_client, cloud: CloudArchiveIndex, tmp_path: Path) -> None:
        descriptor = cloud_client.add(1, "a.raw", content=b"raw bytes")
        cloud.add_file_to_download_queue(descriptor)

        result = cloud.process_download_queue(tmp_path)

        assert result.is_ok
        assert result.value == [str(tmp_path / "a.raw")]
        assert (tmp_path / "a.raw").read_bytes() == b"raw bytes"
        assert cloud.files_to_download == {}
        assert cloud.downloaded_files[str(tmp_path / "a.raw")] == descriptor

    def test_failed_download_reports_error_and_clears_queue(
        self, cloud_client, cloud: CloudArchiveIndex, tmp_path: Path
    ) -> None:
        good = cloud_client.add(1, "a.raw")
        bad = cloud_client.add(2, "b.raw")
        cloud_client.failing_downloads.add(2)
        cloud.add_file_to_download_queue(good)
        cloud.add_file_to_download_queue(bad)

        result = cloud.process_download_queue(tmp_path)

        assert result.is_err
        assert result.error == "download_failed"
        assert result.extras["downloaded"] == [str(tmp_path / "a.raw")]
        assert cloud.files_to_download == {}

    def test_unzip_required(self, cloud_client, cloud: CloudArchiveIndex, tmp_path: Path) -> None:
        descriptor = cloud_client.add(1, "s001.zip", content=_zip_bytes({"fid": b"fid"}))
        cloud.add_file_to_download_queue(descriptor, unzip_required=True)

        result = cloud.process_download_queue(tmp_path)

        assert result.is_ok
        assert (tmp_path / "fid").read_bytes() == b"fid"
        assert [entry.name for entry in cloud.most_recent_unzipped_files] == ["fid"]

    def test_corrupt_download_fails_and_is_kept(self, cloud_client, cloud: CloudArchiveIndex, tmp_path: Path) -> None:
        descriptor = cloud_client.add(1, "QC_Shew_01_dta.zip", content=b"not a zip archive")
        cloud.add_file_to_download_queue(descriptor, unzip_required=True)

        result = cloud.process_download_queue(tmp_path)

        assert result.is_err
        assert result.error == "download_failed"
        assert (tmp_path / "QC_Shew_01_dta.zip").is_file()
        assert cloud.most_recent_unzipped_files == []

    def test_batch_client_gets_one_call(self, tmp_path: Path) -> None:
        client = BatchCloudClient()
        cloud = CloudArchiveIndex(client)
        for file_id, name in [(1, "a.raw"), (2, "b.raw"), (3, "c.raw")]:
            cloud.add_file_to_download_queue(client.add(file_id, name, content=name.encode()))

        result = cloud.process_download_queue(tmp_path)

        assert result.is_ok
        assert client.batches == [[1, 2, 3]]
        assert client.downloads == []
        assert (tmp_path / "b.raw").read_bytes() == b"b.raw"
        assert cloud.files_to_download == {}

    def test_failed_batch_fails_every_entry(self, tmp_path: Path) -> None:
        client = BatchCloudClient()
        client.download_many = Mock(side_effect=CloudIndexError("bundle request failed"))
        cloud = CloudArchiveIndex(client)
        cloud.add_file_to_download_queue(client.add(1, "a.raw"))
        cloud.add_file_to_download_queue(client.add(2, "b.raw"))

        result = cloud.process_download_queue(tmp_path)

        assert result.is_err
        assert result.extras["downloaded"] == []
        assert client.download_many.call_count == 1


# =============================================================================
# HTTP client
# =============================================================================


def _streaming_response(chunks) -> Mock:
    response = Mock()
    response.__enter__ = Mock(return_value=response)
    response.__exit__ = Mock(return_value=False)
    response.iter_content.return_value = chunks
    return response


class TestHttpCloudIndexClient:
    """Test HttpCloudIndexClient against a mocked session."""

    def test_query_parses_records(self) -> None:
        session = Mock()
        session.request.return_value.json.return_value = [
            {"file_id": 11, "filename": "QC_Shew_01.raw", "subdir": "", "transaction_id": 3, "dataset": DATASET},
        ]
        client = HttpCloudIndexClient("https://index.example.org/api/", session=session)

        files = client.query(DATASET, "", "*.raw", False)

        assert [f.file_id for f in files] == [11]
        assert session.request.call_args.args == ("GET", "https://index.example.org/api/files")
        assert session.request.call_args.kwargs["params"]["recurse"] == "false"

    def test_connection_error_flagged(self) -> None:
        session = Mock()
        session.request.side_effect = requests.exceptions.ConnectionError("refused")
        client = HttpCloudIndexClient("https://index.example.org", session=session, max_attempts=1)

        with pytest.raises(CloudIndexError) as excinfo:
            client.query(DATASET, "", "*", False)
        assert excinfo.value.context["connection"] is True

    def test_attempts_not_multiplied(self, no_sleep: list[float]) -> None:
        session = Mock()
        session.request.side_effect = requests.exceptions.ConnectionError("refused")
        client = HttpCloudIndexClient("https://index.example.org", session=session, max_attempts=3)

        with pytest.raises(CloudIndexError):
            client.query(DATASET, "", "*", False)

        assert session.request.call_count == 3
        assert no_sleep == [1.0, 2.0]

    def test_default_session_has_no_transport_retries(self) -> None:
        client = HttpCloudIndexClient("https://index.example.org")
        retries = client.session.get_adapter("https://index.example.org").max_retries
        assert retries.total == 0
        assert client.session.headers["User-Agent"].startswith("tiered-retrieval/")

    def test_invalid_json(self) -> None:
        session = Mock()
        session.request.return_value.json.side_effect = ValueError("no json")
        client = HttpCloudIndexClient("https://index.example.org", session=session)
        with pytest.raises(CloudIndexError):
            client.query(DATASET, "", "*", False)

    def test_download_streams_to_target(self, tmp_path: Path) -> None:
        session = Mock()
        session.request.return_value = _streaming_response([b"abc", b"", b"def"])
        client = HttpCloudIndexClient("https://index.example.org", session=session)

        client.download(CloudFileDescriptor(11, "a.raw"), tmp_path / "out" / "a.raw")

        assert (tmp_path / "out" / "a.raw").read_bytes() == b"abcdef"
        assert session.request.call_args.args == ("GET", "https://index.example.org/files/11/content")

    def test_interrupted_download_removes_partial_file(self, tmp_path: Path) -> None:
        def _chunks():
            yield b"abc"
            raise requests.exceptions.ChunkedEncodingError("connection reset")

        session = Mock()
        session.request.return_value = _streaming_response(_chunks())
        client = HttpCloudIndexClient("https://index.example.org", session=session)

        with pytest.raises(CloudIndexError) as excinfo:
            client.download(CloudFileDescriptor(11, "a.raw"), tmp_path / "a.raw")

        assert excinfo.value.context["connection"] is True
        assert not (tmp_path / "a.raw").exists()

    def test_download_many_uses_one_bundle_request(self, tmp_path: Path) -> None:
        bundle = _zip_bytes({"11/a.raw": b"raw", "12/b_dta.zip": b"dta", "99/other.txt": b"x"})
        session = Mock()
        session.request.return_value = _streaming_response([bundle])
        client = HttpCloudIndexClient("https://index.example.org", session=session)

        client.download_many([CloudFileDescriptor(11, "a.raw"), CloudFileDescriptor(12, "b_dta.zip")], tmp_path)

        assert session.request.call_count == 1
        assert session.request.call_args.args == ("POST", "https://index.example.org/files/bundle")
        assert session.request.call_args.kwargs["json"] == {"file_ids": [11, 12]}
        assert (tmp_path / "a.raw").read_bytes() == b"raw"
        assert (tmp_path / "b_dta.zip").read_bytes() == b"dta"
        assert sorted(path.name for path in tmp_path.iterdir()) == ["a.raw", "b_dta.zip"]

    def test_download_many_invalid_bundle(self, tmp_path: Path) -> None:
        session = Mock()
        session.request.return_value = _streaming_response([b"not a zip"])
        client = HttpCloudIndexClient("https://index.example.org", session=session)

        with pytest.raises(CloudIndexError):
            client.download_many([CloudFileDescriptor(11, "a.raw")], tmp_path)
        assert list(tmp_path.iterdir()) == []
