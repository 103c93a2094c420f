"""Adapter for the cloud archive index.

The index answers "which files does this dataset have" queries and serves
file downloads. Cloud hits are reported to callers as encoded paths of the
form ``//CloudArchive/<dataset dir>/<subdir>@CloudFileID_<id>``; the id is
what the download queue needs later.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import time
import zipfile
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from retrieval_core.__version__ import __version__
from retrieval_core.archive_codec import ArchiveCodec, ExtractedEntry
from retrieval_core.exceptions import CloudIndexError
from retrieval_core.network_utils import is_connection_error, with_retries
from retrieval_core.result import Err, Noop, Ok, Result
from retrieval_core.stability import stable_api
from retrieval_core.utils.paths import matches

logger = logging.getLogger(__name__)

CLOUD_PATH_FLAG = "//CloudArchive"
FILE_ID_TAG = "@CloudFileID_"

CONNECTION_ERRORS_BEFORE_DISABLE = 3
DISABLE_MINUTES = 15

DEFAULT_CONNECT_TIMEOUT = 15
DEFAULT_READ_TIMEOUT = 300
DOWNLOAD_CHUNK_BYTES = 1024 * 1024
BUNDLE_FILE_PREFIX = ".cloud_bundle_"

_FILE_ID_PATTERN = re.compile(re.escape(FILE_ID_TAG) + r"(?P<id>\d+)")


# ----------------------------------------------------------------------
# Encoded path helpers
# ----------------------------------------------------------------------


def is_cloud_path(path: str | Path) -> bool:
    return str(path).replace("\\", "/").startswith(CLOUD_PATH_FLAG)


def cloud_path(*parts: str) -> str:
    """Build ``//CloudArchive/part1/part2``; empty parts are skipped."""
    kept = [part.strip("/\\") for part in parts if part and part.strip("/\\")]
    return "/".join([CLOUD_PATH_FLAG, *kept])


def append_file_id(path: str, file_id: int) -> str:
    return f"{path}{FILE_ID_TAG}{file_id}"


def extract_file_id(path: str) -> tuple[int, str]:
    """Split an encoded path into (file id, path without the id).

    The id is 0 when the path carries none.
    """
    match = _FILE_ID_PATTERN.search(path)
    if not match:
        return 0, path
    return int(match.group("id")), path[: match.start()] + path[match.end() :]


def add_file_to_cloud_directory_path(directory_path: str, file_name: str) -> str:
    """Append a file name to an encoded directory path, keeping its file id at the end."""
    file_id, clean = extract_file_id(directory_path)
    file_path = f"{clean.rstrip('/')}/{file_name}"
    return append_file_id(file_path, file_id) if file_id else file_path


# ----------------------------------------------------------------------
# Descriptors and clients
# ----------------------------------------------------------------------


@dataclass(frozen=True)
class CloudFileDescriptor:
    """One file (or directory) known to the cloud archive index."""

    file_id: int
    filename: str
    subdir: str = ""
    transaction_id: int = 0
    dataset: str = ""
    size: int = 0
    is_directory: bool = False

    @property
    def relative_path(self) -> str:
        return f"{self.subdir}/{self.filename}" if self.subdir else self.filename

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CloudFileDescriptor:
        return cls(
            file_id=int(data["file_id"]),
            filename=str(data["filename"]),
            subdir=str(data.get("subdir") or "").replace("\\", "/").strip("/"),
            transaction_id=int(data.get("transaction_id") or 0),
            dataset=str(data.get("dataset") or ""),
            size=int(data.get("size") or 0),
            is_directory=bool(data.get("is_directory", False)),
        )


class CloudIndexClient(Protocol):
    """What the index adapter needs from a client.

    ``download_many`` is optional; clients without it get one ``download``
    call per queued file.
    """

    def query(self, dataset: str, subdir: str, filename: str, recurse: bool) -> list[CloudFileDescriptor]: ...

    def download(self, descriptor: CloudFileDescriptor, target_path: Path) -> None: ...


def create_session() -> requests.Session:
    """Create the requests session used by the HTTP client.

    urllib3's own retries are switched off: ``with_retries`` is the only
    retry layer, so a request is attempted at most ``max_attempts`` times.
    """
    adapter = HTTPAdapter(max_retries=Retry(total=0, read=False, raise_on_status=False))
    session = requests.Session()
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    session.headers["User-Agent"] = f"tiered-retrieval/{__version__}"
    return session


def _stream_to_file(response: requests.Response, target_path: Path) -> None:
    """Write a streamed response body; a partial file is removed on failure."""
    try:
        with target_path.open("wb") as handle:
            for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_BYTES):
                if chunk:
                    handle.write(chunk)
    except requests.exceptions.RequestException as exc:
        target_path.unlink(missing_ok=True)
        raise CloudIndexError(
            f"Download of {target_path.name} was interrupted: {exc}",
            context={"path": str(target_path), "connection": is_connection_error(exc)},
        ) from exc
    except OSError:
        target_path.unlink(missing_ok=True)
        raise


class HttpCloudIndexClient:
    """Talks to the index service over HTTP.

    ``GET <base>/files`` with ``dataset``, ``subdir``, ``filename`` and
    ``recurse`` query parameters returns a JSON list of file records;
    ``GET <base>/files/<id>/content`` streams one file and
    ``POST <base>/files/bundle`` with ``{"file_ids": [...]}`` streams a zip
    archive whose members are named ``<id>/<filename>``.
    """

    def __init__(
        self,
        base_url: str,
        *,
        session: requests.Session | None = None,
        timeout: tuple[int, int] = (DEFAULT_CONNECT_TIMEOUT, DEFAULT_READ_TIMEOUT),
        max_attempts: int = 3,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.session = session or create_session()
        self.timeout = timeout
        self.max_attempts = max_attempts

    def _request(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        def _send() -> requests.Response:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
            response.raise_for_status()
            return response

        try:
            return with_retries(_send, max_attempts=self.max_attempts, sleep=time.sleep)
        except requests.exceptions.RequestException as exc:
            raise CloudIndexError(
                f"Cloud index request failed: {exc}",
                context={"url": url, "connection": is_connection_error(exc)},
            ) from exc

    def query(self, dataset: str, subdir: str, filename: str, recurse: bool) -> list[CloudFileDescriptor]:
        params = {"dataset": dataset, "subdir": subdir, "filename": filename, "recurse": str(recurse).lower()}
        response = self._request("GET", f"{self.base_url}/files", params=params)
        try:
            records = response.json()
        except ValueError as exc:
            raise CloudIndexError("Cloud index returned invalid JSON", context={"dataset": dataset}) from exc
        return [CloudFileDescriptor.from_dict(record) for record in records]

    def download(self, descriptor: CloudFileDescriptor, target_path: Path) -> None:
        url = f"{self.base_url}/files/{descriptor.file_id}/content"
        target_path = Path(target_path)
        target_path.parent.mkdir(parents=True, exist_ok=True)
        with self._request("GET", url, stream=True) as response:
            _stream_to_file(response, target_path)

    def download_many(self, descriptors: list[CloudFileDescriptor], target_dir: Path) -> None:
        """Fetch every descriptor with a single bundle request.

        Members are written to ``target_dir/<filename>``; members whose id was
        not requested are ignored.

        Raises:
            CloudIndexError: If the request fails or the bundle is not a valid zip file
        """
        target_dir = Path(target_dir)
        target_dir.mkdir(parents=True, exist_ok=True)
        wanted = {descriptor.file_id: descriptor for descriptor in descriptors}
        bundle = target_dir / f"{BUNDLE_FILE_PREFIX}{os.getpid()}.zip"
        try:
            with self._request(
                "POST", f"{self.base_url}/files/bundle", json={"file_ids": sorted(wanted)}, stream=True
            ) as response:
                _stream_to_file(response, bundle)
            with zipfile.ZipFile(bundle) as archive:
                for info in archive.infolist():
                    if info.is_dir():
                        continue
                    file_id, _, _ = info.filename.partition("/")
                    descriptor = wanted.get(int(file_id)) if file_id.isdigit() else None
                    if descriptor is None:
                        logger.warning("Ignoring unexpected member %s in the download bundle", info.filename)
                        continue
                    with archive.open(info) as source, (target_dir / descriptor.filename).open("wb") as handle:
                        shutil.copyfileobj(source, handle)
        except zipfile.BadZipFile as exc:
            raise CloudIndexError(
                f"Cloud index returned an invalid download bundle: {exc}", context={"file_ids": sorted(wanted)}
            ) from exc
        finally:
            bundle.unlink(missing_ok=True)


# ----------------------------------------------------------------------
# Index adapter
# ----------------------------------------------------------------------


@dataclass
class QueuedDownload:
    descriptor: CloudFileDescriptor
    unzip_required: bool = False


def _descriptor_matches(descriptor: CloudFileDescriptor, filename: str, subdir: str, recurse: bool) -> bool:
    if not matches(descriptor.filename, filename or "*"):
        return False
    components = [part for part in descriptor.subdir.split("/") if part]
    if subdir:
        if matches(descriptor.subdir, subdir):
            return True
        return recurse and bool(components) and matches(components[0], subdir)
    return recurse or not components


@stable_api
@dataclass
class CloudArchiveIndex:
    """Queries the cloud index and owns one job's download queue.

    Three connection failures in a row disable querying for
    ``15 minutes * disable_count``; while disabled, queries return nothing.
    """

    client: CloudIndexClient
    codec: ArchiveCodec = field(default_factory=ArchiveCodec)
    clock: Callable[[], float] = time.time
    recently_found: list[CloudFileDescriptor] = field(default_factory=list)
    all_found: list[CloudFileDescriptor] = field(default_factory=list)
    downloaded_files: dict[str, CloudFileDescriptor] = field(default_factory=dict)
    most_recent_unzipped_files: list[ExtractedEntry] = field(default_factory=list)

    def __post_init__(self) -> None:
        self._queue: dict[int, QueuedDownload] = {}
        self._connection_error_count = 0
        self._disable_count = 0
        self._auto_disabled = False
        self._re_enable_time = 0.0

    @property
    def files_to_download(self) -> dict[int, QueuedDownload]:
        return dict(self._queue)

    @property
    def is_disabled(self) -> bool:
        return self._auto_disabled

    def clear_download_queue(self) -> None:
        self._queue.clear()

    def clear_all_found(self) -> None:
        self.all_found.clear()

    def _record_connection_error(self) -> None:
        self._connection_error_count += 1
        if self._connection_error_count < CONNECTION_ERRORS_BEFORE_DISABLE:
            return
        self._auto_disabled = True
        self._disable_count += 1
        self._connection_error_count = 0
        self._re_enable_time = self.clock() + DISABLE_MINUTES * 60 * self._disable_count
        logger.warning(
            "Disabling cloud archive queries until %s",
            time.strftime("%Y-%m-%d %H:%M", time.localtime(self._re_enable_time)),
        )

    def find_files(self, file_name: str, subdir: str, dataset: str, recurse: bool = False) -> list[CloudFileDescriptor]:
        """Query the index for a dataset's files.

        Args:
            file_name: File name or wildcard pattern ("" or "*" for any)
            subdir: Subdirectory name or pattern, e.g. "SIC*" ("" for the dataset root)
            dataset: Dataset name
            recurse: Search every subdirectory

        Returns:
            Matching descriptors; an empty list when nothing matches, when
            the index cannot be reached, or while querying is disabled
        """
        if self._auto_disabled:
            if self.clock() > self._re_enable_time:
                self._auto_disabled = False
                logger.info("Re-enabling cloud archive queries")
            else:
                logger.debug("Cloud archive querying is disabled; skipping query for %s", dataset)
                self.recently_found = []
                return []

        try:
            found = self.client.query(dataset, subdir, file_name, recurse)
        except CloudIndexError as exc:
            logger.warning("Error querying the cloud archive for dataset %s: %s", dataset, exc.message)
            if exc.context.get("connection"):
                self._record_connection_error()
            self.recently_found = []
            return []

        self._connection_error_count = 0
        self._disable_count = 0

        self.recently_found = [item for item in found if _descriptor_matches(item, file_name, subdir, recurse)]
        known_ids = {item.file_id for item in self.all_found}
        for item in self.recently_found:
            if item.file_id not in known_ids:
                self.all_found.append(item)
                known_ids.add(item.file_id)
        return list(self.recently_found)

    def _cached_descriptor(self, file_id: int) -> CloudFileDescriptor | None:
        for item in self.recently_found:
            if item.file_id == file_id:
                return item
        for item in self.all_found:
            if item.file_id == file_id:
                return item
        return None

    def add_file_to_download_queue(
        self,
        path_or_descriptor: str | CloudFileDescriptor,
        unzip_required: bool = False,
    ) -> bool:
        """Queue a file for the next ``process_download_queue`` call.

        Encoded paths must carry a file id that an earlier query returned.
        """
        if isinstance(path_or_descriptor, CloudFileDescriptor):
            descriptor = path_or_descriptor
        else:
            file_id, _ = extract_file_id(path_or_descriptor)
            if file_id <= 0:
                logger.error("Cloud file ID not found in path: %s", path_or_descriptor)
                return False
            descriptor = self._cached_descriptor(file_id)
            if descriptor is None:
                logger.error("Cached cloud file info does not contain file ID %d", file_id)
                return False

        self._queue[descriptor.file_id] = QueuedDownload(descriptor, unzip_required)
        logger.debug("Queued cloud file %s (ID %d)", descriptor.relative_path, descriptor.file_id)
        return True

    def process_download_queue(self, target_dir: Path) -> Result[list[str]]:
        """Download every queued file into ``target_dir``.

        Clients that offer ``download_many`` receive the whole queue in one
        call; others get one ``download`` call per file. An empty queue is
        a no-op. The queue is empty afterwards: every entry is either on disk
        or reported as a failure.
        """
        if not self._queue:
            return Noop("Download queue is empty")

        target_dir = Path(target_dir)
        self.most_recent_unzipped_files = []
        entries = list(self._queue.values())
        self._queue.clear()
        logger.info("Downloading %d file(s) from the cloud archive", len(entries))

        failed_ids: set[int] = set()
        download_many = getattr(self.client, "download_many", None)
        if download_many is not None:
            descriptors = [entry.descriptor for entry in entries]
            if not self._try_download(lambda: download_many(descriptors, target_dir), "queued files"):
                failed_ids.update(descriptor.file_id for descriptor in descriptors)
        else:
            for entry in entries:
                descriptor = entry.descriptor
                if not self._try_download(
                    lambda: self.client.download(descriptor, target_dir / descriptor.filename),
                    f"{descriptor.relative_path} (ID {descriptor.file_id})",
                ):
                    failed_ids.add(descriptor.file_id)

        downloaded: list[str] = []
        failures: list[str] = []
        for entry in entries:
            descriptor = entry.descriptor
            target = target_dir / descriptor.filename
            if descriptor.file_id in failed_ids or not target.exists():
                logger.error("Cloud file %s (ID %d) was not downloaded", descriptor.relative_path, descriptor.file_id)
                failures.append(descriptor.relative_path)
                continue
            self.downloaded_files[str(target)] = descriptor
            downloaded.append(str(target))
            if entry.unzip_required and not self._unzip_download(target):
                failures.append(descriptor.relative_path)

        if failures:
            return Err(
                "download_failed",
                f"Unable to retrieve {len(failures)} file(s) from the cloud archive: {', '.join(failures)}",
                downloaded=downloaded,
            )
        return Ok(downloaded)

    def _try_download(self, download: Callable[[], None], description: str) -> bool:
        try:
            download()
        except CloudIndexError as exc:
            logger.error("Error downloading %s from the cloud archive: %s", description, exc.message)
            return False
        except OSError as exc:
            logger.error("Error downloading %s from the cloud archive: %s", description, exc)
            return False
        return True

    def _unzip_download(self, path: Path) -> bool:
        suffix = path.suffix.lower()
        if suffix not in (".zip", ".gz"):
            return True
        logger.info("Unzipping file %s", path.name)
        result = self.codec.decompress(path, path.parent)
        if not result:
            logger.error("Unable to unzip downloaded file %s; keeping it for inspection", path.name)
            return False
        self.most_recent_unzipped_files.extend(self.codec.most_recent_unzipped_files)
        return True


def newest_transaction(descriptors: Iterable[CloudFileDescriptor]) -> CloudFileDescriptor | None:
    """Return the descriptor with the highest transaction id (the newest upload)."""
    best: CloudFileDescriptor | None = None
    for item in descriptors:
        if best is None or item.transaction_id > best.transaction_id:
            best = item
    return best
