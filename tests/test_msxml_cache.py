"""Tests for retrieval_core.msxml_cache module."""

from __future__ import annotations

import gzip
import os
from pathlib import Path

import pytest
from conftest import DATASET, MSXML_FOLDER, StorageLayout, build_file_search, job_param_sections

from retrieval_core.exceptions import ConfigurationError
from retrieval_core.msxml_cache import (
    MsxmlCache,
    MsxmlType,
    get_dataset_year_quarter,
    get_msxml_cache_folder_path,
    get_msxml_tool_name_version_folder,
)
from retrieval_core.params import JobParams
from retrieval_core.sidecar import create_sidecar_file, sidecar_path_for

MZML_GZ = DATASET + ".mzML.gz"
TOOL_FOLDER = "MSXML_Gen_1_120"


# =============================================================================
# Helpers
# =============================================================================


def _cache(params: JobParams, storage: StorageLayout) -> MsxmlCache:
    cache = build_file_search(params, storage).msxml_cache
    assert cache is not None
    return cache


def _write_gz(path: Path, content: bytes = b"<mzML/>", mtime: int | None = None, sidecar: bool = True) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with gzip.open(path, "wb") as handle:
        handle.write(content)
    if mtime is not None:
        os.utime(path, (mtime, mtime))
    if sidecar:
        create_sidecar_file(path)
    return path


def _cached_path(storage: StorageLayout, tool_folder: str = TOOL_FOLDER, name: str = MZML_GZ) -> Path:
    return storage.cache_root / tool_folder / "2024_1" / name


# =============================================================================
# Path helpers
# =============================================================================


class TestPathHelpers:
    """Test the cache path helper functions."""

    def test_tool_name_version_folder(self) -> None:
        assert get_msxml_tool_name_version_folder("MSXML_Gen_1_120_275966") == "MSXML_Gen_1_120"
        assert get_msxml_tool_name_version_folder("MSXML_Gen_1_93_367204") == "MSXML_Gen_1_93"

    def test_tool_name_version_folder_rejects_other_names(self) -> None:
        with pytest.raises(ValueError):
            get_msxml_tool_name_version_folder("SEQ202401011200_Auto1234")

    @pytest.mark.parametrize(
        ("path", "expected"),
        [
            ("/proto/LTQ_Orb/2014_1/", "2014_1"),
            ("\\\\proto-7\\VOrbi05\\2014_01\\", "2014_01"),
            ("/proto/LTQ_Orb/2014_4/QC_Shew_01", "2014_4"),
            ("/proto/LTQ_Orb/2014_5", ""),
            ("", ""),
        ],
    )
    def test_dataset_year_quarter(self, path: str, expected: str) -> None:
        assert get_dataset_year_quarter(path) == expected

    def test_cache_folder_path(self, storage: StorageLayout, job_params: JobParams) -> None:
        path = get_msxml_cache_folder_path(storage.cache_root, job_params, TOOL_FOLDER)
        assert path == storage.cache_root / TOOL_FOLDER / "2024_1"

    def test_cache_folder_path_from_output_folder(self, storage: StorageLayout) -> None:
        params = JobParams(job_param_sections(storage, OutputFolderName="MSXML_Gen_1_120_5000"))
        assert get_msxml_cache_folder_path("/cache", params) == Path("/cache") / TOOL_FOLDER / "2024_1"

    def test_cache_folder_path_bad_output_folder(self, job_params: JobParams) -> None:
        with pytest.raises(ConfigurationError) as excinfo:
            get_msxml_cache_folder_path("/cache", job_params)
        assert excinfo.value.context["parameter"] == "OutputFolderName"

    def test_cache_folder_path_needs_year_quarter(self, storage: StorageLayout) -> None:
        params = JobParams(job_param_sections(storage, DatasetStoragePath="/proto/LTQ_Orb/current"))
        with pytest.raises(ConfigurationError):
            get_msxml_cache_folder_path("/cache", params, TOOL_FOLDER)

    def test_msxml_type_from_name(self) -> None:
        assert MsxmlType.from_name(".MZXML") is MsxmlType.MZXML
        assert MsxmlType.from_name("mzML") is MsxmlType.MZML
        assert MsxmlType.MZXML.extension == ".mzXML"


# =============================================================================
# Cache lookups
# =============================================================================


class TestFindMsxmlFileForJobInCache:
    """Test MsxmlCache.find_msxml_file_for_job_in_cache."""

    def test_cache_hit_with_valid_sidecar(self, storage: StorageLayout, job_params: JobParams) -> None:
        cached = _write_gz(_cached_path(storage))

        lookup = _cache(job_params, storage).find_msxml_file_for_job_in_cache(".mzML")

        assert lookup.found
        assert lookup.source_path == cached
        assert lookup.sidecar_path == sidecar_path_for(cached)

    def test_missing_sidecar_is_a_miss(self, storage: StorageLayout, job_params: JobParams) -> None:
        cached = _write_gz(_cached_path(storage), sidecar=False)

        lookup = _cache(job_params, storage).find_msxml_file_for_job_in_cache("mzML", warn_not_found=False)

        assert not lookup.found
        assert lookup.source_path == cached
        assert lookup.missing_from_cache
        assert "you must manually re-create it" in lookup.message

    def test_offline_conversion_below_dataset_directory(self, storage: StorageLayout, job_params: JobParams) -> None:
        offline = _write_gz(storage.storage_root / DATASET / MSXML_FOLDER / MZML_GZ, sidecar=False)

        lookup = _cache(job_params, storage).find_msxml_file_for_job_in_cache(MsxmlType.MZML)

        assert lookup.found
        assert lookup.source_path == offline
        assert lookup.sidecar_path is None

    def test_nothing_anywhere(self, storage: StorageLayout, job_params: JobParams) -> None:
        lookup = _cache(job_params, storage).find_msxml_file_for_job_in_cache(".mzML")
        assert not lookup.found
        assert lookup.missing_from_cache
        assert "Cache directory does not exist" in lookup.message

    def test_no_cache_root_raises(self, storage: StorageLayout, job_params: JobParams) -> None:
        cache = _cache(job_params, storage)
        cache.cache_root = ""
        with pytest.raises(ConfigurationError):
            cache.find_msxml_file_for_job_in_cache(".mzML")

    def test_later_step_needs_msxml_input_folder(self, storage: StorageLayout) -> None:
        params = JobParams(job_param_sections(storage, Step=3, SharedResultsFolders=""))
        lookup = _cache(params, storage).find_msxml_file_for_job_in_cache(".mzML")
        assert not lookup.found
        assert "does not start with MSXML_Gen" in lookup.message


class TestRetrieveCachedMsxmlFile:
    """Test MsxmlCache.retrieve_cached_msxml_file."""

    def test_copies_unzips_and_registers_skip_files(self, storage: StorageLayout, job_params: JobParams) -> None:
        _write_gz(_cached_path(storage), b"<mzML>spectra</mzML>")

        lookup = _cache(job_params, storage).retrieve_cached_mzml_file()

        assert lookup.found
        assert (storage.work_dir / (DATASET + ".mzML")).read_bytes() == b"<mzML>spectra</mzML>"
        assert job_params.should_skip_result_file(MZML_GZ)
        assert job_params.should_skip_result_file(DATASET + ".mzML")

    def test_without_unzip_leaves_gz(self, storage: StorageLayout, job_params: JobParams) -> None:
        _write_gz(_cached_path(storage))

        assert _cache(job_params, storage).retrieve_cached_mzml_file(unzip=False)

        assert (storage.work_dir / MZML_GZ).is_file()
        assert not (storage.work_dir / (DATASET + ".mzML")).exists()


class TestFindNewestMsxmlFileInCache:
    """Test MsxmlCache.find_newest_msxml_file_in_cache."""

    def test_newest_across_tool_folders(self, storage: StorageLayout, job_params: JobParams) -> None:
        _write_gz(_cached_path(storage, "MSXML_Gen_1_93"), mtime=1_600_000_000)
        newer = _write_gz(_cached_path(storage, "MSXML_Gen_1_120"), mtime=1_700_000_000)

        lookup = _cache(job_params, storage).find_newest_msxml_file_in_cache("mzML")

        assert lookup.found
        assert lookup.source_path == newer

    def test_unzipped_mzxml_accepted(self, storage: StorageLayout, job_params: JobParams) -> None:
        legacy = storage.write_file(_cached_path(storage, name=DATASET + ".mzXML"), b"<mzXML/>")
        create_sidecar_file(legacy)

        lookup = _cache(job_params, storage).find_newest_msxml_file_in_cache(MsxmlType.MZXML)

        assert lookup.source_path == legacy

    def test_stale_sidecar_fails(self, storage: StorageLayout, job_params: JobParams) -> None:
        cached = _write_gz(_cached_path(storage), mtime=1_700_000_000)
        os.utime(cached, (1_700_000_100, 1_700_000_100))

        lookup = _cache(job_params, storage).find_newest_msxml_file_in_cache("mzML")

        assert not lookup.found
        assert "modification date mismatch" in lookup.message


class TestRetrieveMsxmlFileUsingSourceFile:
    """Test MsxmlCache.retrieve_msxml_file_using_source_file."""

    def test_copy_verified_by_hash(self, storage: StorageLayout, job_params: JobParams) -> None:
        cached = _write_gz(_cached_path(storage), mtime=1_700_000_000)

        assert _cache(job_params, storage).retrieve_msxml_file_using_source_file(
            False, cached, sidecar_path_for(cached)
        )
        assert (storage.work_dir / MZML_GZ).is_file()

    def test_hash_mismatch_evicts_both_copies(self, storage: StorageLayout, job_params: JobParams) -> None:
        cached = _write_gz(_cached_path(storage), b"A" * 64, mtime=1_700_000_000)
        size = cached.stat().st_size
        with gzip.open(cached, "wb") as handle:
            handle.write(b"B" * 64)
        assert cached.stat().st_size == size
        os.utime(cached, (1_700_000_000, 1_700_000_000))
        sidecar = sidecar_path_for(cached)

        assert not _cache(job_params, storage).retrieve_msxml_file_using_source_file(False, cached, sidecar)

        assert not (storage.work_dir / MZML_GZ).exists()
        assert not cached.exists()
        assert not sidecar.exists()

    def test_pointer_only_checks_remote_without_hash(self, storage: StorageLayout, job_params: JobParams) -> None:
        cached = _write_gz(_cached_path(storage), mtime=1_700_000_000)

        assert _cache(job_params, storage).retrieve_msxml_file_using_source_file(
            True, cached, sidecar_path_for(cached)
        )
        assert (storage.work_dir / (MZML_GZ + "_StoragePathInfo.txt")).is_file()

    def test_missing_source(self, storage: StorageLayout, job_params: JobParams) -> None:
        assert not _cache(job_params, storage).retrieve_msxml_file_using_source_file(
            False, storage.cache_root / "missing.mzML.gz"
        )
