"""Tests for retrieval_core.resolver module."""

from __future__ import annotations

import logging
import os

import pytest
from conftest import DATASET, INPUT_FOLDER, MSXML_FOLDER, StorageLayout, job_param_sections

from retrieval_core.candidates import TierAvailability
from retrieval_core.cloud_index import CloudArchiveIndex
from retrieval_core.params import JobParams
from retrieval_core.probe import TierProbe
from retrieval_core.resolver import Resolver

RAW_FILE = DATASET + ".raw"


def _resolver(
    params: JobParams,
    cloud: CloudArchiveIndex | None = None,
    *,
    archive_available: bool = False,
) -> Resolver:
    availability = TierAvailability(cloud_search_disabled=cloud is None, archive_available=archive_available)
    return Resolver(params, TierProbe(cloud), availability)


class TestFindDatasetFile:
    """Test Resolver.find_dataset_file tier ordering."""

    def test_primary_storage_hit(self, storage: StorageLayout, job_params: JobParams) -> None:
        raw = storage.write_file(storage.storage_root / DATASET / RAW_FILE)

        result = _resolver(job_params).find_dataset_file(".raw")

        assert result.found
        assert result.path == str(raw)
        assert result.cloud_file_ids == []

    def test_transfer_wins_over_primary(self, storage: StorageLayout, job_params: JobParams) -> None:
        transfer = storage.write_file(storage.transfer_root / DATASET / RAW_FILE)
        storage.write_file(storage.storage_root / DATASET / RAW_FILE)

        result = _resolver(job_params).find_dataset_file("raw")

        assert result.path == str(transfer)

    def test_cloud_hit_encodes_file_id(self, job_params: JobParams, cloud_client, cloud: CloudArchiveIndex) -> None:
        cloud_client.add(77, RAW_FILE)

        result = _resolver(job_params, cloud).find_dataset_file(".raw")

        assert result.found
        assert result.path == "//CloudArchive/" + RAW_FILE + "@CloudFileID_77"
        assert result.cloud_file_ids == [77]

    def test_miss_reports_primary_location(
        self, storage: StorageLayout, job_params: JobParams, caplog: pytest.LogCaptureFixture
    ) -> None:
        with caplog.at_level(logging.WARNING, logger="retrieval_core.resolver"):
            result = _resolver(job_params).find_dataset_file(".raw")

        assert not result.found
        assert result.path == os.path.join(str(storage.storage_root), DATASET, RAW_FILE)
        assert "Could not find a valid dataset directory" in result.reason
        assert any(record.levelno == logging.ERROR for record in caplog.records)

    def test_purged_data_comes_from_archive(self, storage: StorageLayout) -> None:
        params = JobParams(job_param_sections(storage, InstrumentDataPurged=1))
        storage.write_file(storage.storage_root / DATASET / RAW_FILE)
        archived = storage.write_file(storage.archive_root / DATASET / RAW_FILE)

        result = _resolver(params).find_dataset_file(".raw")

        assert result.path == str(archived)

    def test_assume_unpurged_ignores_archive(self, storage: StorageLayout, no_sleep: list[float]) -> None:
        params = JobParams(job_param_sections(storage, InstrumentDataPurged=1))
        storage.write_file(storage.archive_root / DATASET / RAW_FILE)

        result = _resolver(params, archive_available=True).find_dataset_file(".raw", assume_unpurged=True)

        assert not result.found
        assert no_sleep == []

    def test_renamed_dataset_found_under_dataset_name(self, storage: StorageLayout) -> None:
        params = JobParams(job_param_sections(storage, DatasetFolderName="QC_Shew_01_Old"))
        storage.write_file(storage.storage_root / DATASET / RAW_FILE)

        result = _resolver(params).find_dataset_file(".raw")

        assert result.path == os.path.join(str(storage.storage_root), DATASET, RAW_FILE)


class TestFindValidDirectory:
    """Test Resolver.find_valid_directory."""

    def test_file_inside_requested_subfolder(self, storage: StorageLayout, job_params: JobParams) -> None:
        nested = storage.write_file(storage.storage_root / DATASET / "SIC202401" / "QC_Shew_01_SICstats.txt")

        result = _resolver(job_params).find_valid_directory(DATASET, nested.name, "SIC202401")

        assert result.found
        assert result.path == str(nested.parent)

    def test_cloud_hit_returns_bare_path_and_sorted_ids(
        self, job_params: JobParams, cloud_client, cloud: CloudArchiveIndex
    ) -> None:
        cloud_client.add(9, "QC_Shew_01_ScanStats.txt", transaction_id=2)
        cloud_client.add(4, "QC_Shew_01_ScanStatsEx.txt", transaction_id=1)

        result = _resolver(job_params, cloud).find_valid_directory(DATASET, "*_ScanStats*.txt")

        assert result.path == "//CloudArchive"
        assert result.cloud_file_ids == [4, 9]


class TestFindDataFile:
    """Test Resolver.find_data_file suffix and tier ordering."""

    def test_input_folder_preferred_over_shared_folder(self, storage: StorageLayout, job_params: JobParams) -> None:
        dataset_dir = storage.storage_root / DATASET
        storage.write_file(dataset_dir / INPUT_FOLDER / "QC_Shew_01_syn.txt")
        storage.write_file(dataset_dir / MSXML_FOLDER / "QC_Shew_01_syn.txt")

        result = _resolver(job_params).find_data_file("QC_Shew_01_syn.txt")

        assert result.path == str(dataset_dir / INPUT_FOLDER)

    def test_shared_results_folder(self, storage: StorageLayout, job_params: JobParams) -> None:
        mzml = storage.write_file(storage.storage_root / DATASET / MSXML_FOLDER / "QC_Shew_01.mzML.gz")
        result = _resolver(job_params).find_data_file("QC_Shew_01.mzML.gz")
        assert result.path == str(mzml.parent)

    def test_wildcard_pattern(self, storage: StorageLayout, job_params: JobParams) -> None:
        storage.write_file(storage.transfer_root / DATASET / INPUT_FOLDER / "QC_Shew_01_msgfplus.mzid.gz")
        result = _resolver(job_params).find_data_file("*.mzid.gz")
        assert result.path == str(storage.transfer_root / DATASET / INPUT_FOLDER)

    def test_cloud_hit_appends_file_id(self, job_params: JobParams, cloud_client, cloud: CloudArchiveIndex) -> None:
        cloud_client.add(21, "QC_Shew_01_syn.txt", INPUT_FOLDER)

        result = _resolver(job_params, cloud).find_data_file("QC_Shew_01_syn.txt")

        assert result.path == f"//CloudArchive/{DATASET}/{INPUT_FOLDER}@CloudFileID_21"
        assert result.cloud_file_ids == [21]

    def test_empty_pattern_not_found(self, job_params: JobParams) -> None:
        result = _resolver(job_params).find_data_file("  ")
        assert not result.found
        assert result.reason == "empty file name"

    def test_skip_archive_logs_warning(
        self, job_params: JobParams, cloud: CloudArchiveIndex, caplog: pytest.LogCaptureFixture
    ) -> None:
        with caplog.at_level(logging.WARNING, logger="retrieval_core.resolver"):
            result = _resolver(job_params, cloud).find_data_file("missing.txt", search_archive=False)

        assert not result.found
        assert "did not check archive" in caplog.text
        assert all(record.levelno == logging.WARNING for record in caplog.records)


class TestFindDatasetFileOrDirectory:
    """Test raw data type dispatch."""

    def test_dot_raw_files(self, storage: StorageLayout, job_params: JobParams) -> None:
        raw = storage.write_file(storage.storage_root / DATASET / RAW_FILE)
        result, is_directory = _resolver(job_params).find_dataset_file_or_directory()
        assert result.path == str(raw)
        assert is_directory is False

    def test_dot_d_folder(self, storage: StorageLayout, job_params: JobParams) -> None:
        storage.write_file(storage.storage_root / DATASET / "QC_Shew_01.d" / "analysis.baf")

        result, is_directory = _resolver(job_params).find_dataset_file_or_directory("dot_d_folders")

        assert result.path == str(storage.storage_root / DATASET / "QC_Shew_01.d")
        assert is_directory is True

    def test_dot_d_folder_in_cloud(self, job_params: JobParams, cloud_client, cloud: CloudArchiveIndex) -> None:
        cloud_client.add(5, "analysis.baf", "QC_Shew_01.d")

        result, is_directory = _resolver(job_params, cloud).find_dataset_file_or_directory("dot_d_folders")

        assert result.found
        assert result.cloud_file_ids == [5]
        assert is_directory is True

    def test_zero_ser_folder(self, storage: StorageLayout, job_params: JobParams) -> None:
        storage.write_file(storage.storage_root / DATASET / "0.ser" / "fid")
        result, _ = _resolver(job_params).find_dataset_file_or_directory("zipped_s_folders")
        assert result.path == str(storage.storage_root / DATASET / "0.ser")

    def test_zipped_s_folders(self, storage: StorageLayout, job_params: JobParams) -> None:
        storage.write_file(storage.storage_root / DATASET / "s001.zip")
        result, is_directory = _resolver(job_params).find_dataset_file_or_directory("zipped_s_folders")
        assert result.path == str(storage.storage_root / DATASET)
        assert is_directory is True

    def test_unsupported_raw_data_type(self, job_params: JobParams) -> None:
        result, is_directory = _resolver(job_params).find_dataset_file_or_directory("bruker_maldi_imaging")
        assert not result.found
        assert "Unsupported raw data type" in result.reason
        assert is_directory is False
