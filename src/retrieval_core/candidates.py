"""Ordered candidate locations for a dataset's files.

Tiers are listed in ``TIER_ORDER``; the builders walk that tuple, so adding
or reordering a tier is a data change. Within a tier the job-result search
tries the input folder, then each shared results folder, then the bare
dataset folder.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass

from retrieval_core.cloud_index import cloud_path
from retrieval_core.params import (
    JOB_PARAM_DATA_PACKAGE_PATH,
    JOB_PARAM_DATASET_ARCHIVE_PATH,
    JOB_PARAM_DATASET_FOLDER_NAME,
    JOB_PARAM_DATASET_STORAGE_PATH,
    JOB_PARAM_INPUT_FOLDER_NAME,
    JOB_PARAM_INSTRUMENT_DATA_PURGED,
    JOB_PARAM_SHARED_RESULTS_FOLDERS,
    JOB_PARAM_TRANSFER_FOLDER_PATH,
    JOB_PARAMETERS_SECTION,
    ParameterStore,
    get_dataset_name,
)
from retrieval_core.utils.paths import join

logger = logging.getLogger(__name__)

AGGREGATION_JOB_DATASET = "Aggregation"


class Tier(enum.Enum):
    TRANSFER = "transfer"
    PRIMARY = "primary"
    CLOUD = "cloud"
    ARCHIVE = "archive"
    DATA_PACKAGE = "data_package"


TIER_ORDER: tuple[Tier, ...] = (Tier.TRANSFER, Tier.PRIMARY, Tier.CLOUD, Tier.ARCHIVE)

_TIER_ROOT_PARAMS = {
    Tier.TRANSFER: JOB_PARAM_TRANSFER_FOLDER_PATH,
    Tier.PRIMARY: JOB_PARAM_DATASET_STORAGE_PATH,
    Tier.ARCHIVE: JOB_PARAM_DATASET_ARCHIVE_PATH,
}


@dataclass(frozen=True)
class Candidate:
    """One place to look.

    For the cloud tier ``path`` is an encoded ``//CloudArchive/...`` path and
    ``dataset``/``subdir`` scope the index query.
    """

    tier: Tier
    path: str
    log_if_missing: bool = False
    dataset: str = ""
    subdir: str = ""

    @property
    def is_cloud(self) -> bool:
        return self.tier is Tier.CLOUD


@dataclass(frozen=True)
class TierAvailability:
    cloud_search_disabled: bool = False
    archive_available: bool = False


def shared_results_folders(params: ParameterStore) -> list[str]:
    """Folder names from the SharedResultsFolders job parameter.

    A comma-separated list is reversed, so the last folder listed is tried
    first. This is surprising but deliberate-looking existing behaviour and
    is kept as is; a single name is used unchanged.
    """
    value = params.get_param(JOB_PARAM_SHARED_RESULTS_FOLDERS)
    if "," not in value:
        return [value.strip()] if value.strip() else []
    names = [item.strip() for item in value.split(",") if item.strip()]
    names.reverse()
    return names


def dataset_folder_name(params: ParameterStore, dataset_name: str = "") -> str:
    return params.get_param(JOB_PARAM_DATASET_FOLDER_NAME) or dataset_name or get_dataset_name(params)


def primary_storage_path(params: ParameterStore, dataset_name: str = "") -> str:
    """Dataset directory on the primary storage tier."""
    return join(params.get_param(JOB_PARAM_DATASET_STORAGE_PATH), dataset_folder_name(params, dataset_name))


def _tier_enabled(tier: Tier, availability: TierAvailability, assume_unpurged: bool) -> bool:
    if tier is Tier.CLOUD:
        return not availability.cloud_search_disabled and not assume_unpurged
    if tier is Tier.ARCHIVE:
        return (availability.archive_available or availability.cloud_search_disabled) and not assume_unpurged
    return True


def build_directory_candidates(
    params: ParameterStore,
    dataset_name: str,
    availability: TierAvailability,
    *,
    retrieving_instrument_data: bool = False,
    assume_unpurged: bool = False,
) -> list[Candidate]:
    """Candidates for the dataset directory itself, one band per tier.

    A renamed dataset (folder name differs from the dataset name) gets both
    spellings in the same band. Primary storage is skipped when instrument
    data is requested and the job says it has been purged.
    """
    folder_name = dataset_folder_name(params, dataset_name)
    spellings = [folder_name] if folder_name == dataset_name else [folder_name, dataset_name]
    purged = params.get_job_parameter(JOB_PARAM_INSTRUMENT_DATA_PURGED, 0) != 0

    candidates: list[Candidate] = []
    for tier in TIER_ORDER:
        if not _tier_enabled(tier, availability, assume_unpurged):
            continue
        if tier is Tier.CLOUD:
            candidates.append(Candidate(tier, cloud_path(), dataset=dataset_name))
            continue
        if tier is Tier.PRIMARY and retrieving_instrument_data and purged and not assume_unpurged:
            logger.debug("Instrument data purged for %s; skipping primary storage", dataset_name)
            continue
        root = params.get_param(_TIER_ROOT_PARAMS[tier])
        if not root:
            continue
        for index, spelling in enumerate(spellings):
            log_if_missing = tier is not Tier.TRANSFER and index == 0
            candidates.append(Candidate(tier, join(root, spelling), log_if_missing=log_if_missing))
    return candidates


def build_data_file_candidates(
    params: ParameterStore,
    availability: TierAvailability,
    *,
    search_archive: bool = True,
) -> list[Candidate]:
    """Candidates for a job's input files, with the full suffix progression per tier."""
    dataset_name = get_dataset_name(params)
    folder_name = params.get_param(JOB_PARAM_DATASET_FOLDER_NAME)
    input_folder = params.get_param(JOB_PARAM_INPUT_FOLDER_NAME)
    suffixes = ([input_folder] if input_folder else []) + shared_results_folders(params)

    roots: list[tuple[Tier, str]] = []
    for tier in TIER_ORDER:
        if tier is Tier.CLOUD:
            if search_archive and not availability.cloud_search_disabled and folder_name:
                roots.append((tier, cloud_path(folder_name)))
            continue
        if tier is Tier.ARCHIVE and not (search_archive and availability.archive_available):
            continue
        root = params.get_param(_TIER_ROOT_PARAMS[tier])
        if root:
            roots.append((tier, join(root, folder_name)))

    if dataset_name.lower() == AGGREGATION_JOB_DATASET.lower():
        package_dir = params.get_param(JOB_PARAMETERS_SECTION, JOB_PARAM_DATA_PACKAGE_PATH)
        if package_dir:
            roots.append((Tier.DATA_PACKAGE, package_dir))

    candidates: list[Candidate] = []
    for tier, root in roots:
        for suffix in suffixes:
            if tier is Tier.CLOUD:
                candidates.append(Candidate(tier, cloud_path(folder_name, suffix), dataset=dataset_name, subdir=suffix))
            else:
                candidates.append(Candidate(tier, join(root, suffix)))
        if folder_name or tier is Tier.DATA_PACKAGE:
            if tier is Tier.CLOUD:
                candidates.append(Candidate(tier, root, dataset=dataset_name))
            else:
                candidates.append(Candidate(tier, root))
    return candidates
