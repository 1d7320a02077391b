"""
Child selection per DownloadMode.
"""

from typing import Collection, List

from ..core.types import CrawlSettings, DownloadMode, DuplicateVerdict


def select_child_indices(
    mode: DownloadMode,
    total: int,
    settings: CrawlSettings,
    existing: Collection[int] = (),
) -> List[int]:
    """
    Indices of the children a job is required to create, ascending.

    FULL takes every index; UPDATE only those not already present;
    PARTIAL the inclusive range clipped to total-1 plus any redownload
    indices; NONE nothing. Explicit skips are always removed, and
    redownload indices are kept in UPDATE even when already present.
    """
    if mode == DownloadMode.NONE or total <= 0:
        return []

    skips = set(settings.skip_items)
    redownload = {index for index in settings.redownload_items if 0 <= index < total}

    if mode == DownloadMode.FULL:
        selected = set(range(total))
    elif mode == DownloadMode.UPDATE:
        present = set(existing)
        selected = {index for index in range(total) if index not in present} | redownload
    else:
        selected = set(redownload)
        if settings.has_range:
            end = min(settings.range_end, total - 1)
            selected |= set(range(settings.range_start, end + 1))

    return sorted(selected - skips)


def suggest_mode(verdict: DuplicateVerdict, existing_children: int) -> DownloadMode:
    """UPDATE when the target already exists with children, FULL otherwise"""
    if verdict.is_duplicate and existing_children > 0:
        return DownloadMode.UPDATE
    return DownloadMode.FULL
