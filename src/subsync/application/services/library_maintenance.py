"""Library consistency check and duplicate consolidation.

Hey future me - the library is edited by humans. Items get deleted or re-imported
behind our back, and then the store claims "done" for something that no longer
exists (so it would never be fetched again). check_consistency() compares both
sides; the repair_* methods fix each direction:

- repair_missing_in_library(): store row points at nothing → make it fetchable again
- repair_missing_in_store(): library item we never recorded → record it as done

Re-imports also leave SEVERAL library items for one external id. The oldest one is
the keeper: merge_library_duplicates() folds the others' folders, tags and playlists
into it, trashes them and repoints store rows that referenced them.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date

from subsync.application.services.annotations import (
    YOUTUBE_PLATFORM_TAG,
    extract_external_id,
    merge_playlist_annotation,
    playlists_in,
    union,
    watch_url,
)
from subsync.domain.entities import ItemRecord
from subsync.domain.exceptions import LibraryServiceError
from subsync.domain.ports import ILibraryService, LibraryItem
from subsync.infrastructure.observability import log_operation
from subsync.infrastructure.persistence import ItemStore

logger = logging.getLogger(__name__)


@dataclass
class ConsistencyReport:
    """Differences between the store and the library."""

    store_items: int = 0
    library_items: int = 0
    missing_in_library: list[ItemRecord] = field(default_factory=list)
    missing_in_store: list[LibraryItem] = field(default_factory=list)

    @property
    def is_consistent(self) -> bool:
        return not self.missing_in_library and not self.missing_in_store

    def to_dict(self) -> dict[str, int]:
        return {
            "store_items": self.store_items,
            "library_items": self.library_items,
            "missing_in_library": len(self.missing_in_library),
            "missing_in_store": len(self.missing_in_store),
        }


@dataclass
class DuplicateMergeReport:
    """Outcome of merge_library_duplicates()."""

    groups: int = 0
    merged: int = 0
    trashed: int = 0
    relinked: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, int]:
        return {
            "duplicate_groups": self.groups,
            "groups_merged": self.merged,
            "items_trashed": self.trashed,
            "rows_relinked": self.relinked,
            "errors": len(self.errors),
        }


def oldest_first(items: list[LibraryItem]) -> list[LibraryItem]:
    """Sort by import time; items without one go last, ties keep list order."""
    return sorted(items, key=lambda i: (i.added_at is None, i.added_at or 0))


def merge_into(
    keeper: LibraryItem, others: list[LibraryItem], today: date
) -> tuple[list[str], list[str], str]:
    """Folders, tags and annotation of keeper after absorbing others."""
    folders = list(keeper.folders)
    tags = list(keeper.tags)
    annotation = keeper.annotation
    for other in others:
        folders = union(folders, other.folders)
        tags = union(tags, other.tags)
        for playlist in playlists_in(other.annotation):
            annotation, _ = merge_playlist_annotation(annotation, playlist, today)
    return folders, tags, annotation


class LibraryMaintenanceService:
    """Store/library consistency checks and repair."""

    def __init__(self, store: ItemStore, library: ILibraryService) -> None:
        self._store = store
        self._library = library

    async def check_consistency(self) -> ConsistencyReport:
        """Compare linked store items against platform-tagged library items."""
        async with log_operation(logger, "library_maintenance.check") as result:
            linked = await self._store.list_linked_items()
            library_items = await self._library.find_items_by_tag(YOUTUBE_PLATFORM_TAG)
            library_ids = {item.id for item in library_items}
            known_external_ids = await self._store.known_external_ids()

            report = ConsistencyReport(
                store_items=len(linked),
                library_items=len(library_items),
                missing_in_library=[
                    record for record in linked if record.library_item_id not in library_ids
                ],
            )
            reported: set[str] = set()
            for item in library_items:
                external_id = extract_external_id(item.annotation, item.url)
                if (
                    external_id
                    and external_id not in known_external_ids
                    and external_id not in reported
                ):
                    reported.add(external_id)
                    report.missing_in_store.append(item)

            result.update(report.to_dict())
        return report

    async def repair_missing_in_library(
        self, report: ConsistencyReport | None = None
    ) -> int:
        """Reset items whose library copy is gone so they get fetched again.

        Returns:
            Number of rows reset
        """
        if report is None:
            report = await self.check_consistency()
        item_ids = [record.id for record in report.missing_in_library]
        reset = await self._store.reset_for_refetch(item_ids)
        logger.info(
            "library_maintenance.repaired",
            extra={"candidates": len(item_ids), "reset": reset},
        )
        return reset

    async def repair_missing_in_store(
        self, report: ConsistencyReport | None = None
    ) -> int:
        """Record library-only items as done, so they are never fetched again.

        Returns:
            Number of rows recorded
        """
        if report is None:
            report = await self.check_consistency()
        recorded = 0
        for item in report.missing_in_store:
            external_id = extract_external_id(item.annotation, item.url)
            if not external_id:
                continue
            if await self._store.record_library_item(
                external_id,
                item.id,
                source_url=item.url or watch_url(external_id),
                title=item.name or None,
            ):
                recorded += 1
        logger.info(
            "library_maintenance.store_repaired",
            extra={"candidates": len(report.missing_in_store), "recorded": recorded},
        )
        return recorded

    # =========================================================================
    # DUPLICATES
    # =========================================================================

    async def find_library_duplicates(self) -> dict[str, list[LibraryItem]]:
        """Platform-tagged library items grouped by external id, groups of 2+ only.

        Each group is ordered oldest first, so group[0] is the keeper.
        """
        groups: dict[str, list[LibraryItem]] = defaultdict(list)
        for item in await self._library.find_items_by_tag(YOUTUBE_PLATFORM_TAG):
            external_id = extract_external_id(item.annotation, item.url)
            if external_id:
                groups[external_id].append(item)
        return {
            external_id: oldest_first(items)
            for external_id, items in groups.items()
            if len(items) > 1
        }

    async def merge_library_duplicates(self) -> DuplicateMergeReport:
        """Fold every duplicate group into its oldest item.

        A group whose library calls fail is logged in the report and left as it
        is; the other groups are still merged.
        """
        async with log_operation(logger, "library_maintenance.merge_duplicates") as result:
            duplicates = await self.find_library_duplicates()
            report = DuplicateMergeReport(groups=len(duplicates))
            today = date.today()

            for external_id, (keeper, *others) in duplicates.items():
                trashed: list[str] = []
                failed = False
                try:
                    folders, tags, annotation = merge_into(keeper, others, today)
                    await self._library.update_item(
                        keeper.id, folders=folders, tags=tags, annotation=annotation
                    )
                    for other in others:
                        await self._library.trash_item(other.id)
                        trashed.append(other.id)
                except LibraryServiceError as e:
                    failed = True
                    report.errors.append(f"{external_id}: {e}")
                    logger.warning(
                        "library_maintenance.merge_failed",
                        extra={"external_id": external_id, "error": str(e)},
                    )

                # whatever did get trashed must not stay referenced
                report.trashed += len(trashed)
                report.relinked += await self._store.relink_library_item(trashed, keeper.id)
                if failed:
                    continue
                report.merged += 1
                logger.debug(
                    "library_maintenance.duplicates_merged",
                    extra={
                        "external_id": external_id,
                        "keeper": keeper.id,
                        "trashed": [other.id for other in others],
                    },
                )

            result.update(report.to_dict())
        return report
