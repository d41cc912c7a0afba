"""Library staging import - adopt what is already in the library.

Hey future me - users usually arrive with a library that already holds hundreds of
videos imported by hand or by an older install. Without this, the first check pass
would fetch all of them again.

scan_library() walks every library folder, reads back the annotation/tags we (or the
user) wrote, and stores the result in the STAGING tables. Nothing touches subscriptions
yet. The user then decides per folder:

- migrate(staging_id, url)            → new subscription, items copied as done rows
- migrate_into(staging_id, sub_id)    → merge into an existing subscription
- discard(staging_id)                 → forget it

Staging items also feed the duplicate resolver even before migration.
"""

import logging
import uuid
from collections import Counter

from subsync.application.services.annotations import (
    PLAYLIST_TAG_PREFIX,
    YOUTUBE_PLATFORM_TAG,
    extract_external_id,
    parse_annotation,
)
from subsync.domain.entities import StagingItem, StagingPlaylist, Subscription
from subsync.domain.ports import ILibraryService, LibraryItem
from subsync.infrastructure.observability import log_operation
from subsync.infrastructure.persistence import ItemStore

logger = logging.getLogger(__name__)

# The library's own catch-all folder, never a former subscription
EXCLUDED_FOLDER_NAMES = frozenset({"Default Playlist"})


def detect_playlist_name(items: list[LibraryItem]) -> tuple[str | None, float]:
    """Most frequent "Playlist: X" tag and the share of items carrying it."""
    if not items:
        return None, 0.0
    counts: Counter[str] = Counter()
    for item in items:
        for tag in item.tags:
            if tag.startswith(PLAYLIST_TAG_PREFIX):
                counts[tag[len(PLAYLIST_TAG_PREFIX) :]] += 1
    if not counts:
        return None, 0.0
    name, count = counts.most_common(1)[0]
    return name, count / len(items)


class LibrarySyncService:
    """Scans the library into staging records and migrates them."""

    def __init__(self, store: ItemStore, library: ILibraryService) -> None:
        self._store = store
        self._library = library

    async def scan_library(self) -> list[StagingPlaylist]:
        """Rebuild the staging tables from the current library contents."""
        async with log_operation(logger, "library_sync.scan") as result:
            await self._store.clear_staging()

            folders = [
                f
                for f in await self._library.list_folders(flatten=True)
                if f.name not in EXCLUDED_FOLDER_NAMES
            ]
            # external id -> staging item id of its first occurrence in this scan
            first_seen: dict[str, str] = {}
            playlists: list[StagingPlaylist] = []

            for folder in folders:
                items = [
                    item
                    for item in await self._library.list_items(folder.id)
                    if YOUTUBE_PLATFORM_TAG in item.tags
                ]
                if not items:
                    continue

                staging_id = str(uuid.uuid4())
                staged = [
                    await self._stage_item(item, staging_id, folder.id, first_seen)
                    for item in items
                ]
                name, confidence = detect_playlist_name(items)
                playlist = StagingPlaylist(
                    id=staging_id,
                    library_folder_id=folder.id,
                    library_folder_name=folder.name,
                    detected_name=name,
                    item_count=len(staged),
                    confidence=confidence,
                    items=staged,
                )
                playlists.append(await self._store.add_staging_playlist(playlist))

            result.update(
                folders=len(folders),
                playlists=len(playlists),
                items=sum(p.item_count for p in playlists),
                duplicates=sum(1 for p in playlists for i in p.items if i.is_duplicate),
            )
        return playlists

    async def _stage_item(
        self,
        item: LibraryItem,
        staging_id: str,
        folder_id: str,
        first_seen: dict[str, str],
    ) -> StagingItem:
        staged_id = str(uuid.uuid4())
        external_id = extract_external_id(item.annotation, item.url)
        meta = parse_annotation(item.annotation, item.tags)

        is_duplicate = False
        master_item_id: str | None = None
        if external_id:
            master = await self._store.find_done_item(external_id)
            if master is not None:
                is_duplicate, master_item_id = True, master.id
            elif external_id in first_seen:
                is_duplicate, master_item_id = True, first_seen[external_id]
            else:
                first_seen[external_id] = staged_id
        else:
            logger.debug(
                "library_sync.no_external_id",
                extra={"library_item_id": item.id, "item_name": item.name},
            )

        return StagingItem(
            id=staged_id,
            staging_playlist_id=staging_id,
            library_item_id=item.id,
            external_id=external_id,
            url=item.url,
            title=meta.title or item.name,
            uploader=meta.uploader,
            upload_date=meta.upload_date,
            view_count=meta.view_count,
            library_folder_id=folder_id,
            is_duplicate=is_duplicate,
            master_item_id=master_item_id,
        )

    async def list_staging(self, include_synced: bool = False) -> list[StagingPlaylist]:
        """Staging playlists waiting for a decision."""
        return await self._store.list_staging_playlists(include_synced=include_synced)

    async def migrate(
        self, staging_id: str, url: str, title: str | None = None
    ) -> Subscription:
        """Create a subscription from a staging playlist."""
        subscription = await self._store.migrate_staging(staging_id, url, title)
        logger.info(
            "library_sync.migrated",
            extra={"staging_id": staging_id, "subscription_id": subscription.id},
        )
        return subscription

    async def migrate_into(self, staging_id: str, subscription_id: str) -> int:
        """Merge a staging playlist into an existing subscription."""
        copied = await self._store.migrate_staging_into(staging_id, subscription_id)
        logger.info(
            "library_sync.merged",
            extra={
                "staging_id": staging_id,
                "subscription_id": subscription_id,
                "items": copied,
            },
        )
        return copied

    async def discard(self, staging_id: str) -> None:
        """Drop a staging playlist."""
        await self._store.discard_staging(staging_id)
