"""Duplicate resolver - link instead of fetching twice.

Hey future me - the same video often sits in several playlists. Fetching it once per
subscription would fill the library with copies, so before an item becomes fetch work
we ask two questions:

1. Is there a fully-done MASTER record for this external id (any subscription)?
2. Did the library staging scan find an existing library item with this id?

If yes, we don't fetch. We put the existing library item into this subscription's
folder, add the subscription to its "Playlists:" annotation line and write a
DUPLICATE record (fetched=False, library_linked=True, is_duplicate=True) so the id
counts as done for this subscription from now on.

Anything going wrong on the library side (timeout, error, item gone) is NOT fatal -
the candidate simply falls through to a normal fetch.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import date

from subsync.application.services.annotations import (
    merge_playlist_annotation,
    union,
    watch_url,
)
from subsync.application.services.library_folders import ensure_subscription_folder
from subsync.domain.entities import Subscription
from subsync.domain.exceptions import LibraryServiceError
from subsync.domain.ports import ILibraryService, LibraryItem, ListingEntry
from subsync.infrastructure.persistence import ItemStore

logger = logging.getLogger(__name__)

SOURCE_MASTER = "master"
SOURCE_STAGING = "staging"


@dataclass
class ResolveResult:
    """Outcome of duplicate resolution for one candidate."""

    is_duplicate: bool
    master_item_id: str | None = None
    library_item_id: str | None = None
    source: str | None = None


NOT_DUPLICATE = ResolveResult(is_duplicate=False)


class DuplicateResolver:
    """Turns already-known items into duplicate records."""

    def __init__(
        self,
        store: ItemStore,
        library: ILibraryService,
        lookup_timeout: float = 15.0,
    ) -> None:
        """Initialize the resolver.

        Args:
            store: Item store
            library: Library service
            lookup_timeout: Bound (seconds) on each library call
        """
        self._store = store
        self._library = library
        self._timeout = lookup_timeout

    async def resolve(self, subscription: Subscription, entry: ListingEntry) -> ResolveResult:
        """Resolve one candidate.

        Returns:
            ResolveResult with is_duplicate=True when a duplicate record now exists
            (or the item is already in flight); is_duplicate=False means "fetch it".
        """
        master_item_id: str | None = None
        library_item_id: str | None = None
        source: str | None = None
        source_url = entry.url or watch_url(entry.id)

        master = await self._store.find_done_item(entry.id)
        if master is not None:
            master_item_id = master.id
            library_item_id = master.library_item_id
            source = SOURCE_MASTER
            source_url = master.source_url or source_url
        else:
            staged = await self._store.find_staging_item(entry.id)
            if staged is None:
                return NOT_DUPLICATE
            library_item_id = staged.library_item_id
            source = SOURCE_STAGING
            source_url = staged.url or source_url

        try:
            item = await self._find_library_item(library_item_id, source_url)
            if item is None:
                logger.info(
                    "duplicate_resolver.library_item_missing",
                    extra={"external_id": entry.id, "source": source},
                )
                return NOT_DUPLICATE
            await self._link(subscription, item)
        except (TimeoutError, LibraryServiceError) as e:
            logger.warning(
                "duplicate_resolver.library_failed",
                extra={
                    "external_id": entry.id,
                    "error": str(e) or type(e).__name__,
                },
            )
            return NOT_DUPLICATE

        record = await self._store.create_duplicate_record(
            subscription_id=subscription.id,
            external_id=entry.id,
            title=entry.title,
            master_item_id=master_item_id,
            library_item_id=item.id,
            source_url=source_url,
        )
        if record is None:
            logger.debug(
                "duplicate_resolver.item_in_flight",
                extra={"external_id": entry.id, "subscription_id": subscription.id},
            )

        logger.info(
            "duplicate_resolver.linked",
            extra={
                "external_id": entry.id,
                "subscription_id": subscription.id,
                "source": source,
                "library_item_id": item.id,
            },
        )
        return ResolveResult(
            is_duplicate=True,
            master_item_id=master_item_id,
            library_item_id=item.id,
            source=source,
        )

    async def _find_library_item(
        self, library_item_id: str | None, source_url: str
    ) -> LibraryItem | None:
        if library_item_id:
            item = await asyncio.wait_for(
                self._library.get_item(library_item_id), timeout=self._timeout
            )
            if item is not None:
                return item
        return await asyncio.wait_for(
            self._library.find_item_by_url(source_url), timeout=self._timeout
        )

    async def _link(self, subscription: Subscription, item: LibraryItem) -> None:
        """Attach the subscription's folder and playlist name to a library item."""
        folder_id = await asyncio.wait_for(
            ensure_subscription_folder(
                self._library,
                self._store,
                subscription.id,
                subscription.display_title,
                subscription.library_folder_id,
            ),
            timeout=self._timeout,
        )
        # Later entries of the same pass reuse the folder without another lookup
        subscription.library_folder_id = folder_id

        annotation, changed = merge_playlist_annotation(
            item.annotation, subscription.display_title, date.today()
        )
        folder_missing = folder_id not in item.folders
        if not changed and not folder_missing:
            return

        await asyncio.wait_for(
            self._library.update_item(
                item.id,
                folders=union(item.folders, [folder_id]) if folder_missing else None,
                annotation=annotation if changed else None,
            ),
            timeout=self._timeout,
        )
