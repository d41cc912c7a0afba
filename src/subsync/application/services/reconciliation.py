"""Reconciliation diff engine - what is new in a remote collection?

Hey future me - this is the CHEAP half of a check pass. It only runs the fetch tool in
listing mode (flat playlist, no downloads) and subtracts what the store already
considers done:

    new = listing - completed_ids(subscription)

Listing order is kept (oldest-first or newest-first is whatever the remote gives us)
and ids repeated inside one listing are dropped.

One broken subscription must never take the pass down - diff_all() catches per
subscription and exposes the error on DiffResult.error.

enrich() is the EXPENSIVE half: flat listings usually come without upload date, view
count or duration, so the entries that will actually be fetched get a batched full
metadata lookup. It is best effort - a failed batch just keeps the listing fields.
"""

import asyncio
import logging
from dataclasses import dataclass, field

from subsync.application.services.annotations import watch_url
from subsync.config.settings import ReconciliationSettings
from subsync.domain.entities import Subscription
from subsync.domain.exceptions import FetchToolError
from subsync.domain.ports import IFetchTool, ListingEntry
from subsync.infrastructure.observability import log_operation
from subsync.infrastructure.persistence import ItemStore

logger = logging.getLogger(__name__)


@dataclass
class DiffResult:
    """New-work set of one subscription."""

    subscription: Subscription
    new_entries: list[ListingEntry] = field(default_factory=list)
    listing_count: int = 0
    error: str | None = None

    @property
    def new_count(self) -> int:
        """Number of new items (0 when the listing failed)."""
        return len(self.new_entries)

    @property
    def ok(self) -> bool:
        """True if the listing succeeded."""
        return self.error is None


def new_entries_from_listing(
    listing: list[ListingEntry], completed: set[str]
) -> list[ListingEntry]:
    """Listing minus completed ids, in listing order, first occurrence wins."""
    seen: set[str] = set()
    fresh: list[ListingEntry] = []
    for entry in listing:
        if entry.id in completed or entry.id in seen:
            continue
        seen.add(entry.id)
        fresh.append(entry)
    return fresh


class ReconciliationService:
    """Diffs remote listings against persisted state."""

    def __init__(
        self,
        store: ItemStore,
        fetch_tool: IFetchTool,
        settings: ReconciliationSettings,
    ) -> None:
        """Initialize the service.

        Args:
            store: Item store (completed ids, summary updates)
            fetch_tool: Fetch tool used in listing mode
            settings: Parallelism and ordering policy
        """
        self._store = store
        self._fetch_tool = fetch_tool
        self._settings = settings

    async def diff(self, subscription: Subscription) -> DiffResult:
        """Compute the new-work set of one subscription.

        Raises:
            FetchToolError: If the listing fails
        """
        async with log_operation(
            logger,
            "reconciliation.diff",
            level=logging.DEBUG,
            subscription_id=subscription.id,
        ) as result:
            listing = await self._fetch_tool.list_entries(subscription.url)
            completed = await self._store.completed_ids(subscription.id)
            fresh = new_entries_from_listing(listing, completed)

            remote_title = listing[0].playlist_title if listing else None
            await self._store.update_subscription_summary(
                subscription.id,
                remote_item_count=len(listing),
                remote_title=remote_title,
            )

            result.update(listing_count=len(listing), new_items=len(fresh))

        return DiffResult(
            subscription=subscription,
            new_entries=fresh,
            listing_count=len(listing),
        )

    async def enrich(self, entries: list[ListingEntry]) -> list[ListingEntry]:
        """Fill in full metadata for entries about to be fetched.

        Runs the fetch tool in metadata mode over batches of item URLs. A batch that
        fails or times out is logged and its entries keep their listing fields.

        Returns:
            Entries in the same order, enriched where the lookup had data
        """
        if not self._settings.enrich_metadata or not entries:
            return list(entries)

        size = self._settings.metadata_batch_size
        details: dict[str, ListingEntry] = {}
        for start in range(0, len(entries), size):
            batch = entries[start : start + size]
            urls = [entry.url or watch_url(entry.id) for entry in batch]
            try:
                fetched = await asyncio.wait_for(
                    self._fetch_tool.fetch_metadata(urls),
                    timeout=self._settings.metadata_timeout_seconds,
                )
            except (FetchToolError, TimeoutError) as e:
                logger.warning(
                    "reconciliation.metadata_batch_failed",
                    extra={
                        "batch_start": start,
                        "batch_size": len(batch),
                        "error": str(e) or type(e).__name__,
                    },
                )
                continue
            for detail in fetched:
                details[detail.id] = detail

        logger.debug(
            "reconciliation.metadata_enriched",
            extra={"entries": len(entries), "enriched": len(details)},
        )
        return [
            entry.enriched(details[entry.id]) if entry.id in details else entry
            for entry in entries
        ]

    async def _safe_diff(
        self, subscription: Subscription, semaphore: asyncio.Semaphore
    ) -> DiffResult:
        async with semaphore:
            try:
                return await self.diff(subscription)
            except Exception as e:
                logger.warning(
                    "reconciliation.diff_failed",
                    extra={
                        "subscription_id": subscription.id,
                        "url": subscription.url,
                        "error": str(e),
                    },
                )
                return DiffResult(subscription=subscription, error=str(e))

    async def diff_all(self, subscriptions: list[Subscription]) -> list[DiffResult]:
        """Diff many subscriptions in parallel (bounded).

        Skipped subscriptions are not listed. With smallest_backlog_first the
        results come back ordered by ascending new-item count; failed listings
        count as zero.
        """
        active = [s for s in subscriptions if not s.skip]
        if not active:
            return []

        semaphore = asyncio.Semaphore(max(1, self._settings.concurrent_subscriptions))
        results = list(
            await asyncio.gather(*(self._safe_diff(s, semaphore) for s in active))
        )

        if self._settings.smallest_backlog_first:
            # sorted() is stable, so ties keep subscription order
            results = sorted(results, key=lambda r: r.new_count)

        failed = [r for r in results if not r.ok]
        if failed:
            logger.error(
                "reconciliation.diff_errors",
                extra={
                    "failed": len(failed),
                    "total": len(results),
                    "subscriptions": [r.subscription.display_title for r in failed],
                },
            )

        logger.info(
            "reconciliation.diff_all_complete",
            extra={
                "subscriptions": len(results),
                "new_items": sum(r.new_count for r in results),
            },
        )
        return results
