"""Subscription checker - one full check pass.

Hey future me - this glues everything together. A pass goes:

```
diff_all (listing - completed, smallest backlog first)
   └─► per new entry:
         DuplicateResolver.resolve ──duplicate──► done (no fetch)
               │ not a duplicate
               ▼
         ReconciliationService.enrich (batched full metadata, best effort)
               │
               ▼
         store.upsert_item ──None──► skipped (done elsewhere / leased)
               │ LeaseGrant
               ▼
         queue.enqueue(QueueItem)
queue.start()
   └─► per subscription: wait_for_items(ids, subscription_timeout)
```

Every subscription gets its own hard timeout. A hung fetch only costs that
subscription's wait - the pass goes on, and the item keeps running in the queue.
"""

import logging
from dataclasses import dataclass, field

from subsync.application.services.annotations import watch_url
from subsync.application.services.duplicate_resolver import DuplicateResolver
from subsync.application.services.reconciliation import DiffResult, ReconciliationService
from subsync.application.workers.download_queue import DownloadQueue
from subsync.domain.entities import QueueItem, QueueItemStatus, Subscription
from subsync.domain.ports import ListingEntry
from subsync.infrastructure.observability import log_operation, set_correlation_id
from subsync.infrastructure.persistence import ItemStore

logger = logging.getLogger(__name__)


@dataclass
class CheckResult:
    """Outcome of checking one subscription."""

    subscription_id: str
    title: str
    new_items: int = 0
    duplicates: int = 0
    skipped: int = 0
    enqueued: int = 0
    # completed = the fetch exited 0; linked = it also made it into the library
    completed: int = 0
    linked: int = 0
    failed: int = 0
    timed_out: bool = False
    error: str | None = None
    external_ids: list[str] = field(default_factory=list)


class SubscriptionChecker:
    """Runs reconciliation passes and feeds the download queue."""

    def __init__(
        self,
        store: ItemStore,
        reconciliation: ReconciliationService,
        resolver: DuplicateResolver,
        queue: DownloadQueue,
        subscription_timeout_seconds: float = 30 * 60,
    ) -> None:
        """Initialize the checker.

        Args:
            store: Item store
            reconciliation: Diff engine
            resolver: Duplicate resolver
            queue: Download queue
            subscription_timeout_seconds: Hard wait limit per subscription
        """
        self._store = store
        self._reconciliation = reconciliation
        self._resolver = resolver
        self._queue = queue
        self._timeout = subscription_timeout_seconds

    async def check_one(self, subscription_id: str) -> CheckResult:
        """Check a single subscription.

        Raises:
            EntityNotFoundException: If the subscription doesn't exist
        """
        subscription = await self._store.get_subscription(subscription_id)
        if subscription.skip:
            return CheckResult(
                subscription_id=subscription.id,
                title=subscription.display_title,
                error="Subscription is marked skip",
            )
        results = await self.check_all([subscription])
        return results[0]

    async def check_all(
        self, subscriptions: list[Subscription] | None = None
    ) -> list[CheckResult]:
        """Run one check pass.

        Args:
            subscriptions: Subscriptions to check (default: all not marked skip)

        Returns:
            One CheckResult per checked subscription, in scheduling order
        """
        set_correlation_id()
        if subscriptions is None:
            subscriptions = await self._store.list_subscriptions(include_skipped=False)

        async with log_operation(
            logger, "subscription_checker.check_all", subscriptions=len(subscriptions)
        ) as summary:
            diffs = await self._reconciliation.diff_all(subscriptions)

            results: list[CheckResult] = []
            for diff in diffs:
                results.append(await self._schedule(diff))

            if any(r.enqueued for r in results):
                self._queue.start()

            for result in results:
                if result.enqueued:
                    await self._wait_for(result)

            summary.update(
                new_items=sum(r.new_items for r in results),
                duplicates=sum(r.duplicates for r in results),
                enqueued=sum(r.enqueued for r in results),
                completed=sum(r.completed for r in results),
                linked=sum(r.linked for r in results),
                failed=sum(r.failed for r in results),
                errors=sum(1 for r in results if r.error),
            )
        return results

    async def _schedule(self, diff: DiffResult) -> CheckResult:
        """Resolve, lease and enqueue the new entries of one subscription."""
        subscription = diff.subscription
        result = CheckResult(
            subscription_id=subscription.id,
            title=subscription.display_title,
            new_items=diff.new_count,
            error=diff.error,
        )
        if not diff.ok:
            return result
        if not subscription.auto_download:
            logger.info(
                "subscription_checker.auto_download_disabled",
                extra={"subscription_id": subscription.id, "new_items": diff.new_count},
            )
            return result

        to_fetch: list[ListingEntry] = []
        for entry in diff.new_entries:
            try:
                resolved = await self._resolver.resolve(subscription, entry)
            except Exception as e:
                self._entry_failed(subscription, entry, result, e)
                continue
            if resolved.is_duplicate:
                result.duplicates += 1
            else:
                to_fetch.append(entry)

        for entry in await self._reconciliation.enrich(to_fetch):
            try:
                await self._schedule_entry(subscription, entry, result)
            except Exception as e:
                self._entry_failed(subscription, entry, result, e)

        logger.info(
            "subscription_checker.subscription_scheduled",
            extra={
                "subscription_id": subscription.id,
                "new_items": result.new_items,
                "duplicates": result.duplicates,
                "skipped": result.skipped,
                "enqueued": result.enqueued,
            },
        )
        return result

    @staticmethod
    def _entry_failed(
        subscription: Subscription, entry: ListingEntry, result: CheckResult, error: Exception
    ) -> None:
        # One bad entry never aborts the rest of the subscription
        result.skipped += 1
        logger.error(
            "subscription_checker.entry_error",
            exc_info=error,
            extra={
                "subscription_id": subscription.id,
                "external_id": entry.id,
                "error_type": type(error).__name__,
            },
        )

    async def _schedule_entry(
        self, subscription: Subscription, entry: ListingEntry, result: CheckResult
    ) -> None:
        """Lease and enqueue one entry that is not a duplicate."""
        url = entry.url or watch_url(entry.id)
        grant = await self._store.upsert_item(
            subscription.id, entry.id, title=entry.title, source_url=url
        )
        if grant is None:
            result.skipped += 1
            return

        item = QueueItem(
            external_id=entry.id,
            url=url,
            item_id=grant.item_id,
            lock_token=grant.lock_token,
            subscription_id=subscription.id,
            subscription_title=subscription.display_title,
            subscription_url=subscription.url,
            library_folder_id=subscription.library_folder_id,
            format=subscription.format,
            quality=subscription.quality,
            title=entry.title,
            uploader=entry.uploader,
            upload_date=entry.upload_date,
            view_count=entry.view_count,
            duration=entry.duration,
        )
        if not await self._queue.enqueue(item):
            # Same id already queued through another subscription this pass
            await self._store.release_lock(grant.item_id, grant.lock_token)
            result.skipped += 1
            return

        result.enqueued += 1
        result.external_ids.append(entry.id)

    async def _wait_for(self, result: CheckResult) -> None:
        finished = await self._queue.wait_for_items(result.external_ids, timeout=self._timeout)
        if not finished:
            result.timed_out = True
            logger.warning(
                "subscription_checker.subscription_timeout",
                extra={
                    "subscription_id": result.subscription_id,
                    "timeout_seconds": self._timeout,
                },
            )

        for external_id in result.external_ids:
            item = self._queue.get_item(external_id)
            if item is None:
                continue
            if item.status == QueueItemStatus.COMPLETED:
                result.completed += 1
                if item.linked:
                    result.linked += 1
            elif item.status == QueueItemStatus.FAILED and item.is_finished():
                result.failed += 1
