"""Item Store - the durable source of truth for subscriptions and items.

Hey future me - this is THE place that decides whether an item is DONE!

PROBLEM:
The scheduler runs fetches in parallel, the app can crash at any moment, and the same
external id can show up again on every reconciliation pass (and under several
subscriptions). Without one gatekeeper, items get downloaded twice or never.

SOLUTION:
Every write is one short transaction, and every lease change is a CONDITIONAL update
("... WHERE lock_token IS NULL") whose rowcount tells us who won:

```
upsert_item()          → takes the lease (or returns None = skip)
mark_downloading()     → status=downloading
mark_terminal()        → completed/failed, lease kept or released
mark_library_linked()  → DONE, lease released
release_lock()         → lease released, status untouched
cleanup_stale_locks()  → crash recovery on startup
```

An item is DONE when library_linked AND (fetched OR is_duplicate). Done rows are
never leased again, so reconciliation can't re-enqueue them.

There is no in-process lock anywhere here - the database constraints and conditional
updates are the only race protection.
"""

import logging
import uuid
from datetime import timedelta
from typing import Any

from sqlalchemy import and_, case, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from subsync.domain.entities import (
    ItemRecord,
    ItemStatus,
    LeaseGrant,
    Library,
    StagingItem,
    StagingPlaylist,
    Subscription,
)
from subsync.domain.exceptions import (
    BusinessRuleViolation,
    DuplicateEntityException,
    EntityNotFoundException,
    ValidationException,
)
from subsync.infrastructure.persistence.models import (
    ItemModel,
    LibraryModel,
    StagingItemModel,
    StagingPlaylistModel,
    SubscriptionModel,
    ensure_utc_aware,
    utc_now,
)
from subsync.infrastructure.persistence.retry import with_db_retry

logger = logging.getLogger(__name__)

# Fields callers may change through update_subscription()
_MUTABLE_SUBSCRIPTION_FIELDS = frozenset(
    {"title", "format", "quality", "auto_download", "skip", "library_folder_id"}
)

_TERMINAL_STATUSES = (ItemStatus.COMPLETED, ItemStatus.FAILED)


def _is_done_clause() -> Any:
    """SQL expression equivalent to ItemRecord.is_done."""
    return and_(
        ItemModel.library_linked.is_(True),
        or_(ItemModel.fetched.is_(True), ItemModel.is_duplicate.is_(True)),
    )


def new_lock_token() -> str:
    """Generate a lease token."""
    return uuid.uuid4().hex


class ItemStore:
    """Persistent store for subscriptions, items, staging data and libraries."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        library_id: str | None = None,
    ) -> None:
        """Initialize the store.

        Args:
            session_factory: Factory for creating DB sessions
            library_id: Library stamped on new subscriptions/items (None = unknown)
        """
        self._session_factory = session_factory
        self._library_id = library_id

    @property
    def library_id(self) -> str | None:
        """Library new rows are assigned to."""
        return self._library_id

    def set_library(self, library_id: str | None) -> None:
        """Switch the library stamped on new rows."""
        self._library_id = library_id

    # =========================================================================
    # CONVERTERS
    # =========================================================================

    @staticmethod
    def _to_subscription(model: SubscriptionModel) -> Subscription:
        return Subscription(
            id=model.id,
            url=model.url,
            title=model.title,
            remote_title=model.remote_title,
            format=model.format,
            quality=model.quality,
            auto_download=model.auto_download,
            skip=model.skip,
            last_checked=ensure_utc_aware(model.last_checked)
            if model.last_checked
            else None,
            remote_item_count=model.remote_item_count,
            item_count=model.item_count,
            library_folder_id=model.library_folder_id,
            library_id=model.library_id,
            created_at=ensure_utc_aware(model.created_at),
        )

    @staticmethod
    def _to_item(model: ItemModel) -> ItemRecord:
        return ItemRecord(
            id=model.id,
            subscription_id=model.subscription_id,
            external_id=model.external_id,
            title=model.title,
            source_url=model.source_url,
            status=ItemStatus(model.status),
            fetched=model.fetched,
            library_linked=model.library_linked,
            lock_token=model.lock_token,
            locked_at=ensure_utc_aware(model.locked_at) if model.locked_at else None,
            is_duplicate=model.is_duplicate,
            master_item_id=model.master_item_id,
            library_item_id=model.library_item_id,
            failure_reason=model.failure_reason,
            library_id=model.library_id,
            first_attempt_at=ensure_utc_aware(model.first_attempt_at)
            if model.first_attempt_at
            else None,
            fetched_at=ensure_utc_aware(model.fetched_at) if model.fetched_at else None,
            created_at=ensure_utc_aware(model.created_at),
            updated_at=ensure_utc_aware(model.updated_at),
        )

    @staticmethod
    def _to_staging_item(model: StagingItemModel) -> StagingItem:
        return StagingItem(
            id=model.id,
            staging_playlist_id=model.staging_playlist_id,
            library_item_id=model.library_item_id,
            external_id=model.external_id,
            url=model.url,
            title=model.title,
            uploader=model.uploader,
            upload_date=model.upload_date,
            view_count=model.view_count,
            duration=model.duration,
            library_folder_id=model.library_folder_id,
            is_duplicate=model.is_duplicate,
            master_item_id=model.master_item_id,
        )

    def _to_staging_playlist(self, model: StagingPlaylistModel) -> StagingPlaylist:
        return StagingPlaylist(
            id=model.id,
            library_folder_id=model.library_folder_id,
            library_folder_name=model.library_folder_name,
            detected_name=model.detected_name,
            item_count=model.item_count,
            confidence=model.confidence,
            playlist_url=model.playlist_url,
            synced=model.synced,
            synced_subscription_id=model.synced_subscription_id,
            items=[self._to_staging_item(item) for item in model.items],
            created_at=ensure_utc_aware(model.created_at),
        )

    # =========================================================================
    # SUBSCRIPTIONS
    # =========================================================================

    @with_db_retry()
    async def add_subscription(
        self,
        url: str,
        title: str | None = None,
        format: str = "best",
        quality: str = "",
        auto_download: bool = True,
        library_folder_id: str | None = None,
    ) -> Subscription:
        """Create a subscription.

        Raises:
            DuplicateEntityException: If the url is already subscribed
        """
        async with self._session_factory() as session:
            existing = await session.execute(
                select(SubscriptionModel.id).where(SubscriptionModel.url == url)
            )
            if existing.scalar_one_or_none() is not None:
                raise DuplicateEntityException("Subscription", url)

            model = SubscriptionModel(
                url=url,
                title=title,
                format=format,
                quality=quality,
                auto_download=auto_download,
                library_folder_id=library_folder_id,
                library_id=self._library_id,
            )
            session.add(model)
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise DuplicateEntityException("Subscription", url) from e

            logger.info(
                "item_store.subscription_added",
                extra={"subscription_id": model.id, "url": url},
            )
            return self._to_subscription(model)

    async def get_subscription(self, subscription_id: str) -> Subscription:
        """Get a subscription by id.

        Raises:
            EntityNotFoundException: If it doesn't exist
        """
        async with self._session_factory() as session:
            model = await session.get(SubscriptionModel, subscription_id)
            if model is None:
                raise EntityNotFoundException("Subscription", subscription_id)
            return self._to_subscription(model)

    async def get_subscription_by_url(self, url: str) -> Subscription | None:
        """Get a subscription by its remote url."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(SubscriptionModel).where(SubscriptionModel.url == url)
            )
            model = result.scalar_one_or_none()
            return self._to_subscription(model) if model else None

    async def list_subscriptions(self, include_skipped: bool = True) -> list[Subscription]:
        """List subscriptions in creation order."""
        query = select(SubscriptionModel).order_by(SubscriptionModel.created_at)
        if not include_skipped:
            query = query.where(SubscriptionModel.skip.is_(False))
        async with self._session_factory() as session:
            result = await session.execute(query)
            return [self._to_subscription(m) for m in result.scalars().all()]

    @with_db_retry()
    async def update_subscription(self, subscription_id: str, **fields: Any) -> Subscription:
        """Update user-editable subscription fields.

        Raises:
            ValidationException: On unknown field names
            EntityNotFoundException: If the subscription doesn't exist
        """
        unknown = set(fields) - _MUTABLE_SUBSCRIPTION_FIELDS
        if unknown:
            raise ValidationException(
                f"Cannot update subscription fields: {', '.join(sorted(unknown))}"
            )
        async with self._session_factory() as session:
            model = await session.get(SubscriptionModel, subscription_id)
            if model is None:
                raise EntityNotFoundException("Subscription", subscription_id)
            for name, value in fields.items():
                setattr(model, name, value)
            await session.commit()
            return self._to_subscription(model)

    @with_db_retry()
    async def update_subscription_summary(
        self,
        subscription_id: str,
        remote_item_count: int,
        remote_title: str | None = None,
    ) -> None:
        """Record the outcome of a remote listing (count, title, last checked)."""
        values: dict[str, Any] = {
            "remote_item_count": remote_item_count,
            "last_checked": utc_now(),
        }
        if remote_title:
            values["remote_title"] = remote_title
        async with self._session_factory() as session:
            await session.execute(
                update(SubscriptionModel)
                .where(SubscriptionModel.id == subscription_id)
                .values(**values)
            )
            await session.commit()

    @with_db_retry()
    async def increment_item_count(self, subscription_id: str, by: int = 1) -> None:
        """Bump the number of items imported through a subscription."""
        async with self._session_factory() as session:
            await session.execute(
                update(SubscriptionModel)
                .where(SubscriptionModel.id == subscription_id)
                .values(item_count=SubscriptionModel.item_count + by)
            )
            await session.commit()

    @with_db_retry()
    async def delete_subscription(
        self, subscription_id: str, delete_items: bool = False
    ) -> int:
        """Delete a subscription.

        Args:
            subscription_id: Subscription to delete
            delete_items: Also delete its item rows. When False the rows stay as
                detached history (subscription_id = NULL) so their external ids
                still count for duplicate detection.

        Returns:
            Number of item rows deleted or detached
        """
        async with self._session_factory() as session:
            model = await session.get(SubscriptionModel, subscription_id)
            if model is None:
                raise EntityNotFoundException("Subscription", subscription_id)

            if delete_items:
                result = await session.execute(
                    delete(ItemModel).where(ItemModel.subscription_id == subscription_id)
                )
            else:
                result = await session.execute(
                    update(ItemModel)
                    .where(ItemModel.subscription_id == subscription_id)
                    .values(subscription_id=None)
                )
            affected = result.rowcount or 0

            await session.delete(model)
            await session.commit()

        logger.info(
            "item_store.subscription_deleted",
            extra={
                "subscription_id": subscription_id,
                "delete_items": delete_items,
                "items_affected": affected,
            },
        )
        return affected

    # =========================================================================
    # ITEM LEASES & STATUS
    # =========================================================================

    @with_db_retry()
    async def upsert_item(
        self,
        subscription_id: str,
        external_id: str,
        title: str | None = None,
        source_url: str | None = None,
    ) -> LeaseGrant | None:
        """Insert or refresh an item and take its lease.

        This is THE dedup gate for storage-level races.

        Returns:
            LeaseGrant with the row id and lease token, or None when the item is
            already done or another holder owns the lease (caller skips it).
        """
        token = new_lock_token()
        now = utc_now()

        async with self._session_factory() as session:
            result = await session.execute(
                select(ItemModel).where(
                    ItemModel.subscription_id == subscription_id,
                    ItemModel.external_id == external_id,
                )
            )
            model = result.scalar_one_or_none()

            if model is None:
                model = ItemModel(
                    subscription_id=subscription_id,
                    external_id=external_id,
                    title=title,
                    source_url=source_url,
                    status=ItemStatus.PENDING.value,
                    lock_token=token,
                    locked_at=now,
                    library_id=self._library_id,
                )
                session.add(model)
                try:
                    await session.commit()
                except IntegrityError:
                    # Another writer inserted the same (subscription, external id) first
                    await session.rollback()
                    logger.debug(
                        "item_store.upsert_race_lost",
                        extra={"external_id": external_id},
                    )
                    return None
                return LeaseGrant(item_id=model.id, lock_token=token)

            if model.library_linked and (model.fetched or model.is_duplicate):
                logger.debug(
                    "item_store.upsert_skip_done", extra={"external_id": external_id}
                )
                return None
            if model.lock_token is not None:
                logger.debug(
                    "item_store.upsert_skip_locked", extra={"external_id": external_id}
                )
                return None

            values: dict[str, Any] = {
                "lock_token": token,
                "locked_at": now,
                "status": ItemStatus.PENDING.value,
                "updated_at": now,
            }
            if title:
                values["title"] = title
            if source_url:
                values["source_url"] = source_url

            update_result = await session.execute(
                update(ItemModel)
                .where(
                    ItemModel.id == model.id,
                    ItemModel.lock_token.is_(None),
                    ~_is_done_clause(),
                )
                .values(**values)
            )
            await session.commit()

            if update_result.rowcount == 0:
                return None
            return LeaseGrant(item_id=model.id, lock_token=token)

    @with_db_retry()
    async def mark_downloading(self, item_id: str, lock_token: str | None = None) -> bool:
        """Mark an item as downloading (stamps first_attempt_at once)."""
        conditions = [ItemModel.id == item_id]
        if lock_token is not None:
            conditions.append(ItemModel.lock_token == lock_token)
        now = utc_now()
        async with self._session_factory() as session:
            result = await session.execute(
                update(ItemModel)
                .where(*conditions)
                .values(
                    status=ItemStatus.DOWNLOADING.value,
                    first_attempt_at=func.coalesce(ItemModel.first_attempt_at, now),
                    updated_at=now,
                )
            )
            await session.commit()
            return bool(result.rowcount)

    @with_db_retry()
    async def mark_terminal(
        self,
        item_id: str,
        status: ItemStatus,
        reason: str | None = None,
        release: bool = True,
        lock_token: str | None = None,
    ) -> bool:
        """Record the outcome of a fetch attempt.

        Args:
            item_id: Item row id
            status: COMPLETED or FAILED
            reason: Failure reason (stored for FAILED)
            release: Clear the lease. The scheduler keeps it on success so the
                finalizer still owns the row while importing.
            lock_token: When given, only the holder of this lease may write

        Returns:
            True if the row was updated, False if the lease was lost
        """
        if status not in _TERMINAL_STATUSES:
            raise ValidationException(f"Not a terminal item status: {status.value}")

        now = utc_now()
        values: dict[str, Any] = {"status": status.value, "updated_at": now}
        if status == ItemStatus.COMPLETED:
            values.update(fetched=True, fetched_at=now, failure_reason=None)
        else:
            values.update(fetched=False, failure_reason=reason)
        if release:
            values.update(lock_token=None, locked_at=None)

        conditions = [ItemModel.id == item_id]
        if lock_token is not None:
            conditions.append(ItemModel.lock_token == lock_token)

        async with self._session_factory() as session:
            result = await session.execute(
                update(ItemModel).where(*conditions).values(**values)
            )
            await session.commit()

        updated = bool(result.rowcount)
        if not updated:
            logger.warning(
                "item_store.lease_lost",
                extra={"item_id": item_id, "status": status.value},
            )
        return updated

    @with_db_retry()
    async def release_lock(self, item_id: str, lock_token: str | None = None) -> bool:
        """Release the lease without touching status."""
        conditions = [ItemModel.id == item_id]
        if lock_token is not None:
            conditions.append(ItemModel.lock_token == lock_token)
        async with self._session_factory() as session:
            result = await session.execute(
                update(ItemModel)
                .where(*conditions)
                .values(lock_token=None, locked_at=None, updated_at=utc_now())
            )
            await session.commit()
            return bool(result.rowcount)

    @with_db_retry()
    async def mark_library_linked(
        self, item_id: str, library_item_id: str | None = None
    ) -> bool:
        """Mark an item as stored in the library and release its lease."""
        values: dict[str, Any] = {
            "library_linked": True,
            "lock_token": None,
            "locked_at": None,
            "updated_at": utc_now(),
        }
        if library_item_id:
            values["library_item_id"] = library_item_id
        if self._library_id:
            values["library_id"] = self._library_id
        async with self._session_factory() as session:
            result = await session.execute(
                update(ItemModel).where(ItemModel.id == item_id).values(**values)
            )
            await session.commit()
            return bool(result.rowcount)

    # Listen up, this is THE crash recovery! A process that dies mid-fetch leaves its lease
    # behind, and upsert_item() would skip that item forever. Run once at startup - never
    # while a queue of THIS process is running, or you'd release leases still in use.
    @with_db_retry()
    async def cleanup_stale_locks(self, max_age_hours: float) -> int:
        """Release leases older than max_age_hours.

        Rows stuck in 'downloading' go back to 'pending'.

        Returns:
            Number of leases released
        """
        cutoff = utc_now() - timedelta(hours=max_age_hours)
        async with self._session_factory() as session:
            result = await session.execute(
                update(ItemModel)
                .where(
                    ItemModel.lock_token.is_not(None),
                    func.coalesce(ItemModel.locked_at, ItemModel.updated_at) < cutoff,
                )
                .values(
                    lock_token=None,
                    locked_at=None,
                    status=case(
                        (ItemModel.status == ItemStatus.DOWNLOADING.value, ItemStatus.PENDING.value),
                        else_=ItemModel.status,
                    ),
                )
            )
            await session.commit()

        released = result.rowcount or 0
        if released:
            logger.warning(
                "item_store.stale_locks_released",
                extra={"released": released, "max_age_hours": max_age_hours},
            )
        return released

    # =========================================================================
    # ITEM QUERIES
    # =========================================================================

    async def completed_ids(self, subscription_id: str) -> set[str]:
        """External ids that are fully done for a subscription."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(ItemModel.external_id).where(
                    ItemModel.subscription_id == subscription_id,
                    _is_done_clause(),
                )
            )
            return set(result.scalars().all())

    async def find_done_item(self, external_id: str) -> ItemRecord | None:
        """Find a fully-done, non-duplicate master record under any subscription."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(ItemModel)
                .where(
                    ItemModel.external_id == external_id,
                    ItemModel.is_duplicate.is_(False),
                    ItemModel.fetched.is_(True),
                    ItemModel.library_linked.is_(True),
                )
                .order_by(ItemModel.created_at)
                .limit(1)
            )
            model = result.scalar_one_or_none()
            return self._to_item(model) if model else None

    async def get_item(self, item_id: str) -> ItemRecord:
        """Get an item by row id.

        Raises:
            EntityNotFoundException: If it doesn't exist
        """
        async with self._session_factory() as session:
            model = await session.get(ItemModel, item_id)
            if model is None:
                raise EntityNotFoundException("Item", item_id)
            return self._to_item(model)

    async def get_item_by_external_id(
        self, subscription_id: str, external_id: str
    ) -> ItemRecord | None:
        """Get the item row of a subscription by external id."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(ItemModel).where(
                    ItemModel.subscription_id == subscription_id,
                    ItemModel.external_id == external_id,
                )
            )
            model = result.scalar_one_or_none()
            return self._to_item(model) if model else None

    async def list_items(
        self,
        subscription_id: str | None = None,
        status: ItemStatus | None = None,
    ) -> list[ItemRecord]:
        """List items, optionally filtered by subscription and status."""
        query = select(ItemModel).order_by(ItemModel.created_at)
        if subscription_id is not None:
            query = query.where(ItemModel.subscription_id == subscription_id)
        if status is not None:
            query = query.where(ItemModel.status == status.value)
        async with self._session_factory() as session:
            result = await session.execute(query)
            return [self._to_item(m) for m in result.scalars().all()]

    async def list_linked_items(self) -> list[ItemRecord]:
        """Done, non-duplicate items that know their library item id."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(ItemModel).where(
                    _is_done_clause(),
                    ItemModel.is_duplicate.is_(False),
                    ItemModel.library_item_id.is_not(None),
                )
            )
            return [self._to_item(m) for m in result.scalars().all()]

    async def known_external_ids(self) -> set[str]:
        """Every external id the store has a row for."""
        async with self._session_factory() as session:
            result = await session.execute(select(ItemModel.external_id).distinct())
            return set(result.scalars().all())

    @with_db_retry()
    async def reset_for_refetch(self, item_ids: list[str]) -> int:
        """Make items eligible for a fresh fetch (library copy went missing)."""
        if not item_ids:
            return 0
        async with self._session_factory() as session:
            result = await session.execute(
                update(ItemModel)
                .where(ItemModel.id.in_(item_ids), ItemModel.lock_token.is_(None))
                .values(
                    status=ItemStatus.PENDING.value,
                    fetched=False,
                    library_linked=False,
                    library_item_id=None,
                    fetched_at=None,
                )
            )
            await session.commit()
            return result.rowcount or 0

    @with_db_retry()
    async def relink_library_item(
        self, old_library_item_ids: list[str], library_item_id: str
    ) -> int:
        """Point rows at the library item that survived a duplicate merge."""
        if not old_library_item_ids:
            return 0
        async with self._session_factory() as session:
            result = await session.execute(
                update(ItemModel)
                .where(ItemModel.library_item_id.in_(old_library_item_ids))
                .values(library_item_id=library_item_id, updated_at=utc_now())
            )
            await session.commit()
            return result.rowcount or 0

    @with_db_retry()
    async def record_library_item(
        self,
        external_id: str,
        library_item_id: str,
        source_url: str | None = None,
        title: str | None = None,
    ) -> bool:
        """Record an item that only exists in the library as a done, detached row.

        Hey future me - the row has no subscription (like items of a deleted
        subscription). It still counts for duplicate detection, so a subscription
        that lists the id later links the library copy instead of fetching it.

        Returns:
            False if the store already has a row for the external id
        """
        async with self._session_factory() as session:
            existing = await session.execute(
                select(ItemModel.id).where(ItemModel.external_id == external_id).limit(1)
            )
            if existing.scalar_one_or_none() is not None:
                return False
            now = utc_now()
            session.add(
                ItemModel(
                    subscription_id=None,
                    external_id=external_id,
                    title=title,
                    source_url=source_url,
                    status=ItemStatus.COMPLETED.value,
                    fetched=True,
                    fetched_at=now,
                    library_linked=True,
                    library_item_id=library_item_id,
                    library_id=self._library_id,
                )
            )
            await session.commit()
            return True

    # =========================================================================
    # DUPLICATES
    # =========================================================================

    @with_db_retry()
    async def create_duplicate_record(
        self,
        subscription_id: str,
        external_id: str,
        title: str | None = None,
        master_item_id: str | None = None,
        library_item_id: str | None = None,
        source_url: str | None = None,
    ) -> ItemRecord | None:
        """Write (or reuse) the duplicate record of an item for a subscription.

        Idempotent on (subscription_id, external_id): a second call returns the
        existing row.

        Returns:
            The duplicate record, or None when the row is currently leased by an
            in-flight fetch (left untouched).
        """
        now = utc_now()
        duplicate_values: dict[str, Any] = {
            "status": ItemStatus.COMPLETED.value,
            "fetched": False,
            "library_linked": True,
            "is_duplicate": True,
            "master_item_id": master_item_id,
            "library_item_id": library_item_id,
            "failure_reason": None,
            "updated_at": now,
        }

        async with self._session_factory() as session:
            result = await session.execute(
                select(ItemModel).where(
                    ItemModel.subscription_id == subscription_id,
                    ItemModel.external_id == external_id,
                )
            )
            model = result.scalar_one_or_none()

            if model is not None:
                if model.library_linked and (model.fetched or model.is_duplicate):
                    return self._to_item(model)
                if model.lock_token is not None:
                    return None
                for name, value in duplicate_values.items():
                    setattr(model, name, value)
                await session.commit()
                return self._to_item(model)

            model = ItemModel(
                subscription_id=subscription_id,
                external_id=external_id,
                title=title,
                source_url=source_url,
                library_id=self._library_id,
                **duplicate_values,
            )
            session.add(model)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                existing = await session.execute(
                    select(ItemModel).where(
                        ItemModel.subscription_id == subscription_id,
                        ItemModel.external_id == external_id,
                    )
                )
                found = existing.scalar_one_or_none()
                return self._to_item(found) if found else None

            logger.debug(
                "item_store.duplicate_recorded",
                extra={
                    "external_id": external_id,
                    "subscription_id": subscription_id,
                    "master_item_id": master_item_id,
                },
            )
            return self._to_item(model)

    # =========================================================================
    # STAGING
    # =========================================================================

    @with_db_retry()
    async def clear_staging(self) -> None:
        """Remove all staging data."""
        async with self._session_factory() as session:
            await session.execute(delete(StagingItemModel))
            await session.execute(delete(StagingPlaylistModel))
            await session.commit()

    @with_db_retry()
    async def add_staging_playlist(self, playlist: StagingPlaylist) -> StagingPlaylist:
        """Persist a staging playlist together with its items."""
        async with self._session_factory() as session:
            model = StagingPlaylistModel(
                id=playlist.id,
                library_folder_id=playlist.library_folder_id,
                library_folder_name=playlist.library_folder_name,
                detected_name=playlist.detected_name,
                item_count=playlist.item_count,
                confidence=playlist.confidence,
                playlist_url=playlist.playlist_url,
            )
            model.items = [
                StagingItemModel(
                    id=item.id,
                    library_item_id=item.library_item_id,
                    external_id=item.external_id,
                    url=item.url,
                    title=item.title,
                    uploader=item.uploader,
                    upload_date=item.upload_date,
                    view_count=item.view_count,
                    duration=item.duration,
                    library_folder_id=item.library_folder_id,
                    is_duplicate=item.is_duplicate,
                    master_item_id=item.master_item_id,
                )
                for item in playlist.items
            ]
            session.add(model)
            await session.commit()
            return self._to_staging_playlist(model)

    async def list_staging_playlists(self, include_synced: bool = False) -> list[StagingPlaylist]:
        """List staging playlists with their items."""
        query = (
            select(StagingPlaylistModel)
            .options(selectinload(StagingPlaylistModel.items))
            .order_by(StagingPlaylistModel.library_folder_name)
        )
        if not include_synced:
            query = query.where(StagingPlaylistModel.synced.is_(False))
        async with self._session_factory() as session:
            result = await session.execute(query)
            return [self._to_staging_playlist(m) for m in result.scalars().all()]

    async def get_staging_playlist(self, staging_id: str) -> StagingPlaylist:
        """Get one staging playlist with items."""
        async with self._session_factory() as session:
            model = await self._load_staging(session, staging_id)
            return self._to_staging_playlist(model)

    async def find_staging_item(self, external_id: str) -> StagingItem | None:
        """Find a staged library item referencing an external id."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(StagingItemModel)
                .where(StagingItemModel.external_id == external_id)
                .order_by(StagingItemModel.is_duplicate)
                .limit(1)
            )
            model = result.scalar_one_or_none()
            return self._to_staging_item(model) if model else None

    @staticmethod
    async def _load_staging(session: AsyncSession, staging_id: str) -> StagingPlaylistModel:
        result = await session.execute(
            select(StagingPlaylistModel)
            .options(selectinload(StagingPlaylistModel.items))
            .where(StagingPlaylistModel.id == staging_id)
        )
        model = result.scalar_one_or_none()
        if model is None:
            raise EntityNotFoundException("StagingPlaylist", staging_id)
        return model

    async def _copy_staging_items(
        self,
        session: AsyncSession,
        staging: StagingPlaylistModel,
        subscription_id: str,
    ) -> int:
        """Copy non-duplicate staging items into a subscription as done rows."""
        existing = await session.execute(
            select(ItemModel.external_id).where(ItemModel.subscription_id == subscription_id)
        )
        seen = set(existing.scalars().all())
        now = utc_now()
        copied = 0
        for item in staging.items:
            if item.is_duplicate or not item.external_id or item.external_id in seen:
                continue
            seen.add(item.external_id)
            session.add(
                ItemModel(
                    subscription_id=subscription_id,
                    external_id=item.external_id,
                    title=item.title,
                    source_url=item.url,
                    status=ItemStatus.COMPLETED.value,
                    fetched=True,
                    fetched_at=now,
                    library_linked=True,
                    library_item_id=item.library_item_id,
                    library_id=self._library_id,
                )
            )
            copied += 1
        return copied

    @with_db_retry()
    async def migrate_staging(
        self, staging_id: str, url: str, title: str | None = None
    ) -> Subscription:
        """Turn a staging playlist into a new subscription with done items.

        Raises:
            BusinessRuleViolation: If the staging playlist was already migrated
            DuplicateEntityException: If the url is already subscribed
        """
        async with self._session_factory() as session:
            staging = await self._load_staging(session, staging_id)
            if staging.synced:
                raise BusinessRuleViolation(f"Staging playlist {staging_id} already migrated")

            existing = await session.execute(
                select(SubscriptionModel.id).where(SubscriptionModel.url == url)
            )
            if existing.scalar_one_or_none() is not None:
                raise DuplicateEntityException("Subscription", url)

            subscription = SubscriptionModel(
                url=url,
                title=title or staging.detected_name or staging.library_folder_name,
                library_folder_id=staging.library_folder_id,
                library_id=self._library_id,
            )
            session.add(subscription)
            await session.flush()

            copied = await self._copy_staging_items(session, staging, subscription.id)
            subscription.item_count = copied
            staging.synced = True
            staging.synced_subscription_id = subscription.id
            await session.commit()

            logger.info(
                "item_store.staging_migrated",
                extra={
                    "staging_id": staging_id,
                    "subscription_id": subscription.id,
                    "items": copied,
                },
            )
            return self._to_subscription(subscription)

    @with_db_retry()
    async def migrate_staging_into(self, staging_id: str, subscription_id: str) -> int:
        """Merge a staging playlist into an existing subscription.

        Returns:
            Number of items copied
        """
        async with self._session_factory() as session:
            staging = await self._load_staging(session, staging_id)
            if staging.synced:
                raise BusinessRuleViolation(f"Staging playlist {staging_id} already migrated")
            subscription = await session.get(SubscriptionModel, subscription_id)
            if subscription is None:
                raise EntityNotFoundException("Subscription", subscription_id)

            copied = await self._copy_staging_items(session, staging, subscription_id)
            subscription.item_count += copied
            if not subscription.library_folder_id:
                subscription.library_folder_id = staging.library_folder_id
            staging.synced = True
            staging.synced_subscription_id = subscription_id
            await session.commit()
            return copied

    @with_db_retry()
    async def discard_staging(self, staging_id: str) -> None:
        """Delete a staging playlist and its items."""
        async with self._session_factory() as session:
            staging = await self._load_staging(session, staging_id)
            await session.delete(staging)
            await session.commit()

    # =========================================================================
    # LIBRARIES
    # =========================================================================

    @staticmethod
    def _to_library(model: LibraryModel) -> Library:
        return Library(
            id=model.id,
            name=model.name,
            path=model.path,
            modification_time=model.modification_time,
        )

    @with_db_retry()
    async def add_library(
        self,
        name: str,
        path: str | None = None,
        modification_time: int | None = None,
    ) -> Library:
        """Register a library (upsert by name)."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(LibraryModel).where(LibraryModel.name == name)
            )
            model = result.scalar_one_or_none()
            if model is None:
                model = LibraryModel(name=name)
                session.add(model)
            if path is not None:
                model.path = path
            if modification_time is not None:
                model.modification_time = modification_time
            await session.commit()
            return self._to_library(model)

    async def get_library_by_name(self, name: str) -> Library | None:
        """Get a library by name."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(LibraryModel).where(LibraryModel.name == name)
            )
            model = result.scalar_one_or_none()
            return self._to_library(model) if model else None

    @with_db_retry()
    async def assign_to_library(self, library_id: str) -> int:
        """Assign rows without a library to the given one.

        Returns:
            Number of subscriptions plus items updated
        """
        async with self._session_factory() as session:
            subs = await session.execute(
                update(SubscriptionModel)
                .where(SubscriptionModel.library_id.is_(None))
                .values(library_id=library_id)
            )
            items = await session.execute(
                update(ItemModel)
                .where(ItemModel.library_id.is_(None))
                .values(library_id=library_id)
            )
            await session.commit()
            return (subs.rowcount or 0) + (items.rowcount or 0)
