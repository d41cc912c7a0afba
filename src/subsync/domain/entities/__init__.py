"""Domain entities."""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

from subsync.domain.entities.queue import (
    DownloadProgress,
    QueueItem,
    QueueItemStatus,
    QueueStats,
)
from subsync.domain.entities.staging import StagingItem, StagingPlaylist


# Hey future me, ItemStatus is the PERSISTED lifecycle of an item row. It only says what the
# last fetch attempt did. Whether the item is DONE is a separate question answered by
# ItemRecord.is_done (fetched/duplicate + library_linked) - a "completed" row whose library
# import failed is NOT done and will be picked up again by the next reconciliation pass!
class ItemStatus(str, Enum):
    """Persisted status of a discovered item."""

    PENDING = "pending"
    DOWNLOADING = "downloading"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class Subscription:
    """A remote collection (playlist/channel) the user tracks."""

    id: str
    url: str
    title: str | None = None
    remote_title: str | None = None
    format: str = "best"
    quality: str = ""
    auto_download: bool = True
    skip: bool = False
    last_checked: datetime | None = None
    remote_item_count: int = 0
    item_count: int = 0
    library_folder_id: str | None = None
    library_id: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def display_title(self) -> str:
        """Title shown to users and used as the library folder name."""
        return self.title or self.remote_title or self.url


# Listen up, ItemRecord is one row per (subscription, external id). The lease (lock_token +
# locked_at) is the processing lock: whoever holds the token is the only one allowed to
# move the row forward. It survives restarts on purpose - a crashed process leaves its
# lease behind, and ItemStore.cleanup_stale_locks() clears those on the next start.
@dataclass
class ItemRecord:
    """Persisted record of one discovered remote media item."""

    id: str
    subscription_id: str | None
    external_id: str
    title: str | None = None
    source_url: str | None = None
    status: ItemStatus = ItemStatus.PENDING
    fetched: bool = False
    library_linked: bool = False
    lock_token: str | None = None
    locked_at: datetime | None = None
    is_duplicate: bool = False
    master_item_id: str | None = None
    library_item_id: str | None = None
    failure_reason: str | None = None
    library_id: str | None = None
    first_attempt_at: datetime | None = None
    fetched_at: datetime | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def processing_lock(self) -> bool:
        """True while some holder owns the lease."""
        return self.lock_token is not None

    @property
    def is_done(self) -> bool:
        """Fully processed - must never be enqueued again."""
        return self.library_linked and (self.fetched or self.is_duplicate)


@dataclass
class LeaseGrant:
    """Result of a successful ItemStore.upsert_item() call."""

    item_id: str
    lock_token: str


@dataclass
class Library:
    """A known external library (the host app can switch between several)."""

    id: str
    name: str
    path: str | None = None
    modification_time: int | None = None


__all__ = [
    "DownloadProgress",
    "ItemRecord",
    "ItemStatus",
    "LeaseGrant",
    "Library",
    "QueueItem",
    "QueueItemStatus",
    "QueueStats",
    "StagingItem",
    "StagingPlaylist",
    "Subscription",
]
