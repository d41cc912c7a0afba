"""Queue entities for the in-memory download scheduler.

Hey future me - QueueItem is EPHEMERAL! It only lives in DownloadQueue memory.
The durable truth is ItemRecord in the store; the queue item just carries what the
scheduler needs to run one fetch (url, format, lease token, listing metadata) plus
transient state (progress, retry count, process handle).

STATE MACHINE:
```
PENDING ──start()──► DOWNLOADING ──complete()──► COMPLETED
   │                     │
   │                     └──fail()──► FAILED ──start() (retry budget left)──► DOWNLOADING
   │                     │
   └──cancel()───────────┴──cancel()──► CANCELLED
```
A FAILED item with retry_count >= max_retries is permanently failed.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from subsync.domain.exceptions import InvalidStateException


class QueueItemStatus(str, Enum):
    """Status of a queued fetch."""

    PENDING = "pending"
    DOWNLOADING = "downloading"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class DownloadProgress:
    """One parsed progress line from the fetch tool."""

    percent: float
    total_size: str | None = None
    speed: str | None = None
    eta: str | None = None


@dataclass
class QueueItem:
    """One unit of scheduled fetch work."""

    external_id: str
    url: str
    item_id: str
    lock_token: str
    subscription_id: str | None = None
    subscription_title: str | None = None
    subscription_url: str | None = None
    library_folder_id: str | None = None
    format: str = "best"
    quality: str = ""
    title: str | None = None
    uploader: str | None = None
    upload_date: str | None = None
    view_count: int | None = None
    duration: float | None = None
    status: QueueItemStatus = QueueItemStatus.PENDING
    progress: float = 0.0
    retry_count: int = 0
    max_retries: int = 2
    error: str | None = None
    # Set once the finalizer imported/linked the artifact
    linked: bool = False
    process: Any = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    started_at: datetime | None = None
    finished_at: datetime | None = None
    # Last progress step (e.g. 3 = 30%) that was published as an event
    reported_step: int = -1

    def can_retry(self) -> bool:
        """Check if a failed item still has retry budget."""
        return (
            self.status == QueueItemStatus.FAILED
            and self.retry_count < self.max_retries
        )

    def is_eligible(self) -> bool:
        """Check if the scheduler may launch this item."""
        return self.status == QueueItemStatus.PENDING or self.can_retry()

    def is_finished(self) -> bool:
        """Check if the item reached a state it won't leave on its own."""
        if self.status in (QueueItemStatus.COMPLETED, QueueItemStatus.CANCELLED):
            return True
        return self.status == QueueItemStatus.FAILED and not self.can_retry()

    def start(self) -> None:
        """Mark the item as downloading (first attempt or retry)."""
        if self.status == QueueItemStatus.FAILED:
            if not self.can_retry():
                raise InvalidStateException(
                    f"Retry budget exhausted for {self.external_id}"
                )
            self.retry_count += 1
        elif self.status != QueueItemStatus.PENDING:
            raise InvalidStateException(
                f"Cannot start queue item in status {self.status.value}"
            )
        self.status = QueueItemStatus.DOWNLOADING
        self.progress = 0.0
        self.reported_step = -1
        self.error = None
        self.started_at = datetime.now(UTC)

    def update_progress(self, percent: float) -> None:
        """Update download progress."""
        if percent < 0.0 or percent > 100.0:
            raise ValueError("Progress must be between 0 and 100")
        self.progress = percent

    def take_progress_step(self, step_percent: int) -> bool:
        """Check whether current progress crossed a new reporting boundary.

        Returns True (and remembers the step) when progress reached a new
        multiple of step_percent or hit 100%.
        """
        step = int(self.progress // step_percent)
        if self.progress >= 100.0:
            step = max(step, 100 // step_percent)
        if step > self.reported_step:
            self.reported_step = step
            return True
        return False

    def complete(self) -> None:
        """Mark the fetch as completed."""
        if self.status != QueueItemStatus.DOWNLOADING:
            raise InvalidStateException(
                f"Cannot complete queue item in status {self.status.value}"
            )
        self.status = QueueItemStatus.COMPLETED
        self.progress = 100.0
        self.process = None
        self.finished_at = datetime.now(UTC)

    def fail(self, error: str) -> None:
        """Mark the fetch as failed."""
        if self.status != QueueItemStatus.DOWNLOADING:
            raise InvalidStateException(
                f"Cannot fail queue item in status {self.status.value}"
            )
        self.status = QueueItemStatus.FAILED
        self.error = error
        self.process = None
        self.finished_at = datetime.now(UTC)

    def abort(self, error: str) -> None:
        """Fail the item permanently, whatever state it is in.

        Used when handling the item itself blew up (store/finalizer error). No retry
        budget is left afterwards.
        """
        self.status = QueueItemStatus.FAILED
        self.error = error
        self.retry_count = max(self.retry_count, self.max_retries)
        self.process = None
        self.finished_at = datetime.now(UTC)

    def cancel(self) -> None:
        """Cancel the item."""
        if self.status == QueueItemStatus.COMPLETED or (
            self.status == QueueItemStatus.FAILED and not self.can_retry()
        ):
            raise InvalidStateException(
                f"Cannot cancel queue item in status {self.status.value}"
            )
        if self.status == QueueItemStatus.CANCELLED:
            return
        self.status = QueueItemStatus.CANCELLED
        self.process = None
        self.finished_at = datetime.now(UTC)


@dataclass
class QueueStats:
    """Aggregate queue statistics."""

    total: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    pending: int = 0
    downloading: int = 0

    def to_dict(self) -> dict[str, int]:
        """Convert to dictionary."""
        return {
            "total": self.total,
            "completed": self.completed,
            "failed": self.failed,
            "cancelled": self.cancelled,
            "pending": self.pending,
            "downloading": self.downloading,
        }
