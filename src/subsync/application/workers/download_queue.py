"""Download Queue - bounded-parallel scheduler for fetch processes.

Hey future me - THIS RUNS THE ACTUAL DOWNLOADS!

ARCHITECTURE:
```
enqueue() ──► _items (insertion order = priority)
                 │
         ┌───────┴────────┐
         │  coordinator   │  ONE asyncio task, the only code that mutates
         │  (_run loop)   │  queue items or writes to the store
         └───────┬────────┘
       launch    │    ▲  ProgressEvent / ExitEvent
                 ▼    │
        watcher tasks (one per process) - read stdout, wait(), post events
```

Why a single coordinator? Parallel processes finish in random order. If every
watcher wrote to the store itself, completion bookkeeping would interleave. With
one consumer of the event queue, each completion is handled start-to-finish before
the next one.

LOOP:
1. Drain pending events (non-blocking)
2. Below max_concurrent and something eligible → launch it, sleep launch_delay
3. Nothing active, nothing eligible → emit queue.drained and exit
4. Otherwise block on the event queue (poll_interval timeout)

EXIT HANDLING:
- exit 0  → completed, store.mark_terminal(completed, release=False) → finalizer
- exit !0 → failed, store.mark_terminal(failed, reason, release=<budget exhausted>)

A failed item with retry budget left keeps its lease and is relaunched later.
Hung processes are NOT killed here - the checker's per-subscription timeout is the
backstop.
"""

import asyncio
import contextlib
import inspect
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from subsync.application.services.import_finalizer import ImportFinalizer
from subsync.config.settings import QueueSettings, clamp_concurrency
from subsync.domain.entities import (
    DownloadProgress,
    ItemStatus,
    QueueItem,
    QueueItemStatus,
    QueueStats,
)
from subsync.domain.ports import FetchProcess, FetchRequest, IFetchTool
from subsync.infrastructure.integrations.ytdlp_client import parse_progress_line
from subsync.infrastructure.observability import log_worker_health
from subsync.infrastructure.persistence import DatabaseLockMetrics, ItemStore

logger = logging.getLogger(__name__)

# Callback receiving (event_name, payload). May be sync or async.
EventListener = Callable[[str, dict[str, Any]], Any]

HEALTH_LOG_EVERY = 10


@dataclass
class ProgressEvent:
    """A parsed progress line of one process."""

    external_id: str
    process: FetchProcess
    progress: DownloadProgress


@dataclass
class ExitEvent:
    """A process exited."""

    external_id: str
    process: FetchProcess
    exit_code: int
    stderr: str = ""


class DownloadQueue:
    """Bounded-concurrency scheduler over external fetch processes."""

    def __init__(
        self,
        store: ItemStore,
        fetch_tool: IFetchTool,
        finalizer: ImportFinalizer,
        download_path: Path,
        max_concurrent: int = 3,
        max_retries: int = 2,
        rate_limit_kbps: int = 0,
        launch_delay: float = 0.1,
        poll_interval: float = 1.0,
        progress_step_percent: int = 10,
        event_listener: EventListener | None = None,
    ) -> None:
        """Initialize the queue.

        Args:
            store: Item store (leases, terminal status)
            fetch_tool: Launches fetch processes
            finalizer: Imports finished artifacts
            download_path: Output directory handed to the fetch tool
            max_concurrent: Parallel processes (clamped to 1-10)
            max_retries: Relaunches allowed after a failure
            rate_limit_kbps: Per-process bandwidth limit (0 = unlimited)
            launch_delay: Seconds to wait after each launch
            poll_interval: Max seconds to block waiting for events
            progress_step_percent: Progress events are coalesced to this step
            event_listener: Optional lifecycle callback
        """
        self._store = store
        self._fetch_tool = fetch_tool
        self._finalizer = finalizer
        self._download_path = Path(download_path)
        self._max_concurrent = clamp_concurrency(max_concurrent)
        self._max_retries = max(0, max_retries)
        self._rate_limit_kbps = max(0, rate_limit_kbps)
        self._launch_delay = launch_delay
        self._poll_interval = poll_interval
        self._progress_step = max(1, progress_step_percent)
        self._event_listener = event_listener

        self._items: dict[str, QueueItem] = {}
        self._events: asyncio.Queue[ProgressEvent | ExitEvent | None] = asyncio.Queue()
        self._watchers: dict[str, asyncio.Task[None]] = {}
        self._changed = asyncio.Condition()
        self._task: asyncio.Task[None] | None = None
        self._running = False

        # Counters (pending/downloading are derived from _items)
        self._total = 0
        self._completed = 0
        self._failed = 0
        self._cancelled = 0

        # Lifecycle tracking
        self._errors_total = 0
        self._start_time = time.time()
        self._max_active_seen = 0

    # =========================================================================
    # PUBLIC API
    # =========================================================================

    @property
    def is_running(self) -> bool:
        """True between start() and stop()."""
        return self._running

    @property
    def max_concurrent(self) -> int:
        return self._max_concurrent

    @property
    def rate_limit_kbps(self) -> int:
        return self._rate_limit_kbps

    def get_item(self, external_id: str) -> QueueItem | None:
        """Queue item by external id."""
        return self._items.get(external_id)

    async def enqueue(self, item: QueueItem) -> bool:
        """Add an item to the queue.

        Returns:
            False if an unfinished item with the same external id is queued
        """
        existing = self._items.get(item.external_id)
        if existing is not None and not existing.is_finished():
            return False

        item.max_retries = self._max_retries
        self._items[item.external_id] = item
        self._total += 1
        await self._notify()

        logger.debug(
            "download_queue.item_enqueued",
            extra={"external_id": item.external_id, "subscription_id": item.subscription_id},
        )

        # Started queue whose loop already drained: wake it up again
        if self._running and not self._loop_alive():
            self._spawn_loop()
        return True

    async def remove(self, external_id: str) -> bool:
        """Cancel an item (kills its process, releases the lease).

        Returns:
            False if the item is unknown or already finished
        """
        item = self._items.get(external_id)
        if item is None or item.is_finished():
            return False
        await self._cancel_item(item)
        await self._notify()
        return True

    async def clear(self) -> None:
        """Cancel everything, empty the queue and reset statistics."""
        for item in list(self._items.values()):
            if not item.is_finished():
                await self._cancel_item(item)
        self._items.clear()
        self._total = self._completed = self._failed = self._cancelled = 0
        await self._notify()
        logger.info("download_queue.cleared")

    def set_max_concurrent(self, value: int) -> int:
        """Change parallelism for future launches (clamped to 1-10)."""
        self._max_concurrent = clamp_concurrency(value)
        logger.info("download_queue.max_concurrent_changed", extra={"value": self._max_concurrent})
        return self._max_concurrent

    def set_rate_limit(self, kbps: int) -> None:
        """Change the bandwidth limit for future launches (0 = unlimited)."""
        self._rate_limit_kbps = max(0, kbps)

    def start(self) -> None:
        """Start the coordinator if it isn't running."""
        self._running = True
        if self._loop_alive():
            return
        self._start_time = time.time()
        self._spawn_loop()
        logger.info(
            "worker.started",
            extra={
                "worker": "download_queue",
                "max_concurrent": self._max_concurrent,
                "max_retries": self._max_retries,
            },
        )

    async def stop(self) -> None:
        """Stop scheduling and kill active processes.

        Active items become cancelled (lease released). Pending items stay
        pending for the next start().
        """
        self._running = False
        if self._loop_alive():
            # Wake the coordinator so it sees _running=False
            self._events.put_nowait(None)
            if self._task is not None:
                await self._task
        self._task = None

        for item in list(self._items.values()):
            if item.status == QueueItemStatus.DOWNLOADING:
                await self._cancel_item(item)

        watchers = list(self._watchers.values())
        self._watchers.clear()
        for watcher in watchers:
            watcher.cancel()
        for watcher in watchers:
            with contextlib.suppress(asyncio.CancelledError):
                await watcher

        await self._notify()
        logger.info(
            "worker.stopped",
            extra={
                "worker": "download_queue",
                "completed": self._completed,
                "failed": self._failed,
                "errors_total": self._errors_total,
                "uptime_seconds": round(time.time() - self._start_time, 2),
            },
        )

    async def shutdown(self) -> int:
        """Stop the queue for good and hand every unfinished lease back.

        Hey future me - stop() keeps pending items (and failed ones with retry
        budget) leased so a later start() can pick them up. When the process goes
        away there IS no later start(), and those leases would block the items
        until cleanup_stale_locks() ages them out. This is the exit path.

        Returns:
            Number of leases released
        """
        await self.stop()

        released = 0
        for item in list(self._items.values()):
            if item.is_finished():
                continue
            item.cancel()
            self._cancelled += 1
            if await self._store.release_lock(item.item_id, item.lock_token):
                released += 1

        await self._notify()
        logger.info("download_queue.shutdown", extra={"leases_released": released})
        return released

    async def wait_for_items(self, external_ids: list[str], timeout: float | None = None) -> bool:
        """Wait until the given items are finished.

        Returns:
            True if they all finished, False on timeout
        """

        def all_finished() -> bool:
            return all(
                (item := self._items.get(eid)) is None or item.is_finished()
                for eid in external_ids
            )

        return await self._wait(all_finished, timeout)

    async def wait_until_idle(self, timeout: float | None = None) -> bool:
        """Wait until nothing is pending or downloading."""

        def idle() -> bool:
            return all(item.is_finished() for item in self._items.values())

        return await self._wait(idle, timeout)

    def get_stats(self) -> QueueStats:
        """Aggregate statistics."""
        return QueueStats(
            total=self._total,
            completed=self._completed,
            failed=self._failed,
            cancelled=self._cancelled,
            pending=sum(1 for i in self._items.values() if i.is_eligible()),
            downloading=self._active_count(),
        )

    def get_status(self) -> dict[str, Any]:
        """Get current queue status for monitoring."""
        return {
            "name": "Download Queue",
            "running": self._running,
            "status": "active" if self._loop_alive() else "idle",
            "max_concurrent": self._max_concurrent,
            "rate_limit_kbps": self._rate_limit_kbps,
            "max_active_seen": self._max_active_seen,
            "watchers": len(self._watchers),
            "errors_total": self._errors_total,
            "stats": self.get_stats().to_dict(),
            "items": [
                {
                    "external_id": item.external_id,
                    "title": item.title,
                    "status": item.status.value,
                    "progress": item.progress,
                    "retry_count": item.retry_count,
                    "error": item.error,
                }
                for item in self._items.values()
            ],
            "db_lock_metrics": DatabaseLockMetrics.get_instance().get_stats(),
        }

    # =========================================================================
    # COORDINATOR
    # =========================================================================

    def _loop_alive(self) -> bool:
        return self._task is not None and not self._task.done()

    def _spawn_loop(self) -> None:
        self._task = asyncio.create_task(self._run(), name="download-queue-coordinator")

    def _active_count(self) -> int:
        return sum(1 for i in self._items.values() if i.status == QueueItemStatus.DOWNLOADING)

    def _next_eligible(self) -> QueueItem | None:
        for item in self._items.values():
            if item.is_eligible():
                return item
        return None

    async def _run(self) -> None:
        while self._running:
            try:
                await self._drain_events()
                if not self._running:
                    break

                if self._active_count() < self._max_concurrent:
                    item = self._next_eligible()
                    if item is not None:
                        await self._launch(item)
                        await asyncio.sleep(self._launch_delay)
                        continue

                if self._active_count() == 0 and self._next_eligible() is None:
                    stats = self.get_stats().to_dict()
                    logger.info("download_queue.drained", extra=stats)
                    await self._emit("queue.drained", stats)
                    break

                try:
                    event = await asyncio.wait_for(
                        self._events.get(), timeout=self._poll_interval
                    )
                except TimeoutError:
                    continue
                if event is not None:
                    await self._dispatch(event)

            except Exception as e:
                self._errors_total += 1
                logger.error(
                    "download_queue.loop_error",
                    exc_info=True,
                    extra={"error_type": type(e).__name__},
                )
        await self._notify()

    async def _drain_events(self) -> None:
        while True:
            try:
                event = self._events.get_nowait()
            except asyncio.QueueEmpty:
                return
            if event is not None:
                await self._dispatch(event)

    async def _dispatch(self, event: ProgressEvent | ExitEvent) -> None:
        """Handle one event; failures only affect the event's item."""
        item = self._items.get(event.external_id)
        # Stale event of a killed/cancelled/replaced process
        if item is None or item.process is not event.process:
            return
        try:
            if isinstance(event, ProgressEvent):
                await self._handle_progress(item, event.progress)
            else:
                self._watchers.pop(item.external_id, None)
                if event.exit_code == 0:
                    await self._handle_success(item)
                else:
                    await self._handle_failure(item, self._exit_reason(event))
        except Exception as e:
            self._errors_total += 1
            logger.error(
                "download_queue.loop_error",
                exc_info=True,
                extra={"external_id": item.external_id, "error_type": type(e).__name__},
            )
            await self._abort_item(item, f"{type(e).__name__}: {e}")
        await self._notify()

    # =========================================================================
    # ITEM TRANSITIONS (coordinator only)
    # =========================================================================

    async def _launch(self, item: QueueItem) -> None:
        item.start()
        self._max_active_seen = max(self._max_active_seen, self._active_count())
        try:
            await self._store.mark_downloading(item.item_id, item.lock_token)
            process = await self._fetch_tool.start_fetch(
                FetchRequest(
                    url=item.url,
                    output_dir=self._download_path,
                    format=item.format,
                    quality=item.quality,
                    rate_limit_kbps=self._rate_limit_kbps,
                )
            )
        except Exception as e:
            logger.warning(
                "download_queue.launch_failed",
                extra={"external_id": item.external_id, "error": str(e)},
            )
            await self._handle_failure(item, f"Launch failed: {e}")
            await self._notify()
            return

        item.process = process
        self._watchers[item.external_id] = asyncio.create_task(
            self._watch(item.external_id, process)
        )
        logger.info(
            "download_queue.item_started",
            extra={
                "external_id": item.external_id,
                "attempt": item.retry_count + 1,
                "active": self._active_count(),
            },
        )
        await self._emit(
            "item.started",
            {"external_id": item.external_id, "attempt": item.retry_count + 1},
        )
        await self._notify()

    async def _handle_progress(self, item: QueueItem, progress: DownloadProgress) -> None:
        item.update_progress(progress.percent)
        if item.take_progress_step(self._progress_step):
            await self._emit(
                "item.progress",
                {
                    "external_id": item.external_id,
                    "percent": item.progress,
                    "speed": progress.speed,
                    "eta": progress.eta,
                },
            )

    async def _handle_success(self, item: QueueItem) -> None:
        item.complete()
        kept = await self._store.mark_terminal(
            item.item_id,
            ItemStatus.COMPLETED,
            release=False,
            lock_token=item.lock_token,
        )
        # Lease gone means someone else owns the row now - don't import twice
        linked = await self._finalizer.finalize(item) if kept else False
        item.linked = linked

        self._completed += 1
        logger.info(
            "download_queue.item_completed",
            extra={"external_id": item.external_id, "linked": linked},
        )
        await self._emit(
            "item.completed", {"external_id": item.external_id, "linked": linked}
        )

        if self._completed % HEALTH_LOG_EVERY == 0:
            log_worker_health(
                logger=logger,
                worker_name="download_queue",
                cycles_completed=self._completed,
                errors_total=self._errors_total,
                uptime_seconds=time.time() - self._start_time,
                extra_stats={"failed": self._failed, "active": self._active_count()},
            )

    async def _handle_failure(self, item: QueueItem, reason: str) -> None:
        item.fail(reason)
        exhausted = not item.can_retry()
        if exhausted:
            self._failed += 1
        await self._store.mark_terminal(
            item.item_id,
            ItemStatus.FAILED,
            reason=reason,
            release=exhausted,
            lock_token=item.lock_token,
        )
        if not exhausted:
            logger.info(
                "download_queue.item_retry_scheduled",
                extra={
                    "external_id": item.external_id,
                    "retry_count": item.retry_count,
                    "max_retries": item.max_retries,
                },
            )
            return

        logger.warning(
            "download_queue.item_failed",
            extra={"external_id": item.external_id, "error": reason[:500]},
        )
        await self._emit("item.failed", {"external_id": item.external_id, "error": reason})

    async def _abort_item(self, item: QueueItem, reason: str) -> None:
        """Permanently fail an item whose handling raised."""
        if item.status == QueueItemStatus.CANCELLED:
            return
        # Exhausted failures were counted before their store write
        already_counted = item.status == QueueItemStatus.FAILED and item.is_finished()
        if item.process is not None:
            item.process.kill()
        item.abort(reason)
        if not already_counted:
            self._failed += 1
        try:
            await self._store.release_lock(item.item_id, item.lock_token)
        except Exception:
            logger.error(
                "download_queue.release_failed",
                exc_info=True,
                extra={"external_id": item.external_id},
            )
        await self._emit("item.failed", {"external_id": item.external_id, "error": reason})

    async def _cancel_item(self, item: QueueItem) -> None:
        if item.process is not None:
            item.process.kill()
        watcher = self._watchers.pop(item.external_id, None)
        if watcher is not None and watcher is not asyncio.current_task():
            watcher.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await watcher
        item.cancel()
        self._cancelled += 1
        await self._store.release_lock(item.item_id, item.lock_token)
        logger.info("download_queue.item_cancelled", extra={"external_id": item.external_id})
        await self._emit("item.cancelled", {"external_id": item.external_id})

    @staticmethod
    def _exit_reason(event: ExitEvent) -> str:
        reason = f"Process exited with code {event.exit_code}"
        stderr = event.stderr.strip()
        if stderr:
            reason = f"{reason}: {stderr}"
        return reason

    # =========================================================================
    # WATCHERS & NOTIFICATION
    # =========================================================================

    async def _watch(self, external_id: str, process: FetchProcess) -> None:
        """Forward a process' progress and exit to the coordinator."""
        try:
            async for line in process.output_lines():
                progress = parse_progress_line(line)
                if progress is not None:
                    await self._events.put(ProgressEvent(external_id, process, progress))
            exit_code = await process.wait()
            stderr = process.stderr_text()
        except Exception as e:
            logger.error(
                "download_queue.watcher_error",
                exc_info=True,
                extra={"external_id": external_id},
            )
            exit_code, stderr = -1, str(e)
        await self._events.put(ExitEvent(external_id, process, exit_code, stderr))

    async def _emit(self, event: str, payload: dict[str, Any]) -> None:
        if self._event_listener is None:
            return
        try:
            result = self._event_listener(event, payload)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.warning("download_queue.listener_error", exc_info=True, extra={"event": event})

    async def _notify(self) -> None:
        async with self._changed:
            self._changed.notify_all()

    async def _wait(self, predicate: Callable[[], bool], timeout: float | None) -> bool:
        async with self._changed:
            try:
                await asyncio.wait_for(self._changed.wait_for(predicate), timeout=timeout)
            except TimeoutError:
                return False
        return True


def create_download_queue(
    settings: QueueSettings,
    store: ItemStore,
    fetch_tool: IFetchTool,
    finalizer: ImportFinalizer,
    download_path: Path,
    event_listener: EventListener | None = None,
) -> DownloadQueue:
    """Create a DownloadQueue from queue settings.

    Args:
        settings: Queue section of the settings
        store: Item store
        fetch_tool: Fetch tool adapter
        finalizer: Import finalizer
        download_path: Fetch output directory
        event_listener: Optional lifecycle callback

    Returns:
        Configured DownloadQueue instance
    """
    return DownloadQueue(
        store=store,
        fetch_tool=fetch_tool,
        finalizer=finalizer,
        download_path=download_path,
        max_concurrent=settings.max_concurrent_downloads,
        max_retries=settings.max_retries,
        rate_limit_kbps=settings.rate_limit_kbps,
        launch_delay=settings.launch_delay_seconds,
        poll_interval=settings.poll_interval_seconds,
        progress_step_percent=settings.progress_step_percent,
        event_listener=event_listener,
    )
