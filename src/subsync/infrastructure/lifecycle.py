"""Engine lifecycle - wiring and startup/shutdown.

SyncEngine is the explicit context handle: it owns the database, store, adapters,
services and the queue. Nothing lives in module globals, so two engines (e.g. two
tests with their own temp databases) never share state.

Startup order matters:
1. validate SQLite path, create directories
2. create/upgrade schema (additive, idempotent)
3. identify the library and register it
4. release stale leases left by a crashed process
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from subsync.application.services import (
    DuplicateResolver,
    ImportFinalizer,
    LibraryMaintenanceService,
    LibrarySyncService,
    ReconciliationService,
)
from subsync.application.workers import DownloadQueue, SubscriptionChecker, create_download_queue
from subsync.application.workers.download_queue import EventListener
from subsync.config import Settings, get_settings
from subsync.domain.entities import Library
from subsync.domain.exceptions import ConfigurationError, LibraryServiceError
from subsync.domain.ports import IFetchTool, ILibraryService, LibraryInfo
from subsync.infrastructure.integrations import EagleLibraryClient, YtDlpFetchTool
from subsync.infrastructure.persistence import Database, ItemStore

logger = logging.getLogger(__name__)


# Hey future me, this validates the SQLite path BEFORE the engine is created. SQLite needs to
# create -wal/-shm files next to the .db, so we check the directory is writable. Non-file
# databases (":memory:", other dialects) are skipped.
def _validate_sqlite_path(settings: Settings) -> None:
    """Validate SQLite database path accessibility before engine creation."""
    db_path = settings.get_sqlite_db_path()
    if db_path is None:
        return

    try:
        if str(db_path.parent) != ".":
            db_path.parent.mkdir(parents=True, exist_ok=True)
        test_file = db_path.parent / f".{db_path.stem}_write_test"
        test_file.write_bytes(b"test")
        test_file.unlink()
    except OSError as exc:
        raise ConfigurationError(
            f"Unable to write files in database directory '{db_path.parent}': {exc}. "
            "Update SUBSYNC_DATABASE__URL or adjust directory permissions."
        ) from exc


@dataclass
class SyncEngine:
    """Everything one engine session needs."""

    settings: Settings
    db: Database
    store: ItemStore
    fetch_tool: IFetchTool
    library: ILibraryService
    reconciliation: ReconciliationService
    resolver: DuplicateResolver
    finalizer: ImportFinalizer
    queue: DownloadQueue
    checker: SubscriptionChecker
    library_sync: LibrarySyncService
    maintenance: LibraryMaintenanceService
    current_library: Library | None = None

    async def register_library(self, info: LibraryInfo) -> Library:
        """Register the open library and make it the default for new rows."""
        library = await self.store.add_library(
            info.name, path=info.path, modification_time=info.modification_time
        )
        self.store.set_library(library.id)
        assigned = await self.store.assign_to_library(library.id)
        self.current_library = library
        logger.info(
            "engine.library_registered",
            extra={"library": library.name, "library_id": library.id, "rows_assigned": assigned},
        )
        return library

    async def on_library_changed(self, info: LibraryInfo) -> Library:
        """Switch to another library.

        Shuts the queue down (its leases belong to the old library session), registers
        the new library and re-runs stale-lock cleanup.
        """
        logger.info(
            "engine.library_changed",
            extra={
                "previous": self.current_library.name if self.current_library else None,
                "library": info.name,
            },
        )
        await self.queue.shutdown()
        library = await self.register_library(info)
        await self.store.cleanup_stale_locks(self.settings.database.stale_lock_hours)
        return library

    async def detect_library(self) -> Library | None:
        """Ask the library service which library is open and register it."""
        try:
            info = await self.library.get_library_info()
        except LibraryServiceError as e:
            logger.warning("engine.library_unavailable", extra={"error": str(e)})
            return None
        if self.current_library is not None and self.current_library.name == info.name:
            return self.current_library
        if self.current_library is None:
            return await self.register_library(info)
        return await self.on_library_changed(info)

    async def close(self) -> None:
        """Shut the queue down (releasing its leases) and close connections."""
        await self.queue.shutdown()
        if isinstance(self.library, EagleLibraryClient):
            await self.library.close()
        await self.db.close()


def build_engine(
    settings: Settings,
    db: Database,
    library: ILibraryService | None = None,
    fetch_tool: IFetchTool | None = None,
    event_listener: EventListener | None = None,
) -> SyncEngine:
    """Wire all components around a database."""
    store = ItemStore(db.get_session_factory())
    library = library or EagleLibraryClient(settings.library)
    fetch_tool = fetch_tool or YtDlpFetchTool(settings.fetch_tool)

    reconciliation = ReconciliationService(store, fetch_tool, settings.reconciliation)
    resolver = DuplicateResolver(
        store, library, lookup_timeout=settings.library.duplicate_lookup_timeout
    )
    finalizer = ImportFinalizer(
        store, library, settings.storage.download_path, settings.library
    )
    queue = create_download_queue(
        settings.queue,
        store,
        fetch_tool,
        finalizer,
        settings.storage.download_path,
        event_listener=event_listener,
    )
    checker = SubscriptionChecker(
        store,
        reconciliation,
        resolver,
        queue,
        subscription_timeout_seconds=settings.reconciliation.subscription_timeout_minutes * 60,
    )
    return SyncEngine(
        settings=settings,
        db=db,
        store=store,
        fetch_tool=fetch_tool,
        library=library,
        reconciliation=reconciliation,
        resolver=resolver,
        finalizer=finalizer,
        queue=queue,
        checker=checker,
        library_sync=LibrarySyncService(store, library),
        maintenance=LibraryMaintenanceService(store, library),
    )


# Listen future me, everything before `yield` is STARTUP and the finally block is SHUTDOWN.
# Shutdown always runs, even if a command crashed halfway, so processes get killed and leases
# released instead of waiting for the stale-lock cleanup.
@asynccontextmanager
async def open_engine(
    settings: Settings | None = None,
    library: ILibraryService | None = None,
    fetch_tool: IFetchTool | None = None,
    event_listener: EventListener | None = None,
    detect_library: bool = True,
) -> AsyncGenerator[SyncEngine, None]:
    """Open an engine session.

    Args:
        settings: Settings (default: get_settings())
        library: Library service override (tests pass a fake)
        fetch_tool: Fetch tool override (tests pass a fake)
        event_listener: Queue lifecycle callback
        detect_library: Identify and register the open library on startup
    """
    settings = settings or get_settings()
    _validate_sqlite_path(settings)
    settings.ensure_directories()

    db = Database(settings)
    engine: SyncEngine | None = None
    try:
        added = await db.create_tables()
        if added:
            logger.info("engine.schema_upgraded", extra={"columns_added": len(added)})

        engine = build_engine(settings, db, library, fetch_tool, event_listener)
        if detect_library:
            await engine.detect_library()
        await engine.store.cleanup_stale_locks(settings.database.stale_lock_hours)

        logger.info("engine.started", extra={"database": settings.database.url})
        yield engine
    finally:
        if engine is not None:
            await engine.close()
        else:
            await db.close()
        logger.info("engine.stopped")
