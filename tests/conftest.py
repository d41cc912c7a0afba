"""Shared fixtures.

Hey future me - every test gets its OWN sqlite file under tmp_path, so nothing leaks
between tests. The library and the fetch tool are in-memory fakes (see fakes.py); no
yt-dlp binary and no Eagle instance is ever needed.
"""

from collections.abc import AsyncGenerator, Callable
from pathlib import Path

import pytest

from subsync.config.settings import (
    DatabaseSettings,
    LibrarySettings,
    QueueSettings,
    ReconciliationSettings,
    Settings,
    StorageSettings,
)
from subsync.infrastructure.persistence import Database, ItemStore

from fakes import FakeFetchTool, FakeLibrary, write_artifact

# =============================================================================
# FIXTURES
# =============================================================================


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings pointing at a temp database and download dir, with fast timings."""
    return Settings(
        database=DatabaseSettings(url=f"sqlite+aiosqlite:///{tmp_path / 'subsync.db'}"),
        queue=QueueSettings(
            max_concurrent_downloads=2,
            launch_delay_seconds=0.0,
            poll_interval_seconds=0.01,
        ),
        reconciliation=ReconciliationSettings(subscription_timeout_minutes=0.5),
        storage=StorageSettings(download_path=tmp_path / "downloads"),
        library=LibrarySettings(
            import_timeout=5.0, duplicate_lookup_timeout=1.0, min_artifact_bytes=1024
        ),
    )


@pytest.fixture
def download_path(settings: Settings) -> Path:
    settings.storage.download_path.mkdir(parents=True, exist_ok=True)
    return settings.storage.download_path


@pytest.fixture
async def db(settings: Settings) -> AsyncGenerator[Database, None]:
    """Fresh database with the full schema."""
    database = Database(settings)
    await database.create_tables()
    yield database
    await database.close()


@pytest.fixture
def store(db: Database) -> ItemStore:
    return ItemStore(db.get_session_factory())


@pytest.fixture
def library() -> FakeLibrary:
    return FakeLibrary()


@pytest.fixture
def fetch_tool() -> FakeFetchTool:
    return FakeFetchTool()


@pytest.fixture
def artifact_writer(download_path: Path) -> Callable[..., Path]:
    """Write an artifact into the test download directory."""

    def _write(external_id: str, title: str = "Video", size: int = 4096) -> Path:
        return write_artifact(download_path, external_id, title=title, size=size)

    return _write
