"""Tests for engine startup/shutdown and library registration."""

import pytest

from subsync.config.settings import Settings
from subsync.domain.exceptions import LibraryServiceError
from subsync.domain.ports import LibraryInfo
from subsync.infrastructure.lifecycle import open_engine

from fakes import FakeFetchTool, FakeLibrary

URL = "https://www.youtube.com/playlist?list=PL1"


class TestOpenEngine:
    """Tests for open_engine()."""

    @pytest.mark.asyncio
    async def test_registers_open_library(
        self, settings: Settings, library: FakeLibrary, fetch_tool: FakeFetchTool
    ) -> None:
        """Test the open library becomes the default for new rows."""
        async with open_engine(settings, library=library, fetch_tool=fetch_tool) as engine:
            assert engine.current_library is not None
            assert engine.current_library.name == "Main"
            sub = await engine.store.add_subscription(URL)
            assert sub.library_id == engine.current_library.id

        assert settings.storage.download_path.is_dir()

    @pytest.mark.asyncio
    async def test_unavailable_library_still_opens(
        self, settings: Settings, library: FakeLibrary, fetch_tool: FakeFetchTool
    ) -> None:
        """Test a library that doesn't answer leaves the engine usable."""
        library.fail_with = LibraryServiceError("Eagle is not running")

        async with open_engine(settings, library=library, fetch_tool=fetch_tool) as engine:
            assert engine.current_library is None
            assert await engine.store.list_subscriptions() == []

    @pytest.mark.asyncio
    async def test_library_switch(
        self, settings: Settings, library: FakeLibrary, fetch_tool: FakeFetchTool
    ) -> None:
        """Test detecting another open library registers and switches to it."""
        async with open_engine(settings, library=library, fetch_tool=fetch_tool) as engine:
            library.info = LibraryInfo(name="Archive", path="/libraries/Archive.library")

            switched = await engine.detect_library()

            assert switched is not None and switched.name == "Archive"
            assert engine.current_library == switched
            assert await engine.store.get_library_by_name("Main") is not None

    @pytest.mark.asyncio
    async def test_same_library_is_not_reregistered(
        self, settings: Settings, library: FakeLibrary, fetch_tool: FakeFetchTool
    ) -> None:
        """Test detect_library() is a no-op while the same library stays open."""
        async with open_engine(settings, library=library, fetch_tool=fetch_tool) as engine:
            current = engine.current_library
            assert await engine.detect_library() is current
