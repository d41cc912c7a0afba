"""Hey future me - tests for the reconciliation diff (listing minus done)."""

import asyncio

import pytest

from subsync.application.services.reconciliation import (
    ReconciliationService,
    new_entries_from_listing,
)
from subsync.config.settings import ReconciliationSettings
from subsync.domain.entities import ItemStatus
from subsync.domain.exceptions import FetchToolError
from subsync.domain.ports import ListingEntry
from subsync.infrastructure.persistence import ItemStore

from fakes import FakeFetchTool

URL_A = "https://www.youtube.com/playlist?list=PLA"
URL_B = "https://www.youtube.com/playlist?list=PLB"
URL_C = "https://www.youtube.com/playlist?list=PLC"


def listing(*ids: str, playlist: str | None = "Remote") -> list[ListingEntry]:
    return [ListingEntry(id=i, title=f"Title {i}", playlist_title=playlist) for i in ids]


async def finish(store: ItemStore, subscription_id: str, external_id: str) -> None:
    grant = await store.upsert_item(subscription_id, external_id)
    assert grant is not None
    await store.mark_terminal(grant.item_id, ItemStatus.COMPLETED, release=False)
    await store.mark_library_linked(grant.item_id, "L")


class TestNewEntriesFromListing:
    """Tests for the pure diff."""

    def test_keeps_order_and_drops_completed(self) -> None:
        """Test listing order survives and done ids are removed."""
        fresh = new_entries_from_listing(listing("c", "a", "b"), {"a"})
        assert [e.id for e in fresh] == ["c", "b"]

    def test_drops_repeated_ids(self) -> None:
        """Test ids listed twice appear once."""
        fresh = new_entries_from_listing(listing("a", "b", "a"), set())
        assert [e.id for e in fresh] == ["a", "b"]


class TestReconciliationService:
    """Tests for ReconciliationService."""

    @pytest.fixture
    def service(self, store: ItemStore, fetch_tool: FakeFetchTool) -> ReconciliationService:
        return ReconciliationService(store, fetch_tool, ReconciliationSettings())

    @pytest.mark.asyncio
    async def test_diff_subtracts_done_items(
        self, service: ReconciliationService, store: ItemStore, fetch_tool: FakeFetchTool
    ) -> None:
        """Test only not-done ids come back and the summary is stored."""
        sub = await store.add_subscription(URL_A)
        await finish(store, sub.id, "a")
        fetch_tool.listings[URL_A] = listing("a", "b", "c")

        result = await service.diff(sub)

        assert [e.id for e in result.new_entries] == ["b", "c"]
        assert result.listing_count == 3
        loaded = await store.get_subscription(sub.id)
        assert loaded.remote_item_count == 3
        assert loaded.remote_title == "Remote"
        assert loaded.display_title == "Remote"

    @pytest.mark.asyncio
    async def test_diff_is_idempotent(
        self, service: ReconciliationService, store: ItemStore, fetch_tool: FakeFetchTool
    ) -> None:
        """Test diffing twice without changes yields the same set."""
        sub = await store.add_subscription(URL_A)
        fetch_tool.listings[URL_A] = listing("a", "b")

        first = await service.diff(sub)
        second = await service.diff(sub)

        assert [e.id for e in first.new_entries] == [e.id for e in second.new_entries]

    @pytest.mark.asyncio
    async def test_listing_error_propagates_from_diff(
        self, service: ReconciliationService, store: ItemStore, fetch_tool: FakeFetchTool
    ) -> None:
        """Test diff() itself raises on listing failures."""
        sub = await store.add_subscription(URL_A)
        fetch_tool.listings[URL_A] = FetchToolError("Listing failed", exit_code=1)
        with pytest.raises(FetchToolError):
            await service.diff(sub)

    @pytest.mark.asyncio
    async def test_diff_all_orders_smallest_backlog_first(
        self, service: ReconciliationService, store: ItemStore, fetch_tool: FakeFetchTool
    ) -> None:
        """Test results are sorted by ascending new-item count."""
        big = await store.add_subscription(URL_A)
        small = await store.add_subscription(URL_B)
        medium = await store.add_subscription(URL_C)
        fetch_tool.listings[URL_A] = listing("1", "2", "3")
        fetch_tool.listings[URL_B] = listing("4")
        fetch_tool.listings[URL_C] = listing("5", "6")

        results = await service.diff_all([big, small, medium])

        assert [r.subscription.id for r in results] == [small.id, medium.id, big.id]

    @pytest.mark.asyncio
    async def test_diff_all_isolates_failures(
        self, service: ReconciliationService, store: ItemStore, fetch_tool: FakeFetchTool
    ) -> None:
        """Test one failing listing doesn't take the others down."""
        ok = await store.add_subscription(URL_A)
        broken = await store.add_subscription(URL_B)
        fetch_tool.listings[URL_A] = listing("1", "2")
        fetch_tool.listings[URL_B] = FetchToolError("Listing failed", exit_code=1)

        results = await service.diff_all([ok, broken])

        by_id = {r.subscription.id: r for r in results}
        assert by_id[ok.id].ok and by_id[ok.id].new_count == 2
        assert not by_id[broken.id].ok
        assert by_id[broken.id].new_count == 0
        assert "Listing failed" in (by_id[broken.id].error or "")
        # failed listings count as zero backlog
        assert results[0].subscription.id == broken.id

    @pytest.mark.asyncio
    async def test_diff_all_skips_skipped(
        self, service: ReconciliationService, store: ItemStore, fetch_tool: FakeFetchTool
    ) -> None:
        """Test subscriptions marked skip are never listed."""
        sub = await store.add_subscription(URL_A)
        skipped = await store.update_subscription(sub.id, skip=True)

        assert await service.diff_all([skipped]) == []
        assert fetch_tool.listing_calls == []

    @pytest.mark.asyncio
    async def test_keeps_subscription_order_without_sorting(
        self, store: ItemStore, fetch_tool: FakeFetchTool
    ) -> None:
        """Test smallest_backlog_first=False keeps the given order."""
        service = ReconciliationService(
            store, fetch_tool, ReconciliationSettings(smallest_backlog_first=False)
        )
        big = await store.add_subscription(URL_A)
        small = await store.add_subscription(URL_B)
        fetch_tool.listings[URL_A] = listing("1", "2", "3")
        fetch_tool.listings[URL_B] = listing("4")

        results = await service.diff_all([big, small])

        assert [r.subscription.id for r in results] == [big.id, small.id]


class TestEnrich:
    """Tests for ReconciliationService.enrich()."""

    @pytest.fixture
    def service(self, store: ItemStore, fetch_tool: FakeFetchTool) -> ReconciliationService:
        return ReconciliationService(
            store, fetch_tool, ReconciliationSettings(metadata_batch_size=2)
        )

    @pytest.mark.asyncio
    async def test_fills_in_lookup_fields(
        self, service: ReconciliationService, fetch_tool: FakeFetchTool
    ) -> None:
        """Test dates, views and duration come from the lookup, the rest stays."""
        fetch_tool.metadata["a"] = ListingEntry(
            id="a", uploader="Band", upload_date="20230505", view_count=1234, duration=200
        )

        enriched = await service.enrich(listing("a", "b"))

        assert [e.id for e in enriched] == ["a", "b"]
        assert enriched[0].title == "Title a"
        assert enriched[0].playlist_title == "Remote"
        assert (enriched[0].uploader, enriched[0].upload_date) == ("Band", "20230505")
        assert (enriched[0].view_count, enriched[0].duration) == (1234, 200)
        assert enriched[1].upload_date is None

    @pytest.mark.asyncio
    async def test_looks_up_in_batches(
        self, service: ReconciliationService, fetch_tool: FakeFetchTool
    ) -> None:
        """Test item urls are passed to the tool metadata_batch_size at a time."""
        await service.enrich(listing("a", "b", "c"))

        assert fetch_tool.metadata_calls == [
            ["https://www.youtube.com/watch?v=a", "https://www.youtube.com/watch?v=b"],
            ["https://www.youtube.com/watch?v=c"],
        ]

    @pytest.mark.asyncio
    async def test_failed_lookup_keeps_listing_fields(
        self, service: ReconciliationService, fetch_tool: FakeFetchTool
    ) -> None:
        """Test a failing lookup is not fatal."""
        fetch_tool.metadata_error = FetchToolError("Metadata lookup failed", exit_code=1)

        enriched = await service.enrich(listing("a", "b", "c"))

        assert [e.title for e in enriched] == ["Title a", "Title b", "Title c"]
        assert len(fetch_tool.metadata_calls) == 2

    @pytest.mark.asyncio
    async def test_slow_lookup_times_out(
        self, store: ItemStore, fetch_tool: FakeFetchTool, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test a hanging lookup is abandoned after metadata_timeout_seconds."""
        service = ReconciliationService(
            store, fetch_tool, ReconciliationSettings(metadata_timeout_seconds=0.01)
        )

        async def hang(urls: list[str]) -> list[ListingEntry]:
            await asyncio.sleep(10)
            return []

        monkeypatch.setattr(fetch_tool, "fetch_metadata", hang)

        enriched = await service.enrich(listing("a"))

        assert enriched[0].upload_date is None

    @pytest.mark.asyncio
    async def test_disabled(self, store: ItemStore, fetch_tool: FakeFetchTool) -> None:
        """Test enrich_metadata=False never calls the tool."""
        service = ReconciliationService(
            store, fetch_tool, ReconciliationSettings(enrich_metadata=False)
        )

        assert [e.id for e in await service.enrich(listing("a"))] == ["a"]
        assert fetch_tool.metadata_calls == []
