"""Hey future me - tests for the library staging scan and migration."""

import pytest

from subsync.application.services.annotations import watch_url
from subsync.application.services.library_sync import LibrarySyncService, detect_playlist_name
from subsync.domain.entities import ItemStatus, StagingPlaylist
from subsync.domain.exceptions import BusinessRuleViolation, EntityNotFoundException
from subsync.domain.ports import LibraryItem
from subsync.infrastructure.persistence import ItemStore

from fakes import FakeLibrary

YT = "Platform: youtube.com"
MUSIC_URL = "https://www.youtube.com/playlist?list=PLmusic"


def populate(library: FakeLibrary) -> None:
    """Music folder with a/b/c, Mix folder repeating a, plus noise."""
    music = library.add_folder("Music")
    for external_id, playlist in (("a", "Music"), ("b", "Music"), ("c", "Other")):
        library.add_existing(
            watch_url(external_id),
            annotation=f"Video ID: {external_id}\nVideo title: Song {external_id}",
            tags=[YT, f"Playlist: {playlist}"],
            folders=[music.id],
        )

    mix = library.add_folder("Mix")
    library.add_existing(
        watch_url("a"), annotation="Video ID: a", tags=[YT], folders=[mix.id]
    )
    # not from the platform - ignored
    library.add_existing("https://vimeo.com/1", tags=["Platform: vimeo.com"], folders=[mix.id])

    default = library.add_folder("Default Playlist")
    library.add_existing(watch_url("z"), tags=[YT], folders=[default.id])

    photos = library.add_folder("Photos")
    library.add_existing(None, tags=["holiday"], folders=[photos.id])


def by_name(playlists: list[StagingPlaylist]) -> dict[str, StagingPlaylist]:
    return {p.library_folder_name: p for p in playlists}


class TestDetectPlaylistName:
    """Tests for detect_playlist_name()."""

    def test_most_common_tag_wins(self) -> None:
        """Test the majority playlist tag and its share."""
        items = [
            LibraryItem(id="1", name="x", tags=["Playlist: A"]),
            LibraryItem(id="2", name="y", tags=["Playlist: A"]),
            LibraryItem(id="3", name="z", tags=["Playlist: B"]),
            LibraryItem(id="4", name="w", tags=[]),
        ]
        name, confidence = detect_playlist_name(items)
        assert name == "A"
        assert confidence == 0.5

    def test_no_tags(self) -> None:
        """Test nothing detected without playlist tags."""
        assert detect_playlist_name([]) == (None, 0.0)
        assert detect_playlist_name([LibraryItem(id="1", name="x")]) == (None, 0.0)


class TestScanLibrary:
    """Tests for LibrarySyncService.scan_library()."""

    @pytest.fixture
    def service(self, store: ItemStore, library: FakeLibrary) -> LibrarySyncService:
        return LibrarySyncService(store, library)

    @pytest.mark.asyncio
    async def test_stages_platform_folders(
        self, service: LibrarySyncService, library: FakeLibrary
    ) -> None:
        """Test only folders with platform items are staged, minus the default one."""
        populate(library)

        playlists = by_name(await service.scan_library())

        assert set(playlists) == {"Music", "Mix"}
        music = playlists["Music"]
        assert music.detected_name == "Music"
        assert music.confidence == pytest.approx(2 / 3)
        assert music.item_count == 3
        assert {i.external_id for i in music.items} == {"a", "b", "c"}
        assert {i.title for i in music.items} == {"Song a", "Song b", "Song c"}
        assert playlists["Mix"].item_count == 1

    @pytest.mark.asyncio
    async def test_repeated_ids_become_duplicates(
        self, service: LibrarySyncService, library: FakeLibrary
    ) -> None:
        """Test the second occurrence of an id points at the first one."""
        populate(library)

        playlists = by_name(await service.scan_library())

        first = next(i for i in playlists["Music"].items if i.external_id == "a")
        again = playlists["Mix"].items[0]
        assert not first.is_duplicate
        assert again.is_duplicate
        assert again.master_item_id == first.id

    @pytest.mark.asyncio
    async def test_done_store_item_is_master(
        self, service: LibrarySyncService, store: ItemStore, library: FakeLibrary
    ) -> None:
        """Test ids already done in the store are staged as duplicates of that row."""
        sub = await store.add_subscription(MUSIC_URL)
        grant = await store.upsert_item(sub.id, "b")
        assert grant is not None
        await store.mark_terminal(grant.item_id, ItemStatus.COMPLETED, release=False)
        await store.mark_library_linked(grant.item_id, "L-b")
        populate(library)

        playlists = by_name(await service.scan_library())

        staged_b = next(i for i in playlists["Music"].items if i.external_id == "b")
        assert staged_b.is_duplicate
        assert staged_b.master_item_id == grant.item_id

    @pytest.mark.asyncio
    async def test_rescan_replaces_staging(
        self, service: LibrarySyncService, library: FakeLibrary
    ) -> None:
        """Test scanning twice doesn't pile up staging rows."""
        populate(library)
        await service.scan_library()
        await service.scan_library()

        assert len(await service.list_staging()) == 2


class TestMigration:
    """Tests for migrate / migrate_into / discard."""

    @pytest.fixture
    def service(self, store: ItemStore, library: FakeLibrary) -> LibrarySyncService:
        return LibrarySyncService(store, library)

    @pytest.fixture
    async def music(self, service: LibrarySyncService, library: FakeLibrary) -> StagingPlaylist:
        populate(library)
        return by_name(await service.scan_library())["Music"]

    @pytest.mark.asyncio
    async def test_migrate_creates_done_subscription(
        self, service: LibrarySyncService, store: ItemStore, music: StagingPlaylist
    ) -> None:
        """Test migration creates a subscription whose items are all done."""
        sub = await service.migrate(music.id, MUSIC_URL)

        assert sub.title == "Music"
        assert sub.item_count == 3
        assert sub.library_folder_id == music.library_folder_id
        assert await store.completed_ids(sub.id) == {"a", "b", "c"}
        assert [p.library_folder_name for p in await service.list_staging()] == ["Mix"]

    @pytest.mark.asyncio
    async def test_migrate_twice_is_rejected(
        self, service: LibrarySyncService, music: StagingPlaylist
    ) -> None:
        """Test a synced staging playlist can't be migrated again."""
        await service.migrate(music.id, MUSIC_URL)
        with pytest.raises(BusinessRuleViolation):
            await service.migrate(music.id, "https://www.youtube.com/playlist?list=PLother")

    @pytest.mark.asyncio
    async def test_migrate_into_existing(
        self, service: LibrarySyncService, store: ItemStore, music: StagingPlaylist
    ) -> None:
        """Test merging skips ids the subscription already has."""
        sub = await store.add_subscription(MUSIC_URL, title="Mine")
        await store.upsert_item(sub.id, "a")

        copied = await service.migrate_into(music.id, sub.id)

        assert copied == 2
        loaded = await store.get_subscription(sub.id)
        assert loaded.item_count == 2
        assert loaded.library_folder_id == music.library_folder_id

    @pytest.mark.asyncio
    async def test_discard(
        self, service: LibrarySyncService, store: ItemStore, music: StagingPlaylist
    ) -> None:
        """Test discarded staging playlists are gone."""
        await service.discard(music.id)
        with pytest.raises(EntityNotFoundException):
            await store.get_staging_playlist(music.id)
