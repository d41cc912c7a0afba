"""Hey future me - tests for annotation/tag writing and parsing."""

from datetime import date

from subsync.application.services.annotations import (
    build_annotation,
    build_tags,
    extract_external_id,
    merge_playlist_annotation,
    parse_annotation,
    platform_of,
    playlists_in,
    union,
)


class TestExtractExternalId:
    """Tests for external id extraction."""

    def test_annotation_line_wins(self) -> None:
        """Test the Video ID line is preferred over the url."""
        assert (
            extract_external_id("Video ID: fromNote", "https://youtu.be/fromUrl") == "fromNote"
        )

    def test_url_forms(self) -> None:
        """Test the usual youtube url shapes."""
        assert extract_external_id(None, "https://youtu.be/abc_1") == "abc_1"
        assert extract_external_id(None, "https://www.youtube.com/watch?v=abc-2") == "abc-2"
        assert (
            extract_external_id(None, "https://www.youtube.com/watch?list=PL&v=abc3") == "abc3"
        )
        assert extract_external_id(None, "https://www.youtube.com/embed/abc4") == "abc4"
        assert extract_external_id(None, "https://www.youtube.com/shorts/abc5") == "abc5"
        assert extract_external_id(None, "https://example.com/play?v=abc6") == "abc6"

    def test_nothing_found(self) -> None:
        """Test unknown urls yield None."""
        assert extract_external_id("", "https://example.com/video/1") is None
        assert extract_external_id(None, None) is None


class TestBuildAndParse:
    """Tests for the annotation writer and parser."""

    def test_roundtrip(self) -> None:
        """Test the parser reads back what the writer wrote."""
        text = build_annotation(
            title="Song",
            uploader="Band",
            upload_date="20240131",
            view_count=1234567,
            external_id="abc",
            playlist="Music",
        )
        assert "Views: 1,234,567" in text
        assert playlists_in(text) == ["Music"]
        assert extract_external_id(text, None) == "abc"

        meta = parse_annotation(text)
        assert meta.title == "Song"
        assert meta.uploader == "Band"
        assert meta.upload_date == "20240131"
        assert meta.view_count == 1234567

    def test_unknown_values(self) -> None:
        """Test missing metadata is written as Unknown."""
        text = build_annotation(None, None, None, None, external_id="abc")
        assert "Video title: Unknown" in text
        assert "Views: Unknown" in text
        assert "Playlists" not in text

    def test_channel_tag_fallback(self) -> None:
        """Test the uploader comes from the Channel tag when missing."""
        meta = parse_annotation("Video ID: abc", tags=["Channel: Band", "Year: 2024"])
        assert meta.uploader == "Band"


class TestTags:
    """Tests for tag building."""

    def test_full_tags(self) -> None:
        """Test platform, playlist, channel and year tags."""
        tags = build_tags("https://www.youtube.com/watch?v=abc", "Music", "Band", "20240131")
        assert tags == [
            "Platform: youtube.com",
            "Playlist: Music",
            "Channel: Band",
            "Year: 2024",
        ]

    def test_minimal_tags(self) -> None:
        """Test missing metadata still yields platform and channel."""
        assert build_tags("https://vimeo.com/1", None, None, None) == [
            "Platform: vimeo.com",
            "Channel: Unknown",
        ]

    def test_platform_of_short_links(self) -> None:
        """Test youtu.be counts as youtube.com."""
        assert platform_of("https://youtu.be/abc") == "youtube.com"


class TestMergePlaylistAnnotation:
    """Tests for the playlist merge."""

    def test_adds_playlist_and_stamp(self) -> None:
        """Test a new playlist is appended and the date stamped."""
        text, changed = merge_playlist_annotation(
            "Video ID: abc\nPlaylists: Music", "Favorites", date(2024, 2, 1)
        )
        assert changed
        assert playlists_in(text) == ["Music", "Favorites"]
        assert "Last updated: 2024-02-01" in text

    def test_is_idempotent(self) -> None:
        """Test merging the same playlist twice changes nothing."""
        first, _ = merge_playlist_annotation("Video ID: abc", "Music", date(2024, 2, 1))
        second, changed = merge_playlist_annotation(first, "Music", date(2024, 3, 1))
        assert not changed
        assert second == first

    def test_replaces_old_stamp(self) -> None:
        """Test only one Last updated line is kept."""
        text, _ = merge_playlist_annotation(
            "Playlists: A\nLast updated: 2020-01-01", "B", date(2024, 2, 1)
        )
        assert text.count("Last updated:") == 1
        assert "2024-02-01" in text

    def test_empty_annotation(self) -> None:
        """Test merging into nothing creates the lines."""
        text, changed = merge_playlist_annotation(None, "Music", date(2024, 2, 1))
        assert changed
        assert text == "Playlists: Music\nLast updated: 2024-02-01"


class TestUnion:
    """Tests for union."""

    def test_keeps_order(self) -> None:
        """Test order-preserving union without duplicates."""
        assert union(["a", "b"], ["b", "c", "a"]) == ["a", "b", "c"]
