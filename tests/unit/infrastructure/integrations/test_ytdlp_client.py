"""Hey future me - tests for the yt-dlp adapter (parsing and argument building).

The subprocess itself is mocked; only the "binary not found" test spawns for real.
"""

import json
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from subsync.config.settings import FetchToolSettings
from subsync.domain.exceptions import FetchToolError
from subsync.domain.ports import FetchRequest
from subsync.infrastructure.integrations.ytdlp_client import (
    OUTPUT_TEMPLATE,
    YtDlpFetchTool,
    format_args,
    parse_listing_output,
    parse_progress_line,
)


class TestParseProgressLine:
    """Tests for progress line parsing."""

    def test_full_line(self) -> None:
        """Test percent, size, speed and ETA are extracted."""
        progress = parse_progress_line(
            "[download]  42.5% of  10.00MiB at  1.20MiB/s ETA 00:05"
        )
        assert progress is not None
        assert progress.percent == 42.5
        assert progress.total_size == "10.00MiB"
        assert progress.speed == "1.20MiB/s"
        assert progress.eta == "00:05"

    def test_estimated_size_and_unknown_speed(self) -> None:
        """Test "~" sizes and unknown speed/ETA still parse."""
        progress = parse_progress_line(
            "[download]   3.0% of ~ 120.50MiB at Unknown speed ETA Unknown"
        )
        assert progress is not None
        assert progress.percent == 3.0
        assert progress.speed == "Unknown speed"

    def test_percent_only_fallback(self) -> None:
        """Test the final summary line yields the percentage."""
        progress = parse_progress_line("[download] 100% of 10.00MiB in 00:00:02")
        assert progress is not None
        assert progress.percent == 100.0
        assert progress.speed is None

    def test_non_progress_lines(self) -> None:
        """Test unrelated output is ignored."""
        assert parse_progress_line("[youtube] abc: Downloading webpage") is None
        assert parse_progress_line("") is None


class TestParseListingOutput:
    """Tests for flat listing parsing."""

    def test_skips_garbage_and_idless_lines(self) -> None:
        """Test non-JSON lines and entries without id are dropped."""
        output = "\n".join(
            [
                json.dumps({"id": "a", "title": "A", "playlist_title": "Music"}),
                "WARNING: something odd",
                json.dumps({"title": "no id"}),
                json.dumps(["not", "an", "object"]),
                "",
                json.dumps({"id": "b", "title": "B"}),
            ]
        )
        entries = parse_listing_output(output)
        assert [e.id for e in entries] == ["a", "b"]
        assert entries[0].playlist_title == "Music"


class TestFormatArgs:
    """Tests for format/quality translation."""

    def test_best(self) -> None:
        """Test the default merges best video and audio."""
        assert format_args("best", "") == ["-f", "bv*+ba/b", "--merge-output-format", "mp4"]

    def test_mp3(self) -> None:
        """Test audio extraction."""
        assert format_args("mp3", "") == ["-x", "--audio-format", "mp3"]

    def test_selector_with_quality(self) -> None:
        """Test custom selectors get the quality suffix."""
        assert format_args("bestvideo", "720p")[:2] == ["-f", "bestvideo-720p"]


class TestYtDlpFetchTool:
    """Tests for argument building and listing."""

    @pytest.fixture
    def tool(self) -> YtDlpFetchTool:
        return YtDlpFetchTool(
            FetchToolSettings(
                source_address="0.0.0.0",
                user_agent="UA/1.0",
                cookie_file="/cookies.txt",
                ffmpeg_location="/usr/bin/ffmpeg",
            )
        )

    def test_listing_args(self, tool: YtDlpFetchTool) -> None:
        """Test listing runs metadata-only and ends with the url."""
        args = tool.build_listing_args("https://example.com/list")
        assert "--flat-playlist" in args
        assert "--skip-download" in args
        assert args[:2] == ["--source-address", "0.0.0.0"]
        assert args[-1] == "https://example.com/list"

    def test_metadata_args(self, tool: YtDlpFetchTool) -> None:
        """Test the metadata lookup skips the download and passes every url."""
        urls = ["https://www.youtube.com/watch?v=a", "https://www.youtube.com/watch?v=b"]
        args = tool.build_metadata_args(urls)
        assert "--skip-download" in args
        assert "--print-json" in args
        assert "--ignore-errors" in args
        assert "--flat-playlist" not in args
        assert args[:2] == ["--source-address", "0.0.0.0"]
        assert args[-2:] == urls

    def test_fetch_args(self, tool: YtDlpFetchTool) -> None:
        """Test the full fetch command line."""
        args = tool.build_fetch_args(
            FetchRequest(
                url="https://www.youtube.com/watch?v=abc",
                output_dir=Path("/downloads"),
                format="mp3",
                rate_limit_kbps=500,
            )
        )
        assert args[:2] == ["-o", str(Path("/downloads") / OUTPUT_TEMPLATE)]
        assert "--newline" in args
        assert args[args.index("--limit-rate") + 1] == "500K"
        assert args[args.index("--user-agent") + 1] == "UA/1.0"
        assert args[args.index("--cookies") + 1] == "/cookies.txt"
        assert args[args.index("--ffmpeg-location") + 1] == "/usr/bin/ffmpeg"
        assert "-x" in args
        assert args[-1] == "https://www.youtube.com/watch?v=abc"

    def test_no_rate_limit_when_zero(self) -> None:
        """Test unlimited bandwidth adds no flag."""
        tool = YtDlpFetchTool(FetchToolSettings())
        args = tool.build_fetch_args(FetchRequest(url="u", output_dir=Path("/d")))
        assert "--limit-rate" not in args
        assert "--cookies" not in args

    @pytest.mark.asyncio
    async def test_list_entries(self, tool: YtDlpFetchTool, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test listing output is parsed from stdout."""
        process = MagicMock()
        process.returncode = 0
        process.communicate = AsyncMock(
            return_value=(json.dumps({"id": "a"}).encode() + b"\n", b"")
        )
        monkeypatch.setattr(tool, "_spawn", AsyncMock(return_value=process))

        entries = await tool.list_entries("https://example.com/list")

        assert [e.id for e in entries] == ["a"]

    @pytest.mark.asyncio
    async def test_partial_listing_is_accepted(
        self, tool: YtDlpFetchTool, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test a non-zero exit with entries still returns them."""
        process = MagicMock()
        process.returncode = 1
        process.communicate = AsyncMock(
            return_value=(json.dumps({"id": "a"}).encode(), b"ERROR: private video")
        )
        monkeypatch.setattr(tool, "_spawn", AsyncMock(return_value=process))

        assert len(await tool.list_entries("https://example.com/list")) == 1

    @pytest.mark.asyncio
    async def test_failed_listing_raises(
        self, tool: YtDlpFetchTool, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test a non-zero exit without entries raises FetchToolError."""
        process = MagicMock()
        process.returncode = 1
        process.communicate = AsyncMock(return_value=(b"", b"ERROR: playlist does not exist"))
        monkeypatch.setattr(tool, "_spawn", AsyncMock(return_value=process))

        with pytest.raises(FetchToolError) as exc_info:
            await tool.list_entries("https://example.com/list")
        assert exc_info.value.exit_code == 1
        assert "does not exist" in (exc_info.value.stderr or "")

    @pytest.mark.asyncio
    async def test_fetch_metadata(
        self, tool: YtDlpFetchTool, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test full metadata lines are parsed, unresolvable items just missing."""
        lines = [
            json.dumps({"id": "a", "upload_date": "20240131", "view_count": 7, "duration": 61}),
            "ERROR: [youtube] b: Private video",
        ]
        process = MagicMock()
        process.returncode = 1
        process.communicate = AsyncMock(return_value=("\n".join(lines).encode(), b""))
        spawn = AsyncMock(return_value=process)
        monkeypatch.setattr(tool, "_spawn", spawn)

        entries = await tool.fetch_metadata(
            ["https://www.youtube.com/watch?v=a", "https://www.youtube.com/watch?v=b"]
        )

        assert [(e.id, e.upload_date, e.view_count, e.duration) for e in entries] == [
            ("a", "20240131", 7, 61.0)
        ]
        assert "--skip-download" in spawn.await_args.args[0]

    @pytest.mark.asyncio
    async def test_fetch_metadata_without_urls(
        self, tool: YtDlpFetchTool, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test an empty batch doesn't start the tool."""
        spawn = AsyncMock()
        monkeypatch.setattr(tool, "_spawn", spawn)

        assert await tool.fetch_metadata([]) == []
        spawn.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_binary(self, tmp_path: Path) -> None:
        """Test a binary that can't be started raises FetchToolError."""
        tool = YtDlpFetchTool(FetchToolSettings(binary=str(tmp_path / "no-such-yt-dlp")))
        with pytest.raises(FetchToolError):
            await tool.list_entries("https://example.com/list")
