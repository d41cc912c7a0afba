"""yt-dlp subprocess adapter for the fetch tool port.

Hey future me - we never import yt-dlp as a library! It runs as an external process
so a crashing or hanging download can't take the scheduler down with it, and so the
user can upgrade the binary independently.

Three modes:
- Listing:  `--flat-playlist --print-json` → one JSON object per stdout line
- Metadata: `--skip-download --print-json <urls...>` → same format, full fields per item
- Fetch:    `--progress --newline` → "[download]  42.0% of 10.00MiB at 1.00MiB/s ETA 00:05"
"""

import asyncio
import json
import logging
import re
from collections.abc import AsyncIterator
from contextlib import suppress
from pathlib import Path

from subsync.config.settings import FetchToolSettings
from subsync.domain.entities import DownloadProgress
from subsync.domain.exceptions import FetchToolError
from subsync.domain.ports import FetchProcess, FetchRequest, IFetchTool, ListingEntry

logger = logging.getLogger(__name__)

# Full progress line: percent, total size, speed, ETA
PROGRESS_PATTERN = re.compile(
    r"\[download\]\s+(\d+\.?\d*)%\s+of\s+~?\s*([\d.]+[KMGT]?iB)\s+at\s+"
    r"([\d.]+[KMGT]?iB/s|Unknown speed)\s+ETA\s+([\d:]+|Unknown)"
)
# Fallback when yt-dlp prints only the percentage (e.g. "100% of 10MiB in 00:02")
PERCENT_PATTERN = re.compile(r"\[download\]\s+(\d+\.?\d*)%")

OUTPUT_TEMPLATE = "%(title)s [%(id)s].%(ext)s"
STDERR_TAIL_CHARS = 2000

# Common flags for every full fetch
_FETCH_FLAGS = [
    "--progress",
    "--newline",
    "--no-warnings",
    "--no-check-formats",
    "--force-ipv4",
    "--retries",
    "1",
    "--file-access-retries",
    "1",
]


def parse_progress_line(line: str) -> DownloadProgress | None:
    """Parse one yt-dlp progress line.

    Returns:
        DownloadProgress or None if the line carries no percentage
    """
    match = PROGRESS_PATTERN.search(line)
    if match:
        return DownloadProgress(
            percent=min(float(match.group(1)), 100.0),
            total_size=match.group(2),
            speed=match.group(3),
            eta=match.group(4),
        )
    match = PERCENT_PATTERN.search(line)
    if match:
        return DownloadProgress(percent=min(float(match.group(1)), 100.0))
    return None


def parse_listing_output(output: str) -> list[ListingEntry]:
    """Parse flat-playlist JSON lines.

    Lines that aren't JSON objects or have no id are skipped - yt-dlp
    interleaves stray text with --ignore-errors.
    """
    entries: list[ListingEntry] = []
    for line in output.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            logger.debug("ytdlp.listing_line_skipped", extra={"line": line[:200]})
            continue
        if not isinstance(data, dict) or not data.get("id"):
            continue
        entries.append(ListingEntry.from_json(data))
    return entries


def format_args(fmt: str, quality: str) -> list[str]:
    """Translate a subscription's format/quality into yt-dlp flags."""
    if fmt == "best":
        return ["-f", "bv*+ba/b", "--merge-output-format", "mp4"]
    if fmt == "mp3":
        return ["-x", "--audio-format", "mp3"]
    selector = f"{fmt}-{quality}" if quality else fmt
    return ["-f", selector, "--merge-output-format", "mp4"]


class YtDlpFetchTool(IFetchTool):
    """Runs yt-dlp as a subprocess."""

    def __init__(self, settings: FetchToolSettings) -> None:
        """Initialize the adapter.

        Args:
            settings: Fetch tool configuration (binary path, network options)
        """
        self.settings = settings

    def _network_args(self) -> list[str]:
        args: list[str] = []
        if self.settings.source_address:
            args += ["--source-address", self.settings.source_address]
        return args

    def build_listing_args(self, url: str) -> list[str]:
        """Arguments for a metadata-only flat listing."""
        return [
            *self._network_args(),
            "--skip-download",
            "--flat-playlist",
            "--print-json",
            "--no-warnings",
            "--ignore-errors",
            url,
        ]

    def build_metadata_args(self, urls: list[str]) -> list[str]:
        """Arguments for a full metadata lookup of several items, no download."""
        return [
            *self._network_args(),
            "--skip-download",
            "--print-json",
            "--no-warnings",
            "--ignore-errors",
            "--socket-timeout",
            str(self.settings.socket_timeout),
            "--retries",
            "1",
            *urls,
        ]

    def build_fetch_args(self, request: FetchRequest) -> list[str]:
        """Arguments for a full fetch."""
        args = [
            "-o",
            str(Path(request.output_dir) / OUTPUT_TEMPLATE),
            *_FETCH_FLAGS,
            "--socket-timeout",
            str(self.settings.socket_timeout),
            *format_args(request.format, request.quality),
        ]
        if request.rate_limit_kbps > 0:
            args += ["--limit-rate", f"{request.rate_limit_kbps}K"]
        args += self._network_args()
        if self.settings.user_agent:
            args += ["--user-agent", self.settings.user_agent]
        if self.settings.cookie_file:
            args += ["--cookies", self.settings.cookie_file]
        if self.settings.ffmpeg_location:
            args += ["--ffmpeg-location", self.settings.ffmpeg_location]
        args.append(request.url)
        return args

    async def _spawn(self, args: list[str]) -> asyncio.subprocess.Process:
        try:
            return await asyncio.create_subprocess_exec(
                self.settings.binary,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise FetchToolError(
                f"Cannot start {self.settings.binary}: {e}"
            ) from e

    async def _run_json_lines(self, args: list[str], what: str) -> list[ListingEntry]:
        """Run a metadata-only invocation and parse its JSON lines."""
        process = await self._spawn(args)
        try:
            stdout, stderr = await process.communicate()
        except asyncio.CancelledError:
            # caller timed out - don't leave the process behind
            with suppress(ProcessLookupError):
                process.kill()
            raise
        entries = parse_listing_output(stdout.decode("utf-8", errors="replace"))

        # --ignore-errors makes partial results exit non-zero; only fail when empty
        if process.returncode != 0 and not entries:
            stderr_text = stderr.decode("utf-8", errors="replace")[-STDERR_TAIL_CHARS:]
            raise FetchToolError(
                f"{what} failed (exit code {process.returncode})",
                exit_code=process.returncode,
                stderr=stderr_text,
            )
        return entries

    async def list_entries(self, url: str) -> list[ListingEntry]:
        """Return the flat listing of a remote collection."""
        entries = await self._run_json_lines(self.build_listing_args(url), f"Listing {url}")
        logger.debug("ytdlp.listing_fetched", extra={"url": url, "entries": len(entries)})
        return entries

    async def fetch_metadata(self, urls: list[str]) -> list[ListingEntry]:
        """Return full metadata for a batch of item URLs."""
        if not urls:
            return []
        entries = await self._run_json_lines(
            self.build_metadata_args(urls), f"Metadata lookup of {len(urls)} items"
        )
        logger.debug(
            "ytdlp.metadata_fetched",
            extra={"requested": len(urls), "entries": len(entries)},
        )
        return entries

    async def start_fetch(self, request: FetchRequest) -> FetchProcess:
        """Launch a full fetch."""
        args = self.build_fetch_args(request)
        process = await self._spawn(args)
        logger.debug(
            "ytdlp.fetch_started",
            extra={"url": request.url, "pid": process.pid},
        )
        return YtDlpProcess(process)


class YtDlpProcess(FetchProcess):
    """Handle on a running yt-dlp process."""

    def __init__(self, process: asyncio.subprocess.Process) -> None:
        self._process = process
        self._stderr_chunks: list[bytes] = []
        # stderr is drained concurrently so a chatty process can't fill the pipe and stall
        self._stderr_task = asyncio.create_task(self._drain_stderr())

    @property
    def pid(self) -> int:
        """OS process id."""
        return self._process.pid

    async def _drain_stderr(self) -> None:
        if self._process.stderr is None:
            return
        while chunk := await self._process.stderr.read(4096):
            self._stderr_chunks.append(chunk)

    async def output_lines(self) -> AsyncIterator[str]:
        """Iterate over stdout lines until EOF."""
        if self._process.stdout is None:
            return
        while line := await self._process.stdout.readline():
            yield line.decode("utf-8", errors="replace").rstrip("\r\n")

    async def wait(self) -> int:
        """Wait for exit and return the exit code."""
        code = await self._process.wait()
        await self._stderr_task
        return code

    def stderr_text(self) -> str:
        """Tail of the collected stderr."""
        text = b"".join(self._stderr_chunks).decode("utf-8", errors="replace")
        return text[-STDERR_TAIL_CHARS:]

    def kill(self) -> None:
        """Kill the process if still running."""
        if self._process.returncode is None:
            with suppress(ProcessLookupError):
                self._process.kill()
