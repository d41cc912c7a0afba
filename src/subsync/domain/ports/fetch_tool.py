"""Fetch Tool Port (Interface).

This module defines the interface to the external fetch tool. Following Hexagonal
Architecture (Ports & Adapters), this is a PORT in the domain layer; the yt-dlp
subprocess adapter lives in the infrastructure layer.

The tool has three invocation modes:
1. Listing - cheap metadata-only flat listing of a remote collection
2. Metadata - full per-item metadata for a batch of item URLs, no download
3. Fetch - full download of one item, reporting progress on stdout
"""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any


@dataclass
class ListingEntry:
    """One entry of a flat remote listing."""

    id: str
    title: str | None = None
    url: str | None = None
    uploader: str | None = None
    upload_date: str | None = None
    view_count: int | None = None
    duration: float | None = None
    playlist_title: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> "ListingEntry":
        """Build an entry from one JSON line of the listing output."""
        view_count = data.get("view_count")
        duration = data.get("duration")
        return cls(
            id=str(data["id"]),
            title=data.get("title"),
            url=data.get("webpage_url") or data.get("url"),
            uploader=data.get("uploader") or data.get("channel"),
            upload_date=data.get("upload_date"),
            view_count=int(view_count) if view_count is not None else None,
            duration=float(duration) if duration is not None else None,
            playlist_title=data.get("playlist_title") or data.get("playlist"),
            raw=data,
        )

    def enriched(self, detail: "ListingEntry") -> "ListingEntry":
        """Copy of this entry with the fields of a full metadata lookup filled in.

        Values from the lookup win; anything it left empty keeps the listing value.
        """
        return replace(
            self,
            title=detail.title or self.title,
            url=self.url or detail.url,
            uploader=detail.uploader or self.uploader,
            upload_date=detail.upload_date or self.upload_date,
            view_count=detail.view_count if detail.view_count is not None else self.view_count,
            duration=detail.duration if detail.duration is not None else self.duration,
            playlist_title=self.playlist_title or detail.playlist_title,
            raw={**self.raw, **detail.raw},
        )


@dataclass
class FetchRequest:
    """Everything needed to launch one full fetch."""

    url: str
    output_dir: Path
    format: str = "best"
    quality: str = ""
    rate_limit_kbps: int = 0


class FetchProcess(ABC):
    """Handle on one running fetch process."""

    @abstractmethod
    def output_lines(self) -> AsyncIterator[str]:
        """Iterate over stdout lines until the stream closes."""
        pass

    @abstractmethod
    async def wait(self) -> int:
        """Wait for the process to exit and return its exit code."""
        pass

    @abstractmethod
    def stderr_text(self) -> str:
        """Diagnostic text collected from stderr (available after wait())."""
        pass

    @abstractmethod
    def kill(self) -> None:
        """Terminate the process immediately. Safe to call after exit."""
        pass


class IFetchTool(ABC):
    """Interface for the external fetch tool."""

    @abstractmethod
    async def list_entries(self, url: str) -> list[ListingEntry]:
        """Return the flat listing of a remote collection.

        Args:
            url: Collection URL (playlist/channel)

        Returns:
            Entries in remote order. Unparsable output lines are skipped.

        Raises:
            FetchToolError: If the tool could not produce a listing at all
        """
        pass

    @abstractmethod
    async def fetch_metadata(self, urls: list[str]) -> list[ListingEntry]:
        """Return full metadata for a batch of item URLs.

        Flat listings often lack upload date, view count and duration; this is the
        slower per-item lookup that fills them in. Items the tool can't resolve are
        simply missing from the result.

        Raises:
            FetchToolError: If the tool produced no metadata at all
        """
        pass

    @abstractmethod
    async def start_fetch(self, request: FetchRequest) -> FetchProcess:
        """Launch a full fetch and return the running process handle.

        Raises:
            FetchToolError: If the process could not be started
        """
        pass
