"""Domain ports (interfaces) for external collaborators."""

from subsync.domain.ports.fetch_tool import (
    FetchProcess,
    FetchRequest,
    IFetchTool,
    ListingEntry,
)
from subsync.domain.ports.library_service import (
    ILibraryService,
    LibraryFolder,
    LibraryInfo,
    LibraryItem,
)

__all__ = [
    "FetchProcess",
    "FetchRequest",
    "IFetchTool",
    "ILibraryService",
    "LibraryFolder",
    "LibraryInfo",
    "LibraryItem",
    "ListingEntry",
]
