"""Library Service Port (Interface).

The external library (host application) stores finished artifacts. We only talk to
it through this interface; the HTTP adapter lives in infrastructure/integrations.

Hey future me - every method may raise LibraryServiceError, and the create-style
methods raise LibraryItemExistsError / LibraryFolderExistsError for "already exists".
Callers treat those two as recoverable: look the thing up and merge into it.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path


@dataclass
class LibraryItem:
    """An item stored in the external library."""

    id: str
    name: str = ""
    url: str | None = None
    annotation: str = ""
    tags: list[str] = field(default_factory=list)
    folders: list[str] = field(default_factory=list)
    # Import time in epoch milliseconds, when the library reports it
    added_at: int | None = None


@dataclass
class LibraryFolder:
    """A folder in the external library."""

    id: str
    name: str
    children: list["LibraryFolder"] = field(default_factory=list)


@dataclass
class LibraryInfo:
    """Identity of the currently open library."""

    name: str
    path: str | None = None
    modification_time: int | None = None


class ILibraryService(ABC):
    """Interface for the external library application."""

    # ===== ITEMS =====

    @abstractmethod
    async def find_item_by_url(self, url: str) -> LibraryItem | None:
        """Find an item by its source url."""
        pass

    @abstractmethod
    async def get_item(self, item_id: str) -> LibraryItem | None:
        """Get an item by id, None if it no longer exists."""
        pass

    @abstractmethod
    async def find_items_by_tag(self, tag: str) -> list[LibraryItem]:
        """List items carrying the given tag."""
        pass

    @abstractmethod
    async def list_items(self, folder_id: str | None = None) -> list[LibraryItem]:
        """List items, optionally restricted to one folder."""
        pass

    @abstractmethod
    async def add_item_from_path(
        self,
        path: Path,
        name: str,
        website: str | None = None,
        annotation: str = "",
        tags: list[str] | None = None,
        folder_ids: list[str] | None = None,
    ) -> str:
        """Import a local file and return the new item id.

        Raises:
            LibraryItemExistsError: If the library already has this item
        """
        pass

    @abstractmethod
    async def update_item(
        self,
        item_id: str,
        folders: list[str] | None = None,
        tags: list[str] | None = None,
        annotation: str | None = None,
    ) -> LibraryItem:
        """Update membership/tags/annotation of an item."""
        pass

    @abstractmethod
    async def trash_item(self, item_id: str) -> None:
        """Soft-delete an item."""
        pass

    # ===== FOLDERS =====

    @abstractmethod
    async def find_folder_by_name(self, name: str) -> LibraryFolder | None:
        """Find a folder (at any depth) by exact name."""
        pass

    @abstractmethod
    async def create_folder(self, name: str) -> LibraryFolder:
        """Create a top-level folder.

        Raises:
            LibraryFolderExistsError: If a folder with this name exists
        """
        pass

    @abstractmethod
    async def list_folders(self, flatten: bool = True) -> list[LibraryFolder]:
        """List folders, nested ones included when flatten is True."""
        pass

    # ===== LIBRARY =====

    @abstractmethod
    async def get_library_info(self) -> LibraryInfo:
        """Identify the currently open library."""
        pass
