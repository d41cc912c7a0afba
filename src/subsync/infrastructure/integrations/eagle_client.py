"""Eagle library HTTP client implementation.

Hey future me - Eagle (the asset library app) exposes a small local HTTP API, by
default on http://localhost:41595. Every response is wrapped like:

    {"status": "success", "data": ...}
    {"status": "error", "message": "..."}

so _request() unwraps "data" and turns "error" into LibraryServiceError. Messages
containing "exist" become the recoverable *ExistsError subclasses.

There is no "find by url" endpoint - we search with the url as keyword and filter
on the exact url client-side.
"""

import logging
from pathlib import Path
from typing import Any

import httpx

from subsync.config.settings import LibrarySettings
from subsync.domain.exceptions import (
    LibraryFolderExistsError,
    LibraryItemExistsError,
    LibraryServiceError,
)
from subsync.domain.ports import ILibraryService, LibraryFolder, LibraryInfo, LibraryItem

logger = logging.getLogger(__name__)

# Page size for item listings
_PAGE_SIZE = 200


def _to_item(data: dict[str, Any]) -> LibraryItem:
    added = data.get("btime") or data.get("modificationTime")
    return LibraryItem(
        id=str(data["id"]),
        name=data.get("name") or "",
        url=data.get("url") or None,
        annotation=data.get("annotation") or "",
        tags=list(data.get("tags") or []),
        folders=list(data.get("folders") or []),
        added_at=int(added) if added is not None else None,
    )


def _to_folder(data: dict[str, Any]) -> LibraryFolder:
    return LibraryFolder(
        id=str(data["id"]),
        name=data.get("name") or "",
        children=[_to_folder(child) for child in data.get("children") or []],
    )


def flatten_folders(folders: list[LibraryFolder]) -> list[LibraryFolder]:
    """Depth-first flattening of a folder tree (parents before children)."""
    flat: list[LibraryFolder] = []
    for folder in folders:
        flat.append(folder)
        flat.extend(flatten_folders(folder.children))
    return flat


class EagleLibraryClient(ILibraryService):
    """HTTP client for the Eagle library API."""

    def __init__(
        self,
        settings: LibrarySettings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize Eagle client.

        Args:
            settings: Library configuration (api url, token, timeouts)
            transport: Optional httpx transport (custom proxies, unix sockets)
        """
        self.settings = settings
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.settings.api_url,
                timeout=self.settings.request_timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        exists_error: type[LibraryServiceError] | None = None,
    ) -> Any:
        """Call the API and unwrap the response envelope.

        Raises:
            LibraryServiceError: On transport errors and error envelopes
        """
        client = await self._get_client()
        query = dict(params or {})
        if self.settings.api_token:
            query["token"] = self.settings.api_token

        try:
            response = await client.request(method, path, params=query, json=json)
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPError as e:
            raise LibraryServiceError(f"Library request {path} failed: {e}") from e
        except ValueError as e:
            raise LibraryServiceError(f"Library request {path} returned invalid JSON") from e

        if payload.get("status") != "success":
            message = str(payload.get("message") or payload.get("data") or "unknown error")
            if exists_error is not None and "exist" in message.lower():
                raise exists_error(message)
            raise LibraryServiceError(f"Library request {path} failed: {message}")

        return payload.get("data")

    # ===== ITEMS =====

    async def get_item(self, item_id: str) -> LibraryItem | None:
        """Get an item by id."""
        try:
            data = await self._request("GET", "/api/item/info", params={"id": item_id})
        except LibraryServiceError as e:
            if "not" in str(e).lower() and "exist" in str(e).lower():
                return None
            raise
        return _to_item(data) if data else None

    async def list_items(self, folder_id: str | None = None) -> list[LibraryItem]:
        """List all items (paged), optionally in one folder."""
        return await self._list_items_paged({"folders": folder_id} if folder_id else {})

    async def _list_items_paged(self, filters: dict[str, Any]) -> list[LibraryItem]:
        items: list[LibraryItem] = []
        offset = 0
        while True:
            data = await self._request(
                "GET",
                "/api/item/list",
                params={**filters, "limit": _PAGE_SIZE, "offset": offset},
            )
            page = [_to_item(entry) for entry in data or []]
            items.extend(page)
            if len(page) < _PAGE_SIZE:
                return items
            offset += 1

    async def find_items_by_tag(self, tag: str) -> list[LibraryItem]:
        """List items carrying a tag."""
        items = await self._list_items_paged({"tags": tag})
        return [item for item in items if tag in item.tags]

    async def find_item_by_url(self, url: str) -> LibraryItem | None:
        """Find an item whose url matches exactly."""
        data = await self._request(
            "GET", "/api/item/list", params={"keyword": url, "limit": _PAGE_SIZE}
        )
        for entry in data or []:
            item = _to_item(entry)
            if item.url == url:
                return item
        return None

    async def add_item_from_path(
        self,
        path: Path,
        name: str,
        website: str | None = None,
        annotation: str = "",
        tags: list[str] | None = None,
        folder_ids: list[str] | None = None,
    ) -> str:
        """Import a local file into the library."""
        body: dict[str, Any] = {
            "path": str(path),
            "name": name,
            "annotation": annotation,
            "tags": tags or [],
        }
        if website:
            body["website"] = website
        if folder_ids:
            body["folderId"] = folder_ids[0]

        data = await self._request(
            "POST", "/api/item/addFromPath", json=body, exists_error=LibraryItemExistsError
        )
        item_id = data.get("id") if isinstance(data, dict) else data
        if not item_id:
            raise LibraryServiceError(f"Library did not return an id for {path.name}")

        logger.debug("eagle.item_added", extra={"item_id": item_id, "file": path.name})
        return str(item_id)

    async def update_item(
        self,
        item_id: str,
        folders: list[str] | None = None,
        tags: list[str] | None = None,
        annotation: str | None = None,
    ) -> LibraryItem:
        """Update an item's folders/tags/annotation."""
        body: dict[str, Any] = {"id": item_id}
        if folders is not None:
            body["folders"] = folders
        if tags is not None:
            body["tags"] = tags
        if annotation is not None:
            body["annotation"] = annotation
        data = await self._request("POST", "/api/item/update", json=body)
        return _to_item(data) if isinstance(data, dict) else LibraryItem(id=item_id)

    async def trash_item(self, item_id: str) -> None:
        """Move an item to the library trash."""
        await self._request("POST", "/api/item/moveToTrash", json={"itemIds": [item_id]})

    # ===== FOLDERS =====

    async def list_folders(self, flatten: bool = True) -> list[LibraryFolder]:
        """List folders."""
        data = await self._request("GET", "/api/folder/list")
        folders = [_to_folder(entry) for entry in data or []]
        return flatten_folders(folders) if flatten else folders

    async def find_folder_by_name(self, name: str) -> LibraryFolder | None:
        """Find a folder at any depth by exact name."""
        for folder in await self.list_folders(flatten=True):
            if folder.name == name:
                return folder
        return None

    async def create_folder(self, name: str) -> LibraryFolder:
        """Create a top-level folder."""
        data = await self._request(
            "POST",
            "/api/folder/create",
            json={"folderName": name},
            exists_error=LibraryFolderExistsError,
        )
        return _to_folder(data)

    # ===== LIBRARY =====

    async def get_library_info(self) -> LibraryInfo:
        """Identify the open library."""
        data = await self._request("GET", "/api/library/info")
        library = (data or {}).get("library") or {}
        return LibraryInfo(
            name=library.get("name") or "default",
            path=library.get("path"),
            modification_time=(data or {}).get("modificationTime"),
        )

    async def __aenter__(self) -> "EagleLibraryClient":
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        await self.close()
