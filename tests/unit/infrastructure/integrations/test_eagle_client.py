"""Hey future me - tests for the Eagle HTTP client.

pytest-httpx intercepts every httpx request; each add_response() answers ONE
request, so register one per expected call.
"""

import json
from collections.abc import AsyncGenerator
from pathlib import Path

import httpx
import pytest
from pytest_httpx import HTTPXMock

from subsync.config.settings import LibrarySettings
from subsync.domain.exceptions import (
    LibraryFolderExistsError,
    LibraryItemExistsError,
    LibraryServiceError,
)
from subsync.infrastructure.integrations.eagle_client import EagleLibraryClient

API = "http://localhost:41595"


def ok(data: object) -> dict[str, object]:
    return {"status": "success", "data": data}


def item_json(item_id: str, url: str | None = None, **extra: object) -> dict[str, object]:
    return {"id": item_id, "name": f"name-{item_id}", "url": url, **extra}


@pytest.fixture
async def client() -> AsyncGenerator[EagleLibraryClient, None]:
    eagle = EagleLibraryClient(LibrarySettings(api_url=API))
    yield eagle
    await eagle.close()


class TestItems:
    """Tests for item endpoints."""

    @pytest.mark.asyncio
    async def test_get_item(self, client: EagleLibraryClient, httpx_mock: HTTPXMock) -> None:
        """Test item info is mapped to LibraryItem."""
        httpx_mock.add_response(
            url=f"{API}/api/item/info?id=L1",
            json=ok(
                item_json(
                    "L1",
                    "https://y/1",
                    tags=["Platform: youtube.com"],
                    folders=["F1"],
                    btime=1700000000123,
                )
            ),
        )

        item = await client.get_item("L1")

        assert item is not None
        assert item.url == "https://y/1"
        assert item.tags == ["Platform: youtube.com"]
        assert item.folders == ["F1"]
        assert item.added_at == 1700000000123

    @pytest.mark.asyncio
    async def test_get_missing_item(
        self, client: EagleLibraryClient, httpx_mock: HTTPXMock
    ) -> None:
        """Test "does not exist" becomes None."""
        httpx_mock.add_response(
            url=f"{API}/api/item/info?id=gone",
            json={"status": "error", "message": "Item does not exist"},
        )
        assert await client.get_item("gone") is None

    @pytest.mark.asyncio
    async def test_error_envelope_raises(
        self, client: EagleLibraryClient, httpx_mock: HTTPXMock
    ) -> None:
        """Test other error envelopes raise LibraryServiceError."""
        httpx_mock.add_response(
            url=f"{API}/api/item/info?id=x", json={"status": "error", "message": "library busy"}
        )
        with pytest.raises(LibraryServiceError):
            await client.get_item("x")

    @pytest.mark.asyncio
    async def test_transport_error_raises(
        self, client: EagleLibraryClient, httpx_mock: HTTPXMock
    ) -> None:
        """Test connection failures become LibraryServiceError."""
        httpx_mock.add_exception(httpx.ConnectError("Connection refused"))
        with pytest.raises(LibraryServiceError):
            await client.get_library_info()

    @pytest.mark.asyncio
    async def test_find_item_by_url_matches_exactly(
        self, client: EagleLibraryClient, httpx_mock: HTTPXMock
    ) -> None:
        """Test keyword hits with another url are ignored."""
        url = "https://www.youtube.com/watch?v=abc"
        httpx_mock.add_response(
            json=ok([item_json("L1", url + "def"), item_json("L2", url)]),
        )

        item = await client.find_item_by_url(url)

        assert item is not None
        assert item.id == "L2"
        request = httpx_mock.get_request()
        assert request is not None
        assert request.url.params["keyword"] == url

    @pytest.mark.asyncio
    async def test_list_items_pages(
        self, client: EagleLibraryClient, httpx_mock: HTTPXMock
    ) -> None:
        """Test listing follows pages until a short page."""
        httpx_mock.add_response(json=ok([item_json(f"A{i}") for i in range(200)]))
        httpx_mock.add_response(json=ok([item_json("B0")]))

        items = await client.list_items("F1")

        assert len(items) == 201
        offsets = [r.url.params["offset"] for r in httpx_mock.get_requests()]
        assert offsets == ["0", "1"]
        assert all(r.url.params["folders"] == "F1" for r in httpx_mock.get_requests())

    @pytest.mark.asyncio
    async def test_find_items_by_tag_filters(
        self, client: EagleLibraryClient, httpx_mock: HTTPXMock
    ) -> None:
        """Test only items really carrying the tag are returned."""
        httpx_mock.add_response(
            json=ok(
                [
                    item_json("L1", tags=["Platform: youtube.com"]),
                    item_json("L2", tags=["Other"]),
                ]
            )
        )
        items = await client.find_items_by_tag("Platform: youtube.com")
        assert [i.id for i in items] == ["L1"]

    @pytest.mark.asyncio
    async def test_add_item_from_path(
        self, client: EagleLibraryClient, httpx_mock: HTTPXMock
    ) -> None:
        """Test the import body and returned id."""
        httpx_mock.add_response(
            method="POST", url=f"{API}/api/item/addFromPath", json=ok({"id": "NEW1"})
        )

        item_id = await client.add_item_from_path(
            Path("/downloads/Video [abc].mp4"),
            name="Video",
            website="https://www.youtube.com/watch?v=abc",
            annotation="Video ID: abc",
            tags=["Platform: youtube.com"],
            folder_ids=["F1"],
        )

        assert item_id == "NEW1"
        request = httpx_mock.get_request()
        assert request is not None
        body = json.loads(request.content)
        assert body["path"] == str(Path("/downloads/Video [abc].mp4"))
        assert body["folderId"] == "F1"
        assert body["website"] == "https://www.youtube.com/watch?v=abc"

    @pytest.mark.asyncio
    async def test_add_existing_item(
        self, client: EagleLibraryClient, httpx_mock: HTTPXMock
    ) -> None:
        """Test "already exists" becomes LibraryItemExistsError."""
        httpx_mock.add_response(
            method="POST",
            url=f"{API}/api/item/addFromPath",
            json={"status": "error", "message": "Item already exists"},
        )
        with pytest.raises(LibraryItemExistsError):
            await client.add_item_from_path(Path("/d/x.mp4"), name="x")

    @pytest.mark.asyncio
    async def test_update_item_sends_only_given_fields(
        self, client: EagleLibraryClient, httpx_mock: HTTPXMock
    ) -> None:
        """Test None fields are left out of the update body."""
        httpx_mock.add_response(
            method="POST",
            url=f"{API}/api/item/update",
            json=ok(item_json("L1", folders=["F1", "F2"])),
        )

        updated = await client.update_item("L1", folders=["F1", "F2"])

        assert updated.folders == ["F1", "F2"]
        request = httpx_mock.get_request()
        assert request is not None
        assert json.loads(request.content) == {"id": "L1", "folders": ["F1", "F2"]}

    @pytest.mark.asyncio
    async def test_trash_item(self, client: EagleLibraryClient, httpx_mock: HTTPXMock) -> None:
        """Test trashing posts the id to moveToTrash."""
        httpx_mock.add_response(
            method="POST", url=f"{API}/api/item/moveToTrash", json={"status": "success"}
        )

        await client.trash_item("L2")

        request = httpx_mock.get_request()
        assert request is not None
        assert json.loads(request.content) == {"itemIds": ["L2"]}


class TestFolders:
    """Tests for folder endpoints."""

    @pytest.mark.asyncio
    async def test_find_nested_folder(
        self, client: EagleLibraryClient, httpx_mock: HTTPXMock
    ) -> None:
        """Test nested folders are found by name."""
        httpx_mock.add_response(
            url=f"{API}/api/folder/list",
            json=ok(
                [
                    {
                        "id": "F1",
                        "name": "Videos",
                        "children": [{"id": "F2", "name": "Music", "children": []}],
                    }
                ]
            ),
        )

        folder = await client.find_folder_by_name("Music")

        assert folder is not None
        assert folder.id == "F2"

    @pytest.mark.asyncio
    async def test_create_existing_folder(
        self, client: EagleLibraryClient, httpx_mock: HTTPXMock
    ) -> None:
        """Test "already exists" becomes LibraryFolderExistsError."""
        httpx_mock.add_response(
            method="POST",
            url=f"{API}/api/folder/create",
            json={"status": "error", "message": "Folder already exists"},
        )
        with pytest.raises(LibraryFolderExistsError):
            await client.create_folder("Music")


class TestLibraryInfo:
    """Tests for library identification."""

    @pytest.mark.asyncio
    async def test_library_info(self, client: EagleLibraryClient, httpx_mock: HTTPXMock) -> None:
        """Test name, path and modification time are read."""
        httpx_mock.add_response(
            url=f"{API}/api/library/info",
            json=ok(
                {
                    "library": {"name": "Main", "path": "/libs/Main.library"},
                    "modificationTime": 1700000000,
                }
            ),
        )

        info = await client.get_library_info()

        assert info.name == "Main"
        assert info.path == "/libs/Main.library"
        assert info.modification_time == 1700000000

    @pytest.mark.asyncio
    async def test_token_is_sent(self, httpx_mock: HTTPXMock) -> None:
        """Test the api token is passed as query parameter."""
        httpx_mock.add_response(
            url=f"{API}/api/library/info?token=secret",
            json=ok({"library": {"name": "Main"}}),
        )
        async with EagleLibraryClient(LibrarySettings(api_url=API, api_token="secret")) as eagle:
            info = await eagle.get_library_info()
        assert info.name == "Main"
