"""Import finalizer - hand a finished fetch over to the library.

Hey future me - this runs right after the scheduler saw exit code 0. At that point the
store row is status=completed, fetched=True, but the item is NOT done yet: done means
library_linked too. The scheduler kept the lease for us, so nobody else touches the row
while we import.

FLOW:
```
locate artifact in download dir ──none──► release lease, return False
        │
ensure subscription folder (find / create / "exists" → re-lookup)
        │
add_item_from_path (bounded by import_timeout)
        │   └── "already exists" → find by url, merge folders/tags/annotation
        ▼
delete local file → mark_library_linked (releases lease) → increment_item_count
```
Any library failure releases the lease, keeps the file and leaves library_linked=False,
so the next reconciliation pass retries the item.
"""

import asyncio
import logging
import re
from datetime import date
from pathlib import Path

from subsync.application.services.annotations import (
    build_annotation,
    build_tags,
    merge_playlist_annotation,
    union,
)
from subsync.application.services.library_folders import ensure_subscription_folder
from subsync.config.settings import LibrarySettings
from subsync.domain.entities import QueueItem
from subsync.domain.exceptions import LibraryItemExistsError, LibraryServiceError
from subsync.domain.ports import ILibraryService
from subsync.infrastructure.persistence import ItemStore

logger = logging.getLogger(__name__)

# Leftovers of the fetch tool and sidecar files - never artifacts
SKIPPED_SUFFIXES = (".part", ".ytdl", ".txt", ".tmp", ".downloading", ".temp", ".json")

TITLE_MATCH_CHARS = 20
DEFAULT_FOLDER_NAME = "Downloads"

_NON_WORD = re.compile(r"[^\w\s-]")
_ID_SUFFIX = re.compile(r"\s*\[[A-Za-z0-9_-]+\]$")


def clean_for_match(text: str) -> str:
    """Strip everything but word characters, whitespace and dashes."""
    return _NON_WORD.sub("", text).strip()


def is_skipped_file(path: Path) -> bool:
    """Temporary, sidecar and hidden files."""
    name = path.name
    if name.startswith("."):
        return True
    # fragments look like "x.mp4.part-Frag3"
    if ".part" in name or ".temp" in name:
        return True
    return name.endswith(SKIPPED_SUFFIXES)


def matches_item(path: Path, external_id: str, title: str | None) -> bool:
    """File name carries the external id or the first 20 cleaned title chars."""
    stem = path.stem
    if external_id in stem:
        return True
    prefix = clean_for_match(title or "")[:TITLE_MATCH_CHARS]
    return bool(prefix) and prefix in clean_for_match(stem)


def display_name(path: Path, upload_date: str | None, prefix_upload_date: bool) -> str:
    """Library item name: file stem without the "[id]" suffix, optionally date-prefixed."""
    name = _ID_SUFFIX.sub("", path.stem) or path.stem
    if prefix_upload_date and upload_date:
        return f"{upload_date} {name}"
    return name


class ImportFinalizer:
    """Imports finished artifacts into the library and commits final state."""

    def __init__(
        self,
        store: ItemStore,
        library: ILibraryService,
        download_path: Path,
        settings: LibrarySettings,
    ) -> None:
        """Initialize the finalizer.

        Args:
            store: Item store
            library: Library service
            download_path: Directory the fetch tool writes to
            settings: Library settings (timeouts, naming, min artifact size)
        """
        self._store = store
        self._library = library
        self._download_path = Path(download_path)
        self._settings = settings

    def locate_artifact(self, item: QueueItem) -> Path | None:
        """Find the artifact of an item in the download directory.

        Tiny matching files (< min_artifact_bytes) are leftovers of failed merges
        and get deleted.
        """
        if not self._download_path.is_dir():
            return None

        candidates: list[Path] = []
        for path in sorted(self._download_path.iterdir()):
            if not path.is_file() or is_skipped_file(path):
                continue
            if not matches_item(path, item.external_id, item.title):
                continue
            if path.stat().st_size < self._settings.min_artifact_bytes:
                logger.info(
                    "import_finalizer.tiny_file_deleted",
                    extra={"file": path.name, "external_id": item.external_id},
                )
                path.unlink(missing_ok=True)
                continue
            candidates.append(path)

        if not candidates:
            return None
        # An exact id match beats a title-prefix match
        by_id = [p for p in candidates if item.external_id in p.stem]
        return (by_id or candidates)[0]

    async def finalize(self, item: QueueItem) -> bool:
        """Import the item's artifact and mark it linked.

        Returns:
            True if the item is now done, False if it stays unlinked
        """
        artifact = self.locate_artifact(item)
        if artifact is None:
            logger.warning(
                "import_finalizer.artifact_missing",
                extra={"external_id": item.external_id, "dir": str(self._download_path)},
            )
            await self._store.release_lock(item.item_id, item.lock_token)
            return False

        try:
            library_item_id = await asyncio.wait_for(
                self._import(item, artifact), timeout=self._settings.import_timeout
            )
        except (TimeoutError, LibraryServiceError) as e:
            logger.error(
                "import_finalizer.import_failed",
                extra={
                    "external_id": item.external_id,
                    "file": artifact.name,
                    "error": str(e) or type(e).__name__,
                },
            )
            await self._store.release_lock(item.item_id, item.lock_token)
            return False

        try:
            artifact.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(
                "import_finalizer.file_delete_failed",
                extra={"file": artifact.name, "error": str(e)},
            )

        await self._store.mark_library_linked(item.item_id, library_item_id)
        if item.subscription_id:
            await self._store.increment_item_count(item.subscription_id)

        logger.info(
            "import_finalizer.item_linked",
            extra={
                "external_id": item.external_id,
                "library_item_id": library_item_id,
                "subscription_id": item.subscription_id,
            },
        )
        return True

    async def _import(self, item: QueueItem, artifact: Path) -> str:
        playlist = item.subscription_title or DEFAULT_FOLDER_NAME
        folder_id = await ensure_subscription_folder(
            self._library,
            self._store,
            item.subscription_id,
            playlist,
            item.library_folder_id,
        )
        item.library_folder_id = folder_id

        annotation = build_annotation(
            title=item.title,
            uploader=item.uploader,
            upload_date=item.upload_date,
            view_count=item.view_count,
            external_id=item.external_id,
            playlist=playlist,
        )
        tags = build_tags(item.url, playlist, item.uploader, item.upload_date)
        name = display_name(artifact, item.upload_date, self._settings.prefix_upload_date)

        try:
            return await self._library.add_item_from_path(
                artifact,
                name=name,
                website=item.url,
                annotation=annotation,
                tags=tags,
                folder_ids=[folder_id],
            )
        except LibraryItemExistsError:
            existing = await self._library.find_item_by_url(item.url)
            if existing is None:
                raise LibraryServiceError(
                    f"Library reports {item.external_id} as existing but it cannot be found"
                ) from None

            merged, _ = merge_playlist_annotation(
                existing.annotation or annotation, playlist, date.today()
            )
            await self._library.update_item(
                existing.id,
                folders=union(existing.folders, [folder_id]),
                tags=union(existing.tags, tags),
                annotation=merged,
            )
            logger.info(
                "import_finalizer.merged_into_existing",
                extra={"external_id": item.external_id, "library_item_id": existing.id},
            )
            return existing.id
