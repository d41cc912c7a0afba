"""Find-or-create of a subscription's library folder."""

import logging

from subsync.domain.exceptions import LibraryFolderExistsError, LibraryServiceError
from subsync.domain.ports import ILibraryService
from subsync.infrastructure.persistence import ItemStore

logger = logging.getLogger(__name__)


async def ensure_folder(library: ILibraryService, name: str) -> str:
    """Return the id of the folder called name, creating it if needed.

    Raises:
        LibraryServiceError: If the folder can neither be found nor created
    """
    folder = await library.find_folder_by_name(name)
    if folder is not None:
        return folder.id

    try:
        created = await library.create_folder(name)
        logger.info("library.folder_created", extra={"folder": name, "folder_id": created.id})
        return created.id
    except LibraryFolderExistsError:
        # Someone created it between our lookup and create
        folder = await library.find_folder_by_name(name)
        if folder is None:
            raise LibraryServiceError(
                f"Folder '{name}' reported as existing but cannot be found"
            ) from None
        return folder.id


async def ensure_subscription_folder(
    library: ILibraryService,
    store: ItemStore,
    subscription_id: str | None,
    folder_name: str,
    cached_folder_id: str | None = None,
) -> str:
    """Folder of a subscription, cached on the subscription row after first use."""
    if cached_folder_id:
        return cached_folder_id

    folder_id = await ensure_folder(library, folder_name)
    if subscription_id:
        await store.update_subscription(subscription_id, library_folder_id=folder_id)
    return folder_id
