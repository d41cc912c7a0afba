"""Staging entities for importing pre-existing library contents."""

from dataclasses import dataclass, field
from datetime import UTC, datetime


@dataclass
class StagingItem:
    """A library item found during a staging scan."""

    id: str
    staging_playlist_id: str
    library_item_id: str
    external_id: str | None = None
    url: str | None = None
    title: str | None = None
    uploader: str | None = None
    upload_date: str | None = None
    view_count: int | None = None
    duration: float | None = None
    library_folder_id: str | None = None
    is_duplicate: bool = False
    master_item_id: str | None = None


# Hey future me, confidence is (items carrying the winning "Playlist: X" tag) / (items in
# the folder). 1.0 means every item agreed on the playlist name; low values mean the folder
# is a mix and the user should double check detected_name before migrating.
@dataclass
class StagingPlaylist:
    """A library folder detected as a former subscription."""

    id: str
    library_folder_id: str
    library_folder_name: str
    detected_name: str | None = None
    item_count: int = 0
    confidence: float = 0.0
    playlist_url: str | None = None
    synced: bool = False
    synced_subscription_id: str | None = None
    items: list[StagingItem] = field(default_factory=list)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
