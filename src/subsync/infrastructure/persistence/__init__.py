"""Infrastructure persistence layer."""

from .database import Database
from .models import (
    Base,
    ItemModel,
    LibraryModel,
    StagingItemModel,
    StagingPlaylistModel,
    SubscriptionModel,
)
from .retry import DatabaseLockMetrics, with_db_retry
from .schema import ensure_schema
from .store import ItemStore

__all__ = [
    "Base",
    "Database",
    "DatabaseLockMetrics",
    "ItemModel",
    "ItemStore",
    "LibraryModel",
    "StagingItemModel",
    "StagingPlaylistModel",
    "SubscriptionModel",
    "ensure_schema",
    "with_db_retry",
]
