"""SQLAlchemy ORM models for subsync."""

import uuid
from datetime import UTC, datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


# Hey future me, utc_now() ensures ALL timestamps are UTC! Never store naive local time -
# stale-lock recovery compares locked_at against "now minus N hours", and mixing timezones
# there would release live leases or keep dead ones forever.
def utc_now() -> datetime:
    """Get current UTC time."""
    return datetime.now(UTC)


# SQLite doesn't preserve timezone info - UTC datetimes come back naive. Attach UTC before
# comparing with datetime.now(UTC) or you'll get "can't compare offset-naive and offset-aware".
def ensure_utc_aware(dt: datetime) -> datetime:
    """Ensure datetime is UTC-aware, assuming naive datetimes are UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt


def new_id() -> str:
    """Generate a new primary key."""
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


class LibraryModel(Base):
    """SQLAlchemy model for a known external library."""

    __tablename__ = "libraries"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    path: Mapped[str | None] = mapped_column(Text, nullable=True)
    modification_time: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )


# Listen up, url is UNIQUE - one subscription per remote collection. ondelete on items is
# SET NULL, not CASCADE: deleting a subscription without "delete items" keeps the item rows
# as history so the duplicate resolver still finds already-imported external ids.
class SubscriptionModel(Base):
    """SQLAlchemy model for Subscription entity."""

    __tablename__ = "subscriptions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    url: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    title: Mapped[str | None] = mapped_column(String(500), nullable=True)
    remote_title: Mapped[str | None] = mapped_column(String(500), nullable=True)
    format: Mapped[str] = mapped_column(String(50), nullable=False, default="best")
    quality: Mapped[str] = mapped_column(String(50), nullable=False, default="")
    auto_download: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    skip: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_checked: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    remote_item_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    item_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    library_folder_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    library_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("libraries.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )

    items: Mapped[list["ItemModel"]] = relationship(
        back_populates="subscription", passive_deletes=True
    )


# Hey future me, THIS is the durable per-item state machine. The lease columns
# (lock_token + locked_at) are the processing lock - NULL token means unlocked. Every
# lease change goes through a conditional UPDATE in ItemStore, never read-then-write
# from Python, so two writers can't both believe they own the row.
class ItemModel(Base):
    """SQLAlchemy model for ItemRecord entity."""

    __tablename__ = "items"
    __table_args__ = (
        UniqueConstraint("subscription_id", "external_id", name="uq_items_subscription_external"),
        Index("ix_items_external_id", "external_id"),
        Index("ix_items_lock_token", "lock_token"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    subscription_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("subscriptions.id", ondelete="SET NULL"), nullable=True
    )
    external_id: Mapped[str] = mapped_column(String(100), nullable=False)
    title: Mapped[str | None] = mapped_column(Text, nullable=True)
    source_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    fetched: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    library_linked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    lock_token: Mapped[str | None] = mapped_column(String(64), nullable=True)
    locked_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    is_duplicate: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    master_item_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    library_item_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    library_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("libraries.id", ondelete="SET NULL"), nullable=True
    )
    first_attempt_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    fetched_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False
    )

    subscription: Mapped[SubscriptionModel | None] = relationship(back_populates="items")


class StagingPlaylistModel(Base):
    """SQLAlchemy model for a staged library folder."""

    __tablename__ = "staging_playlists"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    library_folder_id: Mapped[str] = mapped_column(String(100), nullable=False)
    library_folder_name: Mapped[str] = mapped_column(String(500), nullable=False)
    detected_name: Mapped[str | None] = mapped_column(String(500), nullable=True)
    item_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    playlist_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    synced: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    synced_subscription_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )

    items: Mapped[list["StagingItemModel"]] = relationship(
        back_populates="playlist", cascade="all, delete-orphan"
    )


class StagingItemModel(Base):
    """SQLAlchemy model for a staged library item."""

    __tablename__ = "staging_items"
    __table_args__ = (Index("ix_staging_items_external_id", "external_id"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    staging_playlist_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("staging_playlists.id", ondelete="CASCADE"),
        nullable=False,
    )
    library_item_id: Mapped[str] = mapped_column(String(100), nullable=False)
    external_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    url: Mapped[str | None] = mapped_column(Text, nullable=True)
    title: Mapped[str | None] = mapped_column(Text, nullable=True)
    uploader: Mapped[str | None] = mapped_column(String(500), nullable=True)
    upload_date: Mapped[str | None] = mapped_column(String(20), nullable=True)
    view_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    duration: Mapped[float | None] = mapped_column(Float, nullable=True)
    library_folder_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    is_duplicate: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    master_item_id: Mapped[str | None] = mapped_column(String(36), nullable=True)

    playlist: Mapped[StagingPlaylistModel] = relationship(back_populates="items")

