"""initial schema: subscriptions, items, libraries, staging

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-01 10:00:00.000000

Hey future me - the engine also runs ensure_schema() on startup, so a database may
already have these tables before alembic ever runs. Every create is guarded by the
inspector; running this on such a database just stamps it.
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create all tables that don't exist yet."""
    from sqlalchemy import inspect

    conn = op.get_bind()
    existing = set(inspect(conn).get_table_names())

    if "libraries" not in existing:
        op.create_table(
            "libraries",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("name", sa.String(255), nullable=False, unique=True),
            sa.Column("path", sa.Text(), nullable=True),
            sa.Column("modification_time", sa.Integer(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        )

    if "subscriptions" not in existing:
        op.create_table(
            "subscriptions",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("url", sa.Text(), nullable=False, unique=True),
            sa.Column("title", sa.String(500), nullable=True),
            sa.Column("remote_title", sa.String(500), nullable=True),
            sa.Column("format", sa.String(50), nullable=False, server_default="best"),
            sa.Column("quality", sa.String(50), nullable=False, server_default=""),
            sa.Column("auto_download", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("skip", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("last_checked", sa.DateTime(timezone=True), nullable=True),
            sa.Column("remote_item_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("item_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("library_folder_id", sa.String(100), nullable=True),
            sa.Column(
                "library_id",
                sa.String(36),
                sa.ForeignKey("libraries.id", ondelete="SET NULL"),
                nullable=True,
            ),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        )

    if "items" not in existing:
        op.create_table(
            "items",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column(
                "subscription_id",
                sa.String(36),
                sa.ForeignKey("subscriptions.id", ondelete="SET NULL"),
                nullable=True,
            ),
            sa.Column("external_id", sa.String(100), nullable=False),
            sa.Column("title", sa.Text(), nullable=True),
            sa.Column("source_url", sa.Text(), nullable=True),
            sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
            sa.Column("fetched", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("library_linked", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("is_duplicate", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("master_item_id", sa.String(36), nullable=True),
            sa.Column("library_item_id", sa.String(100), nullable=True),
            sa.Column("failure_reason", sa.Text(), nullable=True),
            sa.Column(
                "library_id",
                sa.String(36),
                sa.ForeignKey("libraries.id", ondelete="SET NULL"),
                nullable=True,
            ),
            sa.Column("fetched_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.UniqueConstraint(
                "subscription_id", "external_id", name="uq_items_subscription_external"
            ),
        )
        op.create_index("ix_items_external_id", "items", ["external_id"])

    if "staging_playlists" not in existing:
        op.create_table(
            "staging_playlists",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("library_folder_id", sa.String(100), nullable=False),
            sa.Column("library_folder_name", sa.String(500), nullable=False),
            sa.Column("detected_name", sa.String(500), nullable=True),
            sa.Column("item_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("confidence", sa.Float(), nullable=False, server_default="0"),
            sa.Column("playlist_url", sa.Text(), nullable=True),
            sa.Column("synced", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("synced_subscription_id", sa.String(36), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        )

    if "staging_items" not in existing:
        op.create_table(
            "staging_items",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column(
                "staging_playlist_id",
                sa.String(36),
                sa.ForeignKey("staging_playlists.id", ondelete="CASCADE"),
                nullable=False,
            ),
            sa.Column("library_item_id", sa.String(100), nullable=False),
            sa.Column("external_id", sa.String(100), nullable=True),
            sa.Column("url", sa.Text(), nullable=True),
            sa.Column("title", sa.Text(), nullable=True),
            sa.Column("uploader", sa.String(500), nullable=True),
            sa.Column("upload_date", sa.String(20), nullable=True),
            sa.Column("view_count", sa.Integer(), nullable=True),
            sa.Column("duration", sa.Float(), nullable=True),
            sa.Column("library_folder_id", sa.String(100), nullable=True),
            sa.Column("is_duplicate", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("master_item_id", sa.String(36), nullable=True),
        )
        op.create_index("ix_staging_items_external_id", "staging_items", ["external_id"])


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table("staging_items")
    op.drop_table("staging_playlists")
    op.drop_table("items")
    op.drop_table("subscriptions")
    op.drop_table("libraries")
