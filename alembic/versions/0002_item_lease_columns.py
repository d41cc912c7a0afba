"""add item lease columns and first_attempt_at

Revision ID: 0002_item_lease_columns
Revises: 0001_initial_schema
Create Date: 2026-10-08 10:00:00.000000

Hey future me - the processing lock used to be a plain boolean. It is now a lease:

- lock_token (VARCHAR 64): holder token, NULL = unlocked
- locked_at (DATETIME): when the lease was taken, used by stale-lock cleanup
- first_attempt_at (DATETIME): first time a fetch was launched

Also rewrites the legacy status 'done' to 'completed'.
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0002_item_lease_columns"
down_revision = "0001_initial_schema"
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Add lease columns (idempotent) and fix legacy statuses."""
    from sqlalchemy import inspect

    conn = op.get_bind()
    inspector = inspect(conn)

    # Check if columns already exist (ensure_schema may have added them)
    item_columns = {col["name"] for col in inspector.get_columns("items")}
    with op.batch_alter_table("items", schema=None) as batch_op:
        if "lock_token" not in item_columns:
            batch_op.add_column(sa.Column("lock_token", sa.String(64), nullable=True))
        if "locked_at" not in item_columns:
            batch_op.add_column(sa.Column("locked_at", sa.DateTime(timezone=True), nullable=True))
        if "first_attempt_at" not in item_columns:
            batch_op.add_column(
                sa.Column("first_attempt_at", sa.DateTime(timezone=True), nullable=True)
            )

    indexes = {ix["name"] for ix in inspector.get_indexes("items")}
    if "ix_items_lock_token" not in indexes:
        op.create_index("ix_items_lock_token", "items", ["lock_token"])

    op.execute(sa.text("UPDATE items SET status = 'completed' WHERE status = 'done'"))


def downgrade() -> None:
    """Drop lease columns."""
    op.drop_index("ix_items_lock_token", table_name="items")
    with op.batch_alter_table("items", schema=None) as batch_op:
        batch_op.drop_column("first_attempt_at")
        batch_op.drop_column("locked_at")
        batch_op.drop_column("lock_token")
