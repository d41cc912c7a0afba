"""Hey future me - tests for the additive schema upgrade of old databases."""

import pytest
from sqlalchemy import Column, Integer, String, inspect, text
from sqlalchemy.dialects import sqlite

from subsync.config.settings import Settings
from subsync.infrastructure.persistence import Database, ItemStore
from subsync.infrastructure.persistence.schema import build_add_column_ddl

LEGACY_ITEMS_DDL = """
CREATE TABLE items (
    id VARCHAR(36) PRIMARY KEY,
    subscription_id VARCHAR(36),
    external_id VARCHAR(100) NOT NULL,
    status VARCHAR(20) NOT NULL DEFAULT 'pending',
    fetched BOOLEAN NOT NULL DEFAULT 0,
    library_linked BOOLEAN NOT NULL DEFAULT 0,
    created_at DATETIME NOT NULL,
    updated_at DATETIME NOT NULL
)
"""


class TestBuildAddColumnDdl:
    """Tests for ALTER TABLE rendering."""

    def test_nullable_column(self) -> None:
        """Test a nullable column without default."""
        column = Column("lock_token", String(64), nullable=True)
        ddl = build_add_column_ddl("items", column, sqlite.dialect())
        assert ddl == 'ALTER TABLE "items" ADD COLUMN "lock_token" VARCHAR(64)'

    def test_not_null_gets_default(self) -> None:
        """Test NOT NULL is only emitted together with a literal default."""
        column = Column("item_count", Integer, nullable=False, default=0)
        ddl = build_add_column_ddl("subscriptions", column, sqlite.dialect())
        assert ddl.endswith("INTEGER NOT NULL DEFAULT 0")


class TestEnsureSchema:
    """Tests for Database.create_tables() on existing databases."""

    @pytest.mark.asyncio
    async def test_adds_missing_columns_and_migrates_status(self, settings: Settings) -> None:
        """Test an old items table gains lease columns and loses 'done'."""
        db = Database(settings)
        try:
            async with db.session_scope() as session:
                await session.execute(text(LEGACY_ITEMS_DDL))
                await session.execute(
                    text(
                        "INSERT INTO items (id, external_id, status, fetched, library_linked, "
                        "created_at, updated_at) VALUES ('r1', 'a', 'done', 1, 1, "
                        "'2024-01-01 00:00:00', '2024-01-01 00:00:00')"
                    )
                )

            added = await db.create_tables()

            assert "items.lock_token" in added
            assert "items.locked_at" in added
            assert "items.is_duplicate" in added

            async with db.session_scope() as session:
                columns = await session.run_sync(
                    lambda s: {c["name"] for c in inspect(s.connection()).get_columns("items")}
                )
                status = (
                    await session.execute(text("SELECT status FROM items WHERE id = 'r1'"))
                ).scalar_one()

            assert {"lock_token", "locked_at", "first_attempt_at"} <= columns
            assert status == "completed"

            record = await ItemStore(db.get_session_factory()).get_item("r1")
            assert record.is_done
            assert record.lock_token is None
        finally:
            await db.close()

    @pytest.mark.asyncio
    async def test_second_run_is_noop(self, settings: Settings) -> None:
        """Test running the upgrade on a current schema changes nothing."""
        db = Database(settings)
        try:
            await db.create_tables()
            assert await db.create_tables() == []
        finally:
            await db.close()
