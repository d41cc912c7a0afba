"""Database session management."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from subsync.config import Settings

logger = logging.getLogger(__name__)


class Database:
    """Database connection and session manager."""

    def __init__(self, settings: Settings) -> None:
        """Initialize database with settings."""
        self.settings = settings

        engine_kwargs: dict[str, Any] = {
            "echo": settings.database.echo,
            "pool_pre_ping": settings.database.pool_pre_ping,
        }

        if self.is_sqlite:
            engine_kwargs["connect_args"] = {
                "check_same_thread": False,
                "timeout": 30,  # Wait up to 30s for lock
            }

        self._engine = create_async_engine(settings.database.url, **engine_kwargs)

        if self.is_sqlite:
            self._configure_sqlite_pragmas()

        self._session_factory = async_sessionmaker(
            self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    @property
    def is_sqlite(self) -> bool:
        """Check whether the configured database is SQLite."""
        return "sqlite" in self.settings.database.url

    # Hey future me, WAL lets the reconciliation reads run while the scheduler writes.
    # busy_timeout makes SQLite wait for the writer lock instead of failing instantly -
    # with_db_retry covers whatever still slips through.
    def _configure_sqlite_pragmas(self) -> None:
        """Set SQLite pragmas on every new connection."""
        busy_timeout = self.settings.database.busy_timeout_ms

        @event.listens_for(self._engine.sync_engine, "connect")
        def set_sqlite_pragma(dbapi_conn: Any, _connection_record: Any) -> None:
            """Set SQLite pragmas on connection."""
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute(f"PRAGMA busy_timeout={int(busy_timeout)}")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()
            logger.debug("Configured pragmas for SQLite connection")

    def get_session_factory(self) -> async_sessionmaker[AsyncSession]:
        """Get the session factory (for components managing their own sessions)."""
        return self._session_factory

    @asynccontextmanager
    async def session_scope(self) -> AsyncGenerator[AsyncSession, None]:
        """Provide a transactional scope for database operations."""
        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                # Rollback on any exception to keep the transaction all-or-nothing.
                # The exception is re-raised for the caller.
                await session.rollback()
                raise
            finally:
                await session.close()

    async def create_tables(self) -> list[str]:
        """Create tables and add missing columns (additive, idempotent).

        Returns:
            "table.column" names added to an existing schema
        """
        from subsync.infrastructure.persistence.schema import ensure_schema

        async with self._engine.begin() as conn:
            return await conn.run_sync(ensure_schema)

    async def drop_tables(self) -> None:
        """Drop all tables (for testing only)."""
        from subsync.infrastructure.persistence.models import Base

        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)

    async def close(self) -> None:
        """Close database connection."""
        await self._engine.dispose()
