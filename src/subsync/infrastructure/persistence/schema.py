"""Additive, idempotent schema evolution.

Hey future me - this is how old databases catch up with the models WITHOUT alembic!

PROBLEM:
Users upgrade in place. Their database was created by an older release and lacks
columns the current models expect (lock_token, library_item_id, ...). create_all()
only creates MISSING TABLES, it never touches existing ones.

SOLUTION:
1. create_all() for brand-new tables
2. For every mapped table, inspect the live columns and ALTER TABLE ADD COLUMN the
   missing ones (a no-op when the column is already there - safe to run every start)
3. One-time data fixes (legacy 'done' status → 'completed')

We only ever ADD. Never drop or rename here - that needs a real alembic revision.
"""

import logging
from typing import Any

from sqlalchemy import Column, Connection, inspect, text

from subsync.infrastructure.persistence.models import Base

logger = logging.getLogger(__name__)


def _render_default(column: Column[Any]) -> str | None:
    """Render a scalar Python-side default as a SQL literal."""
    default = column.default
    if default is None or not getattr(default, "is_scalar", False):
        return None
    value = default.arg
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, int | float):
        return str(value)
    if isinstance(value, str):
        escaped = value.replace("'", "''")
        return f"'{escaped}'"
    return None


def build_add_column_ddl(table_name: str, column: Column[Any], dialect: Any) -> str:
    """Build an ALTER TABLE ADD COLUMN statement for one column.

    NOT NULL is only emitted together with a literal default - SQLite refuses to add a
    NOT NULL column without one, and existing rows need a value anyway.
    """
    type_sql = column.type.compile(dialect=dialect)
    ddl = f'ALTER TABLE "{table_name}" ADD COLUMN "{column.name}" {type_sql}'
    default_sql = _render_default(column)
    if default_sql is not None:
        if not column.nullable:
            ddl += " NOT NULL"
        ddl += f" DEFAULT {default_sql}"
    return ddl


def add_missing_columns(connection: Connection) -> list[str]:
    """Add every mapped column the live database lacks.

    Returns:
        "table.column" names that were added (empty when schema was current)
    """
    inspector = inspect(connection)
    existing_tables = set(inspector.get_table_names())
    added: list[str] = []

    for table in Base.metadata.sorted_tables:
        if table.name not in existing_tables:
            continue
        live_columns = {col["name"] for col in inspector.get_columns(table.name)}
        for column in table.columns:
            if column.name in live_columns or column.primary_key:
                continue
            ddl = build_add_column_ddl(table.name, column, connection.dialect)
            connection.execute(text(ddl))
            added.append(f"{table.name}.{column.name}")
            logger.info(
                "schema.column_added",
                extra={"table": table.name, "column": column.name},
            )

    return added


def migrate_legacy_values(connection: Connection) -> int:
    """Rewrite legacy status values.

    Older releases stored 'done' for finished fetches.
    """
    result = connection.execute(
        text("UPDATE items SET status = 'completed' WHERE status = 'done'")
    )
    count = result.rowcount or 0
    if count:
        logger.info("schema.legacy_status_migrated", extra={"rows": count})
    return count


def ensure_schema(connection: Connection) -> list[str]:
    """Create missing tables, add missing columns, fix legacy data.

    Run through AsyncConnection.run_sync(). Idempotent.
    """
    Base.metadata.create_all(connection)
    added = add_missing_columns(connection)
    migrate_legacy_values(connection)
    return added
