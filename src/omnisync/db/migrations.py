"""
Schema migrations for omnisync.

Uses SQLite ALTER TABLE ADD COLUMN for incremental schema evolution.
Each migration is idempotent: columns are only added if absent.

Called from get_engine() after create_all(). create_all() builds missing
tables with every current column, so COLUMN_MIGRATIONS only lists columns
added to a table after databases containing it were deployed. None have
been so far.
"""
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import text

# (table, column, SQLite column definition), applied in order
COLUMN_MIGRATIONS: List[Tuple[str, str, str]] = []


def run_migrations(
    engine, migrations: Optional[Iterable[Tuple[str, str, str]]] = None
) -> None:
    """Apply all pending schema migrations.

    Only SQLite is handled (PRAGMA table_info); other dialects are expected
    to be managed by create_all on a fresh schema.

    Args:
        engine: SQLAlchemy engine (SQLModel create_engine result).
        migrations: Column additions to apply; defaults to COLUMN_MIGRATIONS.
    """
    if engine.dialect.name != "sqlite":
        return

    with engine.connect() as conn:
        for table, column, col_type in (COLUMN_MIGRATIONS if migrations is None else migrations):
            _add_column_if_missing(conn, table, column, col_type)
        conn.commit()


def _add_column_if_missing(conn, table: str, column: str, col_type: str) -> None:
    """Add a column to a table if it doesn't already exist.

    Args:
        conn: SQLAlchemy connection.
        table: Table name (lowercase, as SQLite stores it).
        column: Column name to add.
        col_type: SQLite column definition, e.g. "INTEGER", "TEXT DEFAULT ''".
    """
    result = conn.execute(text(f"PRAGMA table_info({table})"))
    existing_columns = {row[1] for row in result}
    if existing_columns and column not in existing_columns:
        conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {col_type}"))
