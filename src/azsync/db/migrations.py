"""
Database migrations for azsync.

create_all() creates missing tables but never alters a table that already
exists. run_migrations adds the nullable columns listed in OPTIONAL_COLUMNS
to existing tables with ALTER TABLE ADD COLUMN. Each step is idempotent:
columns are only added if absent, and tables that do not exist are skipped.

Called automatically from get_engine() after create_all().
"""
from typing import List, Tuple

from sqlalchemy import inspect, text

# (table, column, SQL type); every column here is nullable on its model
OPTIONAL_COLUMNS: List[Tuple[str, str, str]] = [
    ("syncjob", "current_operation", "VARCHAR"),
    ("syncjob", "current_resource_name", "VARCHAR"),
    ("syncjob", "processing_rate", "FLOAT"),
    ("syncjob", "estimated_completion_at", "TIMESTAMP"),
    ("synclog", "details", "TEXT"),
    ("azureresource", "resource_group", "VARCHAR"),
    ("azureresource", "location", "VARCHAR"),
]


def run_migrations(engine) -> None:
    """Apply all pending schema migrations.

    Safe to call multiple times: checks column existence before altering.

    Args:
        engine: SQLAlchemy engine (SQLModel create_engine result).
    """
    with engine.connect() as conn:
        for table, column, col_type in OPTIONAL_COLUMNS:
            _add_column_if_missing(conn, table, column, col_type)
        conn.commit()


def _add_column_if_missing(conn, table: str, column: str, col_type: str) -> None:
    """Add a column to a table if it doesn't already exist.

    Args:
        conn: SQLAlchemy connection.
        table: Table name (lowercase, as SQLModel names it).
        column: Column name to add.
        col_type: SQL type string, e.g. "INTEGER", "FLOAT", "TEXT".
    """
    inspector = inspect(conn)
    if not inspector.has_table(table):
        return
    existing_columns = {col["name"] for col in inspector.get_columns(table)}
    if column not in existing_columns:
        conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {col_type}"))
