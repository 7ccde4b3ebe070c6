"""
Forward-only schema evolution for tables that already exist.

create_all() creates missing tables but never alters existing ones, so
columns added to a model after its table was created are added here with
ALTER TABLE ADD COLUMN. Each migration is idempotent: columns are only added
if absent.

Called automatically from get_engine() after create_all() so both fresh
installs and existing DBs are handled without manual steps.
"""
from sqlalchemy import inspect, text


def run_migrations(engine) -> None:
    """Apply all pending schema migrations.

    Safe to call multiple times; checks column existence before altering.

    Args:
        engine: SQLAlchemy engine (SQLModel create_engine result).
    """
    with engine.connect() as conn:
        # SyncStatus: resume checkpoint written by a paused run
        _add_column_if_missing(conn, "syncstatus", "is_paused", "BOOLEAN DEFAULT 0")
        _add_column_if_missing(conn, "syncstatus", "checkpoint_phase", "VARCHAR")
        _add_column_if_missing(conn, "syncstatus", "checkpoint_batch", "INTEGER")
        _add_column_if_missing(conn, "syncstatus", "checkpoint_progress", "INTEGER")
        _add_column_if_missing(conn, "syncstatus", "checkpoint_offset", "INTEGER")
        _add_column_if_missing(conn, "syncstatus", "checkpoint_type", "VARCHAR(11)")

        # SkippedEntity: manual retry bookkeeping
        _add_column_if_missing(conn, "skippedentity", "last_retry_at", "TIMESTAMP")

        conn.commit()


def _add_column_if_missing(conn, table: str, column: str, col_type: str) -> None:
    """Add a column to a table if it doesn't already exist.

    Args:
        conn: SQLAlchemy connection.
        table: Table name (lowercase, as SQLModel names it).
        column: Column name to add.
        col_type: SQL type string, e.g. "INTEGER", "VARCHAR", "TIMESTAMP".
    """
    existing_columns = {col["name"] for col in inspect(conn).get_columns(table)}
    if column not in existing_columns:
        conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {col_type}"))
