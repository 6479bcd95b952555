"""Ad-hoc database migrations for the mirror database."""

from __future__ import annotations

from sqlalchemy import text


def _column_exists(conn, table: str, column: str) -> bool:
    result = conn.execute(text(f"PRAGMA table_info('{table}')"))
    return any(row[1] == column for row in result)


def ensure_task_columns(conn) -> None:
    # Columns added after the first released schema.
    columns = {
        "parent_id": "VARCHAR",
        "due_timezone": "VARCHAR",
        "due_is_recurring": "BOOLEAN NOT NULL DEFAULT 0",
        "content_hash": "VARCHAR NOT NULL DEFAULT ''",
    }
    for name, ddl_type in columns.items():
        if not _column_exists(conn, "task", name):
            conn.execute(text(f"ALTER TABLE task ADD COLUMN {name} {ddl_type}"))


def ensure_field_metadata_columns(conn) -> None:
    if not _column_exists(conn, "field_metadata", "content_hash"):
        conn.execute(text("ALTER TABLE field_metadata ADD COLUMN content_hash VARCHAR"))
    if not _column_exists(conn, "field_metadata", "source"):
        conn.execute(
            text("ALTER TABLE field_metadata ADD COLUMN source VARCHAR NOT NULL DEFAULT 'ai'")
        )


def ensure_indexes(conn) -> None:
    conn.execute(
        text(
            """
            CREATE INDEX IF NOT EXISTS ix_field_metadata_field_name
            ON field_metadata (field_name)
            """
        )
    )
    conn.execute(
        text(
            """
            CREATE INDEX IF NOT EXISTS ix_task_completed_project
            ON task (is_completed, project_id)
            """
        )
    )


def ensure_checkpoint_row(conn) -> None:
    conn.execute(
        text(
            """
            INSERT OR IGNORE INTO sync_checkpoint (id, token, updated_at, last_sync_at)
            VALUES (1, NULL, NULL, NULL)
            """
        )
    )


def run_all(conn) -> None:
    """Run every migration on a synchronous connection (``AsyncConnection.run_sync``)."""

    ensure_task_columns(conn)
    ensure_field_metadata_columns(conn)
    ensure_indexes(conn)
    ensure_checkpoint_row(conn)


__all__ = ["run_all"]
