from __future__ import annotations

import sqlite3


def _has_column(conn: sqlite3.Connection, table: str, column: str) -> bool:
    cur = conn.cursor()
    cur.execute(f"PRAGMA table_info({table})")
    return any(str(row[1]) == column for row in cur.fetchall())


def upgrade(conn: sqlite3.Connection) -> None:
    cur = conn.cursor()
    if not _has_column(conn, "story_sessions", "is_processing"):
        cur.execute("ALTER TABLE story_sessions ADD COLUMN is_processing INTEGER NOT NULL DEFAULT 0")
    if not _has_column(conn, "story_sessions", "processing_started_at_ms"):
        cur.execute("ALTER TABLE story_sessions ADD COLUMN processing_started_at_ms INTEGER")

    # Generated story graphs, so AI sessions survive a restart.
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS dynamic_stories (
            story_id TEXT PRIMARY KEY,
            payload_json TEXT NOT NULL,
            created_at_ms INTEGER NOT NULL,
            updated_at_ms INTEGER NOT NULL
        )
        """
    )
    conn.commit()
