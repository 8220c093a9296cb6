from __future__ import annotations

import sqlite3


def _has_column(conn: sqlite3.Connection, table: str, column: str) -> bool:
    cur = conn.cursor()
    cur.execute(f"PRAGMA table_info({table})")
    return any(str(row[1]) == column for row in cur.fetchall())


def upgrade(conn: sqlite3.Connection) -> None:
    cur = conn.cursor()
    columns = [
        ("story_journal_json", "TEXT NOT NULL DEFAULT '[]'"),
        ("resolved_node_values_json", "TEXT NOT NULL DEFAULT '{}'"),
        ("is_incremental_ai", "INTEGER NOT NULL DEFAULT 0"),
        ("ai_context_json", "TEXT"),
    ]
    for name, decl in columns:
        if not _has_column(conn, "story_sessions", name):
            cur.execute(f"ALTER TABLE story_sessions ADD COLUMN {name} {decl}")
    conn.commit()
