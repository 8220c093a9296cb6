from __future__ import annotations

import sqlite3


def upgrade(conn: sqlite3.Connection) -> None:
    cur = conn.cursor()
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS work_settings (
            guild_id TEXT PRIMARY KEY,
            story_chance_percent INTEGER NOT NULL DEFAULT 20,
            ai_story_enabled INTEGER NOT NULL DEFAULT 0,
            ai_story_chance_percent INTEGER NOT NULL DEFAULT 50,
            updated_by_user_id INTEGER,
            updated_at_utc TEXT
        )
        """
    )
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS work_user_prefs (
            user_id INTEGER PRIMARY KEY,
            stories_opt_out INTEGER NOT NULL DEFAULT 0,
            updated_at_utc TEXT NOT NULL
        )
        """
    )
    conn.commit()
