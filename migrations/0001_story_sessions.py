from __future__ import annotations

import sqlite3


def upgrade(conn: sqlite3.Connection) -> None:
    cur = conn.cursor()
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS story_sessions (
            session_id TEXT PRIMARY KEY,
            discord_user_id TEXT NOT NULL,
            db_user_id INTEGER NOT NULL,
            story_id TEXT NOT NULL,
            current_node_id TEXT NOT NULL,
            accumulated_coins INTEGER NOT NULL DEFAULT 0,
            choices_path_json TEXT NOT NULL DEFAULT '[]',
            choice_history_json TEXT NOT NULL DEFAULT '[]',
            started_at_ms INTEGER NOT NULL,
            last_interaction_at_ms INTEGER NOT NULL,
            message_id TEXT,
            channel_id TEXT,
            guild_id TEXT,
            user_level INTEGER NOT NULL DEFAULT 1
        )
        """
    )
    cur.execute("CREATE INDEX IF NOT EXISTS idx_story_sessions_user ON story_sessions(discord_user_id)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_story_sessions_message ON story_sessions(message_id)")
    cur.execute(
        "CREATE INDEX IF NOT EXISTS idx_story_sessions_last_interaction ON story_sessions(last_interaction_at_ms)"
    )
    conn.commit()
