from __future__ import annotations

import sqlite3


def upgrade(conn: sqlite3.Connection) -> None:
    cur = conn.cursor()
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS user_stats (
            user_id INTEGER PRIMARY KEY,
            coins INTEGER NOT NULL DEFAULT 0,
            xp INTEGER NOT NULL DEFAULT 0,
            work_count INTEGER NOT NULL DEFAULT 0,
            last_work_at_utc TEXT,
            updated_at_utc TEXT NOT NULL
        )
        """
    )
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS reward_ledger (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            coins INTEGER NOT NULL,
            xp INTEGER NOT NULL,
            activity_type TEXT NOT NULL,
            notes TEXT,
            created_at_utc TEXT NOT NULL
        )
        """
    )
    cur.execute("CREATE INDEX IF NOT EXISTS idx_reward_ledger_user ON reward_ledger(user_id, id)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_reward_ledger_activity ON reward_ledger(activity_type)")
    conn.commit()
