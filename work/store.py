from __future__ import annotations

import sqlite3
from typing import Any

from config.defaults import DEFAULT_AI_STORY_CHANCE_PERCENT
from config.defaults import DEFAULT_AI_STORY_ENABLED
from config.defaults import DEFAULT_STORY_CHANCE_PERCENT

WORK_SETTING_COLUMNS = ("story_chance_percent", "ai_story_enabled", "ai_story_chance_percent")


def default_work_settings(guild_id: str) -> dict[str, Any]:
    return {
        "guild_id": str(guild_id),
        "story_chance_percent": DEFAULT_STORY_CHANCE_PERCENT,
        "ai_story_enabled": DEFAULT_AI_STORY_ENABLED,
        "ai_story_chance_percent": DEFAULT_AI_STORY_CHANCE_PERCENT,
        "updated_by_user_id": None,
        "updated_at_utc": None,
    }


def _row_to_settings(row) -> dict[str, Any]:
    return {
        "guild_id": str(row[0]),
        "story_chance_percent": int(row[1]),
        "ai_story_enabled": bool(row[2]),
        "ai_story_chance_percent": int(row[3]),
        "updated_by_user_id": row[4],
        "updated_at_utc": row[5],
    }


def fetch_work_settings_sync(conn: sqlite3.Connection, guild_id: str) -> dict[str, Any]:
    cur = conn.cursor()
    cur.execute(
        """
        SELECT guild_id, story_chance_percent, ai_story_enabled, ai_story_chance_percent,
               updated_by_user_id, updated_at_utc
        FROM work_settings
        WHERE guild_id = ?
        LIMIT 1
        """,
        (str(guild_id),),
    )
    row = cur.fetchone()
    return _row_to_settings(row) if row else default_work_settings(guild_id)


def update_work_setting_sync(
    conn: sqlite3.Connection,
    *,
    guild_id: str,
    key: str,
    value: int,
    updated_by_user_id: int | None,
    now_iso: str,
) -> dict[str, Any]:
    if key not in WORK_SETTING_COLUMNS:
        raise ValueError(f"Unknown work setting: {key}")
    current = fetch_work_settings_sync(conn, guild_id)
    current[key] = value
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO work_settings (
            guild_id, story_chance_percent, ai_story_enabled, ai_story_chance_percent,
            updated_by_user_id, updated_at_utc
        )
        VALUES (?, ?, ?, ?, ?, ?)
        ON CONFLICT(guild_id) DO UPDATE SET
            story_chance_percent = excluded.story_chance_percent,
            ai_story_enabled = excluded.ai_story_enabled,
            ai_story_chance_percent = excluded.ai_story_chance_percent,
            updated_by_user_id = excluded.updated_by_user_id,
            updated_at_utc = excluded.updated_at_utc
        """,
        (
            str(guild_id),
            int(current["story_chance_percent"]),
            1 if current["ai_story_enabled"] else 0,
            int(current["ai_story_chance_percent"]),
            int(updated_by_user_id) if updated_by_user_id else None,
            now_iso,
        ),
    )
    conn.commit()
    return fetch_work_settings_sync(conn, guild_id)


def get_story_opt_out_sync(conn: sqlite3.Connection, user_id: int) -> bool:
    cur = conn.cursor()
    cur.execute("SELECT stories_opt_out FROM work_user_prefs WHERE user_id = ? LIMIT 1", (int(user_id),))
    row = cur.fetchone()
    return bool(row[0]) if row else False


def set_story_opt_out_sync(conn: sqlite3.Connection, user_id: int, opt_out: bool, now_iso: str) -> None:
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO work_user_prefs (user_id, stories_opt_out, updated_at_utc)
        VALUES (?, ?, ?)
        ON CONFLICT(user_id) DO UPDATE SET
            stories_opt_out = excluded.stories_opt_out,
            updated_at_utc = excluded.updated_at_utc
        """,
        (int(user_id), 1 if opt_out else 0, now_iso),
    )
    conn.commit()
