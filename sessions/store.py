from __future__ import annotations

import json
import sqlite3
from typing import Any

from story.models import AIStoryContext
from story.models import ChoiceRecord
from story.models import JournalEntry
from story.models import StorySession


_SESSION_COLUMNS = (
    "session_id",
    "discord_user_id",
    "db_user_id",
    "story_id",
    "current_node_id",
    "accumulated_coins",
    "choices_path_json",
    "choice_history_json",
    "story_journal_json",
    "started_at_ms",
    "last_interaction_at_ms",
    "message_id",
    "channel_id",
    "guild_id",
    "user_level",
    "resolved_node_values_json",
    "is_incremental_ai",
    "ai_context_json",
    "is_processing",
    "processing_started_at_ms",
)
_SELECT_SESSION = f"SELECT {', '.join(_SESSION_COLUMNS)} FROM story_sessions"

# Columns written by a full-state update. The processing lock is owned by its own calls.
_STATE_COLUMNS = tuple(c for c in _SESSION_COLUMNS if c not in ("session_id", "is_processing", "processing_started_at_ms"))


def session_to_row(session: StorySession) -> dict[str, Any]:
    return {
        "session_id": session.session_id,
        "discord_user_id": str(session.discord_user_id),
        "db_user_id": int(session.db_user_id),
        "story_id": session.story_id,
        "current_node_id": session.current_node_id,
        "accumulated_coins": int(session.accumulated_coins),
        "choices_path_json": json.dumps(list(session.choices_path)),
        "choice_history_json": json.dumps([c.to_dict() for c in session.choice_history], ensure_ascii=False),
        "story_journal_json": json.dumps([e.to_dict() for e in session.story_journal], ensure_ascii=False),
        "started_at_ms": int(session.started_at),
        "last_interaction_at_ms": int(session.last_interaction_at),
        "message_id": session.message_id,
        "channel_id": session.channel_id,
        "guild_id": session.guild_id,
        "user_level": int(session.user_level),
        "resolved_node_values_json": json.dumps(session.resolved_node_values, ensure_ascii=False),
        "is_incremental_ai": 1 if session.is_incremental_ai else 0,
        "ai_context_json": json.dumps(session.ai_context.to_dict(), ensure_ascii=False) if session.ai_context else None,
        "is_processing": 1 if session.is_processing else 0,
        "processing_started_at_ms": session.processing_started_at,
    }


def _loads(raw: str | None, default):
    if not raw:
        return default
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return default


def row_to_session(row: tuple | None) -> StorySession | None:
    if not row:
        return None
    r = dict(zip(_SESSION_COLUMNS, row))
    ai_context = _loads(r["ai_context_json"], None)
    return StorySession(
        session_id=str(r["session_id"]),
        discord_user_id=str(r["discord_user_id"]),
        db_user_id=int(r["db_user_id"]),
        story_id=str(r["story_id"]),
        current_node_id=str(r["current_node_id"]),
        started_at=int(r["started_at_ms"]),
        last_interaction_at=int(r["last_interaction_at_ms"]),
        accumulated_coins=int(r["accumulated_coins"] or 0),
        choices_path=[str(x) for x in _loads(r["choices_path_json"], [])],
        choice_history=[ChoiceRecord.from_dict(x) for x in _loads(r["choice_history_json"], [])],
        story_journal=[JournalEntry.from_dict(x) for x in _loads(r["story_journal_json"], [])],
        message_id=r["message_id"],
        channel_id=r["channel_id"],
        guild_id=r["guild_id"],
        user_level=int(r["user_level"] or 1),
        resolved_node_values=_loads(r["resolved_node_values_json"], {}),
        is_processing=bool(r["is_processing"]),
        processing_started_at=r["processing_started_at_ms"],
        is_incremental_ai=bool(r["is_incremental_ai"]),
        ai_context=AIStoryContext.from_dict(ai_context) if ai_context else None,
    )


def insert_session_sync(conn: sqlite3.Connection, session: StorySession) -> None:
    row = session_to_row(session)
    placeholders = ", ".join("?" for _ in _SESSION_COLUMNS)
    cur = conn.cursor()
    cur.execute(
        f"INSERT INTO story_sessions ({', '.join(_SESSION_COLUMNS)}) VALUES ({placeholders})",
        tuple(row[c] for c in _SESSION_COLUMNS),
    )
    conn.commit()


def update_session_sync(conn: sqlite3.Connection, session: StorySession) -> bool:
    """Write the full session state. Returns False when the row no longer exists."""
    row = session_to_row(session)
    assignments = ", ".join(f"{c} = ?" for c in _STATE_COLUMNS)
    cur = conn.cursor()
    cur.execute(
        f"UPDATE story_sessions SET {assignments} WHERE session_id = ?",
        tuple(row[c] for c in _STATE_COLUMNS) + (session.session_id,),
    )
    conn.commit()
    return cur.rowcount > 0


def fetch_session_sync(conn: sqlite3.Connection, session_id: str) -> StorySession | None:
    cur = conn.cursor()
    cur.execute(f"{_SELECT_SESSION} WHERE session_id = ? LIMIT 1", (str(session_id),))
    return row_to_session(cur.fetchone())


def fetch_session_by_user_sync(conn: sqlite3.Connection, discord_user_id: str) -> StorySession | None:
    cur = conn.cursor()
    cur.execute(
        f"{_SELECT_SESSION} WHERE discord_user_id = ? ORDER BY last_interaction_at_ms DESC LIMIT 1",
        (str(discord_user_id),),
    )
    return row_to_session(cur.fetchone())


def fetch_session_by_message_sync(conn: sqlite3.Connection, message_id: str) -> StorySession | None:
    cur = conn.cursor()
    cur.execute(f"{_SELECT_SESSION} WHERE message_id = ? LIMIT 1", (str(message_id),))
    return row_to_session(cur.fetchone())


def list_sessions_sync(conn: sqlite3.Connection) -> list[StorySession]:
    cur = conn.cursor()
    cur.execute(f"{_SELECT_SESSION} ORDER BY started_at_ms ASC")
    return [s for s in (row_to_session(r) for r in cur.fetchall()) if s is not None]


def delete_session_sync(conn: sqlite3.Connection, session_id: str) -> bool:
    cur = conn.cursor()
    cur.execute("DELETE FROM story_sessions WHERE session_id = ?", (str(session_id),))
    conn.commit()
    return cur.rowcount > 0


def delete_sessions_for_user_sync(conn: sqlite3.Connection, discord_user_id: str) -> list[tuple[str, str]]:
    cur = conn.cursor()
    cur.execute(
        "SELECT session_id, story_id FROM story_sessions WHERE discord_user_id = ?",
        (str(discord_user_id),),
    )
    removed = [(str(r[0]), str(r[1])) for r in cur.fetchall()]
    if removed:
        cur.execute("DELETE FROM story_sessions WHERE discord_user_id = ?", (str(discord_user_id),))
        conn.commit()
    return removed


def delete_expired_sessions_sync(conn: sqlite3.Connection, cutoff_ms: int) -> list[tuple[str, str]]:
    cur = conn.cursor()
    cur.execute(
        "SELECT session_id, story_id FROM story_sessions WHERE last_interaction_at_ms < ?",
        (int(cutoff_ms),),
    )
    expired = [(str(r[0]), str(r[1])) for r in cur.fetchall()]
    if expired:
        cur.execute("DELETE FROM story_sessions WHERE last_interaction_at_ms < ?", (int(cutoff_ms),))
        conn.commit()
    return expired


def set_message_id_sync(conn: sqlite3.Connection, session_id: str, message_id: str | None) -> bool:
    cur = conn.cursor()
    cur.execute(
        "UPDATE story_sessions SET message_id = ? WHERE session_id = ?",
        (message_id, str(session_id)),
    )
    conn.commit()
    return cur.rowcount > 0


def get_processing_sync(conn: sqlite3.Connection, session_id: str) -> tuple[bool, int | None] | None:
    cur = conn.cursor()
    cur.execute(
        "SELECT is_processing, processing_started_at_ms FROM story_sessions WHERE session_id = ? LIMIT 1",
        (str(session_id),),
    )
    row = cur.fetchone()
    if not row:
        return None
    return (bool(row[0]), row[1])


def set_processing_sync(conn: sqlite3.Connection, session_id: str, processing: bool, now_ms: int) -> bool:
    cur = conn.cursor()
    cur.execute(
        "UPDATE story_sessions SET is_processing = ?, processing_started_at_ms = ? WHERE session_id = ?",
        (1 if processing else 0, int(now_ms) if processing else None, str(session_id)),
    )
    conn.commit()
    return cur.rowcount > 0


def try_acquire_processing_sync(
    conn: sqlite3.Connection,
    session_id: str,
    now_ms: int,
    stale_before_ms: int,
) -> bool:
    """Set the lock only if it is free or stale. Returns whether this call took it."""
    cur = conn.cursor()
    cur.execute(
        """
        UPDATE story_sessions
        SET is_processing = 1, processing_started_at_ms = ?
        WHERE session_id = ?
          AND (
            is_processing = 0
            OR processing_started_at_ms IS NULL
            OR processing_started_at_ms < ?
          )
        """,
        (int(now_ms), str(session_id), int(stale_before_ms)),
    )
    conn.commit()
    return cur.rowcount > 0
