from __future__ import annotations

import json
import sqlite3

from story.models import Story
from story.models import story_from_dict
from story.models import story_to_dict


def upsert_dynamic_story_sync(conn: sqlite3.Connection, story: Story, now_ms: int) -> None:
    payload = json.dumps(story_to_dict(story), ensure_ascii=False)
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO dynamic_stories (story_id, payload_json, created_at_ms, updated_at_ms)
        VALUES (?, ?, ?, ?)
        ON CONFLICT(story_id) DO UPDATE SET
            payload_json=excluded.payload_json,
            updated_at_ms=excluded.updated_at_ms
        """,
        (story.id, payload, int(now_ms), int(now_ms)),
    )
    conn.commit()


def fetch_dynamic_story_sync(conn: sqlite3.Connection, story_id: str) -> Story | None:
    cur = conn.cursor()
    cur.execute("SELECT payload_json FROM dynamic_stories WHERE story_id = ? LIMIT 1", (str(story_id),))
    row = cur.fetchone()
    if not row:
        return None
    try:
        return story_from_dict(json.loads(row[0]))
    except (TypeError, ValueError, KeyError) as e:
        print(f"[StoryEngine] Could not decode stored story {story_id}: {e}")
        return None


def list_dynamic_story_ids_sync(conn: sqlite3.Connection) -> list[str]:
    cur = conn.cursor()
    cur.execute("SELECT story_id FROM dynamic_stories ORDER BY created_at_ms ASC")
    return [str(r[0]) for r in cur.fetchall()]


def delete_dynamic_story_sync(conn: sqlite3.Connection, story_id: str) -> bool:
    cur = conn.cursor()
    cur.execute("DELETE FROM dynamic_stories WHERE story_id = ?", (str(story_id),))
    conn.commit()
    return cur.rowcount > 0
