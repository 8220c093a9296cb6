from __future__ import annotations

import sqlite3


def _row_to_stats(row) -> dict:
    return {
        "user_id": int(row[0]),
        "coins": int(row[1] or 0),
        "xp": int(row[2] or 0),
        "work_count": int(row[3] or 0),
        "last_work_at_utc": row[4],
        "updated_at_utc": row[5],
    }


def _row_to_entry(row) -> dict:
    return {
        "id": int(row[0]),
        "user_id": int(row[1]),
        "coins": int(row[2]),
        "xp": int(row[3]),
        "activity_type": str(row[4]),
        "notes": row[5],
        "created_at_utc": row[6],
    }


def get_user_stats_sync(conn: sqlite3.Connection, user_id: int) -> dict | None:
    cur = conn.cursor()
    cur.execute(
        """
        SELECT user_id, coins, xp, work_count, last_work_at_utc, updated_at_utc
        FROM user_stats
        WHERE user_id = ?
        LIMIT 1
        """,
        (int(user_id),),
    )
    row = cur.fetchone()
    return _row_to_stats(row) if row else None


def apply_reward_sync(
    conn: sqlite3.Connection,
    *,
    user_id: int,
    coins: int,
    xp: int,
    activity_type: str,
    notes: str | None,
    now_iso: str,
) -> dict:
    """Append a ledger row and move the balance in one transaction.

    The coin balance never drops below zero; the ledger keeps the requested delta.
    """
    cur = conn.cursor()
    try:
        cur.execute(
            """
            INSERT INTO user_stats (user_id, coins, xp, work_count, updated_at_utc)
            VALUES (?, 0, 0, 0, ?)
            ON CONFLICT(user_id) DO NOTHING
            """,
            (int(user_id), now_iso),
        )
        cur.execute(
            """
            UPDATE user_stats
            SET coins = MAX(0, coins + ?),
                xp = MAX(0, xp + ?),
                updated_at_utc = ?
            WHERE user_id = ?
            """,
            (int(coins), int(xp), now_iso, int(user_id)),
        )
        cur.execute(
            """
            INSERT INTO reward_ledger (user_id, coins, xp, activity_type, notes, created_at_utc)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (int(user_id), int(coins), int(xp), str(activity_type), notes, now_iso),
        )
        entry_id = int(cur.lastrowid)
        conn.commit()
    except sqlite3.Error:
        conn.rollback()
        raise

    cur.execute(
        """
        SELECT id, user_id, coins, xp, activity_type, notes, created_at_utc
        FROM reward_ledger WHERE id = ?
        """,
        (entry_id,),
    )
    return _row_to_entry(cur.fetchone())


def fetch_ledger_sync(conn: sqlite3.Connection, user_id: int, limit: int = 20) -> list[dict]:
    cur = conn.cursor()
    cur.execute(
        """
        SELECT id, user_id, coins, xp, activity_type, notes, created_at_utc
        FROM reward_ledger
        WHERE user_id = ?
        ORDER BY id DESC
        LIMIT ?
        """,
        (int(user_id), max(1, min(int(limit), 200))),
    )
    return [_row_to_entry(r) for r in cur.fetchall()]


def mark_work_claimed_sync(conn: sqlite3.Connection, user_id: int, now_iso: str) -> None:
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO user_stats (user_id, coins, xp, work_count, last_work_at_utc, updated_at_utc)
        VALUES (?, 0, 0, 1, ?, ?)
        ON CONFLICT(user_id) DO UPDATE SET
            work_count = work_count + 1,
            last_work_at_utc = excluded.last_work_at_utc,
            updated_at_utc = excluded.updated_at_utc
        """,
        (int(user_id), now_iso, now_iso),
    )
    conn.commit()
