from __future__ import annotations

import asyncio
import math
import sqlite3
from datetime import datetime, timezone

from config.defaults import XP_PER_LEVEL_STEP
from rewards.store import apply_reward_sync
from rewards.store import fetch_ledger_sync
from rewards.store import get_user_stats_sync


def utc_iso(dt: datetime | None = None) -> str:
    dt = dt or datetime.now(timezone.utc)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def level_for_xp(xp: int) -> int:
    return 1 + math.isqrt(max(0, int(xp or 0)) // XP_PER_LEVEL_STEP)


class RewardLedger:
    def __init__(self, *, db_lock: asyncio.Lock, db_conn, utc_iso=utc_iso):
        self.db_lock = db_lock
        self.db_conn = db_conn
        self.utc_iso = utc_iso

    async def grant(
        self,
        user_id: int,
        coins: int,
        xp: int,
        activity_type: str,
        notes: str | None = None,
    ) -> tuple[bool, dict | str]:
        """Returns (True, ledger entry) or (False, error text). Never raises on DB errors."""
        try:
            async with self.db_lock:
                entry = await asyncio.to_thread(
                    apply_reward_sync,
                    self.db_conn,
                    user_id=int(user_id),
                    coins=int(coins),
                    xp=int(xp),
                    activity_type=str(activity_type),
                    notes=notes,
                    now_iso=self.utc_iso(),
                )
        except (sqlite3.Error, ValueError) as e:
            print(f"[Rewards] grant failed user={user_id} activity={activity_type}: {e}")
            return (False, str(e))
        print(f"[Rewards] user={user_id} coins={int(coins):+d} xp=+{int(xp)} activity={activity_type}")
        return (True, entry)

    async def get_stats(self, user_id: int) -> dict:
        async with self.db_lock:
            stats = await asyncio.to_thread(get_user_stats_sync, self.db_conn, int(user_id))
        stats = stats or {"user_id": int(user_id), "coins": 0, "xp": 0, "work_count": 0, "last_work_at_utc": None}
        stats["level"] = level_for_xp(stats["xp"])
        return stats

    async def user_level(self, user_id: int) -> int:
        return int((await self.get_stats(user_id))["level"])

    async def recent_entries(self, user_id: int, limit: int = 10) -> list[dict]:
        async with self.db_lock:
            return await asyncio.to_thread(fetch_ledger_sync, self.db_conn, int(user_id), int(limit))
