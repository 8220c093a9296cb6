from __future__ import annotations

import asyncio
import sqlite3
import unittest
from pathlib import Path

from db.migrate import apply_sqlite_migrations
from rewards.service import RewardLedger
from rewards.service import level_for_xp
from rewards.store import mark_work_claimed_sync


def _migrations_dir() -> str:
    return str(Path(__file__).resolve().parents[1] / "migrations")


class LevelTests(unittest.TestCase):
    def test_level_curve(self):
        self.assertEqual(level_for_xp(0), 1)
        self.assertEqual(level_for_xp(99), 1)
        self.assertEqual(level_for_xp(100), 2)
        self.assertEqual(level_for_xp(399), 2)
        self.assertEqual(level_for_xp(400), 3)
        self.assertEqual(level_for_xp(8100), 10)
        self.assertEqual(level_for_xp(-50), 1)


class RewardLedgerTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.conn = sqlite3.connect(":memory:", check_same_thread=False)
        apply_sqlite_migrations(self.conn, _migrations_dir())
        self.rewards = RewardLedger(
            db_lock=asyncio.Lock(),
            db_conn=self.conn,
            utc_iso=lambda: "2026-01-01T00:00:00+00:00",
        )

    async def asyncTearDown(self):
        self.conn.close()

    async def test_unknown_user_has_empty_stats(self):
        stats = await self.rewards.get_stats(7)
        self.assertEqual((stats["coins"], stats["xp"], stats["level"]), (0, 0, 1))
        self.assertEqual(await self.rewards.recent_entries(7), [])

    async def test_grant_appends_ledger_and_moves_balance(self):
        ok, entry = await self.rewards.grant(7, 120, 56, "courier_rush_terminal_vip_tip", "Story: Courier Rush")
        self.assertTrue(ok)
        self.assertEqual(entry["activity_type"], "courier_rush_terminal_vip_tip")
        self.assertEqual(entry["created_at_utc"], "2026-01-01T00:00:00+00:00")

        ok, _ = await self.rewards.grant(7, 30, 50, "work")
        self.assertTrue(ok)
        stats = await self.rewards.get_stats(7)
        self.assertEqual((stats["coins"], stats["xp"], stats["level"]), (150, 106, 2))
        entries = await self.rewards.recent_entries(7)
        self.assertEqual([e["activity_type"] for e in entries], ["work", "courier_rush_terminal_vip_tip"])

    async def test_balance_never_goes_negative(self):
        await self.rewards.grant(7, 40, 0, "work")
        await self.rewards.grant(7, -100, 10, "food_truck_festival_terminal_fire_marshal")
        stats = await self.rewards.get_stats(7)
        self.assertEqual(stats["coins"], 0)
        self.assertEqual(stats["xp"], 10)
        self.assertEqual((await self.rewards.recent_entries(7, limit=1))[0]["coins"], -100)

    async def test_grant_reports_db_errors(self):
        self.conn.execute("DROP TABLE reward_ledger")
        ok, detail = await self.rewards.grant(7, 10, 10, "work")
        self.assertFalse(ok)
        self.assertIn("reward_ledger", detail)
        self.assertEqual((await self.rewards.get_stats(7))["coins"], 0)

    async def test_work_claim_tracks_count_and_time(self):
        mark_work_claimed_sync(self.conn, 7, "2026-01-01T10:00:00+00:00")
        mark_work_claimed_sync(self.conn, 7, "2026-01-01T11:00:00+00:00")
        stats = await self.rewards.get_stats(7)
        self.assertEqual(stats["work_count"], 2)
        self.assertEqual(stats["last_work_at_utc"], "2026-01-01T11:00:00+00:00")


if __name__ == "__main__":
    unittest.main()
