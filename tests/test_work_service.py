from __future__ import annotations

import asyncio
import sqlite3
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace

from db.migrate import apply_sqlite_migrations
from rewards.service import RewardLedger
from rewards.service import utc_iso
from sessions.service import StorySessionManager
from story.catalog import default_catalog_dir
from story.catalog import register_catalog
from story.engine import StoryEngine
from story.registry import StoryRegistry
from story.rng import FixedRolls
from work.service import WorkService
from work.service import parse_setting_value
from work.store import default_work_settings


def _migrations_dir() -> str:
    return str(Path(__file__).resolve().parents[1] / "migrations")


class _EnabledGenerator:
    enabled = True


class ParseSettingTests(unittest.TestCase):
    def test_percent_and_bool_values(self):
        self.assertEqual(parse_setting_value("percent", "35%"), 35)
        self.assertEqual(parse_setting_value("percent", "0"), 0)
        self.assertEqual(parse_setting_value("bool", "On"), 1)
        self.assertEqual(parse_setting_value("bool", "disabled"), 0)
        for kind, raw in (("percent", "101"), ("percent", "-1"), ("percent", "lots"), ("bool", "maybe")):
            with self.assertRaises(ValueError):
                parse_setting_value(kind, raw)


class WorkServiceTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.conn = sqlite3.connect(":memory:", check_same_thread=False)
        apply_sqlite_migrations(self.conn, _migrations_dir())
        self.db_lock = asyncio.Lock()
        self.registry = StoryRegistry()
        register_catalog(self.registry, default_catalog_dir())
        self.sessions = StorySessionManager(db_lock=self.db_lock, db_conn=self.conn)
        self.rewards = RewardLedger(db_lock=self.db_lock, db_conn=self.conn)
        self.engine = StoryEngine(
            registry=self.registry,
            sessions=self.sessions,
            rewards=self.rewards,
            rolls=FixedRolls([0.0]),
        )
        self.now = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    async def asyncTearDown(self):
        self.conn.close()

    def _service(self, rolls=(50.0,), cooldown_minutes: int = 60) -> WorkService:
        return WorkService(
            db_lock=self.db_lock,
            db_conn=self.conn,
            rewards=self.rewards,
            engine=self.engine,
            rolls=FixedRolls(list(rolls)),
            cooldown_minutes=cooldown_minutes,
            utc_iso=lambda: utc_iso(self.now),
            now_utc=lambda: self.now,
        )

    def test_roll_mode(self):
        settings = default_work_settings("global")
        settings["ai_story_enabled"] = True
        settings["story_chance_percent"] = 20
        settings["ai_story_chance_percent"] = 50

        self.assertEqual(self._service([10.0]).roll_mode(settings, opted_out=True, ai_available=True), "work")
        self.assertEqual(self._service([20.0]).roll_mode(settings, opted_out=False, ai_available=True), "work")
        self.assertEqual(self._service([10.0, 49.0]).roll_mode(settings, opted_out=False, ai_available=True), "ai_story")
        self.assertEqual(self._service([10.0, 50.0]).roll_mode(settings, opted_out=False, ai_available=True), "story")
        self.assertEqual(self._service([10.0]).roll_mode(settings, opted_out=False, ai_available=False), "story")

        settings["ai_story_enabled"] = False
        self.assertEqual(self._service([10.0, 0.0]).roll_mode(settings, opted_out=False, ai_available=True), "story")

    async def test_settings_default_and_update_per_guild(self):
        svc = self._service()
        self.assertEqual((await svc.get_settings(None))["guild_id"], "global")
        self.assertEqual((await svc.get_settings(55))["story_chance_percent"], 20)

        ok, msg = await svc.update_setting(55, "story_chance", "35%", actor_user_id=9)
        self.assertTrue(ok, msg)
        ok, msg = await svc.update_setting(55, "ai_enabled", "on", actor_user_id=9)
        self.assertTrue(ok, msg)
        settings = await svc.get_settings(55)
        self.assertEqual(settings["story_chance_percent"], 35)
        self.assertTrue(settings["ai_story_enabled"])
        self.assertEqual(settings["updated_by_user_id"], 9)
        self.assertEqual((await svc.get_settings(56))["story_chance_percent"], 20)

        ok, msg = await svc.update_setting(55, "payday", "5", actor_user_id=9)
        self.assertFalse(ok)
        self.assertIn("Unknown setting", msg)
        ok, msg = await svc.update_setting(55, "ai_chance", "250", actor_user_id=9)
        self.assertFalse(ok)
        self.assertIn("Invalid value", msg)

    async def test_opt_out_round_trip(self):
        svc = self._service()
        self.assertFalse(await svc.is_opted_out(5))
        await svc.set_opt_out(5, True)
        self.assertTrue(await svc.is_opted_out(5))
        await svc.set_opt_out(5, False)
        self.assertFalse(await svc.is_opted_out(5))

    async def test_plain_work_pays_and_starts_cooldown(self):
        svc = self._service([99.0])
        first = await svc.start_work(user_id=5, guild_id=1)
        self.assertEqual(first.mode, "work")
        self.assertTrue(20 <= first.coins <= 80)
        self.assertTrue(10 <= first.xp <= 30)
        stats = await self.rewards.get_stats(5)
        self.assertEqual((stats["coins"], stats["work_count"]), (first.coins, 1))

        self.now += timedelta(minutes=30)
        second = await svc.start_work(user_id=5, guild_id=1)
        self.assertEqual(second.mode, "cooldown")
        self.assertEqual(second.retry_after_seconds, 30 * 60)

        self.now += timedelta(minutes=31)
        third = await svc.start_work(user_id=5, guild_id=1)
        self.assertEqual(third.mode, "work")

    async def test_story_roll_starts_a_static_story(self):
        svc = self._service([0.0])
        result = await svc.start_work(user_id=5, guild_id=1, channel_id=3)
        self.assertEqual(result.mode, "story")
        session = result.story_result.session
        self.assertIn(session.story_id, {"courier_rush", "office_election", "food_truck_festival"})
        self.assertEqual(session.channel_id, "3")
        stored = await self.sessions.get_by_user("5")
        self.assertEqual(stored.session_id, session.session_id)

    async def test_opted_out_user_never_gets_a_story(self):
        svc = self._service([0.0])
        await svc.set_opt_out(5, True)
        result = await svc.start_work(user_id=5)
        self.assertEqual(result.mode, "work")
        self.assertIsNone(await self.sessions.get_by_user("5"))

    async def test_failed_ai_story_falls_back_to_static(self):
        self.engine.generator = _EnabledGenerator()

        async def _failing_start(**kwargs):
            return SimpleNamespace(success=False, error="quota", result=None)

        self.engine.start_incremental_ai_story = _failing_start
        svc = self._service()
        result = await svc.start_work(user_id=5, force_mode="ai_story")
        self.assertEqual(result.mode, "story")
        self.assertIsNotNone(result.story_result)

    async def test_without_static_stories_story_roll_pays_work(self):
        for story_id in self.registry.story_ids():
            self.registry.unregister(story_id)
        svc = self._service([0.0])
        result = await svc.start_work(user_id=5)
        self.assertEqual(result.mode, "work")

    async def test_zero_cooldown_allows_back_to_back_work(self):
        svc = self._service([99.0], cooldown_minutes=0)
        self.assertEqual((await svc.start_work(user_id=5)).mode, "work")
        self.assertEqual((await svc.start_work(user_id=5)).mode, "work")


if __name__ == "__main__":
    unittest.main()
