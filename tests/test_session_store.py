from __future__ import annotations

import asyncio
import sqlite3
import unittest
from pathlib import Path

from db.migrate import apply_sqlite_migrations
from sessions.service import StorySessionManager
from story.models import AIStoryContext
from story.models import JournalEntry
from story.models import RollResult


def _migrations_dir() -> str:
    return str(Path(__file__).resolve().parents[1] / "migrations")


class _Clock:
    def __init__(self, start_ms: int = 1_700_000_000_000):
        self.now = int(start_ms)

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += int(seconds * 1000)


class StorySessionManagerTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.conn = sqlite3.connect(":memory:", check_same_thread=False)
        apply_sqlite_migrations(self.conn, _migrations_dir())
        self.db_lock = asyncio.Lock()
        self.clock = _Clock()
        self.released: list[list[str]] = []
        self.sessions = self._manager()

    async def asyncTearDown(self):
        self.conn.close()

    def _manager(self, **overrides) -> StorySessionManager:
        async def _on_released(story_ids: list[str]) -> None:
            self.released.append(list(story_ids))

        params = {
            "db_lock": self.db_lock,
            "db_conn": self.conn,
            "ttl_hours": 24,
            "stale_lock_seconds": 300,
            "clock": self.clock,
            "on_released": _on_released,
        }
        params.update(overrides)
        return StorySessionManager(**params)

    async def _create(self, manager: StorySessionManager | None = None, **overrides):
        params = {
            "discord_user_id": "111",
            "db_user_id": 111,
            "story_id": "courier_rush",
            "start_node_id": "intro",
            "channel_id": "900",
            "guild_id": "800",
        }
        params.update(overrides)
        return await (manager or self.sessions).create(**params)

    async def test_lookup_by_id_user_and_message(self):
        session = await self._create()
        self.assertTrue(await self.sessions.set_message(session.session_id, "5550001"))

        by_id = await self.sessions.get(session.session_id)
        by_user = await self.sessions.get_by_user("111")
        by_message = await self.sessions.get_by_message("5550001")
        self.assertEqual(by_id.session_id, session.session_id)
        self.assertEqual(by_user.session_id, session.session_id)
        self.assertEqual(by_message.session_id, session.session_id)
        self.assertEqual(by_message.message_id, "5550001")
        self.assertEqual(by_id.channel_id, "900")

    async def test_returned_sessions_are_copies(self):
        session = await self._create()
        loaded = await self.sessions.get(session.session_id)
        loaded.accumulated_coins = 999
        loaded.choices_path.append("choiceX")
        again = await self.sessions.get(session.session_id)
        self.assertEqual(again.accumulated_coins, 0)
        self.assertEqual(again.choices_path, [])

    async def test_new_session_replaces_previous_one_for_user(self):
        first = await self._create(story_id="ai_incr_1")
        second = await self._create(story_id="office_election")
        self.assertIsNone(await self.sessions.get(first.session_id))
        self.assertEqual((await self.sessions.get_by_user("111")).session_id, second.session_id)
        self.assertEqual(self.released, [["ai_incr_1"]])

    async def test_restart_repopulates_cache_from_sqlite(self):
        session = await self._create(
            is_incremental_ai=True,
            ai_context=AIStoryContext(title="T", emoji="🎲", intro_narrative="Once", decision1={"narrative": "d"}),
        )
        session.current_node_id = "decision_1"
        session.accumulated_coins = 35
        session.choices_path.append("intro")
        session.resolved_node_values = {"terminal_x": {"coinsChange": 12, "var:loot": 12}}
        session.story_journal.append(
            JournalEntry(type="outcome", narrative="Rolled", roll_result=RollResult(rolled=12.5, needed=70, success=True))
        )
        self.assertTrue(await self.sessions.update(session))

        restarted = self._manager()
        self.assertEqual(restarted.cached_count, 0)
        self.assertEqual(await restarted.init(), 1)
        self.assertEqual(restarted.cached_count, 1)

        loaded = await restarted.get_by_user("111")
        self.assertEqual(loaded.current_node_id, "decision_1")
        self.assertEqual(loaded.accumulated_coins, 35)
        self.assertEqual(loaded.resolved_node_values["terminal_x"]["var:loot"], 12)
        self.assertTrue(loaded.story_journal[0].roll_result.success)
        self.assertEqual(loaded.ai_context.title, "T")
        self.assertTrue(loaded.is_incremental_ai)

    async def test_expired_session_is_dropped_on_read(self):
        session = await self._create(story_id="ai_incr_2")
        self.clock.advance(25 * 3600)
        self.assertIsNone(await self.sessions.get(session.session_id))
        self.assertIsNone(await self.sessions.get_by_user("111"))
        self.assertEqual(self.released, [["ai_incr_2"]])

    async def test_cleanup_expired_removes_old_rows(self):
        await self._create()
        self.clock.advance(3600)
        fresh = await self._create(discord_user_id="222", db_user_id=222)
        self.clock.advance(23.5 * 3600)
        removed = await self.sessions.cleanup_expired()
        self.assertEqual(removed, 1)
        self.assertIsNone(await self.sessions.get_by_user("111"))
        self.assertIsNotNone(await self.sessions.get(fresh.session_id))
        self.assertEqual(self.released, [["courier_rush"]])

    async def test_update_after_delete_reports_missing(self):
        session = await self._create()
        self.assertTrue(await self.sessions.delete(session.session_id))
        self.assertFalse(await self.sessions.update(session))
        self.assertFalse(await self.sessions.exists(session.session_id))

    async def test_processing_lock_is_exclusive(self):
        session = await self._create()
        self.assertTrue(await self.sessions.try_acquire_processing(session.session_id))
        self.assertTrue(await self.sessions.is_processing(session.session_id))
        self.assertFalse(await self.sessions.try_acquire_processing(session.session_id))

        await self.sessions.set_processing(session.session_id, False)
        self.assertFalse(await self.sessions.is_processing(session.session_id))
        self.assertTrue(await self.sessions.try_acquire_processing(session.session_id))

    async def test_stale_processing_lock_is_taken_over(self):
        session = await self._create()
        self.assertTrue(await self.sessions.try_acquire_processing(session.session_id))
        self.clock.advance(299)
        self.assertFalse(await self.sessions.try_acquire_processing(session.session_id))
        self.clock.advance(2)
        self.assertFalse(await self.sessions.is_processing(session.session_id))
        self.assertTrue(await self.sessions.try_acquire_processing(session.session_id))

    async def test_stale_release_can_be_disabled(self):
        manager = self._manager(stale_lock_seconds=0)
        session = await self._create(manager)
        self.assertTrue(await manager.try_acquire_processing(session.session_id))
        self.clock.advance(3600)
        self.assertTrue(await manager.is_processing(session.session_id))
        self.assertFalse(await manager.try_acquire_processing(session.session_id))

    async def test_update_keeps_lock_state(self):
        session = await self._create()
        await self.sessions.try_acquire_processing(session.session_id)
        session.accumulated_coins = 10
        await self.sessions.update(session)
        self.assertTrue(await self.sessions.is_processing(session.session_id))


if __name__ == "__main__":
    unittest.main()
