from __future__ import annotations

import asyncio
import shutil
import sqlite3
import tempfile
import unittest
from pathlib import Path

from db.migrate import apply_sqlite_migrations
from rewards.service import RewardLedger
from sessions.service import StorySessionManager
from story.catalog import default_catalog_dir
from story.catalog import load_catalog
from story.catalog import register_catalog
from story.engine import StoryEngine
from story.registry import StoryRegistry
from story.rng import FixedRolls
from story.validator import validate_story


def _migrations_dir() -> str:
    return str(Path(__file__).resolve().parents[1] / "migrations")


class StoryCatalogTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.tmpdir = Path(self.tmp.name)

    def tearDown(self):
        self.tmp.cleanup()

    def test_shipped_catalog_loads_cleanly(self):
        stories, problems = load_catalog(default_catalog_dir())
        self.assertEqual(problems, {})
        ids = {s.id for s in stories}
        self.assertEqual(ids, {"courier_rush", "office_election", "food_truck_festival"})
        for story in stories:
            self.assertEqual(validate_story(story, strict=True), [], story.id)

    def test_bad_files_are_reported_and_skipped(self):
        shutil.copy(Path(default_catalog_dir()) / "courier_rush.yml", self.tmpdir / "a_courier.yml")
        shutil.copy(Path(default_catalog_dir()) / "courier_rush.yml", self.tmpdir / "b_courier_again.yaml")
        (self.tmpdir / "broken.yml").write_text("nodes: [unclosed", encoding="utf-8")
        (self.tmpdir / "list.yml").write_text("- just\n- a list\n", encoding="utf-8")
        (self.tmpdir / "notes.txt").write_text("ignored", encoding="utf-8")

        stories, problems = load_catalog(str(self.tmpdir))
        self.assertEqual([s.id for s in stories], ["courier_rush"])
        self.assertEqual(set(problems), {"b_courier_again.yaml", "broken.yml", "list.yml"})
        self.assertIn("Duplicate story id 'courier_rush'", problems["b_courier_again.yaml"])
        self.assertTrue(problems["broken.yml"][0].startswith("parse error:"))

    def test_missing_directory_is_empty(self):
        stories, problems = load_catalog(str(self.tmpdir / "nope"))
        self.assertEqual((stories, problems), ([], {}))

    def test_register_catalog_counts_registered_stories(self):
        registry = StoryRegistry()
        self.assertEqual(register_catalog(registry, default_catalog_dir()), 3)
        self.assertIn("office_election", registry)
        self.assertEqual(len(registry.static_stories()), 3)


class ShippedStoryPlaythroughTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.conn = sqlite3.connect(":memory:", check_same_thread=False)
        apply_sqlite_migrations(self.conn, _migrations_dir())
        self.db_lock = asyncio.Lock()
        self.registry = StoryRegistry()
        register_catalog(self.registry, default_catalog_dir())
        self.sessions = StorySessionManager(db_lock=self.db_lock, db_conn=self.conn)
        self.rewards = RewardLedger(db_lock=self.db_lock, db_conn=self.conn)

    async def asyncTearDown(self):
        self.conn.close()

    async def _play(self, story_id: str, choice: str, roll: float):
        engine = StoryEngine(
            registry=self.registry,
            sessions=self.sessions,
            rewards=self.rewards,
            rolls=FixedRolls([roll]),
        )
        result = await engine.start_story(story_id, discord_user_id="42", db_user_id=42)
        for _ in range(10):
            if result.is_complete:
                break
            outcome = await engine.run_action(result.session.session_id, user_id="42", action=choice)
            self.assertEqual(outcome.status, "ok")
            result = outcome.result
        return result

    async def test_every_story_reaches_an_ending(self):
        for story in self.registry.static_stories():
            for choice in ("choiceX", "choiceY"):
                for roll in (0.0, 99.0):
                    result = await self._play(story.id, choice, roll)
                    self.assertTrue(result.is_complete, f"{story.id} {choice} {roll}")
                    self.assertTrue(result.final_result.terminal_node_id.startswith("terminal_"))
                    self.assertNotIn("{", result.narrative)


if __name__ == "__main__":
    unittest.main()
