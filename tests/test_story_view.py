from __future__ import annotations

import asyncio
import sqlite3
import unittest
import uuid
from pathlib import Path
from types import SimpleNamespace

from db.migrate import apply_sqlite_migrations
from rewards.service import RewardLedger
from rewards.service import utc_iso
from sessions.service import StorySessionManager
from story.catalog import default_catalog_dir
from story.catalog import register_catalog
from story.engine import StoryEngine
from story.models import FinalResult
from story.models import JournalEntry
from story.models import RollResult
from story.models import StorySession
from story.registry import StoryRegistry
from story.rng import FixedRolls
from work.service import WorkService

try:
    from misc.adhoc_modules.story_view import build_custom_id
    from misc.adhoc_modules.story_view import journal_recap
    from misc.adhoc_modules.story_view import parse_custom_id
    from misc.adhoc_modules.story_view import parse_session_prompt_id
    from misc.adhoc_modules.story_view import render_story_text
    from misc.events_runtime import handle_session_prompt
    from misc.events_runtime import handle_story_button
    from misc.runtime_deps import RuntimeDeps
    from misc.story_presenter import StoryPresenter
except ModuleNotFoundError:
    build_custom_id = None


def _migrations_dir() -> str:
    return str(Path(__file__).resolve().parents[1] / "migrations")


class _FakeResponse:
    def __init__(self):
        self.done = False
        self.sent: list[tuple[str, bool]] = []
        self.edits: list[dict] = []

    def is_done(self) -> bool:
        return self.done

    async def defer(self):
        self.done = True

    async def send_message(self, text: str, ephemeral: bool = False):
        self.done = True
        self.sent.append((text, ephemeral))

    async def edit_message(self, **kwargs):
        self.done = True
        self.edits.append(kwargs)


class _FakeFollowup:
    def __init__(self):
        self.sent: list[tuple[str, bool]] = []

    async def send(self, text: str, ephemeral: bool = False):
        self.sent.append((text, ephemeral))


class _FakeInteraction:
    def __init__(self, user_id: int, message_id: int = 7001):
        self.user = SimpleNamespace(id=user_id)
        self.response = _FakeResponse()
        self.followup = _FakeFollowup()
        self.message = SimpleNamespace(id=message_id)
        self.original_edits: list[dict] = []

    async def edit_original_response(self, **kwargs):
        self.original_edits.append(kwargs)


@unittest.skipIf(build_custom_id is None, "discord.py not installed")
class StoryCustomIdTests(unittest.TestCase):
    def test_round_trip_with_underscored_story_id(self):
        session_id = str(uuid.uuid4())
        for story_id in ("courier_rush", "ai_incr_1700000000000_2"):
            for action in ("choiceX", "choiceY", "keepBalance", "cancel"):
                custom_id = build_custom_id(story_id, session_id, action)
                self.assertLessEqual(len(custom_id), 100)
                self.assertEqual(parse_custom_id(custom_id), (story_id, session_id, action))

    def test_rejects_foreign_and_malformed_ids(self):
        sid = str(uuid.uuid4())
        self.assertIsNone(parse_custom_id(f"music_skip_{sid}"))
        self.assertIsNone(parse_custom_id(f"story_courier_rush_{sid}_dance"))
        self.assertIsNone(parse_custom_id("story_choiceX"))
        self.assertIsNone(parse_custom_id(f"story_resume_{sid}"))

    def test_session_prompt_ids(self):
        self.assertEqual(parse_session_prompt_id("story_resume_abc"), ("resume", "abc"))
        self.assertEqual(parse_session_prompt_id("story_abandon_abc"), ("abandon", "abc"))
        self.assertIsNone(parse_session_prompt_id("story_resume_"))
        self.assertIsNone(parse_session_prompt_id("story_courier_rush_abc_choiceX"))

    def test_render_final_text(self):
        text = render_story_text(
            title="Courier Rush",
            emoji="📦",
            narrative="You made it.",
            roll=RollResult(rolled=12.5, needed=70, success=True),
            final=FinalResult(
                total_coins=-20,
                xp_earned=40,
                is_positive_ending=False,
                terminal_node_id="terminal_sting",
                path_taken=["intro", "choiceX", "fail"],
            ),
        )
        self.assertTrue(text.startswith("📦 **Courier Rush**"))
        self.assertIn("💀 Story finished: -20 coins, +40 XP", text)
        self.assertNotIn("Rolled", text)

    def test_long_text_is_clipped(self):
        text = render_story_text(title="T", emoji="x", narrative="a" * 5000)
        self.assertLessEqual(len(text), 1900)
        self.assertTrue(text.endswith("..."))

    def test_journal_recap(self):
        session = StorySession(
            session_id="s",
            discord_user_id="1",
            db_user_id=1,
            story_id="courier_rush",
            current_node_id="decision_bridge_clear",
            started_at=0,
            last_interaction_at=0,
            accumulated_coins=25,
            story_journal=[
                JournalEntry(type="intro", narrative="The radio   crackles."),
                JournalEntry(
                    type="decision",
                    narrative="It is 4:31.",
                    choice="choiceX",
                    options={"choiceX": {"label": "Take the bridge", "description": "Slow."}},
                ),
                JournalEntry(type="outcome", narrative="Buses.", roll_result=RollResult(10.0, 70, True)),
            ],
        )
        recap = journal_recap(session)
        self.assertEqual(
            recap.splitlines(),
            ["- The radio crackles.", "- You chose **Take the bridge**", "- It worked", "Coins so far: +25"],
        )


@unittest.skipIf(build_custom_id is None, "discord.py not installed")
class StoryButtonRoutingTests(unittest.IsolatedAsyncioTestCase):
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
        self.work = WorkService(
            db_lock=self.db_lock,
            db_conn=self.conn,
            rewards=self.rewards,
            engine=self.engine,
            utc_iso=utc_iso,
        )
        self.presenter = StoryPresenter(engine=self.engine, sessions=self.sessions)
        self.deps = RuntimeDeps(
            engine=self.engine,
            sessions=self.sessions,
            presenter=self.presenter,
            work_service=self.work,
            allowed_channel_ids=set(),
        )
        started = await self.engine.start_story("courier_rush", discord_user_id="42", db_user_id=42)
        self.session_id = started.session.session_id

    async def asyncTearDown(self):
        self.conn.close()

    async def test_presenter_renders_decision_with_buttons(self):
        session = await self.sessions.get(self.session_id)
        text, view = self.presenter.render_current(session)
        self.assertIn("**Take the bridge**", text)
        self.assertIn("It is 4:31.", text)
        ids = [item.custom_id for item in view.children]
        self.assertEqual(
            ids,
            [build_custom_id("courier_rush", self.session_id, a) for a in ("choiceX", "choiceY", "keepBalance", "cancel")],
        )
        self.assertIn("Keep balance (+0)", [item.label for item in view.children])

    async def test_choice_updates_message_in_place(self):
        interaction = _FakeInteraction(42)
        status = await handle_story_button(
            interaction, deps=self.deps, story_id="courier_rush", session_id=self.session_id, action="choiceX"
        )
        self.assertEqual(status, "ok")
        self.assertTrue(interaction.response.done)
        edit = interaction.original_edits[-1]
        self.assertIn("Traffic parts like a miracle.", edit["content"])
        self.assertIsNotNone(edit["view"])

    async def test_finishing_removes_buttons(self):
        interaction = _FakeInteraction(42)
        await handle_story_button(
            interaction, deps=self.deps, story_id="courier_rush", session_id=self.session_id, action="keepBalance"
        )
        edit = interaction.original_edits[-1]
        self.assertIsNone(edit["view"])
        self.assertIn("You keep your current balance", edit["content"])

    async def test_other_users_get_an_ephemeral_refusal(self):
        interaction = _FakeInteraction(99)
        status = await handle_story_button(
            interaction, deps=self.deps, story_id="courier_rush", session_id=self.session_id, action="choiceX"
        )
        self.assertEqual(status, "forbidden")
        self.assertEqual(interaction.followup.sent, [("This story belongs to someone else.", True)])
        self.assertEqual(interaction.original_edits, [])
        self.assertIsNotNone(await self.sessions.get(self.session_id))

    async def test_expired_session_clears_buttons(self):
        await self.sessions.delete(self.session_id)
        interaction = _FakeInteraction(42)
        status = await handle_story_button(
            interaction, deps=self.deps, story_id="courier_rush", session_id=self.session_id, action="choiceX"
        )
        self.assertEqual(status, "not_found")
        self.assertEqual(interaction.original_edits, [{"view": None}])

    async def test_cancel_falls_back_to_plain_work(self):
        interaction = _FakeInteraction(42)
        status = await handle_story_button(
            interaction, deps=self.deps, story_id="courier_rush", session_id=self.session_id, action="cancel"
        )
        self.assertEqual(status, "cancelled")
        self.assertIn("regular shift", interaction.original_edits[-1]["content"])
        entries = await self.rewards.recent_entries(42)
        self.assertEqual([e["activity_type"] for e in entries], ["work"])

    async def test_resume_prompt_rebinds_message(self):
        interaction = _FakeInteraction(42, message_id=8123)
        status = await handle_session_prompt(interaction, deps=self.deps, kind="resume", session_id=self.session_id)
        self.assertEqual(status, "resumed")
        self.assertIsNotNone(interaction.response.edits[-1]["view"])
        self.assertEqual((await self.sessions.get_by_message("8123")).session_id, self.session_id)

    async def test_abandon_prompt_ends_story_without_rewards(self):
        interaction = _FakeInteraction(42)
        status = await handle_session_prompt(interaction, deps=self.deps, kind="abandon", session_id=self.session_id)
        self.assertEqual(status, "abandoned")
        self.assertIsNone(await self.sessions.get(self.session_id))
        self.assertEqual(await self.rewards.recent_entries(42), [])


if __name__ == "__main__":
    unittest.main()
