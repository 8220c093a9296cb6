from __future__ import annotations

import asyncio
import copy
from dataclasses import dataclass
from typing import Any

from config.defaults import BASE_XP_FLAT
from config.defaults import BASE_XP_PER_LEVEL
from config.defaults import KEEP_BALANCE_XP_FRACTION
from config.defaults import MAX_EFFECTIVE_CHANCE
from config.defaults import MIN_EFFECTIVE_CHANCE
from generation.builder import add_layer2_to_story
from generation.builder import add_layer3_to_story
from generation.builder import build_story_from_layer1
from sessions.service import StorySessionManager
from sessions.service import now_ms
from sessions.store import fetch_session_sync
from story.models import CHOICE_IDS
from story.models import STORY_ACTIONS
from story.models import ChoiceRecord
from story.models import DynamicValue
from story.models import FinalResult
from story.models import Fixed
from story.models import JournalEntry
from story.models import Randomized
from story.models import RollResult
from story.models import Story
from story.models import StoryActionResult
from story.models import StoryNode
from story.models import StorySession
from story.models import VarRef
from story.models import choice_options
from story.models import is_decision
from story.models import is_dynamic_story_id
from story.models import is_intro
from story.models import is_outcome
from story.models import is_pending
from story.models import is_terminal
from story.registry import StoryRegistry
from story.rng import RollSource
from story.store import delete_dynamic_story_sync
from story.store import fetch_dynamic_story_sync
from story.store import list_dynamic_story_ids_sync
from story.store import upsert_dynamic_story_sync


class StoryEngineError(RuntimeError):
    """A broken story graph or an illegal action. Aborts the current action."""

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


@dataclass(slots=True)
class ActionOutcome:
    status: str
    result: StoryActionResult | None = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.status == "ok"


@dataclass(slots=True)
class IncrementalStartResult:
    success: bool
    result: StoryActionResult | None = None
    error: str | None = None
    usage: dict[str, int] | None = None


class _KeepPlaceholders(dict):
    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


def calculate_base_xp(user_level: int) -> int:
    return int(user_level) * BASE_XP_PER_LEVEL + BASE_XP_FLAT


def effective_chance(base_chance: float, risk_multiplier: float = 1.0) -> float:
    risk = float(risk_multiplier) if risk_multiplier else 1.0
    return min(MAX_EFFECTIVE_CHANCE, max(MIN_EFFECTIVE_CHANCE, float(base_chance) / risk))


_default_rolls = RollSource()


def roll_chance(success_chance: float, *, source: RollSource | None = None) -> RollResult:
    rolled = (source or _default_rolls).percent()
    return RollResult(rolled=round(rolled, 2), needed=success_chance, success=rolled < success_chance)


def resolve_node_value(
    session: StorySession,
    node_id: str,
    field: str,
    value: DynamicValue | Any,
    variables: dict[str, DynamicValue] | None = None,
) -> Any:
    """Resolve a dynamic value once per (session, node, field) and memoize it in the session."""
    cache = session.resolved_node_values.setdefault(node_id, {})
    if field in cache:
        return cache[field]

    if isinstance(value, VarRef):
        target = (variables or {}).get(value.name)
        if target is None:
            raise StoryEngineError("unknown_variable", f"Node {node_id} references unknown variable '{value.name}'")
        resolved = resolve_node_value(session, node_id, f"var:{value.name}", target, variables)
    elif isinstance(value, Randomized):
        resolved = value.generator()
    elif isinstance(value, Fixed):
        resolved = value.value
    else:
        resolved = value

    cache[field] = resolved
    return resolved


def format_coins(coins: int) -> str:
    return f"{'+' if coins >= 0 else ''}{coins}"


def _save_story_for_live_session_sync(conn, story: Story, session_id: str, now: int) -> bool:
    # cancel deletes the session row before the story row
    if fetch_session_sync(conn, session_id) is None:
        return False
    upsert_dynamic_story_sync(conn, story, now)
    return True


class StoryEngine:
    """Walks story graphs for player sessions.

    Each action runs on a private copy of the session; the copy is written back
    through the session manager only once the whole transition succeeded, so a
    raised error or a failed generation call leaves the stored session untouched.
    """

    def __init__(
        self,
        *,
        registry: StoryRegistry,
        sessions: StorySessionManager,
        rewards,
        generator=None,
        db_lock: asyncio.Lock | None = None,
        db_conn=None,
        rolls: RollSource | None = None,
        clock=now_ms,
    ):
        self.registry = registry
        self.sessions = sessions
        self.rewards = rewards
        self.generator = generator
        self.db_lock = db_lock or sessions.db_lock
        self.db_conn = db_conn if db_conn is not None else sessions.db_conn
        self.rolls = rolls
        self.clock = clock

    # =========================
    # lookups
    # =========================
    def get_story(self, story_id: str) -> Story:
        story = self.registry.get(story_id)
        if story is None:
            raise StoryEngineError("story_not_found", f"Story not found: {story_id}")
        return story

    @staticmethod
    def get_node(story: Story, node_id: str) -> StoryNode:
        node = story.nodes.get(node_id)
        if node is None:
            raise StoryEngineError("node_not_found", f"Node not found: {node_id}")
        return node

    def get_story_context(self, session: StorySession) -> tuple[Story, StoryNode] | None:
        story = self.registry.get(session.story_id)
        if story is None:
            return None
        node = story.nodes.get(session.current_node_id)
        if node is None or is_pending(node):
            return None
        return (story, node)

    def render_narrative(self, session: StorySession, node: StoryNode) -> str:
        text = str(resolve_node_value(session, node.id, "narrative", node.narrative, node.variables))
        if not node.variables:
            return text
        values = {
            name: resolve_node_value(session, node.id, f"var:{name}", spec, node.variables)
            for name, spec in node.variables.items()
        }
        try:
            return text.format_map(_KeepPlaceholders(values))
        except (ValueError, IndexError, KeyError, AttributeError, TypeError) as e:
            print(f"[StoryEngine] Could not fill variables in node {node.id}: {e}")
            return text

    def _apply_node_coins(self, session: StorySession, node: StoryNode) -> None:
        if node.coins_change is None:
            return
        session.accumulated_coins += int(
            resolve_node_value(session, node.id, "coinsChange", node.coins_change, node.variables)
        )

    # =========================
    # dynamic story persistence
    # =========================
    async def _save_dynamic_story(self, story: Story, session_id: str | None = None) -> bool:
        """Persist an AI story. With `session_id`, only while that session still exists."""
        if self.db_conn is None or not story.is_dynamic:
            return True
        async with self.db_lock:
            if session_id is None:
                await asyncio.to_thread(upsert_dynamic_story_sync, self.db_conn, story, self.clock())
                return True
            return await asyncio.to_thread(
                _save_story_for_live_session_sync, self.db_conn, story, session_id, self.clock()
            )

    async def release_stories(self, story_ids: list[str]) -> None:
        """Drop dynamic stories whose session is gone. Static stories are left alone."""
        for story_id in dict.fromkeys(story_ids):
            if not is_dynamic_story_id(story_id):
                continue
            self.registry.unregister(story_id)
            if self.db_conn is not None:
                async with self.db_lock:
                    await asyncio.to_thread(delete_dynamic_story_sync, self.db_conn, story_id)

    async def restore_dynamic_stories(self) -> int:
        """Re-register persisted AI stories that still have a session; drop the rest."""
        if self.db_conn is None:
            return 0
        live_ids = {s.story_id for s in await self.sessions.list_all()}
        async with self.db_lock:
            stored_ids = await asyncio.to_thread(list_dynamic_story_ids_sync, self.db_conn)

        restored = 0
        for story_id in stored_ids:
            if story_id not in live_ids:
                async with self.db_lock:
                    await asyncio.to_thread(delete_dynamic_story_sync, self.db_conn, story_id)
                continue
            async with self.db_lock:
                story = await asyncio.to_thread(fetch_dynamic_story_sync, self.db_conn, story_id)
            if story is not None:
                self.registry.register(story)
                restored += 1
        if stored_ids:
            print(f"[StoryEngine] Restored {restored}/{len(stored_ids)} stored AI stories")
        return restored

    # =========================
    # start
    # =========================
    async def _start_session(self, story: Story, **params) -> StoryActionResult:
        intro = self.get_node(story, story.start_node_id)
        if not is_intro(intro):
            raise StoryEngineError("bad_start", f"Expected intro node, got {intro.kind}")
        if not is_decision(self.get_node(story, intro.next_node_id)):
            raise StoryEngineError("bad_start", f"Intro of {story.id} must lead to a decision node")

        session = await self.sessions.create(story_id=story.id, start_node_id=story.start_node_id, **params)
        return await self._process_intro(session, story)

    async def start_story(
        self,
        story_id: str,
        *,
        discord_user_id: str,
        db_user_id: int,
        message_id: str | None = None,
        channel_id: str | None = None,
        guild_id: str | None = None,
        user_level: int = 1,
    ) -> StoryActionResult:
        story = self.get_story(story_id)
        return await self._start_session(
            story,
            discord_user_id=discord_user_id,
            db_user_id=db_user_id,
            message_id=message_id,
            channel_id=channel_id,
            guild_id=guild_id,
            user_level=user_level,
        )

    async def start_incremental_ai_story(
        self,
        *,
        discord_user_id: str,
        db_user_id: int,
        message_id: str | None = None,
        channel_id: str | None = None,
        guild_id: str | None = None,
        user_level: int = 1,
    ) -> IncrementalStartResult:
        """Generate only the opening layer; later layers are generated when reached."""
        if self.generator is None or not self.generator.enabled:
            return IncrementalStartResult(success=False, error="AI stories are not configured")

        layer1 = await self.generator.generate_layer1(str(discord_user_id))
        if not layer1.success or layer1.data is None or layer1.context is None:
            return IncrementalStartResult(success=False, error=layer1.error or "Failed to generate story", usage=layer1.usage)

        story_id = f"ai_incr_{self.clock()}"
        suffix = 1
        while story_id in self.registry:
            story_id = f"ai_incr_{self.clock()}_{suffix}"
            suffix += 1

        story = build_story_from_layer1(layer1.data, story_id)
        self.registry.register(story)
        await self._save_dynamic_story(story)

        try:
            result = await self._start_session(
                story,
                discord_user_id=discord_user_id,
                db_user_id=db_user_id,
                message_id=message_id,
                channel_id=channel_id,
                guild_id=guild_id,
                user_level=user_level,
                is_incremental_ai=True,
                ai_context=layer1.context,
            )
        except Exception:
            await self.release_stories([story.id])
            raise

        print(f'[StoryEngine] Started incremental AI story "{story.title}" for user {discord_user_id}')
        return IncrementalStartResult(success=True, result=result, usage=layer1.usage)

    # =========================
    # node processing
    # =========================
    async def _process_intro(self, session: StorySession, story: Story) -> StoryActionResult:
        node = self.get_node(story, session.current_node_id)
        if not is_intro(node):
            raise StoryEngineError("bad_transition", f"Expected intro node, got {node.kind}")

        self._apply_node_coins(session, node)
        narrative = self.render_narrative(session, node)
        session.story_journal.append(JournalEntry(type="intro", narrative=narrative))
        session.current_node_id = node.next_node_id
        session.choices_path.append("intro")
        next_node = self.get_node(story, session.current_node_id)
        self.render_narrative(session, next_node)

        await self.sessions.update(session)
        return StoryActionResult(session=session, current_node=next_node, narrative=narrative)

    async def _process_decision(self, session: StorySession, story: Story, choice: str) -> StoryActionResult | None:
        node = self.get_node(story, session.current_node_id)
        selected = node.choices[choice]
        narrative = self.render_narrative(session, node)
        self._apply_node_coins(session, node)

        options = choice_options(node)
        session.choices_path.append(choice)
        session.choice_history.append(
            ChoiceRecord(node_id=node.id, narrative=narrative, choice=choice, options=options)
        )
        session.story_journal.append(
            JournalEntry(type="decision", narrative=narrative, choice=choice, options=options)
        )
        session.current_node_id = selected.next_node_id
        next_node = self.get_node(story, selected.next_node_id)

        if is_terminal(next_node):
            return await self._finalize_terminal(session, story, narrative)
        if not is_outcome(next_node):
            raise StoryEngineError("bad_transition", f"Expected outcome node, got {next_node.kind}")
        return await self._process_outcome(session, story, selected.risk_multiplier)

    async def _ensure_next_layer(self, session: StorySession, story: Story, node: StoryNode, success: bool) -> str:
        """Generate the layer behind `node` if missing. Returns "ok", "cancelled", or an error text."""
        if not session.is_incremental_ai or session.ai_context is None:
            return "ok"
        outcome_letter = "S" if success else "F"

        if node.id in ("outcome1X", "outcome1Y"):
            path = f"{node.id[-1]}{outcome_letter}"
            if f"decision2_{path}" in story.nodes:
                return "ok"
            if self.generator is None:
                return "AI stories are not configured"
            print(f"[StoryEngine] Generating layer 2 for path: {path}")
            res = await self.generator.generate_layer2(session.ai_context, path[0], success)
            if not res.success or res.data is None or res.context is None:
                return f"Failed to generate layer 2: {res.error}"
            if not await self.sessions.exists(session.session_id):
                return "cancelled"
            session.ai_context = res.context
            add_layer2_to_story(story, res.data, path)
            return "ok"

        if node.id.startswith("outcome2_"):
            _prefix, layer2_path, choice2 = node.id.split("_")
            terminal_path = f"{layer2_path}_{choice2}_{outcome_letter}"
            if f"terminal_{terminal_path}" in story.nodes:
                return "ok"
            if self.generator is None:
                return "AI stories are not configured"
            print(f"[StoryEngine] Generating layer 3 for path: {terminal_path}")
            res = await self.generator.generate_layer3(session.ai_context, choice2, success)
            if not res.success or res.data is None:
                return f"Failed to generate layer 3: {res.error}"
            if not await self.sessions.exists(session.session_id):
                return "cancelled"
            session.ai_context.path_so_far = f"{session.ai_context.path_so_far}{choice2}"
            add_layer3_to_story(story, res.data, terminal_path)
            return "ok"

        return "ok"

    async def _draw_outcome_roll(
        self,
        session: StorySession,
        node: StoryNode,
        risk_multiplier: float,
    ) -> RollResult | None:
        """Roll once per (session, outcome node).

        AI sessions store the roll before the next layer is generated, so a failed
        generation followed by a retry replays the same result. Returns None when
        the session is gone.
        """
        cache = session.resolved_node_values.setdefault(node.id, {})
        if "roll" in cache:
            return RollResult.from_dict(cache["roll"])

        roll = roll_chance(effective_chance(node.success_chance, risk_multiplier), source=self.rolls)
        cache["roll"] = roll.to_dict()
        if not session.is_incremental_ai:
            return roll

        stored = await self.sessions.get(session.session_id)
        if stored is None:
            return None
        stored.resolved_node_values.setdefault(node.id, {})["roll"] = roll.to_dict()
        if not await self.sessions.update(stored):
            return None
        return roll

    async def _process_outcome(
        self,
        session: StorySession,
        story: Story,
        risk_multiplier: float = 1.0,
    ) -> StoryActionResult | None:
        node = self.get_node(story, session.current_node_id)
        if not is_outcome(node):
            raise StoryEngineError("bad_transition", f"Expected outcome node, got {node.kind}")

        roll = await self._draw_outcome_roll(session, node, risk_multiplier)
        if roll is None:
            return None
        self._apply_node_coins(session, node)
        next_node_id = node.success_node_id if roll.success else node.fail_node_id
        session.current_node_id = next_node_id
        session.choices_path.append("success" if roll.success else "fail")

        layer = await self._ensure_next_layer(session, story, node, roll.success)
        if layer == "cancelled":
            print(f"[StoryEngine] Session {session.session_id} ended during generation; result discarded")
            return None
        if layer != "ok":
            print(f"[StoryEngine] {layer}")
            return StoryActionResult(session=session, current_node=None, narrative="", generation_error=layer)

        next_node = self.get_node(story, next_node_id)
        if is_pending(node) or is_pending(next_node):
            raise StoryEngineError("pending_node", f"Node {node.id if is_pending(node) else next_node.id} is not generated yet")

        narrative = self.render_narrative(session, node)
        session.story_journal.append(JournalEntry(type="outcome", narrative=narrative, roll_result=roll))

        if is_terminal(next_node):
            return await self._finalize_terminal(session, story, narrative, roll)

        self.render_narrative(session, next_node)
        if not await self.sessions.update(session):
            return None
        if session.is_incremental_ai and not await self._save_dynamic_story(story, session.session_id):
            return None
        return StoryActionResult(session=session, current_node=next_node, narrative=narrative, roll_result=roll)

    async def _grant(self, session: StorySession, coins: int, xp: int, activity_type: str, notes: str) -> None:
        try:
            ok, detail = await self.rewards.grant(session.db_user_id, coins, xp, activity_type, notes)
        except Exception as e:
            ok, detail = (False, str(e))
        if not ok:
            print(f"[StoryEngine] Failed to grant rewards for session {session.session_id}: {detail}")

    async def _end_session(self, session: StorySession, story_id: str) -> None:
        await self.sessions.delete(session.session_id)
        if is_dynamic_story_id(story_id):
            await self.release_stories([story_id])

    async def _finalize_terminal(
        self,
        session: StorySession,
        story: Story,
        preceding_narrative: str = "",
        roll: RollResult | None = None,
    ) -> StoryActionResult:
        node = self.get_node(story, session.current_node_id)
        if not is_terminal(node):
            raise StoryEngineError("not_terminal", f"Expected terminal node, got {node.kind}")

        self._apply_node_coins(session, node)
        terminal_narrative = self.render_narrative(session, node)
        final_xp = round(calculate_base_xp(session.user_level) * node.xp_multiplier)
        final_coins = session.accumulated_coins

        await self._grant(
            session,
            final_coins,
            final_xp,
            f"{story.id}_{node.id}",
            f"Story: {story.title} - {'Positive' if node.is_positive_ending else 'Negative'} ending",
        )
        final = FinalResult(
            total_coins=final_coins,
            xp_earned=final_xp,
            is_positive_ending=node.is_positive_ending,
            terminal_node_id=node.id,
            path_taken=list(session.choices_path),
        )
        await self._end_session(session, story.id)

        parts = [p for p in (preceding_narrative, terminal_narrative) if p]
        parts.append(f"**Total:** {format_coins(final_coins)} coins, +{final_xp} XP")
        return StoryActionResult(
            session=session,
            current_node=node,
            narrative="\n\n".join(parts),
            is_complete=True,
            final_result=final,
            roll_result=roll,
        )

    async def _process_keep_balance(self, session: StorySession, story: Story) -> StoryActionResult:
        node = self.get_node(story, session.current_node_id)
        if not is_decision(node):
            raise StoryEngineError("illegal_action", f"Cannot keep balance on {node.kind} node")

        final_xp = round(calculate_base_xp(session.user_level) * KEEP_BALANCE_XP_FRACTION)
        final_coins = session.accumulated_coins
        await self._grant(
            session,
            final_coins,
            final_xp,
            f"{story.id}_keep_balance",
            f"Story: {story.title} - Early exit (Keep Balance)",
        )
        final = FinalResult(
            total_coins=final_coins,
            xp_earned=final_xp,
            is_positive_ending=final_coins >= 0,
            terminal_node_id="keep_balance",
            path_taken=list(session.choices_path) + ["keepBalance"],
        )
        await self._end_session(session, story.id)

        narrative = (
            "💰 **You keep your current balance**\n\n"
            f"You walked away from the story with {format_coins(final_coins)} coins.\n\n"
            f"**Total:** {format_coins(final_coins)} coins, +{final_xp} XP"
        )
        return StoryActionResult(
            session=session,
            current_node=node,
            narrative=narrative,
            is_complete=True,
            final_result=final,
        )

    async def cancel(self, session: StorySession) -> None:
        """Delete the session without rewards. The caller falls back to plain work."""
        await self._end_session(session, session.story_id)
        return None

    # =========================
    # entry points
    # =========================
    async def process_action(self, session: StorySession, action: str) -> StoryActionResult | None:
        """Apply one player action. Returns None for cancel or when the session vanished mid-action."""
        if action == "cancel":
            return await self.cancel(session)

        story = self.get_story(session.story_id)
        node = self.get_node(story, session.current_node_id)

        if action in CHOICE_IDS:
            if not is_decision(node):
                raise StoryEngineError("illegal_action", f"Cannot make choice on {node.kind} node")
            before = copy.deepcopy(session)
            result = await self._process_decision(session, story, action)
            if result is not None and result.generation_error:
                # only the drawn roll was persisted; the session is still at the decision
                result.session = await self.sessions.get(session.session_id) or before
                result.current_node = node
            return result
        if action == "keepBalance":
            return await self._process_keep_balance(session, story)
        raise StoryEngineError("illegal_action", f"Unknown story action: {action}")

    async def run_action(self, session_id: str, *, user_id: str, action: str) -> ActionOutcome:
        """Guarded entry point for button handlers: ownership, durable lock, cleanup."""
        if action not in STORY_ACTIONS:
            return ActionOutcome("invalid", message=f"Unknown action: {action}")

        session = await self.sessions.get(session_id)
        if session is None:
            return ActionOutcome("not_found", message="This story has expired or already ended.")
        if str(session.discord_user_id) != str(user_id):
            return ActionOutcome("forbidden", message="This story belongs to someone else.")

        if action == "cancel":
            await self.cancel(session)
            return ActionOutcome("cancelled", message="Story cancelled.")

        if not await self.sessions.try_acquire_processing(session_id):
            return ActionOutcome("busy", message="Still processing your previous choice, hang on.")
        try:
            session = await self.sessions.get(session_id)
            if session is None:
                return ActionOutcome("not_found", message="This story has expired or already ended.")
            result = await self.process_action(session, action)
        finally:
            await self.sessions.set_processing(session_id, False)

        if result is None:
            return ActionOutcome("cancelled", message="Story cancelled.")
        if result.generation_error:
            return ActionOutcome(
                "generation_failed",
                result=result,
                message="The storyteller lost the thread. Try the same choice again in a moment.",
            )
        return ActionOutcome("ok", result=result)
