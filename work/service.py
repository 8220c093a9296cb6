from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from config.defaults import WORK_ACTIVITIES
from config.defaults import WORK_COINS_MAX
from config.defaults import WORK_COINS_MIN
from config.defaults import WORK_COOLDOWN_MINUTES
from config.defaults import WORK_XP_MAX
from config.defaults import WORK_XP_MIN
from rewards.store import mark_work_claimed_sync
from story.models import StoryActionResult
from story.rng import RollSource
from story.rng import pick_one
from story.rng import random_int
from work.store import fetch_work_settings_sync
from work.store import get_story_opt_out_sync
from work.store import set_story_opt_out_sync
from work.store import update_work_setting_sync

# user-facing key -> (column, kind)
SETTING_KEYS = {
    "story_chance": ("story_chance_percent", "percent"),
    "ai_enabled": ("ai_story_enabled", "bool"),
    "ai_chance": ("ai_story_chance_percent", "percent"),
}

_TRUE_WORDS = {"1", "on", "true", "yes", "enable", "enabled"}
_FALSE_WORDS = {"0", "off", "false", "no", "disable", "disabled"}


@dataclass(slots=True)
class WorkResult:
    mode: str
    message: str = ""
    title: str = ""
    coins: int = 0
    xp: int = 0
    story_result: StoryActionResult | None = None
    retry_after_seconds: int = 0


def _parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def parse_setting_value(kind: str, raw: str) -> int:
    text = (raw or "").strip().lower().rstrip("%")
    if kind == "bool":
        if text in _TRUE_WORDS:
            return 1
        if text in _FALSE_WORDS:
            return 0
        raise ValueError("expected on/off")
    value = int(text)
    if value < 0 or value > 100:
        raise ValueError("expected a percentage between 0 and 100")
    return value


class WorkService:
    """The `!work` economy: cooldown, the story-or-plain-work roll, and payouts."""

    def __init__(
        self,
        *,
        db_lock: asyncio.Lock,
        db_conn,
        rewards,
        engine,
        rolls: RollSource | None = None,
        cooldown_minutes: int = WORK_COOLDOWN_MINUTES,
        utc_iso,
        now_utc=lambda: datetime.now(timezone.utc),
    ) -> None:
        self.db_lock = db_lock
        self.db_conn = db_conn
        self.rewards = rewards
        self.engine = engine
        self.rolls = rolls or RollSource()
        self.cooldown_minutes = max(0, int(cooldown_minutes))
        self.utc_iso = utc_iso
        self.now_utc = now_utc

    # -------------------------
    # settings
    # -------------------------
    @staticmethod
    def _guild_key(guild_id: str | int | None) -> str:
        return str(guild_id) if guild_id else "global"

    async def get_settings(self, guild_id: str | int | None) -> dict[str, Any]:
        async with self.db_lock:
            return await asyncio.to_thread(fetch_work_settings_sync, self.db_conn, self._guild_key(guild_id))

    async def update_setting(
        self,
        guild_id: str | int | None,
        key: str,
        raw_value: str,
        *,
        actor_user_id: int,
    ) -> tuple[bool, str]:
        spec = SETTING_KEYS.get((key or "").strip().lower())
        if spec is None:
            return (False, f"Unknown setting `{key}`. Valid keys: {', '.join(SETTING_KEYS)}")
        column, kind = spec
        try:
            value = parse_setting_value(kind, raw_value)
        except ValueError as e:
            return (False, f"Invalid value for `{key}`: {e}")

        async with self.db_lock:
            await asyncio.to_thread(
                update_work_setting_sync,
                self.db_conn,
                guild_id=self._guild_key(guild_id),
                key=column,
                value=value,
                updated_by_user_id=actor_user_id,
                now_iso=self.utc_iso(),
            )
        print(f"[Work] settings guild={self._guild_key(guild_id)} {column}={value} by={actor_user_id}")
        return (True, f"`{key}` set to `{raw_value.strip()}`.")

    async def is_opted_out(self, user_id: int) -> bool:
        async with self.db_lock:
            return await asyncio.to_thread(get_story_opt_out_sync, self.db_conn, int(user_id))

    async def set_opt_out(self, user_id: int, opt_out: bool) -> None:
        async with self.db_lock:
            await asyncio.to_thread(set_story_opt_out_sync, self.db_conn, int(user_id), bool(opt_out), self.utc_iso())

    # -------------------------
    # work
    # -------------------------
    async def cooldown_remaining(self, user_id: int) -> int:
        if self.cooldown_minutes <= 0:
            return 0
        stats = await self.rewards.get_stats(int(user_id))
        last = _parse_iso(stats.get("last_work_at_utc"))
        if last is None:
            return 0
        elapsed = (self.now_utc() - last).total_seconds()
        return max(0, int(self.cooldown_minutes * 60 - elapsed))

    def roll_mode(self, settings: dict[str, Any], *, opted_out: bool, ai_available: bool) -> str:
        """Pick "work", "story" or "ai_story" for one shift."""
        if opted_out:
            return "work"
        if self.rolls.percent() >= float(settings["story_chance_percent"]):
            return "work"
        if ai_available and settings["ai_story_enabled"]:
            if self.rolls.percent() < float(settings["ai_story_chance_percent"]):
                return "ai_story"
        return "story"

    async def plain_work(self, user_id: int) -> WorkResult:
        title, text = pick_one(WORK_ACTIVITIES)
        coins = random_int(WORK_COINS_MIN, WORK_COINS_MAX)
        xp = random_int(WORK_XP_MIN, WORK_XP_MAX)
        ok, detail = await self.rewards.grant(int(user_id), coins, xp, "work", title)
        if not ok:
            return WorkResult(mode="error", message=f"Could not pay out your shift: {detail}")
        return WorkResult(mode="work", message=text, title=title, coins=coins, xp=xp)

    async def start_work(
        self,
        *,
        user_id: int,
        guild_id: str | int | None = None,
        channel_id: str | int | None = None,
        force_mode: str | None = None,
    ) -> WorkResult:
        remaining = await self.cooldown_remaining(user_id)
        if remaining > 0:
            return WorkResult(
                mode="cooldown",
                message=f"You are still tired from your last shift. Try again in {remaining // 60 + 1} min.",
                retry_after_seconds=remaining,
            )

        async with self.db_lock:
            await asyncio.to_thread(mark_work_claimed_sync, self.db_conn, int(user_id), self.utc_iso())

        settings = await self.get_settings(guild_id)
        generator = getattr(self.engine, "generator", None)
        ai_available = bool(generator is not None and generator.enabled)
        mode = force_mode or self.roll_mode(
            settings,
            opted_out=await self.is_opted_out(user_id),
            ai_available=ai_available,
        )

        level = await self.rewards.user_level(int(user_id))
        start_params = {
            "discord_user_id": str(user_id),
            "db_user_id": int(user_id),
            "channel_id": str(channel_id) if channel_id else None,
            "guild_id": str(guild_id) if guild_id else None,
            "user_level": level,
        }

        if mode == "ai_story":
            started = await self.engine.start_incremental_ai_story(**start_params)
            if started.success:
                return WorkResult(mode="ai_story", story_result=started.result)
            print(f"[Work] AI story failed, falling back to a static story: {started.error}")
            mode = "story"

        if mode == "story":
            stories = self.engine.registry.static_stories()
            if stories:
                story = pick_one(stories)
                result = await self.engine.start_story(story.id, **start_params)
                return WorkResult(mode="story", story_result=result)
            print("[Work] No static stories registered; paying plain work")

        return await self.plain_work(user_id)
