from __future__ import annotations

import asyncio
import copy
import time
import uuid
from typing import Awaitable
from typing import Callable

from config.defaults import DEFAULT_SESSION_TTL_HOURS
from config.defaults import PROCESSING_LOCK_STALE_SECONDS
from sessions.store import delete_expired_sessions_sync
from sessions.store import delete_session_sync
from sessions.store import delete_sessions_for_user_sync
from sessions.store import fetch_session_by_message_sync
from sessions.store import fetch_session_by_user_sync
from sessions.store import fetch_session_sync
from sessions.store import get_processing_sync
from sessions.store import insert_session_sync
from sessions.store import list_sessions_sync
from sessions.store import set_message_id_sync
from sessions.store import set_processing_sync
from sessions.store import try_acquire_processing_sync
from sessions.store import update_session_sync
from story.models import AIStoryContext
from story.models import StorySession


def now_ms() -> int:
    return int(time.time() * 1000)


class StorySessionManager:
    """Active play-throughs: an in-memory cache mirrored to SQLite.

    Reads check the cache first and fall back to SQLite, filling the cache.
    Writes hit SQLite and then the cache before returning. Callers always get
    copies, so mutating a returned session never touches the cache.
    """

    def __init__(
        self,
        *,
        db_lock: asyncio.Lock,
        db_conn,
        ttl_hours: float = DEFAULT_SESSION_TTL_HOURS,
        stale_lock_seconds: int = PROCESSING_LOCK_STALE_SECONDS,
        clock: Callable[[], int] = now_ms,
        on_released: Callable[[list[str]], Awaitable[None]] | None = None,
    ):
        self.db_lock = db_lock
        self.db_conn = db_conn
        self.ttl_hours = float(ttl_hours or DEFAULT_SESSION_TTL_HOURS)
        self.stale_lock_seconds = int(stale_lock_seconds or 0)
        self.clock = clock
        self.on_released = on_released

        self._sessions: dict[str, StorySession] = {}
        self._by_user: dict[str, str] = {}
        self._by_message: dict[str, str] = {}

    # -------------------------
    # cache bookkeeping
    # -------------------------
    def _cache_put(self, session: StorySession) -> None:
        stored = copy.deepcopy(session)
        previous = self._sessions.get(stored.session_id)
        if previous and previous.message_id and previous.message_id != stored.message_id:
            self._by_message.pop(previous.message_id, None)
        self._sessions[stored.session_id] = stored
        self._by_user[stored.discord_user_id] = stored.session_id
        if stored.message_id:
            self._by_message[stored.message_id] = stored.session_id

    def _cache_drop(self, session_id: str) -> None:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return
        if self._by_user.get(session.discord_user_id) == session_id:
            self._by_user.pop(session.discord_user_id, None)
        if session.message_id and self._by_message.get(session.message_id) == session_id:
            self._by_message.pop(session.message_id, None)

    def _is_expired(self, session: StorySession, now: int | None = None) -> bool:
        now = self.clock() if now is None else now
        return session.last_interaction_at < now - int(self.ttl_hours * 3600 * 1000)

    def _lock_is_live(self, processing: bool, started_at: int | None) -> bool:
        if not processing:
            return False
        if started_at is None or self.stale_lock_seconds <= 0:
            return True
        return started_at >= self.clock() - self.stale_lock_seconds * 1000

    @property
    def cached_count(self) -> int:
        return len(self._sessions)

    # -------------------------
    # lifecycle
    # -------------------------
    async def init(self) -> int:
        """Purge expired rows, then load every active session into the cache."""
        removed = await self.cleanup_expired()
        async with self.db_lock:
            sessions = await asyncio.to_thread(list_sessions_sync, self.db_conn)
        for s in sessions:
            self._cache_put(s)
        print(f"[StorySession] Loaded {len(sessions)} active sessions (expired removed={removed})")
        return len(sessions)

    async def create(
        self,
        *,
        discord_user_id: str,
        db_user_id: int,
        story_id: str,
        start_node_id: str,
        message_id: str | None = None,
        channel_id: str | None = None,
        guild_id: str | None = None,
        user_level: int = 1,
        is_incremental_ai: bool = False,
        ai_context: AIStoryContext | None = None,
    ) -> StorySession:
        ts = self.clock()
        session = StorySession(
            session_id=str(uuid.uuid4()),
            discord_user_id=str(discord_user_id),
            db_user_id=int(db_user_id),
            story_id=str(story_id),
            current_node_id=str(start_node_id),
            started_at=ts,
            last_interaction_at=ts,
            message_id=str(message_id) if message_id else None,
            channel_id=str(channel_id) if channel_id else None,
            guild_id=str(guild_id) if guild_id else None,
            user_level=max(1, int(user_level or 1)),
            is_incremental_ai=bool(is_incremental_ai),
            ai_context=ai_context,
        )
        async with self.db_lock:
            replaced = await asyncio.to_thread(delete_sessions_for_user_sync, self.db_conn, session.discord_user_id)
            await asyncio.to_thread(insert_session_sync, self.db_conn, session)

        for old_session_id, _old_story_id in replaced:
            self._cache_drop(old_session_id)
        stale_id = self._by_user.get(session.discord_user_id)
        if stale_id:
            self._cache_drop(stale_id)
        self._cache_put(session)

        if replaced:
            print(f"[StorySession] Replaced {len(replaced)} existing session(s) for user {session.discord_user_id}")
            if self.on_released is not None:
                await self.on_released([story_id for _sid, story_id in replaced])
        return copy.deepcopy(session)

    async def _load(self, fetch, key: str) -> StorySession | None:
        async with self.db_lock:
            session = await asyncio.to_thread(fetch, self.db_conn, key)
        if session is None:
            return None
        if self._is_expired(session):
            await self.delete(session.session_id)
            if self.on_released is not None:
                await self.on_released([session.story_id])
            return None
        self._cache_put(session)
        return copy.deepcopy(session)

    async def _from_cache(self, session_id: str | None) -> StorySession | None:
        if not session_id:
            return None
        session = self._sessions.get(session_id)
        if session is None:
            return None
        if self._is_expired(session):
            await self.delete(session_id)
            if self.on_released is not None:
                await self.on_released([session.story_id])
            return None
        return copy.deepcopy(session)

    async def get(self, session_id: str) -> StorySession | None:
        cached = await self._from_cache(session_id)
        if cached is not None:
            return cached
        return await self._load(fetch_session_sync, str(session_id))

    async def get_by_user(self, discord_user_id: str) -> StorySession | None:
        cached = await self._from_cache(self._by_user.get(str(discord_user_id)))
        if cached is not None:
            return cached
        return await self._load(fetch_session_by_user_sync, str(discord_user_id))

    async def get_by_message(self, message_id: str) -> StorySession | None:
        cached = await self._from_cache(self._by_message.get(str(message_id)))
        if cached is not None:
            return cached
        return await self._load(fetch_session_by_message_sync, str(message_id))

    async def exists(self, session_id: str) -> bool:
        return (await self.get(session_id)) is not None

    async def update(self, session: StorySession) -> bool:
        """Persist the full state and bump last_interaction_at.

        Returns False without touching the cache if the session was deleted in the
        meantime (for example cancelled while a generation call was in flight).
        """
        session.last_interaction_at = self.clock()
        async with self.db_lock:
            ok = await asyncio.to_thread(update_session_sync, self.db_conn, session)
        if not ok:
            self._cache_drop(session.session_id)
            return False
        cached = self._sessions.get(session.session_id)
        stored = copy.deepcopy(session)
        if cached is not None:
            stored.is_processing = cached.is_processing
            stored.processing_started_at = cached.processing_started_at
        self._cache_put(stored)
        return True

    async def set_message(self, session_id: str, message_id: str | None) -> bool:
        async with self.db_lock:
            ok = await asyncio.to_thread(
                set_message_id_sync, self.db_conn, str(session_id), str(message_id) if message_id else None
            )
        cached = self._sessions.get(str(session_id))
        if ok and cached is not None:
            updated = copy.deepcopy(cached)
            updated.message_id = str(message_id) if message_id else None
            self._cache_put(updated)
        return ok

    async def delete(self, session_id: str) -> bool:
        async with self.db_lock:
            removed = await asyncio.to_thread(delete_session_sync, self.db_conn, str(session_id))
        self._cache_drop(str(session_id))
        return removed

    async def list_all(self) -> list[StorySession]:
        async with self.db_lock:
            return await asyncio.to_thread(list_sessions_sync, self.db_conn)

    async def cleanup_expired(self, max_age_hours: float | None = None) -> int:
        age_hours = float(max_age_hours if max_age_hours is not None else self.ttl_hours)
        cutoff = self.clock() - int(age_hours * 3600 * 1000)
        async with self.db_lock:
            expired = await asyncio.to_thread(delete_expired_sessions_sync, self.db_conn, cutoff)

        story_ids = [story_id for _sid, story_id in expired]
        for session_id, _story_id in expired:
            self._cache_drop(session_id)
        for session_id, session in list(self._sessions.items()):
            if session.last_interaction_at < cutoff:
                story_ids.append(session.story_id)
                self._cache_drop(session_id)

        if story_ids:
            print(f"[StorySession] Cleaned up {len(expired)} expired sessions")
            if self.on_released is not None:
                await self.on_released(story_ids)
        return len(expired)

    # -------------------------
    # processing lock
    # -------------------------
    async def is_processing(self, session_id: str) -> bool:
        async with self.db_lock:
            state = await asyncio.to_thread(get_processing_sync, self.db_conn, str(session_id))
        if state is None:
            return False
        return self._lock_is_live(*state)

    async def set_processing(self, session_id: str, processing: bool) -> bool:
        ts = self.clock()
        async with self.db_lock:
            ok = await asyncio.to_thread(set_processing_sync, self.db_conn, str(session_id), bool(processing), ts)
        cached = self._sessions.get(str(session_id))
        if ok and cached is not None:
            cached.is_processing = bool(processing)
            cached.processing_started_at = ts if processing else None
        return ok

    async def try_acquire_processing(self, session_id: str) -> bool:
        ts = self.clock()
        stale_before = ts - self.stale_lock_seconds * 1000 if self.stale_lock_seconds > 0 else 0
        async with self.db_lock:
            ok = await asyncio.to_thread(
                try_acquire_processing_sync, self.db_conn, str(session_id), ts, stale_before
            )
        cached = self._sessions.get(str(session_id))
        if ok and cached is not None:
            cached.is_processing = True
            cached.processing_started_at = ts
        return ok
