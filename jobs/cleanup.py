from __future__ import annotations

import asyncio


async def session_cleanup_loop(
    *,
    session_manager,
    interval_seconds: int = 30 * 60,
    max_age_hours: float | None = None,
) -> None:
    while True:
        await asyncio.sleep(max(10, int(interval_seconds)))
        try:
            removed = await session_manager.cleanup_expired(max_age_hours)
            if removed:
                print(f"[Jobs] session cleanup removed={removed}")
        except Exception as e:
            print(f"[Jobs] session cleanup error: {e}")
