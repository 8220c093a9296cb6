from __future__ import annotations

import asyncio
from typing import Awaitable
from typing import Callable
from typing import TypeVar

from config.defaults import AI_RETRY_ATTEMPTS
from config.defaults import AI_RETRY_BACKOFF_SECONDS

T = TypeVar("T")


def linear_backoff(base_seconds: float) -> Callable[[int], float]:
    """Delay after the failed attempt with zero-based index `attempt`."""
    base = max(0.0, float(base_seconds))

    def _delay(attempt: int) -> float:
        return base * (attempt + 1)

    return _delay


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    attempts: int = AI_RETRY_ATTEMPTS,
    backoff: Callable[[int], float] | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    tag: str = "AIStory",
) -> T:
    """Await `fn()` up to `attempts` times, sleeping `backoff(i)` between tries.

    Cancellation is not retried: CancelledError propagates out of both the call
    and the sleep, so tearing down the owning task stops the loop.
    """
    attempts = max(1, int(attempts))
    backoff = backoff or linear_backoff(AI_RETRY_BACKOFF_SECONDS)
    for attempt in range(attempts - 1):
        try:
            return await fn()
        except Exception as e:
            delay = backoff(attempt)
            print(f"[{tag}] Attempt {attempt + 1} failed: {e}; retrying in {delay:.1f}s")
            await sleep(delay)
    # last attempt: errors propagate to the caller
    return await fn()
