from __future__ import annotations

import asyncio
import unittest

from generation.retry import linear_backoff
from generation.retry import with_retry


class RetryTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.sleeps: list[float] = []

    async def _sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)

    def test_linear_backoff(self):
        delay = linear_backoff(1.5)
        self.assertEqual([delay(i) for i in range(3)], [1.5, 3.0, 4.5])
        self.assertEqual(linear_backoff(-2)(0), 0.0)

    async def test_returns_first_success(self):
        calls = []

        async def _fn():
            calls.append(1)
            if len(calls) < 3:
                raise ValueError(f"flaky {len(calls)}")
            return "done"

        result = await with_retry(_fn, attempts=3, backoff=linear_backoff(1.0), sleep=self._sleep)
        self.assertEqual(result, "done")
        self.assertEqual(len(calls), 3)
        self.assertEqual(self.sleeps, [1.0, 2.0])

    async def test_raises_last_error_after_final_attempt(self):
        calls = []

        async def _fn():
            calls.append(1)
            raise ValueError(f"attempt {len(calls)}")

        with self.assertRaises(ValueError) as ctx:
            await with_retry(_fn, attempts=2, backoff=linear_backoff(0.5), sleep=self._sleep)
        self.assertEqual(str(ctx.exception), "attempt 2")
        self.assertEqual(self.sleeps, [0.5])

    async def test_single_attempt_never_sleeps(self):
        async def _fn():
            raise RuntimeError("nope")

        with self.assertRaises(RuntimeError):
            await with_retry(_fn, attempts=0, sleep=self._sleep)
        self.assertEqual(self.sleeps, [])

    async def test_cancellation_is_not_retried(self):
        calls = []

        async def _fn():
            calls.append(1)
            raise asyncio.CancelledError()

        with self.assertRaises(asyncio.CancelledError):
            await with_retry(_fn, attempts=3, sleep=self._sleep)
        self.assertEqual(len(calls), 1)
        self.assertEqual(self.sleeps, [])


if __name__ == "__main__":
    unittest.main()
