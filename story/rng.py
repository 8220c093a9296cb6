from __future__ import annotations

import random
import secrets
from typing import Sequence
from typing import TypeVar

T = TypeVar("T")


def secure_random_index(length: int) -> int:
    """Uniform index in [0, length) from the OS CSPRNG."""
    if length <= 1:
        return 0
    return secrets.randbelow(length)


def random_int(lo: int, hi: int) -> int:
    """Inclusive on both ends."""
    if hi < lo:
        lo, hi = hi, lo
    return lo + secure_random_index(hi - lo + 1)


def pick_one(options: Sequence[T]) -> T:
    if not options:
        raise ValueError("Cannot pick from an empty sequence.")
    return options[secure_random_index(len(options))]


def pick_many(options: Sequence[T], count: int) -> list[T]:
    available = list(options)
    picked: list[T] = []
    for _ in range(min(max(0, int(count)), len(available))):
        picked.append(available.pop(secure_random_index(len(available))))
    return picked


class RollSource:
    """Source of uniform draws for outcome rolls. Seedable for tests."""

    def __init__(self, seed: int | None = None) -> None:
        self._random = random.Random(seed)

    def percent(self) -> float:
        return self._random.random() * 100


class FixedRolls(RollSource):
    """Replays a scripted sequence of percent draws, repeating the last one."""

    def __init__(self, values: Sequence[float]) -> None:
        super().__init__(0)
        if not values:
            raise ValueError("FixedRolls needs at least one value.")
        self._values = [float(v) for v in values]
        self._idx = 0

    def percent(self) -> float:
        value = self._values[min(self._idx, len(self._values) - 1)]
        self._idx += 1
        return value
