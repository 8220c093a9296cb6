from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable


@dataclass(frozen=True)
class RuntimeDeps:
    # story runtime
    engine: Any
    sessions: Any
    presenter: Any
    work_service: Any

    # gates
    allowed_channel_ids: set[int]


@dataclass(frozen=True)
class RuntimeBootDeps:
    cleanup_loop_func: Callable
    story_count: int = 0
