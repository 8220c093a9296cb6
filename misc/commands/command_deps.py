from __future__ import annotations

from dataclasses import dataclass
from dataclasses import field
from typing import Any
from typing import Callable


def _default_false(*args, **kwargs) -> bool:
    return False


@dataclass(frozen=True)
class CommandDeps:
    # Core/shared
    db_lock: Any = None
    db_conn: Any = None
    send_chunked: Callable | None = None

    # Story runtime
    engine: Any = None
    sessions: Any = None
    registry: Any = None
    presenter: Any = None
    catalog_dir: str = ""

    # Economy
    rewards: Any = None
    work_service: Any = None

    # Store functions
    list_schema_migrations_sync: Callable | None = None


@dataclass(frozen=True)
class CommandGates:
    in_allowed_channel: Callable[[Any], bool] = _default_false
    allowed_channel_ids: set[int] = field(default_factory=set)
    user_is_owner: Callable[[Any], bool] = _default_false
