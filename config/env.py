from __future__ import annotations

import os
import re


def parse_id_set(raw: str | None) -> set[int]:
    if not raw:
        return set()
    out: set[int] = set()
    for tok in re.split(r"[\s,;]+", raw.strip()):
        if not tok:
            continue
        if re.fullmatch(r"\d{8,22}", tok):
            out.add(int(tok))
    return out


def resolve_allowed_channel_ids(default_ids: set[int]) -> set[int]:
    env_ids = parse_id_set(os.getenv("STORY_ALLOWED_CHANNEL_IDS"))
    return env_ids if env_ids else set(default_ids)


def env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return int(default)
    try:
        return int(raw)
    except ValueError:
        print(f"[CFG] {name}={raw!r} is not an integer; using {default}")
        return int(default)


def env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return float(default)
    try:
        return float(raw)
    except ValueError:
        print(f"[CFG] {name}={raw!r} is not a number; using {default}")
        return float(default)
