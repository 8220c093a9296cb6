from __future__ import annotations

import discord

from config.defaults import DISCORD_MAX_MESSAGE_LEN
from story.models import STORY_ACTIONS
from story.models import DecisionNode
from story.models import FinalResult
from story.models import RollResult
from story.models import StorySession

CUSTOM_ID_PREFIX = "story_"
RESUME_PREFIX = "story_resume_"
ABANDON_PREFIX = "story_abandon_"


def build_custom_id(story_id: str, session_id: str, action: str) -> str:
    return f"{CUSTOM_ID_PREFIX}{story_id}_{session_id}_{action}"


def parse_custom_id(custom_id: str) -> tuple[str, str, str] | None:
    """Split `story_{story_id}_{session_id}_{action}` from the right.

    Story ids may contain underscores; session ids (uuid4) and actions never do.
    Returns (story_id, session_id, action) or None.
    """
    raw = str(custom_id or "")
    if not raw.startswith(CUSTOM_ID_PREFIX):
        return None
    if raw.startswith(RESUME_PREFIX) or raw.startswith(ABANDON_PREFIX):
        return None
    parts = raw[len(CUSTOM_ID_PREFIX):].rsplit("_", 2)
    if len(parts) != 3 or not all(parts):
        return None
    story_id, session_id, action = parts
    if action not in STORY_ACTIONS:
        return None
    return (story_id, session_id, action)


def parse_session_prompt_id(custom_id: str) -> tuple[str, str] | None:
    """`story_resume_{sid}` / `story_abandon_{sid}` -> ("resume"|"abandon", sid)."""
    raw = str(custom_id or "")
    if raw.startswith(RESUME_PREFIX) and len(raw) > len(RESUME_PREFIX):
        return ("resume", raw[len(RESUME_PREFIX):])
    if raw.startswith(ABANDON_PREFIX) and len(raw) > len(ABANDON_PREFIX):
        return ("abandon", raw[len(ABANDON_PREFIX):])
    return None


def _coins(coins: int) -> str:
    return f"{'+' if coins >= 0 else ''}{coins}"


def format_roll(roll: RollResult | None) -> str:
    if roll is None:
        return ""
    verdict = "success" if roll.success else "fail"
    return f"🎲 Rolled {roll.rolled:.2f} (needed < {roll.needed:g}) - {verdict}"


def format_final(final: FinalResult) -> str:
    mood = "🏆" if final.is_positive_ending else "💀"
    return f"{mood} Story finished: {_coins(final.total_coins)} coins, +{final.xp_earned} XP"


def render_story_text(
    *,
    title: str,
    emoji: str,
    narrative: str,
    decision: DecisionNode | None = None,
    decision_text: str = "",
    accumulated_coins: int = 0,
    roll: RollResult | None = None,
    final: FinalResult | None = None,
) -> str:
    lines = [f"{emoji} **{title}**", ""]
    if narrative:
        lines.extend([narrative, ""])
    roll_line = format_roll(roll)
    if roll_line and final is None:
        lines.extend([roll_line, ""])
    if decision is not None:
        if decision_text:
            lines.extend([decision_text, ""])
        for choice_id in ("choiceX", "choiceY"):
            choice = decision.choices.get(choice_id)
            if choice is not None:
                lines.append(f"**{choice.label}**: {choice.description}")
        lines.append("")
        lines.append(f"Coins so far: {_coins(accumulated_coins)}")
    if final is not None:
        lines.append(format_final(final))
    text = "\n".join(lines).strip()
    if len(text) > DISCORD_MAX_MESSAGE_LEN:
        text = text[: DISCORD_MAX_MESSAGE_LEN - 3] + "..."
    return text


def journal_recap(session: StorySession, *, max_chars: int = 900) -> str:
    """Short "previously on" summary of a session, for resume prompts."""
    lines: list[str] = []
    for entry in session.story_journal:
        if entry.type == "decision" and entry.choice and entry.options:
            picked = entry.options.get(entry.choice, {}).get("label") or entry.choice
            lines.append(f"- You chose **{picked}**")
        elif entry.type == "outcome" and entry.roll_result is not None:
            lines.append(f"- {'It worked' if entry.roll_result.success else 'It went wrong'}")
        elif entry.type == "intro":
            text = " ".join(entry.narrative.split())
            lines.append(f"- {text[:160] + '...' if len(text) > 160 else text}")
    lines.append(f"Coins so far: {_coins(session.accumulated_coins)}")
    out = "\n".join(lines)
    if len(out) > max_chars:
        out = "...\n" + out[-(max_chars - 4):]
    return out


def build_story_view(
    *,
    story_id: str,
    session_id: str,
    decision: DecisionNode,
    accumulated_coins: int = 0,
) -> discord.ui.View:
    """Buttons for one decision. Clicks are routed by custom id, not by view callbacks."""
    view = discord.ui.View(timeout=None)
    for choice_id in ("choiceX", "choiceY"):
        choice = decision.choices.get(choice_id)
        if choice is None:
            continue
        view.add_item(
            discord.ui.Button(
                label=choice.label[:80],
                style=discord.ButtonStyle.primary,
                custom_id=build_custom_id(story_id, session_id, choice_id),
            )
        )
    view.add_item(
        discord.ui.Button(
            label=f"Keep balance ({_coins(accumulated_coins)})",
            style=discord.ButtonStyle.success,
            custom_id=build_custom_id(story_id, session_id, "keepBalance"),
        )
    )
    view.add_item(
        discord.ui.Button(
            label="Cancel",
            style=discord.ButtonStyle.secondary,
            custom_id=build_custom_id(story_id, session_id, "cancel"),
        )
    )
    return view


def build_resume_view(session_id: str) -> discord.ui.View:
    view = discord.ui.View(timeout=None)
    view.add_item(
        discord.ui.Button(
            label="Resume story",
            style=discord.ButtonStyle.primary,
            custom_id=f"{RESUME_PREFIX}{session_id}",
        )
    )
    view.add_item(
        discord.ui.Button(
            label="Abandon",
            style=discord.ButtonStyle.danger,
            custom_id=f"{ABANDON_PREFIX}{session_id}",
        )
    )
    return view
