from __future__ import annotations

from generation.dna import StoryDNA
from story.models import AIStoryContext


LAYER1_USER_MESSAGE = "Generate a new story."
LAYER2_USER_MESSAGE = "Continue the story."
LAYER3_USER_MESSAGE = "Finish the story."

_UNKNOWN_CHOICE = {"label": "unknown", "description": "unknown"}


def build_layer1_prompt(dna: StoryDNA, nouns: list[str], verbs: list[str], user_facts: list[str]) -> str:
    words_section = ""
    if nouns or verbs:
        words_section = (
            "\nREQUIRED ELEMENTS - weave these into the plot, do not just mention them:\n"
            f"Key nouns (use at least 5): {', '.join(nouns)}\n"
            f"Key actions (use at least 1): {', '.join(verbs)}\n"
        )
    user_section = ""
    if user_facts:
        user_section = f"\nThe main character has these traits: {', '.join(user_facts)}. Use them naturally.\n"

    return f"""You are a creative writer for a Discord game.

STORY SETUP:
- Setting: {dna.setting}
- Situation: {dna.twist}
- Main character: {dna.role}

Write a SHORT funny interactive story that follows this setup. It MUST take place in this setting,
with this situation, and the player is this character.
{words_section}{user_section}
NARRATIVE RULES:
1. decision1.narrative presents a CLEAR situation that demands action
2. Every choice label is an ACTION VERB PHRASE ("Run away", "Call security", "Hide")
3. Every choice is a DIRECT response to that situation
4. The two choices take DIFFERENT approaches (safe/risky, honest/sneaky, fight/flight)

BAD: a suspicious package, and the choice is "Buy ice cream" (unrelated)
GOOD: a suspicious package, and the choices are "Open the package" / "Call reception"

OUTPUT JSON:
{{
  "title": "Title (5-50 chars)",
  "emoji": "One emoji",
  "intro": {{ "narrative": "Setup (50-500 chars)" }},
  "decision1": {{
    "narrative": "Situation requiring a choice (20-400 chars)",
    "choiceX": {{ "label": "Action verb phrase (max 25 chars)", "description": "What happens (max 150 chars)" }},
    "choiceY": {{ "label": "Action verb phrase (max 25 chars)", "description": "What happens (max 150 chars)" }}
  }}
}}

Be funny."""


def _choice(decision: dict | None, letter: str) -> dict:
    if not decision:
        return _UNKNOWN_CHOICE
    return decision.get(f"choice{letter}") or _UNKNOWN_CHOICE


def build_layer2_prompt(context: AIStoryContext, was_success: bool) -> str:
    made = _choice(context.decision1, context.path_so_far[:1] or "X")
    outcome = "SUCCEEDED" if was_success else "FAILED"
    return f"""Continue this story. The player made a choice and the outcome is decided.

STORY SO FAR:
Title: {context.title} {context.emoji}
Intro: {context.intro_narrative}
Decision: {context.decision1.get("narrative", "")}
Player chose: "{made['label']}" - {made['description']}
Outcome: {outcome}

Stay in the same setting, tone, and situation.
Write the NEXT PART: a short outcome narrative and the second decision.

JSON FORMAT:
{{
  "outcomeNarrative": "What happened after the attempt (20-300 chars)",
  "decision2": {{
    "narrative": "Second decision (20-400 chars)",
    "choiceX": {{ "label": "Action verb phrase (max 25 chars)", "description": "What happens (max 150 chars)" }},
    "choiceY": {{ "label": "Action verb phrase (max 25 chars)", "description": "What happens (max 150 chars)" }}
  }}
}}

CAUSE AND EFFECT:
1. outcomeNarrative describes what happened when they tried to "{made['label']}"
2. The result is the logical consequence of THAT action: it {"worked" if was_success else "backfired"}
3. decision2 choices follow from the new situation
4. Every label is an ACTION VERB PHRASE

LIMITS: outcomeNarrative at most 300 characters, labels at most 25 characters."""


def build_layer3_prompt(context: AIStoryContext, was_success: bool) -> str:
    path = context.path_so_far
    first = _choice(context.decision1, path[:1] or "X")
    second = _choice(context.decision2, "X" if path.endswith("X") else "Y")
    outcome = "SUCCEEDED" if was_success else "FAILED"
    decision2_text = (context.decision2 or {}).get("narrative", "...")
    ending_tone = (
        "Celebrate their success, they made it!"
        if was_success
        else "Show the unfortunate but logical consequence."
    )
    return f"""Finish this story with a final ending.

STORY SO FAR:
Title: {context.title} {context.emoji}
Intro: {context.intro_narrative}
First decision: player chose "{first['label']}"
After the first outcome: {context.first_outcome_narrative or "..."}
Second decision: {decision2_text}
Player chose: "{second['label']}"
Final outcome: {outcome}

Stay in the same setting, tone, and situation.
Write the ENDING: the outcome narrative and the terminal narrative.

JSON FORMAT:
{{
  "outcomeNarrative": "What happened in the final moment (20-300 chars)",
  "terminal": {{ "narrative": "Story ending (30-500 chars)" }}
}}

CAUSE AND EFFECT:
1. outcomeNarrative is the direct result of "{second['label']}"
2. terminal.narrative shows the FINAL CONSEQUENCE. {ending_tone}
3. The ending references their journey and is funny

LIMITS: outcomeNarrative at most 300 characters, terminal.narrative at most 500 characters."""
