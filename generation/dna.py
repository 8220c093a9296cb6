from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from config.defaults import AI_STORY_MAX_USER_FACTS
from config.defaults import AI_STORY_NOUN_COUNT
from config.defaults import AI_STORY_VERB_COUNT
from story.rng import pick_many
from story.rng import pick_one


STORY_SETTINGS: tuple[str, ...] = (
    "in a medieval castle",
    "on an abandoned space station",
    "in an underwater research lab",
    "at a chaotic wedding reception",
    "in a haunted office building",
    "on a night train crossing the mountains",
    "in a tiny village bakery",
    "backstage at a talent show",
    "in a museum after closing time",
    "at a budget ski resort",
    "inside a call centre during a blackout",
    "on a pirate ship with a broken compass",
    "at a robotics fair",
    "in a hospital waiting room",
    "at a music festival in the rain",
    "in a zoo where the animals escaped",
    "at a company retreat in the woods",
    "in the server room of a bank",
    "on a rooftop during a city marathon",
    "in a submarine sandwich shop",
)

STORY_TWISTS: tuple[str, ...] = (
    "where someone planted fake evidence",
    "where two people swapped identities",
    "where a secret treasure hunt is under way",
    "where the boss is hiding something",
    "where everyone lies about the same thing",
    "where a rival is trying to sabotage you",
    "where a valuable object just vanished",
    "where nobody remembers the last hour",
    "where a celebrity shows up unannounced",
    "where the fire alarm will not stop",
    "where an important delivery went to the wrong place",
    "where a pet is loose and causing havoc",
    "where a bet got completely out of hand",
    "where an inspection starts in ten minutes",
    "where the only key is in the wrong pocket",
    "where a mysterious note keeps reappearing",
)

STORY_ROLES: tuple[str, ...] = (
    "a new intern on their first day",
    "a terrified accountant",
    "a lost pizza courier",
    "an overconfident security guard",
    "a sleepy night receptionist",
    "a junior programmer with a deadline",
    "a substitute tour guide",
    "a retired magician",
    "a nervous wedding planner",
    "a janitor who knows every secret",
    "a food critic in disguise",
    "an influencer with a dead phone",
    "a volunteer firefighter",
    "a competitive grandparent",
    "a detective on their day off",
)


@dataclass(slots=True, frozen=True)
class StoryDNA:
    setting: str
    twist: str
    role: str


def generate_story_dna() -> StoryDNA:
    return StoryDNA(setting=pick_one(STORY_SETTINGS), twist=pick_one(STORY_TWISTS), role=pick_one(STORY_ROLES))


def load_words_from_file(path: str | Path) -> list[str]:
    p = Path(path)
    if not p.exists():
        return []
    words: list[str] = []
    for line in p.read_text(encoding="utf-8").splitlines():
        word = line.strip()
        if word and not word.startswith("#"):
            words.append(word)
    return words


def parse_member_facts(text: str) -> dict[str, list[str]]:
    """Parse `<discord_id>: fact; fact` lines. Blank and `#` lines are skipped."""
    members: dict[str, list[str]] = {}
    for line in (text or "").splitlines():
        line = line.strip()
        if not line or line.startswith("#") or ":" not in line:
            continue
        discord_id, _, facts_raw = line.partition(":")
        facts = [f.strip() for f in facts_raw.split(";") if f.strip()]
        if discord_id.strip() and facts:
            members[discord_id.strip()] = facts
    return members


def default_data_dir() -> str:
    return os.path.join(Path(__file__).resolve().parents[1], "data")


class StoryWordBank:
    """Word lists and member facts that seed generated stories. Loaded lazily, once."""

    def __init__(self, data_dir: str | None = None):
        self.data_dir = Path(data_dir or default_data_dir())
        self._nouns: list[str] | None = None
        self._verbs: list[str] | None = None
        self._members: dict[str, list[str]] | None = None

    def nouns(self) -> list[str]:
        if self._nouns is None:
            self._nouns = load_words_from_file(self.data_dir / "story-words-nouns.txt")
            print(f"[AIStory] Loaded {len(self._nouns)} nouns")
        return self._nouns

    def verbs(self) -> list[str]:
        if self._verbs is None:
            self._verbs = load_words_from_file(self.data_dir / "story-words-verbs.txt")
            print(f"[AIStory] Loaded {len(self._verbs)} verbs")
        return self._verbs

    def members(self) -> dict[str, list[str]]:
        if self._members is None:
            path = self.data_dir / "story-members.txt"
            try:
                self._members = parse_member_facts(path.read_text(encoding="utf-8")) if path.exists() else {}
            except OSError as e:
                print(f"[AIStory] Failed to load member metadata: {e}")
                self._members = {}
            if self._members:
                print(f"[AIStory] Loaded {len(self._members)} member profiles")
        return self._members

    def random_words(self) -> tuple[list[str], list[str]]:
        return (pick_many(self.nouns(), AI_STORY_NOUN_COUNT), pick_many(self.verbs(), AI_STORY_VERB_COUNT))

    def user_facts(self, discord_user_id: str | None) -> list[str]:
        if not discord_user_id:
            return []
        facts = self.members().get(str(discord_user_id)) or []
        return pick_many(facts, min(AI_STORY_MAX_USER_FACTS, len(facts)))
