from __future__ import annotations

import enum
import re
from dataclasses import dataclass
from dataclasses import field
from typing import Any
from typing import Callable
from typing import ClassVar
from typing import Union

from config.defaults import DYNAMIC_STORY_PREFIX
from story.rng import pick_one
from story.rng import random_int


CHOICE_IDS = ("choiceX", "choiceY")
STORY_ACTIONS = ("choiceX", "choiceY", "keepBalance", "cancel")

_VAR_REF_RE = re.compile(r"^\$([A-Za-z_][A-Za-z0-9_]*)$")


class NodeStatus(str, enum.Enum):
    GENERATED = "generated"
    PENDING = "pending"


# =========================
# DYNAMIC VALUES
# =========================
@dataclass(slots=True, frozen=True)
class Fixed:
    value: Any


@dataclass(slots=True, frozen=True)
class Randomized:
    """A value drawn per play-through. Resolved once per session and cached."""

    generator: Callable[[], Any]
    spec: dict | None = None


@dataclass(slots=True, frozen=True)
class VarRef:
    """Points at a named entry of the owning node's `variables`."""

    name: str


DynamicValue = Union[Fixed, Randomized, VarRef]


def value_from_spec(raw: Any) -> DynamicValue | None:
    if raw is None:
        return None
    if isinstance(raw, (Fixed, Randomized, VarRef)):
        return raw
    if isinstance(raw, str):
        m = _VAR_REF_RE.match(raw.strip())
        if m:
            return VarRef(m.group(1))
        return Fixed(raw)
    if isinstance(raw, dict):
        if "min" in raw and "max" in raw:
            lo, hi = int(raw["min"]), int(raw["max"])
            if lo > hi:
                raise ValueError(f"Random range min {lo} is above max {hi}")
            return Randomized(lambda: random_int(lo, hi), spec={"min": lo, "max": hi})
        if "choices" in raw:
            options = list(raw.get("choices") or [])
            if not options:
                raise ValueError("Random choice list is empty")
            return Randomized(lambda: pick_one(options), spec={"choices": options})
        raise ValueError(f"Unsupported dynamic value spec: {sorted(raw.keys())}")
    return Fixed(raw)


def value_to_spec(value: DynamicValue | None) -> Any:
    if value is None:
        return None
    if isinstance(value, Fixed):
        return value.value
    if isinstance(value, VarRef):
        return f"${value.name}"
    if value.spec is None:
        raise ValueError("Randomized value has no serializable spec")
    return dict(value.spec)


# =========================
# NODES
# =========================
@dataclass(slots=True)
class StoryChoice:
    id: str
    label: str
    description: str
    next_node_id: str
    base_reward: int = 0
    risk_multiplier: float = 1.0


@dataclass(slots=True)
class IntroNode:
    kind: ClassVar[str] = "intro"
    id: str
    narrative: DynamicValue
    next_node_id: str
    coins_change: DynamicValue | None = None
    variables: dict[str, DynamicValue] = field(default_factory=dict)
    status: NodeStatus = NodeStatus.GENERATED


@dataclass(slots=True)
class DecisionNode:
    kind: ClassVar[str] = "decision"
    id: str
    narrative: DynamicValue
    choices: dict[str, StoryChoice]
    coins_change: DynamicValue | None = None
    variables: dict[str, DynamicValue] = field(default_factory=dict)
    status: NodeStatus = NodeStatus.GENERATED


@dataclass(slots=True)
class OutcomeNode:
    kind: ClassVar[str] = "outcome"
    id: str
    narrative: DynamicValue
    success_chance: float
    success_node_id: str
    fail_node_id: str
    coins_change: DynamicValue | None = None
    variables: dict[str, DynamicValue] = field(default_factory=dict)
    status: NodeStatus = NodeStatus.GENERATED


@dataclass(slots=True)
class TerminalNode:
    kind: ClassVar[str] = "terminal"
    id: str
    narrative: DynamicValue
    coins_change: DynamicValue
    is_positive_ending: bool
    xp_multiplier: float = 1.0
    variables: dict[str, DynamicValue] = field(default_factory=dict)
    status: NodeStatus = NodeStatus.GENERATED


StoryNode = Union[IntroNode, DecisionNode, OutcomeNode, TerminalNode]


def is_intro(node: Any) -> bool:
    return isinstance(node, IntroNode)


def is_decision(node: Any) -> bool:
    return isinstance(node, DecisionNode)


def is_outcome(node: Any) -> bool:
    return isinstance(node, OutcomeNode)


def is_terminal(node: Any) -> bool:
    return isinstance(node, TerminalNode)


def is_pending(node: Any) -> bool:
    return getattr(node, "status", NodeStatus.GENERATED) == NodeStatus.PENDING


def successor_ids(node: StoryNode) -> list[tuple[str, str]]:
    """(label, node id) pairs for every outgoing edge of `node`."""
    if is_intro(node):
        return [("next", node.next_node_id)]
    if is_decision(node):
        return [(cid, node.choices[cid].next_node_id) for cid in CHOICE_IDS if cid in node.choices]
    if is_outcome(node):
        return [("success", node.success_node_id), ("fail", node.fail_node_id)]
    return []


@dataclass(slots=True)
class Story:
    id: str
    title: str
    emoji: str
    start_node_id: str
    nodes: dict[str, StoryNode]
    expected_paths: int = 0
    average_reward: int = 0
    max_possible_reward: int = 0
    min_possible_reward: int = 0

    @property
    def is_dynamic(self) -> bool:
        return is_dynamic_story_id(self.id)


def is_dynamic_story_id(story_id: str) -> bool:
    return str(story_id or "").startswith(DYNAMIC_STORY_PREFIX)


# =========================
# SERIALIZATION
# =========================
def _variables_from_dict(raw: dict | None) -> dict[str, DynamicValue]:
    out: dict[str, DynamicValue] = {}
    for name, spec in (raw or {}).items():
        value = value_from_spec(spec)
        if value is None or isinstance(value, VarRef):
            raise ValueError(f"Variable '{name}' must be a literal or a random spec")
        out[str(name)] = value
    return out


def node_from_dict(node_id: str, data: dict) -> StoryNode:
    kind = str(data.get("type") or "").strip().lower()
    common = {
        "id": node_id,
        "narrative": value_from_spec(data.get("narrative", "")),
        "variables": _variables_from_dict(data.get("variables")),
        "status": NodeStatus(data.get("status") or NodeStatus.GENERATED.value),
    }
    if kind == "intro":
        return IntroNode(
            next_node_id=str(data["next_node_id"]),
            coins_change=value_from_spec(data.get("coins_change")),
            **common,
        )
    if kind == "decision":
        raw_choices = data.get("choices") or {}
        choices: dict[str, StoryChoice] = {}
        for cid in CHOICE_IDS:
            c = raw_choices.get(cid)
            if not isinstance(c, dict):
                raise ValueError(f"Decision node '{node_id}' is missing {cid}")
            choices[cid] = StoryChoice(
                id=cid,
                label=str(c.get("label") or ""),
                description=str(c.get("description") or ""),
                next_node_id=str(c["next_node_id"]),
                base_reward=int(c.get("base_reward") or 0),
                risk_multiplier=float(c.get("risk_multiplier") or 1.0),
            )
        return DecisionNode(
            choices=choices,
            coins_change=value_from_spec(data.get("coins_change")),
            **common,
        )
    if kind == "outcome":
        return OutcomeNode(
            success_chance=float(data["success_chance"]),
            success_node_id=str(data["success_node_id"]),
            fail_node_id=str(data["fail_node_id"]),
            coins_change=value_from_spec(data.get("coins_change")),
            **common,
        )
    if kind == "terminal":
        return TerminalNode(
            coins_change=value_from_spec(data.get("coins_change", 0)),
            is_positive_ending=bool(data.get("is_positive_ending", False)),
            xp_multiplier=float(data.get("xp_multiplier", 1.0)),
            **common,
        )
    raise ValueError(f"Node '{node_id}' has unknown type '{kind}'")


def node_to_dict(node: StoryNode) -> dict:
    out: dict[str, Any] = {"type": node.kind, "narrative": value_to_spec(node.narrative)}
    if node.variables:
        out["variables"] = {k: value_to_spec(v) for k, v in node.variables.items()}
    if node.status != NodeStatus.GENERATED:
        out["status"] = node.status.value
    if node.coins_change is not None:
        out["coins_change"] = value_to_spec(node.coins_change)

    if is_intro(node):
        out["next_node_id"] = node.next_node_id
    elif is_decision(node):
        out["choices"] = {
            cid: {
                "label": c.label,
                "description": c.description,
                "base_reward": c.base_reward,
                "risk_multiplier": c.risk_multiplier,
                "next_node_id": c.next_node_id,
            }
            for cid, c in node.choices.items()
        }
    elif is_outcome(node):
        out["success_chance"] = node.success_chance
        out["success_node_id"] = node.success_node_id
        out["fail_node_id"] = node.fail_node_id
    elif is_terminal(node):
        out["is_positive_ending"] = node.is_positive_ending
        out["xp_multiplier"] = node.xp_multiplier
    return out


def story_from_dict(data: dict) -> Story:
    story_id = str(data.get("id") or "").strip()
    if not story_id:
        raise ValueError("Story is missing an id")
    raw_nodes = data.get("nodes") or {}
    if not isinstance(raw_nodes, dict) or not raw_nodes:
        raise ValueError(f"Story '{story_id}' has no nodes")
    return Story(
        id=story_id,
        title=str(data.get("title") or story_id),
        emoji=str(data.get("emoji") or ""),
        start_node_id=str(data.get("start_node_id") or "intro"),
        nodes={str(nid): node_from_dict(str(nid), nd or {}) for nid, nd in raw_nodes.items()},
        expected_paths=int(data.get("expected_paths") or 0),
        average_reward=int(data.get("average_reward") or 0),
        max_possible_reward=int(data.get("max_possible_reward") or 0),
        min_possible_reward=int(data.get("min_possible_reward") or 0),
    )


def story_to_dict(story: Story) -> dict:
    return {
        "id": story.id,
        "title": story.title,
        "emoji": story.emoji,
        "start_node_id": story.start_node_id,
        "expected_paths": story.expected_paths,
        "average_reward": story.average_reward,
        "max_possible_reward": story.max_possible_reward,
        "min_possible_reward": story.min_possible_reward,
        "nodes": {nid: node_to_dict(n) for nid, n in story.nodes.items()},
    }


# =========================
# SESSION + RESULTS
# =========================
@dataclass(slots=True)
class RollResult:
    rolled: float
    needed: float
    success: bool

    def to_dict(self) -> dict:
        return {"rolled": self.rolled, "needed": self.needed, "success": self.success}

    @classmethod
    def from_dict(cls, data: dict) -> "RollResult":
        return cls(rolled=float(data["rolled"]), needed=float(data["needed"]), success=bool(data["success"]))


def choice_options(node: DecisionNode) -> dict[str, dict[str, str]]:
    return {cid: {"label": c.label, "description": c.description} for cid, c in node.choices.items()}


@dataclass(slots=True)
class ChoiceRecord:
    node_id: str
    narrative: str
    choice: str
    options: dict[str, dict[str, str]]

    def to_dict(self) -> dict:
        return {"node_id": self.node_id, "narrative": self.narrative, "choice": self.choice, "options": self.options}

    @classmethod
    def from_dict(cls, data: dict) -> "ChoiceRecord":
        return cls(
            node_id=str(data.get("node_id") or ""),
            narrative=str(data.get("narrative") or ""),
            choice=str(data.get("choice") or ""),
            options=dict(data.get("options") or {}),
        )


@dataclass(slots=True)
class JournalEntry:
    type: str
    narrative: str
    choice: str | None = None
    options: dict[str, dict[str, str]] | None = None
    roll_result: RollResult | None = None

    def to_dict(self) -> dict:
        out: dict[str, Any] = {"type": self.type, "narrative": self.narrative}
        if self.choice is not None:
            out["choice"] = self.choice
        if self.options is not None:
            out["options"] = self.options
        if self.roll_result is not None:
            out["roll_result"] = self.roll_result.to_dict()
        return out

    @classmethod
    def from_dict(cls, data: dict) -> "JournalEntry":
        roll = data.get("roll_result")
        return cls(
            type=str(data.get("type") or ""),
            narrative=str(data.get("narrative") or ""),
            choice=data.get("choice"),
            options=data.get("options"),
            roll_result=RollResult.from_dict(roll) if roll else None,
        )


@dataclass(slots=True)
class AIStoryContext:
    title: str
    emoji: str
    intro_narrative: str
    decision1: dict
    path_so_far: str = ""
    first_outcome_narrative: str | None = None
    decision2: dict | None = None

    def to_dict(self) -> dict:
        return {
            "title": self.title,
            "emoji": self.emoji,
            "intro_narrative": self.intro_narrative,
            "decision1": self.decision1,
            "path_so_far": self.path_so_far,
            "first_outcome_narrative": self.first_outcome_narrative,
            "decision2": self.decision2,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AIStoryContext":
        return cls(
            title=str(data.get("title") or ""),
            emoji=str(data.get("emoji") or ""),
            intro_narrative=str(data.get("intro_narrative") or ""),
            decision1=dict(data.get("decision1") or {}),
            path_so_far=str(data.get("path_so_far") or ""),
            first_outcome_narrative=data.get("first_outcome_narrative"),
            decision2=data.get("decision2"),
        )


@dataclass(slots=True)
class StorySession:
    session_id: str
    discord_user_id: str
    db_user_id: int
    story_id: str
    current_node_id: str
    started_at: int
    last_interaction_at: int
    accumulated_coins: int = 0
    choices_path: list[str] = field(default_factory=list)
    choice_history: list[ChoiceRecord] = field(default_factory=list)
    story_journal: list[JournalEntry] = field(default_factory=list)
    message_id: str | None = None
    channel_id: str | None = None
    guild_id: str | None = None
    user_level: int = 1
    resolved_node_values: dict[str, dict[str, Any]] = field(default_factory=dict)
    is_processing: bool = False
    processing_started_at: int | None = None
    is_incremental_ai: bool = False
    ai_context: AIStoryContext | None = None


@dataclass(slots=True)
class FinalResult:
    total_coins: int
    xp_earned: int
    is_positive_ending: bool
    terminal_node_id: str
    path_taken: list[str]


@dataclass(slots=True)
class StoryActionResult:
    session: StorySession
    current_node: StoryNode | None
    narrative: str
    is_complete: bool = False
    final_result: FinalResult | None = None
    roll_result: RollResult | None = None
    generation_error: str | None = None
