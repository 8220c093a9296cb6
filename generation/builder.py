from __future__ import annotations

from config.defaults import AI_MAX_TERMINAL_COINS
from config.defaults import AI_MAX_XP_MULTIPLIER
from config.defaults import AI_MIN_TERMINAL_COINS
from config.defaults import AI_MIN_XP_MULTIPLIER
from config.defaults import AI_STORY_AVERAGE_REWARD
from config.defaults import AI_STORY_EXPECTED_PATHS
from config.defaults import AI_STORY_FINAL_SUCCESS_RATE
from config.defaults import AI_STORY_FIRST_SUCCESS_RATE
from config.defaults import AI_SUCCESS_COINS_MIN
from generation.schema import DecisionPayload
from generation.schema import Layer1Response
from generation.schema import Layer2Response
from generation.schema import Layer3Response
from story.models import DecisionNode
from story.models import Fixed
from story.models import IntroNode
from story.models import NodeStatus
from story.models import OutcomeNode
from story.models import Story
from story.models import StoryChoice
from story.models import TerminalNode
from story.models import is_outcome
from story.rng import secure_random_index

LAYER2_PATHS = ("XS", "XF", "YS", "YF")
PLACEHOLDER_NARRATIVE = "..."


def calculate_random_coins(is_success: bool) -> int:
    if is_success:
        return AI_SUCCESS_COINS_MIN + secure_random_index(AI_MAX_TERMINAL_COINS - AI_SUCCESS_COINS_MIN + 1)
    return -secure_random_index(abs(AI_MIN_TERMINAL_COINS) + 1)


def calculate_random_xp_multiplier(is_success: bool) -> float:
    # Tenth steps: success 1.0..max, failure min..1.0.
    if is_success:
        steps = int(round((AI_MAX_XP_MULTIPLIER - 1.0) * 10))
        return round(1.0 + secure_random_index(steps + 1) / 10, 1)
    steps = int(round((1.0 - AI_MIN_XP_MULTIPLIER) * 10))
    return round(AI_MIN_XP_MULTIPLIER + secure_random_index(steps + 1) / 10, 1)


def _decision_node(node_id: str, payload: DecisionPayload, next_x: str, next_y: str) -> DecisionNode:
    return DecisionNode(
        id=node_id,
        narrative=Fixed(payload.narrative),
        choices={
            "choiceX": StoryChoice(
                id="choiceX",
                label=payload.choice_x.label,
                description=payload.choice_x.description,
                next_node_id=next_x,
            ),
            "choiceY": StoryChoice(
                id="choiceY",
                label=payload.choice_y.label,
                description=payload.choice_y.description,
                next_node_id=next_y,
            ),
        },
    )


def _pending_outcome(node_id: str, chance: float, success_id: str, fail_id: str) -> OutcomeNode:
    return OutcomeNode(
        id=node_id,
        narrative=Fixed(PLACEHOLDER_NARRATIVE),
        success_chance=chance,
        success_node_id=success_id,
        fail_node_id=fail_id,
        status=NodeStatus.PENDING,
    )


def _backfill_outcome(story: Story, node_id: str, narrative: str) -> None:
    node = story.nodes.get(node_id)
    if is_outcome(node):
        node.narrative = Fixed(narrative)
        node.status = NodeStatus.GENERATED


def build_story_from_layer1(layer1: Layer1Response, story_id: str) -> Story:
    """Intro -> decision1 -> two pending outcome nodes.

    The outcomes point at `decision2_{XS,XF,YS,YF}`, which only exist once the
    matching layer 2 has been generated.
    """
    nodes = {
        "intro": IntroNode(id="intro", narrative=Fixed(layer1.intro.narrative), next_node_id="decision1"),
        "decision1": _decision_node("decision1", layer1.decision1, "outcome1X", "outcome1Y"),
        "outcome1X": _pending_outcome("outcome1X", AI_STORY_FIRST_SUCCESS_RATE, "decision2_XS", "decision2_XF"),
        "outcome1Y": _pending_outcome("outcome1Y", AI_STORY_FIRST_SUCCESS_RATE, "decision2_YS", "decision2_YF"),
    }
    return Story(
        id=story_id,
        title=layer1.title,
        emoji=layer1.emoji,
        start_node_id="intro",
        nodes=nodes,
        expected_paths=AI_STORY_EXPECTED_PATHS,
        average_reward=AI_STORY_AVERAGE_REWARD,
        max_possible_reward=AI_MAX_TERMINAL_COINS,
        min_possible_reward=AI_MIN_TERMINAL_COINS,
    )


def add_layer2_to_story(story: Story, layer2: Layer2Response, path: str) -> None:
    if path not in LAYER2_PATHS:
        raise ValueError(f"Invalid layer 2 path: {path}")
    decision_id = f"decision2_{path}"
    _backfill_outcome(story, f"outcome1{path[0]}", layer2.outcome_narrative)

    story.nodes[decision_id] = _decision_node(
        decision_id, layer2.decision2, f"outcome2_{path}_X", f"outcome2_{path}_Y"
    )
    for letter in ("X", "Y"):
        outcome_id = f"outcome2_{path}_{letter}"
        story.nodes[outcome_id] = _pending_outcome(
            outcome_id,
            AI_STORY_FINAL_SUCCESS_RATE,
            f"terminal_{path}_{letter}_S",
            f"terminal_{path}_{letter}_F",
        )


def parse_terminal_path(path: str) -> tuple[str, str, bool]:
    """Split `XS_X_S` into (layer 2 path, second choice, success)."""
    parts = str(path or "").split("_")
    if len(parts) != 3 or parts[0] not in LAYER2_PATHS or parts[1] not in ("X", "Y") or parts[2] not in ("S", "F"):
        raise ValueError(f"Invalid terminal path: {path}")
    return (parts[0], parts[1], parts[2] == "S")


def add_layer3_to_story(story: Story, layer3: Layer3Response, path: str) -> TerminalNode:
    layer2_path, choice2, is_success = parse_terminal_path(path)
    _backfill_outcome(story, f"outcome2_{layer2_path}_{choice2}", layer3.outcome_narrative)

    terminal = TerminalNode(
        id=f"terminal_{path}",
        narrative=Fixed(layer3.terminal.narrative),
        coins_change=Fixed(calculate_random_coins(is_success)),
        is_positive_ending=is_success,
        xp_multiplier=calculate_random_xp_multiplier(is_success),
    )
    story.nodes[terminal.id] = terminal
    return terminal
