from __future__ import annotations

import string
from collections import deque

from config.defaults import MAX_POSITIVE_ENDING_RATIO
from config.defaults import MIN_POSITIVE_ENDING_RATIO
from config.defaults import MIN_TERMINAL_NODES
from story.models import Fixed
from story.models import Story
from story.models import StoryNode
from story.models import is_decision
from story.models import is_intro
from story.models import is_outcome
from story.models import is_terminal
from story.models import successor_ids


def reachable_node_ids(story: Story) -> set[str]:
    seen: set[str] = set()
    queue: deque[str] = deque([story.start_node_id])
    while queue:
        node_id = queue.popleft()
        if node_id in seen:
            continue
        node = story.nodes.get(node_id)
        if node is None:
            continue
        seen.add(node_id)
        for _label, nxt in successor_ids(node):
            if nxt not in seen:
                queue.append(nxt)
    return seen


def narrative_placeholder_problems(node: StoryNode) -> list[str]:
    """Placeholders that cannot be filled from `node.variables` without an error.

    Only nodes with variables are formatted at play time; names that are not
    variables are left in the text as-is.
    """
    if not node.variables or not isinstance(node.narrative, Fixed):
        return []
    text = str(node.narrative.value)
    try:
        fields = [f for _lit, f, _spec, _conv in string.Formatter().parse(text) if f is not None]
    except ValueError as e:
        return [f"Node '{node.id}' narrative has broken braces: {e}"]
    problems = []
    for field in fields:
        name = field.split(".", 1)[0].split("[", 1)[0]
        if not name or name.isdigit():
            problems.append(f"Node '{node.id}' narrative has positional placeholder '{{{field}}}'")
        elif name != field:
            problems.append(f"Node '{node.id}' narrative placeholder '{{{field}}}' must be a plain variable name")
    return problems


def validate_story(story: Story, *, strict: bool = False) -> list[str]:
    """Return every graph problem found in `story`; an empty list means valid.

    Advisory tooling for authors of static stories. `strict` additionally reports
    nodes that cannot be reached from the start node.
    """
    errors: list[str] = []

    if story.start_node_id not in story.nodes:
        errors.append(f"Start node '{story.start_node_id}' not found")

    for node_id, node in story.nodes.items():
        if is_intro(node):
            if node.next_node_id not in story.nodes:
                errors.append(f"Intro node '{node_id}' references missing node '{node.next_node_id}'")
        elif is_decision(node):
            for cid, choice in node.choices.items():
                if choice.next_node_id not in story.nodes:
                    errors.append(
                        f"Decision node '{node_id}' {cid} references missing node '{choice.next_node_id}'"
                    )
        elif is_outcome(node):
            if node.success_node_id not in story.nodes:
                errors.append(f"Outcome node '{node_id}' success references missing node '{node.success_node_id}'")
            if node.fail_node_id not in story.nodes:
                errors.append(f"Outcome node '{node_id}' fail references missing node '{node.fail_node_id}'")

    for node in story.nodes.values():
        errors.extend(narrative_placeholder_problems(node))

    terminals = [n for n in story.nodes.values() if is_terminal(n)]
    if len(terminals) < MIN_TERMINAL_NODES:
        errors.append(f"Story has only {len(terminals)} terminal nodes (minimum {MIN_TERMINAL_NODES})")

    if terminals:
        positive = sum(1 for t in terminals if t.is_positive_ending)
        ratio = positive / len(terminals)
        if ratio < MIN_POSITIVE_ENDING_RATIO or ratio > MAX_POSITIVE_ENDING_RATIO:
            errors.append(
                f"Positive ending ratio is {ratio * 100:.0f}% "
                f"(should be {MIN_POSITIVE_ENDING_RATIO * 100:.0f}-{MAX_POSITIVE_ENDING_RATIO * 100:.0f}%)"
            )
    else:
        errors.append("Story has no terminal nodes")

    if strict:
        reachable = reachable_node_ids(story)
        for node_id in story.nodes:
            if node_id not in reachable:
                errors.append(f"Node '{node_id}' is unreachable from start node '{story.start_node_id}'")

    return errors
