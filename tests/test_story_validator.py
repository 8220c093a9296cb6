from __future__ import annotations

import unittest
from pathlib import Path

from story.catalog import load_story_file
from story.models import DecisionNode
from story.models import Fixed
from story.models import StoryChoice
from story.models import TerminalNode
from story.validator import reachable_node_ids
from story.validator import validate_story


def _stories_dir() -> Path:
    return Path(__file__).resolve().parents[1] / "stories"


def _load(name: str = "office_election.yml"):
    return load_story_file(_stories_dir() / name)


class StoryValidatorTests(unittest.TestCase):
    def test_shipped_story_is_valid_in_strict_mode(self):
        story = _load()
        self.assertEqual(validate_story(story, strict=True), [])
        self.assertEqual(reachable_node_ids(story), set(story.nodes))

    def test_missing_start_node(self):
        story = _load()
        story.start_node_id = "prologue"
        errors = validate_story(story)
        self.assertIn("Start node 'prologue' not found", errors)

    def test_dangling_references_are_reported(self):
        story = _load()
        story.nodes["decision_1"].choices["choiceY"].next_node_id = "outcome_nowhere"
        story.nodes["outcome_debate"].fail_node_id = "terminal_nowhere"
        errors = validate_story(story)
        self.assertTrue(any("choiceY references missing node 'outcome_nowhere'" in e for e in errors))
        self.assertTrue(any("fail references missing node 'terminal_nowhere'" in e for e in errors))

    def test_too_few_terminals(self):
        story = _load()
        for node_id in [nid for nid in story.nodes if nid.startswith("terminal_")][:3]:
            del story.nodes[node_id]
        errors = validate_story(story)
        self.assertTrue(any("terminal nodes (minimum 8)" in e for e in errors))

    def test_positive_ratio_bounds(self):
        story = _load()
        for node in story.nodes.values():
            if isinstance(node, TerminalNode):
                node.is_positive_ending = True
        errors = validate_story(story)
        self.assertTrue(any(e.startswith("Positive ending ratio is 100%") for e in errors))

        for node in story.nodes.values():
            if isinstance(node, TerminalNode):
                node.is_positive_ending = False
        errors = validate_story(story)
        self.assertTrue(any(e.startswith("Positive ending ratio is 0%") for e in errors))

    def test_unreachable_nodes_only_flagged_when_strict(self):
        story = _load()
        story.nodes["decision_orphan"] = DecisionNode(
            id="decision_orphan",
            narrative=Fixed("Nobody gets here."),
            choices={
                "choiceX": StoryChoice(id="choiceX", label="a", description="a", next_node_id="terminal_concede"),
                "choiceY": StoryChoice(id="choiceY", label="b", description="b", next_node_id="terminal_concede"),
            },
        )
        self.assertEqual(validate_story(story), [])
        strict = validate_story(story, strict=True)
        self.assertEqual(strict, ["Node 'decision_orphan' is unreachable from start node 'intro'"])

    def test_placeholders_that_cannot_be_filled_are_reported(self):
        story = _load()
        story.nodes["intro"].narrative = Fixed("Your rival, {rival}, hands out {} buttons and {0} flyers.")
        story.nodes["terminal_elected"].narrative = Fixed("Vote count: {votes.real}. Oops {")
        errors = validate_story(story)
        self.assertIn("Node 'intro' narrative has positional placeholder '{}'", errors)
        self.assertIn("Node 'intro' narrative has positional placeholder '{0}'", errors)
        self.assertTrue(any(e.startswith("Node 'terminal_elected' narrative has broken braces") for e in errors))

        story.nodes["terminal_elected"].narrative = Fixed("Vote count: {votes.real}.")
        self.assertIn(
            "Node 'terminal_elected' narrative placeholder '{votes.real}' must be a plain variable name",
            validate_story(story),
        )

    def test_braces_in_nodes_without_variables_are_fine(self):
        story = _load()
        story.nodes["decision_1"].narrative = Fixed("The ballot box reads {} in marker.")
        self.assertEqual(validate_story(story), [])

    def test_reachability_survives_cycles(self):
        story = _load()
        story.nodes["outcome_debate"].fail_node_id = "decision_1"
        reachable = reachable_node_ids(story)
        self.assertIn("decision_1", reachable)
        self.assertNotIn("terminal_debate_flop", reachable)


if __name__ == "__main__":
    unittest.main()
