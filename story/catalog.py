from __future__ import annotations

import os
from pathlib import Path

import yaml

from story.models import Story
from story.models import story_from_dict
from story.registry import StoryRegistry
from story.validator import validate_story


def default_catalog_dir() -> str:
    here = Path(__file__).resolve().parents[1]
    return os.path.join(here, "stories")


def load_story_file(path: str | Path) -> Story:
    p = Path(path)
    raw = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    if not isinstance(raw, dict):
        raise RuntimeError(f"Story file {p.name} must contain a top-level mapping")
    return story_from_dict(raw)


def load_catalog(catalog_dir: str | None = None) -> tuple[list[Story], dict[str, list[str]]]:
    """Parse every `*.yml`/`*.yaml` story in `catalog_dir`.

    Returns the stories that parsed and passed validation, plus a map of file name
    to problems for the ones that did not.
    """
    base = Path(catalog_dir or default_catalog_dir())
    if not base.exists():
        print(f"[StoryEngine] Story catalog not found: {base}")
        return ([], {})

    stories: list[Story] = []
    problems: dict[str, list[str]] = {}
    seen_ids: set[str] = set()
    for p in sorted(base.iterdir()):
        if not p.is_file() or p.suffix.lower() not in (".yml", ".yaml"):
            continue
        try:
            story = load_story_file(p)
        except (RuntimeError, ValueError, KeyError, TypeError, yaml.YAMLError) as e:
            problems[p.name] = [f"parse error: {e}"]
            continue
        errors = validate_story(story)
        if story.id in seen_ids:
            errors.append(f"Duplicate story id '{story.id}'")
        if errors:
            problems[p.name] = errors
            continue
        seen_ids.add(story.id)
        stories.append(story)
    return (stories, problems)


def register_catalog(registry: StoryRegistry, catalog_dir: str | None = None) -> int:
    stories, problems = load_catalog(catalog_dir)
    for name, errs in problems.items():
        print(f"[StoryEngine] Skipping {name}: {'; '.join(errs)}")
    for story in stories:
        registry.register(story)
    return len(stories)
