from __future__ import annotations

from story.models import Story
from story.models import is_dynamic_story_id


class StoryRegistry:
    """Story templates by id. Owned by the runtime and injected where needed."""

    def __init__(self) -> None:
        self._stories: dict[str, Story] = {}

    def register(self, story: Story) -> None:
        self._stories[story.id] = story
        label = "dynamic story" if story.is_dynamic else "story"
        print(f"[StoryEngine] Registered {label}: {story.id}")

    def unregister(self, story_id: str) -> bool:
        if self._stories.pop(story_id, None) is None:
            return False
        print(f"[StoryEngine] Unregistered story: {story_id}")
        return True

    def get(self, story_id: str) -> Story | None:
        return self._stories.get(story_id)

    def __contains__(self, story_id: str) -> bool:
        return story_id in self._stories

    def __len__(self) -> int:
        return len(self._stories)

    def story_ids(self) -> list[str]:
        return list(self._stories.keys())

    def static_stories(self) -> list[Story]:
        return [s for s in self._stories.values() if not is_dynamic_story_id(s.id)]
