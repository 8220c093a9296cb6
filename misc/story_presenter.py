from __future__ import annotations

from misc.adhoc_modules.story_view import build_resume_view
from misc.adhoc_modules.story_view import build_story_view
from misc.adhoc_modules.story_view import journal_recap
from misc.adhoc_modules.story_view import render_story_text
from story.models import StoryActionResult
from story.models import StorySession
from story.models import is_decision


class StoryPresenter:
    """Turns engine results into Discord message text plus buttons."""

    def __init__(self, *, engine, sessions):
        self.engine = engine
        self.sessions = sessions

    def header(self, story_id: str, session: StorySession | None = None) -> tuple[str, str]:
        story = self.engine.registry.get(story_id)
        if story is not None:
            return (story.title, story.emoji)
        if session is not None and session.ai_context is not None:
            return (session.ai_context.title, session.ai_context.emoji)
        return ("Story", "📖")

    def render(self, result: StoryActionResult, *, title: str, emoji: str):
        session = result.session
        node = result.current_node
        if result.is_complete or not is_decision(node):
            text = render_story_text(
                title=title,
                emoji=emoji,
                narrative=result.narrative,
                roll=result.roll_result,
                final=result.final_result,
            )
            return (text, None)

        text = render_story_text(
            title=title,
            emoji=emoji,
            narrative=result.narrative,
            decision=node,
            decision_text=self.engine.render_narrative(session, node),
            accumulated_coins=session.accumulated_coins,
            roll=result.roll_result,
        )
        view = build_story_view(
            story_id=session.story_id,
            session_id=session.session_id,
            decision=node,
            accumulated_coins=session.accumulated_coins,
        )
        return (text, view)

    def render_resume_prompt(self, session: StorySession) -> tuple[str, object]:
        title, emoji = self.header(session.story_id, session)
        text = (
            f"{emoji} You still have **{title}** in progress.\n\n"
            f"{journal_recap(session)}\n\n"
            "Resume it or abandon it before starting a new shift."
        )
        return (text, build_resume_view(session.session_id))

    def render_current(self, session: StorySession):
        """Rebuild the message for a session resting at its current decision."""
        context = self.engine.get_story_context(session)
        if context is None:
            return None
        story, node = context
        result = StoryActionResult(session=session, current_node=node, narrative=journal_recap(session))
        return self.render(result, title=story.title, emoji=story.emoji)

    async def send_result(self, channel, result: StoryActionResult, *, title: str, emoji: str):
        text, view = self.render(result, title=title, emoji=emoji)
        if view is None:
            return await channel.send(text)
        message = await channel.send(text, view=view)
        await self.sessions.set_message(result.session.session_id, str(message.id))
        return message
