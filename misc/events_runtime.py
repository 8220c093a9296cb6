from __future__ import annotations

import asyncio

import discord
from discord.ext import commands
from misc.adhoc_modules.story_view import parse_custom_id
from misc.adhoc_modules.story_view import parse_session_prompt_id
from misc.discord_gates import interaction_in_allowed_channels
from misc.runtime_deps import RuntimeBootDeps
from misc.runtime_deps import RuntimeDeps


async def _reply_ephemeral(interaction: discord.Interaction, text: str) -> None:
    if interaction.response.is_done():
        await interaction.followup.send(text, ephemeral=True)
    else:
        await interaction.response.send_message(text, ephemeral=True)


async def handle_story_button(
    interaction: discord.Interaction,
    *,
    deps: RuntimeDeps,
    story_id: str,
    session_id: str,
    action: str,
) -> str:
    """Route one story button press. Returns the engine status for logging/tests."""
    user_id = str(interaction.user.id)
    existing = await deps.sessions.get(session_id)
    title, emoji = deps.presenter.header(story_id, existing)

    # generation can take longer than the 3 second interaction window
    await interaction.response.defer()
    try:
        outcome = await deps.engine.run_action(session_id, user_id=user_id, action=action)
    except Exception as e:
        print(f"[Story] action error session={session_id} action={action}: {e}")
        await _reply_ephemeral(interaction, "Something went wrong with this story. Try `!story.resume`.")
        return "error"

    if outcome.status in {"not_found", "forbidden", "busy", "invalid", "generation_failed"}:
        await _reply_ephemeral(interaction, outcome.message)
        if outcome.status == "not_found":
            await interaction.edit_original_response(view=None)
        return outcome.status

    if outcome.status == "cancelled":
        work = await deps.work_service.plain_work(int(user_id))
        text = "Story cancelled. You finished a regular shift instead."
        if work.mode == "work":
            text += f"\n💼 **{work.title}**: {work.message}\n+{work.coins} coins, +{work.xp} XP"
        await interaction.edit_original_response(content=text, view=None)
        return outcome.status

    text, view = deps.presenter.render(outcome.result, title=title, emoji=emoji)
    await interaction.edit_original_response(content=text, view=view)
    return outcome.status


async def handle_session_prompt(
    interaction: discord.Interaction,
    *,
    deps: RuntimeDeps,
    kind: str,
    session_id: str,
) -> str:
    session = await deps.sessions.get(session_id)
    if session is None:
        await interaction.response.edit_message(content="That story has already ended.", view=None)
        return "not_found"
    if session.discord_user_id != str(interaction.user.id):
        await _reply_ephemeral(interaction, "This story belongs to someone else.")
        return "forbidden"

    if kind == "abandon":
        await deps.engine.cancel(session)
        await interaction.response.edit_message(content="Story abandoned. No rewards were paid.", view=None)
        return "abandoned"

    rendered = deps.presenter.render_current(session)
    if rendered is None:
        await interaction.response.edit_message(
            content="That story can no longer be continued. Use `!story.abandon`.", view=None
        )
        return "unavailable"
    text, view = rendered
    await interaction.response.edit_message(content=text, view=view)
    if interaction.message is not None:
        await deps.sessions.set_message(session.session_id, str(interaction.message.id))
    return "resumed"


def register_runtime_events(
    bot: commands.Bot,
    *,
    deps: RuntimeDeps,
    boot: RuntimeBootDeps,
) -> None:
    @bot.event
    async def on_ready():
        if not getattr(bot, "_story_runtime_ready", False):
            loaded = await deps.sessions.init()
            restored = await deps.engine.restore_dynamic_stories()
            bot._story_runtime_ready = True
            print(f"[StoryEngine] ready: stories={boot.story_count} sessions={loaded} ai_restored={restored}")

        print(f"Story bot is online as {bot.user}")

        if not getattr(bot, "_cleanup_task", None):
            bot._cleanup_task = asyncio.create_task(boot.cleanup_loop_func())
            print("[Jobs] session cleanup loop started")

    @bot.event
    async def on_interaction(interaction: discord.Interaction):
        if interaction.type != discord.InteractionType.component:
            return
        custom_id = str((interaction.data or {}).get("custom_id") or "")
        if not custom_id.startswith("story_"):
            return
        if not interaction_in_allowed_channels(interaction, deps.allowed_channel_ids):
            return

        prompt = parse_session_prompt_id(custom_id)
        if prompt is not None:
            kind, session_id = prompt
            await handle_session_prompt(interaction, deps=deps, kind=kind, session_id=session_id)
            return

        parsed = parse_custom_id(custom_id)
        if parsed is None:
            print(f"[Story] unrecognized button id: {custom_id}")
            return
        story_id, session_id, action = parsed
        await handle_story_button(interaction, deps=deps, story_id=story_id, session_id=session_id, action=action)
