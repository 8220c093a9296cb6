from __future__ import annotations

import asyncio

from discord.ext import commands
from misc.commands.command_deps import CommandDeps
from misc.commands.command_deps import CommandGates
from story.catalog import load_catalog
from story.engine import StoryEngineError
from story.rng import pick_one
from story.validator import validate_story


def _work_line(result) -> str:
    return f"💼 **{result.title}**: {result.message}\n+{result.coins} coins, +{result.xp} XP"


def register(
    bot: commands.Bot,
    *,
    deps: CommandDeps,
    gates: CommandGates,
) -> None:
    def require_owner(ctx: commands.Context) -> bool:
        if gates.user_is_owner(ctx.author):
            return True
        return False

    async def _prompt_existing(ctx: commands.Context) -> bool:
        existing = await deps.sessions.get_by_user(str(ctx.author.id))
        if existing is None:
            return False
        text, view = deps.presenter.render_resume_prompt(existing)
        await ctx.send(text, view=view)
        return True

    async def _start_and_send(ctx: commands.Context, story_result, story_id: str) -> None:
        title, emoji = deps.presenter.header(story_id, story_result.session)
        await deps.presenter.send_result(ctx.channel, story_result, title=title, emoji=emoji)

    @bot.command(name="work")
    async def work(ctx: commands.Context):
        if not gates.in_allowed_channel(ctx):
            return
        if await _prompt_existing(ctx):
            return
        try:
            result = await deps.work_service.start_work(
                user_id=int(ctx.author.id),
                guild_id=getattr(ctx.guild, "id", None),
                channel_id=getattr(ctx.channel, "id", None),
            )
        except StoryEngineError as e:
            print(f"[Story] work error: {e}")
            await ctx.send("Your shift fell apart before it started. Try again later.")
            return

        if result.story_result is not None:
            await _start_and_send(ctx, result.story_result, result.story_result.session.story_id)
            return
        if result.mode == "work":
            await ctx.send(_work_line(result))
            return
        await ctx.send(result.message)

    @bot.command(name="story")
    async def story(ctx: commands.Context, story_id: str = ""):
        if not gates.in_allowed_channel(ctx):
            return
        if not require_owner(ctx):
            return
        story_id = (story_id or "").strip()
        stories = deps.registry.static_stories()
        if not story_id:
            if not stories:
                await ctx.send("No stories are loaded.")
                return
            story_id = pick_one(stories).id
        level = await deps.rewards.user_level(int(ctx.author.id))
        try:
            result = await deps.engine.start_story(
                story_id,
                discord_user_id=str(ctx.author.id),
                db_user_id=int(ctx.author.id),
                channel_id=str(ctx.channel.id),
                guild_id=str(ctx.guild.id) if ctx.guild else None,
                user_level=level,
            )
        except StoryEngineError as e:
            await ctx.send(f"Error: {e.message}")
            return
        await _start_and_send(ctx, result, story_id)

    @bot.command(name="story.ai")
    async def story_ai(ctx: commands.Context):
        if not gates.in_allowed_channel(ctx):
            return
        if not require_owner(ctx):
            return
        level = await deps.rewards.user_level(int(ctx.author.id))
        async with ctx.typing():
            started = await deps.engine.start_incremental_ai_story(
                discord_user_id=str(ctx.author.id),
                db_user_id=int(ctx.author.id),
                channel_id=str(ctx.channel.id),
                guild_id=str(ctx.guild.id) if ctx.guild else None,
                user_level=level,
            )
        if not started.success or started.result is None:
            await ctx.send(f"Could not write a story right now: {started.error}")
            return
        await _start_and_send(ctx, started.result, started.result.session.story_id)

    @bot.command(name="story.list")
    async def story_list(ctx: commands.Context):
        if not gates.in_allowed_channel(ctx):
            return
        stories = deps.registry.static_stories()
        if not stories:
            await ctx.send("No stories are loaded.")
            return
        lines = [f"{s.emoji} `{s.id}` - {s.title} ({s.expected_paths} paths)" for s in stories]
        await deps.send_chunked(ctx.channel, "\n".join(lines))

    @bot.command(name="story.validate")
    async def story_validate(ctx: commands.Context, story_id: str = ""):
        if not gates.in_allowed_channel(ctx):
            return
        if not require_owner(ctx):
            return
        if story_id:
            story = deps.registry.get(story_id)
            if story is None:
                await ctx.send(f"Unknown story: `{story_id}`")
                return
            targets = [story]
        else:
            targets = deps.registry.static_stories()

        lines = []
        if not story_id and deps.catalog_dir:
            _stories, rejected = await asyncio.to_thread(load_catalog, deps.catalog_dir)
            for name, errs in rejected.items():
                lines.append(f"❌ `{name}` (not loaded)")
                lines.extend(f"  - {e}" for e in errs)
        for story in targets:
            problems = validate_story(story, strict=True)
            if problems:
                lines.append(f"❌ `{story.id}`")
                lines.extend(f"  - {p}" for p in problems)
            else:
                lines.append(f"✅ `{story.id}`")
        await deps.send_chunked(ctx.channel, "\n".join(lines) or "Nothing to validate.")

    @bot.command(name="story.resume")
    async def story_resume(ctx: commands.Context):
        if not gates.in_allowed_channel(ctx):
            return
        session = await deps.sessions.get_by_user(str(ctx.author.id))
        if session is None:
            await ctx.send("You have no story in progress.")
            return
        rendered = deps.presenter.render_current(session)
        if rendered is None:
            await ctx.send("That story can no longer be continued. Use `!story.abandon`.")
            return
        text, view = rendered
        message = await ctx.send(text, view=view)
        await deps.sessions.set_message(session.session_id, str(message.id))

    @bot.command(name="story.abandon")
    async def story_abandon(ctx: commands.Context):
        if not gates.in_allowed_channel(ctx):
            return
        session = await deps.sessions.get_by_user(str(ctx.author.id))
        if session is None:
            await ctx.send("You have no story in progress.")
            return
        await deps.engine.cancel(session)
        await ctx.send("Story abandoned. No rewards were paid.")

    @bot.command(name="work.settings")
    async def work_settings(ctx: commands.Context, key: str = "", *, value: str = ""):
        if not require_owner(ctx):
            return
        guild_id = getattr(ctx.guild, "id", None)
        if key:
            if not value:
                await ctx.send("Usage: `!work.settings <story_chance|ai_enabled|ai_chance> <value>`")
                return
            ok, msg = await deps.work_service.update_setting(
                guild_id, key, value, actor_user_id=int(ctx.author.id)
            )
            await ctx.send(msg if ok else f"Error: {msg}")
            if not ok:
                return
        settings = await deps.work_service.get_settings(guild_id)
        await ctx.send(
            "```\n"
            f"story_chance: {settings['story_chance_percent']}%\n"
            f"ai_enabled:   {'on' if settings['ai_story_enabled'] else 'off'}\n"
            f"ai_chance:    {settings['ai_story_chance_percent']}%\n"
            "```"
        )

    @bot.command(name="work.optout")
    async def work_optout(ctx: commands.Context, mode: str = ""):
        mode = (mode or "").strip().lower()
        if mode not in {"on", "off"}:
            opted_out = await deps.work_service.is_opted_out(int(ctx.author.id))
            await ctx.send(
                f"Story events are currently **{'off' if opted_out else 'on'}** for you. "
                "Usage: `!work.optout on|off`"
            )
            return
        await deps.work_service.set_opt_out(int(ctx.author.id), mode == "on")
        if mode == "on":
            await ctx.send("You will only get plain work shifts from now on.")
        else:
            await ctx.send("Story events are back on for your shifts.")

    @bot.command(name="story.migrations")
    async def story_migrations(ctx: commands.Context):
        if not require_owner(ctx):
            return
        async with deps.db_lock:
            rows = await asyncio.to_thread(deps.list_schema_migrations_sync, deps.db_conn, 20)
        if not rows:
            await ctx.send("No migrations recorded.")
            return
        lines = [f"{version} {name} {applied_at}" for version, name, applied_at in rows]
        await ctx.send("```\n" + "\n".join(lines) + "\n```")
