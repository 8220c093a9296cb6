from __future__ import annotations

from misc.commands.command_deps import CommandDeps
from misc.commands.command_deps import CommandGates
from misc.commands.commands_story import register as register_story
from misc.discord_gates import channel_is_allowed
from misc.events_runtime import register_runtime_events
from misc.runtime_deps import RuntimeBootDeps
from misc.runtime_deps import RuntimeDeps
from misc.story_presenter import StoryPresenter


def wire_bot_runtime(
    bot,
    *,
    allowed_channel_ids: set[int],
    user_is_owner,
    db_lock,
    db_conn,
    send_chunked,
    engine,
    sessions,
    registry,
    rewards,
    work_service,
    list_schema_migrations_sync,
    catalog_dir: str,
    cleanup_loop_func,
) -> None:
    def in_allowed_channel(ctx) -> bool:
        try:
            return channel_is_allowed(ctx.channel, ctx.guild, allowed_channel_ids)
        except Exception:
            return False

    presenter = StoryPresenter(engine=engine, sessions=sessions)

    command_deps = CommandDeps(
        db_lock=db_lock,
        db_conn=db_conn,
        send_chunked=send_chunked,
        engine=engine,
        sessions=sessions,
        registry=registry,
        presenter=presenter,
        catalog_dir=catalog_dir,
        rewards=rewards,
        work_service=work_service,
        list_schema_migrations_sync=list_schema_migrations_sync,
    )
    command_gates = CommandGates(
        in_allowed_channel=in_allowed_channel,
        allowed_channel_ids=allowed_channel_ids,
        user_is_owner=user_is_owner,
    )

    register_story(
        bot,
        deps=command_deps,
        gates=command_gates,
    )

    register_runtime_events(
        bot,
        deps=RuntimeDeps(
            engine=engine,
            sessions=sessions,
            presenter=presenter,
            work_service=work_service,
            allowed_channel_ids=allowed_channel_ids,
        ),
        boot=RuntimeBootDeps(
            cleanup_loop_func=cleanup_loop_func,
            story_count=len(registry.static_stories()),
        ),
    )
