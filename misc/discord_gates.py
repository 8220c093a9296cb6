from __future__ import annotations

import discord


def channel_is_allowed(channel, guild, allowed_channel_ids: set[int]) -> bool:
    # No allowlist configured means every channel; DMs are always allowed.
    if not allowed_channel_ids or guild is None:
        return True

    channel_id = int(getattr(channel, "id", 0) or 0)
    if channel_id in allowed_channel_ids:
        return True
    # thread: allow if parent is allowed
    if isinstance(channel, discord.Thread) and channel.parent:
        return int(channel.parent.id) in allowed_channel_ids
    return False


def message_in_allowed_channels(message: discord.Message, allowed_channel_ids: set[int]) -> bool:
    return channel_is_allowed(message.channel, getattr(message, "guild", None), allowed_channel_ids)


def interaction_in_allowed_channels(interaction: discord.Interaction, allowed_channel_ids: set[int]) -> bool:
    return channel_is_allowed(interaction.channel, getattr(interaction, "guild", None), allowed_channel_ids)
