from __future__ import annotations

import discord


def channel_allowed(channel, allowed_channel_ids: set[int]) -> bool:
    # empty allow-list means every guild channel
    if not allowed_channel_ids:
        return True
    channel_id = int(getattr(channel, "id", 0) or 0)
    if channel_id in allowed_channel_ids:
        return True
    # thread: allow if parent is allowed
    if isinstance(channel, discord.Thread) and channel.parent:
        return int(channel.parent.id) in allowed_channel_ids
    return False


def message_in_allowed_channels(message: discord.Message, allowed_channel_ids: set[int]) -> bool:
    # Permissions are role-based, so DMs are refused.
    if getattr(message, "guild", None) is None:
        return False
    return channel_allowed(message.channel, allowed_channel_ids)
