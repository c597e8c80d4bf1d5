from __future__ import annotations

from discord.ext import commands
from misc.commands.command_deps import CommandDeps
from misc.commands.command_deps import CommandGates
from misc.commands.command_deps import reply_bot_error
from misc.errors import BotError
from permissions.models import Capability
from session.models import SessionKey


def register(
    bot: commands.Bot,
    *,
    deps: CommandDeps,
    gates: CommandGates,
) -> None:
    @bot.command(name="ask")
    @commands.guild_only()
    async def ask_cmd(ctx: commands.Context, *, prompt: str = ""):
        if not gates.in_allowed_channel(ctx):
            return
        if not prompt.strip():
            await ctx.reply("Usage: `!ask <message>`", mention_author=False)
            return
        try:
            async with ctx.typing():
                reply = await deps.orchestrator.ask(
                    int(ctx.author.id),
                    int(ctx.channel.id),
                    prompt,
                    role_lookup=gates.role_lookup_for(ctx.author),
                )
        except BotError as exc:
            await reply_bot_error(ctx, exc)
            return
        await deps.send_chunked(ctx.channel, reply)

    @bot.command(name="clear")
    @commands.guild_only()
    async def clear_cmd(ctx: commands.Context):
        if not gates.in_allowed_channel(ctx):
            return
        try:
            await deps.permissions.require(
                int(ctx.author.id), Capability.CHAT, role_lookup=gates.role_lookup_for(ctx.author)
            )
            await deps.session_store.clear(SessionKey(int(ctx.author.id), int(ctx.channel.id)))
        except BotError as exc:
            await reply_bot_error(ctx, exc)
            return
        await ctx.reply("Conversation history cleared.", mention_author=False)

    @bot.command(name="cancel")
    @commands.guild_only()
    async def cancel_cmd(ctx: commands.Context):
        if not gates.in_allowed_channel(ctx):
            return
        if deps.orchestrator.cancel(int(ctx.author.id), int(ctx.channel.id)):
            await ctx.reply("Cancelling your request...", mention_author=False)
        else:
            await ctx.reply("You have no request running in this channel.", mention_author=False)

    @bot.command(name="session")
    @commands.guild_only()
    async def session_cmd(ctx: commands.Context):
        if not gates.in_allowed_channel(ctx):
            return
        try:
            session = await deps.session_store.get(SessionKey(int(ctx.author.id), int(ctx.channel.id)))
        except BotError as exc:
            await reply_bot_error(ctx, exc)
            return
        if session is None:
            await ctx.reply("No conversation session here yet.", mention_author=False)
            return
        await ctx.reply(
            f"Session `{session.id[:8]}`: {len(session.turns)}/{session.max_turns} turns, "
            f"last active {session.last_active_utc}.",
            mention_author=False,
        )
