from __future__ import annotations

import asyncio
import re

import discord
from discord.ext import commands
from misc.discord_gates import message_in_allowed_channels
from misc.errors import BotError
from misc.runtime_deps import RuntimeBootDeps
from misc.runtime_deps import RuntimeDeps


def strip_bot_mention(content: str, bot_user_id: int) -> str:
    return re.sub(rf"<@!?\s*{int(bot_user_id)}\s*>", "", content or "").strip()


def register_runtime_events(
    bot: commands.Bot,
    *,
    deps: RuntimeDeps,
    boot: RuntimeBootDeps,
) -> None:
    @bot.event
    async def on_ready():
        print(f"[Bot] online as {bot.user}")
        if not getattr(bot, "_state_loaded", False):
            await boot.load_state_func()
            bot._state_loaded = True

        if not getattr(bot, "_sweep_task", None):
            bot._sweep_task = asyncio.create_task(boot.session_sweep_loop_func())
            print("[Session] sweep loop started")

        if not getattr(bot, "_scheduler_task", None):
            bot._scheduler_task = asyncio.create_task(boot.scheduler_loop_func())
            print("[Scheduler] tick loop started")

    @bot.event
    async def on_message(message: discord.Message):
        if message.author.bot:
            return
        if not message_in_allowed_channels(message, boot.allowed_channel_ids):
            return

        if (message.content or "").lstrip().startswith("!"):
            await bot.process_commands(message)
            return

        if bot.user and bot.user in message.mentions:
            prompt = strip_bot_mention(message.content, bot.user.id)
            if not prompt:
                await message.channel.send("Yep?")
                return

            try:
                async with message.channel.typing():
                    reply = await deps.orchestrator.ask(
                        int(message.author.id),
                        int(message.channel.id),
                        prompt,
                        role_lookup=deps.role_lookup_for(message.author),
                    )
            except BotError as exc:
                await message.reply(exc.user_message(), mention_author=False)
                return
            except Exception as e:
                print(f"[Ask] Error: {type(e).__name__}: {e}")
                await message.channel.send("Something went wrong on my side. Check logs.")
                return
            await deps.send_chunked(message.channel, reply)

    @bot.event
    async def on_command_error(ctx: commands.Context, error: commands.CommandError):
        if isinstance(error, commands.CommandNotFound):
            return
        if isinstance(error, (commands.MissingRequiredArgument, commands.BadArgument)):
            await ctx.reply(f"{error} See `!help {ctx.command}`.", mention_author=False)
            return
        if isinstance(error, commands.NoPrivateMessage):
            await ctx.reply("That command only works in a server channel.", mention_author=False)
            return
        original = getattr(error, "original", error)
        if isinstance(original, BotError):
            await ctx.reply(original.user_message(), mention_author=False)
            return
        print(f"[Commands] {ctx.command} failed: {type(original).__name__}: {original}")
        await ctx.reply("Something went wrong on my side. Check logs.", mention_author=False)
