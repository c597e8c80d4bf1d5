from __future__ import annotations

import re

from discord.ext import commands
from misc.commands.command_deps import CommandDeps
from misc.commands.command_deps import CommandGates
from misc.commands.command_deps import reply_bot_error
from misc.commands.command_deps import shorten
from misc.errors import BotError
from permissions.models import Capability


USAGE_ADD = '`!schedule add "<cron>" <prompt>` e.g. `!schedule add "0 9 * * 1-5" Morning summary please`'


def parse_schedule_add_args(raw: str) -> tuple[str, str, str | None]:
    """Split `"<cron>" <prompt>` (or `@daily <prompt>`) into (cron, prompt, error)."""
    text = (raw or "").strip()
    m = re.match(r'^"([^"]+)"\s+(.+)$', text, flags=re.S) or re.match(r"^'([^']+)'\s+(.+)$", text, flags=re.S)
    if m:
        return (m.group(1).strip(), m.group(2).strip(), None)
    m_macro = re.match(r"^(@\w+)\s+(.+)$", text, flags=re.S)
    if m_macro:
        return (m_macro.group(1), m_macro.group(2).strip(), None)
    return ("", "", f"Usage: {USAGE_ADD}")


def register(
    bot: commands.Bot,
    *,
    deps: CommandDeps,
    gates: CommandGates,
) -> None:
    async def _require(ctx: commands.Context, capability: Capability) -> bool:
        if not gates.in_allowed_channel(ctx):
            return False
        try:
            await deps.permissions.require(
                int(ctx.author.id), capability, role_lookup=gates.role_lookup_for(ctx.author)
            )
        except BotError as exc:
            await reply_bot_error(ctx, exc)
            return False
        return True

    async def _manage_all(ctx: commands.Context) -> bool:
        return await deps.permissions.check(
            int(ctx.author.id), Capability.MANAGE_PERMISSIONS, role_lookup=gates.role_lookup_for(ctx.author)
        )

    def _describe(task) -> str:
        state = "on" if task.enabled else "off"
        nxt = deps.scheduler.next_run(task.id)
        nxt_txt = nxt.strftime("%Y-%m-%d %H:%M %Z") if nxt else "-"
        err = f" last_error={shorten(task.last_error, 60)}" if task.last_error else ""
        return (
            f"- `{task.id[:8]}` [{state}] `{task.cron_expression}` next={nxt_txt} "
            f"owner=<@{task.owner_id}> :: {shorten(task.prompt, 80)}{err}"
        )

    @bot.group(name="schedule", invoke_without_command=True)
    @commands.guild_only()
    async def schedule_group(ctx: commands.Context):
        if not gates.in_allowed_channel(ctx):
            return
        await ctx.reply("Usage: `!schedule add|list|remove|toggle|next`", mention_author=False)

    @schedule_group.command(name="add")
    async def schedule_add(ctx: commands.Context, *, raw: str = ""):
        if not await _require(ctx, Capability.SCHEDULE):
            return
        cron, prompt, err = parse_schedule_add_args(raw)
        if err:
            await ctx.reply(err, mention_author=False)
            return
        try:
            task = await deps.scheduler.add_task(int(ctx.author.id), int(ctx.channel.id), cron, prompt)
        except BotError as exc:
            await reply_bot_error(ctx, exc)
            return
        nxt = deps.scheduler.next_run(task.id)
        await ctx.reply(
            f"Scheduled `{task.id[:8]}` (`{task.cron_expression}`). "
            f"Next run: {nxt.strftime('%Y-%m-%d %H:%M %Z') if nxt else 'never'}.",
            mention_author=False,
        )

    @schedule_group.command(name="list")
    async def schedule_list(ctx: commands.Context):
        if not await _require(ctx, Capability.SCHEDULE):
            return
        tasks = deps.scheduler.list_tasks(channel_id=int(ctx.channel.id))
        if not tasks:
            await ctx.reply("No scheduled tasks in this channel.", mention_author=False)
            return
        lines = [f"Scheduled tasks in this channel ({len(tasks)}):"]
        lines.extend(_describe(t) for t in tasks)
        await deps.send_chunked(ctx.channel, "\n".join(lines))

    @schedule_group.command(name="remove")
    async def schedule_remove(ctx: commands.Context, task_id: str):
        if not await _require(ctx, Capability.SCHEDULE):
            return
        try:
            task = await deps.scheduler.remove_task(
                task_id, actor_id=int(ctx.author.id), manage_all=await _manage_all(ctx)
            )
        except BotError as exc:
            await reply_bot_error(ctx, exc)
            return
        await ctx.reply(f"Removed scheduled task `{task.id[:8]}`.", mention_author=False)

    @schedule_group.command(name="toggle")
    async def schedule_toggle(ctx: commands.Context, task_id: str):
        if not await _require(ctx, Capability.SCHEDULE):
            return
        try:
            task = await deps.scheduler.toggle_task(
                task_id, actor_id=int(ctx.author.id), manage_all=await _manage_all(ctx)
            )
        except BotError as exc:
            await reply_bot_error(ctx, exc)
            return
        await ctx.reply(
            f"Task `{task.id[:8]}` is now {'enabled' if task.enabled else 'paused'}.",
            mention_author=False,
        )

    @schedule_group.command(name="next")
    async def schedule_next(ctx: commands.Context, task_id: str):
        if not await _require(ctx, Capability.SCHEDULE):
            return
        try:
            task = deps.scheduler.get_task(task_id)
            nxt = deps.scheduler.next_run(task.id)
        except BotError as exc:
            await reply_bot_error(ctx, exc)
            return
        if nxt is None:
            await ctx.reply(f"Task `{task.id[:8]}` is paused.", mention_author=False)
            return
        await ctx.reply(
            f"Task `{task.id[:8]}` next runs at {nxt.strftime('%Y-%m-%d %H:%M %Z')}.",
            mention_author=False,
        )
