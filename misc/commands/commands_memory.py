from __future__ import annotations

import io
import re

import discord
from discord.ext import commands
from config.defaults import DEFAULT_RECALL_LIMIT
from misc.commands.command_deps import CommandDeps
from misc.commands.command_deps import CommandGates
from misc.commands.command_deps import reply_bot_error
from misc.commands.command_deps import shorten
from misc.errors import BotError
from permissions.models import Capability


PAGE_SIZE = 10
MAX_IMPORT_BYTES = 512 * 1024


def parse_memory_add_args(raw: str) -> tuple[str, str | None, list[str] | None]:
    """`[category=...] [tags=a,b] <content>` -> (content, category, tags)."""
    text = (raw or "").strip()
    category: str | None = None
    tags: list[str] | None = None

    m_cat = re.search(r"(?:^|\s)category=([^\s]+)", text)
    if m_cat:
        category = m_cat.group(1).strip() or None
        text = (text[: m_cat.start()] + " " + text[m_cat.end():]).strip()

    m_tags = re.search(r"(?:^|\s)tags=([^\s]+)", text)
    if m_tags:
        tags = [t.strip() for t in re.split(r"[;,]+", m_tags.group(1)) if t.strip()]
        text = (text[: m_tags.start()] + " " + text[m_tags.end():]).strip()

    return (" ".join(text.split()), category, tags)


def _format_record(record, limit: int) -> str:
    tags = f" [{', '.join(record.tags)}]" if record.tags else ""
    return f"- #{record.id} ({record.category}){tags} :: {shorten(record.content, limit)}"


def register(
    bot: commands.Bot,
    *,
    deps: CommandDeps,
    gates: CommandGates,
) -> None:
    async def _allowed(ctx: commands.Context) -> bool:
        if not gates.in_allowed_channel(ctx):
            return False
        try:
            await deps.permissions.require(
                int(ctx.author.id), Capability.MEMORY, role_lookup=gates.role_lookup_for(ctx.author)
            )
        except BotError as exc:
            await reply_bot_error(ctx, exc)
            return False
        return True

    @bot.group(name="memory", invoke_without_command=True)
    @commands.guild_only()
    async def memory_group(ctx: commands.Context):
        if not gates.in_allowed_channel(ctx):
            return
        await ctx.reply(
            "Usage: `!memory add|list|search|delete|categories|export|import|clear`",
            mention_author=False,
        )

    @memory_group.command(name="add")
    async def memory_add(ctx: commands.Context, *, raw: str = ""):
        if not await _allowed(ctx):
            return
        content, category, tags = parse_memory_add_args(raw)
        try:
            record = await deps.memory_service.remember(
                int(ctx.author.id),
                content,
                category=category,
                tags=tags,
                metadata={"source": "command", "channel_id": int(ctx.channel.id)},
            )
        except BotError as exc:
            await reply_bot_error(ctx, exc)
            return
        await ctx.reply(f"Saved memory #{record.id} in `{record.category}`.", mention_author=False)

    @memory_group.command(name="list")
    async def memory_list(ctx: commands.Context, page: int = 1, category: str | None = None):
        if not await _allowed(ctx):
            return
        page = max(1, int(page or 1))
        try:
            result = await deps.memory_service.list(
                int(ctx.author.id), category=category, offset=(page - 1) * PAGE_SIZE, limit=PAGE_SIZE
            )
        except BotError as exc:
            await reply_bot_error(ctx, exc)
            return
        if not result.records:
            await ctx.reply("No memories on that page.", mention_author=False)
            return
        pages = max(1, (result.total + PAGE_SIZE - 1) // PAGE_SIZE)
        lines = [f"Your memories (page {page}/{pages}, {result.total} total):"]
        lines.extend(_format_record(r, deps.max_line_chars // 4) for r in result.records)
        if result.has_more:
            lines.append(f"Next: `!memory list {page + 1}`")
        await deps.send_chunked(ctx.channel, "\n".join(lines))

    @memory_group.command(name="search")
    async def memory_search(ctx: commands.Context, *, query: str = ""):
        if not await _allowed(ctx):
            return
        try:
            records = await deps.memory_service.recall(int(ctx.author.id), query, limit=DEFAULT_RECALL_LIMIT)
        except BotError as exc:
            await reply_bot_error(ctx, exc)
            return
        if not records:
            await ctx.reply("No matching memories.", mention_author=False)
            return
        lines = [f"Matches for `{shorten(query, 60)}`:"]
        lines.extend(_format_record(r, deps.max_line_chars // 4) for r in records)
        await deps.send_chunked(ctx.channel, "\n".join(lines))

    @memory_group.command(name="delete")
    async def memory_delete(ctx: commands.Context, memory_id: int):
        if not await _allowed(ctx):
            return
        try:
            await deps.memory_service.forget(int(ctx.author.id), int(memory_id))
        except BotError as exc:
            await reply_bot_error(ctx, exc)
            return
        await ctx.reply(f"Deleted memory #{int(memory_id)}.", mention_author=False)

    @memory_group.command(name="categories")
    async def memory_categories(ctx: commands.Context):
        if not await _allowed(ctx):
            return
        try:
            cats = await deps.memory_service.categories(int(ctx.author.id))
        except BotError as exc:
            await reply_bot_error(ctx, exc)
            return
        if not cats:
            await ctx.reply("You have no memories yet.", mention_author=False)
            return
        await ctx.reply(
            "Categories: " + ", ".join(f"`{name}` ({count})" for name, count in cats),
            mention_author=False,
        )

    @memory_group.command(name="export")
    async def memory_export(ctx: commands.Context, fmt: str = "json"):
        if not await _allowed(ctx):
            return
        try:
            document = await deps.memory_service.export(int(ctx.author.id), fmt)
        except BotError as exc:
            await reply_bot_error(ctx, exc)
            return
        ext = "yaml" if fmt.lower() in ("yaml", "yml") else "json"
        file = discord.File(io.BytesIO(document.encode("utf-8")), filename=f"memories.{ext}")
        try:
            await ctx.author.send("Here is your memory export.", file=file)
        except discord.HTTPException:
            await ctx.reply("I couldn't DM you the export; check your privacy settings.", mention_author=False)
            return
        await ctx.reply("Sent your export by DM.", mention_author=False)

    @memory_group.command(name="import")
    async def memory_import(ctx: commands.Context):
        if not await _allowed(ctx):
            return
        if not ctx.message.attachments:
            await ctx.reply("Attach a `.json` or `.yaml` export to import.", mention_author=False)
            return
        attachment = ctx.message.attachments[0]
        if attachment.size > MAX_IMPORT_BYTES:
            await ctx.reply("That file is too large to import.", mention_author=False)
            return
        fmt = "yaml" if attachment.filename.lower().endswith((".yaml", ".yml")) else "json"
        raw = (await attachment.read()).decode("utf-8", errors="replace")
        try:
            ids = await deps.memory_service.import_records(int(ctx.author.id), raw, fmt)
        except BotError as exc:
            await reply_bot_error(ctx, exc)
            return
        await ctx.reply(f"Imported {len(ids)} memor{'y' if len(ids) == 1 else 'ies'}.", mention_author=False)

    @memory_group.command(name="clear")
    async def memory_clear(ctx: commands.Context, confirm: str = ""):
        if not await _allowed(ctx):
            return
        if confirm.lower() != "confirm":
            await ctx.reply(
                "This deletes all of your memories. You will get an export by DM first. "
                "Run `!memory clear confirm` to continue.",
                mention_author=False,
            )
            return

        async def send_backup(document: str) -> None:
            await ctx.author.send(
                "Backup of your memories before clearing.",
                file=discord.File(io.BytesIO(document.encode("utf-8")), filename="memories-backup.json"),
            )

        try:
            _document, removed = await deps.memory_service.export_and_clear(
                int(ctx.author.id), "json", deliver=send_backup
            )
        except discord.HTTPException as e:
            print(f"[Memory] could not DM backup to user={ctx.author.id}: {e}")
            await ctx.reply("I couldn't DM you a backup, so nothing was cleared.", mention_author=False)
            return
        except BotError as exc:
            await reply_bot_error(ctx, exc)
            return
        await ctx.reply(f"Cleared {removed} memor{'y' if removed == 1 else 'ies'}.", mention_author=False)
