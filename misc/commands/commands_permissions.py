from __future__ import annotations

import asyncio
import re

import discord
from discord.ext import commands
from misc.commands.command_deps import CommandDeps
from misc.commands.command_deps import CommandGates
from misc.commands.command_deps import reply_bot_error
from misc.errors import BotError
from permissions.models import Capability


def _split_caps(raw: str) -> list[str]:
    return [c for c in re.split(r"[\s,;]+", (raw or "").strip()) if c]


def register(
    bot: commands.Bot,
    *,
    deps: CommandDeps,
    gates: CommandGates,
) -> None:
    @bot.command(name="perms")
    @commands.guild_only()
    async def perms_cmd(ctx: commands.Context, member: discord.Member | None = None):
        if not gates.in_allowed_channel(ctx):
            return
        target = member or ctx.author
        try:
            caps = await deps.permissions.effective_capabilities(
                int(target.id), role_lookup=gates.role_lookup_for(target)
            )
            grants = await deps.permissions.list_grants(int(target.id))
        except BotError as exc:
            await reply_bot_error(ctx, exc)
            return
        names = ", ".join(f"`{c.value}`" for c in sorted(caps, key=lambda c: c.value)) or "(none)"
        lines = [f"Capabilities for {target.display_name}: {names}"]
        if deps.permissions.is_super_user(int(target.id)):
            lines.append("Super user (configured via SUPER_USER_IDS).")
        if grants:
            lines.append("Explicit grants: " + ", ".join(f"`{g.capability.value}`" for g in grants))
        await ctx.reply("\n".join(lines), mention_author=False)

    @bot.command(name="grant")
    @commands.guild_only()
    async def grant_cmd(ctx: commands.Context, member: discord.Member, capability: str):
        if not gates.in_allowed_channel(ctx):
            return
        try:
            added = await deps.permissions.grant(
                int(ctx.author.id), int(member.id), capability, role_lookup=gates.role_lookup_for(ctx.author)
            )
        except BotError as exc:
            await reply_bot_error(ctx, exc)
            return
        if added:
            await ctx.reply(f"Granted `{capability}` to {member.display_name}.", mention_author=False)
        else:
            await ctx.reply(f"{member.display_name} already had `{capability}`.", mention_author=False)

    @bot.command(name="revoke")
    @commands.guild_only()
    async def revoke_cmd(ctx: commands.Context, member: discord.Member, capability: str):
        if not gates.in_allowed_channel(ctx):
            return
        try:
            removed = await deps.permissions.revoke(
                int(ctx.author.id), int(member.id), capability, role_lookup=gates.role_lookup_for(ctx.author)
            )
        except BotError as exc:
            await reply_bot_error(ctx, exc)
            return
        if removed:
            await ctx.reply(f"Revoked `{capability}` from {member.display_name}.", mention_author=False)
        else:
            await ctx.reply(
                f"{member.display_name} had no explicit `{capability}` grant (roles or defaults may still apply).",
                mention_author=False,
            )

    @bot.group(name="role", invoke_without_command=True)
    @commands.guild_only()
    async def role_group(ctx: commands.Context):
        if not gates.in_allowed_channel(ctx):
            return
        await ctx.reply("Usage: `!role set <@role> <capabilities...>`, `!role remove <@role>`, `!role list`", mention_author=False)

    @role_group.command(name="set")
    async def role_set(ctx: commands.Context, role: discord.Role, *, capabilities: str = ""):
        if not gates.in_allowed_channel(ctx):
            return
        try:
            definition = await deps.permissions.set_role(
                int(ctx.author.id),
                int(role.id),
                role.name,
                _split_caps(capabilities),
                role_lookup=gates.role_lookup_for(ctx.author),
            )
        except BotError as exc:
            await reply_bot_error(ctx, exc)
            return
        caps = ", ".join(sorted(c.value for c in definition.capabilities)) or "(none)"
        await ctx.reply(f"Role {role.name} now grants: {caps}", mention_author=False)

    @role_group.command(name="remove")
    async def role_remove(ctx: commands.Context, role: discord.Role):
        if not gates.in_allowed_channel(ctx):
            return
        try:
            await deps.permissions.remove_role(
                int(ctx.author.id), int(role.id), role_lookup=gates.role_lookup_for(ctx.author)
            )
        except BotError as exc:
            await reply_bot_error(ctx, exc)
            return
        await ctx.reply(f"Role {role.name} no longer grants capabilities.", mention_author=False)

    @role_group.command(name="list")
    async def role_list(ctx: commands.Context):
        if not gates.in_allowed_channel(ctx):
            return
        try:
            roles = await deps.permissions.list_roles()
        except BotError as exc:
            await reply_bot_error(ctx, exc)
            return
        if not roles:
            await ctx.reply("No role capability mappings.", mention_author=False)
            return
        lines = ["Role capability mappings:"]
        for r in roles:
            caps = ", ".join(sorted(c.value for c in r.capabilities)) or "(none)"
            lines.append(f"- {r.name} (`{r.role_id}`): {caps}")
        await deps.send_chunked(ctx.channel, "\n".join(lines))

    @bot.command(name="dbmigrations")
    async def cmd_dbmigrations(ctx: commands.Context, limit: int = 30):
        if not gates.in_allowed_channel(ctx):
            return
        try:
            await deps.permissions.require(
                int(ctx.author.id), Capability.MANAGE_PERMISSIONS, role_lookup=gates.role_lookup_for(ctx.author)
            )
        except BotError as exc:
            await reply_bot_error(ctx, exc)
            return

        lim = max(1, min(int(limit or 30), 200))
        async with deps.db_lock:
            rows = await asyncio.to_thread(deps.list_schema_migrations_sync, deps.db_conn, lim)
        if not rows:
            await ctx.send("No schema migrations recorded.")
            return
        lines = [f"Schema migrations (latest {len(rows)}):"]
        for version, name, applied_at in rows:
            lines.append(f"- {version} {name} @ {applied_at}")
        await deps.send_chunked(ctx.channel, "```\n" + "\n".join(lines)[:7000] + "\n```")
