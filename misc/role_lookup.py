from __future__ import annotations


def member_role_lookup(member):
    """Role lookup bound to a guild member; reads `member.roles` when called."""

    def lookup(actor: int) -> list[int]:
        if member is None or int(getattr(member, "id", 0) or 0) != int(actor):
            return []
        return [int(r.id) for r in (getattr(member, "roles", None) or []) if getattr(r, "id", None) is not None]

    return lookup


def bot_role_lookup(bot):
    """Role lookup across every guild the bot is in, for callers with no message at hand
    (scheduled tasks)."""

    async def lookup(actor: int) -> list[int]:
        role_ids: list[int] = []
        for guild in list(getattr(bot, "guilds", None) or []):
            member = guild.get_member(int(actor))
            if member is None:
                try:
                    member = await guild.fetch_member(int(actor))
                except Exception as e:
                    print(f"[Permissions] member lookup failed guild={guild.id} user={actor}: {e}")
                    continue
            role_ids.extend(int(r.id) for r in (member.roles or []))
        return role_ids

    return lookup
