from __future__ import annotations

from dataclasses import dataclass
from dataclasses import field
from typing import Any
from typing import Callable


def _default_false(*args, **kwargs) -> bool:
    return False


def _no_role_lookup(ctx):
    return None


@dataclass(frozen=True)
class CommandDeps:
    # Core/shared
    send_chunked: Callable | None = None
    max_line_chars: int = 600

    # Services
    orchestrator: Any = None
    session_store: Any = None
    memory_service: Any = None
    scheduler: Any = None
    permissions: Any = None

    # Ops
    db_lock: Any = None
    db_conn: Any = None
    list_schema_migrations_sync: Callable | None = None


@dataclass(frozen=True)
class CommandGates:
    in_allowed_channel: Callable[[Any], bool] = _default_false
    allowed_channel_ids: set[int] = field(default_factory=set)
    role_lookup_for: Callable[[Any], Any] = _no_role_lookup


async def reply_bot_error(ctx, exc) -> None:
    """Reply with the taxonomy message of a BotError."""
    await ctx.reply(exc.user_message(), mention_author=False)


def shorten(text: str, limit: int) -> str:
    clean = " ".join((text or "").split())
    if len(clean) <= limit:
        return clean
    return clean[: max(0, limit - 3)] + "..."
