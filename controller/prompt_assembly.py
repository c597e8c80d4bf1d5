from __future__ import annotations

from session.models import Turn


def build_system_context(
    *,
    system_prompt_base: str,
    actor_id: int,
    channel_id: int,
    memory_tools: bool,
    scheduled: bool,
    now_iso: str,
    max_chars: int,
) -> str:
    parts = [(system_prompt_base or "").strip()]
    parts.append(f"Current time (UTC): {now_iso}\nUser id: {actor_id}\nChannel id: {channel_id}")
    if memory_tools:
        parts.append("Memory tools are enabled for this user: use `recall` before answering questions about them.")
    else:
        parts.append("Memory tools are not available for this user; do not claim to remember things.")
    if scheduled:
        parts.append(
            "This message is a scheduled prompt the user set up earlier, not a live message. "
            "Answer it directly; the user may not be watching the channel."
        )
    return "\n\n".join(p for p in parts if p)[:max_chars]


def build_turns(history: list[Turn], prompt: str, *, max_chars: int) -> list[dict]:
    msgs = [{"role": t.role, "content": (t.content or "")[:max_chars]} for t in history]
    msgs.append({"role": "user", "content": (prompt or "")[:max_chars]})
    return msgs
