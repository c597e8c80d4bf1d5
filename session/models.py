from __future__ import annotations

from dataclasses import dataclass, field, replace


TURN_ROLES = ("user", "assistant", "system")


@dataclass(frozen=True, slots=True)
class SessionKey:
    user_id: int
    channel_id: int

    def __str__(self) -> str:
        return f"user:{self.user_id}/channel:{self.channel_id}"


@dataclass(frozen=True, slots=True)
class Turn:
    role: str
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}

    @classmethod
    def from_dict(cls, raw: dict) -> "Turn":
        role = str(raw.get("role") or "").strip().lower()
        if role not in TURN_ROLES:
            raise ValueError(f"Invalid turn role: {role!r}")
        return cls(role=role, content=str(raw.get("content") or ""))


@dataclass(slots=True)
class Session:
    id: str
    key: SessionKey
    max_turns: int
    created_at_utc: str
    last_active_utc: str
    last_active_ts: int
    turns: list[Turn] = field(default_factory=list)

    def push(self, turn: Turn) -> None:
        self.turns.append(turn)
        overflow = len(self.turns) - self.max_turns
        if overflow > 0:
            del self.turns[:overflow]

    def snapshot(self) -> "Session":
        return replace(self, turns=list(self.turns))

    def messages(self) -> list[dict[str, str]]:
        return [t.to_dict() for t in self.turns]
