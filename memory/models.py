from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any


def _loads(raw: str | None, fallback: Any) -> Any:
    try:
        value = json.loads(raw) if raw else fallback
    except (TypeError, ValueError):
        return fallback
    return value if isinstance(value, type(fallback)) else fallback


@dataclass(slots=True)
class MemoryRecord:
    id: int
    user_id: int
    content: str
    category: str
    tags: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at_utc: str = ""
    updated_at_utc: str = ""
    updated_ts: int = 0

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "MemoryRecord":
        return cls(
            id=int(row["id"]),
            user_id=int(row["user_id"]),
            content=str(row.get("content") or ""),
            category=str(row.get("category") or ""),
            tags=[str(t) for t in _loads(row.get("tags_json"), [])],
            metadata=_loads(row.get("metadata_json"), {}),
            created_at_utc=str(row.get("created_at_utc") or ""),
            updated_at_utc=str(row.get("updated_at_utc") or ""),
            updated_ts=int(row.get("updated_ts") or 0),
        )

    def to_export_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "content": self.content,
            "category": self.category,
            "tags": list(self.tags),
            "metadata": dict(self.metadata),
            "created_at_utc": self.created_at_utc,
            "updated_at_utc": self.updated_at_utc,
        }


@dataclass(slots=True)
class MemoryPage:
    records: list[MemoryRecord]
    total: int
    offset: int
    limit: int

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.records) < self.total
