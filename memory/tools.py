from __future__ import annotations

import json
from typing import Any

from config.defaults import DEFAULT_RECALL_LIMIT
from misc.errors import BotError


REMEMBER_TOOL = {
    "type": "function",
    "function": {
        "name": "remember",
        "description": (
            "Store a long-term fact about the current user so it can be recalled in later "
            "conversations. Only store things the user would expect you to keep."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "content": {"type": "string", "description": "The fact to store, as one sentence."},
                "category": {"type": "string", "description": "Short category such as preference or project."},
                "tags": {"type": "array", "items": {"type": "string"}},
            },
            "required": ["content"],
        },
    },
}

RECALL_TOOL = {
    "type": "function",
    "function": {
        "name": "recall",
        "description": "Search the current user's stored memories. Returns the best matches first.",
        "parameters": {
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "Words to look for; empty returns the most recent."},
                "limit": {"type": "integer", "minimum": 1, "maximum": 20},
            },
            "required": ["query"],
        },
    },
}


class MemoryToolBinding:
    """`remember` / `recall` function tools bound to one acting user."""

    def __init__(self, memory_service, actor: int):
        self.memory_service = memory_service
        self.actor = int(actor)

    def schemas(self) -> list[dict[str, Any]]:
        return [REMEMBER_TOOL, RECALL_TOOL]

    def names(self) -> set[str]:
        return {t["function"]["name"] for t in self.schemas()}

    async def call(self, name: str, arguments: str | dict | None) -> dict[str, Any]:
        if isinstance(arguments, dict):
            kwargs = arguments
        else:
            try:
                kwargs = json.loads(arguments or "{}")
            except json.JSONDecodeError:
                kwargs = {}
        if not isinstance(kwargs, dict):
            kwargs = {}

        try:
            if name == "remember":
                record = await self.memory_service.remember(
                    self.actor,
                    kwargs.get("content") or "",
                    category=kwargs.get("category"),
                    tags=kwargs.get("tags"),
                    metadata={"source": "tool"},
                )
                return {"ok": True, "id": record.id, "category": record.category}
            if name == "recall":
                records = await self.memory_service.recall(
                    self.actor,
                    str(kwargs.get("query") or ""),
                    limit=kwargs.get("limit") or DEFAULT_RECALL_LIMIT,
                )
                return {
                    "ok": True,
                    "memories": [
                        {"id": r.id, "content": r.content, "category": r.category, "tags": r.tags}
                        for r in records
                    ],
                }
        except BotError as e:
            return {"ok": False, "error": e.user_message()}
        return {"ok": False, "error": f"Unknown tool: {name}"}
