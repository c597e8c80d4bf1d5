from __future__ import annotations

import asyncio
import json
from typing import Any, Iterable

from misc.errors import UpstreamFailure


def _as_message(turn: Any) -> dict[str, str]:
    if isinstance(turn, dict):
        return {"role": str(turn["role"]), "content": str(turn.get("content") or "")}
    return {"role": str(turn.role), "content": str(turn.content)}


class GlmClient:
    """Chat completions against the GLM OpenAI-compatible endpoint, with a
    small function-calling loop for bound tools (`schemas()` + async `call()`)."""

    def __init__(self, client, model: str, *, max_tool_rounds: int = 4):
        self.client = client
        self.model = model
        self.max_tool_rounds = max(0, int(max_tool_rounds))

    async def _create(self, messages: list[dict[str, Any]], tool_schemas: list[dict[str, Any]] | None):
        kwargs: dict[str, Any] = {"model": self.model, "messages": messages}
        if tool_schemas:
            kwargs["tools"] = tool_schemas
        try:
            return await asyncio.to_thread(self.client.chat.completions.create, **kwargs)
        except Exception as e:
            print(f"[GLM] Error: {type(e).__name__}: {e}")
            raise UpstreamFailure(f"LLM request failed: {e}") from e

    async def complete(self, system_context: str, turns: Iterable[Any], tools=None) -> str:
        messages: list[dict[str, Any]] = [{"role": "system", "content": system_context}]
        messages.extend(_as_message(t) for t in turns)
        tool_schemas = tools.schemas() if tools is not None else None

        for round_no in range(self.max_tool_rounds + 1):
            # Last round goes out without tools so the model has to answer.
            offer_tools = tool_schemas if round_no < self.max_tool_rounds else None
            resp = await self._create(messages, offer_tools)
            try:
                msg = resp.choices[0].message
            except (AttributeError, IndexError) as e:
                raise UpstreamFailure("LLM returned no choices") from e

            tool_calls = getattr(msg, "tool_calls", None) or []
            if not tool_calls or tools is None:
                content = (msg.content or "").strip()
                return content or "(no output)"

            messages.append(
                {
                    "role": "assistant",
                    "content": msg.content or "",
                    "tool_calls": [
                        {
                            "id": tc.id,
                            "type": "function",
                            "function": {"name": tc.function.name, "arguments": tc.function.arguments},
                        }
                        for tc in tool_calls
                    ],
                }
            )
            for tc in tool_calls:
                result = await tools.call(tc.function.name, tc.function.arguments)
                print(f"[GLM] tool {tc.function.name} ok={result.get('ok')}")
                messages.append(
                    {
                        "role": "tool",
                        "tool_call_id": tc.id,
                        "content": json.dumps(result, ensure_ascii=False, default=str),
                    }
                )

        raise UpstreamFailure("LLM kept calling tools without answering")
