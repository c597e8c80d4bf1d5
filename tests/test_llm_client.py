from __future__ import annotations

import json
import unittest
from types import SimpleNamespace

from llm.client import GlmClient
from misc.errors import UpstreamFailure


def _message(content=None, tool_calls=None):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content, tool_calls=tool_calls))])


def _tool_call(call_id: str, name: str, arguments: dict):
    return SimpleNamespace(id=call_id, function=SimpleNamespace(name=name, arguments=json.dumps(arguments)))


class _ScriptedCompletions:
    def __init__(self, responses):
        self.responses = list(responses)
        self.requests: list[dict] = []

    def create(self, **kwargs):
        self.requests.append(kwargs)
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def _client(responses):
    completions = _ScriptedCompletions(responses)
    return SimpleNamespace(chat=SimpleNamespace(completions=completions)), completions


class _Tools:
    def __init__(self):
        self.calls: list[tuple[str, str]] = []

    def schemas(self):
        return [{"type": "function", "function": {"name": "recall", "parameters": {"type": "object"}}}]

    async def call(self, name, arguments):
        self.calls.append((name, arguments))
        return {"ok": True, "memories": [{"id": 1, "content": "likes tea"}]}


class GlmClientTests(unittest.IsolatedAsyncioTestCase):
    async def test_plain_reply(self):
        raw, completions = _client([_message("  Hi!  ")])
        llm = GlmClient(raw, "glm-test")

        reply = await llm.complete("system text", [{"role": "user", "content": "hello"}])
        self.assertEqual(reply, "Hi!")
        request = completions.requests[0]
        self.assertEqual(request["model"], "glm-test")
        self.assertEqual(request["messages"][0], {"role": "system", "content": "system text"})
        self.assertNotIn("tools", request)

    async def test_empty_reply_has_placeholder(self):
        raw, _ = _client([_message("")])
        self.assertEqual(await GlmClient(raw, "glm-test").complete("s", []), "(no output)")

    async def test_tool_round_trip(self):
        raw, completions = _client(
            [
                _message(None, [_tool_call("call_1", "recall", {"query": "drink"})]),
                _message("You like tea."),
            ]
        )
        tools = _Tools()
        reply = await GlmClient(raw, "glm-test").complete("s", [{"role": "user", "content": "what do I drink?"}], tools=tools)

        self.assertEqual(reply, "You like tea.")
        self.assertEqual(tools.calls, [("recall", json.dumps({"query": "drink"}))])
        second = completions.requests[1]["messages"]
        self.assertEqual(second[-2]["tool_calls"][0]["id"], "call_1")
        self.assertEqual(second[-1]["role"], "tool")
        self.assertEqual(second[-1]["tool_call_id"], "call_1")
        self.assertIn("likes tea", second[-1]["content"])

    async def test_last_round_is_sent_without_tools(self):
        looping = _message(None, [_tool_call("c", "recall", {"query": "x"})])
        raw, completions = _client([looping, looping, _message("done")])

        reply = await GlmClient(raw, "glm-test", max_tool_rounds=2).complete("s", [], tools=_Tools())
        self.assertEqual(reply, "done")
        self.assertIn("tools", completions.requests[0])
        self.assertNotIn("tools", completions.requests[2])

    async def test_model_that_never_stops_calling_tools(self):
        looping = _message(None, [_tool_call("c", "recall", {"query": "x"})])
        raw, _ = _client([looping, looping])

        with self.assertRaises(UpstreamFailure):
            await GlmClient(raw, "glm-test", max_tool_rounds=1).complete("s", [], tools=_Tools())

    async def test_transport_errors_become_upstream_failure(self):
        raw, _ = _client([ConnectionError("refused")])

        with self.assertRaises(UpstreamFailure):
            await GlmClient(raw, "glm-test").complete("s", [])


if __name__ == "__main__":
    unittest.main()
