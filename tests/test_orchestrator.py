from __future__ import annotations

import asyncio
import sqlite3
import unittest
from datetime import datetime, timezone
from pathlib import Path
from types import SimpleNamespace

from controller.orchestrator import AskOrchestrator
from db.migrate import apply_sqlite_migrations
from memory.service import MemoryService
from misc.errors import Forbidden, InvalidInput, NotFound, RequestCancelled, UpstreamFailure
from permissions.resolver import PermissionResolver
from session.models import SessionKey
from session.service import SessionStore


def _repo_root() -> Path:
    return Path(__file__).resolve().parents[1]


def _migrations_dir() -> str:
    return str(_repo_root() / "migrations")


USER = 10
CHANNEL = 20


class _FakeLlm:
    def __init__(self, reply: str = "Hello there"):
        self.reply = reply
        self.calls: list[dict] = []
        self.started = asyncio.Event()
        self.block: asyncio.Event | None = None
        self.error: Exception | None = None

    async def complete(self, system_context, turns, tools=None):
        self.calls.append({"system": system_context, "turns": list(turns), "tools": tools})
        self.started.set()
        if self.block is not None:
            await self.block.wait()
        if self.error is not None:
            raise self.error
        return self.reply


class AskOrchestratorTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.conn = sqlite3.connect(":memory:", check_same_thread=False)
        apply_sqlite_migrations(self.conn, _migrations_dir())
        self.db_lock = asyncio.Lock()
        self.sessions = SessionStore(db_lock=self.db_lock, db_conn=self.conn, max_turns=20)
        self.memory = MemoryService(db_lock=self.db_lock, db_conn=self.conn)
        self.permissions = PermissionResolver(
            db_lock=self.db_lock,
            db_conn=self.conn,
            super_user_ids=set(),
            default_capabilities=["chat"],
        )
        self.llm = _FakeLlm()
        self.delivered: list[tuple[int, str]] = []
        self.orchestrator = self._orchestrator()
        self.key = SessionKey(USER, CHANNEL)

    async def asyncTearDown(self):
        self.conn.close()

    def _orchestrator(self, **kwargs) -> AskOrchestrator:
        async def deliver(channel_id, text):
            self.delivered.append((channel_id, text))

        params = {
            "session_store": self.sessions,
            "memory_service": self.memory,
            "permission_resolver": self.permissions,
            "llm_client": self.llm,
            "system_prompt": "You are a test bot.",
            "deliver": deliver,
        }
        params.update(kwargs)
        return AskOrchestrator(**params)

    async def _grant(self, capability: str) -> None:
        self.conn.execute(
            "INSERT INTO permission_grants (user_id, capability, granted_by, granted_at_utc) VALUES (?, ?, 0, 'x')",
            (USER, capability),
        )
        self.conn.commit()

    async def test_reply_commits_both_turns(self):
        reply = await self.orchestrator.ask(USER, CHANNEL, "  hi bot  ")
        self.assertEqual(reply, "Hello there")

        session = await self.sessions.get(self.key)
        self.assertEqual([(t.role, t.content) for t in session.turns], [("user", "hi bot"), ("assistant", "Hello there")])

    async def test_system_context_uses_injected_clock(self):
        orchestrator = self._orchestrator(now_func=lambda: datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc))
        await orchestrator.ask(USER, CHANNEL, "what time is it?")

        self.assertIn("Current time (UTC): 2026-03-02T09:30:00+00:00", self.llm.calls[0]["system"])

    async def test_history_is_sent_to_the_model(self):
        await self.orchestrator.ask(USER, CHANNEL, "first")
        await self.orchestrator.ask(USER, CHANNEL, "second")

        turns = self.llm.calls[-1]["turns"]
        self.assertEqual([m["content"] for m in turns], ["first", "Hello there", "second"])

    async def test_failed_call_leaves_history_untouched(self):
        await self.orchestrator.ask(USER, CHANNEL, "first")
        self.llm.error = UpstreamFailure("boom")

        with self.assertRaises(UpstreamFailure):
            await self.orchestrator.ask(USER, CHANNEL, "second")
        session = await self.sessions.get(self.key)
        self.assertEqual(len(session.turns), 2)

    async def test_timeout_is_upstream_failure(self):
        self.llm.block = asyncio.Event()
        orchestrator = self._orchestrator(request_timeout=0.05)

        with self.assertRaises(UpstreamFailure):
            await orchestrator.ask(USER, CHANNEL, "slow one")
        self.assertFalse(orchestrator.in_flight(USER, CHANNEL))
        session = await self.sessions.get(self.key)
        self.assertEqual(session.turns, [])

    async def test_cancel_interrupts_in_flight_call(self):
        self.llm.block = asyncio.Event()
        pending = asyncio.create_task(self.orchestrator.ask(USER, CHANNEL, "long question"))
        await self.llm.started.wait()

        self.assertTrue(self.orchestrator.in_flight(USER, CHANNEL))
        self.assertFalse(self.orchestrator.cancel(USER, CHANNEL + 1))
        self.assertTrue(self.orchestrator.cancel(USER, CHANNEL))
        with self.assertRaises(RequestCancelled):
            await pending

        session = await self.sessions.get(self.key)
        self.assertEqual(session.turns, [])
        self.assertFalse(self.orchestrator.cancel(USER, CHANNEL))

    async def test_permission_is_checked_before_anything_else(self):
        with self.assertRaises(Forbidden):
            await self.orchestrator.ask(USER, CHANNEL, "hi", capability="schedule")
        self.assertEqual(self.llm.calls, [])
        self.assertIsNone(await self.sessions.get(self.key))

    async def test_blank_prompt_is_invalid(self):
        with self.assertRaises(InvalidInput):
            await self.orchestrator.ask(USER, CHANNEL, "   ")

    async def test_existing_session_required_when_not_creating(self):
        with self.assertRaises(NotFound):
            await self.orchestrator.ask(USER, CHANNEL, "hi", create_session=False)

    async def test_memory_tools_follow_capability(self):
        await self.orchestrator.ask(USER, CHANNEL, "hi")
        self.assertIsNone(self.llm.calls[-1]["tools"])

        await self._grant("memory")
        await self.orchestrator.ask(USER, CHANNEL, "hi again")
        tools = self.llm.calls[-1]["tools"]
        self.assertEqual(tools.names(), {"remember", "recall"})
        self.assertEqual(tools.actor, USER)

    async def test_dispatch_scheduled_delivers_reply(self):
        await self._grant("schedule")
        task = SimpleNamespace(owner_id=USER, channel_id=CHANNEL, prompt="Daily digest", cron_expression="0 9 * * *")

        reply = await self.orchestrator.dispatch_scheduled(task)
        self.assertEqual(reply, "Hello there")
        self.assertEqual(len(self.delivered), 1)
        channel_id, text = self.delivered[0]
        self.assertEqual(channel_id, CHANNEL)
        self.assertIn("0 9 * * *", text)
        self.assertTrue(text.endswith("Hello there"))
        self.assertIn("scheduled prompt", self.llm.calls[-1]["system"])

    async def test_dispatch_scheduled_requires_schedule_capability(self):
        task = SimpleNamespace(owner_id=USER, channel_id=CHANNEL, prompt="Daily digest", cron_expression="@daily")

        with self.assertRaises(Forbidden):
            await self.orchestrator.dispatch_scheduled(task)
        self.assertEqual(self.delivered, [])

    async def test_cancel_all(self):
        self.llm.block = asyncio.Event()
        first = asyncio.create_task(self.orchestrator.ask(USER, CHANNEL, "a"))
        second = asyncio.create_task(self.orchestrator.ask(USER + 1, CHANNEL, "b"))
        while len(self.llm.calls) < 2:
            await asyncio.sleep(0.01)

        self.assertEqual(self.orchestrator.cancel_all(), 2)
        for pending in (first, second):
            with self.assertRaises(RequestCancelled):
                await pending


if __name__ == "__main__":
    unittest.main()
