from __future__ import annotations

import asyncio
import json
import sqlite3
import time
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest import mock

from db.migrate import apply_sqlite_migrations
from misc.errors import InvalidInput, NotFound, StorageFailure
from session.models import SessionKey, Turn
import session.service as session_service
from session.service import SessionStore


def _repo_root() -> Path:
    return Path(__file__).resolve().parents[1]


def _migrations_dir() -> str:
    return str(_repo_root() / "migrations")


class _Clock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class SessionStoreTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.conn = sqlite3.connect(":memory:", check_same_thread=False)
        apply_sqlite_migrations(self.conn, _migrations_dir())
        self.db_lock = asyncio.Lock()
        self.clock = _Clock(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))
        self.store = self._store()
        self.key = SessionKey(user_id=11, channel_id=22)

    async def asyncTearDown(self):
        self.conn.close()

    def _store(self, max_turns: int = 20) -> SessionStore:
        return SessionStore(db_lock=self.db_lock, db_conn=self.conn, max_turns=max_turns, now_func=self.clock)

    async def test_history_keeps_only_the_newest_turns(self):
        await self.store.get_or_create(self.key)
        for i in range(1, 26):
            await self.store.append_turn(self.key, "user", f"turn {i}")

        session = await self.store.get(self.key)
        self.assertEqual(len(session.turns), 20)
        self.assertEqual(session.turns[0].content, "turn 6")
        self.assertEqual(session.turns[-1].content, "turn 25")

    async def test_history_survives_reload_from_database(self):
        await self.store.append_turns(self.key, [Turn("user", "hi"), Turn("assistant", "hello")])

        reloaded = self._store()
        self.assertEqual(await reloaded.load(), 1)
        session = await reloaded.get(self.key)
        self.assertEqual([t.content for t in session.turns], ["hi", "hello"])

    async def test_clear_keeps_session_identity(self):
        created = await self.store.get_or_create(self.key)
        await self.store.append_turn(self.key, "user", "remember me")

        cleared = await self.store.clear(self.key)
        self.assertEqual(cleared.id, created.id)
        self.assertEqual(cleared.turns, [])
        row = self.conn.execute(
            "SELECT turns_json FROM sessions WHERE user_id = ? AND channel_id = ?", (11, 22)
        ).fetchone()
        self.assertEqual(json.loads(row[0]), [])

    async def test_clear_without_session_is_not_found(self):
        with self.assertRaises(NotFound):
            await self.store.clear(self.key)

    async def test_append_without_create_is_not_found(self):
        with self.assertRaises(NotFound):
            await self.store.append_turn(self.key, "user", "hello")

    async def test_invalid_role_is_rejected(self):
        with self.assertRaises(InvalidInput):
            await self.store.append_turn(self.key, "tool", "nope", create=True)

    async def test_concurrent_appends_are_all_kept(self):
        await self.store.get_or_create(self.key)
        await asyncio.gather(*(self.store.append_turn(self.key, "user", f"m{i}") for i in range(10)))

        session = await self._store().get(self.key)
        self.assertEqual(len(session.turns), 10)
        self.assertEqual({t.content for t in session.turns}, {f"m{i}" for i in range(10)})

    async def test_sessions_are_isolated_per_user_and_channel(self):
        other = SessionKey(user_id=11, channel_id=33)
        await self.store.append_turn(self.key, "user", "channel 22", create=True)
        await self.store.append_turn(other, "user", "channel 33", create=True)

        self.assertEqual([t.content for t in (await self.store.get(self.key)).turns], ["channel 22"])
        self.assertEqual([t.content for t in (await self.store.get(other)).turns], ["channel 33"])

    async def test_sweep_removes_only_idle_sessions(self):
        idle = SessionKey(user_id=1, channel_id=1)
        await self.store.get_or_create(idle)
        self.clock.advance(minutes=45)
        await self.store.get_or_create(self.key)

        removed = await self.store.sweep(timedelta(minutes=30))
        self.assertEqual(removed, 1)
        self.assertIsNone(await self.store.get(idle))
        self.assertIsNotNone(await self.store.get(self.key))
        self.assertEqual(await self.store.count(), 1)

    async def test_failed_write_leaves_cache_untouched(self):
        await self.store.append_turn(self.key, "user", "kept", create=True)
        self.conn.execute("DROP TABLE sessions")

        with self.assertRaises(StorageFailure):
            await self.store.append_turn(self.key, "user", "lost")
        session = await self.store.get(self.key)
        self.assertEqual([t.content for t in session.turns], ["kept"])

    async def test_cancelled_append_still_commits_both_turns(self):
        real_upsert = session_service.upsert_session_sync

        def slow_upsert(conn, payload):
            time.sleep(0.3)
            return real_upsert(conn, payload)

        with mock.patch.object(session_service, "upsert_session_sync", slow_upsert):
            task = asyncio.create_task(
                self.store.append_turns(self.key, [Turn("user", "question"), Turn("assistant", "answer")])
            )
            await asyncio.sleep(0.05)
            task.cancel()
            with self.assertRaises(asyncio.CancelledError):
                await task

        session = await self.store.get(self.key)
        self.assertEqual([t.content for t in session.turns], ["question", "answer"])

        await self.store.append_turn(self.key, "user", "follow up")
        row = self.conn.execute(
            "SELECT turns_json FROM sessions WHERE user_id = ? AND channel_id = ?", (11, 22)
        ).fetchone()
        self.assertEqual([t["content"] for t in json.loads(row[0])], ["question", "answer", "follow up"])

    async def test_snapshot_is_detached_from_store(self):
        session = await self.store.append_turn(self.key, "user", "one", create=True)
        session.turns.append(Turn("user", "local only"))

        fresh = await self.store.get(self.key)
        self.assertEqual([t.content for t in fresh.turns], ["one"])


if __name__ == "__main__":
    unittest.main()
