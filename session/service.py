from __future__ import annotations

import asyncio
import json
import sqlite3
import uuid
from datetime import datetime, timedelta
from typing import Callable, Iterable

from misc.errors import InvalidInput, NotFound, storage_failure
from misc.keyed_locks import KeyedLocks
from misc.time_utils import utc_iso, utc_now, utc_ts
from session.models import TURN_ROLES, Session, SessionKey, Turn
from session.store import (
    count_sessions_sync,
    delete_session_if_idle_sync,
    delete_session_sync,
    fetch_all_sessions_sync,
    fetch_idle_session_keys_sync,
    fetch_session_sync,
    upsert_session_sync,
)


async def _run_to_completion(coro, label: str):
    """Await a write that must not be abandoned half way.

    A worker thread commits even when its awaiting task is cancelled, so the
    write (and its cache update) finishes before cancellation propagates and
    before the caller's key lock is released.
    """
    task = asyncio.ensure_future(coro)
    try:
        return await asyncio.shield(task)
    except asyncio.CancelledError:
        await asyncio.wait({task})
        if not task.cancelled() and task.exception() is not None:
            print(f"[Session] {label} failed after cancellation: {task.exception()}")
        raise


class SessionStore:
    """Bounded per-(user, channel) conversation histories.

    Every mutation is written to SQLite before the call returns; the in-process
    cache is only updated after the write succeeded, so a failed write never
    leaves the cache ahead of the table. Calls on the same key are serialized
    with a per-key lock; `db_lock` guards the shared connection.
    """

    def __init__(
        self,
        *,
        db_lock: asyncio.Lock,
        db_conn: sqlite3.Connection,
        max_turns: int = 20,
        now_func: Callable[[], datetime] | None = None,
    ) -> None:
        if int(max_turns) < 1:
            raise ValueError("max_turns must be >= 1")
        self.db_lock = db_lock
        self.db_conn = db_conn
        self.max_turns = int(max_turns)
        self._now = now_func or utc_now
        self._cache: dict[SessionKey, Session] = {}
        self._locks = KeyedLocks()

    def _new_session(self, key: SessionKey) -> Session:
        now = self._now()
        return Session(
            id=uuid.uuid4().hex,
            key=key,
            max_turns=self.max_turns,
            created_at_utc=utc_iso(now),
            last_active_utc=utc_iso(now),
            last_active_ts=utc_ts(now),
        )

    def _touch(self, session: Session) -> None:
        now = self._now()
        session.last_active_utc = utc_iso(now)
        session.last_active_ts = utc_ts(now)

    def _from_row(self, row: dict) -> Session:
        key = SessionKey(int(row["user_id"]), int(row["channel_id"]))
        try:
            raw_turns = json.loads(row["turns_json"] or "[]")
            turns = [Turn.from_dict(t) for t in raw_turns if isinstance(t, dict)]
        except (ValueError, TypeError) as e:
            print(f"[Session] corrupt history for {key}, starting empty: {e}")
            turns = []
        session = Session(
            id=row["session_id"],
            key=key,
            max_turns=self.max_turns,
            created_at_utc=row["created_at_utc"],
            last_active_utc=row["last_active_utc"],
            last_active_ts=int(row["last_active_ts"]),
        )
        for turn in turns:
            session.push(turn)
        return session

    async def _load(self, key: SessionKey) -> Session | None:
        cached = self._cache.get(key)
        if cached is not None:
            return cached
        try:
            async with self.db_lock:
                row = await asyncio.to_thread(fetch_session_sync, self.db_conn, key.user_id, key.channel_id)
        except sqlite3.Error as e:
            raise storage_failure(f"load session {key}", e) from e
        if row is None:
            return None
        session = self._from_row(row)
        self._cache[key] = session
        return session

    async def _persist(self, session: Session) -> None:
        payload = {
            "user_id": session.key.user_id,
            "channel_id": session.key.channel_id,
            "session_id": session.id,
            "turns": session.messages(),
            "max_turns": session.max_turns,
            "created_at_utc": session.created_at_utc,
            "last_active_utc": session.last_active_utc,
            "last_active_ts": session.last_active_ts,
        }

        async def write() -> None:
            try:
                async with self.db_lock:
                    await asyncio.to_thread(upsert_session_sync, self.db_conn, payload)
            except sqlite3.Error as e:
                raise storage_failure(f"save session {session.key}", e) from e
            self._cache[session.key] = session

        await _run_to_completion(write(), f"save session {session.key}")

    async def get(self, key: SessionKey) -> Session | None:
        async with self._locks.hold(key):
            session = await self._load(key)
            return session.snapshot() if session is not None else None

    async def get_or_create(self, key: SessionKey) -> Session:
        async with self._locks.hold(key):
            current = await self._load(key)
            if current is None:
                working = self._new_session(key)
                print(f"[Session] created {key} id={working.id}")
            else:
                working = current.snapshot()
                self._touch(working)
            await self._persist(working)
            return working.snapshot()

    async def append_turn(self, key: SessionKey, role: str, text: str, *, create: bool = False) -> Session:
        return await self.append_turns(key, [Turn(role=role, content=text)], create=create)

    async def append_turns(self, key: SessionKey, turns: Iterable[Turn], *, create: bool = True) -> Session:
        """Append several turns in one durable write (all of them or none)."""
        batch = list(turns)
        for turn in batch:
            if turn.role not in TURN_ROLES:
                raise InvalidInput(f"Invalid turn role: {turn.role!r}")

        async with self._locks.hold(key):
            current = await self._load(key)
            if current is None:
                if not create:
                    raise NotFound(f"No conversation session exists for {key}.")
                working = self._new_session(key)
            else:
                working = current.snapshot()
            for turn in batch:
                working.push(turn)
            self._touch(working)
            await self._persist(working)
            return working.snapshot()

    async def clear(self, key: SessionKey) -> Session:
        """Drop all turns; the session id and timestamps stay as they were."""
        async with self._locks.hold(key):
            current = await self._load(key)
            if current is None:
                raise NotFound("There is no conversation history here to clear.")
            working = current.snapshot()
            working.turns = []
            await self._persist(working)
            print(f"[Session] cleared {key}")
            return working.snapshot()

    async def delete(self, key: SessionKey) -> bool:
        async def remove() -> bool:
            try:
                async with self.db_lock:
                    deleted = await asyncio.to_thread(delete_session_sync, self.db_conn, key.user_id, key.channel_id)
            except sqlite3.Error as e:
                raise storage_failure(f"delete session {key}", e) from e
            self._cache.pop(key, None)
            return deleted

        async with self._locks.hold(key):
            return await _run_to_completion(remove(), f"delete session {key}")

    async def sweep(self, idle_threshold: timedelta) -> int:
        """Remove sessions idle for longer than `idle_threshold`."""
        cutoff_ts = utc_ts(self._now() - idle_threshold)
        try:
            async with self.db_lock:
                candidates = await asyncio.to_thread(fetch_idle_session_keys_sync, self.db_conn, cutoff_ts)
        except sqlite3.Error as e:
            raise storage_failure("list idle sessions", e) from e

        removed = 0
        for user_id, channel_id in candidates:
            key = SessionKey(user_id, channel_id)
            async with self._locks.hold(key):
                # Re-checked under the key lock: a turn may have landed since the scan.
                try:
                    async with self.db_lock:
                        deleted = await asyncio.to_thread(
                            delete_session_if_idle_sync, self.db_conn, user_id, channel_id, cutoff_ts
                        )
                except sqlite3.Error as e:
                    raise storage_failure(f"sweep session {key}", e) from e
                if deleted:
                    self._cache.pop(key, None)
                    removed += 1
        if removed:
            print(f"[Session] swept {removed} idle session(s)")
        return removed

    async def load(self) -> int:
        try:
            async with self.db_lock:
                rows = await asyncio.to_thread(fetch_all_sessions_sync, self.db_conn)
        except sqlite3.Error as e:
            raise storage_failure("load sessions", e) from e
        for row in rows:
            session = self._from_row(row)
            self._cache.setdefault(session.key, session)
        return len(rows)

    async def count(self) -> int:
        try:
            async with self.db_lock:
                return await asyncio.to_thread(count_sessions_sync, self.db_conn)
        except sqlite3.Error as e:
            raise storage_failure("count sessions", e) from e
