from __future__ import annotations

import json
import sqlite3
from typing import Any


def _row_to_session(row: tuple[Any, ...] | None) -> dict[str, Any] | None:
    if row is None:
        return None
    return {
        "user_id": int(row[0]),
        "channel_id": int(row[1]),
        "session_id": str(row[2]),
        "turns_json": row[3] or "[]",
        "max_turns": int(row[4]),
        "created_at_utc": str(row[5]),
        "last_active_utc": str(row[6]),
        "last_active_ts": int(row[7] or 0),
    }


_SESSION_COLS = (
    "user_id, channel_id, session_id, turns_json, max_turns, "
    "created_at_utc, last_active_utc, last_active_ts"
)


def upsert_session_sync(conn: sqlite3.Connection, payload: dict[str, Any]) -> None:
    conn.execute(
        f"""
        INSERT INTO sessions ({_SESSION_COLS})
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(user_id, channel_id) DO UPDATE SET
            session_id = excluded.session_id,
            turns_json = excluded.turns_json,
            max_turns = excluded.max_turns,
            created_at_utc = excluded.created_at_utc,
            last_active_utc = excluded.last_active_utc,
            last_active_ts = excluded.last_active_ts
        """,
        (
            int(payload["user_id"]),
            int(payload["channel_id"]),
            str(payload["session_id"]),
            json.dumps(payload.get("turns") or [], ensure_ascii=False),
            int(payload["max_turns"]),
            payload["created_at_utc"],
            payload["last_active_utc"],
            int(payload["last_active_ts"]),
        ),
    )
    conn.commit()


def fetch_session_sync(conn: sqlite3.Connection, user_id: int, channel_id: int) -> dict[str, Any] | None:
    cur = conn.execute(
        f"SELECT {_SESSION_COLS} FROM sessions WHERE user_id = ? AND channel_id = ? LIMIT 1",
        (int(user_id), int(channel_id)),
    )
    return _row_to_session(cur.fetchone())


def fetch_all_sessions_sync(conn: sqlite3.Connection) -> list[dict[str, Any]]:
    cur = conn.execute(f"SELECT {_SESSION_COLS} FROM sessions ORDER BY last_active_ts DESC")
    return [s for s in (_row_to_session(r) for r in cur.fetchall()) if s is not None]


def fetch_idle_session_keys_sync(conn: sqlite3.Connection, cutoff_ts: int) -> list[tuple[int, int]]:
    cur = conn.execute(
        "SELECT user_id, channel_id FROM sessions WHERE last_active_ts < ?",
        (int(cutoff_ts),),
    )
    return [(int(u), int(c)) for u, c in cur.fetchall()]


def delete_session_sync(conn: sqlite3.Connection, user_id: int, channel_id: int) -> bool:
    cur = conn.execute(
        "DELETE FROM sessions WHERE user_id = ? AND channel_id = ?",
        (int(user_id), int(channel_id)),
    )
    conn.commit()
    return int(cur.rowcount or 0) > 0


def delete_session_if_idle_sync(conn: sqlite3.Connection, user_id: int, channel_id: int, cutoff_ts: int) -> bool:
    cur = conn.execute(
        "DELETE FROM sessions WHERE user_id = ? AND channel_id = ? AND last_active_ts < ?",
        (int(user_id), int(channel_id), int(cutoff_ts)),
    )
    conn.commit()
    return int(cur.rowcount or 0) > 0


def count_sessions_sync(conn: sqlite3.Connection) -> int:
    row = conn.execute("SELECT COUNT(*) FROM sessions").fetchone()
    return int(row[0] if row else 0)
