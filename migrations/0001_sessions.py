from __future__ import annotations

import sqlite3


def upgrade(conn: sqlite3.Connection) -> None:
    cur = conn.cursor()
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS sessions (
            user_id INTEGER NOT NULL,
            channel_id INTEGER NOT NULL,
            session_id TEXT NOT NULL,
            turns_json TEXT NOT NULL DEFAULT '[]',
            max_turns INTEGER NOT NULL,
            created_at_utc TEXT NOT NULL,
            last_active_utc TEXT NOT NULL,
            last_active_ts INTEGER NOT NULL,
            PRIMARY KEY (user_id, channel_id)
        )
        """
    )
    cur.execute("CREATE INDEX IF NOT EXISTS idx_sessions_last_active_ts ON sessions(last_active_ts)")
    conn.commit()
