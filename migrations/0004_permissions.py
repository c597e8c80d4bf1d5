from __future__ import annotations

import sqlite3


def upgrade(conn: sqlite3.Connection) -> None:
    cur = conn.cursor()
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS permission_grants (
            user_id INTEGER NOT NULL,
            capability TEXT NOT NULL,
            granted_by INTEGER,
            granted_at_utc TEXT NOT NULL,
            PRIMARY KEY (user_id, capability)
        )
        """
    )
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS permission_roles (
            role_id INTEGER PRIMARY KEY,
            name TEXT NOT NULL,
            capabilities_json TEXT NOT NULL DEFAULT '[]',
            updated_by INTEGER,
            updated_at_utc TEXT NOT NULL
        )
        """
    )
    conn.commit()
