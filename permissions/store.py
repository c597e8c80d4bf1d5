from __future__ import annotations

import json
import sqlite3
from typing import Any, Iterable


def has_grant_sync(conn: sqlite3.Connection, user_id: int, capability: str) -> bool:
    row = conn.execute(
        "SELECT 1 FROM permission_grants WHERE user_id = ? AND capability = ? LIMIT 1",
        (int(user_id), str(capability)),
    ).fetchone()
    return row is not None


def list_grants_sync(conn: sqlite3.Connection, user_id: int) -> list[dict[str, Any]]:
    cur = conn.execute(
        """
        SELECT user_id, capability, granted_by, granted_at_utc
        FROM permission_grants
        WHERE user_id = ?
        ORDER BY capability ASC
        """,
        (int(user_id),),
    )
    return [
        {"user_id": int(u), "capability": str(c), "granted_by": g, "granted_at_utc": str(t)}
        for u, c, g, t in cur.fetchall()
    ]


def upsert_grant_sync(
    conn: sqlite3.Connection,
    user_id: int,
    capability: str,
    granted_by: int,
    granted_at_utc: str,
) -> bool:
    """Returns False when the grant already existed."""
    cur = conn.execute(
        """
        INSERT OR IGNORE INTO permission_grants (user_id, capability, granted_by, granted_at_utc)
        VALUES (?, ?, ?, ?)
        """,
        (int(user_id), str(capability), int(granted_by), granted_at_utc),
    )
    conn.commit()
    return int(cur.rowcount or 0) > 0


def delete_grant_sync(conn: sqlite3.Connection, user_id: int, capability: str) -> bool:
    cur = conn.execute(
        "DELETE FROM permission_grants WHERE user_id = ? AND capability = ?",
        (int(user_id), str(capability)),
    )
    conn.commit()
    return int(cur.rowcount or 0) > 0


def _role_row(row: tuple) -> dict[str, Any]:
    try:
        caps = json.loads(row[2] or "[]")
    except (TypeError, ValueError):
        caps = []
    return {
        "role_id": int(row[0]),
        "name": str(row[1]),
        "capabilities": [str(c) for c in caps] if isinstance(caps, list) else [],
        "updated_by": row[3],
        "updated_at_utc": str(row[4]),
    }


def fetch_roles_sync(conn: sqlite3.Connection, role_ids: Iterable[int] | None = None) -> list[dict[str, Any]]:
    cols = "role_id, name, capabilities_json, updated_by, updated_at_utc"
    if role_ids is None:
        cur = conn.execute(f"SELECT {cols} FROM permission_roles ORDER BY name ASC, role_id ASC")
        return [_role_row(r) for r in cur.fetchall()]

    ids = [int(r) for r in role_ids]
    if not ids:
        return []
    placeholders = ",".join("?" for _ in ids)
    cur = conn.execute(
        f"SELECT {cols} FROM permission_roles WHERE role_id IN ({placeholders})",
        ids,
    )
    return [_role_row(r) for r in cur.fetchall()]


def upsert_role_sync(
    conn: sqlite3.Connection,
    role_id: int,
    name: str,
    capabilities: list[str],
    updated_by: int | None,
    updated_at_utc: str,
) -> None:
    conn.execute(
        """
        INSERT INTO permission_roles (role_id, name, capabilities_json, updated_by, updated_at_utc)
        VALUES (?, ?, ?, ?, ?)
        ON CONFLICT(role_id) DO UPDATE SET
            name = excluded.name,
            capabilities_json = excluded.capabilities_json,
            updated_by = excluded.updated_by,
            updated_at_utc = excluded.updated_at_utc
        """,
        (int(role_id), name, json.dumps(list(capabilities)), updated_by, updated_at_utc),
    )
    conn.commit()


def delete_role_sync(conn: sqlite3.Connection, role_id: int) -> bool:
    cur = conn.execute("DELETE FROM permission_roles WHERE role_id = ?", (int(role_id),))
    conn.commit()
    return int(cur.rowcount or 0) > 0
