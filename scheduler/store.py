from __future__ import annotations

import sqlite3
from typing import Any


_TASK_COLS = (
    "id, owner_id, channel_id, cron_expression, prompt, enabled, "
    "created_at_utc, last_fired_bucket, last_run_at_utc, last_error"
)


def _rows_to_dicts(cur: sqlite3.Cursor) -> list[dict[str, Any]]:
    cols = [str(d[0]) for d in (cur.description or ())]
    return [{cols[i]: row[i] for i in range(len(cols))} for row in cur.fetchall()]


def insert_task_sync(conn: sqlite3.Connection, row: dict[str, Any]) -> None:
    conn.execute(
        f"INSERT INTO scheduled_tasks ({_TASK_COLS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
        (
            row["id"],
            int(row["owner_id"]),
            int(row["channel_id"]),
            row["cron_expression"],
            row["prompt"],
            int(row["enabled"]),
            row["created_at_utc"],
            row.get("last_fired_bucket"),
            row.get("last_run_at_utc"),
            row.get("last_error"),
        ),
    )
    conn.commit()


def fetch_tasks_sync(conn: sqlite3.Connection) -> list[dict[str, Any]]:
    cur = conn.execute(f"SELECT {_TASK_COLS} FROM scheduled_tasks ORDER BY created_at_utc ASC, id ASC")
    return _rows_to_dicts(cur)


def delete_task_sync(conn: sqlite3.Connection, task_id: str) -> bool:
    cur = conn.execute("DELETE FROM scheduled_tasks WHERE id = ?", (task_id,))
    conn.commit()
    return int(cur.rowcount or 0) > 0


def set_task_enabled_sync(conn: sqlite3.Connection, task_id: str, enabled: bool) -> bool:
    cur = conn.execute(
        "UPDATE scheduled_tasks SET enabled = ? WHERE id = ?",
        (1 if enabled else 0, task_id),
    )
    conn.commit()
    return int(cur.rowcount or 0) > 0


def mark_fired_sync(conn: sqlite3.Connection, marks: list[tuple[str, str]]) -> None:
    """Record (task_id, bucket_text) pairs in one transaction."""
    try:
        conn.executemany(
            "UPDATE scheduled_tasks SET last_fired_bucket = ? WHERE id = ?",
            [(bucket, task_id) for task_id, bucket in marks],
        )
    except Exception:
        conn.rollback()
        raise
    conn.commit()


def record_run_sync(
    conn: sqlite3.Connection,
    task_id: str,
    last_run_at_utc: str,
    last_error: str | None,
) -> None:
    conn.execute(
        "UPDATE scheduled_tasks SET last_run_at_utc = ?, last_error = ? WHERE id = ?",
        (last_run_at_utc, last_error, task_id),
    )
    conn.commit()
