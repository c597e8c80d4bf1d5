from __future__ import annotations

import json
import sqlite3
from typing import Any

from retrieval.like_query import extract_keywords, like_contains


_MEMORY_COLS = (
    "id, user_id, content, category, tags_json, metadata_json, "
    "created_at_utc, created_ts, updated_at_utc, updated_ts"
)


def _rows_to_dicts(cur: sqlite3.Cursor) -> list[dict[str, Any]]:
    cols = [str(d[0]) for d in (cur.description or ())]
    return [{cols[i]: row[i] for i in range(len(cols))} for row in cur.fetchall()]


def insert_memory_sync(conn: sqlite3.Connection, payload: dict[str, Any]) -> int:
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO memories (
            user_id, content, category, tags_json, metadata_json,
            created_at_utc, created_ts, updated_at_utc, updated_ts
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            int(payload["user_id"]),
            payload["content"],
            payload["category"],
            json.dumps(payload.get("tags") or [], ensure_ascii=False),
            json.dumps(payload.get("metadata") or {}, ensure_ascii=False),
            payload["created_at_utc"],
            int(payload["created_ts"]),
            payload.get("updated_at_utc") or payload["created_at_utc"],
            int(payload.get("updated_ts") or payload["created_ts"]),
        ),
    )
    conn.commit()
    return int(cur.lastrowid)


def insert_memories_sync(conn: sqlite3.Connection, payloads: list[dict[str, Any]]) -> list[int]:
    """Insert many records in one transaction."""
    ids: list[int] = []
    cur = conn.cursor()
    try:
        for payload in payloads:
            cur.execute(
                """
                INSERT INTO memories (
                    user_id, content, category, tags_json, metadata_json,
                    created_at_utc, created_ts, updated_at_utc, updated_ts
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    int(payload["user_id"]),
                    payload["content"],
                    payload["category"],
                    json.dumps(payload.get("tags") or [], ensure_ascii=False),
                    json.dumps(payload.get("metadata") or {}, ensure_ascii=False),
                    payload["created_at_utc"],
                    int(payload["created_ts"]),
                    payload.get("updated_at_utc") or payload["created_at_utc"],
                    int(payload.get("updated_ts") or payload["created_ts"]),
                ),
            )
            ids.append(int(cur.lastrowid))
    except Exception:
        conn.rollback()
        raise
    conn.commit()
    return ids


def fetch_memory_sync(conn: sqlite3.Connection, memory_id: int, user_id: int) -> dict[str, Any] | None:
    cur = conn.execute(
        f"SELECT {_MEMORY_COLS} FROM memories WHERE id = ? AND user_id = ? LIMIT 1",
        (int(memory_id), int(user_id)),
    )
    rows = _rows_to_dicts(cur)
    return rows[0] if rows else None


def update_memory_sync(
    conn: sqlite3.Connection,
    memory_id: int,
    user_id: int,
    fields: dict[str, Any],
) -> bool:
    assignments: list[str] = []
    params: list[Any] = []
    if "content" in fields:
        assignments.append("content = ?")
        params.append(fields["content"])
    if "category" in fields:
        assignments.append("category = ?")
        params.append(fields["category"])
    if "tags" in fields:
        assignments.append("tags_json = ?")
        params.append(json.dumps(fields["tags"] or [], ensure_ascii=False))
    if "metadata" in fields:
        assignments.append("metadata_json = ?")
        params.append(json.dumps(fields["metadata"] or {}, ensure_ascii=False))
    assignments.append("updated_at_utc = ?")
    params.append(fields["updated_at_utc"])
    assignments.append("updated_ts = ?")
    params.append(int(fields["updated_ts"]))

    cur = conn.execute(
        f"UPDATE memories SET {', '.join(assignments)} WHERE id = ? AND user_id = ?",
        (*params, int(memory_id), int(user_id)),
    )
    conn.commit()
    return int(cur.rowcount or 0) > 0


def delete_memory_sync(conn: sqlite3.Connection, memory_id: int, user_id: int) -> bool:
    cur = conn.execute(
        "DELETE FROM memories WHERE id = ? AND user_id = ?",
        (int(memory_id), int(user_id)),
    )
    conn.commit()
    return int(cur.rowcount or 0) > 0


def delete_memories_sync(conn: sqlite3.Connection, user_id: int, memory_ids: list[int]) -> int:
    ids = [int(i) for i in memory_ids]
    removed = 0
    # Chunked to stay under SQLite's bound-parameter limit.
    for start in range(0, len(ids), 500):
        chunk = ids[start:start + 500]
        placeholders = ",".join("?" for _ in chunk)
        cur = conn.execute(
            f"DELETE FROM memories WHERE user_id = ? AND id IN ({placeholders})",
            (int(user_id), *chunk),
        )
        removed += int(cur.rowcount or 0)
    conn.commit()
    return removed


def list_memories_sync(
    conn: sqlite3.Connection,
    user_id: int,
    *,
    category: str | None = None,
    offset: int = 0,
    limit: int = 10,
) -> list[dict[str, Any]]:
    cur = conn.execute(
        f"""
        SELECT {_MEMORY_COLS}
        FROM memories
        WHERE user_id = ? AND (? IS NULL OR category = ?)
        ORDER BY updated_ts DESC, id DESC
        LIMIT ? OFFSET ?
        """,
        (int(user_id), category, category, int(limit), int(offset)),
    )
    return _rows_to_dicts(cur)


def count_memories_sync(conn: sqlite3.Connection, user_id: int, *, category: str | None = None) -> int:
    row = conn.execute(
        "SELECT COUNT(*) FROM memories WHERE user_id = ? AND (? IS NULL OR category = ?)",
        (int(user_id), category, category),
    ).fetchone()
    return int(row[0] if row else 0)


def fetch_all_memories_sync(conn: sqlite3.Connection, user_id: int) -> list[dict[str, Any]]:
    cur = conn.execute(
        f"SELECT {_MEMORY_COLS} FROM memories WHERE user_id = ? ORDER BY id ASC",
        (int(user_id),),
    )
    return _rows_to_dicts(cur)


def list_categories_sync(conn: sqlite3.Connection, user_id: int) -> list[tuple[str, int]]:
    cur = conn.execute(
        """
        SELECT category, COUNT(*) AS n
        FROM memories
        WHERE user_id = ?
        GROUP BY category
        ORDER BY n DESC, category ASC
        """,
        (int(user_id),),
    )
    return [(str(c), int(n)) for c, n in cur.fetchall()]


def _casefold(value: Any) -> str | None:
    return None if value is None else str(value).casefold()


def search_memories_sync(
    conn: sqlite3.Connection,
    user_id: int,
    query: str,
    limit: int = 10,
) -> list[dict[str, Any]]:
    """Score every owned memory in SQL and return the best `limit` rows.

    Matching runs on casefolded text so non-ASCII letters compare the same way
    ASCII ones do. Whole-phrase hits in content weigh 3, every other hit 1.
    """
    phrase = " ".join((query or "").split()).casefold()
    keywords = extract_keywords(phrase)
    if not phrase:
        return []

    conn.create_function("casefold", 1, _casefold, deterministic=True)
    terms = [
        ("content", phrase, 3),
        ("category", phrase, 1),
    ]
    for kw in keywords:
        terms.extend([("content", kw, 1), ("category", kw, 1), ("tags_json", kw, 1)])

    score_sql = " + ".join(
        f"(CASE WHEN casefold({col}) LIKE ? ESCAPE '\\' THEN {weight} ELSE 0 END)" for col, _term, weight in terms
    )
    params = [like_contains(term) for _col, term, _weight in terms]

    cur = conn.execute(
        f"""
        SELECT {_MEMORY_COLS}
        FROM (
            SELECT {_MEMORY_COLS}, ({score_sql}) AS score
            FROM memories
            WHERE user_id = ?
        )
        WHERE score > 0
        ORDER BY score DESC, updated_ts DESC, id DESC
        LIMIT ?
        """,
        (*params, int(user_id), max(0, int(limit))),
    )
    return _rows_to_dicts(cur)
