from __future__ import annotations

import asyncio
import sqlite3
from datetime import datetime
from typing import Any, Awaitable, Callable

from config.defaults import DEFAULT_RECALL_LIMIT, MAX_RECALL_LIMIT
from memory.export import dump_records, load_records, normalize_format
from memory.models import MemoryPage, MemoryRecord
from memory.store import (
    count_memories_sync,
    delete_memories_sync,
    delete_memory_sync,
    fetch_all_memories_sync,
    fetch_memory_sync,
    insert_memories_sync,
    insert_memory_sync,
    list_categories_sync,
    list_memories_sync,
    search_memories_sync,
    update_memory_sync,
)
from memory.tagging import normalize_category, normalize_tags
from misc.errors import InvalidInput, NotFound, storage_failure
from misc.time_utils import parse_utc_iso, utc_iso, utc_now, utc_ts


MAX_CONTENT_CHARS = 4000


def _clamp_limit(limit: int | None) -> int:
    try:
        value = int(limit if limit is not None else DEFAULT_RECALL_LIMIT)
    except (TypeError, ValueError):
        value = DEFAULT_RECALL_LIMIT
    return max(1, min(MAX_RECALL_LIMIT, value))


def _clean_content(content: str | None) -> str:
    text = str(content or "").strip()
    if not text:
        raise InvalidInput("Memory content cannot be empty.")
    if len(text) > MAX_CONTENT_CHARS:
        raise InvalidInput(f"Memory content is too long (max {MAX_CONTENT_CHARS} characters).")
    return text


class MemoryService:
    """Long-term per-user memory records.

    Every read and write is scoped to the acting user in SQL; a record owned
    by someone else behaves exactly like a missing one.
    """

    def __init__(
        self,
        *,
        db_lock: asyncio.Lock,
        db_conn: sqlite3.Connection,
        now_func: Callable[[], datetime] | None = None,
    ) -> None:
        self.db_lock = db_lock
        self.db_conn = db_conn
        self._now = now_func or utc_now

    async def _run(self, operation: str, fn, *args, **kwargs):
        try:
            async with self.db_lock:
                return await asyncio.to_thread(fn, self.db_conn, *args, **kwargs)
        except sqlite3.Error as e:
            raise storage_failure(operation, e) from e

    async def remember(
        self,
        actor: int,
        content: str,
        category: str | None = None,
        tags: Any = None,
        metadata: dict[str, Any] | None = None,
    ) -> MemoryRecord:
        text = _clean_content(content)
        now = self._now()
        payload = {
            "user_id": int(actor),
            "content": text,
            "category": normalize_category(category),
            "tags": normalize_tags(tags),
            "metadata": dict(metadata or {}),
            "created_at_utc": utc_iso(now),
            "created_ts": utc_ts(now),
        }
        memory_id = await self._run(f"store memory for user {actor}", insert_memory_sync, payload)
        print(f"[Memory] stored id={memory_id} user={actor} category={payload['category']}")
        return await self.get(actor, memory_id)

    async def get(self, actor: int, memory_id: int) -> MemoryRecord:
        row = await self._run(f"load memory {memory_id}", fetch_memory_sync, int(memory_id), int(actor))
        if row is None:
            raise NotFound(f"Memory #{memory_id} was not found.")
        return MemoryRecord.from_row(row)

    async def recall(self, actor: int, query: str, limit: int = DEFAULT_RECALL_LIMIT) -> list[MemoryRecord]:
        limit = _clamp_limit(limit)
        if not (query or "").strip():
            page = await self.list(actor, offset=0, limit=limit)
            return page.records
        rows = await self._run(
            f"search memories for user {actor}", search_memories_sync, int(actor), query, limit
        )
        return [MemoryRecord.from_row(r) for r in rows]

    async def list(
        self,
        actor: int,
        category: str | None = None,
        offset: int = 0,
        limit: int = DEFAULT_RECALL_LIMIT,
    ) -> MemoryPage:
        limit = _clamp_limit(limit)
        offset = max(0, int(offset or 0))
        cat = normalize_category(category) if category else None

        async with self.db_lock:
            try:
                total = await asyncio.to_thread(count_memories_sync, self.db_conn, int(actor), category=cat)
                rows = await asyncio.to_thread(
                    list_memories_sync, self.db_conn, int(actor), category=cat, offset=offset, limit=limit
                )
            except sqlite3.Error as e:
                raise storage_failure(f"list memories for user {actor}", e) from e
        return MemoryPage(
            records=[MemoryRecord.from_row(r) for r in rows],
            total=int(total),
            offset=offset,
            limit=limit,
        )

    async def categories(self, actor: int) -> list[tuple[str, int]]:
        return await self._run(f"list categories for user {actor}", list_categories_sync, int(actor))

    async def update(
        self,
        actor: int,
        memory_id: int,
        content: str | None = None,
        category: str | None = None,
        tags: Any = None,
        metadata: dict[str, Any] | None = None,
    ) -> MemoryRecord:
        fields: dict[str, Any] = {}
        if content is not None:
            fields["content"] = _clean_content(content)
        if category is not None:
            fields["category"] = normalize_category(category)
        if tags is not None:
            fields["tags"] = normalize_tags(tags)
        if metadata is not None:
            fields["metadata"] = dict(metadata)
        if not fields:
            raise InvalidInput("Nothing to update.")
        now = self._now()
        fields["updated_at_utc"] = utc_iso(now)
        fields["updated_ts"] = utc_ts(now)

        updated = await self._run(
            f"update memory {memory_id}", update_memory_sync, int(memory_id), int(actor), fields
        )
        if not updated:
            raise NotFound(f"Memory #{memory_id} was not found.")
        return await self.get(actor, memory_id)

    async def forget(self, actor: int, memory_id: int) -> None:
        deleted = await self._run(f"delete memory {memory_id}", delete_memory_sync, int(memory_id), int(actor))
        if not deleted:
            raise NotFound(f"Memory #{memory_id} was not found.")
        print(f"[Memory] deleted id={memory_id} user={actor}")

    async def export(self, actor: int, fmt: str = "json") -> str:
        fmt = normalize_format(fmt)
        rows = await self._run(f"export memories for user {actor}", fetch_all_memories_sync, int(actor))
        records = [MemoryRecord.from_row(r) for r in rows]
        return dump_records(records, fmt, user_id=int(actor), exported_at_utc=utc_iso(self._now()))

    async def import_records(self, actor: int, document: str, fmt: str = "json") -> list[int]:
        """Insert every memory from an export document as new records owned by `actor`."""
        items = load_records(document, fmt)
        now = self._now()
        payloads: list[dict[str, Any]] = []
        for item in items:
            created = parse_utc_iso(item.get("created_at_utc")) or now
            payloads.append(
                {
                    "user_id": int(actor),
                    "content": _clean_content(item["content"]),
                    "category": normalize_category(item.get("category")),
                    "tags": normalize_tags(item.get("tags")),
                    "metadata": item.get("metadata") or {},
                    "created_at_utc": utc_iso(created),
                    "created_ts": utc_ts(created),
                    "updated_at_utc": utc_iso(now),
                    "updated_ts": utc_ts(now),
                }
            )
        if not payloads:
            return []
        ids = await self._run(f"import memories for user {actor}", insert_memories_sync, payloads)
        print(f"[Memory] imported {len(ids)} record(s) for user={actor}")
        return ids

    async def export_and_clear(
        self,
        actor: int,
        fmt: str = "json",
        *,
        deliver: Callable[[str], Awaitable[None]] | None = None,
    ) -> tuple[str, int]:
        """Export everything the actor owns, then delete exactly the exported records.

        When `deliver` is given it receives the document before anything is
        deleted; if it raises, nothing is cleared. Memories stored after the
        export are kept.
        """
        fmt = normalize_format(fmt)
        rows = await self._run(f"export memories for user {actor}", fetch_all_memories_sync, int(actor))
        records = [MemoryRecord.from_row(r) for r in rows]
        document = dump_records(records, fmt, user_id=int(actor), exported_at_utc=utc_iso(self._now()))
        if deliver is not None:
            await deliver(document)
        removed = await self._run(
            f"clear memories for user {actor}", delete_memories_sync, int(actor), [r.id for r in records]
        )
        print(f"[Memory] cleared {removed} record(s) for user={actor}")
        return document, int(removed)
