from __future__ import annotations

import asyncio
import sqlite3
import uuid
from datetime import datetime
from typing import Awaitable, Callable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from misc.errors import BotError, InvalidInput, InvalidSchedule, NotFound, storage_failure
from misc.keyed_locks import KeyedLocks
from misc.time_utils import utc_iso, utc_now
from scheduler.cron import parse_cron
from scheduler.models import ScheduledTask, bucket_of, bucket_start, bucket_to_text
from scheduler.store import (
    delete_task_sync,
    fetch_tasks_sync,
    insert_task_sync,
    mark_fired_sync,
    record_run_sync,
    set_task_enabled_sync,
)


MIN_ID_PREFIX = 4
MAX_PROMPT_CHARS = 2000


class Scheduler:
    """Cron-driven prompt re-injection.

    Tasks are parsed once when added or loaded. `run_tick` is driven from a
    background loop; each call evaluates the minute buckets that elapsed since
    the previous call and fires each due task once.
    """

    def __init__(
        self,
        *,
        db_lock: asyncio.Lock,
        db_conn: sqlite3.Connection,
        dispatch: Callable[[ScheduledTask], Awaitable[object]],
        tz_name: str = "UTC",
        dispatch_timeout: float = 120,
        max_catchup_minutes: int = 5,
        now_func: Callable[[], datetime] | None = None,
    ) -> None:
        try:
            self.tz = ZoneInfo(tz_name)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown scheduler timezone {tz_name!r}") from e
        self.db_lock = db_lock
        self.db_conn = db_conn
        self.dispatch = dispatch
        self.dispatch_timeout = float(dispatch_timeout)
        self.max_catchup_minutes = max(0, int(max_catchup_minutes))
        self._now = now_func or utc_now
        self._tasks: dict[str, ScheduledTask] = {}
        self._task_locks = KeyedLocks()
        self._last_evaluated_bucket: int | None = None

    async def _run(self, operation: str, fn, *args):
        try:
            async with self.db_lock:
                return await asyncio.to_thread(fn, self.db_conn, *args)
        except sqlite3.Error as e:
            raise storage_failure(operation, e) from e

    async def load(self) -> int:
        rows = await self._run("load scheduled tasks", fetch_tasks_sync)
        self._tasks.clear()
        for row in rows:
            try:
                task = ScheduledTask.from_row(row)
            except InvalidSchedule as e:
                print(f"[Scheduler] skipping task {row.get('id')}: {e}")
                continue
            self._tasks[task.id] = task
        print(f"[Scheduler] loaded {len(self._tasks)} task(s)")
        return len(self._tasks)

    def _resolve(self, task_id: str) -> ScheduledTask:
        key = str(task_id or "").strip().lower()
        task = self._tasks.get(key)
        if task is not None:
            return task
        if len(key) >= MIN_ID_PREFIX:
            matches = [t for tid, t in self._tasks.items() if tid.startswith(key)]
            if len(matches) == 1:
                return matches[0]
            if len(matches) > 1:
                raise InvalidInput(f"Task id {task_id!r} is ambiguous; use more characters.")
        raise NotFound(f"Scheduled task {task_id!r} was not found.")

    def _resolve_owned(self, task_id: str, actor_id: int, manage_all: bool) -> ScheduledTask:
        task = self._resolve(task_id)
        if not manage_all and task.owner_id != int(actor_id):
            raise NotFound(f"Scheduled task {task_id!r} was not found.")
        return task

    async def add_task(self, owner_id: int, channel_id: int, cron_expression: str, prompt: str) -> ScheduledTask:
        schedule = parse_cron(cron_expression)
        text = str(prompt or "").strip()
        if not text:
            raise InvalidInput("Scheduled prompt cannot be empty.")
        if len(text) > MAX_PROMPT_CHARS:
            raise InvalidInput(f"Scheduled prompt is too long (max {MAX_PROMPT_CHARS} characters).")

        task = ScheduledTask(
            id=uuid.uuid4().hex,
            owner_id=int(owner_id),
            channel_id=int(channel_id),
            cron_expression=schedule.expression,
            prompt=text,
            created_at_utc=utc_iso(self._now()),
            schedule=schedule,
        )
        await self._run(f"add scheduled task {task.id}", insert_task_sync, task.to_row())
        self._tasks[task.id] = task
        print(f"[Scheduler] added task {task.id} cron={task.cron_expression!r} channel={task.channel_id}")
        return task

    async def remove_task(self, task_id: str, *, actor_id: int, manage_all: bool = False) -> ScheduledTask:
        task = self._resolve_owned(task_id, actor_id, manage_all)
        async with self._task_locks.hold(task.id):
            await self._run(f"remove scheduled task {task.id}", delete_task_sync, task.id)
            self._tasks.pop(task.id, None)
        print(f"[Scheduler] removed task {task.id}")
        return task

    async def set_enabled(
        self, task_id: str, enabled: bool, *, actor_id: int, manage_all: bool = False
    ) -> ScheduledTask:
        task = self._resolve_owned(task_id, actor_id, manage_all)
        await self._run(f"update scheduled task {task.id}", set_task_enabled_sync, task.id, bool(enabled))
        task.enabled = bool(enabled)
        print(f"[Scheduler] task {task.id} enabled={task.enabled}")
        return task

    async def toggle_task(self, task_id: str, *, actor_id: int, manage_all: bool = False) -> ScheduledTask:
        task = self._resolve_owned(task_id, actor_id, manage_all)
        return await self.set_enabled(task.id, not task.enabled, actor_id=actor_id, manage_all=manage_all)

    def list_tasks(self, channel_id: int | None = None, owner_id: int | None = None) -> list[ScheduledTask]:
        tasks = list(self._tasks.values())
        if channel_id is not None:
            tasks = [t for t in tasks if t.channel_id == int(channel_id)]
        if owner_id is not None:
            tasks = [t for t in tasks if t.owner_id == int(owner_id)]
        return sorted(tasks, key=lambda t: (t.created_at_utc, t.id))

    def get_task(self, task_id: str) -> ScheduledTask:
        return self._resolve(task_id)

    def next_run(self, task_id: str, after: datetime | None = None) -> datetime | None:
        task = self._resolve(task_id)
        if not task.enabled or task.schedule is None:
            return None
        local = (after or self._now()).astimezone(self.tz)
        nxt = task.schedule.next_fire_after(local.replace(tzinfo=None))
        return nxt.replace(tzinfo=self.tz) if nxt is not None else None

    def _due_tasks(self, now: datetime) -> list[tuple[ScheduledTask, int]]:
        current = bucket_of(now)
        first = current - self.max_catchup_minutes
        if self._last_evaluated_bucket is not None:
            first = max(first, min(self._last_evaluated_bucket, current))
        self._last_evaluated_bucket = current

        local_minutes = [
            (bucket, bucket_start(bucket).astimezone(self.tz)) for bucket in range(first, current + 1)
        ]
        due: list[tuple[ScheduledTask, int]] = []
        for task in self._tasks.values():
            if not task.enabled or task.schedule is None:
                continue
            floor = task.last_fired_bucket if task.last_fired_bucket is not None else -1
            created = task.created_bucket
            hit = None
            for bucket, local in local_minutes:
                if bucket <= floor or (created is not None and bucket < created):
                    continue
                if task.schedule.matches(local):
                    hit = bucket
            if hit is not None:
                due.append((task, hit))
        return due

    async def run_tick(self, now: datetime | None = None) -> list[str]:
        """Evaluate elapsed minute buckets and fire due tasks; returns the fired ids."""
        now = now or self._now()
        due = self._due_tasks(now)
        if not due:
            return []

        # Marked before the first await so a re-entered tick sees them.
        for task, bucket in due:
            task.last_fired_bucket = bucket
        try:
            await self._run(
                "record scheduler firings",
                mark_fired_sync,
                [(task.id, bucket_to_text(bucket)) for task, bucket in due],
            )
        except BotError as e:
            print(f"[Scheduler] could not persist fired buckets: {e}")

        await asyncio.gather(*(self._fire(task) for task, _ in due))
        return [task.id for task, _ in due]

    async def _fire(self, task: ScheduledTask) -> bool:
        error: str | None = None
        async with self._task_locks.hold(task.id):
            print(f"[Scheduler] firing task {task.id} channel={task.channel_id}")
            try:
                await asyncio.wait_for(self.dispatch(task), timeout=self.dispatch_timeout)
            except asyncio.TimeoutError:
                error = f"timed out after {self.dispatch_timeout:g}s"
            except Exception as e:
                error = f"{type(e).__name__}: {e}"

            if error:
                print(f"[Scheduler] task {task.id} failed: {error}")
            task.last_run_at_utc = utc_iso(self._now())
            task.last_error = error
            if task.id in self._tasks:
                try:
                    await self._run(
                        f"record run of task {task.id}",
                        record_run_sync,
                        task.id,
                        task.last_run_at_utc,
                        task.last_error,
                    )
                except BotError as e:
                    print(f"[Scheduler] could not record run of task {task.id}: {e}")
        return error is None
