from __future__ import annotations

import asyncio
from datetime import timedelta


async def session_sweep_loop(
    *,
    session_store,
    idle_minutes: int,
    interval_seconds: int = 300,
) -> None:
    idle = timedelta(minutes=max(1, int(idle_minutes)))
    while True:
        await asyncio.sleep(max(1, int(interval_seconds)))
        try:
            removed = await session_store.sweep(idle)
            if removed:
                print(f"[Session] sweep removed={removed} idle_minutes={int(idle_minutes)}")
        except Exception as e:
            print(f"[Session] sweep loop error: {e}")


async def scheduler_loop(
    *,
    scheduler,
    interval_seconds: int = 60,
) -> None:
    """Tick the scheduler; each tick finishes its dispatches before the next sleep."""
    while True:
        try:
            fired = await scheduler.run_tick()
            if fired:
                print(f"[Scheduler] tick fired={len(fired)}")
        except Exception as e:
            print(f"[Scheduler] tick loop error: {e}")

        await asyncio.sleep(max(1, int(interval_seconds)))
