from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable


@dataclass(frozen=True)
class RuntimeDeps:
    # core
    send_chunked: Callable
    orchestrator: Any
    role_lookup_for: Callable[[Any], Any]


@dataclass(frozen=True)
class RuntimeBootDeps:
    allowed_channel_ids: set[int]
    session_sweep_loop_func: Callable
    scheduler_loop_func: Callable
    load_state_func: Callable
