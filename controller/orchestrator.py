from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Awaitable, Callable

from controller.prompt_assembly import build_system_context, build_turns
from memory.tools import MemoryToolBinding
from misc.errors import InvalidInput, NotFound, RequestCancelled, UpstreamFailure
from misc.time_utils import utc_iso, utc_now
from permissions.models import Capability
from session.models import SessionKey, Turn


MAX_PROMPT_CHARS = 8000


class AskOrchestrator:
    """One request/response cycle: permission gate, session history, LLM call
    (with memory tools when allowed), then an all-or-nothing commit of the
    user and assistant turns.

    No lock is held while the LLM call is in flight. `cancel` stops the call
    for one session; the interrupted `ask` raises `RequestCancelled` and the
    session is left exactly as it was.
    """

    def __init__(
        self,
        *,
        session_store,
        memory_service,
        permission_resolver,
        llm_client,
        system_prompt: str,
        request_timeout: float = 120,
        deliver: Callable[[int, str], Awaitable[object]] | None = None,
        now_func: Callable[[], datetime] | None = None,
    ) -> None:
        self.sessions = session_store
        self.memory = memory_service
        self.permissions = permission_resolver
        self.llm = llm_client
        self.system_prompt = system_prompt
        self.request_timeout = float(request_timeout)
        self.deliver = deliver
        self._now = now_func or utc_now
        self._inflight: dict[SessionKey, set[asyncio.Task]] = {}
        self._cancelled: set[asyncio.Task] = set()

    async def ask(
        self,
        actor: int,
        channel_id: int,
        text: str,
        *,
        role_lookup=None,
        capability: Capability | str = Capability.CHAT,
        create_session: bool = True,
        scheduled: bool = False,
    ) -> str:
        prompt = str(text or "").strip()
        if not prompt:
            raise InvalidInput("Ask me something first.")
        if len(prompt) > MAX_PROMPT_CHARS:
            raise InvalidInput(f"That message is too long (max {MAX_PROMPT_CHARS} characters).")

        await self.permissions.require(actor, capability, role_lookup=role_lookup)

        key = SessionKey(int(actor), int(channel_id))
        if create_session:
            session = await self.sessions.get_or_create(key)
        else:
            session = await self.sessions.get(key)
            if session is None:
                raise NotFound("There is no conversation session here yet.")

        tools = None
        if self.memory is not None and await self.permissions.check(
            actor, Capability.MEMORY, role_lookup=role_lookup
        ):
            tools = MemoryToolBinding(self.memory, actor)

        system_context = build_system_context(
            system_prompt_base=self.system_prompt,
            actor_id=int(actor),
            channel_id=int(channel_id),
            memory_tools=tools is not None,
            scheduled=scheduled,
            now_iso=utc_iso(self._now()),
            max_chars=MAX_PROMPT_CHARS,
        )
        messages = build_turns(session.turns, prompt, max_chars=MAX_PROMPT_CHARS)

        reply = await self._call_llm(key, system_context, messages, tools)

        await self.sessions.append_turns(
            key,
            [Turn(role="user", content=prompt), Turn(role="assistant", content=reply)],
            create=create_session,
        )
        print(f"[Ask] {key} reply_chars={len(reply)} scheduled={scheduled}")
        return reply

    async def _call_llm(self, key: SessionKey, system_context: str, messages: list[dict], tools) -> str:
        call = asyncio.create_task(
            asyncio.wait_for(self.llm.complete(system_context, messages, tools=tools), timeout=self.request_timeout)
        )
        self._inflight.setdefault(key, set()).add(call)
        try:
            return await call
        except asyncio.CancelledError:
            if call in self._cancelled:
                print(f"[Ask] {key} cancelled by request")
                raise RequestCancelled("Request cancelled.") from None
            call.cancel()
            raise
        except asyncio.TimeoutError:
            print(f"[Ask] {key} timed out after {self.request_timeout:g}s")
            raise UpstreamFailure(f"LLM request timed out after {self.request_timeout:g}s") from None
        finally:
            self._cancelled.discard(call)
            pending = self._inflight.get(key)
            if pending is not None:
                pending.discard(call)
                if not pending:
                    self._inflight.pop(key, None)

    def cancel(self, actor: int, channel_id: int) -> bool:
        key = SessionKey(int(actor), int(channel_id))
        cancelled = False
        for call in list(self._inflight.get(key, ())):
            if not call.done():
                self._cancelled.add(call)
                call.cancel()
                cancelled = True
        return cancelled

    def cancel_all(self) -> int:
        count = 0
        for calls in list(self._inflight.values()):
            for call in list(calls):
                if not call.done():
                    self._cancelled.add(call)
                    call.cancel()
                    count += 1
        return count

    def in_flight(self, actor: int, channel_id: int) -> bool:
        return bool(self._inflight.get(SessionKey(int(actor), int(channel_id))))

    async def dispatch_scheduled(self, task) -> str:
        """Scheduler callback: run the stored prompt for the task owner and deliver the reply."""
        reply = await self.ask(
            task.owner_id,
            task.channel_id,
            task.prompt,
            capability=Capability.SCHEDULE,
            scheduled=True,
        )
        if self.deliver is not None:
            header = f"⏰ Scheduled ({task.cron_expression}) for <@{task.owner_id}>:\n"
            await self.deliver(task.channel_id, header + reply)
        return reply
