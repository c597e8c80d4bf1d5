from __future__ import annotations

from misc.commands.command_deps import CommandDeps
from misc.commands.command_deps import CommandGates
from misc.commands.commands_ask import register as register_ask
from misc.commands.commands_memory import register as register_memory
from misc.commands.commands_permissions import register as register_permissions
from misc.commands.commands_schedule import register as register_schedule
from misc.discord_gates import channel_allowed
from misc.events_runtime import register_runtime_events
from misc.role_lookup import member_role_lookup
from misc.runtime_deps import RuntimeBootDeps
from misc.runtime_deps import RuntimeDeps


def wire_bot_runtime(
    bot,
    *,
    allowed_channel_ids: set[int],
    db_lock,
    db_conn,
    send_chunked,
    orchestrator,
    session_store,
    memory_service,
    scheduler,
    permissions,
    list_schema_migrations_sync,
    max_line_chars: int,
    session_sweep_loop_func,
    scheduler_loop_func,
    load_state_func,
) -> None:
    def in_allowed_channel(ctx) -> bool:
        try:
            return channel_allowed(ctx.channel, allowed_channel_ids)
        except Exception:
            return False

    command_deps = CommandDeps(
        send_chunked=send_chunked,
        max_line_chars=max_line_chars,
        orchestrator=orchestrator,
        session_store=session_store,
        memory_service=memory_service,
        scheduler=scheduler,
        permissions=permissions,
        db_lock=db_lock,
        db_conn=db_conn,
        list_schema_migrations_sync=list_schema_migrations_sync,
    )
    command_gates = CommandGates(
        in_allowed_channel=in_allowed_channel,
        allowed_channel_ids=allowed_channel_ids,
        role_lookup_for=member_role_lookup,
    )

    register_ask(bot, deps=command_deps, gates=command_gates)
    register_memory(bot, deps=command_deps, gates=command_gates)
    register_schedule(bot, deps=command_deps, gates=command_gates)
    register_permissions(bot, deps=command_deps, gates=command_gates)

    register_runtime_events(
        bot,
        deps=RuntimeDeps(
            send_chunked=send_chunked,
            orchestrator=orchestrator,
            role_lookup_for=member_role_lookup,
        ),
        boot=RuntimeBootDeps(
            allowed_channel_ids=allowed_channel_ids,
            session_sweep_loop_func=session_sweep_loop_func,
            scheduler_loop_func=scheduler_loop_func,
            load_state_func=load_state_func,
        ),
    )
