import os
import asyncio
from pathlib import Path
import discord
from discord.ext import commands
from openai import OpenAI
from config.defaults import DEFAULT_DB_PATH
from config.defaults import DEFAULT_GLM_BASE_URL
from config.defaults import DEFAULT_GLM_MODEL
from config.defaults import DEFAULT_LLM_TIMEOUT_SECONDS
from config.defaults import DEFAULT_MAX_TOOL_ROUNDS
from config.defaults import DEFAULT_ROLES_FILENAME
from config.defaults import DEFAULT_SCHEDULER_DISPATCH_TIMEOUT
from config.defaults import DEFAULT_SCHEDULER_MAX_CATCHUP_MINUTES
from config.defaults import DEFAULT_SCHEDULER_TICK_SECONDS
from config.defaults import DEFAULT_SCHEDULER_TIMEZONE
from config.defaults import DEFAULT_SESSION_IDLE_MINUTES
from config.defaults import DEFAULT_SESSION_MAX_TURNS
from config.defaults import DEFAULT_SESSION_SWEEP_SECONDS
from config.defaults import DISCORD_MAX_MESSAGE_LEN
from config.defaults import SYSTEM_PROMPT_BASE
from config.env import env_int, env_str, parse_id_set
from controller.orchestrator import AskOrchestrator
from db.migrate import init_db, list_schema_migrations_sync
from jobs.service import scheduler_loop as scheduler_loop_service
from jobs.service import session_sweep_loop as session_sweep_loop_service
from llm.client import GlmClient
from memory.service import MemoryService
from misc.role_lookup import bot_role_lookup
from misc.runtime_wiring import wire_bot_runtime
from misc.time_utils import utc_iso
from permissions.resolver import PermissionResolver
from permissions.role_config import load_role_config, seed_roles_sync
from scheduler.service import Scheduler
from session.service import SessionStore

REPO_ROOT = Path(__file__).resolve().parent
MIGRATIONS_DIR = str(REPO_ROOT / "migrations")


def chunk_text(text: str, limit: int = DISCORD_MAX_MESSAGE_LEN) -> list[str]:
    text = text or ""
    if len(text) <= limit:
        return [text]

    chunks = []
    remaining = text

    while len(remaining) > limit:
        # Prefer splitting on paragraph, then newline, then space
        split_at = remaining.rfind("\n\n", 0, limit)
        if split_at == -1:
            split_at = remaining.rfind("\n", 0, limit)
        if split_at == -1:
            split_at = remaining.rfind(" ", 0, limit)
        if split_at == -1:
            split_at = limit

        chunk = remaining[:split_at].strip()
        if chunk:
            chunks.append(chunk)

        remaining = remaining[split_at:].strip()

    if remaining:
        chunks.append(remaining)

    return chunks


async def send_chunked(channel: discord.abc.Messageable, text: str) -> None:
    for part in chunk_text(text, DISCORD_MAX_MESSAGE_LEN):
        await channel.send(part)


def main() -> None:
    # =========================
    # ENV
    # =========================
    discord_token = os.getenv("DISCORD_TOKEN")
    glm_api_key = os.getenv("GLM_API_KEY")
    if not discord_token:
        raise RuntimeError("Missing DISCORD_TOKEN env var")
    if not glm_api_key:
        raise RuntimeError("Missing GLM_API_KEY env var")

    glm_base_url = env_str("GLM_BASE_URL", DEFAULT_GLM_BASE_URL)
    glm_model = env_str("GLM_MODEL", DEFAULT_GLM_MODEL)
    db_path = env_str("CCBOT_DB_PATH", DEFAULT_DB_PATH)
    roles_path = env_str("CCBOT_ROLES_PATH", str(REPO_ROOT / "config" / DEFAULT_ROLES_FILENAME))
    allowed_channel_ids = parse_id_set(os.getenv("CCBOT_ALLOWED_CHANNEL_IDS"))
    super_user_ids = parse_id_set(os.getenv("SUPER_USER_IDS"))
    admin_user_ids = parse_id_set(os.getenv("ADMIN_USER_IDS"))

    session_max_turns = env_int("CCBOT_SESSION_MAX_TURNS", DEFAULT_SESSION_MAX_TURNS)
    session_idle_minutes = env_int("CCBOT_SESSION_IDLE_MINUTES", DEFAULT_SESSION_IDLE_MINUTES)
    session_sweep_seconds = env_int("CCBOT_SESSION_SWEEP_SECONDS", DEFAULT_SESSION_SWEEP_SECONDS)
    scheduler_tick_seconds = env_int("CCBOT_SCHEDULER_TICK_SECONDS", DEFAULT_SCHEDULER_TICK_SECONDS)
    scheduler_timezone = env_str("CCBOT_SCHEDULER_TIMEZONE", DEFAULT_SCHEDULER_TIMEZONE)
    scheduler_dispatch_timeout = env_int("CCBOT_SCHEDULER_DISPATCH_TIMEOUT", DEFAULT_SCHEDULER_DISPATCH_TIMEOUT)
    llm_timeout_seconds = env_int("CCBOT_LLM_TIMEOUT_SECONDS", DEFAULT_LLM_TIMEOUT_SECONDS)

    print(
        "[CFG] "
        f"model={glm_model} base_url={glm_base_url} db={db_path} roles={roles_path} "
        f"allowed_channels={sorted(allowed_channel_ids) or 'all'} "
        f"super_users={len(super_user_ids)} admins={len(admin_user_ids)} "
        f"session_max_turns={session_max_turns} idle_minutes={session_idle_minutes} "
        f"sweep_seconds={session_sweep_seconds} tick_seconds={scheduler_tick_seconds} "
        f"tz={scheduler_timezone} dispatch_timeout={scheduler_dispatch_timeout} llm_timeout={llm_timeout_seconds}"
    )

    # =========================
    # DB
    # =========================
    db_conn = init_db(db_path, MIGRATIONS_DIR)
    db_lock = asyncio.Lock()

    role_config, role_warnings = load_role_config(roles_path)
    for warning in role_warnings:
        print(f"[CFG] roles: {warning}")
    seeded = seed_roles_sync(db_conn, role_config.roles, utc_iso())
    if seeded:
        print(f"[Permissions] seeded {seeded} role(s) from {roles_path}")

    # =========================
    # DISCORD + SERVICES
    # =========================
    intents = discord.Intents.default()
    intents.message_content = True
    intents.members = True
    bot = commands.Bot(command_prefix="!", intents=intents)

    client = OpenAI(api_key=glm_api_key, base_url=glm_base_url)
    llm_client = GlmClient(client, glm_model, max_tool_rounds=DEFAULT_MAX_TOOL_ROUNDS)

    session_store = SessionStore(db_lock=db_lock, db_conn=db_conn, max_turns=session_max_turns)
    memory_service = MemoryService(db_lock=db_lock, db_conn=db_conn)
    permissions = PermissionResolver(
        db_lock=db_lock,
        db_conn=db_conn,
        super_user_ids=super_user_ids,
        admin_user_ids=admin_user_ids,
        default_capabilities=role_config.default_capabilities,
        role_lookup=bot_role_lookup(bot),
    )

    async def deliver(channel_id: int, text: str) -> None:
        channel = bot.get_channel(int(channel_id))
        if channel is None:
            channel = await bot.fetch_channel(int(channel_id))
        await send_chunked(channel, text)

    orchestrator = AskOrchestrator(
        session_store=session_store,
        memory_service=memory_service,
        permission_resolver=permissions,
        llm_client=llm_client,
        system_prompt=SYSTEM_PROMPT_BASE,
        request_timeout=llm_timeout_seconds,
        deliver=deliver,
    )
    scheduler = Scheduler(
        db_lock=db_lock,
        db_conn=db_conn,
        dispatch=orchestrator.dispatch_scheduled,
        tz_name=scheduler_timezone,
        dispatch_timeout=scheduler_dispatch_timeout,
        max_catchup_minutes=DEFAULT_SCHEDULER_MAX_CATCHUP_MINUTES,
    )

    async def load_state() -> None:
        sessions = await session_store.load()
        tasks = await scheduler.load()
        print(f"[Boot] sessions={sessions} scheduled_tasks={tasks}")

    async def session_sweep_loop() -> None:
        await session_sweep_loop_service(
            session_store=session_store,
            idle_minutes=session_idle_minutes,
            interval_seconds=session_sweep_seconds,
        )

    async def scheduler_loop() -> None:
        await scheduler_loop_service(scheduler=scheduler, interval_seconds=scheduler_tick_seconds)

    wire_bot_runtime(
        bot,
        allowed_channel_ids=allowed_channel_ids,
        db_lock=db_lock,
        db_conn=db_conn,
        send_chunked=send_chunked,
        orchestrator=orchestrator,
        session_store=session_store,
        memory_service=memory_service,
        scheduler=scheduler,
        permissions=permissions,
        list_schema_migrations_sync=list_schema_migrations_sync,
        max_line_chars=600,
        session_sweep_loop_func=session_sweep_loop,
        scheduler_loop_func=scheduler_loop,
        load_state_func=load_state,
    )

    try:
        bot.run(discord_token)
    finally:
        cancelled = orchestrator.cancel_all()
        if cancelled:
            print(f"[Ask] cancelled {cancelled} in-flight request(s) on shutdown")
        db_conn.close()


if __name__ == "__main__":
    main()
