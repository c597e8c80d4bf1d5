from __future__ import annotations

# LLM endpoint (GLM exposes an OpenAI-compatible chat completions API)
DEFAULT_GLM_BASE_URL = "https://api.z.ai/api/coding/paas/v4"
DEFAULT_GLM_MODEL = "glm-4.7"
DEFAULT_LLM_TIMEOUT_SECONDS = 120
DEFAULT_MAX_TOOL_ROUNDS = 4

DEFAULT_DB_PATH = "data/ccbot.db"
DEFAULT_ROLES_FILENAME = "roles.yml"

# Sessions
DEFAULT_SESSION_MAX_TURNS = 20
DEFAULT_SESSION_IDLE_MINUTES = 30
DEFAULT_SESSION_SWEEP_SECONDS = 300

# Scheduler
DEFAULT_SCHEDULER_TICK_SECONDS = 60
DEFAULT_SCHEDULER_TIMEZONE = "UTC"
DEFAULT_SCHEDULER_DISPATCH_TIMEOUT = 120
DEFAULT_SCHEDULER_MAX_CATCHUP_MINUTES = 5

# Memory
DEFAULT_MEMORY_CATEGORY = "general"
DEFAULT_RECALL_LIMIT = 10
MAX_RECALL_LIMIT = 50
MEMORY_EXPORT_FORMATS = ("json", "yaml")

# Used when the roles file is missing or omits default_capabilities.
DEFAULT_CAPABILITIES = ("chat", "memory", "file_read")

DISCORD_MAX_MESSAGE_LEN = 1900  # keep under 2000 hard limit

SYSTEM_PROMPT_BASE = """
You are a helpful assistant living in a Discord server.

Behavior:
- Answer concisely; offer more detail when asked.
- Keep answers readable in Discord (short paragraphs, lists, code blocks).
- You can store and look up long-term facts about the current user with the
  `remember` and `recall` tools when they are available. Only remember things
  the user would reasonably expect you to keep.
- Be honest about uncertainty and about what you cannot do.
""".strip()
