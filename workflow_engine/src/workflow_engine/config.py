import os

# Deployment-level fallback credentials. Callers may override any of these per
# submission; a family with neither a supplied nor a fallback key fails with NoCredential.
ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY", "")
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
XAI_API_KEY = os.getenv("XAI_API_KEY", "")

ANTHROPIC_BASE_URL = os.getenv("ANTHROPIC_BASE_URL", "https://api.anthropic.com/v1").rstrip("/")
OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1").rstrip("/")
XAI_BASE_URL = os.getenv("XAI_BASE_URL", "https://api.x.ai/v1").rstrip("/")
ANTHROPIC_VERSION = os.getenv("ANTHROPIC_VERSION", "2023-06-01")

# Provider gateway
PROVIDER_TIMEOUT_SECS = float(os.getenv("PROVIDER_TIMEOUT_SECS", 60))
# Retries after the first attempt, for transient failures only (network, 5xx, 429)
PROVIDER_MAX_RETRIES = int(os.getenv("PROVIDER_MAX_RETRIES", 3))
PROVIDER_BACKOFF_BASE_MS = int(os.getenv("PROVIDER_BACKOFF_BASE_MS", 1000))
PROVIDER_BACKOFF_JITTER = float(os.getenv("PROVIDER_BACKOFF_JITTER", 0.3))
PROVIDER_MAX_BACKOFF_SECS = float(os.getenv("PROVIDER_MAX_BACKOFF_SECS", 30))

# Sampling defaults applied when an agent leaves them unset
DEFAULT_TEMPERATURE = float(os.getenv("DEFAULT_TEMPERATURE", 0.7))
DEFAULT_MAX_TOKENS = int(os.getenv("DEFAULT_MAX_TOKENS", 2000))

# Scheduler
# 0 = no cap: every task in the ready set is dispatched at once
MAX_CONCURRENT_TASKS = int(os.getenv("MAX_CONCURRENT_TASKS", 0))
# Task-level retry budget for tasks that do not declare maxRetries
TASK_MAX_RETRIES = int(os.getenv("TASK_MAX_RETRIES", 0))
# Record never-dispatched tasks as skipped when an execution finalizes
SKIP_BLOCKED_TASKS = os.getenv("SKIP_BLOCKED_TASKS", "false").lower() in ("1", "true", "yes")

# Workflow document bounds
MAX_WORKFLOW_TASKS = int(os.getenv("MAX_WORKFLOW_TASKS", 100))
MAX_WORKFLOW_AGENTS = int(os.getenv("MAX_WORKFLOW_AGENTS", 50))

# Persistence: "memory" or "redis"
STORE_BACKEND = os.getenv("STORE_BACKEND", "memory").strip().lower()
REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
REDIS_DB = int(os.getenv("REDIS_DB", 0))
STORE_KEY_PREFIX = os.getenv("STORE_KEY_PREFIX", "wf")
EXECUTION_LIST_LIMIT = int(os.getenv("EXECUTION_LIST_LIMIT", 20))

# HTTP surface
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", 8100))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()


def fallback_credentials() -> dict:
    """Return the environment-level credential for each provider family that has one."""
    keys = {
        "anthropic": ANTHROPIC_API_KEY,
        "openai": OPENAI_API_KEY,
        "xai": XAI_API_KEY,
    }
    return {family: key for family, key in keys.items() if key}


PROVIDER_BASE_URLS = {
    "anthropic": ANTHROPIC_BASE_URL,
    "openai": OPENAI_BASE_URL,
    "xai": XAI_BASE_URL,
}
