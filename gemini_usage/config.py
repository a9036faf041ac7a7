"""Gemini usage engine configuration."""
import os
from pathlib import Path


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default

# Gemini CLI install (sessions live under <home>/tmp/<project-hash>/chats)
GEMINI_HOME = Path(os.getenv("GEMINI_USAGE_HOME", str(Path.home() / ".gemini"))).expanduser()
GEMINI_TMP_DIR = GEMINI_HOME / "tmp"

# Caching
RESULT_CACHE_TTL_MS = _env_int("GEMINI_USAGE_RESULT_CACHE_TTL_MS", 2000)
AGGREGATE_CACHE_MAX = _env_int("GEMINI_USAGE_AGGREGATE_CACHE_MAX", 10_000)
DEFAULT_LIMIT = _env_int("GEMINI_USAGE_DEFAULT_LIMIT", 100)

# Watching
RECONCILIATION_INTERVAL_SECONDS = _env_int("GEMINI_USAGE_RECONCILIATION_INTERVAL_SECONDS", 10 * 60)
WATCH_DEBOUNCE_MS = _env_int("GEMINI_USAGE_WATCH_DEBOUNCE_MS", 200)
ACTIVITY_ENABLED = _env_bool("GEMINI_USAGE_ACTIVITY_ENABLED", True)
ACTIVITY_BUFFER_SIZE = _env_int("GEMINI_USAGE_ACTIVITY_BUFFER", 200)

# Logging / observability
LOG_LEVEL = os.getenv("GEMINI_USAGE_LOG_LEVEL", "INFO").upper()
OTEL_ENABLED = _env_bool("GEMINI_USAGE_OTEL_ENABLED", False)
OTEL_ENDPOINT = os.getenv("GEMINI_USAGE_OTEL_ENDPOINT", "http://localhost:4318")
OTEL_SERVICE_NAME = os.getenv("GEMINI_USAGE_OTEL_SERVICE_NAME", "gemini-usage-engine")
PROM_PORT = _env_int("GEMINI_USAGE_PROM_PORT", 0)

# Server settings
HOST = os.getenv("GEMINI_USAGE_HOST", "127.0.0.1")
PORT = _env_int("GEMINI_USAGE_PORT", 8765)
