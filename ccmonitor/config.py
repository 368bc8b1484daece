"""ccmonitor configuration."""
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

# Project root (one level up from ccmonitor/)
PROJECT_ROOT = Path(__file__).resolve().parent.parent

# Database
DB_PATH = Path(os.getenv("CCMONITOR_DB_PATH", str(PROJECT_ROOT / "data" / "ccmonitor.db")))

# Transcript watching
CLAUDE_PROJECTS_PATH = Path(
    os.getenv("CCMONITOR_PROJECTS_PATH", str(Path.home() / ".claude" / "projects"))
).expanduser()
WATCH_PATTERN = os.getenv("CCMONITOR_WATCH_PATTERN", "*.jsonl")
WATCH_DEBOUNCE_MS = _env_int("CCMONITOR_WATCH_DEBOUNCE_MS", 500)
WATCH_ENABLED = _env_bool("CCMONITOR_WATCH_ENABLED", True)

# Content caps
CONTENT_LIMIT = _env_int("CCMONITOR_CONTENT_LIMIT", 5000)
BROADCAST_CONTENT_LIMIT = _env_int("CCMONITOR_BROADCAST_CONTENT_LIMIT", 500)
TOOL_INPUT_PREVIEW = _env_int("CCMONITOR_TOOL_INPUT_PREVIEW", 500)
HOOK_CONTENT_LIMIT = _env_int("CCMONITOR_HOOK_CONTENT_LIMIT", 1000)

# Tools whose names start with this prefix get per-session statistics
EXTERNAL_TOOL_PREFIX = os.getenv("CCMONITOR_EXTERNAL_TOOL_PREFIX", "mcp__")

# Observability
OTEL_ENABLED = _env_bool("CCMONITOR_OTEL_ENABLED", False)
OTEL_ENDPOINT = os.getenv("CCMONITOR_OTEL_ENDPOINT", "http://localhost:4318")
OTEL_SERVICE_NAME = os.getenv("CCMONITOR_OTEL_SERVICE_NAME", "ccmonitor")
PROM_PORT = _env_int("CCMONITOR_PROM_PORT", 9464)

# Server settings
HOST = os.getenv("CCMONITOR_HOST", "0.0.0.0")
PORT = _env_int("CCMONITOR_PORT", 3456)

# CORS
FRONTEND_ORIGIN = os.getenv("CCMONITOR_FRONTEND_ORIGIN", "http://localhost:5173")
