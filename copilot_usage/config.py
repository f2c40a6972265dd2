"""Copilot usage core configuration."""
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


def _env_paths(name: str) -> list[Path]:
    """Split an os.pathsep separated list of directories."""
    value = os.getenv(name)
    if not value:
        return []
    return [Path(token).expanduser() for token in value.split(os.pathsep) if token.strip()]


# Logging
LOG_LEVEL = os.getenv("COPILOT_USAGE_LOG_LEVEL", "INFO").upper()

# Storage overrides (empty = derive from the user profile per editor variant)
STORAGE_ROOTS = _env_paths("COPILOT_USAGE_STORAGE_ROOTS")
LOG_ROOTS = _env_paths("COPILOT_USAGE_LOG_ROOTS")

# Session scanning
SCAN_BATCH_SIZE = max(1, _env_int("COPILOT_USAGE_SCAN_BATCH_SIZE", 50))
MAX_SESSION_FILE_MB = _env_int("COPILOT_USAGE_MAX_SESSION_FILE_MB", 100)
SESSION_WATCH_DEBOUNCE_MS = _env_int("COPILOT_USAGE_SESSION_WATCH_DEBOUNCE_MS", 3000)

# Log tailing
GLOBAL_LOG_FLUSH_MS = _env_int("COPILOT_USAGE_GLOBAL_LOG_FLUSH_MS", 2000)
GLOBAL_LOG_DEBOUNCE_MS = _env_int("COPILOT_USAGE_GLOBAL_LOG_DEBOUNCE_MS", 1000)
WINDOW_LOG_FLUSH_MS = _env_int("COPILOT_USAGE_WINDOW_LOG_FLUSH_MS", 1000)
WINDOW_LOG_DEBOUNCE_MS = _env_int("COPILOT_USAGE_WINDOW_LOG_DEBOUNCE_MS", 300)
TAIL_RETRY_DELAY_MS = _env_int("COPILOT_USAGE_TAIL_RETRY_DELAY_MS", 200)

# Coordinator
ENABLE_REAL_TIME_UPDATES = _env_bool("COPILOT_USAGE_ENABLE_REAL_TIME_UPDATES", True)
LOAD_HISTORICAL_LOGS = _env_bool("COPILOT_USAGE_LOAD_HISTORICAL_LOGS", True)
MAX_OPERATION_HISTORY = _env_int("COPILOT_USAGE_MAX_OPERATION_HISTORY", 40)
