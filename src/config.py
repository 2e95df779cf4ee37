"""Schedule engine configuration, read from SCHEDULE_ENGINE_* environment variables."""
import os


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


def _env_str(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip()


# Server settings
HOST = _env_str("SCHEDULE_ENGINE_HOST", "127.0.0.1")
PORT = _env_int("SCHEDULE_ENGINE_PORT", 8000)
RELOAD = _env_bool("SCHEDULE_ENGINE_RELOAD", False)
LOG_LEVEL = _env_str("SCHEDULE_ENGINE_LOG_LEVEL", "INFO").upper()

# CORS (comma separated)
CORS_ORIGINS = [o.strip() for o in _env_str("SCHEDULE_ENGINE_CORS_ORIGINS", "*").split(",") if o.strip()]

# Resource heatmap
UTILIZATION_HORIZON_WEEKS = _env_int("SCHEDULE_ENGINE_UTILIZATION_HORIZON_WEEKS", 12)
# 0 = Monday ... 6 = Sunday (Python weekday numbering); the heatmap starts weeks on Sunday
WEEK_START_WEEKDAY = _env_int("SCHEDULE_ENGINE_WEEK_START_WEEKDAY", 6) % 7

# Gantt layout
LAYOUT_PADDING_DAYS = _env_int("SCHEDULE_ENGINE_LAYOUT_PADDING_DAYS", 30)
LAYOUT_EMPTY_WINDOW_DAYS = _env_int("SCHEDULE_ENGINE_LAYOUT_EMPTY_WINDOW_DAYS", 365)

# Phase state cache: entries keyed by (project, snapshot, calendar day)
PHASE_STATE_CACHE_SIZE = _env_int("SCHEDULE_ENGINE_PHASE_STATE_CACHE_SIZE", 1024)

# Fall back to the standard draw schedule when a project has no anchor rules
USE_DEFAULT_ANCHOR_RULES = _env_bool("SCHEDULE_ENGINE_USE_DEFAULT_ANCHOR_RULES", True)

# Schedule templates: weekends are always skipped; holidays come from the
# request or, when none are given, the standard list for this many years
USE_DEFAULT_HOLIDAYS = _env_bool("SCHEDULE_ENGINE_USE_DEFAULT_HOLIDAYS", True)
TEMPLATE_HOLIDAY_YEARS = _env_int("SCHEDULE_ENGINE_TEMPLATE_HOLIDAY_YEARS", 3)
