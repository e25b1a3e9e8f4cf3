"""
Environment-driven settings.

Values are read on every call so tests (and long-running processes) can
change them through the environment. Malformed values fall back to the
default instead of raising.
"""

import os

from dotenv import load_dotenv

load_dotenv()

_TRUTHY = {"1", "true", "yes", "on"}


def env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in _TRUTHY


def env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = float(raw)
    except ValueError:
        return default
    if parsed < 0:
        return default
    return parsed


def env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError:
        return default
    if parsed <= 0:
        return default
    return parsed


def simulated_latency_seconds() -> float:
    """Delay used by the pass-through strategy (the editor used 2 seconds)."""
    return env_float("FLOWCANVAS_SIMULATED_LATENCY_SECONDS", 2.0)


def mock_mode_enabled() -> bool:
    """
    Runtime switch for simulated generative nodes.

    When enabled, generative node types are processed by the pass-through
    strategy and never call an external service.
    """
    return env_flag("FLOWCANVAS_MOCK_MODE", False)


def save_debounce_seconds() -> float:
    return env_float("FLOWCANVAS_SAVE_DEBOUNCE_SECONDS", 1.0)


def storage_max_bytes() -> int:
    return env_int("FLOWCANVAS_STORAGE_MAX_BYTES", 2_000_000)


def storage_dir() -> str:
    return (os.getenv("FLOWCANVAS_STORAGE_DIR") or ".flowcanvas").strip()


def storage_backend() -> str:
    raw = (os.getenv("FLOWCANVAS_STORAGE_BACKEND") or "file").strip().lower()
    return raw if raw in {"file", "supabase"} else "file"


def supabase_settings() -> tuple[str | None, str | None]:
    """URL and service role key of the hosted snapshot store."""
    return os.getenv("SUPABASE_URL"), os.getenv("SUPABASE_SERVICE_ROLE_KEY")


def http_timeout_seconds() -> float:
    return env_float("FLOWCANVAS_HTTP_TIMEOUT_SECONDS", 120.0)


def log_level() -> str:
    return (os.getenv("LOG_LEVEL") or "INFO").strip().upper()
