"""Environment-driven settings for AgentDesk.

Each setting is resolved by a small function at the point of use so tests
can override values with ``monkeypatch.setenv`` without reloading modules.
"""

import os

DEFAULT_DATABASE_URL = "sqlite:///./agentdesk.db"
DEFAULT_AGENT_MODEL = "claude-sonnet-4-5"
DEFAULT_MAX_STEPS = 10
DEFAULT_MAX_TOKENS = 1024
DEFAULT_FALLBACK_DELAYS = (35.0, 45.0)
DEFAULT_WS_PING_INTERVAL = 25.0
DEFAULT_WS_PING_TIMEOUT = 60.0


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _float_env(name: str, default: float) -> float:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def get_database_url() -> str:
    """Get database URL from environment or use default SQLite.

    Precedence:
    1. DATABASE_URL (canonical)
    2. AGENTDESK_DB_PATH (compat fallback, converted to sqlite URL)
    3. sqlite:///./agentdesk.db
    """
    database_url = os.environ.get("DATABASE_URL", "").strip()
    if database_url:
        return database_url

    db_path = os.environ.get("AGENTDESK_DB_PATH", "").strip()
    if db_path:
        if db_path.startswith("sqlite:"):
            return db_path
        return f"sqlite:///{db_path}"

    return DEFAULT_DATABASE_URL


def get_sql_echo() -> bool:
    """Return True when SQL_ECHO=true."""
    return os.environ.get("SQL_ECHO", "").lower() == "true"


def get_agent_model() -> str:
    """Resolve the generator model name."""
    return os.environ.get("AGENT_MODEL", "").strip() or DEFAULT_AGENT_MODEL


def get_agent_max_steps() -> int:
    """Maximum model calls per turn in the tool loop."""
    return max(1, _int_env("AGENT_MAX_STEPS", DEFAULT_MAX_STEPS))


def get_agent_max_tokens() -> int:
    """Per-call output token cap."""
    return max(1, _int_env("AGENT_MAX_TOKENS", DEFAULT_MAX_TOKENS))


def get_fallback_delays() -> tuple[float, ...]:
    """Seconds after turn start at which a waiting fallback is emitted.

    Parses a comma-separated list such as ``"35,45"``. Invalid entries are
    skipped; an empty result falls back to the defaults.
    """
    raw = os.environ.get("AGENT_FALLBACK_DELAYS", "").strip()
    if not raw:
        return DEFAULT_FALLBACK_DELAYS
    delays: list[float] = []
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        try:
            value = float(part)
        except ValueError:
            continue
        if value > 0:
            delays.append(value)
    return tuple(sorted(delays)) or DEFAULT_FALLBACK_DELAYS


def get_allowed_origins() -> list[str]:
    """CORS allowlist from ALLOWED_ORIGINS (comma-separated)."""
    raw = os.environ.get("ALLOWED_ORIGINS", "")
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


def get_ws_ping_interval() -> float:
    """Websocket keepalive ping interval in seconds."""
    return _float_env("WS_PING_INTERVAL", DEFAULT_WS_PING_INTERVAL)


def get_ws_ping_timeout() -> float:
    """Websocket keepalive pong timeout in seconds."""
    return _float_env("WS_PING_TIMEOUT", DEFAULT_WS_PING_TIMEOUT)


def get_log_level() -> str:
    """Root log level name."""
    return os.environ.get("AGENTDESK_LOG_LEVEL", "INFO").strip().upper() or "INFO"
