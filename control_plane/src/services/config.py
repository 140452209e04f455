"""Application configuration helpers."""

from __future__ import annotations

from functools import lru_cache
import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

PROJECT_ROOT = Path(__file__).resolve().parents[3]
DEFAULT_DB_PATH = PROJECT_ROOT / "data" / "control_plane.db"


class AppConfig(BaseModel):
    """Runtime configuration loaded from environment variables."""

    model_config = ConfigDict(frozen=True)

    database_path: Path = Field(
        default=DEFAULT_DB_PATH,
        description="SQLite file holding sessions, pool entries, state and jobs",
    )

    # Environment provisioning
    sandbox_backend: str = Field(
        default="e2b",
        description="Provisioner implementation (SANDBOX_BACKEND): 'e2b' or 'local'",
    )
    sandbox_template: str = Field(
        default="agent-sandbox",
        description="Environment template used for on-demand and pooled environments",
    )
    sandbox_timeout_s: int = Field(
        default=600,
        ge=60,
        le=24 * 3600,
        description="Lifetime requested from the provisioner for each environment",
    )
    provision_timeout_s: float = Field(
        default=60.0,
        gt=0,
        le=600,
        description="Upper bound on obtaining an environment (claim + connect or create)",
    )
    local_sandbox_root: Path = Field(
        default=PROJECT_ROOT / "data" / "sandboxes",
        description="Root directory for the 'local' sandbox backend",
    )

    # In-environment agent server
    agent_server_port: int = Field(default=4096, ge=1, le=65535)
    agent_home: str = Field(default="/home/user")
    agent_workspace_dir: str = Field(
        default="/home/user/workspace",
        description="Working directory restored files are written into",
    )
    agent_state_file: str = Field(
        default="/home/user/beads.json",
        description="Well-known path the agent reads restored CRDT state from",
    )
    agent_server_command: str = Field(
        default="cd {home} && opencode serve --port {port} --hostname 0.0.0.0",
        description="Background command starting the agent server ({home}, {port} substituted)",
    )
    forwarder_command: str = Field(
        default="bun run {home}/scripts/event-forwarder.ts {remote_session_id} > /tmp/forwarder.log 2>&1",
        description="Background command starting the event forwarder",
    )
    server_startup_timeout_s: float = Field(
        default=30.0,
        gt=0,
        le=300,
        description="Ceiling for the agent server health check",
    )

    # LLM provider
    llm_provider: str = Field(default="openrouter")
    llm_api_key: Optional[str] = Field(default=None, description="Provider API key handed to the agent server")
    agent_model: str = Field(default="anthropic/claude-sonnet-4")
    agent_fallback_models: tuple[str, ...] = Field(default=("anthropic/claude-3.5-sonnet",))
    agent_max_tokens: int = Field(default=16384, ge=256, le=200000)

    # Callback credentials
    sandbox_jwt_secret: Optional[str] = Field(
        default=None,
        description="HMAC secret for environment -> control plane callback tokens",
    )
    sandbox_jwt_ttl_s: int = Field(default=3600, ge=60, le=24 * 3600)
    public_base_url: str = Field(
        default="http://localhost:8000",
        description="Externally reachable base URL environments call back to",
    )
    service_token: Optional[str] = Field(
        default=None,
        description="Optional bearer token required on operator routes",
    )

    # Completion detection
    poll_interval_s: float = Field(default=30.0, gt=0, le=600)
    max_polls: int = Field(default=20, ge=1, le=1000)
    empty_message_poll_limit: int = Field(
        default=5,
        ge=1,
        le=100,
        description="Polls tolerated with an unregistered, message-less remote session",
    )
    poll_fetch_retries: int = Field(default=3, ge=1, le=10)
    max_poll_transport_failures: int = Field(default=3, ge=1, le=50)
    watchdog_timeout_s: float = Field(default=600.0, gt=0, le=24 * 3600)

    # Warm pool
    pool_target_size: int = Field(default=0, ge=0, le=100)
    pool_ttl_s: float = Field(default=480.0, gt=0)
    pool_reap_grace_s: float = Field(default=60.0, ge=0)
    pool_maintain_interval_s: float = Field(default=30.0, gt=0)

    # State continuity
    compaction_safety_margin_s: float = Field(default=60.0, ge=0)

    scheduler_tick_s: float = Field(default=1.0, gt=0, le=60)

    @field_validator("sandbox_backend", mode="before")
    @classmethod
    def _validate_backend(cls, value: str) -> str:
        if value is None:
            return "e2b"
        v = str(value).lower().strip()
        allowed = {"e2b", "local"}
        if v not in allowed:
            raise ValueError(f"SANDBOX_BACKEND must be one of {allowed}, got: {value!r}")
        return v

    @field_validator("database_path", "local_sandbox_root", mode="before")
    @classmethod
    def _normalize_path(cls, value: str | Path | None) -> Path:
        if value is None or value == "":
            raise ValueError("path settings cannot be empty")
        path = value if isinstance(value, Path) else Path(value)
        return path.expanduser().resolve()

    @field_validator("sandbox_jwt_secret", mode="before")
    @classmethod
    def _ensure_secret(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        cleaned = value.strip()
        if not cleaned:
            raise ValueError(
                "SANDBOX_JWT_SECRET cannot be empty; unset the variable to disable callbacks"
            )
        if len(cleaned) < 16:
            raise ValueError("SANDBOX_JWT_SECRET must be at least 16 characters")
        return cleaned

    @field_validator("public_base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")


def _read_env(key: str, default: Optional[str] = None) -> Optional[str]:
    return os.getenv(key, default)


def _read_int(key: str, default: int) -> int:
    try:
        return int(_read_env(key, str(default)))
    except ValueError:
        return default


def _read_float(key: str, default: float) -> float:
    try:
        return float(_read_env(key, str(default)))
    except ValueError:
        return default


@lru_cache(maxsize=1)
def get_config() -> AppConfig:
    """Load and cache application configuration."""
    fallback_models_str = _read_env("AGENT_FALLBACK_MODELS", "anthropic/claude-3.5-sonnet")
    fallback_models = tuple(m.strip() for m in fallback_models_str.split(",") if m.strip())

    config = AppConfig(
        database_path=_read_env("CONTROL_PLANE_DB_PATH", str(DEFAULT_DB_PATH)),
        sandbox_backend=_read_env("SANDBOX_BACKEND", "e2b"),
        sandbox_template=_read_env("SANDBOX_TEMPLATE", "agent-sandbox"),
        sandbox_timeout_s=_read_int("SANDBOX_TIMEOUT_SECONDS", 600),
        provision_timeout_s=_read_float("PROVISION_TIMEOUT_SECONDS", 60.0),
        local_sandbox_root=_read_env("LOCAL_SANDBOX_ROOT", str(PROJECT_ROOT / "data" / "sandboxes")),
        agent_server_port=_read_int("AGENT_SERVER_PORT", 4096),
        agent_home=_read_env("AGENT_HOME", "/home/user"),
        agent_workspace_dir=_read_env("AGENT_WORKSPACE_DIR", "/home/user/workspace"),
        agent_state_file=_read_env("AGENT_STATE_FILE", "/home/user/beads.json"),
        agent_server_command=_read_env(
            "AGENT_SERVER_COMMAND",
            "cd {home} && opencode serve --port {port} --hostname 0.0.0.0",
        ),
        forwarder_command=_read_env(
            "EVENT_FORWARDER_COMMAND",
            "bun run {home}/scripts/event-forwarder.ts {remote_session_id} > /tmp/forwarder.log 2>&1",
        ),
        server_startup_timeout_s=_read_float("SERVER_STARTUP_TIMEOUT_SECONDS", 30.0),
        llm_provider=_read_env("LLM_PROVIDER", "openrouter"),
        # OPENROUTER_API_KEY kept as an alias for existing deployments
        llm_api_key=_read_env("LLM_API_KEY") or _read_env("OPENROUTER_API_KEY"),
        agent_model=_read_env("AGENT_MODEL", "anthropic/claude-sonnet-4"),
        agent_fallback_models=fallback_models,
        agent_max_tokens=_read_int("AGENT_MAX_TOKENS", 16384),
        sandbox_jwt_secret=_read_env("SANDBOX_JWT_SECRET"),
        sandbox_jwt_ttl_s=_read_int("SANDBOX_JWT_TTL_SECONDS", 3600),
        public_base_url=_read_env("CONTROL_PLANE_PUBLIC_URL", "http://localhost:8000"),
        service_token=_read_env("CONTROL_PLANE_SERVICE_TOKEN"),
        poll_interval_s=_read_float("POLL_INTERVAL_SECONDS", 30.0),
        max_polls=_read_int("MAX_POLLS", 20),
        empty_message_poll_limit=_read_int("EMPTY_MESSAGE_POLL_LIMIT", 5),
        poll_fetch_retries=_read_int("POLL_FETCH_RETRIES", 3),
        max_poll_transport_failures=_read_int("MAX_POLL_TRANSPORT_FAILURES", 3),
        watchdog_timeout_s=_read_float("WATCHDOG_TIMEOUT_SECONDS", 600.0),
        pool_target_size=_read_int("POOL_TARGET_SIZE", 0),
        pool_ttl_s=_read_float("POOL_TTL_SECONDS", 480.0),
        pool_reap_grace_s=_read_float("POOL_REAP_GRACE_SECONDS", 60.0),
        pool_maintain_interval_s=_read_float("POOL_MAINTAIN_INTERVAL_SECONDS", 30.0),
        compaction_safety_margin_s=_read_float("COMPACTION_SAFETY_MARGIN_SECONDS", 60.0),
        scheduler_tick_s=_read_float("SCHEDULER_TICK_SECONDS", 1.0),
    )
    # Ensure the data directory exists for downstream services.
    config.database_path.parent.mkdir(parents=True, exist_ok=True)
    return config


def reload_config() -> AppConfig:
    """Clear cached config (useful for tests) and reload."""
    get_config.cache_clear()
    return get_config()


__all__ = ["AppConfig", "get_config", "reload_config", "PROJECT_ROOT", "DEFAULT_DB_PATH"]
