"""Centralized configuration — Pydantic BaseSettings with TOML + dotenv sources.

Non-secret settings live in config.toml. Secrets (API keys, Slack tokens)
live in .env. Environment variables override both using ``__`` as the nested
delimiter (e.g. ``SUPERVISOR__READY_TIMEOUT=45``). Secrets use SecretStr for
masking in logs.

Priority (highest wins): init args > env vars > .env > config.toml

Usage::

    from clawbridge.config import get_settings

    s = get_settings()
    print(s.supervisor.max_restart_retries)
    print(s.state_path)
"""

from __future__ import annotations

from functools import cached_property
from pathlib import Path

from pydantic import BaseModel, SecretStr, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

# ---------------------------------------------------------------------------
# Sub-models (each maps to a [section] in config.toml)
# ---------------------------------------------------------------------------


class _StrictModel(BaseModel):
    """Base for all config sub-models — reject unknown keys so typos fail loudly."""

    model_config = {"extra": "forbid"}


class AgentConfig(_StrictModel):
    model: str = "claude-sonnet-4-5"
    base_url: str | None = None  # None uses the SDK default or ANTHROPIC_BASE_URL
    max_tokens: int = 4096
    system_prompt: str | None = None
    max_context_tokens: int = 4000  # compression ceiling per session
    keep_recent_messages: int = 5  # survivors of a compression, besides system messages
    request_timeout: float = 120.0  # seconds
    max_retries: int = 2  # SDK-level retries on connection errors, 429 and 5xx


class RouterConfig(_StrictModel):
    session_prefix: str = "slack_"
    lock_wait_timeout: float = 30.0  # seconds before a waiter proceeds anyway

    @field_validator("lock_wait_timeout")
    @classmethod
    def validate_lock_wait(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("lock_wait_timeout must be positive")
        return v


class DedupConfig(_StrictModel):
    max_entries: int = 1000
    ttl_seconds: float = 1800.0  # 30 minutes

    @field_validator("max_entries")
    @classmethod
    def clamp_max_entries(cls, v: int) -> int:
        return max(1, v)


class DispatchConfig(_StrictModel):
    streaming: bool = True
    typing_indicator: bool = True
    restart_commands: list[str] = ["/restart"]
    max_message_length: int = 4000  # platform single-message ceiling

    @field_validator("max_message_length")
    @classmethod
    def validate_max_message_length(cls, v: int) -> int:
        if v < 10:
            raise ValueError("max_message_length must be at least 10")
        return v


class SupervisorConfig(_StrictModel):
    ready_timeout: float = 30.0  # seconds to wait for the worker's ready signal
    max_restart_retries: int = 1
    graceful_shutdown_timeout: float = 5.0  # SIGTERM → SIGKILL escalation
    state_cleanup_delay: float = 3.0  # grace before deleting the final state
    worker_state_check_delay: float = 5.0  # worker-side fallback read of the state file
    state_file: str = ".restart-state.json"  # relative to project root, or absolute
    stash_label: str = "clawbridge-auto-stash"
    commit_message: str = "auto: verified restart commit"
    worker_command: list[str] | None = None  # None → [sys.executable, -m, clawbridge, worker]

    @field_validator("max_restart_retries")
    @classmethod
    def clamp_retries(cls, v: int) -> int:
        return max(0, v)


class SlackConfig(_StrictModel):
    bot_token: SecretStr | None = None  # xoxb-... Bot User OAuth Token
    app_token: SecretStr | None = None  # xapp-... App-Level Token (Socket Mode)
    typing_reaction: str = "eyes"


class SecretsConfig(_StrictModel):
    anthropic_api_key: SecretStr | None = None


class ServerConfig(_StrictModel):
    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = 3000


class LoggingConfig(_StrictModel):
    level: str = "INFO"

    @field_validator("level")
    @classmethod
    def normalize_level(cls, v: str) -> str:
        return v.upper()


# ---------------------------------------------------------------------------
# Root Settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        toml_file="config.toml",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    agent: AgentConfig = AgentConfig()
    router: RouterConfig = RouterConfig()
    dedup: DedupConfig = DedupConfig()
    dispatch: DispatchConfig = DispatchConfig()
    supervisor: SupervisorConfig = SupervisorConfig()
    slack: SlackConfig = SlackConfig()
    secrets: SecretsConfig = SecretsConfig()
    server: ServerConfig = ServerConfig()
    logging: LoggingConfig = LoggingConfig()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Priority: init > env vars > .env > config.toml > file secrets."""
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls),
            file_secret_settings,
        )

    # --- Computed properties ---

    @cached_property
    def project_root(self) -> Path:
        return Path.cwd()

    @cached_property
    def state_path(self) -> Path:
        p = Path(self.supervisor.state_file)
        if not p.is_absolute():
            p = self.project_root / p
        return p


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_settings: Settings | None = None


def get_settings() -> Settings:
    """Lazy cached singleton."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Clear the cached singleton (for tests)."""
    global _settings
    _settings = None
