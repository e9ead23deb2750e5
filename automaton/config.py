# automaton/config.py
"""
Configuration for the automaton runtime.

All configuration flows through this module. Values are loaded from environment
variables (via .env file) and validated with Pydantic. An optional
``automaton.toml`` is layered underneath: explicit environment variables
always win over values from the file.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Optional

import structlog
from pydantic import Field, ValidationError, model_validator
from pydantic_settings import BaseSettings

from automaton.errors import ConfigError

logger = structlog.get_logger(__name__)

# Resolve .env relative to the project root (one level above automaton/ package),
# so the config works regardless of the user's current working directory.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
_ENV_FILE = _PROJECT_ROOT / ".env"

_SETTINGS_CONFIG = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}


class IdentityConfig(BaseSettings):
    """Who the automaton is and where it lives."""

    name: str = Field("automaton", alias="AUTOMATON_NAME")
    genesis_prompt: str = Field("", alias="AUTOMATON_GENESIS_PROMPT")
    creator_address: str = Field("", alias="AUTOMATON_CREATOR_ADDRESS")
    wallet_address: str = Field("", alias="AUTOMATON_WALLET_ADDRESS")
    sandbox_id: str = Field("", alias="AUTOMATON_SANDBOX_ID")
    max_children: int = Field(3, alias="AUTOMATON_MAX_CHILDREN")

    model_config = _SETTINGS_CONFIG

    @model_validator(mode="after")
    def normalize(self) -> "IdentityConfig":
        self.name = self.name.strip() or "automaton"
        self.wallet_address = self.wallet_address.strip()
        self.max_children = max(0, int(self.max_children))
        return self


class InferenceConfig(BaseSettings):
    """Model selection and inference request limits."""

    inference_model: str = Field("gpt-4o", alias="AUTOMATON_INFERENCE_MODEL")
    low_compute_model: str = Field("gpt-4o-mini", alias="AUTOMATON_LOW_COMPUTE_MODEL")
    max_tokens_per_turn: int = Field(4096, alias="AUTOMATON_MAX_TOKENS_PER_TURN")
    temperature: float = Field(0.7, alias="AUTOMATON_TEMPERATURE")
    request_timeout_seconds: float = Field(120.0, alias="AUTOMATON_REQUEST_TIMEOUT_SECONDS")
    anthropic_api_key: Optional[str] = Field(None, alias="ANTHROPIC_API_KEY")
    retry_max_retries: int = Field(2, alias="AUTOMATON_RETRY_MAX_RETRIES")
    retry_base_delay: float = Field(0.5, alias="AUTOMATON_RETRY_BASE_DELAY")
    retry_max_delay: float = Field(8.0, alias="AUTOMATON_RETRY_MAX_DELAY")

    model_config = _SETTINGS_CONFIG

    @model_validator(mode="after")
    def normalize_limits(self) -> "InferenceConfig":
        self.max_tokens_per_turn = max(1, int(self.max_tokens_per_turn))
        self.temperature = min(2.0, max(0.0, float(self.temperature)))
        self.request_timeout_seconds = max(1.0, float(self.request_timeout_seconds))
        self.retry_max_retries = max(0, int(self.retry_max_retries))
        if isinstance(self.anthropic_api_key, str):
            self.anthropic_api_key = self.anthropic_api_key.strip() or None
        return self


class ConwayConfig(BaseSettings):
    """Endpoints for the compute provider, the chain RPC and the social relay."""

    api_url: str = Field("https://api.conway.tech", alias="CONWAY_API_URL")
    api_key: str = Field("", alias="CONWAY_API_KEY")
    base_rpc_url: str = Field("https://mainnet.base.org", alias="AUTOMATON_BASE_RPC_URL")
    social_relay_url: str = Field("", alias="AUTOMATON_SOCIAL_RELAY_URL")

    model_config = _SETTINGS_CONFIG

    @model_validator(mode="after")
    def strip_urls(self) -> "ConwayConfig":
        self.api_url = self.api_url.strip().rstrip("/")
        self.base_rpc_url = self.base_rpc_url.strip()
        self.social_relay_url = self.social_relay_url.strip().rstrip("/")
        return self


class LoopConfig(BaseSettings):
    """Turn loop pacing and bounds."""

    max_tool_calls_per_turn: int = Field(10, alias="AUTOMATON_MAX_TOOL_CALLS_PER_TURN")
    max_consecutive_errors: int = Field(5, alias="AUTOMATON_MAX_CONSECUTIVE_ERRORS")
    context_window_messages: int = Field(20, alias="AUTOMATON_CONTEXT_WINDOW_MESSAGES")
    history_max_messages: int = Field(40, alias="AUTOMATON_HISTORY_MAX_MESSAGES")
    history_keep_messages: int = Field(30, alias="AUTOMATON_HISTORY_KEEP_MESSAGES")
    sleep_poll_seconds: float = Field(60.0, alias="AUTOMATON_SLEEP_POLL_SECONDS")
    idle_sleep_seconds: float = Field(30.0, alias="AUTOMATON_IDLE_SLEEP_SECONDS")
    turn_pause_seconds: float = Field(2.0, alias="AUTOMATON_TURN_PAUSE_SECONDS")
    error_backoff_seconds: float = Field(5.0, alias="AUTOMATON_ERROR_BACKOFF_SECONDS")
    error_sleep_minutes: float = Field(5.0, alias="AUTOMATON_ERROR_SLEEP_MINUTES")

    model_config = _SETTINGS_CONFIG

    @model_validator(mode="after")
    def normalize_limits(self) -> "LoopConfig":
        self.max_tool_calls_per_turn = max(0, int(self.max_tool_calls_per_turn))
        self.max_consecutive_errors = max(1, int(self.max_consecutive_errors))
        self.context_window_messages = max(0, int(self.context_window_messages))
        self.history_max_messages = max(1, int(self.history_max_messages))
        self.history_keep_messages = min(
            max(1, int(self.history_keep_messages)), self.history_max_messages
        )
        for name in (
            "sleep_poll_seconds",
            "idle_sleep_seconds",
            "turn_pause_seconds",
            "error_backoff_seconds",
            "error_sleep_minutes",
        ):
            setattr(self, name, max(0.0, float(getattr(self, name))))
        return self


class HeartbeatConfig(BaseSettings):
    """Background scheduler settings."""

    tick_seconds: float = Field(60.0, alias="AUTOMATON_HEARTBEAT_TICK_SECONDS")
    config_path: Path = Field(Path("heartbeat.yml"), alias="AUTOMATON_HEARTBEAT_CONFIG")
    default_lookback_minutes: float = Field(60.0, alias="AUTOMATON_HEARTBEAT_LOOKBACK_MINUTES")

    model_config = _SETTINGS_CONFIG

    @model_validator(mode="after")
    def normalize_limits(self) -> "HeartbeatConfig":
        self.tick_seconds = max(0.0, float(self.tick_seconds))
        self.default_lookback_minutes = max(0.0, float(self.default_lookback_minutes))
        return self


class PathsConfig(BaseSettings):
    """On-disk layout. Relative paths resolve against ``home_dir``."""

    home_dir: Path = Field(Path("~/.automaton"), alias="AUTOMATON_HOME")
    db_path: Path = Field(Path("state.db"), alias="AUTOMATON_DB_PATH")
    skills_dir: Path = Field(Path("skills"), alias="AUTOMATON_SKILLS_DIR")
    soul_path: Path = Field(Path("SOUL.md"), alias="AUTOMATON_SOUL_PATH")

    model_config = _SETTINGS_CONFIG


class DaemonConfig(BaseSettings):
    shutdown_timeout_seconds: float = Field(10.0, alias="AUTOMATON_SHUTDOWN_TIMEOUT_SECONDS")

    model_config = _SETTINGS_CONFIG

    @model_validator(mode="after")
    def normalize_limits(self) -> "DaemonConfig":
        self.shutdown_timeout_seconds = max(0.1, float(self.shutdown_timeout_seconds))
        return self


def _section_kwargs(cls: type[BaseSettings], section: Any) -> dict[str, Any]:
    """Turn one TOML table into constructor kwargs, letting real env vars win."""
    if not isinstance(section, dict):
        return {}
    kwargs: dict[str, Any] = {}
    for key, value in section.items():
        field_info = cls.model_fields.get(key)
        if field_info is None:
            logger.warning("config.unknown_key", section=cls.__name__, key=key)
            continue
        if field_info.alias and field_info.alias in os.environ:
            continue
        kwargs[key] = value
    return kwargs


class AutomatonConfig:
    """
    Master configuration that composes all subsystem configs.

    Every component receives its config from here. No global state,
    no hidden settings.
    """

    _SECTIONS: dict[str, type[BaseSettings]] = {
        "identity": IdentityConfig,
        "inference": InferenceConfig,
        "conway": ConwayConfig,
        "loop": LoopConfig,
        "heartbeat": HeartbeatConfig,
        "paths": PathsConfig,
        "daemon": DaemonConfig,
    }

    def __init__(self, file_data: Optional[dict[str, Any]] = None):
        file_data = file_data or {}
        try:
            self.identity = IdentityConfig(**_section_kwargs(IdentityConfig, file_data.get("identity")))
            self.inference = InferenceConfig(**_section_kwargs(InferenceConfig, file_data.get("inference")))
            self.conway = ConwayConfig(**_section_kwargs(ConwayConfig, file_data.get("conway")))
            self.loop = LoopConfig(**_section_kwargs(LoopConfig, file_data.get("loop")))
            self.heartbeat = HeartbeatConfig(**_section_kwargs(HeartbeatConfig, file_data.get("heartbeat")))
            self.paths = PathsConfig(**_section_kwargs(PathsConfig, file_data.get("paths")))
            self.daemon = DaemonConfig(**_section_kwargs(DaemonConfig, file_data.get("daemon")))
        except ValidationError as e:
            raise ConfigError(f"Invalid configuration: {e}") from e

        self._resolve_paths()

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "AutomatonConfig":
        """Build a config, overlaying automaton.toml when one is found."""
        from automaton.config_file import find_config, load_config

        config_path = path or find_config()
        file_data: dict[str, Any] = {}
        if config_path is not None:
            try:
                file_data = load_config(config_path)
            except (OSError, ValueError) as e:
                raise ConfigError(f"Could not read {config_path}: {e}") from e
            logger.info("config.file_loaded", path=str(config_path))
        return cls(file_data)

    def _resolve_paths(self) -> None:
        """Expand ``~`` and anchor relative paths under the automaton home."""
        home = self.paths.home_dir.expanduser()
        self.paths.home_dir = home

        def _resolve(p: Path) -> Path:
            p = p.expanduser()
            return p if p.is_absolute() else home / p

        self.paths.db_path = _resolve(self.paths.db_path)
        self.paths.skills_dir = _resolve(self.paths.skills_dir)
        self.paths.soul_path = _resolve(self.paths.soul_path)
        self.heartbeat.config_path = _resolve(self.heartbeat.config_path)

    def effective_model(self, low_compute: bool) -> str:
        if low_compute:
            return self.inference.low_compute_model
        return self.inference.inference_model

    def __repr__(self) -> str:
        return (
            f"AutomatonConfig(name={self.identity.name}, "
            f"model={self.inference.inference_model}, "
            f"home={self.paths.home_dir})"
        )
