"""
Settings Module for tdcheck

Configuration management in two layers:

* ``Settings``: process-level options (logging, probe timings, where the
  target file lives) read from environment variables and ``.env`` files
  with Pydantic Settings.
* ``ProbeConfig`` / ``ServerConfig``: the YAML file listing the targets
  to watch, validated with Pydantic models.
"""

from __future__ import annotations

from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Any, List, Optional, Tuple

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from config.constants import Defaults
from exceptions.base import ConfigurationError
from utils.helpers import parse_duration


class Environment(str, Enum):
    """Application environment enumeration."""
    DEVELOPMENT = "development"
    PRODUCTION = "production"
    TESTING = "testing"


class LogLevel(str, Enum):
    """Logging level enumeration."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class BaseSettingsConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        validate_default=True
    )


class LoggingSettings(BaseSettingsConfig):
    """
    Logging Configuration Settings

    Console and file sinks for loguru, with rotation and optional
    structured (JSON) output.
    """

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        env_file=".env",
        extra="ignore"
    )

    level: LogLevel = Field(
        default=LogLevel.INFO,
        description="Minimum logging level"
    )
    to_console: bool = Field(
        default=True,
        description="Write logs to stdout"
    )
    colorize: bool = Field(
        default=True,
        description="Colorize console output"
    )
    to_file: bool = Field(
        default=False,
        description="Write logs to a rotating file"
    )
    file_path: Path = Field(
        default=Path("logs/tdcheck.log"),
        description="Log file path"
    )
    error_file: bool = Field(
        default=True,
        description="Keep a separate errors.log next to the log file"
    )
    serialize: bool = Field(
        default=False,
        description="Write the log file as JSON lines"
    )
    rotation: str = Field(
        default="10 MB",
        description="Rotate the log file when it reaches this size"
    )
    retention: int = Field(
        default=5,
        ge=1,
        le=100,
        description="Number of rotated files to keep"
    )

    @property
    def logs_dir(self) -> Path:
        """Directory holding the log files."""
        return self.file_path.parent


class ProbeSettings(BaseSettingsConfig):
    """
    Probe Engine Settings

    Timings shared by every monitored target: retry back-off, the failure
    watchdog, the consecutive-timeout budget, and HTTP client behaviour.
    """

    model_config = SettingsConfigDict(
        env_prefix="PROBE_",
        env_file=".env",
        extra="ignore"
    )

    retry_interval: float = Field(
        default=Defaults.RETRY_INTERVAL,
        gt=0,
        description="Pause after a failed check run, in seconds"
    )
    watchdog_ceiling: int = Field(
        default=Defaults.WATCHDOG_CEILING,
        ge=1,
        description="Accumulated failures tolerated before the process gives up"
    )
    watchdog_decay_interval: float = Field(
        default=Defaults.WATCHDOG_DECAY_INTERVAL,
        gt=0,
        description="How often the failure counter decays by one, in seconds"
    )
    max_timeouts: int = Field(
        default=Defaults.MAX_TIMEOUTS,
        ge=0,
        description="Consecutive timeouts a stream check absorbs before failing"
    )
    presence_silence: float = Field(
        default=Defaults.PRESENCE_SILENCE,
        gt=0,
        description="Presence silence window used when a target sets none"
    )
    http_timeout: float = Field(
        default=Defaults.HTTP_TIMEOUT,
        gt=0,
        description="Timeout for REST calls made while establishing sessions"
    )
    verify_tls: bool = Field(
        default=False,
        description="Verify TLS certificates of the target"
    )
    user_agent: str = Field(
        default=Defaults.USER_AGENT,
        description="User agent string for HTTP requests"
    )


class Settings(BaseSettingsConfig):
    """
    Main Settings Class

    Aggregates all settings sections and provides the main
    configuration interface for the application.
    """

    model_config = SettingsConfigDict(
        env_prefix="TDCHECK_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    environment: Environment = Field(
        default=Environment.PRODUCTION,
        description="Application environment"
    )
    app_name: str = Field(
        default="tdcheck",
        description="Application name"
    )
    app_version: str = Field(
        default="1.0.0",
        description="Application version"
    )
    config_path: Path = Field(
        default=Path(Defaults.CONFIG_PATH),
        description="YAML file listing the monitored targets"
    )

    logging: LoggingSettings = Field(
        default_factory=LoggingSettings
    )
    probe: ProbeSettings = Field(
        default_factory=ProbeSettings
    )

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.environment == Environment.DEVELOPMENT

    @model_validator(mode="after")
    def configure_for_environment(self) -> "Settings":
        """Apply environment-specific configuration."""
        if self.is_development and self.logging.level == LogLevel.INFO:
            self.logging.level = LogLevel.DEBUG
        return self


# ============================================================================
# TARGET FILE (YAML)
# ============================================================================

class ServerConfig(BaseModel):
    """
    One monitored target.

    Every ``*_interval`` is a duration in seconds; Go-style strings such
    as ``"30s"`` or ``"1m30s"`` are accepted too. A zero interval turns the
    corresponding check off.
    """

    model_config = {"extra": "ignore"}

    host: str = Field(..., min_length=1)
    test_team: str = ""
    alice_token: str = ""
    bob_token: str = ""
    verbose: bool = False
    insecure: bool = False

    api_ping_interval: float = 0.0
    ws_ping_interval: float = 0.0
    userver_ping_interval: float = 0.0
    userver_ping_path: str = ""
    max_server_online_interval: float = 0.0
    check_message_interval: float = 0.0
    check_call_interval: float = 0.0

    failure_sentinel_ms: Optional[int] = Field(default=None, ge=0)
    max_timeouts: Optional[int] = Field(default=None, ge=0)

    @field_validator(
        "api_ping_interval",
        "ws_ping_interval",
        "userver_ping_interval",
        "max_server_online_interval",
        "check_message_interval",
        "check_call_interval",
        mode="before",
    )
    @classmethod
    def parse_intervals(cls, v: Any) -> float:
        """Accept numbers of seconds or Go-style duration strings."""
        if v is None:
            return 0.0
        return parse_duration(v)

    @field_validator("host")
    @classmethod
    def strip_host(cls, v: str) -> str:
        return v.strip().rstrip("/")


class ProbeConfig(BaseModel):
    """Contents of the YAML file: where to listen and what to watch."""

    listen: str = Defaults.LISTEN
    servers: List[ServerConfig] = Field(default_factory=list)

    @field_validator("listen", mode="before")
    @classmethod
    def default_listen(cls, v: Any) -> str:
        return v or Defaults.LISTEN

    @property
    def listen_address(self) -> Tuple[str, int]:
        """``listen`` split into (host, port)."""
        host, _, port = self.listen.rpartition(":")
        try:
            return host or "0.0.0.0", int(port)
        except ValueError:
            raise ConfigurationError(
                f"Invalid listen address: {self.listen!r}",
                config_key="listen",
                expected_type=str,
            )


def load_config(path: Path) -> ProbeConfig:
    """
    Read and validate the YAML target file.

    Raises:
        ConfigurationError: missing file, broken YAML, or invalid values
    """
    path = Path(path)
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(
            f"Cannot read config {path}: {e}", config_key="config_path", cause=e
        )

    try:
        data = yaml.safe_load(raw) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}", cause=e)

    if not isinstance(data, dict):
        raise ConfigurationError(
            f"Config {path} must be a mapping", expected_type=dict
        )

    try:
        return ProbeConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid config {path}: {e}", cause=e)


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    This function is cached to ensure a single settings instance
    is used throughout the application lifecycle.
    """
    return Settings()
