"""
Configuration management for agent-watch.

Loads settings from TOML files in the following priority:
1. Path specified via --config flag
2. .agentwatchrc in current directory
3. .agentwatchrc.toml in current directory
4. ~/.config/agent-watch/config.toml
5. ~/.agentwatchrc
"""

import logging
from pathlib import Path
from typing import Optional

import toml
from pydantic import BaseModel, Field, ValidationError, field_validator

from agent_watch.models.detection import StuckDetectionConfig
from agent_watch.utils.io import atomic_write_text, read_text_locked

logger = logging.getLogger(__name__)

LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")


class StreamSettings(BaseModel):
    """Where the dashboard backend lives and how to reach it."""

    base_url: str = Field(
        default="http://localhost:3000",
        description="Base URL of the dashboard backend",
    )
    stream_path: str = Field(
        default="/api/multi-repo-stream",
        description="Path of the server-sent events endpoint",
    )
    reconnect_base_seconds: float = Field(
        default=1.0,
        gt=0,
        description="First reconnect backoff ceiling",
    )
    reconnect_cap_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Largest reconnect backoff ceiling",
    )
    request_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Timeout for mutation requests and stream connects",
    )

    @property
    def stream_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/{self.stream_path.lstrip('/')}"


class TimerSettings(BaseModel):
    """Intervals of the periodic tasks run by a dashboard session."""

    sweep_interval_seconds: float = Field(
        default=5.0,
        gt=0,
        description="How often every repository is re-evaluated for stuck conditions",
    )
    tick_interval_seconds: int = Field(
        default=1,
        ge=1,
        description="How often displayed alert durations advance",
    )
    cleanup_interval_seconds: float = Field(
        default=5.0,
        gt=0,
        description="How often stale optimistic operations are expired",
    )


class LoggingSettings(BaseModel):
    """Logging configuration."""

    level: str = Field(default="WARNING", description="Root log level")

    @field_validator("level")
    @classmethod
    def _normalize_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in LOG_LEVELS:
            raise ValueError(f"level must be one of {', '.join(LOG_LEVELS)}")
        return normalized


class Config(BaseModel):
    """Main configuration model for agent-watch."""

    stream: StreamSettings = Field(default_factory=StreamSettings)
    detection: StuckDetectionConfig = Field(default_factory=StuckDetectionConfig)
    timers: TimerSettings = Field(default_factory=TimerSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


def get_search_paths(config_path: Optional[str] = None) -> list[Path]:
    """Candidate settings files, highest priority first."""
    paths = [
        Path.cwd() / ".agentwatchrc",
        Path.cwd() / ".agentwatchrc.toml",
        Path.home() / ".config" / "agent-watch" / "config.toml",
        Path.home() / ".agentwatchrc",
    ]
    if config_path:
        paths.insert(0, Path(config_path))
    return paths


def find_config_path(config_path: Optional[str] = None) -> Optional[Path]:
    """Return the first existing settings file, if any."""
    for path in get_search_paths(config_path):
        if path.is_file():
            return path
    return None


def load_config(config_path: Optional[str] = None) -> Config:
    """
    Load configuration from file or use defaults.

    Files that cannot be parsed or validated are skipped with a warning.

    Args:
        config_path: Optional explicit path to config file.

    Returns:
        Config instance with loaded or default values.
    """
    for path in get_search_paths(config_path):
        if not path.is_file():
            continue
        try:
            data = toml.loads(read_text_locked(path))
            return Config.model_validate(data)
        except (OSError, toml.TomlDecodeError, ValidationError) as e:
            logger.warning("Ignoring invalid config file %s: %s", path, e)
            continue

    return Config()


def save_config(config: Config, path: Path) -> None:
    """
    Save configuration to a TOML file, readable only by the owner.

    Args:
        config: Configuration to save.
        path: Path to save the config file.
    """
    atomic_write_text(path, toml.dumps(config.model_dump(mode="json")))


def get_default_config_path() -> Path:
    """Get the default configuration file path."""
    return Path.cwd() / ".agentwatchrc"
