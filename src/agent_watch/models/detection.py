"""
Stuck detection configuration.

The configuration is shared with the backend (camelCase on the wire) and
validated before it is applied anywhere; an invalid update never replaces
the active configuration.
"""

from collections.abc import Mapping
from enum import Enum
from typing import Any

from pydantic import ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from agent_watch.models.base import WireModel


class SensitivityLevel(str, Enum):
    """How eagerly repositories are flagged as stuck."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# Threshold multipliers; higher sensitivity means shorter thresholds
SENSITIVITY_MULTIPLIERS: dict[SensitivityLevel, float] = {
    SensitivityLevel.LOW: 1.5,
    SensitivityLevel.MEDIUM: 1.0,
    SensitivityLevel.HIGH: 0.6,
}


class ConfigValidationError(ValueError):
    """Raised when a configuration update is malformed."""

    def __init__(self, message: str, errors: list[dict[str, Any]] | None = None):
        super().__init__(message)
        self.errors = errors or []


class StuckDetectionConfig(WireModel):
    """Settings controlling stuck detection and alert notifications."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    enabled: bool = Field(default=True, description="Enable stuck detection globally")
    sensitivity_level: SensitivityLevel = Field(
        default=SensitivityLevel.MEDIUM,
        description="Scales every threshold before evaluation",
    )
    no_output_threshold_seconds: int = Field(
        default=30,
        ge=10,
        le=600,
        description="Silence before an active session is flagged",
    )
    waiting_input_threshold_seconds: int = Field(
        default=60,
        ge=10,
        le=600,
        description="Time spent waiting for input before alerting",
    )
    repeated_failure_count: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Consecutive task failures before alerting",
    )
    enable_toast_notifications: bool = Field(default=True)
    enable_sound_alerts: bool = Field(
        default=False,
        description="Play a sound for critical alerts",
    )
    excluded_repo_ids: list[str] = Field(
        default_factory=list,
        description="Repositories never evaluated for stuck conditions",
    )

    @property
    def multiplier(self) -> float:
        return SENSITIVITY_MULTIPLIERS[self.sensitivity_level]

    def scaled(self, seconds: float) -> float:
        """Apply the sensitivity multiplier to a base threshold."""
        return seconds * self.multiplier


DEFAULT_STUCK_CONFIG = StuckDetectionConfig()

_FIELD_BY_KEY: dict[str, str] = {
    **{name: name for name in StuckDetectionConfig.model_fields},
    **{to_camel(name): name for name in StuckDetectionConfig.model_fields},
}


def validate_config(
    changes: Mapping[str, Any],
    base: StuckDetectionConfig | None = None,
) -> StuckDetectionConfig:
    """
    Merge changes onto a base configuration and validate the result.

    Args:
        changes: Fields to update, keyed by snake_case or camelCase names
        base: Configuration the changes apply to (defaults if None)

    Returns:
        The validated configuration

    Raises:
        ConfigValidationError: If a key is unknown or a value out of range
    """
    merged: dict[str, Any] = (base or DEFAULT_STUCK_CONFIG).model_dump()

    unknown = sorted(key for key in changes if key not in _FIELD_BY_KEY)
    if unknown:
        raise ConfigValidationError(f"Unknown configuration keys: {', '.join(unknown)}")

    for key, value in changes.items():
        merged[_FIELD_BY_KEY[key]] = value

    try:
        return StuckDetectionConfig.model_validate(merged)
    except ValidationError as e:
        raise ConfigValidationError(f"Invalid configuration: {e}", e.errors()) from e
