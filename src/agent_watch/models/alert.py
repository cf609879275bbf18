"""
Pydantic models for stuck conditions and alerts.

This module provides data models for:
- The reason and severity of a stuck episode
- The condition reported by the detector for one evaluation
- The alert owned by the lifecycle manager and the aggregated status view
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from agent_watch.models.base import WireModel


class StuckReason(str, Enum):
    """Why a repository is considered stuck."""

    NO_OUTPUT = "no_output"
    WAITING_INPUT = "waiting_input"
    REPEATED_FAILURES = "repeated_failures"
    QA_GATE_BLOCKED = "qa_gate_blocked"
    TIMEOUT = "timeout"


class AlertSeverity(str, Enum):
    """Alert severity, declared in ascending order."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_ORDER.index(self)

    @classmethod
    def highest(cls, *severities: "AlertSeverity") -> "AlertSeverity":
        return max(severities, key=lambda severity: severity.rank)


_SEVERITY_ORDER = list(AlertSeverity)


SUGGESTED_ACTIONS: dict[StuckReason, str] = {
    StuckReason.NO_OUTPUT: "Check if Claude is waiting for input or encountered an issue",
    StuckReason.WAITING_INPUT: "Review and approve the pending request",
    StuckReason.REPEATED_FAILURES: "Investigate the error logs and fix the underlying issue",
    StuckReason.QA_GATE_BLOCKED: "Review QA gate failures and fix code quality issues",
    StuckReason.TIMEOUT: "Consider breaking the task into smaller steps",
}


def describe_reason(
    reason: StuckReason,
    failure_count: int | None = None,
    blocked_gate_name: str | None = None,
) -> str:
    """Human-readable description of a stuck reason."""
    if reason == StuckReason.NO_OUTPUT:
        return "No output received for an extended period"
    if reason == StuckReason.WAITING_INPUT:
        return "Waiting for your input or approval"
    if reason == StuckReason.REPEATED_FAILURES:
        return f"Failed {failure_count or 0} times consecutively"
    if reason == StuckReason.QA_GATE_BLOCKED:
        if blocked_gate_name:
            return f"Blocked by QA gate: {blocked_gate_name}"
        return "Blocked by QA gate check"
    if reason == StuckReason.TIMEOUT:
        return "Task execution timed out"
    raise ValueError(f"Unhandled stuck reason: {reason!r}")


def format_stuck_duration(seconds: int) -> str:
    """Format a duration the way the dashboard shows it (45s, 3m 5s, 1h 2m)."""
    seconds = max(int(seconds), 0)
    if seconds < 60:
        return f"{seconds}s"
    if seconds < 3600:
        return f"{seconds // 60}m {seconds % 60}s"
    return f"{seconds // 3600}h {(seconds % 3600) // 60}m"


class StuckCondition(BaseModel):
    """Result of one detector evaluation that found a repository stuck."""

    model_config = ConfigDict(frozen=True)

    reason: StuckReason
    severity: AlertSeverity
    elapsed_seconds: int = Field(..., ge=0, description="Seconds since the condition began")
    threshold_seconds: float = Field(..., gt=0, description="Effective threshold after sensitivity")
    evaluated_at: datetime
    repository_id: str
    repository_name: str = ""
    session_id: str | None = None
    task_id: str | None = None
    failure_count: int | None = None
    blocked_gate_name: str | None = None
    last_output_at: datetime | None = None


class StuckAlert(WireModel):
    """
    Active alert for one stuck episode of a repository.

    The id stays stable for the whole episode. Duration is split into the
    authoritative value written on reconciliation and a local display
    offset advanced between authoritative updates.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    repository_id: str
    repository_name: str = ""
    session_id: str | None = None
    task_id: str | None = None
    reason: StuckReason
    severity: AlertSeverity
    description: str
    suggested_action: str
    stuck_duration_seconds: int = Field(default=0, ge=0)
    display_offset_seconds: int = Field(default=0, ge=0)
    acknowledged: bool = False
    created_at: datetime
    last_escalated_at: datetime | None = None
    last_output_at: datetime | None = None
    failure_count: int | None = None
    blocked_gate_name: str | None = None

    @property
    def displayed_duration_seconds(self) -> int:
        return self.stuck_duration_seconds + self.display_offset_seconds


def alert_sort_key(alert: StuckAlert) -> tuple[bool, int, int]:
    """Unacknowledged first, then descending severity, then descending duration."""
    return (alert.acknowledged, -alert.severity.rank, -alert.displayed_duration_seconds)


class StuckStatus(WireModel):
    """Aggregated stuck status across all monitored repositories."""

    total_stuck_count: int = Field(default=0, ge=0, description="Unacknowledged alerts")
    waiting_input_count: int = Field(default=0, ge=0)
    failed_count: int = Field(default=0, ge=0)
    qa_blocked_count: int = Field(default=0, ge=0)
    highest_severity: AlertSeverity | None = Field(
        default=None,
        description="Highest severity among unacknowledged alerts",
    )
    alerts: list[StuckAlert] = Field(default_factory=list)
    last_updated: datetime
