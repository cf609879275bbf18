"""
Pydantic models for per-repository agent session state.

This module provides data models for:
- The agent activity status shown for each repository
- The session and task an agent is currently working on
- The mapping from backend task statuses to agent activity
"""

from datetime import datetime
from enum import Enum

from pydantic import ConfigDict, Field, computed_field, field_validator

from agent_watch.models.base import WireModel, ensure_utc


class ClaudeStatus(str, Enum):
    """What the agent in a repository is doing right now."""

    IDLE = "idle"
    THINKING = "thinking"
    WRITING = "writing"
    WAITING_INPUT = "waiting_input"
    STUCK = "stuck"
    PAUSED = "paused"


class SessionStatus(str, Enum):
    """Lifecycle status of an agent session."""

    ACTIVE = "active"
    PAUSED = "paused"
    IDLE = "idle"
    COMPLETED = "completed"
    ABANDONED = "abandoned"


THINKING_TASK_STATUSES = frozenset({"running", "pre_flight", "qa_running"})
WRITING_TASK_STATUSES = frozenset({"waiting_qa", "approved"})
WAITING_TASK_STATUSES = frozenset({"waiting_approval", "waiting_input"})
FAILED_TASK_STATUSES = frozenset({"failed", "qa_failed", "error"})
SUCCESS_TASK_STATUSES = frozenset({"completed", "approved"})
QA_BLOCKED_TASK_STATUS = "qa_failed"


def derive_claude_status(
    task_status: str | None,
    session_status: SessionStatus | None = None,
) -> ClaudeStatus:
    """
    Map a backend task status to the agent activity shown on the dashboard.

    Args:
        task_status: Status of the repository's current task, if any
        session_status: Status of the session owning the task

    Returns:
        The ClaudeStatus for display
    """
    if session_status == SessionStatus.PAUSED:
        return ClaudeStatus.PAUSED
    if not task_status:
        return ClaudeStatus.IDLE
    if task_status in THINKING_TASK_STATUSES:
        return ClaudeStatus.THINKING
    if task_status in WRITING_TASK_STATUSES:
        return ClaudeStatus.WRITING
    if task_status in WAITING_TASK_STATUSES:
        return ClaudeStatus.WAITING_INPUT
    if task_status in FAILED_TASK_STATUSES:
        return ClaudeStatus.STUCK
    return ClaudeStatus.IDLE


class CurrentTask(WireModel):
    """The task an agent session is working on."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Task identifier")
    prompt: str = Field(default="", description="Task prompt, truncated for display")
    status: str = Field(..., description="Backend task status")
    progress: float | None = Field(default=None, description="Completion ratio if reported")


class RepoSessionState(WireModel):
    """
    Current session state of one monitored repository.

    Instances are immutable; the store replaces them wholesale on every
    applied event so snapshots handed out stay consistent.
    """

    model_config = ConfigDict(frozen=True)

    repository_id: str = Field(..., description="Unique repository key")
    repository_name: str = Field(default="", description="Display name")
    claude_status: ClaudeStatus = Field(default=ClaudeStatus.IDLE)
    session_id: str | None = Field(default=None, description="Active session, if any")
    session_status: SessionStatus | None = Field(default=None)
    current_task: CurrentTask | None = Field(default=None)
    time_elapsed: int = Field(
        default=0,
        ge=0,
        description="Milliseconds since session start, as reported by the server",
    )
    last_activity: datetime | None = Field(
        default=None,
        description="Timestamp of the most recent event applied to this repository",
    )

    # Bookkeeping consumed by the stuck detector
    status_since: datetime | None = Field(
        default=None,
        description="When the current claude_status began",
    )
    consecutive_failures: int = Field(default=0, ge=0)
    failure_streak_started_at: datetime | None = Field(default=None)
    qa_blocked_since: datetime | None = Field(default=None)
    blocked_qa_gate: str | None = Field(default=None)

    @field_validator(
        "last_activity",
        "status_since",
        "failure_streak_started_at",
        "qa_blocked_since",
    )
    @classmethod
    def _normalize_timestamps(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value) if value is not None else None

    @computed_field
    @property
    def needs_attention(self) -> bool:
        return self.claude_status in (ClaudeStatus.STUCK, ClaudeStatus.WAITING_INPUT)

    @property
    def session_active(self) -> bool:
        return self.session_id is not None and self.session_status == SessionStatus.ACTIVE

    @property
    def is_qa_blocked(self) -> bool:
        return self.qa_blocked_since is not None
