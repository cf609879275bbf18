"""
Pydantic models for the inbound dashboard event stream.

Every frame is a JSON object tagged by a ``type`` discriminator. The
models here cover the event types that affect repository state plus the
connection status reported by the stream client.
"""

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import Field, TypeAdapter, field_validator

from agent_watch.models.alert import StuckReason
from agent_watch.models.base import WireModel, ensure_utc
from agent_watch.models.session import ClaudeStatus, CurrentTask, SessionStatus


class StreamEventType(str, Enum):
    """Event types that reach the repository state store."""

    REPO_STATE = "repo_state"
    TASK_OUTPUT = "task_output"
    TASK_UPDATE = "task_update"
    STUCK_DETECTED = "stuck_detected"
    STUCK_RESOLVED = "stuck_resolved"
    STUCK_ESCALATED = "stuck_escalated"


# Frames handled by the transport layer and never forwarded to the store
CONTROL_FRAME_TYPES = frozenset({"connected", "keep_alive"})


class ConnectionStatus(str, Enum):
    """Status of the inbound stream connection."""

    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


@dataclass(frozen=True)
class ConnectionState:
    """A connection status transition, with the failure reason for errors."""

    status: ConnectionStatus
    reason: str | None = None
    attempt: int = 0

    @property
    def connected(self) -> bool:
        return self.status == ConnectionStatus.CONNECTED


class _EventBase(WireModel):
    repository_id: str = Field(..., min_length=1)
    timestamp: datetime
    repository_name: str | None = None
    claude_status: ClaudeStatus | None = Field(
        default=None,
        description="Explicit agent status; overrides the per-type default",
    )
    time_elapsed: int | None = Field(default=None, ge=0)

    @field_validator("timestamp")
    @classmethod
    def _normalize_timestamp(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @property
    def kind(self) -> StreamEventType:
        return StreamEventType(self.type)


class RepoStateEvent(_EventBase):
    """Full snapshot of a repository's session state."""

    type: Literal["repo_state"] = "repo_state"
    session_id: str | None = None
    session_status: SessionStatus | None = None
    current_task: CurrentTask | None = None
    blocked_qa_gate: str | None = None


class TaskUpdateEvent(_EventBase):
    """Status change of the repository's current task."""

    type: Literal["task_update"] = "task_update"
    task_id: str
    status: str
    session_id: str | None = None
    prompt: str | None = None
    progress: float | None = None
    session_status: SessionStatus | None = None
    blocked_qa_gate: str | None = None


class TaskOutputEvent(_EventBase):
    """Output produced by the agent for the current task."""

    type: Literal["task_output"] = "task_output"
    task_id: str | None = None
    output: str = ""


class StuckNoticeEvent(_EventBase):
    """Server-side notice that a repository became stuck, escalated or recovered."""

    type: Literal["stuck_detected", "stuck_resolved", "stuck_escalated"]
    reason: StuckReason | None = None
    alert: dict[str, Any] | None = None


StreamEvent = Annotated[
    Union[RepoStateEvent, TaskUpdateEvent, TaskOutputEvent, StuckNoticeEvent],
    Field(discriminator="type"),
]

_EVENT_ADAPTER: TypeAdapter[StreamEvent] = TypeAdapter(StreamEvent)


def parse_event(payload: Mapping[str, Any]) -> StreamEvent:
    """
    Validate a decoded stream frame into a typed event.

    Raises:
        pydantic.ValidationError: If the frame is malformed or its type unknown
    """
    return _EVENT_ADAPTER.validate_python(dict(payload))
