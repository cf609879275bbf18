"""
Pydantic models for optimistic operations awaiting server confirmation.
"""

from datetime import datetime
from enum import Enum
from uuid import uuid4

from pydantic import ConfigDict, Field, field_validator, model_validator

from agent_watch.models.base import WireModel, ensure_utc, utc_now


class EntityType(str, Enum):
    """Kinds of entity an optimistic operation can target."""

    TASK = "task"
    PLAN = "plan"
    SESSION = "session"
    PLAN_TASK = "planTask"
    ALERT = "alert"


_TASK_STATUSES = frozenset(
    {"queued", "running", "waiting_approval", "approved", "rejected", "failed", "cancelled"}
)

ALLOWED_STATUSES: dict[EntityType, frozenset[str]] = {
    EntityType.TASK: _TASK_STATUSES,
    EntityType.PLAN_TASK: _TASK_STATUSES,
    EntityType.PLAN: frozenset(
        {"draft", "ready", "running", "paused", "completed", "failed", "cancelled"}
    ),
    EntityType.SESSION: frozenset(
        {"active", "paused", "idle", "completed", "abandoned", "ended"}
    ),
}


class OptimisticState(WireModel):
    """Display state of an entity; shape depends on the entity type."""

    model_config = ConfigDict(frozen=True)

    status: str | None = None
    acknowledged: bool | None = None
    pending_label: str | None = Field(
        default=None,
        description="Label shown while the operation is in flight",
    )


class PendingOperation(WireModel):
    """A client intent shown optimistically until confirmed or rolled back."""

    model_config = ConfigDict(frozen=True)

    operation_id: str = Field(default_factory=lambda: uuid4().hex)
    entity_type: EntityType
    entity_id: str = Field(..., min_length=1)
    optimistic_state: OptimisticState
    original_state: OptimisticState | None = Field(
        default=None,
        description="Last known-good state before the intent",
    )
    started_at: datetime = Field(default_factory=utc_now)
    repository_id: str | None = Field(
        default=None,
        description="Repository the entity belongs to, for unsubscribe cleanup",
    )
    sequence: int = Field(
        default=0,
        ge=0,
        description="Per-entity intent number assigned by the tracker",
    )

    @field_validator("started_at")
    @classmethod
    def _normalize_started_at(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @model_validator(mode="after")
    def _check_state_shape(self) -> "PendingOperation":
        for state in (self.optimistic_state, self.original_state):
            if state is None:
                continue
            if self.entity_type == EntityType.ALERT:
                if state.acknowledged is None:
                    raise ValueError("alert operations must carry an acknowledged flag")
                continue
            allowed = ALLOWED_STATUSES[self.entity_type]
            if state.status not in allowed:
                raise ValueError(
                    f"status {state.status!r} is not valid for {self.entity_type.value} "
                    f"(expected one of {', '.join(sorted(allowed))})"
                )
        return self

    def age_seconds(self, now: datetime) -> float:
        return (ensure_utc(now) - self.started_at).total_seconds()
