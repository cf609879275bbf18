"""
Pydantic models for Agent Watch.

This package contains data models for:
- Repository session state and the inbound event stream
- Stuck conditions, alerts and the aggregated stuck status
- Stuck detection configuration
- Optimistic operations awaiting confirmation
"""

from agent_watch.models.alert import (
    AlertSeverity,
    StuckAlert,
    StuckCondition,
    StuckReason,
    StuckStatus,
)
from agent_watch.models.detection import (
    ConfigValidationError,
    SensitivityLevel,
    StuckDetectionConfig,
    validate_config,
)
from agent_watch.models.events import (
    ConnectionState,
    ConnectionStatus,
    RepoStateEvent,
    StreamEvent,
    StreamEventType,
    StuckNoticeEvent,
    TaskOutputEvent,
    TaskUpdateEvent,
    parse_event,
)
from agent_watch.models.pending import EntityType, OptimisticState, PendingOperation
from agent_watch.models.session import (
    ClaudeStatus,
    CurrentTask,
    RepoSessionState,
    SessionStatus,
)

__all__ = [
    "AlertSeverity",
    "StuckAlert",
    "StuckCondition",
    "StuckReason",
    "StuckStatus",
    "ConfigValidationError",
    "SensitivityLevel",
    "StuckDetectionConfig",
    "validate_config",
    "ConnectionState",
    "ConnectionStatus",
    "RepoStateEvent",
    "StreamEvent",
    "StreamEventType",
    "StuckNoticeEvent",
    "TaskOutputEvent",
    "TaskUpdateEvent",
    "parse_event",
    "EntityType",
    "OptimisticState",
    "PendingOperation",
    "ClaudeStatus",
    "CurrentTask",
    "RepoSessionState",
    "SessionStatus",
]
