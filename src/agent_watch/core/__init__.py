"""Core reconciliation engine for agent-watch."""

from agent_watch.core.alerts import (
    AlertChange,
    AlertLifecycleManager,
    ReconcileResult,
    build_stuck_status,
    should_notify,
    should_play_sound,
)
from agent_watch.core.dashboard import ConfigResult, DashboardSession, IntentResult
from agent_watch.core.mutations import MutationClient, MutationRejected
from agent_watch.core.optimistic import OptimisticUpdateTracker
from agent_watch.core.repo_state import RepoStateStore, StaleEventError
from agent_watch.core.stream import BackoffPolicy, EventStreamClient, TransportError
from agent_watch.core.stuck_detector import evaluate, severity_for

__all__ = [
    "AlertChange",
    "AlertLifecycleManager",
    "ReconcileResult",
    "build_stuck_status",
    "should_notify",
    "should_play_sound",
    "ConfigResult",
    "DashboardSession",
    "IntentResult",
    "MutationClient",
    "MutationRejected",
    "OptimisticUpdateTracker",
    "RepoStateStore",
    "StaleEventError",
    "BackoffPolicy",
    "EventStreamClient",
    "TransportError",
    "evaluate",
    "severity_for",
]
