"""
Alert lifecycle management for stuck repositories.

This module provides functionality to:
- Create, escalate and resolve alerts from detector conditions
- Keep at most one active alert per repository
- Track acknowledgment independently of severity and resolution
- Build the aggregated stuck status used by the dashboard
"""

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import Literal
from uuid import uuid4

from agent_watch.models.alert import (
    SUGGESTED_ACTIONS,
    AlertSeverity,
    StuckAlert,
    StuckCondition,
    StuckReason,
    StuckStatus,
    alert_sort_key,
    describe_reason,
)
from agent_watch.models.base import utc_now
from agent_watch.models.detection import StuckDetectionConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AlertChange:
    """A single alert transition delivered to subscribers."""

    kind: Literal["created", "escalated", "resolved"]
    alert: StuckAlert


@dataclass(frozen=True)
class ReconcileResult:
    """Transitions produced by one reconcile call; all None means no change."""

    created: StuckAlert | None = None
    escalated: StuckAlert | None = None
    resolved: StuckAlert | None = None

    @property
    def changed(self) -> bool:
        return any((self.created, self.escalated, self.resolved))

    def changes(self) -> list[AlertChange]:
        """Transitions in the order they happened."""
        result = []
        if self.resolved is not None:
            result.append(AlertChange("resolved", self.resolved))
        if self.created is not None:
            result.append(AlertChange("created", self.created))
        if self.escalated is not None:
            result.append(AlertChange("escalated", self.escalated))
        return result


def generate_alert_id() -> str:
    return f"alert_{uuid4().hex[:12]}"


def build_stuck_status(
    alerts: Iterable[StuckAlert],
    now: datetime | None = None,
) -> StuckStatus:
    """
    Aggregate alerts into the dashboard's stuck status.

    Only unacknowledged alerts count toward the total and the highest
    severity; the per-reason counts include every active alert.
    """
    ordered = sorted(alerts, key=alert_sort_key)
    unacknowledged = [alert for alert in ordered if not alert.acknowledged]

    highest = None
    if unacknowledged:
        highest = AlertSeverity.highest(*(alert.severity for alert in unacknowledged))

    return StuckStatus(
        total_stuck_count=len(unacknowledged),
        waiting_input_count=sum(1 for a in ordered if a.reason == StuckReason.WAITING_INPUT),
        failed_count=sum(1 for a in ordered if a.reason == StuckReason.REPEATED_FAILURES),
        qa_blocked_count=sum(1 for a in ordered if a.reason == StuckReason.QA_GATE_BLOCKED),
        highest_severity=highest,
        alerts=ordered,
        last_updated=now or utc_now(),
    )


def should_notify(change: AlertChange, config: StuckDetectionConfig) -> bool:
    """Whether a transition warrants a toast notification."""
    return config.enable_toast_notifications and change.kind in ("created", "escalated")


def should_play_sound(change: AlertChange, config: StuckDetectionConfig) -> bool:
    """Whether a transition warrants the critical alert sound."""
    return (
        should_notify(change, config)
        and config.enable_sound_alerts
        and change.alert.severity == AlertSeverity.CRITICAL
    )


class AlertLifecycleManager:
    """
    Owns the authoritative set of active stuck alerts.

    Alerts are stored unordered, keyed by repository id. Stored alerts are
    immutable and replaced on every change, so anything returned to callers
    is a snapshot.
    """

    def __init__(self, id_factory: Callable[[], str] = generate_alert_id):
        self._alerts: dict[str, StuckAlert] = {}
        self._listeners: list[Callable[[AlertChange], None]] = []
        self._id_factory = id_factory

    def subscribe(self, listener: Callable[[AlertChange], None]) -> Callable[[], None]:
        """Register a callback for every alert transition. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def get(self, repository_id: str) -> StuckAlert | None:
        """Get the active alert for a repository."""
        return self._alerts.get(repository_id)

    def alerts(self) -> list[StuckAlert]:
        """Get all active alerts (unordered)."""
        return list(self._alerts.values())

    def __len__(self) -> int:
        return len(self._alerts)

    def reconcile(
        self,
        repository_id: str,
        condition: StuckCondition | None,
    ) -> ReconcileResult:
        """
        Bring a repository's alert in line with the latest detector result.

        Args:
            repository_id: Repository that was evaluated
            condition: The detector's condition, or None if not stuck

        Returns:
            ReconcileResult describing what changed
        """
        existing = self._alerts.get(repository_id)

        if condition is None:
            if existing is None:
                return ReconcileResult()
            return self._emit(ReconcileResult(resolved=self._resolve(repository_id)))

        if existing is None:
            return self._emit(ReconcileResult(created=self._create(repository_id, condition)))

        if existing.reason != condition.reason:
            resolved = self._resolve(repository_id)
            created = self._create(repository_id, condition)
            return self._emit(ReconcileResult(resolved=resolved, created=created))

        return self._emit(self._update(existing, condition))

    def acknowledge(self, repository_id: str, alert_id: str | None = None) -> StuckAlert | None:
        """
        Mark the active alert for a repository as acknowledged.

        Idempotent. Has no effect on severity or resolution.

        Args:
            repository_id: Repository whose alert to acknowledge
            alert_id: If given, only acknowledge when the active alert still has this id

        Returns:
            The acknowledged alert, or None if there is no matching active alert
        """
        alert = self._alerts.get(repository_id)
        if alert is None or (alert_id is not None and alert.id != alert_id):
            return None

        if not alert.acknowledged:
            alert = alert.model_copy(update={"acknowledged": True})
            self._alerts[repository_id] = alert
            logger.info("Alert %s for %s acknowledged", alert.id, alert.repository_name)

        return alert

    def tick(self, seconds: int = 1) -> None:
        """Advance the display offset of every active alert between authoritative updates."""
        for repository_id, alert in list(self._alerts.items()):
            self._alerts[repository_id] = alert.model_copy(
                update={"display_offset_seconds": alert.display_offset_seconds + seconds}
            )

    def remove(self, repository_id: str) -> StuckAlert | None:
        """Drop a repository's alert without reporting a resolution."""
        return self._alerts.pop(repository_id, None)

    def clear(self) -> None:
        self._alerts.clear()

    def status(self, now: datetime | None = None) -> StuckStatus:
        """Get the aggregated stuck status."""
        return build_stuck_status(self._alerts.values(), now)

    def _create(self, repository_id: str, condition: StuckCondition) -> StuckAlert:
        alert = StuckAlert(
            id=self._id_factory(),
            repository_id=repository_id,
            repository_name=condition.repository_name,
            session_id=condition.session_id,
            task_id=condition.task_id,
            reason=condition.reason,
            severity=condition.severity,
            description=describe_reason(
                condition.reason, condition.failure_count, condition.blocked_gate_name
            ),
            suggested_action=SUGGESTED_ACTIONS[condition.reason],
            stuck_duration_seconds=condition.elapsed_seconds,
            acknowledged=False,
            created_at=condition.evaluated_at,
            last_output_at=condition.last_output_at,
            failure_count=condition.failure_count,
            blocked_gate_name=condition.blocked_gate_name,
        )
        self._alerts[repository_id] = alert
        logger.info(
            "Stuck detected: %s - %s (%s)",
            alert.repository_name,
            alert.reason.value,
            alert.severity.value,
        )
        return alert

    def _resolve(self, repository_id: str) -> StuckAlert:
        alert = self._alerts.pop(repository_id)
        logger.info("Stuck resolved: %s - %s", alert.repository_name, alert.reason.value)
        return alert

    def _update(self, existing: StuckAlert, condition: StuckCondition) -> ReconcileResult:
        severity = AlertSeverity.highest(existing.severity, condition.severity)
        escalated = severity.rank > existing.severity.rank

        changes = {
            "stuck_duration_seconds": condition.elapsed_seconds,
            "display_offset_seconds": 0,
            "severity": severity,
            "session_id": condition.session_id,
            "task_id": condition.task_id,
            "last_output_at": condition.last_output_at,
            "failure_count": condition.failure_count,
            "blocked_gate_name": condition.blocked_gate_name,
            "description": describe_reason(
                condition.reason, condition.failure_count, condition.blocked_gate_name
            ),
        }
        if escalated:
            changes["last_escalated_at"] = condition.evaluated_at

        alert = existing.model_copy(update=changes)
        self._alerts[existing.repository_id] = alert

        if escalated:
            logger.info(
                "Stuck escalated: %s - %s -> %s",
                alert.repository_name,
                existing.severity.value,
                severity.value,
            )
            return ReconcileResult(escalated=alert)

        return ReconcileResult()

    def _emit(self, result: ReconcileResult) -> ReconcileResult:
        for change in result.changes():
            for listener in list(self._listeners):
                listener(change)
        return result
