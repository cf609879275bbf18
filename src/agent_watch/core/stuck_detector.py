"""Stuck detection for monitored agent sessions.

Evaluation is pure: it reads a repository state snapshot and the detection
configuration and reports at most one stuck condition. Rules are checked in
a fixed precedence and the first match wins:

1. repeated_failures - the failure streak reached the configured count
2. qa_gate_blocked   - the current task has been QA-blocked past a fixed threshold
3. waiting_input     - the agent has been waiting for input past the threshold
4. no_output/timeout - an active session produced nothing past the threshold

Severity is a step function of how long the condition has held relative to
its threshold: low at 1x, medium at 2x, high at 4x and critical at 8x.
"""

from datetime import datetime

from agent_watch.models.alert import AlertSeverity, StuckCondition, StuckReason
from agent_watch.models.base import ensure_utc
from agent_watch.models.detection import StuckDetectionConfig
from agent_watch.models.session import ClaudeStatus, RepoSessionState

# Base thresholds that are not user configurable (seconds, before sensitivity)
QA_GATE_BLOCKED_THRESHOLD_SECONDS = 60
SESSION_TIMEOUT_SECONDS = 30 * 60

TIMEOUT_TASK_STATUS = "timeout"

# Multiples of the threshold at which each severity starts, highest first
SEVERITY_STEPS: tuple[tuple[int, AlertSeverity], ...] = (
    (8, AlertSeverity.CRITICAL),
    (4, AlertSeverity.HIGH),
    (2, AlertSeverity.MEDIUM),
    (1, AlertSeverity.LOW),
)

# Agent statuses during which silence means no output is being produced
_PRODUCING_STATUSES = frozenset({ClaudeStatus.THINKING, ClaudeStatus.WRITING})


def severity_for(elapsed_seconds: float, threshold_seconds: float) -> AlertSeverity | None:
    """
    Map elapsed time to a severity step.

    Returns:
        The severity, or None if the threshold has not been reached
    """
    if threshold_seconds <= 0:
        raise ValueError("threshold_seconds must be positive")

    ratio = elapsed_seconds / threshold_seconds
    for multiple, severity in SEVERITY_STEPS:
        if ratio >= multiple:
            return severity
    return None


def _seconds_between(start: datetime, now: datetime) -> float:
    return max((ensure_utc(now) - start).total_seconds(), 0.0)


def _condition(
    state: RepoSessionState,
    reason: StuckReason,
    severity: AlertSeverity,
    elapsed: float,
    threshold: float,
    now: datetime,
) -> StuckCondition:
    task = state.current_task
    return StuckCondition(
        reason=reason,
        severity=severity,
        elapsed_seconds=int(elapsed),
        threshold_seconds=threshold,
        evaluated_at=ensure_utc(now),
        repository_id=state.repository_id,
        repository_name=state.repository_name,
        session_id=state.session_id,
        task_id=task.id if task else None,
        failure_count=(
            state.consecutive_failures if reason == StuckReason.REPEATED_FAILURES else None
        ),
        blocked_gate_name=(
            state.blocked_qa_gate if reason == StuckReason.QA_GATE_BLOCKED else None
        ),
        last_output_at=state.last_activity,
    )


def _check_repeated_failures(
    state: RepoSessionState, config: StuckDetectionConfig, now: datetime
) -> StuckCondition | None:
    count = config.repeated_failure_count
    if state.consecutive_failures < count:
        return None

    threshold = config.scaled(config.no_output_threshold_seconds)
    started = state.failure_streak_started_at or state.last_activity
    elapsed = _seconds_between(started, now) if started else 0.0

    if state.consecutive_failures >= 2 * count:
        severity = AlertSeverity.CRITICAL
    else:
        severity = severity_for(elapsed, threshold) or AlertSeverity.LOW

    return _condition(state, StuckReason.REPEATED_FAILURES, severity, elapsed, threshold, now)


def _check_qa_gate(
    state: RepoSessionState, config: StuckDetectionConfig, now: datetime
) -> StuckCondition | None:
    if state.qa_blocked_since is None:
        return None

    threshold = config.scaled(QA_GATE_BLOCKED_THRESHOLD_SECONDS)
    elapsed = _seconds_between(state.qa_blocked_since, now)
    severity = severity_for(elapsed, threshold)
    if severity is None:
        return None

    return _condition(state, StuckReason.QA_GATE_BLOCKED, severity, elapsed, threshold, now)


def _check_waiting_input(
    state: RepoSessionState, config: StuckDetectionConfig, now: datetime
) -> StuckCondition | None:
    if state.claude_status != ClaudeStatus.WAITING_INPUT or state.status_since is None:
        return None

    threshold = config.scaled(config.waiting_input_threshold_seconds)
    elapsed = _seconds_between(state.status_since, now)
    severity = severity_for(elapsed, threshold)
    if severity is None:
        return None

    return _condition(state, StuckReason.WAITING_INPUT, severity, elapsed, threshold, now)


def _check_silence(
    state: RepoSessionState, config: StuckDetectionConfig, now: datetime
) -> StuckCondition | None:
    if not state.session_active or state.last_activity is None:
        return None
    if state.claude_status not in _PRODUCING_STATUSES:
        return None

    threshold = config.scaled(config.no_output_threshold_seconds)
    elapsed = _seconds_between(state.last_activity, now)
    severity = severity_for(elapsed, threshold)
    if severity is None:
        return None

    session_age = state.time_elapsed / 1000 + elapsed
    task = state.current_task
    timed_out = (
        session_age >= config.scaled(SESSION_TIMEOUT_SECONDS)
        or (task is not None and task.status == TIMEOUT_TASK_STATUS)
    )
    reason = StuckReason.TIMEOUT if timed_out else StuckReason.NO_OUTPUT

    return _condition(state, reason, severity, elapsed, threshold, now)


_RULES = (
    _check_repeated_failures,
    _check_qa_gate,
    _check_waiting_input,
    _check_silence,
)


def evaluate(
    state: RepoSessionState,
    config: StuckDetectionConfig,
    now: datetime,
) -> StuckCondition | None:
    """
    Check whether a repository is stuck.

    Args:
        state: Snapshot of the repository's session state (never modified)
        config: Active detection configuration
        now: Evaluation instant; elapsed times are measured up to this point

    Returns:
        The first matching StuckCondition, or None if the repository is healthy,
        detection is disabled, or the repository is excluded
    """
    if not config.enabled:
        return None
    if state.repository_id in config.excluded_repo_ids:
        return None
    if not state.session_id:
        return None

    for rule in _RULES:
        condition = rule(state, config, now)
        if condition is not None:
            return condition

    return None
