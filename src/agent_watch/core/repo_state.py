"""
Repository session state store.

This module provides functionality to:
- Apply stream events to produce the next state of each repository
- Drop events older than a repository's last recorded activity
- Notify subscribers of state changes and removals
"""

import logging
from collections.abc import Callable, Iterable
from datetime import datetime
from typing import Any

from agent_watch.models.events import (
    RepoStateEvent,
    StreamEvent,
    StuckNoticeEvent,
    TaskOutputEvent,
    TaskUpdateEvent,
)
from agent_watch.models.session import (
    FAILED_TASK_STATUSES,
    QA_BLOCKED_TASK_STATUS,
    SUCCESS_TASK_STATUSES,
    ClaudeStatus,
    CurrentTask,
    RepoSessionState,
    derive_claude_status,
)

logger = logging.getLogger(__name__)

StateListener = Callable[[RepoSessionState], None]
RemovalListener = Callable[[str], None]


class StaleEventError(Exception):
    """Raised when an event is older than the repository's last activity."""

    def __init__(self, repository_id: str, timestamp: datetime, last_activity: datetime):
        super().__init__(
            f"Dropping stale event for {repository_id}: "
            f"{timestamp.isoformat()} is older than {last_activity.isoformat()}"
        )
        self.repository_id = repository_id
        self.timestamp = timestamp
        self.last_activity = last_activity


class RepoStateStore:
    """
    In-memory map of repository id to current session state.

    The store is last-writer-wins by event timestamp rather than arrival
    order, so late events caused by network reordering are ignored.
    """

    def __init__(self, known_repositories: Iterable[str] | None = None):
        """
        Args:
            known_repositories: If given, only these repositories are tracked and
                events for any other repository are dropped. If None, a new entry
                is created the first time a repository is seen.
        """
        self._states: dict[str, RepoSessionState] = {}
        self._known: set[str] | None = (
            set(known_repositories) if known_repositories is not None else None
        )
        self._listeners: list[StateListener] = []
        self._removal_listeners: list[RemovalListener] = []

    def get(self, repository_id: str) -> RepoSessionState | None:
        """Get the state of a specific repository."""
        return self._states.get(repository_id)

    def get_all(self) -> list[RepoSessionState]:
        """Get the states of all tracked repositories."""
        return list(self._states.values())

    def __len__(self) -> int:
        return len(self._states)

    def __contains__(self, repository_id: object) -> bool:
        return repository_id in self._states

    def track(self, repository_id: str) -> None:
        """Allow events for a repository when the store was built with a known set."""
        if self._known is not None:
            self._known.add(repository_id)

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register a callback for every applied state. Returns an unsubscribe function."""
        self._listeners.append(listener)
        return lambda: self._discard(self._listeners, listener)

    def on_remove(self, listener: RemovalListener) -> Callable[[], None]:
        """Register a callback invoked with the id of every removed repository."""
        self._removal_listeners.append(listener)
        return lambda: self._discard(self._removal_listeners, listener)

    @staticmethod
    def _discard(listeners: list, listener: Any) -> None:
        if listener in listeners:
            listeners.remove(listener)

    def apply(self, event: StreamEvent) -> RepoSessionState | None:
        """
        Apply a stream event to the repository it references.

        Args:
            event: A validated stream event

        Returns:
            The updated state, or None if the event was dropped because it is
            stale or references a repository outside the known set
        """
        if self._known is not None and event.repository_id not in self._known:
            logger.debug("Dropping event for unknown repository %s", event.repository_id)
            return None

        current = self._states.get(event.repository_id)

        try:
            updated = self._reduce(current, event)
        except StaleEventError as e:
            logger.debug("%s", e)
            return None

        self._states[event.repository_id] = updated

        for listener in list(self._listeners):
            listener(updated)

        return updated

    def remove(self, repository_id: str) -> bool:
        """
        Stop tracking a repository.

        The state is deleted before removal listeners run so they never
        observe a half-removed repository.

        Returns:
            True if removed, False if not found
        """
        if self._known is not None:
            self._known.discard(repository_id)

        if repository_id not in self._states:
            return False

        del self._states[repository_id]

        for listener in list(self._removal_listeners):
            listener(repository_id)

        return True

    def clear(self) -> None:
        """Remove every repository, notifying removal listeners for each."""
        for repository_id in list(self._states):
            self.remove(repository_id)

    def _seed(self, event: StreamEvent) -> RepoSessionState:
        return RepoSessionState(
            repository_id=event.repository_id,
            repository_name=event.repository_name or event.repository_id,
            claude_status=ClaudeStatus.IDLE,
            time_elapsed=0,
            status_since=event.timestamp,
        )

    def _reduce(self, current: RepoSessionState | None, event: StreamEvent) -> RepoSessionState:
        state = current or self._seed(event)

        if state.last_activity is not None and event.timestamp < state.last_activity:
            raise StaleEventError(event.repository_id, event.timestamp, state.last_activity)

        changes: dict[str, Any] = {"last_activity": event.timestamp}

        if event.repository_name:
            changes["repository_name"] = event.repository_name
        if event.time_elapsed is not None:
            changes["time_elapsed"] = event.time_elapsed

        if isinstance(event, RepoStateEvent):
            claude_status = self._apply_snapshot(state, event, changes)
        elif isinstance(event, TaskUpdateEvent):
            claude_status = self._apply_task_update(state, event, changes)
        elif isinstance(event, TaskOutputEvent):
            claude_status = ClaudeStatus.WRITING
        elif isinstance(event, StuckNoticeEvent):
            if event.type == "stuck_resolved":
                claude_status = ClaudeStatus.IDLE
            else:
                claude_status = ClaudeStatus.STUCK
        else:
            raise TypeError(f"Unsupported stream event: {type(event).__name__}")

        if event.claude_status is not None:
            claude_status = event.claude_status

        changes["claude_status"] = claude_status
        if claude_status != state.claude_status or state.status_since is None:
            changes["status_since"] = event.timestamp

        return state.model_copy(update=changes)

    def _apply_snapshot(
        self,
        state: RepoSessionState,
        event: RepoStateEvent,
        changes: dict[str, Any],
    ) -> ClaudeStatus:
        changes["session_id"] = event.session_id
        changes["session_status"] = event.session_status
        changes["current_task"] = event.current_task

        if event.current_task is None:
            changes.update(self._clear_task_tracking())
        else:
            changes.update(
                self._track_task(state, event.current_task, event.timestamp, event.blocked_qa_gate)
            )

        task_status = event.current_task.status if event.current_task else None
        return derive_claude_status(task_status, event.session_status)

    def _apply_task_update(
        self,
        state: RepoSessionState,
        event: TaskUpdateEvent,
        changes: dict[str, Any],
    ) -> ClaudeStatus:
        previous = state.current_task
        prompt = event.prompt
        if prompt is None:
            prompt = previous.prompt if previous is not None and previous.id == event.task_id else ""

        task = CurrentTask(
            id=event.task_id,
            prompt=prompt,
            status=event.status,
            progress=event.progress,
        )
        changes["current_task"] = task
        if event.session_id is not None:
            changes["session_id"] = event.session_id
        if event.session_status is not None:
            changes["session_status"] = event.session_status

        session_status = event.session_status
        if session_status is None and event.session_id in (None, state.session_id):
            session_status = state.session_status

        changes.update(self._track_task(state, task, event.timestamp, event.blocked_qa_gate))
        return derive_claude_status(task.status, session_status)

    @staticmethod
    def _clear_task_tracking() -> dict[str, Any]:
        return {"qa_blocked_since": None, "blocked_qa_gate": None}

    @staticmethod
    def _track_task(
        state: RepoSessionState,
        task: CurrentTask,
        timestamp: datetime,
        blocked_gate: str | None,
    ) -> dict[str, Any]:
        """Update the failure streak and QA-blocked sub-state for a task report."""
        changes: dict[str, Any] = {}
        previous = state.current_task

        if task.status in FAILED_TASK_STATUSES:
            # The same failure reported twice (e.g. a periodic snapshot) counts once
            already_counted = (
                previous is not None
                and previous.id == task.id
                and previous.status in FAILED_TASK_STATUSES
            )
            if not already_counted:
                changes["consecutive_failures"] = state.consecutive_failures + 1
                if state.consecutive_failures == 0 or state.failure_streak_started_at is None:
                    changes["failure_streak_started_at"] = timestamp
        elif task.status in SUCCESS_TASK_STATUSES:
            changes["consecutive_failures"] = 0
            changes["failure_streak_started_at"] = None

        if task.status == QA_BLOCKED_TASK_STATUS or blocked_gate:
            changes["qa_blocked_since"] = state.qa_blocked_since or timestamp
            changes["blocked_qa_gate"] = blocked_gate or state.blocked_qa_gate
        else:
            changes["qa_blocked_since"] = None
            changes["blocked_qa_gate"] = None

        return changes
