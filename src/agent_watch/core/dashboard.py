"""
Per-session wiring of the reconciliation engine.

A DashboardSession owns one state store, alert manager, optimistic tracker,
stream client and mutation client. Stream events flow through
store -> detector -> alert manager synchronously; user intents are shown
optimistically and reconciled against the mutation API's answer.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from agent_watch.config import Config, TimerSettings
from agent_watch.core.alerts import AlertLifecycleManager, ReconcileResult, build_stuck_status
from agent_watch.core.mutations import MutationClient, MutationRejected
from agent_watch.core.optimistic import OptimisticUpdateTracker
from agent_watch.core.repo_state import RepoStateStore
from agent_watch.core.stream import BackoffPolicy, EventStreamClient, StreamSubscription, TransportError
from agent_watch.core.stuck_detector import evaluate
from agent_watch.models.alert import StuckStatus
from agent_watch.models.base import utc_now
from agent_watch.models.detection import (
    DEFAULT_STUCK_CONFIG,
    ConfigValidationError,
    StuckDetectionConfig,
    validate_config,
)
from agent_watch.models.events import ConnectionState, ConnectionStatus, StreamEvent
from agent_watch.models.pending import EntityType, OptimisticState, PendingOperation
from agent_watch.models.session import (
    ClaudeStatus,
    RepoSessionState,
    SessionStatus,
    derive_claude_status,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IntentResult:
    """Outcome of a pause, resume or acknowledge intent."""

    ok: bool
    operation_id: str | None = None
    error: Exception | None = None


@dataclass(frozen=True)
class ConfigResult:
    """Outcome of a configuration change; ``config`` is the active configuration afterwards."""

    ok: bool
    config: StuckDetectionConfig
    error: Exception | None = None


class DashboardSession:
    """Reconciliation engine for one dashboard session."""

    def __init__(
        self,
        config: StuckDetectionConfig | None = None,
        stream: EventStreamClient | None = None,
        mutations: MutationClient | None = None,
        known_repositories: Iterable[str] | None = None,
        timers: TimerSettings | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.config = config or DEFAULT_STUCK_CONFIG
        self.stream = stream
        self.mutations = mutations
        self.timers = timers or TimerSettings()
        self.connection = ConnectionState(ConnectionStatus.CONNECTING)

        self.store = RepoStateStore(known_repositories)
        self.alerts = AlertLifecycleManager()
        self.tracker = OptimisticUpdateTracker()

        self._clock = clock
        self._subscription: StreamSubscription | None = None
        self._timers: list[asyncio.Task] = []
        self._connection_listeners: list[Callable[[ConnectionState], None]] = []

        self.store.on_remove(self._forget_repository)

    @classmethod
    def from_settings(cls, settings: Config, **kwargs: Any) -> "DashboardSession":
        """Build a session with stream and mutation clients for the configured backend."""
        stream_settings = settings.stream
        stream = EventStreamClient(
            stream_settings.stream_url,
            backoff=BackoffPolicy(
                stream_settings.reconnect_base_seconds,
                stream_settings.reconnect_cap_seconds,
            ),
            timeout=stream_settings.request_timeout_seconds,
        )
        mutations = MutationClient(
            stream_settings.base_url,
            timeout=stream_settings.request_timeout_seconds,
        )
        return cls(
            config=settings.detection,
            stream=stream,
            mutations=mutations,
            timers=settings.timers,
            **kwargs,
        )

    # Inbound events

    def handle_event(self, event: StreamEvent) -> RepoSessionState | None:
        """
        Apply a stream event and reconcile the repository's alert at the event's time.

        Returns:
            The updated state, or None if the event was dropped
        """
        state = self.store.apply(event)
        if state is None:
            return None
        self._reconcile(state, event.timestamp)
        return state

    def sweep(self, now: datetime | None = None) -> list[ReconcileResult]:
        """
        Re-evaluate every repository at ``now``.

        Time-based conditions only change with the passage of time, so they
        need evaluation without new events.

        Returns:
            Results that changed an alert
        """
        now = now or self._clock()
        results = [self._reconcile(state, now) for state in self.store.get_all()]
        return [result for result in results if result.changed]

    def tick(self) -> None:
        """Advance displayed alert durations; frozen while detection is disabled."""
        if self.config.enabled:
            self.alerts.tick(self.timers.tick_interval_seconds)

    def remove_repository(self, repository_id: str) -> bool:
        """Stop tracking a repository, clearing its state, alert and pending operations."""
        return self.store.remove(repository_id)

    def _reconcile(self, state: RepoSessionState, now: datetime) -> ReconcileResult:
        if not self.config.enabled:
            return ReconcileResult()
        condition = evaluate(state, self.config, now)
        return self.alerts.reconcile(state.repository_id, condition)

    def _forget_repository(self, repository_id: str) -> None:
        self.alerts.remove(repository_id)
        dropped = self.tracker.drop_repository(repository_id)
        logger.info(
            "Stopped tracking %s (%d pending operation(s) dropped)",
            repository_id,
            len(dropped),
        )

    # Read views

    def effective_state(self, repository_id: str) -> RepoSessionState | None:
        """The stored state with any pending session intent overlaid."""
        state = self.store.get(repository_id)
        if state is None:
            return None
        return self._overlay_session_intent(state)

    def effective_states(self) -> list[RepoSessionState]:
        return [self._overlay_session_intent(state) for state in self.store.get_all()]

    def stuck_status(self, now: datetime | None = None) -> StuckStatus:
        """The alert view with pending acknowledgments overlaid."""
        alerts = []
        for alert in self.alerts.alerts():
            pending = self.tracker.get_pending(alert.id)
            if (
                pending is not None
                and pending.entity_type == EntityType.ALERT
                and pending.optimistic_state.acknowledged
            ):
                alert = alert.model_copy(update={"acknowledged": True})
            alerts.append(alert)
        return build_stuck_status(alerts, now or self._clock())

    def _overlay_session_intent(self, state: RepoSessionState) -> RepoSessionState:
        if not state.session_id:
            return state
        pending = self.tracker.get_pending(state.session_id)
        if pending is None or pending.entity_type != EntityType.SESSION:
            return state

        try:
            session_status = SessionStatus(pending.optimistic_state.status)
        except ValueError:
            return state

        if session_status == SessionStatus.PAUSED:
            claude_status = ClaudeStatus.PAUSED
        elif state.claude_status == ClaudeStatus.PAUSED:
            task = state.current_task
            claude_status = derive_claude_status(task.status if task else None, session_status)
        else:
            claude_status = state.claude_status

        return state.model_copy(
            update={"session_status": session_status, "claude_status": claude_status}
        )

    # Outbound intents

    async def pause_session(
        self, repository_id: str, session_id: str | None = None
    ) -> IntentResult:
        """Pause a repository's session, showing it paused until the server answers."""
        return await self._session_intent(
            repository_id,
            session_id,
            SessionStatus.PAUSED,
            "Pausing",
            self._require_mutations().pause_session,
        )

    async def resume_session(
        self, repository_id: str, session_id: str | None = None
    ) -> IntentResult:
        """Resume a repository's session, showing it active until the server answers."""
        return await self._session_intent(
            repository_id,
            session_id,
            SessionStatus.ACTIVE,
            "Resuming",
            self._require_mutations().resume_session,
        )

    async def acknowledge_alert(self, repository_id: str) -> IntentResult:
        """
        Acknowledge a repository's active alert.

        The alert shows as acknowledged immediately; the alert manager only
        records it once the server confirms.
        """
        mutations = self._require_mutations()
        alert = self.alerts.get(repository_id)
        if alert is None:
            return IntentResult(
                ok=False,
                error=MutationRejected("acknowledge", f"no active alert for {repository_id}"),
            )
        if alert.acknowledged:
            return IntentResult(ok=True)

        operation = self.tracker.register_optimistic_update(
            PendingOperation(
                entity_type=EntityType.ALERT,
                entity_id=alert.id,
                optimistic_state=OptimisticState(acknowledged=True, pending_label="Acknowledging"),
                original_state=OptimisticState(acknowledged=False),
                repository_id=repository_id,
                started_at=self._clock(),
            )
        )

        try:
            await mutations.acknowledge_alert(repository_id)
        except (MutationRejected, TransportError) as e:
            logger.warning("Acknowledge failed for %s: %s", repository_id, e)
            self.tracker.rollback_optimistic_update(operation.entity_id, operation.operation_id)
            return IntentResult(ok=False, operation_id=operation.operation_id, error=e)

        self.tracker.confirm_optimistic_update(operation.entity_id, operation.operation_id)
        self.alerts.acknowledge(repository_id, alert_id=alert.id)
        return IntentResult(ok=True, operation_id=operation.operation_id)

    async def _session_intent(
        self,
        repository_id: str,
        session_id: str | None,
        target: SessionStatus,
        label: str,
        send: Callable[[str, str], Awaitable[Any]],
    ) -> IntentResult:
        state = self.store.get(repository_id)
        session_id = session_id or (state.session_id if state else None)
        if not session_id:
            intent = "pause session" if target == SessionStatus.PAUSED else "resume session"
            return IntentResult(
                ok=False,
                error=MutationRejected(intent, f"no session known for {repository_id}"),
            )

        original = None
        if state is not None and state.session_id == session_id and state.session_status:
            original = OptimisticState(status=state.session_status.value)

        operation = self.tracker.register_optimistic_update(
            PendingOperation(
                entity_type=EntityType.SESSION,
                entity_id=session_id,
                optimistic_state=OptimisticState(status=target.value, pending_label=label),
                original_state=original,
                repository_id=repository_id,
                started_at=self._clock(),
            )
        )

        try:
            await send(repository_id, session_id)
        except (MutationRejected, TransportError) as e:
            logger.warning("%s session %s failed: %s", label, session_id, e)
            self.tracker.rollback_optimistic_update(session_id, operation.operation_id)
            return IntentResult(ok=False, operation_id=operation.operation_id, error=e)

        self.tracker.confirm_optimistic_update(session_id, operation.operation_id)
        return IntentResult(ok=True, operation_id=operation.operation_id)

    def _require_mutations(self) -> MutationClient:
        if self.mutations is None:
            raise RuntimeError("This session has no mutation client")
        return self.mutations

    # Configuration

    async def update_config(self, changes: Mapping[str, Any]) -> ConfigResult:
        """
        Validate and apply a configuration change.

        An invalid change is rejected before anything is sent and leaves the
        active configuration untouched. When a mutation client is present the
        server's echo of the configuration becomes the active one.
        """
        try:
            candidate = validate_config(changes, base=self.config)
        except ConfigValidationError as e:
            return ConfigResult(ok=False, config=self.config, error=e)

        if self.mutations is None:
            self._adopt_config(candidate)
            return ConfigResult(ok=True, config=candidate)

        try:
            adopted = await self.mutations.update_stuck_detection_config(candidate)
        except (MutationRejected, TransportError) as e:
            logger.warning("Config update failed: %s", e)
            return ConfigResult(ok=False, config=self.config, error=e)

        self._adopt_config(adopted)
        return ConfigResult(ok=True, config=adopted)

    async def reset_config(self) -> ConfigResult:
        """Restore the default configuration."""
        if self.mutations is None:
            self._adopt_config(DEFAULT_STUCK_CONFIG)
            return ConfigResult(ok=True, config=DEFAULT_STUCK_CONFIG)

        try:
            adopted = await self.mutations.reset_stuck_detection_config()
        except (MutationRejected, TransportError) as e:
            logger.warning("Config reset failed: %s", e)
            return ConfigResult(ok=False, config=self.config, error=e)

        self._adopt_config(adopted)
        return ConfigResult(ok=True, config=adopted)

    def _adopt_config(self, config: StuckDetectionConfig) -> None:
        if config != self.config:
            logger.info(
                "Stuck detection config updated (enabled=%s, sensitivity=%s)",
                config.enabled,
                config.sensitivity_level.value,
            )
        self.config = config

    # Lifecycle

    def on_connection_change(self, listener: Callable[[ConnectionState], None]) -> None:
        self._connection_listeners.append(listener)

    def start(self) -> None:
        """Connect the stream and start the sweep, tick and cleanup timers."""
        if self._timers:
            raise RuntimeError("Session already started")

        if self.stream is not None:
            self._subscription = self.stream.connect(self.handle_event, self._on_connection)

        loop = asyncio.get_running_loop()
        self._timers = [
            loop.create_task(self._every(self.timers.sweep_interval_seconds, self.sweep)),
            loop.create_task(self._every(self.timers.tick_interval_seconds, self.tick)),
            loop.create_task(
                self._every(
                    self.timers.cleanup_interval_seconds,
                    lambda: self.tracker.cleanup_stale_operations(self._clock()),
                )
            ),
        ]

    async def aclose(self) -> None:
        """Cancel every timer and close the network clients."""
        timers, self._timers = self._timers, []
        for task in timers:
            task.cancel()
        await asyncio.gather(*timers, return_exceptions=True)

        if self._subscription is not None:
            await self._subscription.aclose()
            self._subscription = None
        elif self.stream is not None:
            await self.stream.stop()

        if self.mutations is not None:
            await self.mutations.aclose()

    async def __aenter__(self) -> "DashboardSession":
        self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    @property
    def connected(self) -> bool:
        return self.connection.connected

    def _on_connection(self, state: ConnectionState) -> None:
        self.connection = state
        for listener in list(self._connection_listeners):
            listener(state)

    async def _every(self, interval: float, callback: Callable[[], Any]) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                callback()
            except Exception:
                logger.exception("Periodic task %s failed", getattr(callback, "__name__", callback))
