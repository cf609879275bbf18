"""
Integration tests for the DashboardSession.

Tests cover:
- Event -> detection -> alert reconciliation, including time-based sweeps
- Optimistic pause/resume/acknowledge against a controllable backend
- Configuration changes, disabled detection and repository removal
- Timer lifecycle
"""

import asyncio

import pytest

from agent_watch.config import Config, TimerSettings
from agent_watch.core.dashboard import DashboardSession
from agent_watch.core.mutations import MutationRejected
from agent_watch.core.stream import TransportError, expand_frame
from agent_watch.models.alert import AlertSeverity, StuckReason
from agent_watch.models.detection import ConfigValidationError, StuckDetectionConfig
from agent_watch.models.events import parse_event
from agent_watch.models.pending import EntityType, OptimisticState, PendingOperation
from agent_watch.models.session import ClaudeStatus, SessionStatus


class FakeMutations:
    """Backend stand-in whose answers are released explicitly by the test."""

    def __init__(self):
        self.calls: list[tuple] = []
        self.gates: dict[str, asyncio.Event] = {}
        self.errors: dict[str, Exception] = {}
        self.config_echo: StuckDetectionConfig | None = None
        self.closed = False

    def release(self, action: str) -> None:
        self.gates.setdefault(action, asyncio.Event()).set()

    async def _answer(self, action: str, *args):
        self.calls.append((action, *args))
        await self.gates.setdefault(action, asyncio.Event()).wait()
        if action in self.errors:
            raise self.errors[action]
        return {"success": True}

    async def pause_session(self, repository_id, session_id):
        return await self._answer("pause", repository_id, session_id)

    async def resume_session(self, repository_id, session_id):
        return await self._answer("resume", repository_id, session_id)

    async def acknowledge_alert(self, repository_id):
        return await self._answer("acknowledge", repository_id)

    async def update_stuck_detection_config(self, config):
        self.calls.append(("update_config", config))
        if "update_config" in self.errors:
            raise self.errors["update_config"]
        return self.config_echo or config

    async def reset_stuck_detection_config(self):
        self.calls.append(("reset_config",))
        return StuckDetectionConfig()

    async def aclose(self):
        self.closed = True


@pytest.fixture
def session(detection_config) -> DashboardSession:
    return DashboardSession(config=detection_config)


@pytest.fixture
def start_active(make_event):
    """Apply a snapshot of an active session working on a task."""

    def _start(session: DashboardSession, seconds: float = 0, repository_id: str = "repo-1"):
        return session.handle_event(
            make_event(
                "repo_state",
                seconds,
                repository_id=repository_id,
                repositoryName="web-app",
                sessionId=f"s-{repository_id}",
                sessionStatus="active",
                currentTask={"id": "t-1", "prompt": "Add login", "status": "running"},
                timeElapsed=0,
            )
        )

    return _start


class TestDetectionFlow:
    """Tests for the event -> detector -> alert pipeline."""

    def test_no_output_creates_then_escalates(self, session, start_active, at):
        start_active(session)

        created = session.sweep(at(61))
        escalated = session.sweep(at(240))

        assert created[0].created.reason == StuckReason.NO_OUTPUT
        assert created[0].created.severity == AlertSeverity.LOW
        assert escalated[0].escalated.severity == AlertSeverity.HIGH
        assert escalated[0].escalated.id == created[0].created.id

    def test_quiet_sweep_returns_nothing(self, session, start_active, at):
        start_active(session)

        assert session.sweep(at(30)) == []

    def test_activity_resolves_no_output(self, session, start_active, make_event, at):
        start_active(session)
        session.sweep(at(61))

        session.handle_event(make_event("task_output", 62, taskId="t-1", output="..."))

        assert session.alerts.get("repo-1") is None

    def test_repeated_failures_then_success(self, session, make_event):
        for i in range(3):
            session.handle_event(
                make_event(
                    "task_update",
                    i * 10,
                    sessionId="s-1",
                    sessionStatus="active",
                    taskId=f"t-{i}",
                    status="failed",
                )
            )

        alert = session.alerts.get("repo-1")
        assert alert.reason == StuckReason.REPEATED_FAILURES
        assert alert.failure_count == 3

        session.handle_event(make_event("task_update", 30, taskId="t-3", status="completed"))

        assert session.store.get("repo-1").consecutive_failures == 0
        assert session.alerts.get("repo-1") is None

    def test_waiting_input_cleared_before_threshold(self, session, make_event, at):
        changes = []
        session.alerts.subscribe(changes.append)

        session.handle_event(
            make_event(
                "task_update",
                0,
                sessionId="s-1",
                sessionStatus="active",
                taskId="t-1",
                status="waiting_approval",
            )
        )
        session.handle_event(make_event("task_update", 30, taskId="t-1", status="completed"))
        session.sweep(at(300))

        assert changes == []

    def test_stale_event_does_not_touch_alerts(self, session, start_active, make_event, at):
        start_active(session, 100)
        session.sweep(at(161))

        assert session.handle_event(make_event("task_output", 50)) is None
        assert session.alerts.get("repo-1") is not None

    def test_periodic_refreshes_do_not_hide_silence(self, at):
        session = DashboardSession()
        repository = {
            "repositoryId": "repo-1",
            "repositoryName": "web-app",
            "sessionId": "s-1",
            "sessionStatus": "active",
            "claudeStatus": "thinking",
            "currentTask": {"id": "t-1", "prompt": "Add login", "status": "running"},
            "lastActivity": at(0).isoformat(),
        }

        for seconds in range(0, 121, 10):
            frame = {
                "type": "bulk_update",
                "repositories": [repository],
                "timestamp": at(seconds).isoformat(),
            }
            for payload in expand_frame(frame):
                session.handle_event(parse_event(payload))

        session.sweep(at(125))

        assert session.store.get("repo-1").last_activity == at(0)
        alert = session.alerts.get("repo-1")
        assert alert is not None
        assert alert.reason == StuckReason.NO_OUTPUT


class TestPauseResume:
    """Tests for optimistic session intents."""

    def test_pause_without_flicker(self, session, start_active, make_event):
        backend = FakeMutations()
        session.mutations = backend
        start_active(session)

        async def scenario():
            shown = []
            intent = asyncio.create_task(session.pause_session("repo-1"))
            await asyncio.sleep(0)
            shown.append(session.effective_state("repo-1").claude_status)

            session.handle_event(
                make_event("repo_state", 5, sessionId="s-repo-1", sessionStatus="paused")
            )
            shown.append(session.effective_state("repo-1").claude_status)

            backend.release("pause")
            result = await intent
            shown.append(session.effective_state("repo-1").claude_status)
            return result, shown

        result, shown = asyncio.run(scenario())

        assert result.ok
        assert shown == [ClaudeStatus.PAUSED] * 3
        assert len(session.tracker) == 0
        assert backend.calls == [("pause", "repo-1", "s-repo-1")]

    def test_rejected_pause_rolls_back(self, session, start_active):
        backend = FakeMutations()
        backend.errors["pause"] = MutationRejected("pause session", "Session not found", 404)
        backend.release("pause")
        session.mutations = backend
        start_active(session)

        result = asyncio.run(session.pause_session("repo-1"))

        assert not result.ok
        assert isinstance(result.error, MutationRejected)
        state = session.effective_state("repo-1")
        assert state.session_status == SessionStatus.ACTIVE
        assert state.claude_status == ClaudeStatus.THINKING
        assert len(session.tracker) == 0

    def test_transport_failure_rolls_back(self, session, start_active):
        backend = FakeMutations()
        backend.errors["resume"] = TransportError("connection refused")
        backend.release("resume")
        session.mutations = backend
        start_active(session)

        result = asyncio.run(session.resume_session("repo-1"))

        assert not result.ok
        assert isinstance(result.error, TransportError)
        assert session.tracker.get_pending("s-repo-1") is None

    def test_resume_shows_active_over_paused_state(self, session, make_event):
        backend = FakeMutations()
        session.mutations = backend
        session.handle_event(
            make_event(
                "repo_state",
                0,
                sessionId="s-1",
                sessionStatus="paused",
                currentTask={"id": "t-1", "prompt": "", "status": "running"},
            )
        )

        async def scenario():
            intent = asyncio.create_task(session.resume_session("repo-1"))
            await asyncio.sleep(0)
            shown = session.effective_state("repo-1")
            backend.release("resume")
            await intent
            return shown

        shown = asyncio.run(scenario())

        assert shown.session_status == SessionStatus.ACTIVE
        assert shown.claude_status == ClaudeStatus.THINKING

    def test_last_intent_wins(self, session, start_active):
        backend = FakeMutations()
        backend.errors["pause"] = MutationRejected("pause session", "too late")
        session.mutations = backend
        start_active(session)

        async def scenario():
            pause = asyncio.create_task(session.pause_session("repo-1"))
            await asyncio.sleep(0)
            resume = asyncio.create_task(session.resume_session("repo-1"))
            await asyncio.sleep(0)
            pending = session.tracker.get_pending("s-repo-1")

            # The resume answers first, then the superseded pause is rejected
            backend.release("resume")
            await resume
            backend.release("pause")
            await pause
            return pending

        pending = asyncio.run(scenario())

        assert pending.optimistic_state.status == "active"
        assert pending.original_state.status == "active"
        assert len(session.tracker) == 0

    def test_unknown_session_is_a_failed_result(self, session):
        backend = FakeMutations()
        session.mutations = backend

        paused = asyncio.run(session.pause_session("unknown-repo"))
        resumed = asyncio.run(session.resume_session("unknown-repo"))

        assert not paused.ok
        assert isinstance(paused.error, MutationRejected)
        assert paused.error.intent == "pause session"
        assert "no session known for unknown-repo" in str(paused.error)
        assert not resumed.ok and resumed.error.intent == "resume session"
        assert backend.calls == []
        assert len(session.tracker) == 0

    def test_requires_mutation_client(self, session, start_active):
        start_active(session)

        with pytest.raises(RuntimeError, match="no mutation client"):
            asyncio.run(session.pause_session("repo-1"))


class TestAcknowledge:
    """Tests for optimistic acknowledgment."""

    @pytest.fixture
    def stuck_session(self, session, start_active, at):
        start_active(session)
        session.sweep(at(61))
        session.mutations = FakeMutations()
        return session

    def test_acknowledged_after_confirmation(self, stuck_session):
        backend = stuck_session.mutations

        async def scenario():
            intent = asyncio.create_task(stuck_session.acknowledge_alert("repo-1"))
            await asyncio.sleep(0)
            shown = stuck_session.stuck_status()
            recorded = stuck_session.alerts.get("repo-1").acknowledged
            backend.release("acknowledge")
            return await intent, shown, recorded

        result, shown, recorded = asyncio.run(scenario())

        assert result.ok
        assert shown.total_stuck_count == 0
        assert shown.alerts[0].acknowledged is True
        assert recorded is False
        assert stuck_session.alerts.get("repo-1").acknowledged is True

    def test_rejected_acknowledge(self, stuck_session):
        backend = stuck_session.mutations
        backend.errors["acknowledge"] = MutationRejected("acknowledge", "no active alert")
        backend.release("acknowledge")

        result = asyncio.run(stuck_session.acknowledge_alert("repo-1"))

        assert not result.ok
        assert stuck_session.alerts.get("repo-1").acknowledged is False
        assert stuck_session.stuck_status().total_stuck_count == 1

    def test_no_alert(self, session):
        session.mutations = FakeMutations()

        result = asyncio.run(session.acknowledge_alert("repo-1"))

        assert not result.ok
        assert session.mutations.calls == []

    def test_already_acknowledged(self, stuck_session):
        stuck_session.alerts.acknowledge("repo-1")

        result = asyncio.run(stuck_session.acknowledge_alert("repo-1"))

        assert result.ok
        assert stuck_session.mutations.calls == []


class TestConfiguration:
    """Tests for configuration changes."""

    def test_invalid_change_is_not_sent(self, session):
        backend = FakeMutations()
        session.mutations = backend
        before = session.config

        result = asyncio.run(session.update_config({"noOutputThresholdSeconds": 1}))

        assert not result.ok
        assert isinstance(result.error, ConfigValidationError)
        assert session.config == before
        assert backend.calls == []

    def test_server_echo_is_adopted(self, session):
        backend = FakeMutations()
        backend.config_echo = StuckDetectionConfig(sensitivity_level="high", repeated_failure_count=4)
        session.mutations = backend

        result = asyncio.run(session.update_config({"sensitivityLevel": "high"}))

        assert result.ok
        assert session.config.repeated_failure_count == 4

    def test_failed_push_keeps_config(self, session):
        backend = FakeMutations()
        backend.errors["update_config"] = TransportError("down")
        session.mutations = backend
        before = session.config

        result = asyncio.run(session.update_config({"enabled": False}))

        assert not result.ok
        assert session.config == before

    def test_offline_update_and_reset(self, session):
        result = asyncio.run(session.update_config({"enable_sound_alerts": True}))
        assert result.ok and session.config.enable_sound_alerts is True

        result = asyncio.run(session.reset_config())
        assert result.ok and session.config == StuckDetectionConfig()

    def test_disabled_detection_freezes_alerts(self, session, start_active, make_event, at):
        start_active(session)
        session.sweep(at(61))
        frozen = session.alerts.get("repo-1")

        asyncio.run(session.update_config({"enabled": False}))
        session.sweep(at(1000))
        session.handle_event(make_event("task_update", 1001, taskId="t-1", status="completed"))
        session.tick()

        assert session.alerts.get("repo-1") == frozen

    def test_excluding_repository_resolves_its_alert(self, session, start_active, at):
        start_active(session)
        session.sweep(at(61))

        asyncio.run(session.update_config({"excludedRepoIds": ["repo-1"]}))
        session.sweep(at(62))

        assert session.alerts.get("repo-1") is None


class TestRemoveRepository:
    def test_clears_state_alert_and_pending(self, session, start_active, at):
        backend = FakeMutations()
        session.mutations = backend
        start_active(session, repository_id="repo-1")
        start_active(session, repository_id="repo-2")
        session.sweep(at(61))

        async def scenario():
            intent = asyncio.create_task(session.pause_session("repo-1"))
            await asyncio.sleep(0)
            session.remove_repository("repo-1")
            backend.release("pause")
            return await intent

        result = asyncio.run(scenario())

        assert session.store.get("repo-1") is None
        assert session.alerts.get("repo-1") is None
        assert session.tracker.pending_operations() == []
        assert result.ok
        assert session.store.get("repo-2") is not None
        assert session.alerts.get("repo-2") is not None


class TestLifecycle:
    def test_timers_run_until_closed(self, detection_config, start_active, at):
        session = DashboardSession(
            config=detection_config,
            timers=TimerSettings(sweep_interval_seconds=0.01, cleanup_interval_seconds=0.01),
            clock=lambda: at(120),
        )
        session.mutations = FakeMutations()
        start_active(session)

        async def scenario():
            session.start()
            for _ in range(100):
                if session.alerts.get("repo-1") is not None:
                    break
                await asyncio.sleep(0.01)
            await session.aclose()

        asyncio.run(scenario())

        assert session.alerts.get("repo-1").severity == AlertSeverity.MEDIUM
        assert session.mutations.closed is True

    def test_from_settings(self):
        settings = Config.model_validate(
            {"stream": {"base_url": "http://dash.local:4000/"}, "detection": {"enabled": False}}
        )

        session = DashboardSession.from_settings(settings)

        assert session.stream.url == "http://dash.local:4000/api/multi-repo-stream"
        assert session.mutations.base_url == "http://dash.local:4000"
        assert session.config.enabled is False
        asyncio.run(session.aclose())

    def test_pending_ack_overlay_matches_alert_id(self, session, start_active, at):
        start_active(session)
        session.sweep(at(61))
        alert = session.alerts.get("repo-1")

        session.tracker.register_optimistic_update(
            PendingOperation(
                entity_type=EntityType.ALERT,
                entity_id="alert_from_earlier_episode",
                optimistic_state=OptimisticState(acknowledged=True),
                repository_id="repo-1",
                started_at=at(61),
            )
        )
        assert session.stuck_status(at(62)).alerts[0].acknowledged is False

        session.tracker.register_optimistic_update(
            PendingOperation(
                entity_type=EntityType.ALERT,
                entity_id=alert.id,
                optimistic_state=OptimisticState(acknowledged=True),
                repository_id="repo-1",
                started_at=at(61),
            )
        )
        assert session.stuck_status(at(62)).alerts[0].acknowledged is True
