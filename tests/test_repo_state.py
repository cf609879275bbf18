"""
Unit tests for the RepoStateStore.

Tests cover:
- Seeding and updating repository state from each event type
- Last-writer-wins ordering by event timestamp
- Failure streak and QA-blocked bookkeeping
- Subscriptions and removal
"""

import random
from unittest.mock import MagicMock

import pytest

from agent_watch.core.repo_state import RepoStateStore, StaleEventError
from agent_watch.models.session import ClaudeStatus, SessionStatus


@pytest.fixture
def store() -> RepoStateStore:
    return RepoStateStore()


class TestApply:
    """Tests for applying events to the store."""

    def test_first_event_seeds_idle_entry(self, store, make_event):
        state = store.apply(make_event("stuck_resolved", 0))

        assert state is not None
        assert state.repository_id == "repo-1"
        assert state.repository_name == "repo-1"
        assert state.claude_status == ClaudeStatus.IDLE
        assert state.time_elapsed == 0
        assert "repo-1" in store

    def test_repo_state_snapshot(self, store, make_event, at):
        state = store.apply(
            make_event(
                "repo_state",
                0,
                repositoryName="web-app",
                sessionId="s-1",
                sessionStatus="active",
                currentTask={"id": "t-1", "prompt": "Add login", "status": "running"},
                timeElapsed=120000,
            )
        )

        assert state.repository_name == "web-app"
        assert state.session_id == "s-1"
        assert state.session_status == SessionStatus.ACTIVE
        assert state.claude_status == ClaudeStatus.THINKING
        assert state.current_task.prompt == "Add login"
        assert state.time_elapsed == 120000
        assert state.last_activity == at(0)

    def test_task_output_means_writing(self, store, make_event):
        state = store.apply(make_event("task_output", 0, taskId="t-1", output="diff --git"))

        assert state.claude_status == ClaudeStatus.WRITING

    def test_stuck_notices(self, store, make_event):
        assert store.apply(make_event("stuck_detected", 0)).claude_status == ClaudeStatus.STUCK
        assert store.apply(make_event("stuck_escalated", 1)).claude_status == ClaudeStatus.STUCK
        assert store.apply(make_event("stuck_resolved", 2)).claude_status == ClaudeStatus.IDLE

    def test_explicit_claude_status_wins(self, store, make_event):
        state = store.apply(make_event("task_output", 0, claudeStatus="waiting_input"))

        assert state.claude_status == ClaudeStatus.WAITING_INPUT

    def test_task_update_keeps_prompt_of_same_task(self, store, make_event):
        store.apply(
            make_event(
                "repo_state",
                0,
                sessionId="s-1",
                sessionStatus="active",
                currentTask={"id": "t-1", "prompt": "Add login", "status": "running"},
            )
        )

        state = store.apply(make_event("task_update", 5, taskId="t-1", status="waiting_approval"))

        assert state.current_task.prompt == "Add login"
        assert state.current_task.status == "waiting_approval"
        assert state.claude_status == ClaudeStatus.WAITING_INPUT
        assert state.session_id == "s-1"

    def test_task_update_for_new_task_clears_prompt(self, store, make_event):
        store.apply(
            make_event("repo_state", 0, currentTask={"id": "t-1", "prompt": "Old", "status": "running"})
        )

        state = store.apply(make_event("task_update", 5, taskId="t-2", status="running"))

        assert state.current_task.id == "t-2"
        assert state.current_task.prompt == ""

    @pytest.mark.parametrize("task_status", ["queued", "running"])
    def test_task_update_on_paused_session_stays_paused(self, store, make_event, task_status):
        store.apply(make_event("repo_state", 0, sessionId="s-1", sessionStatus="paused"))

        state = store.apply(make_event("task_update", 5, taskId="t-1", status=task_status))

        assert state.session_status == SessionStatus.PAUSED
        assert state.claude_status == ClaudeStatus.PAUSED

    def test_task_update_for_other_session_ignores_stored_pause(self, store, make_event):
        store.apply(make_event("repo_state", 0, sessionId="s-1", sessionStatus="paused"))

        state = store.apply(
            make_event("task_update", 5, sessionId="s-2", taskId="t-1", status="running")
        )

        assert state.session_id == "s-2"
        assert state.claude_status == ClaudeStatus.THINKING

    def test_status_since_only_moves_on_change(self, store, make_event, at):
        store.apply(make_event("task_update", 0, taskId="t-1", status="running"))
        state = store.apply(make_event("task_update", 10, taskId="t-1", status="qa_running"))

        assert state.claude_status == ClaudeStatus.THINKING
        assert state.status_since == at(0)

        state = store.apply(make_event("task_update", 20, taskId="t-1", status="waiting_input"))

        assert state.status_since == at(20)

    def test_returned_states_are_snapshots(self, store, make_event):
        first = store.apply(make_event("task_output", 0))
        store.apply(make_event("stuck_detected", 5))

        assert first.claude_status == ClaudeStatus.WRITING
        assert store.get("repo-1").claude_status == ClaudeStatus.STUCK


class TestOrdering:
    """Tests for last-writer-wins by event timestamp."""

    def test_older_event_is_dropped(self, store, make_event, at):
        store.apply(make_event("stuck_detected", 10))
        listener = MagicMock()
        store.subscribe(listener)

        result = store.apply(make_event("task_output", 5))

        assert result is None
        assert store.get("repo-1").claude_status == ClaudeStatus.STUCK
        assert store.get("repo-1").last_activity == at(10)
        listener.assert_not_called()

    def test_equal_timestamp_is_applied(self, store, make_event):
        store.apply(make_event("stuck_detected", 10))

        result = store.apply(make_event("stuck_resolved", 10))

        assert result is not None
        assert result.claude_status == ClaudeStatus.IDLE

    def test_stale_error_describes_event(self, at):
        error = StaleEventError("repo-1", at(5), at(10))

        assert "repo-1" in str(error)
        assert error.last_activity == at(10)

    def test_reordered_snapshots_converge(self, make_event):
        events = [
            make_event(
                "repo_state",
                seconds,
                repositoryName="web-app",
                sessionId="s-1",
                sessionStatus=session_status,
                currentTask={"id": f"t-{seconds}", "prompt": "", "status": task_status},
                timeElapsed=seconds * 1000,
            )
            for seconds, session_status, task_status in [
                (0, "active", "running"),
                (10, "active", "waiting_qa"),
                (20, "paused", "running"),
                (30, "active", "waiting_approval"),
                (40, "active", "running"),
            ]
        ]

        in_order = RepoStateStore()
        for event in events:
            in_order.apply(event)
        expected = in_order.get("repo-1")

        rng = random.Random(7)
        for _ in range(20):
            shuffled = events[:]
            rng.shuffle(shuffled)
            store = RepoStateStore()
            for event in shuffled:
                store.apply(event)
            actual = store.get("repo-1")

            assert actual.claude_status == expected.claude_status
            assert actual.session_status == expected.session_status
            assert actual.current_task == expected.current_task
            assert actual.time_elapsed == expected.time_elapsed
            assert actual.last_activity == expected.last_activity

    def test_reordered_failures_count_only_fresh_events(self, make_event, at):
        failures = [
            make_event(
                "task_update",
                seconds,
                sessionId="s-1",
                sessionStatus="active",
                taskId=f"t-{seconds}",
                status="failed",
            )
            for seconds in (0, 10, 20)
        ]

        in_order = RepoStateStore()
        for event in failures:
            in_order.apply(event)

        # Once the newest failure lands, the older ones are stale and never counted
        newest_first = RepoStateStore()
        for event in reversed(failures):
            newest_first.apply(event)

        assert in_order.get("repo-1").consecutive_failures == 3
        assert newest_first.get("repo-1").consecutive_failures == 1
        for store in (in_order, newest_first):
            state = store.get("repo-1")
            assert state.current_task.id == "t-20"
            assert state.claude_status == ClaudeStatus.STUCK
            assert state.last_activity == at(20)

    def test_repositories_are_ordered_independently(self, store, make_event):
        store.apply(make_event("stuck_detected", 50, repository_id="repo-a"))

        result = store.apply(make_event("task_output", 5, repository_id="repo-b"))

        assert result is not None
        assert len(store) == 2


class TestKnownRepositories:
    """Tests for stores restricted to a known repository set."""

    def test_unknown_repository_is_dropped(self, make_event):
        store = RepoStateStore(known_repositories=["repo-1"])

        assert store.apply(make_event("task_output", 0, repository_id="other")) is None
        assert store.get("other") is None

    def test_track_admits_repository(self, make_event):
        store = RepoStateStore(known_repositories=[])
        store.track("repo-1")

        assert store.apply(make_event("task_output", 0)) is not None


class TestFailureTracking:
    """Tests for the failure streak and QA-blocked sub-state."""

    def test_distinct_failures_accumulate(self, store, make_event, at):
        for i in range(3):
            state = store.apply(make_event("task_update", i * 10, taskId=f"t-{i}", status="failed"))

        assert state.consecutive_failures == 3
        assert state.failure_streak_started_at == at(0)
        assert state.claude_status == ClaudeStatus.STUCK

    def test_repeated_report_of_same_failure_counts_once(self, store, make_event):
        store.apply(make_event("task_update", 0, taskId="t-1", status="failed"))
        state = store.apply(make_event("task_update", 5, taskId="t-1", status="failed"))

        assert state.consecutive_failures == 1

    def test_success_resets_streak(self, store, make_event):
        store.apply(make_event("task_update", 0, taskId="t-1", status="failed"))
        store.apply(make_event("task_update", 5, taskId="t-2", status="error"))
        state = store.apply(make_event("task_update", 10, taskId="t-3", status="completed"))

        assert state.consecutive_failures == 0
        assert state.failure_streak_started_at is None

    def test_running_task_keeps_streak(self, store, make_event):
        store.apply(make_event("task_update", 0, taskId="t-1", status="failed"))
        state = store.apply(make_event("task_update", 5, taskId="t-2", status="running"))

        assert state.consecutive_failures == 1

    def test_qa_failure_enters_blocked_state(self, store, make_event, at):
        store.apply(make_event("task_update", 0, taskId="t-1", status="qa_failed", blockedQaGate="lint"))
        state = store.apply(make_event("task_update", 10, taskId="t-1", status="qa_failed"))

        assert state.is_qa_blocked
        assert state.qa_blocked_since == at(0)
        assert state.blocked_qa_gate == "lint"

    def test_leaving_qa_failure_clears_blocked_state(self, store, make_event):
        store.apply(make_event("task_update", 0, taskId="t-1", status="qa_failed"))
        state = store.apply(make_event("task_update", 10, taskId="t-1", status="qa_running"))

        assert state.is_qa_blocked is False
        assert state.blocked_qa_gate is None

    def test_snapshot_without_task_clears_blocked_state(self, store, make_event):
        store.apply(make_event("task_update", 0, taskId="t-1", status="qa_failed"))
        state = store.apply(make_event("repo_state", 10, sessionId="s-1", sessionStatus="active"))

        assert state.is_qa_blocked is False


class TestSubscriptions:
    """Tests for listeners and removal."""

    def test_subscriber_receives_applied_states(self, store, make_event):
        listener = MagicMock()
        unsubscribe = store.subscribe(listener)

        state = store.apply(make_event("task_output", 0))
        unsubscribe()
        store.apply(make_event("task_output", 5))

        listener.assert_called_once_with(state)

    def test_remove_deletes_before_notifying(self, store, make_event):
        store.apply(make_event("task_output", 0))
        seen = []
        store.on_remove(lambda repo_id: seen.append((repo_id, store.get(repo_id))))

        assert store.remove("repo-1") is True
        assert seen == [("repo-1", None)]

    def test_remove_unknown_returns_false(self, store):
        listener = MagicMock()
        store.on_remove(listener)

        assert store.remove("missing") is False
        listener.assert_not_called()

    def test_remove_leaves_other_repositories(self, store, make_event):
        store.apply(make_event("task_output", 0, repository_id="repo-a"))
        store.apply(make_event("task_output", 0, repository_id="repo-b"))

        store.remove("repo-a")

        assert [s.repository_id for s in store.get_all()] == ["repo-b"]

    def test_clear_removes_everything(self, store, make_event):
        store.apply(make_event("task_output", 0, repository_id="repo-a"))
        store.apply(make_event("task_output", 0, repository_id="repo-b"))
        removed = []
        store.on_remove(removed.append)

        store.clear()

        assert len(store) == 0
        assert sorted(removed) == ["repo-a", "repo-b"]
