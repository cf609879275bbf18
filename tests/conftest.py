"""
Pytest configuration and shared fixtures for agent-watch tests.
"""

import json
import tempfile
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Generator

import pytest

from agent_watch.models.detection import StuckDetectionConfig
from agent_watch.models.events import StreamEvent, parse_event
from agent_watch.models.session import ClaudeStatus, RepoSessionState, SessionStatus

BASE_TIME = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def temp_directory() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as temp_dir:
        yield Path(temp_dir)


@pytest.fixture
def base_time() -> datetime:
    """Fixed reference instant; tests express time as offsets from it."""
    return BASE_TIME


@pytest.fixture
def at(base_time: datetime) -> Callable[[float], datetime]:
    """Return the instant ``seconds`` after the reference time."""

    def _at(seconds: float) -> datetime:
        return base_time + timedelta(seconds=seconds)

    return _at


@pytest.fixture
def make_event(at: Callable[[float], datetime]) -> Callable[..., StreamEvent]:
    """Build a validated stream event from camelCase fields, timed in seconds."""

    def _make(
        event_type: str,
        seconds: float = 0,
        repository_id: str = "repo-1",
        **fields: Any,
    ) -> StreamEvent:
        payload = {
            "type": event_type,
            "repositoryId": repository_id,
            "timestamp": at(seconds).isoformat(),
            **fields,
        }
        return parse_event(payload)

    return _make


@pytest.fixture
def active_state(at: Callable[[float], datetime]) -> Callable[..., RepoSessionState]:
    """Build a repository state with an active session."""

    def _make(**changes: Any) -> RepoSessionState:
        fields: dict[str, Any] = {
            "repository_id": "repo-1",
            "repository_name": "web-app",
            "claude_status": ClaudeStatus.THINKING,
            "session_id": "session-1",
            "session_status": SessionStatus.ACTIVE,
            "time_elapsed": 0,
            "last_activity": at(0),
            "status_since": at(0),
        }
        fields.update(changes)
        return RepoSessionState(**fields)

    return _make


@pytest.fixture
def detection_config() -> StuckDetectionConfig:
    """Medium sensitivity with a 60 second no-output threshold."""
    return StuckDetectionConfig(no_output_threshold_seconds=60)


@pytest.fixture
def events_file(temp_directory: Path, base_time: datetime) -> Path:
    """A JSON-lines event log with one repository going quiet and one failing QA."""
    lines = [
        {
            "type": "repo_state",
            "repositoryId": "repo-1",
            "repositoryName": "web-app",
            "timestamp": base_time.isoformat(),
            "sessionId": "session-1",
            "sessionStatus": "active",
            "currentTask": {"id": "task-1", "prompt": "Add login form", "status": "running"},
            "timeElapsed": 0,
        },
        {
            "type": "task_update",
            "repositoryId": "repo-2",
            "repositoryName": "api",
            "timestamp": (base_time + timedelta(seconds=5)).isoformat(),
            "sessionId": "session-2",
            "sessionStatus": "active",
            "taskId": "task-9",
            "status": "qa_failed",
            "blockedQaGate": "lint",
        },
        "not json at all",
    ]
    path = temp_directory / "events.jsonl"
    path.write_text(
        "\n".join(line if isinstance(line, str) else json.dumps(line) for line in lines) + "\n"
    )
    return path
