"""
Inbound event stream client.

Maintains one long-lived server-sent events connection to the dashboard
backend, reconnecting with full-jitter exponential backoff, and hands each
validated event to a callback as soon as it is decoded. Nothing is queued:
a slow consumer slows the read loop instead of growing a buffer.
"""

import asyncio
import json
import logging
import random
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import httpx
from pydantic import ValidationError

from agent_watch.models.base import utc_now
from agent_watch.models.events import (
    CONTROL_FRAME_TYPES,
    ConnectionState,
    ConnectionStatus,
    StreamEvent,
    parse_event,
)

logger = logging.getLogger(__name__)

# Aggregate frames emitted by the multi-repository stream endpoint
BULK_UPDATE = "bulk_update"
REPO_UPDATE = "repo_update"

# Per-repository field carrying when the repository last produced anything
LAST_ACTIVITY_FIELD = "lastActivity"

EventCallback = Callable[[StreamEvent], None]
StatusCallback = Callable[[ConnectionState], None]


class TransportError(Exception):
    """Raised when the stream connection is lost or refused."""


@dataclass
class BackoffPolicy:
    """Full-jitter exponential backoff between reconnect attempts."""

    base_seconds: float = 1.0
    cap_seconds: float = 30.0

    def __post_init__(self) -> None:
        if self.base_seconds <= 0:
            raise ValueError("base_seconds must be positive")
        if self.cap_seconds < self.base_seconds:
            raise ValueError("cap_seconds must be at least base_seconds")

    def delay(self, attempt: int, rng: random.Random | None = None) -> float:
        """Delay before reconnect attempt number ``attempt`` (starting at 0)."""
        ceiling = min(self.cap_seconds, self.base_seconds * 2 ** max(attempt, 0))
        return (rng or random).uniform(0, ceiling)


@dataclass(frozen=True)
class SSEFrame:
    event: str | None
    data: str


async def iter_sse_frames(lines: AsyncIterator[str]) -> AsyncIterator[SSEFrame]:
    """
    Group server-sent event lines into frames.

    Comment lines are skipped; multi-line data fields are joined with newlines.
    """
    event: str | None = None
    data: list[str] = []

    async for line in lines:
        line = line.rstrip("\r")
        if not line:
            if data:
                yield SSEFrame(event, "\n".join(data))
            event, data = None, []
            continue
        if line.startswith(":"):
            continue

        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "event":
            event = value
        elif field == "data":
            data.append(value)

    if data:
        yield SSEFrame(event, "\n".join(data))


def expand_frame(payload: dict[str, Any]) -> list[dict[str, Any]]:
    """
    Turn one decoded frame into zero or more event payloads.

    Aggregate repository frames are split into one ``repo_state`` snapshot per
    repository. Each snapshot is stamped with the repository's own last
    activity, so periodic refreshes never advance its output clock. The
    frame's send time is used only when a repository reports none.
    """
    frame_type = payload.get("type")

    if frame_type == BULK_UPDATE:
        repositories = payload.get("repositories") or []
    elif frame_type == REPO_UPDATE:
        repositories = [payload["repository"]] if payload.get("repository") else []
    else:
        return [payload]

    snapshots = []
    for repository in repositories:
        if not isinstance(repository, dict):
            continue
        snapshot = {key: value for key, value in repository.items() if key != LAST_ACTIVITY_FIELD}
        snapshot["type"] = "repo_state"
        snapshot["timestamp"] = repository.get(LAST_ACTIVITY_FIELD) or payload.get("timestamp")
        snapshots.append(snapshot)
    return snapshots


class StreamSubscription:
    """Handle returned by connect(); disposing it stops the stream."""

    def __init__(self, client: "EventStreamClient"):
        self._client = client

    def dispose(self) -> None:
        """Cancel the stream without waiting for it to finish."""
        self._client.cancel()

    async def aclose(self) -> None:
        await self._client.stop()


class EventStreamClient:
    """
    Client for the dashboard's inbound event stream.

    Transport failures never propagate to the caller: they are reported as
    ``error`` status transitions and retried after a backoff delay, leaving
    all previously received state untouched.
    """

    def __init__(
        self,
        url: str,
        http_client: httpx.AsyncClient | None = None,
        backoff: BackoffPolicy | None = None,
        rng: random.Random | None = None,
        timeout: float = 10.0,
    ):
        self.url = url
        self.backoff = backoff or BackoffPolicy()
        self.last_updated: datetime | None = None

        self._client = http_client
        self._owns_client = http_client is None
        self._timeout = timeout
        self._rng = rng or random.Random()

        self._task: asyncio.Task | None = None
        self._wake: asyncio.Event | None = None
        self._backing_off = False
        self._state = ConnectionState(ConnectionStatus.CONNECTING)
        self._on_event: EventCallback | None = None
        self._on_status_change: StatusCallback | None = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def connect(
        self,
        on_event: EventCallback,
        on_status_change: StatusCallback | None = None,
    ) -> StreamSubscription:
        """
        Start streaming in a background task of the running event loop.

        Raises:
            RuntimeError: If the client is already streaming
        """
        if self.running:
            raise RuntimeError("Stream is already connected")

        self._on_event = on_event
        self._on_status_change = on_status_change
        self._wake = asyncio.Event()
        self._task = asyncio.get_running_loop().create_task(self._run())
        return StreamSubscription(self)

    def reconnect(self) -> None:
        """
        Retry immediately if waiting out a backoff delay.

        A no-op while connected or while a connection attempt is in flight.
        """
        if not self.running or not self._backing_off:
            return
        logger.info("Reconnect requested, skipping backoff delay")
        if self._wake is not None:
            self._wake.set()

    def cancel(self) -> None:
        if self._task is not None:
            self._task.cancel()

    async def stop(self) -> None:
        """Stop streaming and release the HTTP client if this instance created it."""
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _run(self) -> None:
        attempt = 0
        while True:
            self._set_state(ConnectionState(ConnectionStatus.CONNECTING, attempt=attempt))
            try:
                await self._consume()
                reason = "stream closed by server"
            except TransportError as e:
                reason = str(e)
            except Exception as e:
                logger.exception("Unexpected failure while streaming from %s", self.url)
                reason = f"{type(e).__name__}: {e}"

            if self._state.connected:
                attempt = 0

            logger.warning("Stream disconnected from %s: %s", self.url, reason)
            self._set_state(ConnectionState(ConnectionStatus.ERROR, reason=reason, attempt=attempt))

            await self._wait(self.backoff.delay(attempt, self._rng))
            attempt += 1

    async def _consume(self) -> None:
        client = self._ensure_client()
        try:
            async with client.stream(
                "GET", self.url, headers={"Accept": "text/event-stream"}
            ) as response:
                if response.status_code != 200:
                    raise TransportError(f"HTTP {response.status_code} from {self.url}")

                self._set_state(ConnectionState(ConnectionStatus.CONNECTED))
                async for frame in iter_sse_frames(response.aiter_lines()):
                    self._handle_frame(frame)
        except httpx.HTTPError as e:
            raise TransportError(str(e) or type(e).__name__) from e

    async def _wait(self, delay: float) -> None:
        assert self._wake is not None
        self._wake.clear()
        self._backing_off = True
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass
        finally:
            self._backing_off = False

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            # Reads block between events; only connecting is bounded
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout, read=None),
            )
        return self._client

    def _handle_frame(self, frame: SSEFrame) -> None:
        try:
            payload = json.loads(frame.data)
        except json.JSONDecodeError:
            logger.warning("Dropping malformed frame: %r", frame.data[:200])
            return

        if not isinstance(payload, dict):
            logger.warning("Dropping non-object frame: %r", frame.data[:200])
            return

        if "type" not in payload and frame.event:
            payload["type"] = frame.event
        if payload.get("type") in CONTROL_FRAME_TYPES:
            return

        for item in expand_frame(payload):
            try:
                event = parse_event(item)
            except ValidationError as e:
                logger.warning(
                    "Dropping invalid %s event: %s",
                    item.get("type", "untyped"),
                    e.errors()[0]["msg"] if e.errors() else e,
                )
                continue
            self._dispatch(event)

    def _dispatch(self, event: StreamEvent) -> None:
        if self._on_event is None:
            return
        try:
            self._on_event(event)
        except Exception:
            logger.exception("Event handler failed for %s", event.repository_id)
            return
        self.last_updated = utc_now()

    def _set_state(self, state: ConnectionState) -> None:
        previous, self._state = self._state, state
        if previous.status != state.status:
            logger.info("Stream %s: %s", self.url, state.status.value)
        if self._on_status_change is None:
            return
        try:
            self._on_status_change(state)
        except Exception:
            logger.exception("Status handler failed for %s", state.status.value)
