"""
Outbound intents to the dashboard's mutation API.

Every call resolves one of two ways: it returns the server's confirmation,
or it raises. ``MutationRejected`` means the server declined the intent;
``TransportError`` means the request never got an answer. Both lead the
caller to roll back the matching optimistic operation.
"""

import logging
from typing import Any

import httpx

from agent_watch.core.stream import TransportError
from agent_watch.models.detection import (
    ConfigValidationError,
    StuckDetectionConfig,
    validate_config,
)

logger = logging.getLogger(__name__)

SESSIONS_PATH = "/api/sessions"
STUCK_STREAM_PATH = "/api/stuck-detection-stream"
STUCK_CONFIG_PATH = "/api/stuck-detection-config"


class MutationRejected(Exception):
    """Raised when the server declines an intent."""

    def __init__(self, intent: str, reason: str, status_code: int | None = None):
        super().__init__(f"{intent} rejected: {reason}")
        self.intent = intent
        self.reason = reason
        self.status_code = status_code


class MutationClient:
    """Thin async client for the pause/resume, acknowledge and config endpoints."""

    def __init__(
        self,
        base_url: str,
        client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ):
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def pause_session(self, repository_id: str, session_id: str) -> dict[str, Any]:
        return await self._session_action("pause", repository_id, session_id)

    async def resume_session(self, repository_id: str, session_id: str) -> dict[str, Any]:
        return await self._session_action("resume", repository_id, session_id)

    async def acknowledge_alert(self, repository_id: str) -> dict[str, Any]:
        body = await self._request(
            "acknowledge",
            "POST",
            STUCK_STREAM_PATH,
            json={"repositoryId": repository_id, "action": "acknowledge"},
        )
        if not body.get("success"):
            raise MutationRejected("acknowledge", f"no active alert for {repository_id}")
        return body

    async def fetch_stuck_detection_config(self) -> StuckDetectionConfig:
        body = await self._request("fetch config", "GET", STUCK_CONFIG_PATH)
        return self._parse_config("fetch config", body)

    async def update_stuck_detection_config(
        self, config: StuckDetectionConfig
    ) -> StuckDetectionConfig:
        """
        Push a full configuration and return the one the server adopted.

        Raises:
            MutationRejected: If the server refuses the configuration
            TransportError: If the server could not be reached
        """
        body = await self._request(
            "update config", "PUT", STUCK_CONFIG_PATH, json=config.to_wire()
        )
        return self._parse_config("update config", body)

    async def reset_stuck_detection_config(self) -> StuckDetectionConfig:
        body = await self._request("reset config", "DELETE", STUCK_CONFIG_PATH)
        return self._parse_config("reset config", body)

    async def _session_action(
        self, action: str, repository_id: str, session_id: str
    ) -> dict[str, Any]:
        return await self._request(
            f"{action} session",
            "PATCH",
            f"{SESSIONS_PATH}/{session_id}",
            json={"action": action, "repositoryId": repository_id},
        )

    async def _request(
        self,
        intent: str,
        method: str,
        path: str,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        logger.debug("%s %s (%s)", method, url, intent)

        try:
            response = await self._client.request(method, url, json=json)
        except httpx.HTTPError as e:
            logger.warning("%s failed: %s", intent, e)
            raise TransportError(f"{intent}: {e or type(e).__name__}") from e

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        if response.status_code >= 400:
            reason = body.get("error") or response.reason_phrase or "request failed"
            raise MutationRejected(intent, str(reason), response.status_code)

        return body

    @staticmethod
    def _parse_config(intent: str, body: dict[str, Any]) -> StuckDetectionConfig:
        payload = body.get("config")
        if not isinstance(payload, dict):
            raise MutationRejected(intent, "response carried no configuration")
        try:
            return validate_config(payload)
        except ConfigValidationError as e:
            raise MutationRejected(intent, f"server returned an invalid configuration: {e}") from e
