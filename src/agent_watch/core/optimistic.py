"""
Optimistic update tracking for user intents.

Each entity has at most one pending operation. A newer intent supersedes
the older one, and confirmations or rollbacks carrying a superseded
operation id are ignored, so a slow first request can never clobber the
result of a faster second one.
"""

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Literal

from agent_watch.models.base import utc_now
from agent_watch.models.pending import PendingOperation

logger = logging.getLogger(__name__)

# Pending operations older than this are dropped regardless of id
STALE_OPERATION_SECONDS = 30

OperationOutcome = Literal["registered", "confirmed", "rolled_back", "expired"]
OperationListener = Callable[[OperationOutcome, PendingOperation], None]


class OptimisticUpdateTracker:
    """Tracks pending operations keyed by entity id."""

    def __init__(self, stale_after_seconds: float = STALE_OPERATION_SECONDS):
        if stale_after_seconds <= 0:
            raise ValueError("stale_after_seconds must be positive")
        self.stale_after_seconds = stale_after_seconds
        self._pending: dict[str, PendingOperation] = {}
        self._sequences: dict[str, int] = {}
        self._listeners: list[OperationListener] = []

    def subscribe(self, listener: OperationListener) -> Callable[[], None]:
        """Register a callback for every operation transition. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def register_optimistic_update(self, operation: PendingOperation) -> PendingOperation:
        """
        Start tracking an intent, superseding any pending one for the same entity.

        The superseded operation's original state is kept only when the new
        operation supplies none.

        Args:
            operation: The operation to track

        Returns:
            The tracked operation, with its per-entity sequence number assigned
        """
        entity_id = operation.entity_id
        sequence = self._sequences.get(entity_id, 0) + 1
        self._sequences[entity_id] = sequence

        changes: dict = {"sequence": sequence}
        superseded = self._pending.get(entity_id)
        if superseded is not None:
            logger.debug(
                "Operation %s supersedes %s on %s",
                operation.operation_id,
                superseded.operation_id,
                entity_id,
            )
            if operation.original_state is None:
                changes["original_state"] = superseded.original_state

        tracked = operation.model_copy(update=changes)
        self._pending[entity_id] = tracked
        self._notify("registered", tracked)
        return tracked

    def confirm_optimistic_update(self, entity_id: str, operation_id: str) -> bool:
        """
        Mark an operation as confirmed by the server.

        Returns:
            True if the operation was pending, False if it was superseded or unknown
        """
        operation = self._take(entity_id, operation_id)
        if operation is None:
            return False
        self._notify("confirmed", operation)
        return True

    def rollback_optimistic_update(self, entity_id: str, operation_id: str) -> bool:
        """
        Discard an operation the server rejected.

        Callers re-derive display state from the authoritative store rather
        than from the operation's original state.

        Returns:
            True if the operation was pending, False if it was superseded or unknown
        """
        operation = self._take(entity_id, operation_id)
        if operation is None:
            return False
        logger.info(
            "Rolled back %s on %s %s",
            operation.operation_id,
            operation.entity_type.value,
            entity_id,
        )
        self._notify("rolled_back", operation)
        return True

    def cleanup_stale_operations(self, now: datetime | None = None) -> list[PendingOperation]:
        """
        Drop pending operations older than the staleness ceiling.

        Args:
            now: Reference time (defaults to the current UTC time)

        Returns:
            The operations that were removed
        """
        now = now or utc_now()
        expired = [
            operation
            for operation in self._pending.values()
            if operation.age_seconds(now) >= self.stale_after_seconds
        ]

        for operation in expired:
            del self._pending[operation.entity_id]
            logger.info(
                "Expired stale operation %s on %s %s",
                operation.operation_id,
                operation.entity_type.value,
                operation.entity_id,
            )
            self._notify("expired", operation)

        return expired

    def drop_repository(self, repository_id: str) -> list[PendingOperation]:
        """Remove every pending operation that references a repository."""
        dropped = [
            operation
            for operation in self._pending.values()
            if operation.repository_id == repository_id or operation.entity_id == repository_id
        ]
        for operation in dropped:
            del self._pending[operation.entity_id]
        return dropped

    def get_pending(self, entity_id: str) -> PendingOperation | None:
        return self._pending.get(entity_id)

    def is_pending(self, entity_id: str) -> bool:
        return entity_id in self._pending

    def pending_operations(self) -> list[PendingOperation]:
        return list(self._pending.values())

    def __len__(self) -> int:
        return len(self._pending)

    def _take(self, entity_id: str, operation_id: str) -> PendingOperation | None:
        current = self._pending.get(entity_id)
        if current is None or current.operation_id != operation_id:
            logger.debug("Ignoring outcome for superseded operation %s on %s", operation_id, entity_id)
            return None
        return self._pending.pop(entity_id)

    def _notify(self, outcome: OperationOutcome, operation: PendingOperation) -> None:
        for listener in list(self._listeners):
            listener(outcome, operation)
