"""Sync engine exception taxonomy.

Entity-scoped errors are caught inside a pass and never abort the batch; only a
failure of the initial remote fetch (or the pass timeout) fails a whole pass.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from todo_sync.domain.conflict_resolver import ConflictInfo


class SyncError(RuntimeError):
    pass


class TransientNetworkError(SyncError):
    """Retryable: transport failure, timeout or a retryable HTTP status."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class CircuitOpenError(SyncError):
    """Fail-fast: the breaker is open, no request was sent."""


class ExternalApiError(SyncError):
    """Non-retryable HTTP status from the remote API."""

    def __init__(self, message: str, *, status_code: int, body: str = "") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class RemoteNotFoundError(ExternalApiError):
    pass


class DeserializationError(SyncError):
    """The remote answered 2xx but the body does not have the expected shape."""


class ManualResolutionRequired(SyncError):
    def __init__(self, conflict: "ConflictInfo") -> None:
        super().__init__(conflict.resolution_reason or "manual conflict resolution required")
        self.conflict = conflict


class EntityVanishedError(SyncError):
    """The local row disappeared before the queued action ran."""


class SyncAlreadyRunningError(SyncError):
    pass
