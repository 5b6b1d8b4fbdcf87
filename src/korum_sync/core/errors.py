"""Error types for the Korum sync client.

The taxonomy mirrors how a failed operation must be treated by the cache:

- ValidationError: malformed input rejected before any network call
- AuthorizationError: caller not entitled; no cache change
- ConflictError: precondition changed concurrently; rollback and re-fetch
- TransientStoreError: network failure or timeout; rollback, no retry
- ChannelDisruptedError: realtime disconnect; resubscribe and refresh
- SchemaMismatchError: remote row is missing expected fields
- NotFoundError: the addressed row does not exist
- MutationFailedError: an optimistic mutation was rolled back
"""

from __future__ import annotations

from typing import Any


class SyncError(RuntimeError):
    """Base exception for all sync client errors.

    Attributes:
        message: Human-readable cause
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "SYNC_ERROR"
        self.details = details or {}


class ValidationError(SyncError):
    """Input rejected before it reached the store."""

    def __init__(self, message: str, field_name: str | None = None) -> None:
        super().__init__(message, code="VALIDATION_ERROR", details={"field": field_name})
        self.field_name = field_name


class AuthorizationError(SyncError):
    """Caller is not entitled to the action (not a member, not an admin)."""

    def __init__(self, message: str, action: str | None = None) -> None:
        super().__init__(message, code="AUTHORIZATION_ERROR", details={"action": action})
        self.action = action


class ConflictError(SyncError):
    """Concurrent state changed the precondition of a mutation.

    Raised when:
    - The vote target was deleted
    - A unique row was created by someone else first
    """

    def __init__(
        self,
        message: str,
        collection: str | None = None,
        entity_id: Any = None,
    ) -> None:
        super().__init__(
            message,
            code="CONFLICT",
            details={"collection": collection, "entity_id": entity_id},
        )
        self.collection = collection
        self.entity_id = entity_id


class TransientStoreError(SyncError):
    """Network failure, timeout or server-side outage."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message, code="TRANSIENT", details={"status_code": status_code})
        self.status_code = status_code


class ChannelDisruptedError(SyncError):
    """A realtime channel disconnected and must be reopened."""

    def __init__(self, message: str, scope: str | None = None) -> None:
        super().__init__(message, code="CHANNEL_DISRUPTED", details={"scope": scope})
        self.scope = scope


class SchemaMismatchError(SyncError):
    """A remote row could not be merged into a typed snapshot."""

    def __init__(
        self,
        message: str,
        collection: str,
        errors: list[str] | None = None,
    ) -> None:
        super().__init__(
            message,
            code="SCHEMA_MISMATCH",
            details={"collection": collection, "errors": errors or []},
        )
        self.collection = collection
        self.errors = errors or []


class NotFoundError(SyncError):
    """The addressed row does not exist."""

    def __init__(self, message: str, collection: str, entity_id: Any) -> None:
        super().__init__(
            message,
            code="NOT_FOUND",
            details={"collection": collection, "entity_id": entity_id},
        )
        self.collection = collection
        self.entity_id = entity_id


class MutationFailedError(SyncError):
    """An optimistic mutation failed and its views were restored.

    Attributes:
        cause: The store error that triggered the rollback
        recoverable: True when retrying the same call may succeed
    """

    def __init__(self, message: str, cause: SyncError) -> None:
        super().__init__(
            message,
            code="MUTATION_FAILED",
            details={"cause": cause.code, **cause.details},
        )
        self.cause = cause
        self.recoverable = isinstance(cause, TransientStoreError | ConflictError)
