"""
Error types for the Planner Command Server.

Every failure that reaches a caller is expressed as a CommandError carrying
a stable error code. The router converts these into result envelopes, so
callers can branch on ``error_code`` alone.

Invariants:
    - All domain errors inherit from CommandError
    - Raw store exceptions never cross the router boundary
    - Cross-owner access raises NotFoundError, never a permission error
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Stable error codes returned in result envelopes."""

    AUTH_REQUIRED = "AUTH_REQUIRED"
    INVALID_TOKEN = "INVALID_TOKEN"
    UNKNOWN_ENTITY = "UNKNOWN_ENTITY"
    UNKNOWN_ACTION = "UNKNOWN_ACTION"
    NOT_FOUND = "NOT_FOUND"
    INVALID_PAYLOAD = "INVALID_PAYLOAD"
    VERSION_CONFLICT = "VERSION_CONFLICT"
    NOT_IMPLEMENTED = "NOT_IMPLEMENTED"
    IDEMPOTENCY_CONFLICT = "IDEMPOTENCY_CONFLICT"
    WORKER_ERROR = "WORKER_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"


_UNAUTHORIZED = {ErrorCode.AUTH_REQUIRED.value, ErrorCode.INVALID_TOKEN.value}


def http_status_for(error_code: str | None) -> int:
    """Map an envelope error code to a transport status code."""
    if error_code is None:
        return 200
    if error_code in _UNAUTHORIZED:
        return 401
    if error_code == ErrorCode.INTERNAL_ERROR.value:
        return 500
    return 400


class CommandError(Exception):
    """Base exception for all command processing errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    code: ErrorCode = ErrorCode.INTERNAL_ERROR

    def __init__(
        self,
        message: str,
        code: ErrorCode | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = details or {}


class UnknownEntityError(CommandError):
    """Command names an entity kind with no handler."""

    code = ErrorCode.UNKNOWN_ENTITY

    def __init__(self, entity_kind: Any) -> None:
        super().__init__(
            f"Unknown entity type: {entity_kind}",
            details={"entity_kind": entity_kind},
        )
        self.entity_kind = entity_kind


class UnknownActionError(CommandError):
    """Command names an action outside create/read/update/delete."""

    code = ErrorCode.UNKNOWN_ACTION

    def __init__(self, action: Any) -> None:
        super().__init__(f"Unknown action: {action}", details={"action": action})
        self.action = action


class NotFoundError(CommandError):
    """Entity absent, or owned by someone else.

    The two cases are deliberately indistinguishable.
    """

    code = ErrorCode.NOT_FOUND

    def __init__(self, entity_kind: str, entity_id: str | None) -> None:
        label = entity_kind.replace("_", " ").capitalize()
        super().__init__(
            f"{label} not found",
            details={"entity_kind": entity_kind, "entity_id": entity_id},
        )
        self.entity_kind = entity_kind
        self.entity_id = entity_id


class InvalidPayloadError(CommandError):
    """Payload is missing a required field or carries a bad value."""

    code = ErrorCode.INVALID_PAYLOAD

    def __init__(self, message: str, field_name: str | None = None) -> None:
        super().__init__(message, details={"field": field_name})
        self.field_name = field_name


class VersionConflictError(CommandError):
    """Update carried an expected_version that no longer matches the row."""

    code = ErrorCode.VERSION_CONFLICT

    def __init__(self, entity_id: str, expected: int, actual: int | None) -> None:
        super().__init__(
            f"Version conflict on {entity_id}: expected {expected}, found {actual}",
            details={"entity_id": entity_id, "expected": expected, "actual": actual},
        )
        self.entity_id = entity_id
        self.expected = expected
        self.actual = actual


class NotImplementedYetError(CommandError):
    """Action exists in the contract but the handler does not support it yet."""

    code = ErrorCode.NOT_IMPLEMENTED


class WorkerError(CommandError):
    """Handler-level failure, e.g. an upstream service rejected the request.

    Safe to retry with the same idempotency key.
    """

    code = ErrorCode.WORKER_ERROR


class AuthRequiredError(CommandError):
    """Caller identity is missing."""

    code = ErrorCode.AUTH_REQUIRED

    def __init__(self, message: str = "Unauthorized") -> None:
        super().__init__(message)


class InvalidTokenError(CommandError):
    """Caller identity could not be verified."""

    code = ErrorCode.INVALID_TOKEN

    def __init__(self, message: str = "Invalid token") -> None:
        super().__init__(message)


class IdempotencyConflictError(CommandError):
    """Idempotency key was already used by a different owner."""

    code = ErrorCode.IDEMPOTENCY_CONFLICT

    def __init__(self, idempotency_key: str) -> None:
        super().__init__(
            "Idempotency key has already been used",
            details={"idempotency_key": idempotency_key},
        )
        self.idempotency_key = idempotency_key


class AuditAppendError(CommandError):
    """The audit ledger rejected an append."""

    code = ErrorCode.INTERNAL_ERROR


class InternalError(CommandError):
    """Unexpected router-level fault."""

    code = ErrorCode.INTERNAL_ERROR
