"""prepg3_shared.errors — Error taxonomy with stable codes.

Every error raised by the core carries a stable ``code``, an HTTP-like
``status_code``, a ``retryable`` flag and optional ``details``. Messages are
safe to show to callers; storage internals never appear in them.
"""

from __future__ import annotations

import datetime as dt
from typing import Any, Dict, Optional


class AppError(Exception):
    code = "INTERNAL_ERROR"
    status_code = 500
    retryable = False
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None, **details: Any) -> None:
        self.message = message or self.default_message
        self.details: Dict[str, Any] = details
        super().__init__(self.message)

    def to_envelope(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "details": dict(self.details),
        }


class ValidationError(AppError):
    code = "VALIDATION_ERROR"
    status_code = 400
    default_message = "Invalid input"


class AuthenticationError(AppError):
    code = "UNAUTHENTICATED"
    status_code = 401
    default_message = "Authentication required. Please sign in."


class AuthorizationError(AppError):
    code = "UNAUTHORIZED"
    status_code = 403
    default_message = "You do not have permission to perform this action"


class ConfirmationRequiredError(AppError):
    """Caller is allowed, but the irreversible operation was not confirmed."""

    code = "CONFIRMATION_REQUIRED"
    status_code = 428
    default_message = "Must confirm dangerous operation"


class NotFoundError(AppError):
    code = "NOT_FOUND"
    status_code = 404
    default_message = "Record not found"

    def __init__(self, resource: str = "Record", **details: Any) -> None:
        super().__init__(f"{resource} not found", **details)


class InvalidTransitionError(AppError):
    code = "INVALID_TRANSITION"
    status_code = 409

    def __init__(self, current: str, target: str, **details: Any) -> None:
        self.current = current
        self.target = target
        super().__init__(
            f"Invalid status transition: '{current}' -> '{target}'",
            current_status=current,
            target_status=target,
            **details,
        )


class RetentionPolicyViolationError(AppError):
    code = "RETENTION_POLICY_VIOLATION"
    status_code = 409

    def __init__(self, earliest_deletion_date: dt.datetime, **details: Any) -> None:
        self.earliest_deletion_date = earliest_deletion_date
        stamp = earliest_deletion_date.strftime("%Y-%m-%dT%H:%M:%SZ")
        super().__init__(
            f"Cannot delete. Document must be retained until {stamp}",
            earliestDeletionDate=stamp,
            **details,
        )


class ConflictError(AppError):
    """Optimistic-concurrency collision; re-read current state and retry."""

    code = "CONFLICT"
    status_code = 409
    retryable = True
    default_message = "The record was modified concurrently. Reload and try again."


class StorageUnavailableError(AppError):
    code = "STORAGE_UNAVAILABLE"
    status_code = 503
    retryable = True
    default_message = "Storage is temporarily unavailable. Please try again."


class InconsistentStateError(AppError):
    """A multi-step destructive operation stopped half way."""

    code = "INCONSISTENT_STATE"
    status_code = 500
    retryable = True
    default_message = "The operation did not complete. It is safe to retry."
