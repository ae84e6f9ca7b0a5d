"""
Error kinds raised by the maintenance core.

Every failure reaches the caller as one of these typed exceptions. Only
ConcurrencyConflict is retryable (re-read, then retry with the fresh
version); every other kind is terminal for the call that raised it.
"""
from typing import Any, Dict, Optional


class CoreError(Exception):
    """Base class for all core failures.

    Attributes:
        message: Human readable description
        code: Stable upper-snake identifier for programmatic handling
        details: Extra context (ids, versions, field errors)
    """

    code = "CORE_ERROR"
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class NotFound(CoreError):
    """No live (non-purged) row exists for the requested id."""

    code = "NOT_FOUND"


class TenantMismatch(CoreError):
    """The target row belongs to a tenant other than the caller's scope."""

    code = "TENANT_MISMATCH"


class ConcurrencyConflict(CoreError):
    """Expected version did not match the stored version."""

    code = "CONCURRENCY_CONFLICT"
    retryable = True


class AlreadyDeleted(CoreError):
    code = "ALREADY_DELETED"


class NotDeleted(CoreError):
    code = "NOT_DELETED"


class InvalidTransition(CoreError):
    """The requested work order status change is not in the transition table."""

    code = "INVALID_TRANSITION"


class Forbidden(CoreError):
    code = "FORBIDDEN"


class ValidationFailed(CoreError):
    """Payload rejected before any write was attempted."""

    code = "VALIDATION_FAILED"

    def __init__(self, message: str, errors: Optional[list] = None, details: Optional[Dict[str, Any]] = None):
        details = dict(details or {})
        details["errors"] = list(errors or [message])
        super().__init__(message, details)
        self.errors = details["errors"]


class OperationTimeout(CoreError):
    """A caller-supplied deadline elapsed; the whole operation was rolled back."""

    code = "OPERATION_TIMEOUT"
