"""
Error taxonomy for privileged operations.

Each error carries a machine-readable kind, a short user-facing message and
the HTTP status class the web layer should answer with.
"""

from typing import Optional


class BreakGlassError(Exception):
    """Base class for errors surfaced to callers of the break-glass engine."""

    kind = "Error"
    status_code = 500
    retryable = False

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    default_message = "Internal error"

    def to_dict(self) -> dict:
        return {"error": self.message, "kind": self.kind}


class Unauthenticated(BreakGlassError):
    """No valid session or identity."""
    kind = "Unauthenticated"
    status_code = 401
    default_message = "Unauthorized"


class Forbidden(BreakGlassError):
    """Authenticated, but lacking the permission or ownership required."""
    kind = "Forbidden"
    status_code = 403
    default_message = "Forbidden"


class ValidationFailed(BreakGlassError):
    """Missing or empty required input."""
    kind = "ValidationFailed"
    status_code = 400
    default_message = "Invalid request"


class NotFound(BreakGlassError):
    """Subject user does not exist."""
    kind = "NotFound"
    status_code = 404
    default_message = "Not found"


class PreconditionFailed(BreakGlassError):
    """Subject is not in a state that allows the operation."""
    kind = "PreconditionFailed"
    status_code = 400
    default_message = "Precondition failed"


class TransactionTimeout(BreakGlassError):
    """The transactional store did not finish within its wait/execution ceiling."""
    kind = "Timeout"
    status_code = 503
    retryable = True
    default_message = "The operation timed out, please retry"


class AuditWriteFailed(BreakGlassError):
    """
    Internal only: an audit entry could not be written.

    Always caught inside the audit sink, never surfaced to callers.
    """
    kind = "AuditWriteFailed"
    default_message = "Failed to write audit entry"
