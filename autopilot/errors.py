"""
Error taxonomy for the autopilot engine.

Every failure the engine surfaces is an AutopilotError carrying an
ErrorType so callers can decide between rejecting, redirecting to a
Suggestion, retrying, or reporting a generic failure.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorType(Enum):
    """Classification used to pick a handling policy."""
    VALIDATION = "validation"
    PERMISSION_DENIED = "permission_denied"
    NOT_FOUND = "not_found"
    PROCESSING = "processing"
    CONFLICT = "conflict"
    UNKNOWN = "unknown"


class Severity(Enum):
    CRITICAL = "critical"
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class AutopilotError(Exception):
    """Base error with type, severity, optional cause and context."""

    error_type = ErrorType.UNKNOWN
    retryable = False

    def __init__(
        self,
        message: str,
        severity: Severity = Severity.ERROR,
        cause: Optional[BaseException] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.severity = severity
        self.cause = cause
        self.context = context or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "type": self.error_type.value,
            "severity": self.severity.value,
            "retryable": self.retryable,
            "cause": repr(self.cause) if self.cause else None,
            "context": self.context,
        }


class ValidationError(AutopilotError):
    """Malformed input. Rejected immediately, never retried."""
    error_type = ErrorType.VALIDATION


class PermissionDeniedError(AutopilotError):
    """Raised when an owner's autonomy tier does not cover an action."""
    error_type = ErrorType.PERMISSION_DENIED

    def __init__(self, owner_id: str, action_type: str, message: Optional[str] = None):
        self.owner_id = owner_id
        self.action_type = action_type
        super().__init__(
            message or f"Owner '{owner_id}' has not authorized autonomous '{action_type}'",
            severity=Severity.WARNING,
            context={"owner_id": owner_id, "action_type": action_type},
        )


class NotFoundError(AutopilotError):
    """A referenced entity is missing."""
    error_type = ErrorType.NOT_FOUND

    def __init__(self, collection: str, doc_id: str):
        self.collection = collection
        self.doc_id = doc_id
        super().__init__(
            f"{collection}/{doc_id} not found",
            context={"collection": collection, "doc_id": doc_id},
        )


class ProcessingError(AutopilotError):
    """A collaborator call failed; may be retried under the step ceiling."""
    error_type = ErrorType.PROCESSING

    def __init__(self, message: str, retryable: bool = True, **kwargs):
        super().__init__(message, **kwargs)
        self.retryable = retryable


class ConflictError(AutopilotError):
    """An optimistic write kept losing to concurrent writers."""
    error_type = ErrorType.CONFLICT
    retryable = True


def wrap_unknown(exc: BaseException, message: str = "Unexpected failure", **context) -> AutopilotError:
    """Return exc unchanged if already typed, otherwise wrap it as UNKNOWN."""
    if isinstance(exc, AutopilotError):
        return exc
    return AutopilotError(message, cause=exc, context=context)
