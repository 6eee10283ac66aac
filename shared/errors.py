"""
Error taxonomy for the coordination core.

Every error that leaves a service is an AppError carrying a machine-readable
code, a severity and enough context for the caller to build an actionable
message. Both persistence backends raise the same subclasses so callers never
need to know which one is active.

Propagation policy:
- Primary actions (send a message, book an appointment) raise to the caller
- Secondary side effects (notifications, broadcasts) are logged and swallowed
"""

from enum import Enum
from typing import Any, Optional


class ErrorCode(str, Enum):
    """Machine-readable error kinds."""
    NOT_FOUND = "NOT_FOUND"
    APPOINTMENT_COLLISION = "APPOINTMENT_COLLISION"
    FORBIDDEN = "FORBIDDEN"
    UNAUTHORIZED = "UNAUTHORIZED"
    VALIDATION = "VALIDATION"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    UNKNOWN = "UNKNOWN"


class ErrorSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AppError(Exception):
    """
    Base class for all errors raised by the coordination core.

    Attributes:
        message: Human-readable, safe to show to end users
        code: ErrorCode for programmatic handling
        severity: How loudly the caller should surface it
        context: Operation name and any identifiers involved
    """

    retryable: bool = False

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.UNKNOWN,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        context: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = ErrorCode(code)
        self.severity = ErrorSeverity(severity)
        self.context = dict(context or {})

    def __str__(self) -> str:
        return f"[{self.code.value}] {self.message}"

    def to_dict(self) -> dict[str, Any]:
        """Serialise for API responses and logs."""
        return {
            "code": self.code.value,
            "message": self.message,
            "severity": self.severity.value,
            "retryable": self.retryable,
            "context": self.context,
        }


class NotFoundError(AppError):
    def __init__(self, message: str, context: Optional[dict[str, Any]] = None):
        super().__init__(message, ErrorCode.NOT_FOUND, ErrorSeverity.ERROR, context)


class AppointmentCollisionError(AppError):
    """
    The requested slot overlaps an active appointment of the same provider.

    This is user-correctable: picking another time resolves it, so it is
    reported as a warning and flagged retryable.
    """

    retryable = True

    def __init__(
        self,
        message: str = "This time slot is no longer available. Please pick another time.",
        context: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message, ErrorCode.APPOINTMENT_COLLISION, ErrorSeverity.WARNING, context)


class ForbiddenError(AppError):
    def __init__(self, message: str, context: Optional[dict[str, Any]] = None):
        super().__init__(message, ErrorCode.FORBIDDEN, ErrorSeverity.ERROR, context)


class UnauthorizedError(AppError):
    def __init__(self, message: str, context: Optional[dict[str, Any]] = None):
        super().__init__(message, ErrorCode.UNAUTHORIZED, ErrorSeverity.ERROR, context)


class ValidationError(AppError):
    def __init__(self, message: str, context: Optional[dict[str, Any]] = None):
        super().__init__(message, ErrorCode.VALIDATION, ErrorSeverity.WARNING, context)


class InvalidTransitionError(AppError):
    def __init__(self, message: str, context: Optional[dict[str, Any]] = None):
        super().__init__(message, ErrorCode.INVALID_TRANSITION, ErrorSeverity.WARNING, context)


def wrap_unexpected(exc: Exception, operation: str) -> AppError:
    """
    Wrap an unexpected exception as AppError(UNKNOWN).

    AppErrors pass through untouched so their code survives.
    """
    if isinstance(exc, AppError):
        return exc
    return AppError(
        f"Unexpected failure during {operation}",
        ErrorCode.UNKNOWN,
        ErrorSeverity.ERROR,
        {"operation": operation, "cause": repr(exc)},
    )
