"""
Domain-specific exception hierarchy for the scheduling core.

Every error carries a stable ``code`` (used by callers and the CLI) and a
``context`` mapping with whatever the caller needs to act on it: the
professional, the requested interval, the current version.
"""

from typing import Any, Dict


class SchedulingError(Exception):
    """Base class for all scheduling errors."""

    code = "SCHEDULING_ERROR"
    retryable = False
    is_business_rejection = False

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context

    def __str__(self) -> str:
        if not self.context:
            return self.message
        details = ", ".join(f"{key}={value}" for key, value in self.context.items())
        return f"{self.message} ({details})"


class ValidationError(SchedulingError, ValueError):
    """Raised for malformed or out-of-policy input."""

    code = "VALIDATION"


class AppointmentNotFoundError(SchedulingError):
    """Raised when an appointment ID does not exist in the store."""

    code = "NOT_FOUND"


class ConflictError(SchedulingError):
    """Raised when the requested slot is no longer free."""

    code = "CONFLICT"
    is_business_rejection = True


class BusyError(SchedulingError):
    """Raised when the professional's guard could not be acquired in time."""

    code = "BUSY"
    retryable = True


class StaleVersionError(SchedulingError):
    """Raised when a transition carries an outdated version."""

    code = "STALE_VERSION"


class PolicyViolationError(SchedulingError):
    """Raised when a time-window policy blocks a transition."""

    code = "POLICY_VIOLATION"
    is_business_rejection = True


class InvalidTransitionError(SchedulingError):
    """Raised when the state machine does not allow the requested move."""

    code = "INVALID_TRANSITION"


class ReservationAbortedError(SchedulingError):
    """Raised when the caller aborted a reservation before it committed."""

    code = "ABORTED"
    retryable = True


class StorageError(SchedulingError):
    """Raised when the appointment store cannot be read or written."""

    code = "STORAGE_FAILURE"
    retryable = True
