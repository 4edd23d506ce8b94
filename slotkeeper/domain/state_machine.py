"""
Appointment lifecycle.

PENDING -> CONFIRMED -> COMPLETED | NO_SHOW, with CANCELLED reachable from
both non-terminal states. Transitions are pure: the machine returns a new
Appointment and never touches storage.
"""

from datetime import timedelta
from typing import Dict, FrozenSet, Optional, Union

from pendulum import DateTime

from .exceptions import (
    InvalidTransitionError,
    PolicyViolationError,
    StaleVersionError,
    ValidationError,
)
from .models import Appointment, AppointmentStatus

ALLOWED_TRANSITIONS: Dict[AppointmentStatus, FrozenSet[AppointmentStatus]] = {
    AppointmentStatus.PENDING: frozenset(
        {AppointmentStatus.CONFIRMED, AppointmentStatus.CANCELLED}
    ),
    AppointmentStatus.CONFIRMED: frozenset(
        {AppointmentStatus.CANCELLED, AppointmentStatus.COMPLETED, AppointmentStatus.NO_SHOW}
    ),
}

OUTCOME_STATUSES = frozenset({AppointmentStatus.COMPLETED, AppointmentStatus.NO_SHOW})


class AppointmentStateMachine:
    """
    Enforces allowed transitions, time-window policies and versioning.

    Checks run in this order: version, transition table, time window. A
    stale caller therefore always learns to refetch before anything else.
    """

    def __init__(self, cancellation_window: timedelta = timedelta(hours=24)):
        if cancellation_window < timedelta(0):
            raise ValidationError("Cancellation window must not be negative")
        self.cancellation_window = cancellation_window

    @staticmethod
    def can_transition(current: AppointmentStatus, target: AppointmentStatus) -> bool:
        return target in ALLOWED_TRANSITIONS.get(current, frozenset())

    def cancellation_deadline(self, appointment: Appointment) -> DateTime:
        """Latest instant (exclusive) at which the appointment may still be cancelled."""
        return appointment.start - self.cancellation_window

    def transition(
        self,
        appointment: Appointment,
        target: Union[AppointmentStatus, str],
        expected_version: int,
        now: DateTime,
        *,
        enforce_window: bool = True,
        reason: Optional[str] = None,
    ) -> Appointment:
        """
        Apply a transition and return the updated appointment.

        Args:
            appointment: Current persisted state
            target: Requested status
            expected_version: Version the caller last read
            now: Current time
            enforce_window: False for system cancellations such as expiry
            reason: Stored with cancellations

        Raises:
            StaleVersionError: If expected_version is not the current version
            InvalidTransitionError: If the state machine has no such edge
            PolicyViolationError: If a time-window policy forbids it right now
        """
        if expected_version != appointment.version:
            raise StaleVersionError(
                "Appointment was modified concurrently",
                appointment_id=appointment.appointment_id,
                expected_version=expected_version,
                current_version=appointment.version,
            )

        try:
            target = AppointmentStatus(target)
        except ValueError as exc:
            raise InvalidTransitionError(
                f"Unknown appointment status: {target!r}",
                appointment_id=appointment.appointment_id,
            ) from exc

        if not self.can_transition(appointment.status, target):
            raise InvalidTransitionError(
                f"Cannot move appointment from {appointment.status.value} to {target.value}",
                appointment_id=appointment.appointment_id,
                current_status=appointment.status.value,
                current_version=appointment.version,
            )

        if target is AppointmentStatus.CANCELLED and enforce_window:
            deadline = self.cancellation_deadline(appointment)
            if now >= deadline:
                raise PolicyViolationError(
                    "Cancellation window has closed",
                    appointment_id=appointment.appointment_id,
                    professional_id=appointment.professional_id,
                    deadline=deadline.to_iso8601_string(),
                )

        if target in OUTCOME_STATUSES and now < appointment.end:
            raise PolicyViolationError(
                f"Appointment cannot be marked {target.value} before it has ended",
                appointment_id=appointment.appointment_id,
                professional_id=appointment.professional_id,
                end=appointment.end.to_iso8601_string(),
            )

        cancellation_reason = reason if target is AppointmentStatus.CANCELLED else None
        return appointment.with_status(target, now, cancellation_reason=cancellation_reason)
