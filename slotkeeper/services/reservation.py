"""
Reservation coordinator.

Owns every write to the appointment store. Each write runs inside the
professional's guard and the store's exclusive section as a single
check-and-commit unit. The matching domain events are emitted after that
unit has committed, before the guard is released, so consumers see one
professional's events in commit order.
"""

import logging
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Callable, ContextManager, Iterator, List, Optional, Protocol, Sequence, Tuple

import pendulum
from pendulum import DateTime

from ..domain.exceptions import (
    ConflictError,
    ReservationAbortedError,
    ValidationError,
)
from ..domain.models import (
    Appointment,
    AppointmentStatus,
    EntityId,
    TimeRange,
)
from ..domain.rule_engine import AvailabilityRuleEngine
from ..domain.slot_allocator import SlotAllocator
from ..domain.state_machine import AppointmentStateMachine
from .events import EventEmitter
from .locks import ProfessionalLocks

logger = logging.getLogger(__name__)

# (committed appointment, status before the commit; None for a new appointment)
Committed = Tuple[Appointment, Optional[AppointmentStatus]]


class AppointmentStore(Protocol):
    """Protocol describing the appointment storage needed by the coordinator."""

    def get(self, appointment_id: str) -> Appointment:
        """Return the appointment or raise AppointmentNotFoundError."""

    def list_all(self) -> List[Appointment]:
        """Return every appointment."""

    def list_for_professional(
        self,
        professional_id: EntityId,
        window: Optional[TimeRange] = None,
    ) -> List[Appointment]:
        """Return a professional's appointments, optionally overlapping ``window``."""

    def find_by_idempotency_token(self, token: str) -> Optional[Appointment]:
        """Return the appointment created with ``token``, if any."""

    def exclusive(self) -> ContextManager[None]:
        """Serialize writers sharing the underlying storage; reads inside see its latest state."""

    def insert(self, appointment: Appointment) -> None:
        """Store a new appointment."""

    def update(self, appointment: Appointment, expected_version: int) -> None:
        """Compare-and-set an appointment against ``expected_version``."""

    def apply(
        self,
        inserts: Sequence[Appointment] = (),
        updates: Sequence[Tuple[Appointment, int]] = (),
    ) -> None:
        """Atomically apply inserts and versioned updates."""


def utc_now() -> DateTime:
    return pendulum.now("UTC")


def as_datetime(value: datetime, name: str) -> DateTime:
    """Accept pendulum or stdlib datetimes, rejecting naive ones."""
    if value.tzinfo is None:
        raise ValidationError(f"{name} must be timezone-aware", **{name: value})
    if isinstance(value, DateTime):
        return value
    return pendulum.instance(value)


def requested_range(start: datetime, end: datetime) -> TimeRange:
    start = as_datetime(start, "start")
    end = as_datetime(end, "end")
    if start >= end:
        raise ValidationError(
            "Slot start must be before its end",
            start=start.to_iso8601_string(),
            end=end.to_iso8601_string(),
        )
    return TimeRange(start=start, end=end)


class ReservationCoordinator:
    """
    Atomic reservation, transition and rescheduling of appointments.

    Two requests touching the same professional are serialized by
    ProfessionalLocks; requests for different professionals run in parallel.
    Every reservation re-validates the slot against freshly expanded rules
    and the current appointments, never against a list the client saw.
    """

    def __init__(
        self,
        store: AppointmentStore,
        rule_engine: AvailabilityRuleEngine,
        allocator: Optional[SlotAllocator] = None,
        state_machine: Optional[AppointmentStateMachine] = None,
        emitter: Optional[EventEmitter] = None,
        locks: Optional[ProfessionalLocks] = None,
        auto_confirm: bool = False,
        pending_expiry: Optional[timedelta] = timedelta(minutes=30),
        clock: Callable[[], DateTime] = utc_now,
    ):
        self.store = store
        self.rule_engine = rule_engine
        self.allocator = allocator or SlotAllocator()
        self.state_machine = state_machine or AppointmentStateMachine()
        self.emitter = emitter or EventEmitter()
        self.locks = locks or ProfessionalLocks()
        self.auto_confirm = auto_confirm
        self.pending_expiry = pending_expiry
        self.clock = clock

    @property
    def initial_status(self) -> AppointmentStatus:
        return AppointmentStatus.CONFIRMED if self.auto_confirm else AppointmentStatus.PENDING

    def reserve(
        self,
        professional_id: EntityId,
        patient_id: EntityId,
        start: datetime,
        end: datetime,
        idempotency_token: Optional[str] = None,
        abort: Optional[threading.Event] = None,
    ) -> Appointment:
        """
        Reserve a slot and return the new appointment.

        A repeated ``idempotency_token`` for the same professional and slot
        returns the appointment created by the first call. Setting ``abort``
        before the commit cancels the request without any state change.

        Raises:
            ValidationError: Malformed request or slot outside availability
            ConflictError: Slot is no longer free
            BusyError: Professional guard not acquired in time
            ReservationAbortedError: ``abort`` was set before the commit
            StorageError: Store could not be written
        """
        requested = requested_range(start, end)

        with self._write_unit(professional_id) as committed:
            if idempotency_token:
                existing = self.store.find_by_idempotency_token(idempotency_token)
                if existing is not None:
                    return self._replay(existing, professional_id, requested)

            now = self.clock()
            committed.extend(self._expire_locked(professional_id, now))
            self._check_slot(professional_id, requested, now)
            self._check_abort(abort, professional_id, requested)

            appointment = Appointment(
                appointment_id=uuid.uuid4().hex,
                professional_id=professional_id,
                patient_id=patient_id,
                start=requested.start,
                end=requested.end,
                status=self.initial_status,
                created_at=now,
                updated_at=now,
                version=0,
                idempotency_token=idempotency_token,
            )
            self.store.insert(appointment)
            committed.append((appointment, None))

        logger.info(
            "Reserved %s for professional %s, patient %s (%s)",
            requested,
            professional_id,
            patient_id,
            appointment.status.value,
        )
        return appointment

    def transition(
        self,
        appointment_id: str,
        expected_version: int,
        target: AppointmentStatus,
        reason: Optional[str] = None,
    ) -> Appointment:
        """
        Move an appointment to ``target`` through the state machine.

        Raises:
            AppointmentNotFoundError: Unknown appointment
            StaleVersionError: ``expected_version`` is outdated
            InvalidTransitionError: No such edge in the state machine
            PolicyViolationError: Time-window policy forbids it now
            BusyError: Professional guard not acquired in time
        """
        professional_id = self.store.get(appointment_id).professional_id

        with self._write_unit(professional_id) as committed:
            current = self.store.get(appointment_id)
            updated = self.state_machine.transition(
                current, target, expected_version, self.clock(), reason=reason
            )
            self.store.update(updated, expected_version)
            committed.append((updated, current.status))

        logger.info(
            "Appointment %s moved %s -> %s (version %d)",
            appointment_id,
            current.status.value,
            updated.status.value,
            updated.version,
        )
        return updated

    def reschedule(
        self,
        appointment_id: str,
        expected_version: int,
        new_start: datetime,
        new_end: datetime,
        idempotency_token: Optional[str] = None,
        abort: Optional[threading.Event] = None,
    ) -> Appointment:
        """
        Cancel an appointment and reserve a new slot as one unit.

        The old appointment is never moved in place. Either both the
        cancellation and the new reservation commit, or neither does. The
        new slot may overlap the appointment being replaced.

        Returns:
            The newly created appointment
        """
        requested = requested_range(new_start, new_end)
        professional_id = self.store.get(appointment_id).professional_id

        with self._write_unit(professional_id) as committed:
            if idempotency_token:
                existing = self.store.find_by_idempotency_token(idempotency_token)
                if existing is not None:
                    return self._replay(
                        existing, professional_id, requested, rescheduled_from=appointment_id
                    )

            now = self.clock()
            committed.extend(self._expire_locked(professional_id, now))

            current = self.store.get(appointment_id)
            cancelled = self.state_machine.transition(
                current,
                AppointmentStatus.CANCELLED,
                expected_version,
                now,
                reason="rescheduled",
            )
            self._check_slot(professional_id, requested, now, ignore_id=appointment_id)
            self._check_abort(abort, professional_id, requested)

            status = (
                AppointmentStatus.CONFIRMED
                if current.status is AppointmentStatus.CONFIRMED
                else self.initial_status
            )
            replacement = Appointment(
                appointment_id=uuid.uuid4().hex,
                professional_id=professional_id,
                patient_id=current.patient_id,
                start=requested.start,
                end=requested.end,
                status=status,
                created_at=now,
                updated_at=now,
                version=0,
                idempotency_token=idempotency_token,
                rescheduled_from=appointment_id,
            )
            self.store.apply(inserts=[replacement], updates=[(cancelled, expected_version)])
            committed.append((cancelled, current.status))
            committed.append((replacement, None))

        logger.info(
            "Rescheduled appointment %s to %s as %s",
            appointment_id,
            requested,
            replacement.appointment_id,
        )
        return replacement

    def expire_pending(self, professional_id: Optional[EntityId] = None) -> List[Appointment]:
        """
        Cancel PENDING appointments that were not confirmed in time.

        Returns the cancelled appointments.
        """
        if not self.pending_expiry:
            return []

        if professional_id is not None:
            professionals = [professional_id]
        else:
            with self.store.exclusive():
                pending = self.store.list_all()
            professionals = sorted(
                {
                    appointment.professional_id
                    for appointment in pending
                    if appointment.status is AppointmentStatus.PENDING
                },
                key=str,
            )

        expired: List[Appointment] = []
        for current_professional in professionals:
            with self._write_unit(current_professional) as committed:
                committed.extend(self._expire_locked(current_professional, self.clock()))
            expired.extend(appointment for appointment, _ in committed)

        return expired

    @contextmanager
    def _write_unit(self, professional_id: EntityId) -> Iterator[List[Committed]]:
        """
        Run one check-and-commit unit for a professional.

        The body appends what it committed; those events are published even
        when a later step fails, and always before the guard is released.
        """
        committed: List[Committed] = []
        with self.locks.guard(professional_id):
            try:
                with self.store.exclusive():
                    yield committed
            finally:
                self._publish(committed)

    def _expire_locked(self, professional_id: EntityId, now: DateTime) -> List[Committed]:
        if not self.pending_expiry:
            return []

        committed: List[Committed] = []
        for appointment in self.store.list_for_professional(professional_id):
            if appointment.status is not AppointmentStatus.PENDING:
                continue
            if now - appointment.created_at < self.pending_expiry:
                continue

            cancelled = self.state_machine.transition(
                appointment,
                AppointmentStatus.CANCELLED,
                appointment.version,
                now,
                enforce_window=False,
                reason="expired",
            )
            self.store.update(cancelled, appointment.version)
            committed.append((cancelled, appointment.status))
            logger.info("Expired unconfirmed appointment %s", appointment.appointment_id)

        return committed

    def _check_slot(
        self,
        professional_id: EntityId,
        requested: TimeRange,
        now: DateTime,
        ignore_id: Optional[str] = None,
    ) -> None:
        """Re-validate ``requested`` against current rules and appointments."""
        if requested.start <= now:
            raise ValidationError(
                "Cannot book a slot that has already started",
                professional_id=professional_id,
                requested=str(requested),
            )

        expansion = self.rule_engine.expand_local_days(
            professional_id, requested.start, requested.end
        )
        candidate = next(
            (c for c in expansion if c.time_range.contains(requested)),
            None,
        )
        if candidate is None:
            raise ValidationError(
                "Requested slot is outside the professional's availability",
                professional_id=professional_id,
                requested=str(requested),
            )

        template = candidate.template
        grid = self.allocator.partition(candidate.time_range, template.slot_duration, template.gap)
        if requested not in grid:
            raise ValidationError(
                "Requested interval does not match a bookable slot",
                professional_id=professional_id,
                requested=str(requested),
                slot_minutes=template.slot_minutes,
            )

        reach = template.buffer_before + template.buffer_after
        nearby = [
            appointment
            for appointment in self.store.list_for_professional(
                professional_id, requested.inflate(reach, reach)
            )
            if appointment.appointment_id != ignore_id
        ]
        slot = self.allocator.allocate(
            [requested],
            nearby,
            template.slot_duration,
            buffer_before=template.buffer_before,
            buffer_after=template.buffer_after,
        )[0]

        if not slot.is_free:
            logger.warning(
                "Slot %s of professional %s is no longer free", requested, professional_id
            )
            raise ConflictError(
                "Slot is no longer available",
                professional_id=professional_id,
                requested=str(requested),
            )

    @staticmethod
    def _check_abort(
        abort: Optional[threading.Event],
        professional_id: EntityId,
        requested: TimeRange,
    ) -> None:
        if abort is not None and abort.is_set():
            raise ReservationAbortedError(
                "Reservation aborted before commit",
                professional_id=professional_id,
                requested=str(requested),
            )

    @staticmethod
    def _replay(
        existing: Appointment,
        professional_id: EntityId,
        requested: TimeRange,
        rescheduled_from: Optional[str] = None,
    ) -> Appointment:
        if (
            existing.professional_id != professional_id
            or existing.time_range != requested
            or (rescheduled_from is not None and existing.rescheduled_from != rescheduled_from)
        ):
            raise ValidationError(
                "Idempotency token was already used for a different request",
                idempotency_token=existing.idempotency_token,
                professional_id=professional_id,
                requested=str(requested),
            )

        logger.info(
            "Returning appointment %s for repeated idempotency token",
            existing.appointment_id,
        )
        return existing

    def _publish(self, committed: List[Committed]) -> None:
        for appointment, previous_status in committed:
            self.emitter.record(appointment, previous_status)
