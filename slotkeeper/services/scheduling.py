"""
Application service exposing the scheduling core to callers.

The service wires the pure domain pieces (rule engine, allocator, state
machine) to the reservation coordinator and translates between the external
request/response shapes and domain objects. Storage and event sinks are
injected.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from itertools import groupby
from typing import Callable, Iterable, List, Optional, Protocol

from pendulum import DateTime

from ..domain.exceptions import ValidationError
from ..domain.models import (
    Appointment,
    AppointmentStatus,
    AvailabilityException,
    AvailabilityTemplate,
    EntityId,
    Slot,
    resolve_timezone,
)
from ..domain.rule_engine import (
    DEFAULT_MAX_RANGE_DAYS,
    AvailabilityRepository,
    AvailabilityRuleEngine,
)
from ..domain.slot_allocator import SlotAllocator
from ..domain.state_machine import AppointmentStateMachine
from .events import EventEmitter, EventSink
from .locks import ProfessionalLocks
from .reservation import AppointmentStore, ReservationCoordinator, as_datetime, utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReservationResult:
    appointment_id: str
    status: AppointmentStatus
    version: int

    @classmethod
    def from_appointment(cls, appointment: Appointment) -> "ReservationResult":
        return cls(appointment.appointment_id, appointment.status, appointment.version)


@dataclass(frozen=True)
class TransitionResult:
    appointment_id: str
    status: AppointmentStatus
    version: int

    @classmethod
    def from_appointment(cls, appointment: Appointment) -> "TransitionResult":
        return cls(appointment.appointment_id, appointment.status, appointment.version)


class AvailabilityStore(AvailabilityRepository, Protocol):
    """Availability repository that also accepts new templates and exceptions."""

    def add_template(self, template: AvailabilityTemplate) -> None:
        """Publish a template."""

    def add_exception(self, exception: AvailabilityException) -> None:
        """Record an exception."""


class SchedulingService:
    """
    Facade for availability queries, reservations and state transitions.

    Availability queries are pure reads and never take a lock; all writes
    go through the ReservationCoordinator.
    """

    def __init__(
        self,
        availability: AvailabilityStore,
        store: AppointmentStore,
        *,
        max_range_days: int = DEFAULT_MAX_RANGE_DAYS,
        cancellation_window: timedelta = timedelta(hours=24),
        auto_confirm: bool = False,
        pending_expiry: Optional[timedelta] = timedelta(minutes=30),
        lock_timeout: float = 2.0,
        sinks: Iterable[EventSink] = (),
        clock: Callable[[], DateTime] = utc_now,
    ) -> None:
        self.availability = availability
        self.store = store
        self.clock = clock
        self.rule_engine = AvailabilityRuleEngine(availability, max_range_days=max_range_days)
        self.allocator = SlotAllocator()
        self.emitter = EventEmitter(sinks)
        self.coordinator = ReservationCoordinator(
            store=store,
            rule_engine=self.rule_engine,
            allocator=self.allocator,
            state_machine=AppointmentStateMachine(cancellation_window),
            emitter=self.emitter,
            locks=ProfessionalLocks(timeout=lock_timeout),
            auto_confirm=auto_confirm,
            pending_expiry=pending_expiry,
            clock=clock,
        )

    def available_slots(
        self,
        professional_id: EntityId,
        start: datetime,
        end: datetime,
        timezone: Optional[str] = None,
    ) -> List[Slot]:
        """
        Return the FREE slots lying completely inside ``[start, end)``.

        Slots that have already started are left out. Slots are reported in
        ``timezone`` (default: the professional's template timezone).

        Raises:
            ValidationError: Inverted or too long range, unknown timezone
        """
        start = as_datetime(start, "start")
        end = as_datetime(end, "end")
        if timezone is not None:
            resolve_timezone(timezone)

        expansion = self.rule_engine.expand_local_days(professional_id, start, end)
        if start == end:
            return []

        output_timezone = timezone or self.rule_engine.timezone_for(professional_id, start)

        appointments = self.store.list_for_professional(professional_id)
        now = self.clock()
        slots: List[Slot] = []

        # Consecutive candidates share a template unless a new one took effect.
        for template, group in groupby(expansion, key=lambda candidate: candidate.template):
            slots.extend(
                self.allocator.free_slots(
                    [candidate.time_range for candidate in group],
                    appointments,
                    template.slot_duration,
                    buffer_before=template.buffer_before,
                    buffer_after=template.buffer_after,
                    gap=template.gap,
                )
            )

        return [
            slot.in_timezone(output_timezone)
            for slot in slots
            if start <= slot.start and slot.end <= end and slot.start > now
        ]

    def reserve(
        self,
        professional_id: EntityId,
        patient_id: EntityId,
        slot_start: datetime,
        slot_end: datetime,
        idempotency_token: Optional[str] = None,
    ) -> ReservationResult:
        appointment = self.coordinator.reserve(
            professional_id,
            patient_id,
            slot_start,
            slot_end,
            idempotency_token=idempotency_token,
        )
        return ReservationResult.from_appointment(appointment)

    def transition(
        self,
        appointment_id: str,
        version: int,
        target_status: AppointmentStatus,
        reason: Optional[str] = None,
    ) -> TransitionResult:
        appointment = self.coordinator.transition(appointment_id, version, target_status, reason=reason)
        return TransitionResult.from_appointment(appointment)

    def cancel(self, appointment_id: str, version: int, reason: Optional[str] = None) -> TransitionResult:
        return self.transition(appointment_id, version, AppointmentStatus.CANCELLED, reason=reason)

    def reschedule(
        self,
        appointment_id: str,
        version: int,
        new_start: datetime,
        new_end: datetime,
        idempotency_token: Optional[str] = None,
    ) -> ReservationResult:
        appointment = self.coordinator.reschedule(
            appointment_id,
            version,
            new_start,
            new_end,
            idempotency_token=idempotency_token,
        )
        return ReservationResult.from_appointment(appointment)

    def expire_pending(self, professional_id: Optional[EntityId] = None) -> List[Appointment]:
        return self.coordinator.expire_pending(professional_id)

    def get_appointment(self, appointment_id: str) -> Appointment:
        return self.store.get(appointment_id)

    def appointments_for(self, professional_id: EntityId) -> List[Appointment]:
        return self.store.list_for_professional(professional_id)

    def publish_template(self, template: AvailabilityTemplate) -> None:
        """
        Publish a new availability template for a professional.

        Templates apply prospectively only: once a professional has active
        appointments, a new template must take effect after the last booked
        day.

        Raises:
            ValidationError: If the template would change already booked days
        """
        active = [
            appointment
            for appointment in self.store.list_for_professional(template.professional_id)
            if appointment.blocks_time
        ]

        if active:
            last_booked_day = max(
                appointment.end.in_timezone(template.timezone).date() for appointment in active
            )
            if template.effective_from is None or template.effective_from <= last_booked_day:
                raise ValidationError(
                    "Template must take effect after the last booked day",
                    professional_id=template.professional_id,
                    last_booked_day=last_booked_day.isoformat(),
                )

        self.availability.add_template(template)
        logger.info(
            "Published template for professional %s effective from %s",
            template.professional_id,
            template.effective_from or "the beginning",
        )

    def add_exception(self, exception: AvailabilityException) -> None:
        """Record a BLOCK or ADD exception; existing appointments are kept."""
        self.availability.add_exception(exception)
        logger.info(
            "Added %s exception for professional %s (%s - %s)",
            exception.kind.value,
            exception.professional_id,
            exception.start_date,
            exception.end_date,
        )
