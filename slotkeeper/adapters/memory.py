"""
In-memory availability repository and appointment store.
"""

import threading
from contextlib import contextmanager
from datetime import date
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from ..domain.exceptions import (
    AppointmentNotFoundError,
    StaleVersionError,
    StorageError,
    ValidationError,
)
from ..domain.models import (
    Appointment,
    AvailabilityException,
    AvailabilityTemplate,
    EntityId,
    TimeRange,
)


class InMemoryAvailabilityRepository:
    """Holds published templates and exceptions, keyed by professional."""

    def __init__(
        self,
        templates: Iterable[AvailabilityTemplate] = (),
        exceptions: Iterable[AvailabilityException] = (),
    ):
        self._templates: Dict[EntityId, List[AvailabilityTemplate]] = {}
        self._exceptions: Dict[EntityId, List[AvailabilityException]] = {}
        self._lock = threading.Lock()

        for template in templates:
            self.add_template(template)
        for exception in exceptions:
            self.add_exception(exception)

    def add_template(self, template: AvailabilityTemplate) -> None:
        with self._lock:
            self._templates.setdefault(template.professional_id, []).append(template)

    def add_exception(self, exception: AvailabilityException) -> None:
        with self._lock:
            self._exceptions.setdefault(exception.professional_id, []).append(exception)

    def professionals(self) -> List[EntityId]:
        with self._lock:
            return sorted(self._templates.keys(), key=str)

    def templates_for(self, professional_id: EntityId) -> List[AvailabilityTemplate]:
        with self._lock:
            return list(self._templates.get(professional_id, []))

    def exceptions_for(
        self,
        professional_id: EntityId,
        start_date: date,
        end_date: date,
    ) -> List[AvailabilityException]:
        with self._lock:
            return [
                exception
                for exception in self._exceptions.get(professional_id, [])
                if exception.start_date <= end_date and exception.end_date >= start_date
            ]


class InMemoryAppointmentStore:
    """
    Appointment store backed by dictionaries.

    ``apply`` is the only write path: it validates every insert and
    versioned update first and then applies all of them, so a batch is
    either fully visible or not at all.
    """

    def __init__(self, appointments: Iterable[Appointment] = ()):
        self._appointments: Dict[str, Appointment] = {}
        self._tokens: Dict[str, str] = {}
        self._lock = threading.RLock()

        for appointment in appointments:
            self._put(appointment)

    def _put(self, appointment: Appointment) -> None:
        self._appointments[appointment.appointment_id] = appointment
        if appointment.idempotency_token:
            self._tokens[appointment.idempotency_token] = appointment.appointment_id

    def get(self, appointment_id: str) -> Appointment:
        with self._lock:
            appointment = self._appointments.get(appointment_id)
        if appointment is None:
            raise AppointmentNotFoundError(
                "Appointment not found", appointment_id=appointment_id
            )
        return appointment

    def list_all(self) -> List[Appointment]:
        with self._lock:
            return sorted(self._appointments.values(), key=lambda a: (a.start, a.appointment_id))

    def list_for_professional(
        self,
        professional_id: EntityId,
        window: Optional[TimeRange] = None,
    ) -> List[Appointment]:
        """Appointments of a professional, optionally only those overlapping ``window``."""
        return [
            appointment
            for appointment in self.list_all()
            if appointment.professional_id == professional_id
            and (window is None or appointment.time_range.overlaps(window))
        ]

    @contextmanager
    def exclusive(self) -> Iterator[None]:
        """Nothing to coordinate with outside this process."""
        yield

    def find_by_idempotency_token(self, token: str) -> Optional[Appointment]:
        with self._lock:
            appointment_id = self._tokens.get(token)
            return self._appointments.get(appointment_id) if appointment_id else None

    def insert(self, appointment: Appointment) -> None:
        self.apply(inserts=[appointment])

    def update(self, appointment: Appointment, expected_version: int) -> None:
        self.apply(updates=[(appointment, expected_version)])

    def apply(
        self,
        inserts: Sequence[Appointment] = (),
        updates: Sequence[Tuple[Appointment, int]] = (),
    ) -> None:
        """
        Atomically insert new appointments and compare-and-set updates.

        Raises:
            StaleVersionError: If an update's expected version is not current
            ValidationError: If an insert reuses an ID or idempotency token
            AppointmentNotFoundError: If an update targets an unknown ID
            StorageError: If the backing storage cannot be written
        """
        with self._lock:
            for appointment, expected_version in updates:
                current = self._appointments.get(appointment.appointment_id)
                if current is None:
                    raise AppointmentNotFoundError(
                        "Appointment not found", appointment_id=appointment.appointment_id
                    )
                if current.version != expected_version:
                    raise StaleVersionError(
                        "Appointment was modified concurrently",
                        appointment_id=appointment.appointment_id,
                        expected_version=expected_version,
                        current_version=current.version,
                    )

            for appointment in inserts:
                if appointment.appointment_id in self._appointments:
                    raise ValidationError(
                        "Appointment ID already exists",
                        appointment_id=appointment.appointment_id,
                    )
                token = appointment.idempotency_token
                if token and token in self._tokens:
                    raise ValidationError(
                        "Idempotency token already used", idempotency_token=token
                    )

            snapshot = (dict(self._appointments), dict(self._tokens))

            for appointment, _ in updates:
                self._put(appointment)
            for appointment in inserts:
                self._put(appointment)

            try:
                self._persist()
            except StorageError:
                self._appointments, self._tokens = snapshot
                raise

    def _persist(self) -> None:
        """Hook for durable subclasses; called with the lock held after a write."""
