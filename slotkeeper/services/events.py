"""
Domain event emission.

Events are generated exactly once per committed transition and pushed to
subscribed sinks through an in-memory outbox. Delivery to downstream
collaborators is at-least-once: an event stays in the outbox until every
sink accepted it, and ``flush()`` retries.
"""

import logging
import threading
import uuid
from collections import deque
from typing import Deque, Iterable, List, Optional, Protocol, Set

from ..domain.models import (
    Appointment,
    AppointmentStatus,
    DomainEvent,
    EventType,
)

logger = logging.getLogger(__name__)


class EventSink(Protocol):
    """Downstream consumer of domain events (notifications, calendar sync...)."""

    def publish(self, event: DomainEvent) -> None:
        """Accept one event; raise to have it redelivered later."""


class RecordingSink:
    """Sink that keeps every event in memory."""

    def __init__(self):
        self.events: List[DomainEvent] = []
        self._lock = threading.Lock()

    def publish(self, event: DomainEvent) -> None:
        with self._lock:
            self.events.append(event)

    def types(self) -> List[EventType]:
        with self._lock:
            return [event.type for event in self.events]

    def for_appointment(self, appointment_id: str) -> List[DomainEvent]:
        with self._lock:
            return [event for event in self.events if event.appointment_id == appointment_id]


def causality_token(appointment: Appointment) -> str:
    return f"{appointment.appointment_id}:{appointment.version}"


class EventEmitter:
    """
    Generates and publishes DomainEvents.

    Callers must only hand over appointments that are already committed;
    the emitter never sees a state that did not persist.

    Duplicate detection remembers the causality tokens of the last
    ``dedupe_window`` emitted events plus everything still in the outbox.
    """

    def __init__(self, sinks: Optional[Iterable[EventSink]] = None, dedupe_window: int = 10_000):
        if dedupe_window < 1:
            raise ValueError("dedupe_window must be at least 1")

        self._sinks: List[EventSink] = list(sinks or [])
        self._outbox: Deque[DomainEvent] = deque()
        self.dedupe_window = dedupe_window
        self._recent: Deque[str] = deque()
        self._recent_set: Set[str] = set()
        self._lock = threading.Lock()

    def subscribe(self, sink: EventSink) -> None:
        with self._lock:
            self._sinks.append(sink)

    @property
    def pending(self) -> int:
        """Number of events waiting for (re)delivery."""
        with self._lock:
            return len(self._outbox)

    @property
    def remembered(self) -> int:
        """Number of causality tokens kept for duplicate detection."""
        with self._lock:
            return len(self._recent_set)

    def record(
        self,
        appointment: Appointment,
        previous_status: Optional[AppointmentStatus],
    ) -> Optional[DomainEvent]:
        """
        Build the event for a committed appointment and emit it.

        ``previous_status`` is None for a newly created appointment.
        Returns None when the transition was already emitted.
        """
        if previous_status is None:
            event_type = EventType.CREATED
        else:
            event_type = EventType(appointment.status.value)

        event = DomainEvent(
            type=event_type,
            appointment_id=appointment.appointment_id,
            professional_id=appointment.professional_id,
            patient_id=appointment.patient_id,
            start=appointment.start,
            end=appointment.end,
            previous_status=previous_status,
            new_status=appointment.status,
            timestamp=appointment.updated_at,
            causality_token=causality_token(appointment),
            rescheduled_from=appointment.rescheduled_from if previous_status is None else None,
            event_id=uuid.uuid4().hex,
        )

        return event if self.emit(event) else None

    def emit(self, event: DomainEvent) -> bool:
        """
        Queue an event and try to deliver it.

        Returns False if an event with the same causality token was emitted
        before; that event is not generated again.
        """
        with self._lock:
            if self._seen_locked(event.causality_token):
                logger.warning("Ignoring duplicate event %s", event.causality_token)
                return False

            self._remember_locked(event.causality_token)
            self._outbox.append(event)
            logger.info(
                "Event %s for appointment %s (%s -> %s)",
                event.type.value,
                event.appointment_id,
                event.previous_status.value if event.previous_status else "-",
                event.new_status.value,
            )
            self._deliver_locked()

        return True

    def flush(self) -> int:
        """Retry delivery of queued events. Returns how many were delivered."""
        with self._lock:
            return self._deliver_locked()

    def _seen_locked(self, token: str) -> bool:
        if token in self._recent_set:
            return True
        return any(queued.causality_token == token for queued in self._outbox)

    def _remember_locked(self, token: str) -> None:
        self._recent.append(token)
        self._recent_set.add(token)
        while len(self._recent) > self.dedupe_window:
            self._recent_set.discard(self._recent.popleft())

    def _deliver_locked(self) -> int:
        delivered = 0

        while self._outbox:
            event = self._outbox[0]
            try:
                for sink in self._sinks:
                    sink.publish(event)
            except Exception:
                logger.exception(
                    "Delivery of event %s failed, %d event(s) kept for redelivery",
                    event.causality_token,
                    len(self._outbox),
                )
                break

            self._outbox.popleft()
            delivered += 1

        return delivered
