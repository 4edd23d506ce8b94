"""
Domain models for availability rules, slots, appointments and events.
"""

from dataclasses import dataclass, field, replace
from datetime import date, time, timedelta
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Union

import pendulum
from pendulum import DateTime

from .exceptions import ValidationError

# Professionals and patients are owned elsewhere and referenced by opaque ID.
EntityId = Union[str, int]

EVENT_SCHEMA_VERSION = 1


def resolve_timezone(name: str):
    """Return the pendulum timezone for an IANA name or raise ValidationError."""
    try:
        return pendulum.timezone(name)
    except (ValueError, KeyError) as exc:
        raise ValidationError(f"Unknown timezone: {name!r}", timezone=name) from exc


def local_datetime(day: date, at: time, timezone: str) -> DateTime:
    """Combine a calendar date and a wall-clock time in the given timezone."""
    return pendulum.datetime(
        day.year, day.month, day.day, at.hour, at.minute, at.second, tz=timezone
    )


@dataclass(frozen=True)
class TimeRange:
    """
    Represents an immutable half-open time range ``[start, end)``.

    Invariant: start must be before end.
    """
    start: DateTime
    end: DateTime

    def __post_init__(self):
        if self.start >= self.end:
            raise ValidationError(
                f"Start time {self.start} must be before end time {self.end}"
            )

    def duration_minutes(self) -> int:
        """Return the duration in minutes."""
        return int((self.end - self.start).total_seconds() / 60)

    def overlaps(self, other: "TimeRange") -> bool:
        """Check if this range overlaps with another."""
        return self.start < other.end and self.end > other.start

    def contains(self, other: "TimeRange") -> bool:
        """Check if ``other`` lies completely within this range."""
        return self.start <= other.start and other.end <= self.end

    def intersect(self, other: "TimeRange") -> "TimeRange | None":
        """
        Calculate the intersection of two time ranges.
        Returns None if there is no overlap.
        """
        if not self.overlaps(other):
            return None

        start = max(self.start, other.start)
        end = min(self.end, other.end)

        return TimeRange(start=start, end=end)

    def inflate(self, before: timedelta, after: timedelta) -> "TimeRange":
        """Return the range padded by the given buffers."""
        return TimeRange(start=self.start - before, end=self.end + after)

    def in_timezone(self, timezone: str) -> "TimeRange":
        return TimeRange(
            start=self.start.in_timezone(timezone),
            end=self.end.in_timezone(timezone),
        )

    def __str__(self) -> str:
        return f"{self.start.format('YYYY-MM-DD HH:mm')} - {self.end.format('HH:mm')}"


@dataclass(frozen=True)
class AvailabilityTemplate:
    """
    A professional's recurring weekly availability.

    Weekdays use 0=Monday .. 6=Sunday. A template is immutable once
    published; changing availability means publishing a new template with a
    later ``effective_from``.
    """
    professional_id: EntityId
    weekdays: FrozenSet[int]
    start_time: time
    end_time: time
    slot_minutes: int = 30
    gap_minutes: int = 0
    buffer_before_minutes: int = 0
    buffer_after_minutes: int = 0
    timezone: str = "UTC"
    effective_from: Optional[date] = None

    def __post_init__(self):
        object.__setattr__(self, "weekdays", frozenset(self.weekdays))

        invalid_days = sorted(day for day in self.weekdays if day not in range(7))
        if invalid_days:
            raise ValidationError(
                f"Weekdays must be between 0 and 6, got {invalid_days}",
                professional_id=self.professional_id,
            )
        if self.start_time >= self.end_time:
            raise ValidationError(
                "Template start time must be before end time",
                professional_id=self.professional_id,
                start_time=self.start_time,
                end_time=self.end_time,
            )
        if self.slot_minutes <= 0:
            raise ValidationError(
                "Slot duration must be greater than zero",
                professional_id=self.professional_id,
            )
        if self.gap_minutes < 0 or self.buffer_before_minutes < 0 or self.buffer_after_minutes < 0:
            raise ValidationError(
                "Gap and buffers must not be negative",
                professional_id=self.professional_id,
            )
        resolve_timezone(self.timezone)

    @property
    def slot_duration(self) -> timedelta:
        return timedelta(minutes=self.slot_minutes)

    @property
    def gap(self) -> timedelta:
        return timedelta(minutes=self.gap_minutes)

    @property
    def buffer_before(self) -> timedelta:
        return timedelta(minutes=self.buffer_before_minutes)

    @property
    def buffer_after(self) -> timedelta:
        return timedelta(minutes=self.buffer_after_minutes)

    def is_effective_on(self, day: date) -> bool:
        return self.effective_from is None or self.effective_from <= day

    def is_working_day(self, day: date) -> bool:
        """Check if a given date falls on one of the template's weekdays."""
        return day.weekday() in self.weekdays

    def get_working_hours_for_day(self, day: date) -> TimeRange | None:
        """
        Get the working hours range for a specific local date.
        Returns None if it's not a working day.
        """
        if not self.is_working_day(day):
            return None

        return TimeRange(
            start=local_datetime(day, self.start_time, self.timezone),
            end=local_datetime(day, self.end_time, self.timezone),
        )


class ExceptionKind(str, Enum):
    BLOCK = "BLOCK"
    ADD = "ADD"


@dataclass(frozen=True)
class AvailabilityException:
    """
    A dated override of the weekly template.

    BLOCK removes time (the whole day when no times are given), ADD opens an
    extra interval. Both dates are inclusive and the times are wall-clock
    times in the professional's timezone.
    """
    professional_id: EntityId
    kind: ExceptionKind
    start_date: date
    end_date: date
    start_time: Optional[time] = None
    end_time: Optional[time] = None
    reason: str = ""

    def __post_init__(self):
        object.__setattr__(self, "kind", ExceptionKind(self.kind))

        if self.end_date < self.start_date:
            raise ValidationError(
                "Exception end date must not be before its start date",
                professional_id=self.professional_id,
            )
        if (self.start_time is None) != (self.end_time is None):
            raise ValidationError(
                "Exception times must be given together",
                professional_id=self.professional_id,
            )
        if self.start_time is not None and self.start_time >= self.end_time:
            raise ValidationError(
                "Exception start time must be before end time",
                professional_id=self.professional_id,
            )
        if self.kind is ExceptionKind.ADD and self.start_time is None:
            raise ValidationError(
                "An ADD exception needs a start and end time",
                professional_id=self.professional_id,
            )

    @property
    def is_full_day(self) -> bool:
        return self.start_time is None

    def applies_to(self, day: date) -> bool:
        return self.start_date <= day <= self.end_date

    def range_for(self, day: date, timezone: str) -> TimeRange | None:
        """Return the concrete interval this exception covers on ``day``."""
        if not self.applies_to(day):
            return None

        if self.is_full_day:
            start = local_datetime(day, time(0, 0), timezone)
            return TimeRange(start=start, end=start.add(days=1))

        return TimeRange(
            start=local_datetime(day, self.start_time, timezone),
            end=local_datetime(day, self.end_time, timezone),
        )


class SlotStatus(str, Enum):
    FREE = "FREE"
    RESERVED = "RESERVED"


@dataclass(frozen=True)
class Slot:
    """
    A computed bookable interval.

    Slots only live for the duration of a single query and are never stored.
    """
    time_range: TimeRange
    status: SlotStatus = SlotStatus.FREE

    @property
    def start(self) -> DateTime:
        return self.time_range.start

    @property
    def end(self) -> DateTime:
        return self.time_range.end

    @property
    def is_free(self) -> bool:
        return self.status is SlotStatus.FREE

    def in_timezone(self, timezone: str) -> "Slot":
        return Slot(time_range=self.time_range.in_timezone(timezone), status=self.status)

    def format_display(self) -> str:
        """
        Format the slot for display.
        Format: Weekday, YYYY-MM-DD | HH:MM - HH:MM
        """
        start = self.time_range.start
        end = self.time_range.end
        duration = self.time_range.duration_minutes()

        return (
            f"{start.format('dddd, YYYY-MM-DD')} | "
            f"{start.format('HH:mm')} - {end.format('HH:mm')} ({duration} min)"
        )


class AppointmentStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"
    COMPLETED = "COMPLETED"
    NO_SHOW = "NO_SHOW"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def blocks_time(self) -> bool:
        """Whether an appointment in this status occupies its interval."""
        return not self.is_terminal


TERMINAL_STATUSES = frozenset(
    {AppointmentStatus.CANCELLED, AppointmentStatus.COMPLETED, AppointmentStatus.NO_SHOW}
)


@dataclass(frozen=True)
class Appointment:
    """
    A durable booking of one professional's time by one patient.

    Appointments are never deleted. They change only through the state
    machine, which bumps ``version`` on every accepted transition.
    """
    appointment_id: str
    professional_id: EntityId
    patient_id: EntityId
    start: DateTime
    end: DateTime
    status: AppointmentStatus
    created_at: DateTime
    updated_at: DateTime
    version: int = 0
    idempotency_token: Optional[str] = None
    rescheduled_from: Optional[str] = None
    cancellation_reason: Optional[str] = None

    @property
    def time_range(self) -> TimeRange:
        return TimeRange(start=self.start, end=self.end)

    @property
    def blocks_time(self) -> bool:
        return self.status.blocks_time

    def with_status(
        self,
        status: AppointmentStatus,
        at: DateTime,
        cancellation_reason: Optional[str] = None,
    ) -> "Appointment":
        return replace(
            self,
            status=status,
            updated_at=at,
            version=self.version + 1,
            cancellation_reason=cancellation_reason,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "appointment_id": self.appointment_id,
            "professional_id": self.professional_id,
            "patient_id": self.patient_id,
            "start": self.start.to_iso8601_string(),
            "end": self.end.to_iso8601_string(),
            "status": self.status.value,
            "created_at": self.created_at.to_iso8601_string(),
            "updated_at": self.updated_at.to_iso8601_string(),
            "version": self.version,
            "idempotency_token": self.idempotency_token,
            "rescheduled_from": self.rescheduled_from,
            "cancellation_reason": self.cancellation_reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Appointment":
        return cls(
            appointment_id=data["appointment_id"],
            professional_id=data["professional_id"],
            patient_id=data["patient_id"],
            start=pendulum.parse(data["start"]),
            end=pendulum.parse(data["end"]),
            status=AppointmentStatus(data["status"]),
            created_at=pendulum.parse(data["created_at"]),
            updated_at=pendulum.parse(data["updated_at"]),
            version=int(data.get("version", 0)),
            idempotency_token=data.get("idempotency_token"),
            rescheduled_from=data.get("rescheduled_from"),
            cancellation_reason=data.get("cancellation_reason"),
        )


def blocking(appointments: Iterable[Appointment]) -> List[Appointment]:
    """Filter appointments down to those that still occupy their interval."""
    return [appointment for appointment in appointments if appointment.blocks_time]


class EventType(str, Enum):
    CREATED = "CREATED"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"
    COMPLETED = "COMPLETED"
    NO_SHOW = "NO_SHOW"


@dataclass(frozen=True)
class DomainEvent:
    """
    Immutable record of one accepted appointment transition.

    ``causality_token`` identifies the transition (appointment and resulting
    version), so the same transition can never produce two events.
    """
    type: EventType
    appointment_id: str
    professional_id: EntityId
    patient_id: EntityId
    start: DateTime
    end: DateTime
    previous_status: Optional[AppointmentStatus]
    new_status: AppointmentStatus
    timestamp: DateTime
    causality_token: str
    rescheduled_from: Optional[str] = None
    event_id: str = ""
    schema_version: int = field(default=EVENT_SCHEMA_VERSION)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schema_version": self.schema_version,
            "event_id": self.event_id,
            "type": self.type.value,
            "appointment_id": self.appointment_id,
            "professional_id": self.professional_id,
            "patient_id": self.patient_id,
            "start": self.start.to_iso8601_string(),
            "end": self.end.to_iso8601_string(),
            "previous_status": self.previous_status.value if self.previous_status else None,
            "new_status": self.new_status.value,
            "timestamp": self.timestamp.to_iso8601_string(),
            "causality_token": self.causality_token,
            "rescheduled_from": self.rescheduled_from,
        }
