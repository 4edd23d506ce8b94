"""
Tests for domain models.
"""

from datetime import time, timedelta

import pendulum
import pytest

from slotkeeper.domain.exceptions import ValidationError
from slotkeeper.domain.models import (
    Appointment,
    AppointmentStatus,
    AvailabilityException,
    AvailabilityTemplate,
    ExceptionKind,
    Slot,
    TimeRange,
)


def at(text, tz="UTC"):
    return pendulum.parse(text, tz=tz)


class TestTimeRange:
    """Tests for TimeRange model."""

    def test_create_valid_time_range(self):
        """Test creating a valid time range."""
        start = at("2024-06-10 09:00")
        end = at("2024-06-10 17:00")

        tr = TimeRange(start=start, end=end)

        assert tr.start == start
        assert tr.end == end
        assert tr.duration_minutes() == 480  # 8 hours

    def test_invalid_time_range_raises_error(self):
        """Test that an inverted range raises a ValidationError (a ValueError)."""
        with pytest.raises(ValueError, match="Start time .* must be before end time"):
            TimeRange(start=at("2024-06-10 17:00"), end=at("2024-06-10 09:00"))

    def test_overlaps_is_half_open(self):
        """Touching ranges do not overlap."""
        tr1 = TimeRange(start=at("2024-06-10 09:00"), end=at("2024-06-10 12:00"))
        tr2 = TimeRange(start=at("2024-06-10 11:00"), end=at("2024-06-10 14:00"))
        tr3 = TimeRange(start=at("2024-06-10 14:00"), end=at("2024-06-10 17:00"))

        assert tr1.overlaps(tr2)
        assert tr2.overlaps(tr1)
        assert not tr2.overlaps(tr3)

    def test_intersect(self):
        """Test intersection calculation."""
        tr1 = TimeRange(start=at("2024-06-10 09:00"), end=at("2024-06-10 12:00"))
        tr2 = TimeRange(start=at("2024-06-10 11:00"), end=at("2024-06-10 14:00"))

        intersection = tr1.intersect(tr2)

        assert intersection == TimeRange(start=at("2024-06-10 11:00"), end=at("2024-06-10 12:00"))
        assert tr1.intersect(TimeRange(start=at("2024-06-10 13:00"), end=at("2024-06-10 14:00"))) is None

    def test_inflate_and_contains(self):
        """Inflating widens both ends and keeps containment."""
        tr = TimeRange(start=at("2024-06-10 10:00"), end=at("2024-06-10 10:30"))

        padded = tr.inflate(timedelta(minutes=5), timedelta(minutes=10))

        assert padded.start == at("2024-06-10 09:55")
        assert padded.end == at("2024-06-10 10:40")
        assert padded.contains(tr)
        assert not tr.contains(padded)

    def test_equality_ignores_timezone_representation(self):
        """The same instants in different zones compare equal."""
        utc = TimeRange(start=at("2024-06-10 10:00"), end=at("2024-06-10 10:30"))

        assert utc.in_timezone("Europe/Berlin") == utc


class TestAvailabilityTemplate:
    """Tests for AvailabilityTemplate model."""

    def test_is_working_day(self, weekday_template):
        """Monday is a working day, the weekend is not."""
        assert weekday_template.is_working_day(pendulum.date(2024, 6, 10))  # Monday
        assert not weekday_template.is_working_day(pendulum.date(2024, 6, 8))  # Saturday
        assert not weekday_template.is_working_day(pendulum.date(2024, 6, 9))  # Sunday

    def test_get_working_hours_for_day_uses_template_timezone(self):
        """Working hours are anchored in the template's zone."""
        template = AvailabilityTemplate(
            professional_id="P",
            weekdays={0},
            start_time=time(9, 30),
            end_time=time(17, 0),
            timezone="Europe/Berlin",
        )

        work_range = template.get_working_hours_for_day(pendulum.date(2024, 6, 10))

        assert work_range is not None
        assert work_range.start == at("2024-06-10 09:30", tz="Europe/Berlin")
        assert work_range.start.in_timezone("UTC").hour == 7
        assert work_range.end.hour == 17

    def test_get_working_hours_for_weekend(self, weekday_template):
        """Days outside the weekdays have no working hours."""
        assert weekday_template.get_working_hours_for_day(pendulum.date(2024, 6, 8)) is None

    @pytest.mark.parametrize(
        "overrides, message",
        [
            ({"start_time": time(17, 0), "end_time": time(9, 0)}, "start time must be before"),
            ({"slot_minutes": 0}, "greater than zero"),
            ({"gap_minutes": -5}, "must not be negative"),
            ({"buffer_after_minutes": -1}, "must not be negative"),
            ({"weekdays": {7}}, "between 0 and 6"),
            ({"timezone": "Mars/Olympus"}, "Unknown timezone"),
        ],
    )
    def test_invalid_templates_are_rejected(self, overrides, message):
        """Inconsistent template fields raise ValidationError."""
        fields = dict(
            professional_id="P",
            weekdays={0, 1},
            start_time=time(9, 0),
            end_time=time(17, 0),
        )
        fields.update(overrides)

        with pytest.raises(ValidationError, match=message):
            AvailabilityTemplate(**fields)


class TestAvailabilityException:
    """Tests for AvailabilityException model."""

    def test_full_day_block_covers_the_local_day(self):
        """A block without times covers whole local days."""
        exception = AvailabilityException(
            professional_id="P",
            kind=ExceptionKind.BLOCK,
            start_date=pendulum.date(2024, 7, 1),
            end_date=pendulum.date(2024, 7, 14),
        )

        covered = exception.range_for(pendulum.date(2024, 7, 3), "UTC")

        assert exception.is_full_day
        assert covered == TimeRange(start=at("2024-07-03 00:00"), end=at("2024-07-04 00:00"))
        assert exception.range_for(pendulum.date(2024, 7, 15), "UTC") is None

    def test_kind_accepts_plain_strings(self):
        """The kind may be given as a plain string."""
        exception = AvailabilityException(
            professional_id="P",
            kind="ADD",
            start_date=pendulum.date(2024, 6, 15),
            end_date=pendulum.date(2024, 6, 15),
            start_time=time(9, 0),
            end_time=time(12, 0),
        )

        assert exception.kind is ExceptionKind.ADD

    def test_add_requires_times(self):
        """An ADD exception needs start and end times."""
        with pytest.raises(ValidationError, match="ADD exception needs"):
            AvailabilityException(
                professional_id="P",
                kind=ExceptionKind.ADD,
                start_date=pendulum.date(2024, 6, 15),
                end_date=pendulum.date(2024, 6, 15),
            )

    def test_end_date_before_start_date(self):
        """An inverted date range is rejected."""
        with pytest.raises(ValidationError):
            AvailabilityException(
                professional_id="P",
                kind=ExceptionKind.BLOCK,
                start_date=pendulum.date(2024, 6, 15),
                end_date=pendulum.date(2024, 6, 14),
            )


class TestSlotAndAppointment:
    """Tests for Slot and Appointment models."""

    def test_slot_format_display(self):
        """Slots render as weekday, date and local times."""
        slot = Slot(time_range=TimeRange(start=at("2024-06-10 09:00"), end=at("2024-06-10 09:30")))

        assert slot.format_display() == "Monday, 2024-06-10 | 09:00 - 09:30 (30 min)"
        assert slot.is_free

    def test_terminal_statuses_do_not_block_time(self):
        """Only open appointments occupy time."""
        assert AppointmentStatus.PENDING.blocks_time
        assert AppointmentStatus.CONFIRMED.blocks_time
        for status in (AppointmentStatus.CANCELLED, AppointmentStatus.COMPLETED, AppointmentStatus.NO_SHOW):
            assert status.is_terminal
            assert not status.blocks_time

    def test_with_status_bumps_version(self):
        """A status change increments the version."""
        created = at("2024-06-01 08:00")
        appointment = Appointment(
            appointment_id="a1",
            professional_id="P",
            patient_id="patient-1",
            start=at("2024-06-10 10:00"),
            end=at("2024-06-10 10:30"),
            status=AppointmentStatus.PENDING,
            created_at=created,
            updated_at=created,
        )

        confirmed = appointment.with_status(AppointmentStatus.CONFIRMED, at("2024-06-02 08:00"))

        assert confirmed.version == 1
        assert confirmed.updated_at == at("2024-06-02 08:00")
        assert appointment.status is AppointmentStatus.PENDING
        assert Appointment.from_dict(confirmed.to_dict()) == confirmed
