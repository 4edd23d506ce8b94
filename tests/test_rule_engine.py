"""
Tests for the availability rule engine.
"""

from datetime import time

import pendulum
import pytest

from slotkeeper.adapters.memory import InMemoryAvailabilityRepository
from slotkeeper.domain.exceptions import ValidationError
from slotkeeper.domain.models import (
    AvailabilityException,
    AvailabilityTemplate,
    ExceptionKind,
    TimeRange,
)
from slotkeeper.domain.rule_engine import AvailabilityRuleEngine


def at(text, tz="UTC"):
    return pendulum.parse(text, tz=tz)


def ranges(expansion):
    return [candidate.time_range for candidate in expansion]


@pytest.fixture
def engine(availability):
    return AvailabilityRuleEngine(availability)


class TestExpand:
    """Tests for expanding templates and exceptions into candidate intervals."""

    def test_block_splits_working_hours(self, engine):
        """A lunch BLOCK on Monday splits the 09:00-17:00 window in two."""
        candidates = ranges(engine.expand("P", at("2024-06-10 00:00"), at("2024-06-11 00:00")))

        assert candidates == [
            TimeRange(start=at("2024-06-10 09:00"), end=at("2024-06-10 12:00")),
            TimeRange(start=at("2024-06-10 13:00"), end=at("2024-06-10 17:00")),
        ]

    def test_weekend_has_no_candidates(self, engine):
        """Days outside the template yield no intervals."""
        assert ranges(engine.expand("P", at("2024-06-08 00:00"), at("2024-06-10 00:00"))) == []

    def test_result_is_clipped_to_the_range(self, engine):
        """Intervals are cut to the requested range."""
        candidates = ranges(engine.expand("P", at("2024-06-11 10:15"), at("2024-06-11 11:00")))

        assert candidates == [TimeRange(start=at("2024-06-11 10:15"), end=at("2024-06-11 11:00"))]

    def test_empty_range_yields_nothing(self, engine):
        """An empty range yields no intervals."""
        assert ranges(engine.expand("P", at("2024-06-11 10:00"), at("2024-06-11 10:00"))) == []

    def test_unknown_professional_yields_nothing(self, engine):
        """A professional without templates has no intervals."""
        assert ranges(engine.expand("nobody", at("2024-06-10 00:00"), at("2024-06-17 00:00"))) == []

    def test_add_exception_opens_a_saturday(self, availability, engine):
        """An ADD exception opens a day without a template."""
        availability.add_exception(
            AvailabilityException(
                professional_id="P",
                kind=ExceptionKind.ADD,
                start_date=pendulum.date(2024, 6, 15),
                end_date=pendulum.date(2024, 6, 15),
                start_time=time(9, 0),
                end_time=time(12, 0),
            )
        )

        candidates = ranges(engine.expand("P", at("2024-06-15 00:00"), at("2024-06-16 00:00")))

        assert candidates == [TimeRange(start=at("2024-06-15 09:00"), end=at("2024-06-15 12:00"))]

    def test_add_extending_working_hours_is_merged(self, availability, engine):
        """An ADD next to working hours merges into one interval."""
        availability.add_exception(
            AvailabilityException(
                professional_id="P",
                kind=ExceptionKind.ADD,
                start_date=pendulum.date(2024, 6, 11),
                end_date=pendulum.date(2024, 6, 11),
                start_time=time(16, 0),
                end_time=time(19, 0),
            )
        )

        candidates = ranges(engine.expand("P", at("2024-06-11 00:00"), at("2024-06-12 00:00")))

        assert candidates == [TimeRange(start=at("2024-06-11 09:00"), end=at("2024-06-11 19:00"))]

    def test_full_day_block_wins_over_add(self, availability, engine):
        """A full-day block removes added time too."""
        availability.add_exception(
            AvailabilityException(
                professional_id="P",
                kind=ExceptionKind.ADD,
                start_date=pendulum.date(2024, 6, 12),
                end_date=pendulum.date(2024, 6, 12),
                start_time=time(18, 0),
                end_time=time(20, 0),
            )
        )
        availability.add_exception(
            AvailabilityException(
                professional_id="P",
                kind=ExceptionKind.BLOCK,
                start_date=pendulum.date(2024, 6, 12),
                end_date=pendulum.date(2024, 6, 12),
                reason="Vacation",
            )
        )

        assert ranges(engine.expand("P", at("2024-06-12 00:00"), at("2024-06-13 00:00"))) == []

    def test_expansion_is_restartable_and_sees_edits(self, availability, engine):
        """Nothing is cached: iterating again picks up a new exception."""
        expansion = engine.expand("P", at("2024-06-11 00:00"), at("2024-06-12 00:00"))
        assert len(ranges(expansion)) == 1

        availability.add_exception(
            AvailabilityException(
                professional_id="P",
                kind=ExceptionKind.BLOCK,
                start_date=pendulum.date(2024, 6, 11),
                end_date=pendulum.date(2024, 6, 11),
                start_time=time(10, 0),
                end_time=time(11, 0),
            )
        )

        assert len(ranges(expansion)) == 2
        assert expansion.to_list() == list(expansion)

    def test_template_timezone_is_respected(self):
        """Working hours follow the template's timezone."""
        repository = InMemoryAvailabilityRepository(
            templates=[
                AvailabilityTemplate(
                    professional_id="B",
                    weekdays={0},
                    start_time=time(9, 0),
                    end_time=time(12, 0),
                    timezone="Europe/Berlin",
                )
            ]
        )
        engine = AvailabilityRuleEngine(repository)

        candidates = ranges(engine.expand("B", at("2024-06-10 00:00"), at("2024-06-11 00:00")))

        # CEST is UTC+2 in June
        assert candidates == [TimeRange(start=at("2024-06-10 07:00"), end=at("2024-06-10 10:00"))]

    def test_newer_template_takes_over_from_effective_date(self, availability, engine):
        """The newest effective template wins for a day."""
        availability.add_template(
            AvailabilityTemplate(
                professional_id="P",
                weekdays={0, 1, 2, 3, 4},
                start_time=time(13, 0),
                end_time=time(15, 0),
                effective_from=pendulum.date(2024, 6, 12),
            )
        )

        before = ranges(engine.expand("P", at("2024-06-11 00:00"), at("2024-06-12 00:00")))
        after = ranges(engine.expand("P", at("2024-06-12 00:00"), at("2024-06-13 00:00")))

        assert before == [TimeRange(start=at("2024-06-11 09:00"), end=at("2024-06-11 17:00"))]
        assert after == [TimeRange(start=at("2024-06-12 13:00"), end=at("2024-06-12 15:00"))]


class TestExpandLocalDays:
    """Tests for expanding the whole local days touched by a range."""

    def test_widens_to_midnight(self, engine):
        """Local-day expansion covers whole days."""
        expansion = engine.expand_local_days("P", at("2024-06-11 10:15"), at("2024-06-11 11:00"))

        assert expansion.start == at("2024-06-11 00:00")
        assert expansion.end == at("2024-06-12 00:00")
        assert ranges(expansion) == [TimeRange(start=at("2024-06-11 09:00"), end=at("2024-06-11 17:00"))]


class TestValidation:
    """Tests for range validation."""

    def test_inverted_range(self, engine):
        """End before start is rejected."""
        with pytest.raises(ValidationError, match="must not be after"):
            engine.expand("P", at("2024-06-11 00:00"), at("2024-06-10 00:00"))

    def test_naive_bounds(self, engine):
        """Naive bounds are rejected."""
        naive = pendulum.naive(2024, 6, 10)

        with pytest.raises(ValidationError, match="timezone-aware"):
            engine.expand("P", naive, naive.add(days=1))

    def test_range_too_long(self, availability):
        """Ranges longer than the maximum are rejected."""
        engine = AvailabilityRuleEngine(availability, max_range_days=7)

        with pytest.raises(ValidationError, match="maximum of 7 days"):
            engine.expand("P", at("2024-06-10 00:00"), at("2024-06-18 00:00"))

    def test_timezone_for_without_templates(self, engine):
        """A professional without templates falls back to UTC."""
        assert engine.timezone_for("nobody", at("2024-06-10 00:00")) == "UTC"
