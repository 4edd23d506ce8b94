"""
Shared fixtures: a Mon-Fri 09:00-17:00 professional "P" in UTC with a
lunch block on Monday 2024-06-10, and a clock frozen well before that week.
"""

from datetime import time

import pendulum
import pytest

from slotkeeper.adapters.memory import InMemoryAppointmentStore, InMemoryAvailabilityRepository
from slotkeeper.domain.models import AvailabilityException, AvailabilityTemplate, ExceptionKind
from slotkeeper.services.events import RecordingSink
from slotkeeper.services.scheduling import SchedulingService


class FixedClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now.add(**kwargs)


@pytest.fixture
def clock():
    return FixedClock(pendulum.parse("2024-06-01 08:00", tz="UTC"))


@pytest.fixture
def weekday_template():
    return AvailabilityTemplate(
        professional_id="P",
        weekdays=frozenset({0, 1, 2, 3, 4}),
        start_time=time(9, 0),
        end_time=time(17, 0),
        slot_minutes=30,
        timezone="UTC",
    )


@pytest.fixture
def lunch_block():
    return AvailabilityException(
        professional_id="P",
        kind=ExceptionKind.BLOCK,
        start_date=pendulum.date(2024, 6, 10),
        end_date=pendulum.date(2024, 6, 10),
        start_time=time(12, 0),
        end_time=time(13, 0),
        reason="Lunch meeting",
    )


@pytest.fixture
def availability(weekday_template, lunch_block):
    return InMemoryAvailabilityRepository(templates=[weekday_template], exceptions=[lunch_block])


@pytest.fixture
def store():
    return InMemoryAppointmentStore()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def service(availability, store, sink, clock):
    return SchedulingService(availability, store, sinks=[sink], clock=clock, lock_timeout=5.0)
