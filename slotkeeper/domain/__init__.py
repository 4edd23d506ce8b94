"""
Domain layer - Pure scheduling logic without storage, locking or I/O.
"""

from .models import (
    Appointment,
    AppointmentStatus,
    AvailabilityException,
    AvailabilityTemplate,
    DomainEvent,
    EventType,
    ExceptionKind,
    Slot,
    SlotStatus,
    TimeRange,
)
from .rule_engine import AvailabilityRuleEngine, CandidateInterval
from .slot_allocator import SlotAllocator
from .state_machine import AppointmentStateMachine

__all__ = [
    "Appointment",
    "AppointmentStatus",
    "AppointmentStateMachine",
    "AvailabilityException",
    "AvailabilityRuleEngine",
    "AvailabilityTemplate",
    "CandidateInterval",
    "DomainEvent",
    "EventType",
    "ExceptionKind",
    "Slot",
    "SlotAllocator",
    "SlotStatus",
    "TimeRange",
]
