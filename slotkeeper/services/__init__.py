"""
Service layer - Locking, events and reservation workflows around the domain.
"""

from .events import EventEmitter, EventSink, RecordingSink
from .locks import ProfessionalLocks
from .reservation import AppointmentStore, ReservationCoordinator
from .scheduling import ReservationResult, SchedulingService, TransitionResult

__all__ = [
    "AppointmentStore",
    "EventEmitter",
    "EventSink",
    "ProfessionalLocks",
    "RecordingSink",
    "ReservationCoordinator",
    "ReservationResult",
    "SchedulingService",
    "TransitionResult",
]
