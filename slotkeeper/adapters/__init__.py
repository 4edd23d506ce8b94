"""
Adapters layer - Storage for availability rules and appointments.
"""

from .json_store import JsonAppointmentStore
from .memory import InMemoryAppointmentStore, InMemoryAvailabilityRepository

__all__ = ["InMemoryAppointmentStore", "InMemoryAvailabilityRepository", "JsonAppointmentStore"]
