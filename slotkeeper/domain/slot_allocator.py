"""
Core business logic for turning candidate intervals into bookable slots.

Pure domain logic without any external dependencies (no storage, no
locking, no clock). Given the same inputs the output is always the same.
"""

from datetime import timedelta
from typing import Iterable, List

from .models import Appointment, Slot, SlotStatus, TimeRange, blocking


class SlotAllocator:
    """
    Calculates slots and their availability.

    Algorithm:
    1. Partition every candidate interval into fixed-duration slots,
       stepped by duration + gap, dropping a too-short remainder
    2. Inflate each slot and each blocking appointment by the buffers
    3. Tag a slot FREE unless its inflated span meets an inflated appointment

    FREE slots are alternatives offered to a caller, not a set that can all
    be booked together. What holds for the result:
    - raw FREE slots never overlap each other
    - no inflated FREE slot overlaps any inflated blocking appointment
    Two adjacent FREE slots may still be closer than the buffers allow;
    once one of them is booked the other turns RESERVED.
    """

    def allocate(
        self,
        candidate_intervals: Iterable[TimeRange],
        existing_appointments: Iterable[Appointment],
        duration: timedelta,
        buffer_before: timedelta = timedelta(0),
        buffer_after: timedelta = timedelta(0),
        gap: timedelta = timedelta(0),
    ) -> List[Slot]:
        """
        Allocate slots for the given candidate intervals.

        Args:
            candidate_intervals: Ordered intervals from the rule engine
            existing_appointments: Appointments of the same professional
            duration: Slot length
            buffer_before: Padding before each slot and appointment
            buffer_after: Padding after each slot and appointment
            gap: Idle time between consecutive slots

        Returns:
            Start-ordered list of Slot objects tagged FREE or RESERVED
        """
        if duration <= timedelta(0):
            raise ValueError("Slot duration must be greater than zero")

        occupied = [
            appointment.time_range.inflate(buffer_before, buffer_after)
            for appointment in blocking(existing_appointments)
        ]

        slots: List[Slot] = []

        for interval in candidate_intervals:
            for slot_range in self.partition(interval, duration, gap):
                padded = slot_range.inflate(buffer_before, buffer_after)
                status = (
                    SlotStatus.RESERVED
                    if any(padded.overlaps(taken) for taken in occupied)
                    else SlotStatus.FREE
                )
                slots.append(Slot(time_range=slot_range, status=status))

        return sorted(slots, key=lambda slot: slot.start)

    def free_slots(
        self,
        candidate_intervals: Iterable[TimeRange],
        existing_appointments: Iterable[Appointment],
        duration: timedelta,
        buffer_before: timedelta = timedelta(0),
        buffer_after: timedelta = timedelta(0),
        gap: timedelta = timedelta(0),
    ) -> List[Slot]:
        """Return only the FREE slots of :meth:`allocate`."""
        return [
            slot
            for slot in self.allocate(
                candidate_intervals,
                existing_appointments,
                duration,
                buffer_before=buffer_before,
                buffer_after=buffer_after,
                gap=gap,
            )
            if slot.is_free
        ]

    @staticmethod
    def partition(interval: TimeRange, duration: timedelta, gap: timedelta) -> List[TimeRange]:
        """
        Split an interval into consecutive slots.

        Example (30 min, 10 min gap):
        Interval: 09:00 - 10:30
        Result: [09:00-09:30, 09:40-10:10]
        """
        slots: List[TimeRange] = []
        step = duration + gap
        current = interval.start

        while current + duration <= interval.end:
            slots.append(TimeRange(start=current, end=current + duration))
            current = current + step

        return slots
