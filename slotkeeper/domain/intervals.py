"""
Interval algebra on lists of TimeRange.

All functions are pure and return new, start-ordered lists; inputs are never
modified. Ranges are half-open, so ``[09:00, 10:00)`` and ``[10:00, 11:00)``
touch without overlapping.
"""

from typing import Iterable, List

from pendulum import DateTime

from .models import TimeRange


def sort_ranges(ranges: Iterable[TimeRange]) -> List[TimeRange]:
    return sorted(ranges, key=lambda r: (r.start, r.end))


def merge(ranges: Iterable[TimeRange]) -> List[TimeRange]:
    """
    Merge overlapping or adjacent time ranges.

    Example: [09:00-10:00, 10:00-11:00] -> [09:00-11:00]
    """
    sorted_ranges = sort_ranges(ranges)
    if not sorted_ranges:
        return []

    merged: List[TimeRange] = [sorted_ranges[0]]

    for current in sorted_ranges[1:]:
        last = merged[-1]

        if current.start <= last.end:
            merged[-1] = TimeRange(start=last.start, end=max(last.end, current.end))
        else:
            merged.append(current)

    return merged


def subtract_from(block: TimeRange, removals: Iterable[TimeRange]) -> List[TimeRange]:
    """
    Subtract ranges from a single block, yielding what is left of it.

    Example:
    Block: 09:00 - 17:00
    Removals: [10:00-11:00, 14:00-15:00]
    Result: [09:00-10:00, 11:00-14:00, 15:00-17:00]
    """
    remaining: List[TimeRange] = []
    current_start = block.start

    for removal in sort_ranges(r for r in removals if r.overlaps(block)):
        clipped_start = max(removal.start, block.start)
        clipped_end = min(removal.end, block.end)

        if current_start < clipped_start:
            remaining.append(TimeRange(start=current_start, end=clipped_start))

        current_start = max(current_start, clipped_end)

    if current_start < block.end:
        remaining.append(TimeRange(start=current_start, end=block.end))

    return remaining


def subtract(ranges: Iterable[TimeRange], removals: Iterable[TimeRange]) -> List[TimeRange]:
    """Subtract every removal from every range."""
    removal_list = merge(removals)
    result: List[TimeRange] = []

    for block in merge(ranges):
        result.extend(subtract_from(block, removal_list))

    return result


def clip(ranges: Iterable[TimeRange], lower: DateTime, upper: DateTime) -> List[TimeRange]:
    """
    Clip ranges to ``[lower, upper)``.
    Ranges that fall completely outside the bounds are dropped.
    """
    clipped: List[TimeRange] = []

    for time_range in sort_ranges(ranges):
        if time_range.end <= lower or time_range.start >= upper:
            continue
        clipped.append(
            TimeRange(start=max(time_range.start, lower), end=min(time_range.end, upper))
        )

    return clipped


def any_overlap(candidate: TimeRange, ranges: Iterable[TimeRange]) -> bool:
    return any(candidate.overlaps(other) for other in ranges)
