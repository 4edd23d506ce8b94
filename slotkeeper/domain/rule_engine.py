"""
Availability rule engine.

Expands a professional's weekly template plus dated exceptions into
candidate intervals for a bounded range. Nothing is cached or persisted:
every iteration recomputes from the repository, so edits to templates and
exceptions are picked up immediately.
"""

from dataclasses import dataclass
from datetime import date, timedelta
from typing import Iterator, List, Optional, Protocol, Sequence

from pendulum import DateTime

from . import intervals
from .exceptions import ValidationError
from .models import (
    AvailabilityException,
    AvailabilityTemplate,
    EntityId,
    ExceptionKind,
    TimeRange,
)

DEFAULT_MAX_RANGE_DAYS = 90


class AvailabilityRepository(Protocol):
    """Source of templates and exceptions consumed by the rule engine."""

    def templates_for(self, professional_id: EntityId) -> List[AvailabilityTemplate]:
        """Return every published template of the professional."""

    def exceptions_for(
        self,
        professional_id: EntityId,
        start_date: date,
        end_date: date,
    ) -> List[AvailabilityException]:
        """Return the exceptions touching the inclusive date range."""


@dataclass(frozen=True)
class CandidateInterval:
    """A bookable interval together with the template that sizes its slots."""
    time_range: TimeRange
    template: AvailabilityTemplate

    @property
    def start(self) -> DateTime:
        return self.time_range.start

    @property
    def end(self) -> DateTime:
        return self.time_range.end


class Expansion:
    """
    Lazy, restartable sequence of candidate intervals.

    Iterating twice runs the expansion twice; there is no state to
    invalidate between iterations.
    """

    def __init__(
        self,
        engine: "AvailabilityRuleEngine",
        professional_id: EntityId,
        start: DateTime,
        end: DateTime,
    ):
        self._engine = engine
        self.professional_id = professional_id
        self.start = start
        self.end = end

    def __iter__(self) -> Iterator[CandidateInterval]:
        return self._engine._iter_candidates(self.professional_id, self.start, self.end)

    def to_list(self) -> List[CandidateInterval]:
        return list(self)


class AvailabilityRuleEngine:
    """
    Turns recurring rules into concrete candidate intervals.

    Algorithm, per local date touched by the requested range:
    1. Take the working hours of the template in effect on that date
    2. Union them with the date's ADD exceptions
    3. Subtract the date's BLOCK exceptions (splitting intervals as needed)
    4. Clip to the requested range
    """

    def __init__(
        self,
        repository: AvailabilityRepository,
        max_range_days: int = DEFAULT_MAX_RANGE_DAYS,
    ):
        self.repository = repository
        self.max_range_days = max_range_days

    def expand(self, professional_id: EntityId, start: DateTime, end: DateTime) -> Expansion:
        """
        Expand availability for ``[start, end)``.

        Raises:
            ValidationError: If the range is inverted, naive or too long
        """
        self.validate_range(start, end)
        return Expansion(self, professional_id, start, end)

    def expand_local_days(
        self,
        professional_id: EntityId,
        start: DateTime,
        end: DateTime,
    ) -> Expansion:
        """
        Validate ``[start, end)`` and expand the whole local days it touches.

        Intervals are then only cut at midnight, which keeps the slot grid
        anchored on the template's daily start time.
        """
        self.validate_range(start, end)
        timezone = self.timezone_for(professional_id, start)
        day_start = start.in_timezone(timezone).start_of("day")
        day_end = end.in_timezone(timezone).start_of("day").add(days=1)
        return Expansion(self, professional_id, day_start, day_end)

    def timezone_for(self, professional_id: EntityId, at: DateTime) -> str:
        """Timezone of the template in effect at ``at`` (UTC without templates)."""
        templates = self.repository.templates_for(professional_id)
        if not templates:
            return "UTC"

        day = at.in_timezone("UTC").date()
        return self.sizing_template(templates, day).timezone

    def validate_range(self, start: DateTime, end: DateTime) -> None:
        if start.tzinfo is None or end.tzinfo is None:
            raise ValidationError("Range bounds must be timezone-aware", start=start, end=end)

        if start > end:
            raise ValidationError("Range start must not be after its end", start=start, end=end)

        if end - start > timedelta(days=self.max_range_days):
            raise ValidationError(
                f"Range exceeds the maximum of {self.max_range_days} days",
                start=start,
                end=end,
            )

    @staticmethod
    def template_for_day(
        templates: Sequence[AvailabilityTemplate],
        day: date,
    ) -> Optional[AvailabilityTemplate]:
        """Return the template in effect on ``day``: the latest one already effective."""
        # Later entries win ties: they were published last.
        effective = [
            (template.effective_from or date.min, index, template)
            for index, template in enumerate(templates)
            if template.is_effective_on(day)
        ]
        if not effective:
            return None
        return max(effective, key=lambda entry: entry[:2])[2]

    @classmethod
    def sizing_template(
        cls,
        templates: Sequence[AvailabilityTemplate],
        day: date,
    ) -> AvailabilityTemplate:
        """Template in effect on ``day``, else the earliest published one."""
        return cls.template_for_day(templates, day) or min(
            templates, key=lambda template: template.effective_from or date.min
        )

    def expand_day(
        self,
        day: date,
        templates: Sequence[AvailabilityTemplate],
        exceptions: Sequence[AvailabilityException],
    ) -> List[CandidateInterval]:
        """Expand a single local date without clipping."""
        template = self.template_for_day(templates, day)
        sizing = template or self.sizing_template(templates, day)
        timezone = sizing.timezone

        base: List[TimeRange] = []
        if template is not None:
            working_hours = template.get_working_hours_for_day(day)
            if working_hours:
                base.append(working_hours)

        additions: List[TimeRange] = []
        blocks: List[TimeRange] = []

        for exception in exceptions:
            covered = exception.range_for(day, timezone)
            if covered is None:
                continue
            if exception.kind is ExceptionKind.ADD:
                additions.append(covered)
            else:
                blocks.append(covered)

        return [
            CandidateInterval(time_range=time_range, template=sizing)
            for time_range in intervals.subtract(base + additions, blocks)
        ]

    def _iter_candidates(
        self,
        professional_id: EntityId,
        start: DateTime,
        end: DateTime,
    ) -> Iterator[CandidateInterval]:
        if start == end:
            return

        templates = self.repository.templates_for(professional_id)
        if not templates:
            return

        # One day of slack on each side covers every timezone offset.
        first_day = start.in_timezone("UTC").date() - timedelta(days=1)
        last_day = end.in_timezone("UTC").date() + timedelta(days=1)
        exceptions = self.repository.exceptions_for(professional_id, first_day, last_day)

        day = first_day
        while day <= last_day:
            for candidate in self.expand_day(day, templates, exceptions):
                for clipped in intervals.clip([candidate.time_range], start, end):
                    yield CandidateInterval(time_range=clipped, template=candidate.template)
            day = day + timedelta(days=1)
