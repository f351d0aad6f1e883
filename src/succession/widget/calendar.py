"""Club term calendar.

Terms change at local midnight on fixed yearly dates in the club's time
zone. With the default policy that is Feb 1 (opening "Summer {year}") and
Aug 1 (opening "Winter {year}/{year+1}") in America/Los_Angeles.

All inputs and outputs are aware UTC datetimes. Local dates are only used
to count calendar days and to find midnights.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from succession.persistence.database import as_utc
from succession.policy.resolver import PolicyResolver, TermBoundary


@dataclass(frozen=True)
class TermBoundaries:
    current_start: datetime
    current_end: datetime
    next_start: datetime
    next_end: datetime


class TermCalendar:
    """Yearly term boundaries in a club time zone."""

    def __init__(self, tz_name: str, boundaries: list[TermBoundary]) -> None:
        if not boundaries:
            raise ValueError("TermCalendar needs at least one boundary")
        self._tz = ZoneInfo(tz_name)
        self._boundaries = sorted(boundaries, key=lambda b: (b.month, b.day))

    @classmethod
    def from_resolver(cls, resolver: PolicyResolver) -> TermCalendar:
        return cls(resolver.club_timezone(), resolver.term_boundaries())

    @property
    def tz(self) -> ZoneInfo:
        return self._tz

    # ------------------------------------------------------------------
    # Local-day helpers
    # ------------------------------------------------------------------

    def local_date(self, moment: datetime) -> date:
        return as_utc(moment).astimezone(self._tz).date()

    def midnight(self, day: date) -> datetime:
        """UTC instant of local midnight starting ``day``."""
        local = datetime.combine(day, time(0, 0), tzinfo=self._tz)
        return local.astimezone(timezone.utc)

    # ------------------------------------------------------------------
    # Boundaries
    # ------------------------------------------------------------------

    def _boundary_instants(self, first_year: int, last_year: int) -> list[datetime]:
        instants = [
            self.midnight(date(year, b.month, b.day))
            for year in range(first_year, last_year + 1)
            for b in self._boundaries
        ]
        return sorted(instants)

    def _around(self, now: datetime) -> list[datetime]:
        year = self.local_date(now).year
        return self._boundary_instants(year - 1, year + 2)

    def next_transition_date(self, now: datetime) -> datetime:
        """First boundary strictly after ``now``."""
        now = as_utc(now)
        return next(i for i in self._around(now) if i > now)

    def term_boundaries(self, now: datetime) -> TermBoundaries:
        now = as_utc(now)
        instants = self._around(now)
        idx = next(n for n, i in enumerate(instants) if i > now)
        return TermBoundaries(
            current_start=instants[idx - 1],
            current_end=instants[idx],
            next_start=instants[idx],
            next_end=instants[idx + 1],
        )

    def term_name_for_transition(self, transition_date: datetime) -> str:
        """Name of the term that a boundary opens."""
        local = self.local_date(transition_date)
        for b in self._boundaries:
            if (b.month, b.day) == (local.month, local.day):
                if b.spans_year:
                    return f"{b.term} {local.year}/{local.year + 1}"
                return f"{b.term} {local.year}"
        raise ValueError(f"{local.isoformat()} is not a term boundary")

    def days_before(self, moment: datetime, days: int) -> datetime:
        """Local midnight ``days`` calendar days before moment's local day."""
        return self.midnight(self.local_date(moment) - timedelta(days=days))
