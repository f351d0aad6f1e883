"""Service record data models — the durable "who served what" ledger.

A service record says that a member held a role, for an optional scope
(committee, event, term), from start_at until end_at. A record with no
end_at is active: the member currently holds the role.

Principles:
- Records are never deleted. Corrections are additive.
- The only mutation allowed on a record is closing it (setting end_at once).
- Transition plans produce records; they never edit a closed record.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Optional


class ServiceType(str, enum.Enum):
    """Kinds of volunteer service tracked in the ledger."""
    BOARD_OFFICER = "board_officer"
    COMMITTEE_CHAIR = "committee_chair"
    COMMITTEE_MEMBER = "committee_member"
    EVENT_HOST = "event_host"


@dataclass(frozen=True)
class ServiceScope:
    """Optional scope references attached to a role.

    Names are denormalised copies kept for display; matching is done on
    the ids only.
    """
    committee_id: Optional[str] = None
    committee_name: Optional[str] = None
    event_id: Optional[str] = None
    event_title: Optional[str] = None
    term_id: Optional[str] = None
    term_name: Optional[str] = None

    def matches(self, other: ServiceScope) -> bool:
        """Whether a record with scope ``other`` satisfies this scope.

        Committee and event must be equal (an unscoped role only matches
        an unscoped record). Term is only compared when this scope names
        one, since a handoff usually crosses a term boundary.
        """
        if self.committee_id != other.committee_id:
            return False
        if self.event_id != other.event_id:
            return False
        if self.term_id is not None and self.term_id != other.term_id:
            return False
        return True


UNSCOPED = ServiceScope()


@dataclass(frozen=True)
class ServiceRecord:
    """A single ledger entry."""
    record_id: str
    member_id: str
    service_type: ServiceType
    role_title: str
    scope: ServiceScope
    start_at: datetime
    end_at: Optional[datetime] = None
    transition_plan_id: Optional[str] = None
    notes: Optional[str] = None
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.end_at is None


@dataclass(frozen=True)
class ServiceRecordFilters:
    """Filters for paginated ledger queries. None means "any"."""
    member_id: Optional[str] = None
    committee_id: Optional[str] = None
    event_id: Optional[str] = None
    term_id: Optional[str] = None
    service_type: Optional[ServiceType] = None
    active_only: bool = False
    start_after: Optional[datetime] = None
    end_before: Optional[datetime] = None
