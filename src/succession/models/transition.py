"""Transition plan data models — plans, assignments, approvals.

A transition plan is a proposed set of role handoffs for a term boundary.
It moves through a one-way lifecycle:

    DRAFT → PENDING_APPROVAL → APPROVED → APPLIED
    DRAFT | PENDING_APPROVAL → CANCELLED

Dual control:
- Two named governance roles (president, vp-activities) must each approve.
- It is strictly two-of-two by distinct role. There is no quorum rule.
- An approval, once recorded, is immutable.

Assignments are the slots of a plan: an incoming assignment describes a
service record to be opened, an outgoing one the record to be closed.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional

from succession.models.service_record import ServiceScope, ServiceType


class TransitionStatus(str, enum.Enum):
    """Lifecycle states for a transition plan."""
    DRAFT = "DRAFT"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    APPROVED = "APPROVED"
    APPLIED = "APPLIED"
    CANCELLED = "CANCELLED"


class AssignmentDirection(str, enum.Enum):
    """Whether a member is entering or leaving a role."""
    INCOMING = "incoming"
    OUTGOING = "outgoing"


class ApprovalRole(str, enum.Enum):
    """Governance positions whose incumbents must approve a plan."""
    PRESIDENT = "president"
    VP_ACTIVITIES = "vp-activities"


REQUIRED_APPROVAL_ROLES: frozenset[ApprovalRole] = frozenset(ApprovalRole)


@dataclass(frozen=True)
class TransitionAssignment:
    """One slot in a transition plan.

    existing_service_id is set on outgoing assignments and names the
    ledger record the slot intends to close.
    """
    assignment_id: str
    plan_id: str
    direction: AssignmentDirection
    member_id: str
    role_title: str
    service_type: ServiceType = ServiceType.BOARD_OFFICER
    scope: ServiceScope = field(default_factory=ServiceScope)
    existing_service_id: Optional[str] = None
    notes: Optional[str] = None

    @property
    def is_outgoing(self) -> bool:
        return self.direction == AssignmentDirection.OUTGOING


@dataclass(frozen=True)
class Approval:
    """A recorded approval by the incumbent of a governance position."""
    plan_id: str
    role: ApprovalRole
    member_id: str
    approved_at: datetime


def approvals_by_role(
    approvals: Iterable[Approval],
) -> dict[ApprovalRole, Optional[Approval]]:
    """Map every required role to its approval, or None if missing."""
    result: dict[ApprovalRole, Optional[Approval]] = {
        role: None for role in REQUIRED_APPROVAL_ROLES
    }
    for approval in approvals:
        result[approval.role] = approval
    return result


def missing_roles(approvals: Iterable[Approval]) -> set[ApprovalRole]:
    """Required roles that have not yet approved."""
    return {
        role for role, approval in approvals_by_role(approvals).items()
        if approval is None
    }


def all_required_present(approvals: Iterable[Approval]) -> bool:
    """True iff every required role has a recorded approval."""
    return not missing_roles(approvals)


@dataclass
class TransitionPlan:
    """A transition plan with its assignments and approvals."""
    plan_id: str
    name: str
    target_term_id: str
    effective_at: datetime
    status: TransitionStatus = TransitionStatus.DRAFT
    description: Optional[str] = None
    target_term_name: Optional[str] = None
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    applied_at: Optional[datetime] = None
    applied_by: Optional[str] = None

    assignments: list[TransitionAssignment] = field(default_factory=list)
    approvals: list[Approval] = field(default_factory=list)

    @property
    def is_mutable(self) -> bool:
        return self.status == TransitionStatus.DRAFT

    @property
    def is_deletable(self) -> bool:
        return self.status in (TransitionStatus.DRAFT, TransitionStatus.CANCELLED)

    def incoming(self) -> list[TransitionAssignment]:
        return [a for a in self.assignments if not a.is_outgoing]

    def outgoing(self) -> list[TransitionAssignment]:
        return [a for a in self.assignments if a.is_outgoing]

    def approval_for(self, role: ApprovalRole) -> Optional[Approval]:
        return approvals_by_role(self.approvals)[role]

    def fully_approved(self) -> bool:
        return all_required_present(self.approvals)
