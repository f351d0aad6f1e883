"""Approval gate — dual-control approvals on transition plans.

A plan pending approval needs one approval from the sitting President and
one from the sitting VP Activities. The gate decides who sits in a
position by asking the service record ledger at call time. Officers rotate
independently of any plan, so eligibility is never cached.

Invariants:
- At most one approval per (plan, role). A second attempt conflicts.
- The approver must hold an active record for the position's role title.
  The facade checks this before calling in, and the gate checks it again
  inside the transaction that writes the approval.
- The two approvals must come from two different members.
- The plan flips to APPROVED in the same transaction as the approval that
  completes the required set, so the flip happens exactly once.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from succession.errors import (
    ConflictError,
    ForbiddenError,
    InvalidStateError,
    ValidationError,
)
from succession.models.transition import (
    Approval,
    ApprovalRole,
    TransitionPlan,
    TransitionStatus,
    all_required_present,
)
from succession.persistence.database import UnitOfWork, as_utc
from succession.persistence.ledger import ServiceRecordLedger
from succession.persistence.plan_store import TransitionPlanStore
from succession.policy.resolver import PolicyResolver

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ApprovalEligibility:
    """Result of checking whether a member may approve in a role."""
    eligible: bool
    errors: list[str] = field(default_factory=list)
    qualifying_record_id: str = ""


@dataclass(frozen=True)
class ApprovalOutcome:
    """Plan state after an approval was recorded."""
    plan: TransitionPlan
    approvals: list[Approval]
    previous_status: TransitionStatus
    new_status: TransitionStatus

    @property
    def became_approved(self) -> bool:
        return (
            self.previous_status != TransitionStatus.APPROVED
            and self.new_status == TransitionStatus.APPROVED
        )


def coerce_role(role: ApprovalRole | str) -> ApprovalRole:
    try:
        return ApprovalRole(role)
    except ValueError:
        raise ValidationError(
            f"Unknown approval role {role!r}; expected one of "
            f"{[r.value for r in ApprovalRole]}"
        ) from None


class ApprovalGate:
    """Checks approver incumbency and records approvals."""

    def __init__(
        self,
        resolver: PolicyResolver,
        ledger: ServiceRecordLedger,
        store: TransitionPlanStore,
    ) -> None:
        self._resolver = resolver
        self._ledger = ledger
        self._store = store

    def check_eligibility(
        self,
        uow: UnitOfWork,
        member_id: str,
        role: ApprovalRole | str,
    ) -> ApprovalEligibility:
        """Check whether member_id currently sits in the position for role."""
        role = coerce_role(role)
        member_id = (member_id or "").strip()
        if not member_id:
            return ApprovalEligibility(
                eligible=False, errors=["Approver member_id is required"],
            )

        position = self._resolver.approval_position(role)
        record = self._ledger.active_record_for(
            uow,
            position.role_title,
            service_type=position.service_type,
            member_id=member_id,
        )
        if record is None:
            return ApprovalEligibility(
                eligible=False,
                errors=[
                    f"Member {member_id} does not currently hold "
                    f"{position.role_title}; cannot approve as {role.value}"
                ],
            )
        return ApprovalEligibility(
            eligible=True, qualifying_record_id=record.record_id,
        )

    def can_approve(
        self,
        uow: UnitOfWork,
        member_id: str,
        role: ApprovalRole | str,
    ) -> bool:
        return self.check_eligibility(uow, member_id, role).eligible

    def record_approval(
        self,
        uow: UnitOfWork,
        plan_id: str,
        member_id: str,
        role: ApprovalRole | str,
        now: datetime,
    ) -> ApprovalOutcome:
        """Record an approval and flip the plan to APPROVED when complete.

        Checks, in order: plan exists, role not yet approved, plan is
        PENDING_APPROVAL, member is the sitting incumbent, member has not
        already approved in the other role.
        """
        uow.require_write()
        role = coerce_role(role)
        member_id = (member_id or "").strip()

        plan = self._store.require_plan(uow, plan_id)
        existing: Optional[Approval] = plan.approval_for(role)
        if existing is not None:
            raise ConflictError(
                f"Plan {plan_id} already approved by {role.value} "
                f"(member {existing.member_id})"
            )
        if plan.status != TransitionStatus.PENDING_APPROVAL:
            raise InvalidStateError(
                f"Plan is {plan.status.value}; can only approve PENDING_APPROVAL"
            )

        eligibility = self.check_eligibility(uow, member_id, role)
        if not eligibility.eligible:
            raise ForbiddenError("; ".join(eligibility.errors))

        for other in plan.approvals:
            if other.member_id == member_id:
                raise ForbiddenError(
                    f"Member {member_id} already approved as {other.role.value}; "
                    f"dual control requires two different approvers"
                )

        approval = Approval(
            plan_id=plan_id,
            role=role,
            member_id=member_id,
            approved_at=as_utc(now),
        )
        self._store.insert_approval(uow, approval)
        logger.info(
            "Plan %s approved as %s by %s (service record %s)",
            plan_id, role.value, member_id, eligibility.qualifying_record_id,
        )
        approvals = self._store.approvals_for(uow, plan_id)

        previous_status = plan.status
        if all_required_present(approvals):
            self._store.compare_and_set_status(
                uow,
                plan_id,
                TransitionStatus.PENDING_APPROVAL,
                TransitionStatus.APPROVED,
                updated_at=now,
            )
            logger.info("Plan %s fully approved", plan_id)

        updated = self._store.require_plan(uow, plan_id)
        return ApprovalOutcome(
            plan=updated,
            approvals=approvals,
            previous_status=previous_status,
            new_status=updated.status,
        )
