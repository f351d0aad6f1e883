"""Apply engine — turns an approved plan into ledger changes.

Applying a plan, all inside the caller's write unit of work:
1. Close the active record behind every outgoing assignment at the plan's
   effective date.
2. Open a record for every incoming assignment, starting at the effective
   date and linked back to the plan.
3. Move the plan APPROVED → APPLIED and stamp applied_at/applied_by.

Any failure raises, and the unit of work rolls back steps 1-3 together.
A plan is never left half-applied.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Optional

from succession.errors import ConflictError, InvalidStateError
from succession.models.service_record import ServiceRecord, ServiceScope
from succession.models.transition import (
    TransitionAssignment,
    TransitionPlan,
    TransitionStatus,
)
from succession.persistence.database import UnitOfWork, as_utc
from succession.persistence.ledger import ServiceRecordLedger
from succession.persistence.plan_store import TransitionPlanStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ApplyResult:
    """What an apply changed in the ledger."""
    plan_id: str
    records_closed: int
    records_created: int
    applied_at: datetime
    applied_by: str
    closed_record_ids: list[str] = field(default_factory=list)
    created_record_ids: list[str] = field(default_factory=list)
    previous_status: TransitionStatus = TransitionStatus.APPROVED
    new_status: TransitionStatus = TransitionStatus.APPLIED


def incoming_scope(plan: TransitionPlan, assignment: TransitionAssignment) -> ServiceScope:
    """Scope for a record opened by an incoming assignment.

    An assignment that names no term serves in the plan's target term.
    """
    if assignment.scope.term_id is not None:
        return assignment.scope
    return replace(
        assignment.scope,
        term_id=plan.target_term_id,
        term_name=plan.target_term_name,
    )


class ApplyEngine:
    """Executes approved plans against the service record ledger."""

    def __init__(
        self,
        ledger: ServiceRecordLedger,
        store: TransitionPlanStore,
    ) -> None:
        self._ledger = ledger
        self._store = store

    def apply(
        self,
        uow: UnitOfWork,
        plan_id: str,
        actor_id: str,
        now: datetime,
    ) -> ApplyResult:
        uow.require_write()
        plan = self._store.require_plan(uow, plan_id)
        if plan.status != TransitionStatus.APPROVED:
            raise InvalidStateError(
                f"Plan is {plan.status.value}; can only apply APPROVED"
            )

        effective_at = as_utc(plan.effective_at)

        closed: list[str] = []
        for assignment in plan.outgoing():
            record = self._outgoing_record(uow, assignment)
            if record.start_at > effective_at:
                raise ConflictError(
                    f"Record {record.record_id} for {assignment.role_title} "
                    f"starts after the plan's effective date"
                )
            self._ledger.close_record(uow, record.record_id, effective_at)
            closed.append(record.record_id)

        created: list[str] = []
        for assignment in plan.incoming():
            record = self._ledger.create_record(
                uow,
                member_id=assignment.member_id,
                service_type=assignment.service_type,
                role_title=assignment.role_title,
                start_at=effective_at,
                scope=incoming_scope(plan, assignment),
                transition_plan_id=plan.plan_id,
                notes=assignment.notes,
                created_by=actor_id,
                now=now,
            )
            created.append(record.record_id)

        self._store.compare_and_set_status(
            uow,
            plan_id,
            TransitionStatus.APPROVED,
            TransitionStatus.APPLIED,
            updated_at=now,
            applied_at=now,
            applied_by=actor_id,
        )
        logger.info(
            "Applied plan %s: closed %d record(s), created %d record(s)",
            plan_id, len(closed), len(created),
        )
        return ApplyResult(
            plan_id=plan_id,
            records_closed=len(closed),
            records_created=len(created),
            applied_at=as_utc(now),
            applied_by=actor_id,
            closed_record_ids=closed,
            created_record_ids=created,
        )

    def _outgoing_record(
        self,
        uow: UnitOfWork,
        assignment: TransitionAssignment,
    ) -> ServiceRecord:
        """Locate the still-open record an outgoing assignment closes.

        A pinned record (existing_service_id) must still be open. Without
        a pin, the member's active record for the role and scope is used.
        """
        record: Optional[ServiceRecord]
        if assignment.existing_service_id:
            record = self._ledger.get(uow, assignment.existing_service_id)
            if record is None or not record.is_active:
                raise ConflictError(
                    f"Service record {assignment.existing_service_id} for "
                    f"{assignment.member_id} as {assignment.role_title} "
                    f"is no longer active"
                )
            return record

        record = self._ledger.active_record_for(
            uow,
            assignment.role_title,
            assignment.scope,
            service_type=assignment.service_type,
            member_id=assignment.member_id,
        )
        if record is None:
            raise ConflictError(
                f"No active {assignment.role_title} record for member "
                f"{assignment.member_id}"
            )
        return record
