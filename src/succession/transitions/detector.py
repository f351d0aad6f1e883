"""Outgoing-assignment detection.

For every incoming assignment on a draft plan, find who currently holds
that role and add a matching outgoing assignment, so the plan closes the
incumbent's record when it opens the successor's.

Running detection again is harmless: a holder already covered by an
outgoing assignment (same member and role, matching scope, or the same
ledger record) is skipped. A holder who is also the incoming member is
re-elected and keeps their record, so no outgoing slot is created.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime

from succession.errors import InvalidStateError
from succession.models.service_record import ServiceRecord
from succession.models.transition import (
    AssignmentDirection,
    TransitionAssignment,
    TransitionStatus,
)
from succession.persistence.database import UnitOfWork
from succession.persistence.ledger import ServiceRecordLedger
from succession.persistence.plan_store import TransitionPlanStore

logger = logging.getLogger(__name__)

AUTO_DETECTED_NOTE = "Auto-detected from current service record"


def _already_covered(
    holder: ServiceRecord,
    outgoing: list[TransitionAssignment],
) -> bool:
    for assignment in outgoing:
        if assignment.existing_service_id == holder.record_id:
            return True
        if (
            assignment.member_id == holder.member_id
            and assignment.role_title == holder.role_title
            and assignment.scope.matches(holder.scope)
        ):
            return True
    return False


class AssignmentDetector:
    """Materialises outgoing assignments from the live ledger."""

    def __init__(
        self,
        ledger: ServiceRecordLedger,
        store: TransitionPlanStore,
    ) -> None:
        self._ledger = ledger
        self._store = store

    def detect_outgoing(
        self,
        uow: UnitOfWork,
        plan_id: str,
        now: datetime,
    ) -> list[TransitionAssignment]:
        """Create outgoing assignments for current holders.

        Returns only the assignments created by this call. An empty list
        means every role is vacant or already covered.
        """
        uow.require_write()
        plan = self._store.require_plan(uow, plan_id)
        if plan.status != TransitionStatus.DRAFT:
            raise InvalidStateError(
                f"Plan is {plan.status.value}; can only detect outgoing for DRAFT"
            )

        outgoing = plan.outgoing()
        created: list[TransitionAssignment] = []
        for incoming in plan.incoming():
            holder = self._ledger.active_record_for(
                uow,
                incoming.role_title,
                incoming.scope,
                service_type=incoming.service_type,
            )
            if holder is None:
                logger.debug(
                    "Plan %s: %s is vacant", plan_id, incoming.role_title,
                )
                continue
            if holder.member_id == incoming.member_id:
                logger.debug(
                    "Plan %s: %s keeps %s", plan_id, holder.member_id, holder.role_title,
                )
                continue
            if _already_covered(holder, outgoing):
                continue

            assignment = TransitionAssignment(
                assignment_id=str(uuid.uuid4()),
                plan_id=plan_id,
                direction=AssignmentDirection.OUTGOING,
                member_id=holder.member_id,
                role_title=holder.role_title,
                service_type=holder.service_type,
                scope=holder.scope,
                existing_service_id=holder.record_id,
                notes=AUTO_DETECTED_NOTE,
            )
            self._store.insert_assignment(uow, assignment, created_at=now)
            outgoing.append(assignment)
            created.append(assignment)

        if created:
            logger.info(
                "Plan %s: detected %d outgoing assignment(s)", plan_id, len(created),
            )
        return created
