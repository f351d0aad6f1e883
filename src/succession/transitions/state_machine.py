"""Transition plan state machine.

Owns the plan lifecycle and opens one unit of work per operation:

    DRAFT → PENDING_APPROVAL → APPROVED → APPLIED
    DRAFT | PENDING_APPROVAL → CANCELLED

There are no backward edges. APPLIED and CANCELLED are terminal.

Status-changing operations run in a write transaction, so the status they
read is the status they change. Every status write is also a
compare-and-set in the store, so a change that raced past the lock would
still fail with ConflictError rather than overwrite.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from succession.errors import (
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from succession.models.page import Page
from succession.models.service_record import UNSCOPED, ServiceScope, ServiceType
from succession.models.transition import (
    ApprovalRole,
    AssignmentDirection,
    TransitionAssignment,
    TransitionPlan,
    TransitionStatus,
)
from succession.persistence.database import Database, as_utc, db_precision
from succession.persistence.ledger import ServiceRecordLedger
from succession.persistence.plan_store import EDITABLE_PLAN_FIELDS, TransitionPlanStore
from succession.policy.resolver import PolicyResolver
from succession.transitions.apply import ApplyEngine, ApplyResult
from succession.transitions.approval import ApprovalGate, ApprovalOutcome
from succession.transitions.detector import AssignmentDetector

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

# Legal edges. Anything not listed is rejected.
LEGAL_TRANSITIONS: dict[TransitionStatus, frozenset[TransitionStatus]] = {
    TransitionStatus.DRAFT: frozenset({
        TransitionStatus.PENDING_APPROVAL,
        TransitionStatus.CANCELLED,
    }),
    TransitionStatus.PENDING_APPROVAL: frozenset({
        TransitionStatus.APPROVED,
        TransitionStatus.CANCELLED,
    }),
    TransitionStatus.APPROVED: frozenset({TransitionStatus.APPLIED}),
    TransitionStatus.APPLIED: frozenset(),
    TransitionStatus.CANCELLED: frozenset(),
}


def can_transition(current: TransitionStatus, target: TransitionStatus) -> bool:
    return target in LEGAL_TRANSITIONS[current]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class TransitionOutcome:
    """A committed status change."""
    plan: TransitionPlan
    previous_status: TransitionStatus
    new_status: TransitionStatus


def _require_text(value: Optional[str], label: str) -> str:
    value = (value or "").strip()
    if not value:
        raise ValidationError(f"{label} is required")
    return value


def _require_transition(plan: TransitionPlan, target: TransitionStatus, verb: str) -> None:
    if not can_transition(plan.status, target):
        raise InvalidStateError(
            f"Cannot {verb} plan {plan.plan_id}: status is {plan.status.value}"
        )


class TransitionPlanStateMachine:
    """Lifecycle operations on transition plans.

    Usage:
        machine = TransitionPlanStateMachine(db, resolver)
        plan = machine.create("2026 Board", "term-2026", effective_at, "m-admin")
        machine.add_assignment(plan.plan_id, "incoming", "m-new", "President")
        machine.detect_outgoing(plan.plan_id)
        machine.submit(plan.plan_id)
        machine.approve(plan.plan_id, "m-pres", ApprovalRole.PRESIDENT)
        machine.approve(plan.plan_id, "m-vp", ApprovalRole.VP_ACTIVITIES)
        machine.apply(plan.plan_id, "m-admin")
    """

    def __init__(
        self,
        db: Database,
        resolver: PolicyResolver,
        ledger: Optional[ServiceRecordLedger] = None,
        store: Optional[TransitionPlanStore] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._db = db
        self._ledger = ledger or ServiceRecordLedger()
        self._store = store or TransitionPlanStore()
        self._clock = clock or _utcnow
        self._gate = ApprovalGate(resolver, self._ledger, self._store)
        self._detector = AssignmentDetector(self._ledger, self._store)
        self._apply_engine = ApplyEngine(self._ledger, self._store)

    def _now(self) -> datetime:
        return db_precision(self._clock())

    # ------------------------------------------------------------------
    # Plans
    # ------------------------------------------------------------------

    def create(
        self,
        name: str,
        target_term_id: str,
        effective_at: datetime,
        created_by: Optional[str] = None,
        description: Optional[str] = None,
        target_term_name: Optional[str] = None,
    ) -> TransitionPlan:
        """Create a DRAFT plan with no assignments."""
        name = _require_text(name, "Plan name")
        target_term_id = _require_text(target_term_id, "target_term_id")
        if not isinstance(effective_at, datetime):
            raise ValidationError("effective_at is required")

        now = self._now()
        plan = TransitionPlan(
            plan_id=str(uuid.uuid4()),
            name=name,
            target_term_id=target_term_id,
            effective_at=db_precision(effective_at),
            description=description,
            target_term_name=target_term_name,
            created_by=created_by,
            created_at=now,
            updated_at=now,
        )
        with self._db.transaction() as uow:
            self._store.insert_plan(uow, plan)
        logger.info("Created plan %s (%s)", plan.plan_id, plan.name)
        return plan

    def update(self, plan_id: str, **fields: Any) -> TransitionPlan:
        """Edit plan metadata. DRAFT only."""
        unknown = set(fields) - set(EDITABLE_PLAN_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown or read-only fields: {sorted(unknown)}")
        for key in ("name", "target_term_id"):
            if key in fields:
                fields[key] = _require_text(fields[key], key)
        if "effective_at" in fields:
            if not isinstance(fields["effective_at"], datetime):
                raise ValidationError("effective_at must be a datetime")
            fields["effective_at"] = as_utc(fields["effective_at"])

        with self._db.transaction() as uow:
            plan = self._store.require_plan(uow, plan_id)
            if not plan.is_mutable:
                raise InvalidStateError(
                    f"Plan is {plan.status.value}; only DRAFT plans can be edited"
                )
            if fields:
                self._store.update_plan_fields(uow, plan_id, fields, self._now())
            return self._store.require_plan(uow, plan_id)

    def delete(self, plan_id: str) -> TransitionPlan:
        """Delete a DRAFT or CANCELLED plan with its children.

        Returns the plan as it was just before deletion.
        """
        with self._db.transaction() as uow:
            plan = self._store.require_plan(uow, plan_id)
            if not plan.is_deletable:
                raise InvalidStateError(
                    f"Plan is {plan.status.value}; only DRAFT or CANCELLED "
                    f"plans can be deleted"
                )
            self._store.delete_plan(uow, plan_id)
        logger.info("Deleted plan %s", plan_id)
        return plan

    # ------------------------------------------------------------------
    # Assignments
    # ------------------------------------------------------------------

    def add_assignment(
        self,
        plan_id: str,
        direction: AssignmentDirection | str,
        member_id: str,
        role_title: str,
        service_type: ServiceType | str = ServiceType.BOARD_OFFICER,
        scope: ServiceScope = UNSCOPED,
        existing_service_id: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> TransitionAssignment:
        try:
            direction = AssignmentDirection(direction)
            service_type = ServiceType(service_type)
        except ValueError as e:
            raise ValidationError(str(e)) from None
        member_id = _require_text(member_id, "member_id")
        role_title = _require_text(role_title, "role_title")
        if existing_service_id and direction != AssignmentDirection.OUTGOING:
            raise ValidationError(
                "existing_service_id only applies to outgoing assignments"
            )

        with self._db.transaction() as uow:
            plan = self._store.require_plan(uow, plan_id)
            if not plan.is_mutable:
                raise InvalidStateError(
                    f"Plan is {plan.status.value}; assignments can only "
                    f"change while DRAFT"
                )
            if existing_service_id:
                record = self._ledger.get(uow, existing_service_id)
                if record is None:
                    raise NotFoundError(
                        f"Service record not found: {existing_service_id}"
                    )
                if record.member_id != member_id:
                    raise ValidationError(
                        f"Service record {existing_service_id} belongs to "
                        f"{record.member_id}, not {member_id}"
                    )
            assignment = TransitionAssignment(
                assignment_id=str(uuid.uuid4()),
                plan_id=plan_id,
                direction=direction,
                member_id=member_id,
                role_title=role_title,
                service_type=service_type,
                scope=scope,
                existing_service_id=existing_service_id,
                notes=notes,
            )
            self._store.insert_assignment(uow, assignment, created_at=self._now())
        return assignment

    def remove_assignment(self, assignment_id: str) -> TransitionAssignment:
        with self._db.transaction() as uow:
            assignment = self._store.get_assignment(uow, assignment_id)
            if assignment is None:
                raise NotFoundError(f"Assignment not found: {assignment_id}")
            plan = self._store.require_plan(uow, assignment.plan_id)
            if not plan.is_mutable:
                raise InvalidStateError(
                    f"Plan is {plan.status.value}; assignments can only "
                    f"change while DRAFT"
                )
            self._store.delete_assignment(uow, assignment_id)
        return assignment

    def detect_outgoing(self, plan_id: str) -> list[TransitionAssignment]:
        with self._db.transaction() as uow:
            return self._detector.detect_outgoing(uow, plan_id, self._now())

    # ------------------------------------------------------------------
    # Status changes
    # ------------------------------------------------------------------

    def _change_status(
        self,
        plan_id: str,
        target: TransitionStatus,
        verb: str,
        precheck: Optional[Callable[..., None]] = None,
    ) -> TransitionOutcome:
        with self._db.transaction() as uow:
            plan = self._store.require_plan(uow, plan_id)
            _require_transition(plan, target, verb)
            if precheck is not None:
                precheck(uow, plan)
            self._store.compare_and_set_status(
                uow, plan_id, plan.status, target, updated_at=self._now(),
            )
            updated = self._store.require_plan(uow, plan_id)
        logger.info(
            "Plan %s: %s -> %s", plan_id, plan.status.value, target.value,
        )
        return TransitionOutcome(
            plan=updated, previous_status=plan.status, new_status=target,
        )

    def submit(self, plan_id: str) -> TransitionOutcome:
        """DRAFT → PENDING_APPROVAL. The plan needs at least one assignment."""
        def has_assignments(uow, plan: TransitionPlan) -> None:
            if self._store.count_assignments(uow, plan.plan_id) == 0:
                raise ValidationError("Cannot submit a plan with no assignments")

        return self._change_status(
            plan_id, TransitionStatus.PENDING_APPROVAL, "submit", has_assignments,
        )

    def cancel(self, plan_id: str) -> TransitionOutcome:
        """DRAFT | PENDING_APPROVAL → CANCELLED."""
        return self._change_status(plan_id, TransitionStatus.CANCELLED, "cancel")

    def approve(
        self,
        plan_id: str,
        member_id: str,
        role: ApprovalRole | str,
    ) -> ApprovalOutcome:
        with self._db.transaction() as uow:
            return self._gate.record_approval(
                uow, plan_id, member_id, role, self._now(),
            )

    def can_approve(self, member_id: str, role: ApprovalRole | str) -> bool:
        with self._db.transaction(write=False) as uow:
            return self._gate.can_approve(uow, member_id, role)

    def apply(self, plan_id: str, actor_id: str) -> ApplyResult:
        """APPROVED → APPLIED, writing the ledger changes atomically."""
        try:
            with self._db.transaction() as uow:
                return self._apply_engine.apply(uow, plan_id, actor_id, self._now())
        except (InvalidStateError, NotFoundError):
            raise
        except Exception:
            logger.warning("Apply of plan %s aborted; rolled back", plan_id)
            raise

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, plan_id: str) -> TransitionPlan:
        with self._db.transaction(write=False) as uow:
            return self._store.require_plan(uow, plan_id)

    def list_plans(
        self,
        status: Optional[TransitionStatus | str] = None,
        target_term_id: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Page[TransitionPlan]:
        if page < 1 or limit < 1:
            raise ValidationError("page and limit must be positive")
        if status is not None:
            try:
                status = TransitionStatus(status)
            except ValueError:
                raise ValidationError(f"Unknown status: {status!r}") from None
        with self._db.transaction(write=False) as uow:
            return self._store.list_plans(
                uow, status=status, target_term_id=target_term_id,
                page=page, limit=limit,
            )

    def due_plans(self, now: Optional[datetime] = None) -> list[TransitionPlan]:
        """APPROVED plans whose effective date has passed, oldest first."""
        moment = as_utc(now) if now is not None else self._now()
        with self._db.transaction(write=False) as uow:
            return self._store.plans_due(uow, moment)
