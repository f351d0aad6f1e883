"""Succession service — unified facade for the transition workflow.

This is the primary interface for programmatic access to the succession
core. It orchestrates all subsystems:
- Capability checks against the injected role → capability policy
- Transition plan lifecycle (create, assign, submit, approve, apply)
- Outgoing-assignment detection from the live service ledger
- The transition countdown widget
- Service history reads and manual ledger entries
- Audit trail (event log)

All operations produce typed results. Business-rule violations never
escape as exceptions: they come back as ServiceResult(success=False) with
an ErrorKind the caller can map to a transport status.

Audit events are written after the database transaction commits. An
audit failure cannot undo a committed transition, so it is logged, the
facade is flagged as audit-degraded, and the result carries a warning.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from succession.authz import (
    MEMBERS_VIEW,
    TRANSITIONS_VIEW,
    USERS_MANAGE,
    Actor,
    CapabilityChecker,
)
from succession.errors import (
    ErrorKind,
    ForbiddenError,
    SuccessionError,
    ValidationError,
)
from succession.models.page import Page
from succession.models.service_record import (
    UNSCOPED,
    ServiceRecord,
    ServiceRecordFilters,
    ServiceScope,
    ServiceType,
)
from succession.models.transition import (
    ApprovalRole,
    TransitionAssignment,
    TransitionPlan,
    TransitionStatus,
    missing_roles,
)
from succession.persistence.database import Database, as_utc, to_db_time
from succession.persistence.event_log import EventKind, EventLog, EventRecord
from succession.persistence.ledger import ServiceRecordLedger
from succession.persistence.plan_store import TransitionPlanStore
from succession.policy.resolver import PolicyResolver
from succession.transitions.approval import coerce_role
from succession.transitions.state_machine import (
    TransitionOutcome,
    TransitionPlanStateMachine,
)
from succession.widget.calculator import TransitionWidget, WidgetData

logger = logging.getLogger(__name__)


@dataclass
class ServiceResult:
    """Result of a service operation."""
    success: bool
    errors: list[str] = field(default_factory=list)
    data: dict[str, Any] = field(default_factory=dict)
    error_kind: Optional[ErrorKind] = None


def _failure(error: SuccessionError) -> ServiceResult:
    return ServiceResult(success=False, errors=[str(error)], error_kind=error.kind)


# ----------------------------------------------------------------------
# Serialisation
# ----------------------------------------------------------------------

def _scope_to_dict(scope: ServiceScope) -> dict[str, Optional[str]]:
    return {
        "committee_id": scope.committee_id,
        "committee_name": scope.committee_name,
        "event_id": scope.event_id,
        "event_title": scope.event_title,
        "term_id": scope.term_id,
        "term_name": scope.term_name,
    }


def _assignment_to_dict(a: TransitionAssignment) -> dict[str, Any]:
    return {
        "assignment_id": a.assignment_id,
        "plan_id": a.plan_id,
        "direction": a.direction.value,
        "member_id": a.member_id,
        "role_title": a.role_title,
        "service_type": a.service_type.value,
        "scope": _scope_to_dict(a.scope),
        "existing_service_id": a.existing_service_id,
        "notes": a.notes,
    }


def _plan_to_dict(plan: TransitionPlan) -> dict[str, Any]:
    return {
        "plan_id": plan.plan_id,
        "name": plan.name,
        "description": plan.description,
        "target_term_id": plan.target_term_id,
        "target_term_name": plan.target_term_name,
        "effective_at": to_db_time(plan.effective_at),
        "status": plan.status.value,
        "created_by": plan.created_by,
        "created_at": to_db_time(plan.created_at),
        "updated_at": to_db_time(plan.updated_at),
        "applied_at": to_db_time(plan.applied_at),
        "applied_by": plan.applied_by,
        "assignments": [_assignment_to_dict(a) for a in plan.assignments],
        "approvals": [
            {
                "role": ap.role.value,
                "member_id": ap.member_id,
                "approved_at": to_db_time(ap.approved_at),
            }
            for ap in plan.approvals
        ],
        "missing_approvals": sorted(r.value for r in missing_roles(plan.approvals)),
    }


def _record_to_dict(record: ServiceRecord) -> dict[str, Any]:
    return {
        "record_id": record.record_id,
        "member_id": record.member_id,
        "service_type": record.service_type.value,
        "role_title": record.role_title,
        "scope": _scope_to_dict(record.scope),
        "start_at": to_db_time(record.start_at),
        "end_at": to_db_time(record.end_at),
        "is_active": record.is_active,
        "transition_plan_id": record.transition_plan_id,
        "notes": record.notes,
        "created_by": record.created_by,
    }


def _page_meta(page: Page) -> dict[str, Any]:
    return {
        "page": page.page,
        "limit": page.limit,
        "total_items": page.total_items,
        "total_pages": page.total_pages,
        "has_next": page.has_next,
        "has_prev": page.has_prev,
    }


def _widget_to_dict(widget: WidgetData) -> dict[str, Any]:
    data: dict[str, Any] = {
        "visible": widget.visible,
        "next_transition_date": to_db_time(widget.next_transition_date),
        "days_remaining": widget.days_remaining,
        "term_name": widget.term_name,
        "lead_days": widget.lead_days,
        "show_at": to_db_time(widget.show_at),
        "plan": None,
        "viewer_role": widget.context.viewer_role if widget.context else None,
    }
    if widget.plan is not None:
        data["plan"] = {
            "plan_id": widget.plan.plan_id,
            "name": widget.plan.name,
            "status": widget.plan.status.value,
            "president_approved": widget.plan.president_approved,
            "vp_activities_approved": widget.plan.vp_activities_approved,
        }
    return data


class SuccessionService:
    """Unified succession workflow facade.

    Usage:
        resolver = PolicyResolver.from_config_dir(config_dir)
        service = SuccessionService(resolver, Database("data/succession.db"))

        admin = Actor("m-admin", "admin")
        result = service.create_plan(admin, "2026 Board", "term-2026", effective_at)
        plan_id = result.data["plan"]["plan_id"]
        service.add_assignment(admin, plan_id, "incoming", "m-new", "President")
        service.detect_outgoing(admin, plan_id)
        service.submit_plan(admin, plan_id)

        service.approve_plan(Actor("m-pres", "president"), plan_id, "president")
        service.approve_plan(Actor("m-vp", "vp-activities"), plan_id, "vp-activities")
        service.apply_plan(admin, plan_id)

    Audit (optional):
        service = SuccessionService(resolver, db, event_log=EventLog(path))
    """

    def __init__(
        self,
        resolver: PolicyResolver,
        db: Optional[Database] = None,
        event_log: Optional[EventLog] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._resolver = resolver
        self._db = db or Database(busy_timeout=resolver.busy_timeout_seconds())
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._ledger = ServiceRecordLedger()
        self._store = TransitionPlanStore()
        self._machine = TransitionPlanStateMachine(
            self._db, resolver, self._ledger, self._store, self._clock,
        )
        self._widget = TransitionWidget(resolver, self._ledger, self._store)
        self._checker = CapabilityChecker(resolver, resolver.override_capability())
        self._default_limit, self._max_limit = resolver.pagination_limits()

        self._event_log = event_log
        self._event_lock = threading.Lock()
        # Initialize counter from persisted log to avoid ID collision on restart
        self._event_counter = event_log.count if event_log is not None else 0

        # Set when an audit append fails after a committed change.
        self._audit_degraded: bool = False

    @property
    def audit_degraded(self) -> bool:
        return self._audit_degraded

    @property
    def state_machine(self) -> TransitionPlanStateMachine:
        return self._machine

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    def _next_event_id(self) -> str:
        """Generate a monotonically increasing unique event ID."""
        self._event_counter += 1
        return f"EVT-{self._event_counter:08d}"

    def _audit(
        self,
        actor: Actor,
        kind: EventKind,
        capability: str,
        object_type: str,
        object_id: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Optional[str]:
        """Append an audit event. Returns a warning string or None."""
        if self._event_log is None:
            return None
        with self._event_lock:
            try:
                event = EventRecord.create(
                    event_id=self._next_event_id(),
                    event_kind=kind,
                    actor_id=actor.member_id,
                    payload={
                        "capability": capability,
                        "object_type": object_type,
                        "object_id": object_id,
                        "metadata": metadata or {},
                    },
                    timestamp_utc=as_utc(self._clock()),
                )
                self._event_log.append(event)
            except (ValueError, OSError) as e:
                self._audit_degraded = True
                logger.warning(
                    "Audit write failed for %s %s: %s", kind.value, object_id, e,
                )
                return f"Audit degraded: {e}; change committed without audit entry"
        return None

    def _audited(
        self,
        data: dict[str, Any],
        actor: Actor,
        kind: EventKind,
        capability: str,
        object_type: str,
        object_id: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> ServiceResult:
        warning = self._audit(actor, kind, capability, object_type, object_id, metadata)
        if warning:
            data["warning"] = warning
        return ServiceResult(success=True, data=data)

    def _status_result(
        self,
        actor: Actor,
        kind: EventKind,
        outcome: TransitionOutcome,
    ) -> ServiceResult:
        return self._audited(
            {
                "plan": _plan_to_dict(outcome.plan),
                "previous_status": outcome.previous_status.value,
                "status": outcome.new_status.value,
            },
            actor, kind, USERS_MANAGE, "transition_plan", outcome.plan.plan_id,
            {
                "old_status": outcome.previous_status.value,
                "new_status": outcome.new_status.value,
            },
        )

    def _page_args(self, page: int, limit: Optional[int]) -> tuple[int, int]:
        if page < 1:
            raise ValidationError("page must be >= 1")
        if limit is None:
            return page, self._default_limit
        if limit < 1:
            raise ValidationError("limit must be >= 1")
        return page, min(limit, self._max_limit)

    # ------------------------------------------------------------------
    # Plan reads
    # ------------------------------------------------------------------

    def list_plans(
        self,
        actor: Actor,
        status: Optional[TransitionStatus | str] = None,
        target_term_id: Optional[str] = None,
        page: int = 1,
        limit: Optional[int] = None,
    ) -> ServiceResult:
        try:
            self._checker.require(actor, TRANSITIONS_VIEW)
            page, limit = self._page_args(page, limit)
            result = self._machine.list_plans(status, target_term_id, page, limit)
        except SuccessionError as e:
            return _failure(e)
        return ServiceResult(success=True, data={
            "plans": [_plan_to_dict(p) for p in result.items],
            "pagination": _page_meta(result),
        })

    def get_plan(self, actor: Actor, plan_id: str) -> ServiceResult:
        try:
            self._checker.require(actor, MEMBERS_VIEW)
            plan = self._machine.get(plan_id)
        except SuccessionError as e:
            return _failure(e)
        return ServiceResult(success=True, data={"plan": _plan_to_dict(plan)})

    def due_transitions(
        self, actor: Actor, now: Optional[datetime] = None,
    ) -> ServiceResult:
        """APPROVED plans whose effective date has arrived."""
        try:
            self._checker.require(actor, TRANSITIONS_VIEW)
            plans = self._machine.due_plans(now)
        except SuccessionError as e:
            return _failure(e)
        return ServiceResult(success=True, data={
            "plans": [_plan_to_dict(p) for p in plans],
        })

    # ------------------------------------------------------------------
    # Plan mutations
    # ------------------------------------------------------------------

    def create_plan(
        self,
        actor: Actor,
        name: str,
        target_term_id: str,
        effective_at: datetime,
        description: Optional[str] = None,
        target_term_name: Optional[str] = None,
    ) -> ServiceResult:
        try:
            self._checker.require(actor, USERS_MANAGE)
            plan = self._machine.create(
                name, target_term_id, effective_at,
                created_by=actor.member_id,
                description=description,
                target_term_name=target_term_name,
            )
        except SuccessionError as e:
            return _failure(e)
        return self._audited(
            {"plan": _plan_to_dict(plan)},
            actor, EventKind.PLAN_CREATED, USERS_MANAGE,
            "transition_plan", plan.plan_id,
            {"new_status": plan.status.value, "target_term_id": plan.target_term_id},
        )

    def update_plan(self, actor: Actor, plan_id: str, **fields: Any) -> ServiceResult:
        try:
            self._checker.require(actor, USERS_MANAGE)
            plan = self._machine.update(plan_id, **fields)
        except SuccessionError as e:
            return _failure(e)
        return self._audited(
            {"plan": _plan_to_dict(plan)},
            actor, EventKind.PLAN_UPDATED, USERS_MANAGE,
            "transition_plan", plan_id,
            {"fields": sorted(fields)},
        )

    def delete_plan(self, actor: Actor, plan_id: str) -> ServiceResult:
        try:
            self._checker.require(actor, USERS_MANAGE)
            plan = self._machine.delete(plan_id)
        except SuccessionError as e:
            return _failure(e)
        return self._audited(
            {"plan_id": plan_id, "deleted": True},
            actor, EventKind.PLAN_DELETED, USERS_MANAGE,
            "transition_plan", plan_id,
            {
                "old_status": plan.status.value,
                "assignments_removed": len(plan.assignments),
                "approvals_removed": len(plan.approvals),
            },
        )

    def add_assignment(
        self,
        actor: Actor,
        plan_id: str,
        direction: str,
        member_id: str,
        role_title: str,
        service_type: ServiceType | str = ServiceType.BOARD_OFFICER,
        scope: ServiceScope = UNSCOPED,
        existing_service_id: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> ServiceResult:
        try:
            self._checker.require(actor, USERS_MANAGE)
            assignment = self._machine.add_assignment(
                plan_id, direction, member_id, role_title,
                service_type=service_type,
                scope=scope,
                existing_service_id=existing_service_id,
                notes=notes,
            )
        except SuccessionError as e:
            return _failure(e)
        return self._audited(
            {"assignment": _assignment_to_dict(assignment)},
            actor, EventKind.ASSIGNMENT_ADDED, USERS_MANAGE,
            "transition_assignment", assignment.assignment_id,
            {
                "plan_id": plan_id,
                "direction": assignment.direction.value,
                "member_id": assignment.member_id,
                "role_title": assignment.role_title,
            },
        )

    def remove_assignment(self, actor: Actor, assignment_id: str) -> ServiceResult:
        try:
            self._checker.require(actor, USERS_MANAGE)
            assignment = self._machine.remove_assignment(assignment_id)
        except SuccessionError as e:
            return _failure(e)
        return self._audited(
            {"assignment_id": assignment_id, "removed": True},
            actor, EventKind.ASSIGNMENT_REMOVED, USERS_MANAGE,
            "transition_assignment", assignment_id,
            {"plan_id": assignment.plan_id},
        )

    def detect_outgoing(self, actor: Actor, plan_id: str) -> ServiceResult:
        try:
            self._checker.require(actor, USERS_MANAGE)
            created = self._machine.detect_outgoing(plan_id)
        except SuccessionError as e:
            return _failure(e)
        data: dict[str, Any] = {
            "created": [_assignment_to_dict(a) for a in created],
            "count": len(created),
        }
        if not created:
            return ServiceResult(success=True, data=data)
        return self._audited(
            data, actor, EventKind.OUTGOING_DETECTED, USERS_MANAGE,
            "transition_plan", plan_id,
            {"assignments_created": len(created)},
        )

    def submit_plan(self, actor: Actor, plan_id: str) -> ServiceResult:
        try:
            self._checker.require(actor, USERS_MANAGE)
            outcome = self._machine.submit(plan_id)
        except SuccessionError as e:
            return _failure(e)
        return self._status_result(actor, EventKind.PLAN_SUBMITTED, outcome)

    def cancel_plan(self, actor: Actor, plan_id: str) -> ServiceResult:
        try:
            self._checker.require(actor, USERS_MANAGE)
            outcome = self._machine.cancel(plan_id)
        except SuccessionError as e:
            return _failure(e)
        return self._status_result(actor, EventKind.PLAN_CANCELLED, outcome)

    def approve_plan(
        self,
        actor: Actor,
        plan_id: str,
        role: ApprovalRole | str,
    ) -> ServiceResult:
        """Record the actor's approval in a governance role.

        The actor must currently hold the position behind ``role``. That is
        checked here and again inside the approval transaction.
        """
        try:
            if not actor.member_id or not actor.member_id.strip():
                raise ForbiddenError("Authenticated member required")
            role = coerce_role(role)
            if not self._machine.can_approve(actor.member_id, role):
                position = self._resolver.approval_position(role)
                raise ForbiddenError(
                    f"Member {actor.member_id} does not currently hold "
                    f"{position.role_title}; cannot approve as {role.value}"
                )
            outcome = self._machine.approve(plan_id, actor.member_id, role)
        except SuccessionError as e:
            return _failure(e)
        return self._audited(
            {
                "plan": _plan_to_dict(outcome.plan),
                "role": role.value,
                "previous_status": outcome.previous_status.value,
                "status": outcome.new_status.value,
                "fully_approved": outcome.new_status == TransitionStatus.APPROVED,
            },
            actor, EventKind.PLAN_APPROVED, f"approve:{role.value}",
            "transition_plan", plan_id,
            {
                "role": role.value,
                "old_status": outcome.previous_status.value,
                "new_status": outcome.new_status.value,
            },
        )

    def apply_plan(self, actor: Actor, plan_id: str) -> ServiceResult:
        try:
            self._checker.require(actor, USERS_MANAGE)
            result = self._machine.apply(plan_id, actor.member_id)
        except SuccessionError as e:
            return _failure(e)
        return self._audited(
            {
                "plan_id": plan_id,
                "status": result.new_status.value,
                "records_closed": result.records_closed,
                "records_created": result.records_created,
                "applied_at": to_db_time(result.applied_at),
            },
            actor, EventKind.PLAN_APPLIED, USERS_MANAGE,
            "transition_plan", plan_id,
            {
                "old_status": result.previous_status.value,
                "new_status": result.new_status.value,
                "records_closed": result.records_closed,
                "records_created": result.records_created,
            },
        )

    # ------------------------------------------------------------------
    # Widget
    # ------------------------------------------------------------------

    def transition_widget(
        self,
        actor: Actor,
        now: Optional[datetime] = None,
        lead_days: Optional[int] = None,
    ) -> ServiceResult:
        """Countdown widget for sitting President / Past President."""
        moment = as_utc(now) if now is not None else as_utc(self._clock())
        try:
            self._checker.require(actor, TRANSITIONS_VIEW)
            with self._db.transaction(write=False) as uow:
                widget = self._widget.read(
                    uow,
                    actor.member_id,
                    moment,
                    override=self._checker.has_override(actor),
                    lead_days=lead_days,
                )
        except SuccessionError as e:
            return _failure(e)
        return ServiceResult(success=True, data=_widget_to_dict(widget))

    # ------------------------------------------------------------------
    # Service ledger
    # ------------------------------------------------------------------

    def create_service_record(
        self,
        actor: Actor,
        member_id: str,
        service_type: ServiceType | str,
        role_title: str,
        start_at: datetime,
        scope: ServiceScope = UNSCOPED,
        notes: Optional[str] = None,
    ) -> ServiceResult:
        """Manual ledger entry, outside any transition plan."""
        try:
            self._checker.require(actor, USERS_MANAGE)
            try:
                service_type = ServiceType(service_type)
            except ValueError as e:
                raise ValidationError(str(e)) from None
            with self._db.transaction() as uow:
                record = self._ledger.create_record(
                    uow, member_id, service_type, role_title, start_at,
                    scope=scope, notes=notes, created_by=actor.member_id,
                    now=self._clock(),
                )
        except SuccessionError as e:
            return _failure(e)
        return self._audited(
            {"record": _record_to_dict(record)},
            actor, EventKind.SERVICE_RECORD_CREATED, USERS_MANAGE,
            "service_record", record.record_id,
            {"member_id": record.member_id, "role_title": record.role_title},
        )

    def close_service_record(
        self,
        actor: Actor,
        record_id: str,
        end_at: datetime,
    ) -> ServiceResult:
        try:
            self._checker.require(actor, USERS_MANAGE)
            with self._db.transaction() as uow:
                record = self._ledger.close_record(uow, record_id, end_at)
        except SuccessionError as e:
            return _failure(e)
        return self._audited(
            {"record": _record_to_dict(record)},
            actor, EventKind.SERVICE_RECORD_CLOSED, USERS_MANAGE,
            "service_record", record_id,
            {"end_at": to_db_time(record.end_at)},
        )

    def service_history(
        self,
        actor: Actor,
        filters: Optional[ServiceRecordFilters] = None,
        page: int = 1,
        limit: Optional[int] = None,
    ) -> ServiceResult:
        try:
            self._checker.require(actor, MEMBERS_VIEW)
            page, limit = self._page_args(page, limit)
            with self._db.transaction(write=False) as uow:
                result = self._ledger.query(
                    uow, filters or ServiceRecordFilters(), page, limit,
                )
        except SuccessionError as e:
            return _failure(e)
        return ServiceResult(success=True, data={
            "records": [_record_to_dict(r) for r in result.items],
            "pagination": _page_meta(result),
        })

    def member_service_history(self, actor: Actor, member_id: str) -> ServiceResult:
        try:
            self._checker.require(actor, MEMBERS_VIEW)
            with self._db.transaction(write=False) as uow:
                records = self._ledger.member_history(uow, member_id)
        except SuccessionError as e:
            return _failure(e)
        return ServiceResult(success=True, data={
            "member_id": member_id,
            "records": [_record_to_dict(r) for r in records],
        })

    def active_roles(self, actor: Actor, member_id: str) -> ServiceResult:
        try:
            self._checker.require(actor, MEMBERS_VIEW)
            with self._db.transaction(write=False) as uow:
                records = self._ledger.active_roles(uow, member_id)
        except SuccessionError as e:
            return _failure(e)
        return ServiceResult(success=True, data={
            "member_id": member_id,
            "records": [_record_to_dict(r) for r in records],
        })

    def service_counts(self, actor: Actor, member_id: str) -> ServiceResult:
        try:
            self._checker.require(actor, MEMBERS_VIEW)
            with self._db.transaction(write=False) as uow:
                counts = self._ledger.service_counts(uow, member_id)
        except SuccessionError as e:
            return _failure(e)
        return ServiceResult(success=True, data={
            "member_id": member_id,
            "counts": {st.value: c for st, c in counts.items()},
        })
