"""Transition plan store — rows for plans, assignments and approvals.

The store is deliberately dumb: it reads and writes rows through the
caller's UnitOfWork and enforces only what the schema can enforce
(composition via ON DELETE CASCADE, one approval per plan and role).
Lifecycle rules live in the transitions package.

Status changes are compare-and-set: the UPDATE names the status it expects
to replace, and a zero row count means another transaction got there
first.
"""

from __future__ import annotations

import sqlite3
from datetime import datetime
from typing import Any, Optional

from succession.errors import ConflictError, NotFoundError
from succession.models.page import Page
from succession.models.service_record import ServiceType
from succession.models.transition import (
    Approval,
    ApprovalRole,
    AssignmentDirection,
    TransitionAssignment,
    TransitionPlan,
    TransitionStatus,
)
from succession.persistence.database import UnitOfWork, from_db_time, to_db_time
from succession.persistence.ledger import scope_from_row, scope_params

_PLAN_COLUMNS = (
    "id, name, description, target_term_id, target_term_name, effective_at, "
    "status, created_by, created_at, updated_at, applied_at, applied_by"
)
_ASSIGNMENT_COLUMNS = (
    "id, plan_id, direction, member_id, role_title, service_type, "
    "committee_id, committee_name, event_id, event_title, term_id, term_name, "
    "existing_service_id, notes, created_at"
)

# Plan columns that update() may touch.
EDITABLE_PLAN_FIELDS = (
    "name", "description", "target_term_id", "target_term_name", "effective_at",
)


def _row_to_plan(row: Any) -> TransitionPlan:
    return TransitionPlan(
        plan_id=row["id"],
        name=row["name"],
        description=row["description"],
        target_term_id=row["target_term_id"],
        target_term_name=row["target_term_name"],
        effective_at=from_db_time(row["effective_at"]),
        status=TransitionStatus(row["status"]),
        created_by=row["created_by"],
        created_at=from_db_time(row["created_at"]),
        updated_at=from_db_time(row["updated_at"]),
        applied_at=from_db_time(row["applied_at"]),
        applied_by=row["applied_by"],
    )


def _row_to_assignment(row: Any) -> TransitionAssignment:
    return TransitionAssignment(
        assignment_id=row["id"],
        plan_id=row["plan_id"],
        direction=AssignmentDirection(row["direction"]),
        member_id=row["member_id"],
        role_title=row["role_title"],
        service_type=ServiceType(row["service_type"]),
        scope=scope_from_row(row),
        existing_service_id=row["existing_service_id"],
        notes=row["notes"],
    )


def _row_to_approval(row: Any) -> Approval:
    return Approval(
        plan_id=row["plan_id"],
        role=ApprovalRole(row["role"]),
        member_id=row["member_id"],
        approved_at=from_db_time(row["approved_at"]),
    )


class TransitionPlanStore:
    """Row-level access to transition plans and their children."""

    # ------------------------------------------------------------------
    # Plans
    # ------------------------------------------------------------------

    def insert_plan(self, uow: UnitOfWork, plan: TransitionPlan) -> None:
        uow.require_write()
        uow.execute(
            f"INSERT INTO transition_plans ({_PLAN_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                plan.plan_id,
                plan.name,
                plan.description,
                plan.target_term_id,
                plan.target_term_name,
                to_db_time(plan.effective_at),
                plan.status.value,
                plan.created_by,
                to_db_time(plan.created_at),
                to_db_time(plan.updated_at),
                to_db_time(plan.applied_at),
                plan.applied_by,
            ),
        )

    def get_plan(self, uow: UnitOfWork, plan_id: str) -> Optional[TransitionPlan]:
        """Load a plan with its assignments and approvals."""
        row = uow.fetch_one(
            f"SELECT {_PLAN_COLUMNS} FROM transition_plans WHERE id = ?",
            (plan_id,),
        )
        if row is None:
            return None
        plan = _row_to_plan(row)
        plan.assignments = self.assignments_for(uow, plan_id)
        plan.approvals = self.approvals_for(uow, plan_id)
        return plan

    def require_plan(self, uow: UnitOfWork, plan_id: str) -> TransitionPlan:
        plan = self.get_plan(uow, plan_id)
        if plan is None:
            raise NotFoundError(f"Transition plan not found: {plan_id}")
        return plan

    def update_plan_fields(
        self,
        uow: UnitOfWork,
        plan_id: str,
        fields: dict[str, Any],
        updated_at: datetime,
    ) -> None:
        """Write editable columns. Only allowed while the plan is DRAFT."""
        uow.require_write()
        unknown = set(fields) - set(EDITABLE_PLAN_FIELDS)
        if unknown:
            raise ValueError(f"Not editable: {sorted(unknown)}")
        sets = []
        params: list[Any] = []
        for name, value in fields.items():
            if name == "effective_at":
                value = to_db_time(value)
            sets.append(f"{name} = ?")
            params.append(value)
        sets.append("updated_at = ?")
        params.append(to_db_time(updated_at))
        cursor = uow.execute(
            f"UPDATE transition_plans SET {', '.join(sets)} "
            "WHERE id = ? AND status = ?",
            [*params, plan_id, TransitionStatus.DRAFT.value],
        )
        if cursor.rowcount != 1:
            raise ConflictError(f"Plan {plan_id} changed status during update")

    def compare_and_set_status(
        self,
        uow: UnitOfWork,
        plan_id: str,
        expected: TransitionStatus,
        new: TransitionStatus,
        updated_at: datetime,
        applied_at: Optional[datetime] = None,
        applied_by: Optional[str] = None,
    ) -> None:
        """Move a plan from ``expected`` to ``new`` or raise ConflictError."""
        uow.require_write()
        cursor = uow.execute(
            "UPDATE transition_plans "
            "SET status = ?, updated_at = ?, "
            "applied_at = COALESCE(?, applied_at), "
            "applied_by = COALESCE(?, applied_by) "
            "WHERE id = ? AND status = ?",
            (
                new.value,
                to_db_time(updated_at),
                to_db_time(applied_at),
                applied_by,
                plan_id,
                expected.value,
            ),
        )
        if cursor.rowcount != 1:
            raise ConflictError(
                f"Plan {plan_id} is no longer {expected.value}; "
                f"cannot move to {new.value}"
            )

    def delete_plan(self, uow: UnitOfWork, plan_id: str) -> None:
        """Delete a plan. Assignments and approvals go with it."""
        uow.require_write()
        uow.execute("DELETE FROM transition_plans WHERE id = ?", (plan_id,))

    def list_plans(
        self,
        uow: UnitOfWork,
        status: Optional[TransitionStatus] = None,
        target_term_id: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Page[TransitionPlan]:
        clauses: list[str] = []
        params: list[Any] = []
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if target_term_id is not None:
            clauses.append("target_term_id = ?")
            params.append(target_term_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        total = uow.fetch_one(
            f"SELECT COUNT(*) FROM transition_plans {where}", params,
        )[0]
        rows = uow.fetch_all(
            f"SELECT {_PLAN_COLUMNS} FROM transition_plans {where} "
            "ORDER BY effective_at DESC, created_at DESC LIMIT ? OFFSET ?",
            [*params, limit, (page - 1) * limit],
        )
        plans = []
        for row in rows:
            plan = _row_to_plan(row)
            plan.assignments = self.assignments_for(uow, plan.plan_id)
            plan.approvals = self.approvals_for(uow, plan.plan_id)
            plans.append(plan)
        return Page(items=plans, page=page, limit=limit, total_items=total)

    def plans_due(self, uow: UnitOfWork, now: datetime) -> list[TransitionPlan]:
        """APPROVED plans whose effective date has arrived, oldest first."""
        rows = uow.fetch_all(
            f"SELECT id FROM transition_plans "
            "WHERE status = ? AND effective_at <= ? AND applied_at IS NULL "
            "ORDER BY effective_at ASC",
            (TransitionStatus.APPROVED.value, to_db_time(now)),
        )
        return [self.require_plan(uow, r["id"]) for r in rows]

    def latest_plan_effective_between(
        self,
        uow: UnitOfWork,
        start: datetime,
        end: datetime,
    ) -> Optional[TransitionPlan]:
        """Newest non-cancelled plan with start <= effective_at < end."""
        row = uow.fetch_one(
            "SELECT id FROM transition_plans "
            "WHERE effective_at >= ? AND effective_at < ? AND status != ? "
            "ORDER BY created_at DESC, rowid DESC LIMIT 1",
            (
                to_db_time(start),
                to_db_time(end),
                TransitionStatus.CANCELLED.value,
            ),
        )
        return self.get_plan(uow, row["id"]) if row is not None else None

    # ------------------------------------------------------------------
    # Assignments
    # ------------------------------------------------------------------

    def insert_assignment(
        self,
        uow: UnitOfWork,
        assignment: TransitionAssignment,
        created_at: datetime,
    ) -> None:
        uow.require_write()
        uow.execute(
            f"INSERT INTO transition_assignments ({_ASSIGNMENT_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                assignment.assignment_id,
                assignment.plan_id,
                assignment.direction.value,
                assignment.member_id,
                assignment.role_title,
                assignment.service_type.value,
                *scope_params(assignment.scope),
                assignment.existing_service_id,
                assignment.notes,
                to_db_time(created_at),
            ),
        )

    def get_assignment(
        self, uow: UnitOfWork, assignment_id: str,
    ) -> Optional[TransitionAssignment]:
        row = uow.fetch_one(
            f"SELECT {_ASSIGNMENT_COLUMNS} FROM transition_assignments WHERE id = ?",
            (assignment_id,),
        )
        return _row_to_assignment(row) if row is not None else None

    def delete_assignment(self, uow: UnitOfWork, assignment_id: str) -> None:
        uow.require_write()
        uow.execute(
            "DELETE FROM transition_assignments WHERE id = ?", (assignment_id,),
        )

    def assignments_for(
        self, uow: UnitOfWork, plan_id: str,
    ) -> list[TransitionAssignment]:
        rows = uow.fetch_all(
            f"SELECT {_ASSIGNMENT_COLUMNS} FROM transition_assignments "
            "WHERE plan_id = ? ORDER BY rowid",
            (plan_id,),
        )
        return [_row_to_assignment(r) for r in rows]

    def count_assignments(self, uow: UnitOfWork, plan_id: str) -> int:
        return uow.fetch_one(
            "SELECT COUNT(*) FROM transition_assignments WHERE plan_id = ?",
            (plan_id,),
        )[0]

    # ------------------------------------------------------------------
    # Approvals
    # ------------------------------------------------------------------

    def insert_approval(self, uow: UnitOfWork, approval: Approval) -> None:
        """Persist an approval. A second one for the same role conflicts."""
        uow.require_write()
        try:
            uow.execute(
                "INSERT INTO transition_approvals (plan_id, role, member_id, approved_at) "
                "VALUES (?, ?, ?, ?)",
                (
                    approval.plan_id,
                    approval.role.value,
                    approval.member_id,
                    to_db_time(approval.approved_at),
                ),
            )
        except sqlite3.IntegrityError as e:
            raise ConflictError(
                f"Plan {approval.plan_id} already approved by {approval.role.value}"
            ) from e

    def approvals_for(self, uow: UnitOfWork, plan_id: str) -> list[Approval]:
        rows = uow.fetch_all(
            "SELECT plan_id, role, member_id, approved_at FROM transition_approvals "
            "WHERE plan_id = ? ORDER BY approved_at, rowid",
            (plan_id,),
        )
        return [_row_to_approval(r) for r in rows]
