"""Tests for the transition plan state machine: lifecycle edges and validation."""

import pytest
from datetime import datetime, timedelta, timezone
from pathlib import Path

from succession.errors import InvalidStateError, NotFoundError, ValidationError
from succession.models.service_record import ServiceScope, ServiceType
from succession.models.transition import (
    ApprovalRole,
    AssignmentDirection,
    TransitionStatus,
)
from succession.persistence.database import Database
from succession.persistence.ledger import ServiceRecordLedger
from succession.policy.resolver import PolicyResolver
from succession.transitions.state_machine import (
    LEGAL_TRANSITIONS,
    TransitionPlanStateMachine,
    can_transition,
)

CONFIG_DIR = Path(__file__).parent.parent / "config"
NOW = datetime(2025, 6, 15, 12, 0, tzinfo=timezone.utc)
EFFECTIVE = datetime(2025, 7, 1, 7, 0, tzinfo=timezone.utc)


def _make_machine(db: Database | None = None) -> TransitionPlanStateMachine:
    return TransitionPlanStateMachine(
        db or Database(),
        PolicyResolver.from_config_dir(CONFIG_DIR),
        clock=lambda: NOW,
    )


def _seed(db: Database, member_id: str, role_title: str) -> None:
    with db.transaction() as uow:
        ServiceRecordLedger().create_record(
            uow, member_id, ServiceType.BOARD_OFFICER, role_title,
            NOW - timedelta(days=365),
        )


def _make_submitted(machine: TransitionPlanStateMachine) -> str:
    plan = machine.create("2025 Board", "t-2025", EFFECTIVE, "m-admin")
    machine.add_assignment(plan.plan_id, "incoming", "m-new", "President")
    machine.submit(plan.plan_id)
    return plan.plan_id


# ===================================================================
# Legal edges
# ===================================================================

class TestLegalEdges:
    def test_forward_path(self) -> None:
        assert can_transition(TransitionStatus.DRAFT, TransitionStatus.PENDING_APPROVAL)
        assert can_transition(TransitionStatus.PENDING_APPROVAL, TransitionStatus.APPROVED)
        assert can_transition(TransitionStatus.APPROVED, TransitionStatus.APPLIED)

    def test_cancel_edges(self) -> None:
        assert can_transition(TransitionStatus.DRAFT, TransitionStatus.CANCELLED)
        assert can_transition(TransitionStatus.PENDING_APPROVAL, TransitionStatus.CANCELLED)
        assert not can_transition(TransitionStatus.APPROVED, TransitionStatus.CANCELLED)
        assert not can_transition(TransitionStatus.APPLIED, TransitionStatus.CANCELLED)

    def test_no_backward_edges(self) -> None:
        order = [
            TransitionStatus.DRAFT,
            TransitionStatus.PENDING_APPROVAL,
            TransitionStatus.APPROVED,
            TransitionStatus.APPLIED,
        ]
        for i, later in enumerate(order):
            for earlier in order[:i]:
                assert not can_transition(later, earlier)

    def test_terminal_states_have_no_exits(self) -> None:
        assert LEGAL_TRANSITIONS[TransitionStatus.APPLIED] == frozenset()
        assert LEGAL_TRANSITIONS[TransitionStatus.CANCELLED] == frozenset()


# ===================================================================
# Create / update / delete
# ===================================================================

class TestCreate:
    def test_create_is_draft_and_empty(self) -> None:
        machine = _make_machine()
        plan = machine.create("2025 Board", "t-2025", EFFECTIVE, "m-admin")
        loaded = machine.get(plan.plan_id)
        assert loaded.status == TransitionStatus.DRAFT
        assert loaded.assignments == []
        assert loaded.approvals == []
        assert loaded.created_by == "m-admin"
        assert loaded.created_at == NOW

    def test_created_plan_matches_stored_plan(self) -> None:
        machine = TransitionPlanStateMachine(
            Database(),
            PolicyResolver.from_config_dir(CONFIG_DIR),
            clock=lambda: NOW.replace(microsecond=654321),
        )
        plan = machine.create(
            "2025 Board", "t-2025", EFFECTIVE.replace(microsecond=123456),
        )
        loaded = machine.get(plan.plan_id)
        assert plan.effective_at == loaded.effective_at == EFFECTIVE
        assert plan.created_at == loaded.created_at == NOW

    def test_create_requires_name(self) -> None:
        with pytest.raises(ValidationError):
            _make_machine().create("  ", "t-2025", EFFECTIVE)

    def test_create_requires_term(self) -> None:
        with pytest.raises(ValidationError):
            _make_machine().create("2025 Board", "", EFFECTIVE)

    def test_create_requires_effective_at(self) -> None:
        with pytest.raises(ValidationError):
            _make_machine().create("2025 Board", "t-2025", None)

    def test_get_missing(self) -> None:
        with pytest.raises(NotFoundError):
            _make_machine().get("nope")


class TestUpdate:
    def test_update_draft(self) -> None:
        machine = _make_machine()
        plan = machine.create("2025 Board", "t-2025", EFFECTIVE)
        later = EFFECTIVE + timedelta(days=31)
        updated = machine.update(plan.plan_id, name="Revised", effective_at=later)
        assert updated.name == "Revised"
        assert updated.effective_at == later

    def test_update_unknown_field(self) -> None:
        machine = _make_machine()
        plan = machine.create("2025 Board", "t-2025", EFFECTIVE)
        with pytest.raises(ValidationError):
            machine.update(plan.plan_id, status="APPLIED")

    def test_update_blank_name(self) -> None:
        machine = _make_machine()
        plan = machine.create("2025 Board", "t-2025", EFFECTIVE)
        with pytest.raises(ValidationError):
            machine.update(plan.plan_id, name="")

    def test_update_after_submit_rejected(self) -> None:
        machine = _make_machine()
        plan_id = _make_submitted(machine)
        with pytest.raises(InvalidStateError):
            machine.update(plan_id, name="Too late")

    def test_update_missing(self) -> None:
        with pytest.raises(NotFoundError):
            _make_machine().update("nope", name="x")


class TestDelete:
    def test_delete_draft(self) -> None:
        machine = _make_machine()
        plan = machine.create("2025 Board", "t-2025", EFFECTIVE)
        machine.add_assignment(plan.plan_id, "incoming", "m-new", "President")
        machine.delete(plan.plan_id)
        with pytest.raises(NotFoundError):
            machine.get(plan.plan_id)

    def test_delete_cancelled(self) -> None:
        machine = _make_machine()
        plan_id = _make_submitted(machine)
        machine.cancel(plan_id)
        machine.delete(plan_id)
        with pytest.raises(NotFoundError):
            machine.get(plan_id)

    def test_delete_pending_rejected(self) -> None:
        machine = _make_machine()
        plan_id = _make_submitted(machine)
        with pytest.raises(InvalidStateError):
            machine.delete(plan_id)


# ===================================================================
# Assignments
# ===================================================================

class TestAssignments:
    def test_add_and_remove(self) -> None:
        machine = _make_machine()
        plan = machine.create("2025 Board", "t-2025", EFFECTIVE)
        a = machine.add_assignment(
            plan.plan_id, AssignmentDirection.INCOMING, "m-new", "Chair",
            service_type=ServiceType.COMMITTEE_CHAIR,
            scope=ServiceScope(committee_id="c-social", committee_name="Social"),
            notes="Volunteered at AGM",
        )
        loaded = machine.get(plan.plan_id)
        assert loaded.assignments == [a]
        machine.remove_assignment(a.assignment_id)
        assert machine.get(plan.plan_id).assignments == []

    def test_blank_member_rejected(self) -> None:
        machine = _make_machine()
        plan = machine.create("2025 Board", "t-2025", EFFECTIVE)
        with pytest.raises(ValidationError):
            machine.add_assignment(plan.plan_id, "incoming", " ", "President")

    def test_bad_direction_rejected(self) -> None:
        machine = _make_machine()
        plan = machine.create("2025 Board", "t-2025", EFFECTIVE)
        with pytest.raises(ValidationError):
            machine.add_assignment(plan.plan_id, "sideways", "m-1", "President")

    def test_add_to_missing_plan(self) -> None:
        with pytest.raises(NotFoundError):
            _make_machine().add_assignment("nope", "incoming", "m-1", "President")

    def test_add_after_submit_rejected(self) -> None:
        machine = _make_machine()
        plan_id = _make_submitted(machine)
        with pytest.raises(InvalidStateError):
            machine.add_assignment(plan_id, "incoming", "m-2", "Secretary")

    def test_remove_after_submit_rejected(self) -> None:
        machine = _make_machine()
        plan_id = _make_submitted(machine)
        assignment = machine.get(plan_id).assignments[0]
        with pytest.raises(InvalidStateError):
            machine.remove_assignment(assignment.assignment_id)

    def test_remove_missing(self) -> None:
        with pytest.raises(NotFoundError):
            _make_machine().remove_assignment("nope")

    def test_outgoing_pin_must_exist(self) -> None:
        machine = _make_machine()
        plan = machine.create("2025 Board", "t-2025", EFFECTIVE)
        with pytest.raises(NotFoundError):
            machine.add_assignment(
                plan.plan_id, "outgoing", "m-old", "President",
                existing_service_id="missing",
            )

    def test_pin_on_incoming_rejected(self) -> None:
        machine = _make_machine()
        plan = machine.create("2025 Board", "t-2025", EFFECTIVE)
        with pytest.raises(ValidationError):
            machine.add_assignment(
                plan.plan_id, "incoming", "m-new", "President",
                existing_service_id="R-1",
            )


# ===================================================================
# Submit / cancel
# ===================================================================

class TestSubmit:
    def test_submit_empty_plan_fails(self) -> None:
        machine = _make_machine()
        plan = machine.create("2025 Board", "t-2025", EFFECTIVE)
        with pytest.raises(ValidationError, match="no assignments"):
            machine.submit(plan.plan_id)
        assert machine.get(plan.plan_id).status == TransitionStatus.DRAFT

    def test_submit_with_assignment(self) -> None:
        machine = _make_machine()
        plan = machine.create("2025 Board", "t-2025", EFFECTIVE)
        machine.add_assignment(plan.plan_id, "incoming", "m-new", "President")
        outcome = machine.submit(plan.plan_id)
        assert outcome.previous_status == TransitionStatus.DRAFT
        assert outcome.new_status == TransitionStatus.PENDING_APPROVAL
        assert outcome.plan.status == TransitionStatus.PENDING_APPROVAL

    def test_submit_twice_rejected(self) -> None:
        machine = _make_machine()
        plan_id = _make_submitted(machine)
        with pytest.raises(InvalidStateError):
            machine.submit(plan_id)


class TestCancel:
    def test_cancel_draft(self) -> None:
        machine = _make_machine()
        plan = machine.create("2025 Board", "t-2025", EFFECTIVE)
        outcome = machine.cancel(plan.plan_id)
        assert outcome.new_status == TransitionStatus.CANCELLED

    def test_cancel_pending(self) -> None:
        machine = _make_machine()
        plan_id = _make_submitted(machine)
        assert machine.cancel(plan_id).previous_status == TransitionStatus.PENDING_APPROVAL

    def test_cancel_approved_rejected(self) -> None:
        db = Database()
        _seed(db, "m-pres", "President")
        _seed(db, "m-vp", "VP Activities")
        machine = _make_machine(db)
        plan_id = _make_submitted(machine)
        machine.approve(plan_id, "m-pres", ApprovalRole.PRESIDENT)
        machine.approve(plan_id, "m-vp", ApprovalRole.VP_ACTIVITIES)
        with pytest.raises(InvalidStateError):
            machine.cancel(plan_id)

    def test_cancel_twice_rejected(self) -> None:
        machine = _make_machine()
        plan = machine.create("2025 Board", "t-2025", EFFECTIVE)
        machine.cancel(plan.plan_id)
        with pytest.raises(InvalidStateError):
            machine.cancel(plan.plan_id)


# ===================================================================
# Reads
# ===================================================================

class TestReads:
    def test_list_by_status(self) -> None:
        machine = _make_machine()
        draft = machine.create("Draft", "t-2025", EFFECTIVE)
        submitted = _make_submitted(machine)
        page = machine.list_plans(status="PENDING_APPROVAL")
        assert [p.plan_id for p in page.items] == [submitted]
        page = machine.list_plans(status=TransitionStatus.DRAFT)
        assert [p.plan_id for p in page.items] == [draft.plan_id]

    def test_list_unknown_status(self) -> None:
        with pytest.raises(ValidationError):
            _make_machine().list_plans(status="ARCHIVED")

    def test_due_plans_only_approved(self) -> None:
        db = Database()
        _seed(db, "m-pres", "President")
        _seed(db, "m-vp", "VP Activities")
        machine = _make_machine(db)
        approved = _make_submitted(machine)
        _make_submitted(machine)
        machine.approve(approved, "m-pres", "president")
        machine.approve(approved, "m-vp", "vp-activities")

        assert machine.due_plans(EFFECTIVE - timedelta(seconds=1)) == []
        assert [p.plan_id for p in machine.due_plans(EFFECTIVE)] == [approved]
