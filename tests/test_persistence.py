"""Tests for persistence layer — unit of work, ledger, plan store, event log."""

import pytest
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

from succession.errors import ConflictError, NotFoundError, ValidationError
from succession.models.service_record import (
    UNSCOPED,
    ServiceRecordFilters,
    ServiceScope,
    ServiceType,
)
from succession.models.transition import (
    Approval,
    ApprovalRole,
    AssignmentDirection,
    TransitionAssignment,
    TransitionPlan,
    TransitionStatus,
)
from succession.persistence.database import Database, from_db_time, to_db_time
from succession.persistence.event_log import EventKind, EventLog, EventRecord
from succession.persistence.ledger import ServiceRecordLedger
from succession.persistence.plan_store import TransitionPlanStore

T0 = datetime(2024, 7, 1, 7, 0, tzinfo=timezone.utc)
T1 = datetime(2025, 7, 1, 7, 0, tzinfo=timezone.utc)


def _make_record(
    db: Database,
    member_id: str,
    role_title: str = "President",
    start_at: datetime = T0,
    scope: ServiceScope = UNSCOPED,
    service_type: ServiceType = ServiceType.BOARD_OFFICER,
):
    with db.transaction() as uow:
        return ServiceRecordLedger().create_record(
            uow, member_id, service_type, role_title, start_at, scope=scope, now=start_at,
        )


def _make_plan(db: Database, plan_id: str = "P-1", **overrides) -> TransitionPlan:
    fields = dict(
        plan_id=plan_id,
        name="2025 Board",
        target_term_id="t-2025",
        effective_at=T1,
        created_at=T0,
        updated_at=T0,
    )
    fields.update(overrides)
    plan = TransitionPlan(**fields)
    with db.transaction() as uow:
        TransitionPlanStore().insert_plan(uow, plan)
    return plan


def _make_assignment(plan_id: str = "P-1", member_id: str = "m-new") -> TransitionAssignment:
    return TransitionAssignment(
        assignment_id=f"A-{member_id}",
        plan_id=plan_id,
        direction=AssignmentDirection.INCOMING,
        member_id=member_id,
        role_title="President",
    )


# =====================================================================
# Unit of work
# =====================================================================


class TestUnitOfWork:
    def test_commit_on_success(self) -> None:
        db = Database()
        record = _make_record(db, "m-1")
        with db.transaction(write=False) as uow:
            assert ServiceRecordLedger().get(uow, record.record_id) is not None

    def test_rollback_on_exception(self) -> None:
        db = Database()
        ledger = ServiceRecordLedger()
        with pytest.raises(RuntimeError, match="boom"):
            with db.transaction() as uow:
                ledger.create_record(uow, "m-1", ServiceType.BOARD_OFFICER, "President", T0)
                raise RuntimeError("boom")
        with db.transaction(write=False) as uow:
            assert ledger.member_history(uow, "m-1") == []

    def test_read_only_rejects_writes(self) -> None:
        db = Database()
        with db.transaction(write=False) as uow:
            with pytest.raises(RuntimeError, match="read-only"):
                ServiceRecordLedger().create_record(
                    uow, "m-1", ServiceType.BOARD_OFFICER, "President", T0,
                )

    def test_nested_transaction_rejected(self) -> None:
        db = Database()
        with db.transaction():
            with pytest.raises(RuntimeError, match="Nested"):
                with db.transaction():
                    pass

    def test_finished_unit_of_work_unusable(self) -> None:
        db = Database()
        with db.transaction() as uow:
            pass
        with pytest.raises(RuntimeError, match="finished"):
            uow.execute("SELECT 1")

    def test_file_backed_store_persists(self, tmp_path: Path) -> None:
        path = tmp_path / "succession.db"
        db = Database(path)
        record = _make_record(db, "m-1")
        db.close()

        db2 = Database(path)
        with db2.transaction(write=False) as uow:
            loaded = ServiceRecordLedger().get(uow, record.record_id)
        assert loaded is not None
        assert loaded.member_id == "m-1"
        db2.close()

    def test_write_lock_deadline_aborts(self, tmp_path: Path) -> None:
        db = Database(tmp_path / "succession.db")
        ledger = ServiceRecordLedger()
        errors = []

        def late_writer() -> None:
            try:
                with db.transaction(timeout=0.1) as uow:
                    ledger.create_record(
                        uow, "m-2", ServiceType.BOARD_OFFICER, "Secretary", T0,
                    )
            except ConflictError as e:
                errors.append(e)

        with db.transaction() as uow:
            ledger.create_record(uow, "m-1", ServiceType.BOARD_OFFICER, "President", T0)
            writer = threading.Thread(target=late_writer)
            writer.start()
            writer.join()

        assert len(errors) == 1
        assert "busy" in str(errors[0])
        with db.transaction(write=False) as uow:
            assert len(ledger.member_history(uow, "m-1")) == 1
            assert ledger.member_history(uow, "m-2") == []
        db.close()

    def test_timestamp_round_trip_is_utc(self) -> None:
        naive = datetime(2025, 7, 1, 7, 0)
        assert to_db_time(naive) == "2025-07-01T07:00:00Z"
        assert from_db_time("2025-07-01T07:00:00Z") == T1


# =====================================================================
# Service record ledger
# =====================================================================


class TestActiveRecordFor:
    def test_vacant_role(self) -> None:
        db = Database()
        with db.transaction(write=False) as uow:
            assert ServiceRecordLedger().active_record_for(uow, "President") is None

    def test_finds_current_holder(self) -> None:
        db = Database()
        record = _make_record(db, "m-a")
        with db.transaction(write=False) as uow:
            found = ServiceRecordLedger().active_record_for(uow, "President")
        assert found.record_id == record.record_id

    def test_closed_record_is_not_active(self) -> None:
        db = Database()
        ledger = ServiceRecordLedger()
        record = _make_record(db, "m-a")
        with db.transaction() as uow:
            ledger.close_record(uow, record.record_id, T1)
        with db.transaction(write=False) as uow:
            assert ledger.active_record_for(uow, "President") is None

    def test_most_recent_start_wins(self) -> None:
        db = Database()
        _make_record(db, "m-old", start_at=T0)
        newer = _make_record(db, "m-new", start_at=T0 + timedelta(days=30))
        with db.transaction(write=False) as uow:
            found = ServiceRecordLedger().active_record_for(uow, "President")
        assert found.record_id == newer.record_id

    def test_scope_must_match(self) -> None:
        db = Database()
        _make_record(
            db, "m-chair", role_title="Chair",
            scope=ServiceScope(committee_id="c-social"),
            service_type=ServiceType.COMMITTEE_CHAIR,
        )
        ledger = ServiceRecordLedger()
        with db.transaction(write=False) as uow:
            assert ledger.active_record_for(uow, "Chair") is None
            assert ledger.active_record_for(
                uow, "Chair", ServiceScope(committee_id="c-golf"),
            ) is None
            found = ledger.active_record_for(
                uow, "Chair", ServiceScope(committee_id="c-social"),
            )
        assert found.member_id == "m-chair"

    def test_term_filter_only_when_named(self) -> None:
        db = Database()
        _make_record(db, "m-a", scope=ServiceScope(term_id="t-2024"))
        ledger = ServiceRecordLedger()
        with db.transaction(write=False) as uow:
            assert ledger.active_record_for(uow, "President") is not None
            assert ledger.active_record_for(
                uow, "President", ServiceScope(term_id="t-2025"),
            ) is None

    def test_member_filter(self) -> None:
        db = Database()
        _make_record(db, "m-a")
        ledger = ServiceRecordLedger()
        with db.transaction(write=False) as uow:
            assert ledger.active_record_for(uow, "President", member_id="m-a") is not None
            assert ledger.active_record_for(uow, "President", member_id="m-b") is None


class TestLedgerMutations:
    def test_created_record_matches_stored_record(self) -> None:
        db = Database()
        ledger = ServiceRecordLedger()
        with db.transaction() as uow:
            created = ledger.create_record(
                uow, "m-1", ServiceType.BOARD_OFFICER, "President",
                T0.replace(microsecond=500000), now=T1.replace(microsecond=1),
            )
        with db.transaction(write=False) as uow:
            loaded = ledger.get(uow, created.record_id)
        assert created == loaded
        assert loaded.start_at == T0
        assert loaded.created_at == T1

    def test_create_requires_member_and_role(self) -> None:
        db = Database()
        ledger = ServiceRecordLedger()
        with db.transaction() as uow:
            with pytest.raises(ValidationError):
                ledger.create_record(uow, " ", ServiceType.BOARD_OFFICER, "President", T0)
            with pytest.raises(ValidationError):
                ledger.create_record(uow, "m-1", ServiceType.BOARD_OFFICER, "", T0)

    def test_close_sets_end_once(self) -> None:
        db = Database()
        ledger = ServiceRecordLedger()
        record = _make_record(db, "m-a")
        with db.transaction() as uow:
            closed = ledger.close_record(uow, record.record_id, T1)
        assert closed.end_at == T1
        with db.transaction() as uow:
            with pytest.raises(ConflictError, match="already closed"):
                ledger.close_record(uow, record.record_id, T1)

    def test_close_unknown_record(self) -> None:
        db = Database()
        with db.transaction() as uow:
            with pytest.raises(NotFoundError):
                ServiceRecordLedger().close_record(uow, "nope", T1)

    def test_close_before_start_rejected(self) -> None:
        db = Database()
        record = _make_record(db, "m-a", start_at=T1)
        with db.transaction() as uow:
            with pytest.raises(ValidationError):
                ServiceRecordLedger().close_record(uow, record.record_id, T0)


class TestLedgerQueries:
    def _seed(self, db: Database) -> None:
        _make_record(db, "m-a", start_at=T0)
        _make_record(db, "m-a", role_title="Secretary", start_at=T0 - timedelta(days=400))
        _make_record(
            db, "m-a", role_title="Host", start_at=T1,
            scope=ServiceScope(event_id="e-gala", event_title="Gala"),
            service_type=ServiceType.EVENT_HOST,
        )
        _make_record(db, "m-b", role_title="VP Activities", start_at=T0)

    def test_filter_by_member_paginated(self) -> None:
        db = Database()
        self._seed(db)
        with db.transaction(write=False) as uow:
            page = ServiceRecordLedger().query(
                uow, ServiceRecordFilters(member_id="m-a"), page=1, limit=2,
            )
        assert page.total_items == 3
        assert len(page.items) == 2
        assert page.has_next
        # newest first
        assert page.items[0].role_title == "Host"

    def test_filter_by_event_and_type(self) -> None:
        db = Database()
        self._seed(db)
        with db.transaction(write=False) as uow:
            page = ServiceRecordLedger().query(
                uow, ServiceRecordFilters(
                    event_id="e-gala", service_type=ServiceType.EVENT_HOST,
                ),
            )
        assert [r.role_title for r in page.items] == ["Host"]

    def test_active_only(self) -> None:
        db = Database()
        ledger = ServiceRecordLedger()
        record = _make_record(db, "m-a")
        _make_record(db, "m-b", role_title="Secretary")
        with db.transaction() as uow:
            ledger.close_record(uow, record.record_id, T1)
        with db.transaction(write=False) as uow:
            page = ledger.query(uow, ServiceRecordFilters(active_only=True))
        assert [r.member_id for r in page.items] == ["m-b"]

    def test_bad_pagination(self) -> None:
        db = Database()
        with db.transaction(write=False) as uow:
            with pytest.raises(ValidationError):
                ServiceRecordLedger().query(uow, ServiceRecordFilters(), page=0)

    def test_service_counts(self) -> None:
        db = Database()
        self._seed(db)
        ledger = ServiceRecordLedger()
        with db.transaction(write=False) as uow:
            counts = ledger.service_counts(uow, "m-a")
        assert counts[ServiceType.BOARD_OFFICER] == {"total": 2, "active": 2}
        assert counts[ServiceType.EVENT_HOST] == {"total": 1, "active": 1}
        assert counts[ServiceType.COMMITTEE_MEMBER] == {"total": 0, "active": 0}

    def test_member_history_and_active_roles(self) -> None:
        db = Database()
        self._seed(db)
        ledger = ServiceRecordLedger()
        with db.transaction(write=False) as uow:
            history = ledger.member_history(uow, "m-a")
            active = ledger.active_roles(uow, "m-b")
        assert len(history) == 3
        assert [r.role_title for r in active] == ["VP Activities"]


# =====================================================================
# Transition plan store
# =====================================================================


class TestPlanStore:
    def test_insert_and_load(self) -> None:
        db = Database()
        _make_plan(db)
        with db.transaction(write=False) as uow:
            plan = TransitionPlanStore().get_plan(uow, "P-1")
        assert plan.name == "2025 Board"
        assert plan.effective_at == T1
        assert plan.status == TransitionStatus.DRAFT

    def test_require_missing_plan(self) -> None:
        db = Database()
        with db.transaction(write=False) as uow:
            with pytest.raises(NotFoundError):
                TransitionPlanStore().require_plan(uow, "nope")

    def test_compare_and_set_conflict(self) -> None:
        db = Database()
        store = TransitionPlanStore()
        _make_plan(db)
        with db.transaction() as uow:
            store.compare_and_set_status(
                uow, "P-1", TransitionStatus.DRAFT, TransitionStatus.PENDING_APPROVAL, T1,
            )
        with db.transaction() as uow:
            with pytest.raises(ConflictError):
                store.compare_and_set_status(
                    uow, "P-1", TransitionStatus.DRAFT, TransitionStatus.CANCELLED, T1,
                )

    def test_update_fields_only_while_draft(self) -> None:
        db = Database()
        store = TransitionPlanStore()
        _make_plan(db, status=TransitionStatus.PENDING_APPROVAL)
        with db.transaction() as uow:
            with pytest.raises(ConflictError):
                store.update_plan_fields(uow, "P-1", {"name": "x"}, T1)

    def test_update_rejects_unknown_field(self) -> None:
        db = Database()
        _make_plan(db)
        with db.transaction() as uow:
            with pytest.raises(ValueError):
                TransitionPlanStore().update_plan_fields(uow, "P-1", {"status": "APPLIED"}, T1)

    def test_second_approval_for_role_conflicts(self) -> None:
        db = Database()
        store = TransitionPlanStore()
        _make_plan(db)
        with db.transaction() as uow:
            store.insert_approval(uow, Approval("P-1", ApprovalRole.PRESIDENT, "m-1", T1))
        with db.transaction() as uow:
            with pytest.raises(ConflictError):
                store.insert_approval(
                    uow, Approval("P-1", ApprovalRole.PRESIDENT, "m-2", T1),
                )
        with db.transaction(write=False) as uow:
            approvals = store.approvals_for(uow, "P-1")
        assert [a.member_id for a in approvals] == ["m-1"]

    def test_delete_cascades(self) -> None:
        db = Database()
        store = TransitionPlanStore()
        _make_plan(db)
        with db.transaction() as uow:
            store.insert_assignment(uow, _make_assignment(), created_at=T0)
            store.insert_approval(uow, Approval("P-1", ApprovalRole.PRESIDENT, "m-1", T1))
        with db.transaction() as uow:
            store.delete_plan(uow, "P-1")
        with db.transaction(write=False) as uow:
            assert store.get_assignment(uow, "A-m-new") is None
            assert store.approvals_for(uow, "P-1") == []

    def test_plans_due_oldest_first(self) -> None:
        db = Database()
        store = TransitionPlanStore()
        _make_plan(db, "P-late", status=TransitionStatus.APPROVED, effective_at=T1)
        _make_plan(db, "P-early", status=TransitionStatus.APPROVED, effective_at=T0)
        _make_plan(db, "P-future", status=TransitionStatus.APPROVED,
                   effective_at=T1 + timedelta(days=300))
        _make_plan(db, "P-pending", status=TransitionStatus.PENDING_APPROVAL, effective_at=T0)
        with db.transaction(write=False) as uow:
            due = store.plans_due(uow, T1 + timedelta(days=1))
        assert [p.plan_id for p in due] == ["P-early", "P-late"]

    def test_list_plans_filters(self) -> None:
        db = Database()
        _make_plan(db, "P-1")
        _make_plan(db, "P-2", target_term_id="t-2026", effective_at=T1 + timedelta(days=180))
        with db.transaction(write=False) as uow:
            everything = TransitionPlanStore().list_plans(uow)
            term = TransitionPlanStore().list_plans(uow, target_term_id="t-2026")
        assert [p.plan_id for p in everything.items] == ["P-2", "P-1"]
        assert [p.plan_id for p in term.items] == ["P-2"]


# =====================================================================
# Event log
# =====================================================================


class TestEventLog:
    def test_create_produces_hash(self) -> None:
        event = EventRecord.create(
            event_id="EVT-1",
            event_kind=EventKind.PLAN_CREATED,
            actor_id="m-admin",
            payload={"object_id": "P-1"},
        )
        assert event.event_hash.startswith("sha256:")
        assert event.object_id == "P-1"

    def test_duplicate_rejected(self) -> None:
        log = EventLog()
        event = EventRecord.create("EVT-1", EventKind.PLAN_CREATED, "a", {})
        log.append(event)
        with pytest.raises(ValueError, match="Duplicate"):
            log.append(event)

    def test_filters(self) -> None:
        log = EventLog()
        log.append(EventRecord.create("EVT-1", EventKind.PLAN_CREATED, "a", {"object_id": "P-1"}))
        log.append(EventRecord.create("EVT-2", EventKind.PLAN_APPLIED, "a", {"object_id": "P-1"}))
        log.append(EventRecord.create("EVT-3", EventKind.PLAN_CREATED, "a", {"object_id": "P-2"}))
        assert len(log.events(EventKind.PLAN_CREATED)) == 2
        assert [e.event_id for e in log.events_for("P-1")] == ["EVT-1", "EVT-2"]
        assert [e.event_id for e in log.events()] == ["EVT-1", "EVT-2", "EVT-3"]

    def test_file_persistence(self, tmp_path: Path) -> None:
        path = tmp_path / "audit.jsonl"
        log = EventLog(path)
        log.append(EventRecord.create("EVT-1", EventKind.PLAN_CREATED, "a", {"x": 1}))
        reloaded = EventLog(path)
        assert reloaded.count == 1
        assert reloaded.events()[0].payload == {"x": 1}

    def test_tampered_file_rejected(self, tmp_path: Path) -> None:
        path = tmp_path / "audit.jsonl"
        log = EventLog(path)
        log.append(EventRecord.create("EVT-1", EventKind.PLAN_CREATED, "a", {"x": 1}))
        path.write_text(path.read_text().replace('"x": 1', '"x": 2'))
        with pytest.raises(ValueError, match="Integrity"):
            EventLog(path)

    def test_replayed_line_rejected(self, tmp_path: Path) -> None:
        path = tmp_path / "audit.jsonl"
        log = EventLog(path)
        log.append(EventRecord.create("EVT-1", EventKind.PLAN_CREATED, "a", {"x": 1}))
        path.write_text(path.read_text() * 2)
        with pytest.raises(ValueError, match="line 2.*Duplicate"):
            EventLog(path)
