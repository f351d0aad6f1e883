"""Service record ledger — the durable history of who held which role.

The ledger is append-mostly:
- Records are created (manual entry or by applying a transition plan).
- Records are closed exactly once by setting end_at.
- Records are never deleted.

Every "who holds this role right now?" question in the system is answered
by active_record_for(). The approval gate, the outgoing-assignment
detector, the apply engine and the widget incumbency check all use it, so
there is one definition of incumbency.

Every method takes the caller's UnitOfWork. Mutations require a write
unit of work and are rolled back with it.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from succession.errors import ConflictError, NotFoundError, ValidationError
from succession.models.page import Page
from succession.models.service_record import (
    UNSCOPED,
    ServiceRecord,
    ServiceRecordFilters,
    ServiceScope,
    ServiceType,
)
from succession.persistence.database import (
    UnitOfWork,
    db_precision,
    from_db_time,
    to_db_time,
)

_RECORD_COLUMNS = (
    "id, member_id, service_type, role_title, committee_id, committee_name, "
    "event_id, event_title, term_id, term_name, start_at, end_at, "
    "transition_plan_id, notes, created_by, created_at"
)


def scope_from_row(row: Any) -> ServiceScope:
    """Build a ServiceScope from a row carrying the six scope columns."""
    return ServiceScope(
        committee_id=row["committee_id"],
        committee_name=row["committee_name"],
        event_id=row["event_id"],
        event_title=row["event_title"],
        term_id=row["term_id"],
        term_name=row["term_name"],
    )


def scope_params(scope: ServiceScope) -> tuple:
    """Scope values in column order for INSERT statements."""
    return (
        scope.committee_id,
        scope.committee_name,
        scope.event_id,
        scope.event_title,
        scope.term_id,
        scope.term_name,
    )


def _row_to_record(row: Any) -> ServiceRecord:
    return ServiceRecord(
        record_id=row["id"],
        member_id=row["member_id"],
        service_type=ServiceType(row["service_type"]),
        role_title=row["role_title"],
        scope=scope_from_row(row),
        start_at=from_db_time(row["start_at"]),
        end_at=from_db_time(row["end_at"]),
        transition_plan_id=row["transition_plan_id"],
        notes=row["notes"],
        created_by=row["created_by"],
        created_at=from_db_time(row["created_at"]),
    )


class ServiceRecordLedger:
    """Query and mutate service records through a unit of work."""

    # ------------------------------------------------------------------
    # Incumbency
    # ------------------------------------------------------------------

    def active_record_for(
        self,
        uow: UnitOfWork,
        role_title: str,
        scope: ServiceScope = UNSCOPED,
        *,
        service_type: Optional[ServiceType] = None,
        member_id: Optional[str] = None,
    ) -> Optional[ServiceRecord]:
        """Return the current holder's record for a role, or None if vacant.

        Matching follows ServiceScope.matches(): committee and event must
        be equal, term only when the scope names one. If several records
        are open, the most recently started one wins.
        """
        sql = [
            f"SELECT {_RECORD_COLUMNS} FROM service_records",
            "WHERE role_title = ? AND end_at IS NULL",
            "AND committee_id IS ? AND event_id IS ?",
        ]
        params: list[Any] = [role_title, scope.committee_id, scope.event_id]
        if scope.term_id is not None:
            sql.append("AND term_id = ?")
            params.append(scope.term_id)
        if service_type is not None:
            sql.append("AND service_type = ?")
            params.append(service_type.value)
        if member_id is not None:
            sql.append("AND member_id = ?")
            params.append(member_id)
        sql.append("ORDER BY start_at DESC, created_at DESC, rowid DESC LIMIT 1")
        row = uow.fetch_one(" ".join(sql), params)
        return _row_to_record(row) if row is not None else None

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def create_record(
        self,
        uow: UnitOfWork,
        member_id: str,
        service_type: ServiceType,
        role_title: str,
        start_at: datetime,
        scope: ServiceScope = UNSCOPED,
        transition_plan_id: Optional[str] = None,
        notes: Optional[str] = None,
        created_by: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ServiceRecord:
        """Open a new active service record."""
        uow.require_write()
        member_id = (member_id or "").strip()
        role_title = (role_title or "").strip()
        if not member_id:
            raise ValidationError("Service record requires a member_id")
        if not role_title:
            raise ValidationError("Service record requires a role_title")
        if start_at is None:
            raise ValidationError("Service record requires start_at")

        record = ServiceRecord(
            record_id=str(uuid.uuid4()),
            member_id=member_id,
            service_type=ServiceType(service_type),
            role_title=role_title,
            scope=scope,
            start_at=db_precision(start_at),
            transition_plan_id=transition_plan_id,
            notes=notes,
            created_by=created_by,
            created_at=db_precision(now or datetime.now(timezone.utc)),
        )
        uow.execute(
            f"INSERT INTO service_records ({_RECORD_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                record.record_id,
                record.member_id,
                record.service_type.value,
                record.role_title,
                *scope_params(scope),
                to_db_time(record.start_at),
                None,
                record.transition_plan_id,
                record.notes,
                record.created_by,
                to_db_time(record.created_at),
            ),
        )
        return record

    def close_record(
        self,
        uow: UnitOfWork,
        record_id: str,
        end_at: datetime,
    ) -> ServiceRecord:
        """Set end_at on an active record.

        The update is conditional on the record still being open, so a
        concurrent close can never be overwritten.
        """
        uow.require_write()
        existing = self.get(uow, record_id)
        if existing is None:
            raise NotFoundError(f"Service record not found: {record_id}")
        if not existing.is_active:
            raise ConflictError(f"Service record already closed: {record_id}")
        end_at = db_precision(end_at)
        if end_at < existing.start_at:
            raise ValidationError(
                f"end_at {to_db_time(end_at)} precedes start_at "
                f"{to_db_time(existing.start_at)} for record {record_id}"
            )

        cursor = uow.execute(
            "UPDATE service_records SET end_at = ? WHERE id = ? AND end_at IS NULL",
            (to_db_time(end_at), record_id),
        )
        if cursor.rowcount != 1:
            raise ConflictError(f"Service record already closed: {record_id}")
        return self.get(uow, record_id)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, uow: UnitOfWork, record_id: str) -> Optional[ServiceRecord]:
        row = uow.fetch_one(
            f"SELECT {_RECORD_COLUMNS} FROM service_records WHERE id = ?",
            (record_id,),
        )
        return _row_to_record(row) if row is not None else None

    def query(
        self,
        uow: UnitOfWork,
        filters: ServiceRecordFilters,
        page: int = 1,
        limit: int = 20,
    ) -> Page[ServiceRecord]:
        """Paginated, filtered ledger listing, newest first."""
        if page < 1 or limit < 1:
            raise ValidationError("page and limit must be positive")

        clauses: list[str] = []
        params: list[Any] = []
        for column, value in (
            ("member_id", filters.member_id),
            ("committee_id", filters.committee_id),
            ("event_id", filters.event_id),
            ("term_id", filters.term_id),
        ):
            if value is not None:
                clauses.append(f"{column} = ?")
                params.append(value)
        if filters.service_type is not None:
            clauses.append("service_type = ?")
            params.append(filters.service_type.value)
        if filters.active_only:
            clauses.append("end_at IS NULL")
        if filters.start_after is not None:
            clauses.append("start_at >= ?")
            params.append(to_db_time(filters.start_after))
        if filters.end_before is not None:
            clauses.append("end_at IS NOT NULL AND end_at <= ?")
            params.append(to_db_time(filters.end_before))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        total = uow.fetch_one(
            f"SELECT COUNT(*) FROM service_records {where}", params,
        )[0]
        rows = uow.fetch_all(
            f"SELECT {_RECORD_COLUMNS} FROM service_records {where} "
            "ORDER BY start_at DESC, created_at DESC LIMIT ? OFFSET ?",
            [*params, limit, (page - 1) * limit],
        )
        return Page(
            items=[_row_to_record(r) for r in rows],
            page=page,
            limit=limit,
            total_items=total,
        )

    def member_history(self, uow: UnitOfWork, member_id: str) -> list[ServiceRecord]:
        rows = uow.fetch_all(
            f"SELECT {_RECORD_COLUMNS} FROM service_records WHERE member_id = ? "
            "ORDER BY start_at DESC, created_at DESC",
            (member_id,),
        )
        return [_row_to_record(r) for r in rows]

    def active_roles(self, uow: UnitOfWork, member_id: str) -> list[ServiceRecord]:
        rows = uow.fetch_all(
            f"SELECT {_RECORD_COLUMNS} FROM service_records "
            "WHERE member_id = ? AND end_at IS NULL ORDER BY start_at DESC",
            (member_id,),
        )
        return [_row_to_record(r) for r in rows]

    def service_counts(
        self, uow: UnitOfWork, member_id: str,
    ) -> dict[ServiceType, dict[str, int]]:
        """Total and active record counts per service type for a member."""
        counts = {st: {"total": 0, "active": 0} for st in ServiceType}
        rows = uow.fetch_all(
            "SELECT service_type, COUNT(*) AS total, "
            "SUM(CASE WHEN end_at IS NULL THEN 1 ELSE 0 END) AS active "
            "FROM service_records WHERE member_id = ? GROUP BY service_type",
            (member_id,),
        )
        for row in rows:
            counts[ServiceType(row["service_type"])] = {
                "total": row["total"],
                "active": row["active"] or 0,
            }
        return counts
