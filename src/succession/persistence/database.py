"""Relational store and unit of work.

All reads and writes of plans, assignments, approvals and service records
go through a UnitOfWork obtained from Database.transaction(). A unit of
work is one SQLite transaction:

- write=True opens BEGIN IMMEDIATE. SQLite grants a single reserved write
  lock, so two writers never interleave: the second waits (up to the busy
  timeout) and then observes the first one's committed state.
- write=False opens BEGIN DEFERRED for consistent multi-statement reads.

Leaving the ``with`` block normally commits. Any exception rolls back every
statement issued through the unit of work, so a failed operation leaves no
partial writes behind.

File-backed stores give each thread its own connection. The in-memory store
(used by tests and single-process tools) has one connection guarded by a
re-entrant lock.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager, nullcontext
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Optional, Sequence

from succession.errors import ConflictError

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"

SCHEMA = """
CREATE TABLE IF NOT EXISTS service_records (
    id TEXT PRIMARY KEY,
    member_id TEXT NOT NULL,
    service_type TEXT NOT NULL,
    role_title TEXT NOT NULL,
    committee_id TEXT,
    committee_name TEXT,
    event_id TEXT,
    event_title TEXT,
    term_id TEXT,
    term_name TEXT,
    start_at TEXT NOT NULL,
    end_at TEXT,
    transition_plan_id TEXT,
    notes TEXT,
    created_by TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_service_records_role_active
    ON service_records (role_title, end_at);
CREATE INDEX IF NOT EXISTS idx_service_records_member
    ON service_records (member_id);

CREATE TABLE IF NOT EXISTS transition_plans (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    description TEXT,
    target_term_id TEXT NOT NULL,
    target_term_name TEXT,
    effective_at TEXT NOT NULL,
    status TEXT NOT NULL,
    created_by TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    applied_at TEXT,
    applied_by TEXT
);
CREATE INDEX IF NOT EXISTS idx_transition_plans_status
    ON transition_plans (status, effective_at);

CREATE TABLE IF NOT EXISTS transition_assignments (
    id TEXT PRIMARY KEY,
    plan_id TEXT NOT NULL REFERENCES transition_plans (id) ON DELETE CASCADE,
    direction TEXT NOT NULL CHECK (direction IN ('incoming', 'outgoing')),
    member_id TEXT NOT NULL,
    role_title TEXT NOT NULL,
    service_type TEXT NOT NULL,
    committee_id TEXT,
    committee_name TEXT,
    event_id TEXT,
    event_title TEXT,
    term_id TEXT,
    term_name TEXT,
    existing_service_id TEXT,
    notes TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_transition_assignments_plan
    ON transition_assignments (plan_id);

CREATE TABLE IF NOT EXISTS transition_approvals (
    plan_id TEXT NOT NULL REFERENCES transition_plans (id) ON DELETE CASCADE,
    role TEXT NOT NULL,
    member_id TEXT NOT NULL,
    approved_at TEXT NOT NULL,
    PRIMARY KEY (plan_id, role)
);
"""


def as_utc(value: datetime) -> datetime:
    """Normalise a datetime to aware UTC. Naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def db_precision(value: datetime) -> datetime:
    """UTC value truncated to whole seconds, as it reads back from the store."""
    return as_utc(value).replace(microsecond=0)


def to_db_time(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return as_utc(value).strftime(TIMESTAMP_FORMAT)


def from_db_time(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


class UnitOfWork:
    """One open transaction. Passed explicitly into every store call."""

    def __init__(self, conn: sqlite3.Connection, write: bool) -> None:
        self._conn = conn
        self.write = write
        self._finished = False

    def execute(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        if self._finished:
            raise RuntimeError("Unit of work already finished")
        return self._conn.execute(sql, params)

    def fetch_one(self, sql: str, params: Sequence[Any] = ()) -> Optional[sqlite3.Row]:
        return self.execute(sql, params).fetchone()

    def fetch_all(self, sql: str, params: Sequence[Any] = ()) -> list[sqlite3.Row]:
        return self.execute(sql, params).fetchall()

    def require_write(self) -> None:
        """Guard for mutating store calls."""
        if not self.write:
            raise RuntimeError("Write attempted inside a read-only unit of work")

    def _finish(self) -> None:
        self._finished = True


class Database:
    """SQLite-backed relational store.

    Usage:
        db = Database(Path("data/succession.db"))
        with db.transaction() as uow:
            ledger.create_record(uow, ...)
    """

    def __init__(
        self,
        path: Path | str = ":memory:",
        busy_timeout: float = 5.0,
    ) -> None:
        self._path = str(path)
        self._busy_timeout = busy_timeout
        self._memory = self._path == ":memory:"
        self._local = threading.local()
        self._lock = threading.RLock()
        self._connections: list[sqlite3.Connection] = []
        self._shared: Optional[sqlite3.Connection] = None
        if self._memory:
            self._shared = self._connect()
        self.ensure_schema()

    @property
    def path(self) -> str:
        return self._path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self._path,
            timeout=self._busy_timeout,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        with self._lock:
            self._connections.append(conn)
        return conn

    def _connection(self) -> sqlite3.Connection:
        if self._shared is not None:
            return self._shared
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = self._connect()
            self._local.conn = conn
        return conn

    def ensure_schema(self) -> None:
        conn = self._connection()
        with self._lock:
            if not self._memory:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.executescript(SCHEMA)

    @contextmanager
    def transaction(
        self,
        write: bool = True,
        timeout: Optional[float] = None,
    ) -> Iterator[UnitOfWork]:
        """Open a unit of work.

        ``timeout`` bounds how long to wait for the write lock; when it
        expires the operation fails with ConflictError and nothing is written.
        """
        conn = self._connection()
        guard = self._lock if self._memory else nullcontext()
        with guard:
            if conn.in_transaction:
                raise RuntimeError("Nested transactions are not supported")
            wait = self._busy_timeout if timeout is None else timeout
            conn.execute(f"PRAGMA busy_timeout = {int(wait * 1000)}")
            try:
                conn.execute("BEGIN IMMEDIATE" if write else "BEGIN DEFERRED")
            except sqlite3.OperationalError as e:
                logger.warning("Could not open transaction on %s: %s", self._path, e)
                raise ConflictError(f"Store busy: {e}") from e

            uow = UnitOfWork(conn, write=write)
            try:
                yield uow
            except BaseException:
                conn.rollback()
                raise
            else:
                conn.commit()
            finally:
                uow._finish()

    def close(self) -> None:
        with self._lock:
            for conn in self._connections:
                conn.close()
            self._connections.clear()
            self._shared = None
        self._local = threading.local()
