"""Append-only audit log — who changed which transition, and how.

The service facade appends one event per successful mutation, after the
database transaction has committed. Each event records the acting member,
the capability that authorised the call, the object touched and a metadata
blob (old/new status, record counts). Events are immutable once written.

The log can be persisted to a JSONL file (one JSON object per line). On
load every line is re-hashed and compared, so a tampered or replayed line
fails loud.
"""

from __future__ import annotations

import enum
import hashlib
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional


class EventKind(str, enum.Enum):
    """Classification of audited actions."""
    PLAN_CREATED = "plan_created"
    PLAN_UPDATED = "plan_updated"
    PLAN_DELETED = "plan_deleted"
    PLAN_SUBMITTED = "plan_submitted"
    PLAN_APPROVED = "plan_approved"
    PLAN_CANCELLED = "plan_cancelled"
    PLAN_APPLIED = "plan_applied"
    ASSIGNMENT_ADDED = "assignment_added"
    ASSIGNMENT_REMOVED = "assignment_removed"
    OUTGOING_DETECTED = "outgoing_detected"
    SERVICE_RECORD_CREATED = "service_record_created"
    SERVICE_RECORD_CLOSED = "service_record_closed"


def _canonical_hash(
    event_id: str,
    event_kind: str,
    timestamp_utc: str,
    actor_id: str,
    payload: dict[str, Any],
) -> str:
    canonical = json.dumps(
        {
            "event_id": event_id,
            "event_kind": event_kind,
            "timestamp_utc": timestamp_utc,
            "actor_id": actor_id,
            "payload": payload,
        },
        sort_keys=True,
        ensure_ascii=False,
    ).encode("utf-8")
    return f"sha256:{hashlib.sha256(canonical).hexdigest()}"


@dataclass(frozen=True)
class EventRecord:
    """A single immutable audit entry.

    payload carries capability, object_type, object_id and metadata.
    """
    event_id: str
    event_kind: EventKind
    timestamp_utc: str
    actor_id: str
    payload: dict[str, Any]
    event_hash: str

    @staticmethod
    def create(
        event_id: str,
        event_kind: EventKind,
        actor_id: str,
        payload: dict[str, Any],
        timestamp_utc: Optional[datetime] = None,
    ) -> EventRecord:
        """Create a new event record with computed hash."""
        ts = timestamp_utc or datetime.now(timezone.utc)
        ts_str = ts.strftime("%Y-%m-%dT%H:%M:%SZ")
        return EventRecord(
            event_id=event_id,
            event_kind=event_kind,
            timestamp_utc=ts_str,
            actor_id=actor_id,
            payload=payload,
            event_hash=_canonical_hash(
                event_id, event_kind.value, ts_str, actor_id, payload,
            ),
        )

    @property
    def object_id(self) -> Optional[str]:
        return self.payload.get("object_id")


    def to_json(self) -> str:
        return json.dumps(
            {
                "event_id": self.event_id,
                "event_kind": self.event_kind.value,
                "timestamp_utc": self.timestamp_utc,
                "actor_id": self.actor_id,
                "payload": self.payload,
                "event_hash": self.event_hash,
            },
            sort_keys=True,
            ensure_ascii=False,
        )

    @staticmethod
    def from_json(line: str) -> EventRecord:
        """Parse one stored line, re-hashing it. A mismatch raises ValueError."""
        data = json.loads(line)
        stored = data["event_hash"]
        computed = _canonical_hash(
            data["event_id"],
            data["event_kind"],
            data["timestamp_utc"],
            data["actor_id"],
            data["payload"],
        )
        if stored != computed:
            raise ValueError(
                f"Integrity check failed for {data['event_id']}: "
                f"stored {stored} != computed {computed}"
            )
        return EventRecord(
            event_id=data["event_id"],
            event_kind=EventKind(data["event_kind"]),
            timestamp_utc=data["timestamp_utc"],
            actor_id=data["actor_id"],
            payload=data["payload"],
            event_hash=stored,
        )


class EventLog:
    """Audit trail of succession changes, optionally mirrored to JSONL.

    Thread-safety: appends from several request handlers must be
    serialised by the caller (the service facade holds a lock).
    """

    def __init__(self, storage_path: Optional[Path] = None) -> None:
        self._storage_path = storage_path
        self._events: list[EventRecord] = []
        self._seen: set[str] = set()
        if storage_path is not None and storage_path.exists():
            self._replay(storage_path)

    def _remember(self, event: EventRecord) -> None:
        if event.event_id in self._seen:
            raise ValueError(f"Duplicate event ID: {event.event_id}")
        self._events.append(event)
        self._seen.add(event.event_id)

    def append(self, event: EventRecord) -> None:
        """Record an event. A reused event_id raises ValueError."""
        if event.event_id in self._seen:
            raise ValueError(f"Duplicate event ID: {event.event_id}")
        if self._storage_path is not None:
            self._storage_path.parent.mkdir(parents=True, exist_ok=True)
            with self._storage_path.open("a", encoding="utf-8") as f:
                f.write(event.to_json() + "\n")
        self._remember(event)

    def events(self, kind: Optional[EventKind] = None) -> list[EventRecord]:
        return [e for e in self._events if kind is None or e.event_kind == kind]

    def events_for(self, object_id: str) -> list[EventRecord]:
        """Audit trail of one plan, assignment or record, oldest first."""
        return [e for e in self._events if e.object_id == object_id]

    @property
    def count(self) -> int:
        return len(self._events)

    def _replay(self, path: Path) -> None:
        with path.open("r", encoding="utf-8") as f:
            lines = [line.strip() for line in f]
        for line_num, line in enumerate(lines, 1):
            if not line:
                continue
            try:
                self._remember(EventRecord.from_json(line))
            except ValueError as e:
                raise ValueError(f"{path} line {line_num}: {e}") from e
