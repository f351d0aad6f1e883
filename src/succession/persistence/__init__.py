"""Persistence layer: relational store, ledger, plan store and audit log."""

from succession.persistence.database import Database, UnitOfWork
from succession.persistence.event_log import EventLog, EventRecord, EventKind
from succession.persistence.ledger import ServiceRecordLedger
from succession.persistence.plan_store import TransitionPlanStore

__all__ = [
    "Database",
    "UnitOfWork",
    "EventLog",
    "EventRecord",
    "EventKind",
    "ServiceRecordLedger",
    "TransitionPlanStore",
]
