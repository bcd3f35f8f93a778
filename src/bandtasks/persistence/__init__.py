"""Persistence layer — event log and work item store."""

from bandtasks.persistence.event_log import EventLog, EventRecord, EventKind
from bandtasks.persistence.state_store import (
    ConcurrencyConflict,
    ItemNotFound,
    PersistenceUnavailable,
    WorkItemStore,
)

__all__ = [
    "EventLog",
    "EventRecord",
    "EventKind",
    "WorkItemStore",
    "ItemNotFound",
    "ConcurrencyConflict",
    "PersistenceUnavailable",
]
