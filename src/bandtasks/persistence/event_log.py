"""Append-only event log — the record of every work item transition.

Every successful lifecycle transition produces exactly one event record,
appended to the log. Events are immutable once written. The log serves as:
1. The audit trail for who claimed, submitted, reviewed, and completed what.
2. The feed for notification collaborators (via subscribe()), so a
   notifier reacts to transitions instead of polling item state.

Refusals never produce events. A refused operation changed nothing.
"""

from __future__ import annotations

import enum
import hashlib
import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class EventKind(str, enum.Enum):
    """One kind per lifecycle transition."""
    ITEM_CREATED = "item_created"
    ITEM_CLAIMED = "item_claimed"
    ITEM_UNCLAIMED = "item_unclaimed"
    DELIVERABLE_UPDATED = "deliverable_updated"
    ITEM_SUBMITTED = "item_submitted"
    ITEM_COMPLETED = "item_completed"
    ITEM_APPROVED = "item_approved"
    ITEM_REJECTED = "item_rejected"
    ITEM_RESUBMITTED = "item_resubmitted"
    ITEM_BLOCKED = "item_blocked"
    ITEM_UNBLOCKED = "item_unblocked"


EventListener = Callable[["EventRecord"], None]


@dataclass(frozen=True)
class EventRecord:
    """A single immutable event in the lifecycle log.

    The event_hash is computed at creation time over the canonical JSON
    form and is re-verified when the log is loaded from disk.
    """
    event_id: str
    event_kind: EventKind
    timestamp_utc: str
    actor_id: str
    payload: dict[str, Any]
    event_hash: str  # SHA-256 of canonical JSON

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
        digest = _canonical_hash(event_id, event_kind.value, ts_str, actor_id, payload)
        return EventRecord(
            event_id=event_id,
            event_kind=event_kind,
            timestamp_utc=ts_str,
            actor_id=actor_id,
            payload=payload,
            event_hash=f"sha256:{digest}",
        )

    @property
    def item_id(self) -> Optional[str]:
        return self.payload.get("item_id")


class EventLog:
    """Append-only event log with optional JSONL persistence and listeners.

    Listeners are called synchronously after a durable append. A failing
    listener is logged and skipped; it never blocks the log or other
    listeners, and it never undoes the transition it was told about.
    """

    def __init__(self, storage_path: Optional[Path] = None) -> None:
        self._events: list[EventRecord] = []
        self._storage_path = storage_path
        self._event_ids: set[str] = set()
        self._listeners: list[EventListener] = []
        self._lock = threading.Lock()

        if storage_path and storage_path.exists():
            self._load_from_file(storage_path)

    def subscribe(self, listener: EventListener) -> None:
        """Register a callable to receive every appended event."""
        self._listeners.append(listener)

    def append(self, event: EventRecord) -> None:
        """Append an event to the log.

        Raises ValueError if event_id is a duplicate (replay protection)
        and OSError if the JSONL file cannot be written.
        """
        with self._lock:
            if event.event_id in self._event_ids:
                raise ValueError(f"Duplicate event ID: {event.event_id}")
            if self._storage_path:
                self._append_to_file(event)
            self._events.append(event)
            self._event_ids.add(event.event_id)

        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.warning(
                    "Event listener failed for %s (%s)",
                    event.event_id, event.event_kind.value, exc_info=True,
                )

    def events(self, kind: Optional[EventKind] = None) -> list[EventRecord]:
        """Return events, optionally filtered by kind."""
        if kind is None:
            return list(self._events)
        return [e for e in self._events if e.event_kind == kind]

    def events_for_item(self, item_id: str) -> list[EventRecord]:
        """Return the transition history of one work item, oldest first."""
        return [e for e in self._events if e.item_id == item_id]

    @property
    def count(self) -> int:
        return len(self._events)

    @property
    def last_event(self) -> Optional[EventRecord]:
        return self._events[-1] if self._events else None

    def _append_to_file(self, event: EventRecord) -> None:
        """Append a single event to the JSONL file."""
        record = {
            "event_id": event.event_id,
            "event_kind": event.event_kind.value,
            "timestamp_utc": event.timestamp_utc,
            "actor_id": event.actor_id,
            "payload": event.payload,
            "event_hash": event.event_hash,
        }
        self._storage_path.parent.mkdir(parents=True, exist_ok=True)
        with self._storage_path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(record, sort_keys=True, ensure_ascii=False) + "\n")

    def _load_from_file(self, path: Path) -> None:
        """Load events from a JSONL file with integrity verification.

        Fail-closed: rejects tampered records (hash mismatch) and
        duplicate event IDs.
        """
        with path.open("r", encoding="utf-8") as f:
            for line_num, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                data = json.loads(line)
                event_id = data["event_id"]

                if event_id in self._event_ids:
                    raise ValueError(
                        f"Duplicate event ID on recovery (line {line_num}): {event_id}"
                    )

                expected_hash = "sha256:" + _canonical_hash(
                    data["event_id"],
                    data["event_kind"],
                    data["timestamp_utc"],
                    data["actor_id"],
                    data["payload"],
                )
                if data["event_hash"] != expected_hash:
                    raise ValueError(
                        f"Integrity check failed (line {line_num}): event {event_id} "
                        f"stored hash {data['event_hash']} != computed {expected_hash}"
                    )

                event = EventRecord(
                    event_id=event_id,
                    event_kind=EventKind(data["event_kind"]),
                    timestamp_utc=data["timestamp_utc"],
                    actor_id=data["actor_id"],
                    payload=data["payload"],
                    event_hash=data["event_hash"],
                )
                self._events.append(event)
                self._event_ids.add(event_id)


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
    return hashlib.sha256(canonical).hexdigest()
