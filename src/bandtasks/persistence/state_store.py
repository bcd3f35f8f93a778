"""Work item store — versioned records with compare-and-swap commits.

Stores and recovers every work item (tasks and checklist items) with its
assignment, verification state, and deliverable.

Concurrency contract:
- get() returns a private copy carrying the record's current version.
- compare_and_swap() commits a modified copy only if the stored version
  still equals the version the caller read. Otherwise it raises
  ConcurrencyConflict and nothing changes. The check and the write happen
  under one lock, so two racing writers can never both succeed.
- When file-backed, every commit is written atomically (temp file +
  rename). A failed write rolls the in-memory record back and raises
  PersistenceUnavailable, so a half-applied transition is never visible.

This is a simple file-based store suitable for single-node deployment.
Production deployments would replace this with a database backend
(conditional UPDATE ... WHERE version = ?) while keeping the same interface.
"""

from __future__ import annotations

import copy
import json
import logging
import os
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from bandtasks.models.membership import MemberRole
from bandtasks.models.work_item import (
    Deliverable,
    DeliverableLink,
    Priority,
    VerificationStatus,
    WorkItem,
    WorkItemKind,
    WorkItemStatus,
    to_utc,
)

logger = logging.getLogger(__name__)

_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


class StoreError(Exception):
    """Base class for store-level signals."""


class ItemNotFound(StoreError):
    """No work item exists with the requested ID."""

    def __init__(self, item_id: str) -> None:
        self.item_id = item_id
        super().__init__(f"Work item not found: {item_id}")


class ConcurrencyConflict(StoreError):
    """The record changed between read and commit."""

    def __init__(self, item_id: str, expected_version: int, actual_version: int) -> None:
        self.item_id = item_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Work item {item_id} changed concurrently "
            f"(expected version {expected_version}, found {actual_version})"
        )


class PersistenceUnavailable(StoreError):
    """The backing file could not be written. Infrastructure failure."""


class WorkItemStore:
    """Versioned work item store with optional JSON file persistence.

    Usage:
        store = WorkItemStore(Path("data/work_items.json"))
        store.add(item)
        current = store.get(item.item_id)
        current.title = "Renamed"
        store.compare_and_swap(current, expected_version=current.version)
    """

    def __init__(self, storage_path: Optional[Path] = None) -> None:
        self._path = storage_path
        self._items: dict[str, WorkItem] = {}
        self._lock = threading.Lock()
        if storage_path is not None and storage_path.exists():
            self._load()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, item_id: str) -> WorkItem:
        """Return a private copy of the item. Raises ItemNotFound."""
        with self._lock:
            item = self._items.get(item_id)
            if item is None:
                raise ItemNotFound(item_id)
            return copy.deepcopy(item)

    def find(self, item_id: str) -> Optional[WorkItem]:
        try:
            return self.get(item_id)
        except ItemNotFound:
            return None

    def children(self, parent_id: str) -> list[WorkItem]:
        """Return copies of all items nested under `parent_id`."""
        with self._lock:
            return [
                copy.deepcopy(i) for i in self._items.values()
                if i.parent_id == parent_id
            ]

    def items(self, band_id: Optional[str] = None) -> list[WorkItem]:
        """Return copies of all items, optionally restricted to one band."""
        with self._lock:
            return [
                copy.deepcopy(i) for i in self._items.values()
                if band_id is None or i.band_id == band_id
            ]

    @property
    def count(self) -> int:
        return len(self._items)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def add(self, item: WorkItem) -> WorkItem:
        """Insert a new item at version 1.

        Raises ValueError on a blank or duplicate ID.
        """
        item_id = item.item_id.strip()
        if not item_id:
            raise ValueError("Cannot store work item with blank ID")
        with self._lock:
            if item_id in self._items:
                raise ValueError(f"Work item already exists: {item_id}")
            stored = copy.deepcopy(item)
            stored.item_id = item_id
            stored.version = 1
            self._items[item_id] = stored
            try:
                self._save()
            except OSError as e:
                del self._items[item_id]
                logger.error("Failed to persist new work item %s: %s", item_id, e)
                raise PersistenceUnavailable(f"Persistence failure: {e}") from e
            return copy.deepcopy(stored)

    def compare_and_swap(self, item: WorkItem, expected_version: int) -> WorkItem:
        """Commit `item` if the stored version still equals `expected_version`.

        Returns a copy of the committed record (version bumped).
        Raises ItemNotFound, ConcurrencyConflict, or PersistenceUnavailable.
        """
        with self._lock:
            current = self._items.get(item.item_id)
            if current is None:
                raise ItemNotFound(item.item_id)
            if current.version != expected_version:
                raise ConcurrencyConflict(item.item_id, expected_version, current.version)

            committed = copy.deepcopy(item)
            committed.version = expected_version + 1
            self._items[item.item_id] = committed
            try:
                self._save()
            except OSError as e:
                self._items[item.item_id] = current
                logger.error("Failed to persist work item %s: %s", item.item_id, e)
                raise PersistenceUnavailable(f"Persistence failure: {e}") from e
            return copy.deepcopy(committed)

    # ------------------------------------------------------------------
    # File persistence
    # ------------------------------------------------------------------

    def _load(self) -> None:
        with self._path.open("r", encoding="utf-8") as f:
            state = json.load(f)
        for data in state.get("work_items", {}).values():
            item = _item_from_dict(data)
            self._items[item.item_id] = item

    def _save(self) -> None:
        """Write all records atomically. Caller holds the lock."""
        if self._path is None:
            return
        state = {
            "work_items": {
                iid: _item_to_dict(item) for iid, item in self._items.items()
            },
        }
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path: Optional[Path] = None
        try:
            with tempfile.NamedTemporaryFile(
                "w",
                encoding="utf-8",
                dir=str(self._path.parent),
                delete=False,
            ) as f:
                tmp_path = Path(f.name)
                json.dump(state, f, indent=2, sort_keys=True, ensure_ascii=False)
                f.flush()
                os.fsync(f.fileno())
            os.replace(str(tmp_path), str(self._path))
        finally:
            if tmp_path is not None and tmp_path.exists():
                tmp_path.unlink()


# ---------------------------------------------------------------------------
# Serialisation
# ---------------------------------------------------------------------------

def _ts(value: Optional[datetime]) -> Optional[str]:
    return to_utc(value).strftime(_TS_FORMAT) if value else None


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.strptime(value, _TS_FORMAT).replace(tzinfo=timezone.utc)


def _item_to_dict(item: WorkItem) -> dict[str, Any]:
    deliverable = None
    if item.deliverable is not None:
        d = item.deliverable
        deliverable = {
            "summary": d.summary,
            "links": [{"url": link.url, "title": link.title} for link in d.links],
            "next_steps": d.next_steps,
            "updated_by_id": d.updated_by_id,
            "updated_utc": _ts(d.updated_utc),
        }
    return {
        "item_id": item.item_id,
        "band_id": item.band_id,
        "kind": item.kind.value,
        "title": item.title,
        "status": item.status.value,
        "parent_id": item.parent_id,
        "assignee_id": item.assignee_id,
        "assigned_utc": _ts(item.assigned_utc),
        "min_claim_role": item.min_claim_role.value if item.min_claim_role else None,
        "requires_verification": item.requires_verification,
        "requires_deliverable": item.requires_deliverable,
        "deliverable": deliverable,
        "verification_status": (
            item.verification_status.value if item.verification_status else None
        ),
        "verified_by_id": item.verified_by_id,
        "verified_utc": _ts(item.verified_utc),
        "rejection_reason": item.rejection_reason,
        "completion_note": item.completion_note,
        "completed_utc": _ts(item.completed_utc),
        "completed_by_id": item.completed_by_id,
        "due_utc": _ts(item.due_utc),
        "priority": item.priority.value,
        "created_utc": _ts(item.created_utc),
        "version": item.version,
    }


def _item_from_dict(data: dict[str, Any]) -> WorkItem:
    deliverable = None
    d = data.get("deliverable")
    if d is not None:
        deliverable = Deliverable(
            summary=d["summary"],
            links=tuple(DeliverableLink(**link) for link in d.get("links", [])),
            next_steps=d.get("next_steps"),
            updated_by_id=d.get("updated_by_id"),
            updated_utc=_parse_ts(d.get("updated_utc")),
        )
    return WorkItem(
        item_id=data["item_id"],
        band_id=data["band_id"],
        kind=WorkItemKind(data["kind"]),
        title=data["title"],
        status=WorkItemStatus(data["status"]),
        parent_id=data.get("parent_id"),
        assignee_id=data.get("assignee_id"),
        assigned_utc=_parse_ts(data.get("assigned_utc")),
        min_claim_role=(
            MemberRole(data["min_claim_role"]) if data.get("min_claim_role") else None
        ),
        requires_verification=data.get("requires_verification", False),
        requires_deliverable=data.get("requires_deliverable", False),
        deliverable=deliverable,
        verification_status=(
            VerificationStatus(data["verification_status"])
            if data.get("verification_status") else None
        ),
        verified_by_id=data.get("verified_by_id"),
        verified_utc=_parse_ts(data.get("verified_utc")),
        rejection_reason=data.get("rejection_reason"),
        completion_note=data.get("completion_note"),
        completed_utc=_parse_ts(data.get("completed_utc")),
        completed_by_id=data.get("completed_by_id"),
        due_utc=_parse_ts(data.get("due_utc")),
        priority=Priority(data.get("priority", Priority.MEDIUM.value)),
        created_utc=_parse_ts(data.get("created_utc")),
        version=data.get("version", 1),
    )
