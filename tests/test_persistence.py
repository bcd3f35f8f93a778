"""Tests for persistence layer — proves event log and work item store work correctly."""

import json
import os
import threading

import pytest
from datetime import datetime, timedelta, timezone
from pathlib import Path

from bandtasks.models.membership import MemberRole
from bandtasks.models.work_item import (
    Deliverable,
    DeliverableLink,
    Priority,
    VerificationStatus,
    WorkItem,
    WorkItemKind,
    WorkItemStatus,
)
from bandtasks.persistence.event_log import EventKind, EventLog, EventRecord
from bandtasks.persistence.state_store import (
    ConcurrencyConflict,
    ItemNotFound,
    PersistenceUnavailable,
    WorkItemStore,
)


def _make_item(item_id: str = "T-1", **kwargs) -> WorkItem:
    defaults = dict(
        item_id=item_id, band_id="band-1", kind=WorkItemKind.TASK, title="Rehearsal room",
    )
    defaults.update(kwargs)
    return WorkItem(**defaults)


# =====================================================================
# EventRecord Tests
# =====================================================================


class TestEventRecord:
    def test_create_produces_hash(self) -> None:
        event = EventRecord.create(
            event_id="E-001",
            event_kind=EventKind.ITEM_CLAIMED,
            actor_id="alice",
            payload={"item_id": "T-1"},
        )
        assert event.event_hash.startswith("sha256:")
        assert len(event.event_hash) == 71  # "sha256:" + 64 hex chars
        assert event.item_id == "T-1"

    def test_deterministic_hash(self) -> None:
        ts = datetime(2026, 2, 14, 12, 0, tzinfo=timezone.utc)
        e1 = EventRecord.create("E-1", EventKind.ITEM_SUBMITTED, "bob", {"x": 1}, ts)
        e2 = EventRecord.create("E-1", EventKind.ITEM_SUBMITTED, "bob", {"x": 1}, ts)
        assert e1.event_hash == e2.event_hash

    def test_different_payloads_different_hashes(self) -> None:
        ts = datetime(2026, 2, 14, 12, 0, tzinfo=timezone.utc)
        e1 = EventRecord.create("E-1", EventKind.ITEM_REJECTED, "bob", {"reason": "a"}, ts)
        e2 = EventRecord.create("E-1", EventKind.ITEM_REJECTED, "bob", {"reason": "b"}, ts)
        assert e1.event_hash != e2.event_hash


# =====================================================================
# EventLog Tests
# =====================================================================


class TestEventLog:
    def test_append_and_count(self) -> None:
        log = EventLog()
        log.append(EventRecord.create("E-1", EventKind.ITEM_CREATED, "alice", {}))
        assert log.count == 1
        assert log.last_event.event_id == "E-1"

    def test_duplicate_id_rejected(self) -> None:
        log = EventLog()
        event = EventRecord.create("E-1", EventKind.ITEM_CREATED, "alice", {})
        log.append(event)
        with pytest.raises(ValueError, match="Duplicate"):
            log.append(event)

    def test_filter_by_kind_and_item(self) -> None:
        log = EventLog()
        log.append(EventRecord.create("E-1", EventKind.ITEM_CLAIMED, "alice", {"item_id": "T-1"}))
        log.append(EventRecord.create("E-2", EventKind.ITEM_CLAIMED, "bob", {"item_id": "T-2"}))
        log.append(EventRecord.create("E-3", EventKind.ITEM_COMPLETED, "alice", {"item_id": "T-1"}))

        assert len(log.events(kind=EventKind.ITEM_CLAIMED)) == 2
        assert [e.event_id for e in log.events_for_item("T-1")] == ["E-1", "E-3"]

    def test_subscribers_receive_events(self) -> None:
        log = EventLog()
        seen: list[str] = []
        log.subscribe(lambda e: seen.append(e.event_id))
        log.append(EventRecord.create("E-1", EventKind.ITEM_APPROVED, "mod", {}))
        assert seen == ["E-1"]

    def test_failing_subscriber_does_not_block_others(self) -> None:
        log = EventLog()
        seen: list[str] = []

        def broken(event: EventRecord) -> None:
            raise RuntimeError("notifier down")

        log.subscribe(broken)
        log.subscribe(lambda e: seen.append(e.event_id))
        log.append(EventRecord.create("E-1", EventKind.ITEM_BLOCKED, "mod", {}))
        assert seen == ["E-1"]
        assert log.count == 1

    def test_file_persistence_round_trip(self, tmp_path: Path) -> None:
        path = tmp_path / "events.jsonl"
        log = EventLog(storage_path=path)
        log.append(EventRecord.create("E-1", EventKind.ITEM_CLAIMED, "alice", {"item_id": "T-1"}))
        log.append(EventRecord.create("E-2", EventKind.ITEM_UNCLAIMED, "alice", {"item_id": "T-1"}))

        reloaded = EventLog(storage_path=path)
        assert reloaded.count == 2
        assert reloaded.events()[1].event_kind == EventKind.ITEM_UNCLAIMED

    def test_tampered_file_rejected(self, tmp_path: Path) -> None:
        path = tmp_path / "events.jsonl"
        log = EventLog(storage_path=path)
        log.append(EventRecord.create("E-1", EventKind.ITEM_APPROVED, "mod", {"item_id": "T-1"}))

        record = json.loads(path.read_text(encoding="utf-8"))
        record["actor_id"] = "mallory"
        path.write_text(json.dumps(record) + "\n", encoding="utf-8")

        with pytest.raises(ValueError, match="Integrity check failed"):
            EventLog(storage_path=path)


# =====================================================================
# WorkItemStore Tests
# =====================================================================


class TestWorkItemStore:
    def test_add_starts_at_version_one(self) -> None:
        store = WorkItemStore()
        stored = store.add(_make_item())
        assert stored.version == 1
        assert store.get("T-1").version == 1

    def test_duplicate_add_rejected(self) -> None:
        store = WorkItemStore()
        store.add(_make_item())
        with pytest.raises(ValueError, match="already exists"):
            store.add(_make_item())

    def test_blank_id_rejected(self) -> None:
        with pytest.raises(ValueError, match="blank ID"):
            WorkItemStore().add(_make_item(item_id="  "))

    def test_get_missing_raises(self) -> None:
        with pytest.raises(ItemNotFound):
            WorkItemStore().get("nope")
        assert WorkItemStore().find("nope") is None

    def test_get_returns_private_copy(self) -> None:
        store = WorkItemStore()
        store.add(_make_item())
        copy_a = store.get("T-1")
        copy_a.title = "Changed outside the store"
        assert store.get("T-1").title == "Rehearsal room"

    def test_compare_and_swap_bumps_version(self) -> None:
        store = WorkItemStore()
        store.add(_make_item())
        current = store.get("T-1")
        current.status = WorkItemStatus.IN_PROGRESS
        current.assignee_id = "alice"
        committed = store.compare_and_swap(current, expected_version=1)
        assert committed.version == 2
        assert store.get("T-1").assignee_id == "alice"

    def test_stale_version_conflicts(self) -> None:
        store = WorkItemStore()
        store.add(_make_item())
        first = store.get("T-1")
        second = store.get("T-1")
        first.assignee_id = "alice"
        store.compare_and_swap(first, expected_version=first.version)

        second.assignee_id = "bob"
        with pytest.raises(ConcurrencyConflict) as exc:
            store.compare_and_swap(second, expected_version=second.version)
        assert exc.value.expected_version == 1
        assert exc.value.actual_version == 2
        assert store.get("T-1").assignee_id == "alice"

    def test_cas_on_missing_item(self) -> None:
        with pytest.raises(ItemNotFound):
            WorkItemStore().compare_and_swap(_make_item(), expected_version=1)

    def test_concurrent_cas_single_winner(self) -> None:
        store = WorkItemStore()
        store.add(_make_item())
        barrier = threading.Barrier(8)
        winners: list[str] = []
        lock = threading.Lock()

        def attempt(actor: str) -> None:
            item = store.get("T-1")
            item.assignee_id = actor
            barrier.wait()
            try:
                store.compare_and_swap(item, expected_version=item.version)
            except ConcurrencyConflict:
                return
            with lock:
                winners.append(actor)

        threads = [threading.Thread(target=attempt, args=(f"a{i}",)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(winners) == 1
        assert store.get("T-1").assignee_id == winners[0]

    def test_children_and_band_filter(self) -> None:
        store = WorkItemStore()
        store.add(_make_item("T-1"))
        store.add(_make_item("C-1", kind=WorkItemKind.CHECKLIST_ITEM, parent_id="T-1"))
        store.add(_make_item("T-2", band_id="band-2"))
        assert [c.item_id for c in store.children("T-1")] == ["C-1"]
        assert {i.item_id for i in store.items("band-1")} == {"T-1", "C-1"}
        assert store.count == 3


class TestWorkItemStoreFile:
    def test_round_trip(self, tmp_path: Path) -> None:
        path = tmp_path / "items.json"
        ts = datetime(2026, 2, 14, 12, 30, 15, 250, tzinfo=timezone.utc)
        store = WorkItemStore(path)
        store.add(_make_item(
            status=WorkItemStatus.IN_PROGRESS,
            assignee_id="alice",
            assigned_utc=ts,
            min_claim_role=MemberRole.CONDUCTOR,
            requires_verification=True,
            requires_deliverable=True,
            deliverable=Deliverable(
                summary="Booked the hall and confirmed the PA hire",
                links=(DeliverableLink("https://example.org/invoice", "Invoice"),),
                next_steps="Pay deposit",
                updated_by_id="alice",
                updated_utc=ts,
            ),
            verification_status=VerificationStatus.REJECTED,
            rejection_reason="Attach the invoice",
            priority=Priority.URGENT,
            due_utc=ts,
            created_utc=ts,
        ))

        loaded = WorkItemStore(path).get("T-1")
        assert loaded.assignee_id == "alice"
        assert loaded.assigned_utc == ts
        assert loaded.min_claim_role == MemberRole.CONDUCTOR
        assert loaded.deliverable.links[0].title == "Invoice"
        assert loaded.deliverable.updated_utc == ts
        assert loaded.verification_status == VerificationStatus.REJECTED
        assert loaded.display_status == WorkItemStatus.REJECTED
        assert loaded.priority == Priority.URGENT
        assert loaded.version == 1

    def test_offset_timestamps_keep_their_instant(self, tmp_path: Path) -> None:
        path = tmp_path / "items.json"
        due = datetime(2026, 11, 1, 12, 0, tzinfo=timezone(timedelta(hours=5)))
        store = WorkItemStore(path)
        store.add(_make_item(due_utc=due, created_utc=datetime(2026, 10, 1, 9, 30)))

        loaded = WorkItemStore(path).get("T-1")
        assert loaded.due_utc == due
        assert loaded.due_utc == datetime(2026, 11, 1, 7, 0, tzinfo=timezone.utc)
        assert loaded.created_utc == datetime(2026, 10, 1, 9, 30, tzinfo=timezone.utc)

    def test_versions_survive_restart(self, tmp_path: Path) -> None:
        path = tmp_path / "items.json"
        store = WorkItemStore(path)
        store.add(_make_item())
        current = store.get("T-1")
        current.title = "Renamed"
        store.compare_and_swap(current, expected_version=1)

        reloaded = WorkItemStore(path).get("T-1")
        assert reloaded.title == "Renamed"
        assert reloaded.version == 2

    def test_no_temp_files_left_behind(self, tmp_path: Path) -> None:
        path = tmp_path / "items.json"
        store = WorkItemStore(path)
        store.add(_make_item())
        assert sorted(os.listdir(tmp_path)) == ["items.json"]

    def test_write_failure_rolls_back(self, tmp_path: Path, monkeypatch) -> None:
        path = tmp_path / "items.json"
        store = WorkItemStore(path)
        store.add(_make_item())

        def fail_replace(src, dst):
            raise OSError("disk full")

        monkeypatch.setattr(os, "replace", fail_replace)
        current = store.get("T-1")
        current.assignee_id = "alice"
        with pytest.raises(PersistenceUnavailable, match="disk full"):
            store.compare_and_swap(current, expected_version=1)

        after = store.get("T-1")
        assert after.assignee_id is None
        assert after.version == 1
