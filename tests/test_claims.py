"""Tests for the claim manager — exclusive assignment under contention."""

import threading

import pytest

from bandtasks.claims.manager import ClaimManager
from bandtasks.models.refusal import RefusalCode
from bandtasks.models.work_item import (
    Deliverable,
    WorkItem,
    WorkItemKind,
    WorkItemStatus,
)
from bandtasks.persistence.state_store import WorkItemStore
from bandtasks.workflow.state_machine import VerificationWorkflow


@pytest.fixture
def store() -> WorkItemStore:
    s = WorkItemStore()
    s.add(WorkItem(item_id="T-1", band_id="band-1", kind=WorkItemKind.TASK, title="Load van"))
    return s


@pytest.fixture
def claims(store: WorkItemStore) -> ClaimManager:
    return ClaimManager(store, VerificationWorkflow())


class TestClaim:
    def test_claim_unassigned(self, store: WorkItemStore, claims: ClaimManager) -> None:
        outcome = claims.claim(store.get("T-1"), "alice")
        assert outcome.success
        assert outcome.item.assignee_id == "alice"
        assert outcome.item.status == WorkItemStatus.IN_PROGRESS
        assert store.get("T-1").version == 2

    def test_claim_held_by_other(self, store: WorkItemStore, claims: ClaimManager) -> None:
        claims.claim(store.get("T-1"), "alice")
        outcome = claims.claim(store.get("T-1"), "bob")
        assert outcome.refusal.code == RefusalCode.ALREADY_CLAIMED
        assert outcome.refusal.details["held_by_actor"] is False

    def test_claim_own_item(self, store: WorkItemStore, claims: ClaimManager) -> None:
        claims.claim(store.get("T-1"), "alice")
        outcome = claims.claim(store.get("T-1"), "alice")
        assert outcome.refusal.code == RefusalCode.ALREADY_CLAIMED
        assert outcome.refusal.details["held_by_actor"] is True

    def test_stale_read_loses_to_winner(self, store: WorkItemStore, claims: ClaimManager) -> None:
        stale = store.get("T-1")
        claims.claim(store.get("T-1"), "alice")
        outcome = claims.claim(stale, "bob")
        assert outcome.refusal.code == RefusalCode.ALREADY_CLAIMED
        assert store.get("T-1").assignee_id == "alice"

    def test_stale_read_without_new_holder_is_conflict(
        self, store: WorkItemStore, claims: ClaimManager,
    ) -> None:
        stale = store.get("T-1")
        renamed = store.get("T-1")
        renamed.title = "Load the van"
        store.compare_and_swap(renamed, expected_version=renamed.version)

        outcome = claims.claim(stale, "bob")
        assert outcome.refusal.code == RefusalCode.CONCURRENCY_CONFLICT
        assert outcome.refusal.details["actual_version"] == 2

    def test_completed_item_refused(self, store: WorkItemStore, claims: ClaimManager) -> None:
        done = store.get("T-1")
        done.status = WorkItemStatus.COMPLETED
        store.compare_and_swap(done, expected_version=done.version)
        outcome = claims.claim(store.get("T-1"), "alice")
        assert outcome.refusal.code == RefusalCode.INVALID_STATE

    def test_exactly_one_concurrent_claim_wins(
        self, store: WorkItemStore, claims: ClaimManager,
    ) -> None:
        actors = [f"member-{i}" for i in range(10)]
        barrier = threading.Barrier(len(actors))
        outcomes = {}
        lock = threading.Lock()

        def attempt(actor: str) -> None:
            item = store.get("T-1")
            barrier.wait()
            outcome = claims.claim(item, actor)
            with lock:
                outcomes[actor] = outcome

        threads = [threading.Thread(target=attempt, args=(a,)) for a in actors]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        winners = [a for a, o in outcomes.items() if o.success]
        losers = [o for o in outcomes.values() if not o.success]
        assert len(winners) == 1
        assert all(o.refusal.code == RefusalCode.ALREADY_CLAIMED for o in losers)
        assert store.get("T-1").assignee_id == winners[0]


class TestUnclaim:
    def test_unclaim_returns_to_todo_and_keeps_deliverable(
        self, store: WorkItemStore, claims: ClaimManager,
    ) -> None:
        claimed = claims.claim(store.get("T-1"), "alice").item
        claimed.deliverable = Deliverable(summary="Van is booked, keys at the desk")
        store.compare_and_swap(claimed, expected_version=claimed.version)

        outcome = claims.unclaim(store.get("T-1"), "alice")
        assert outcome.success
        assert outcome.item.status == WorkItemStatus.TODO
        assert outcome.item.assignee_id is None
        assert outcome.item.deliverable.summary == "Van is booked, keys at the desk"

    def test_stale_unclaim_does_not_release_fresh_claim(
        self, store: WorkItemStore, claims: ClaimManager,
    ) -> None:
        claims.claim(store.get("T-1"), "alice")
        stale = store.get("T-1")
        claims.unclaim(store.get("T-1"), "alice")
        claims.claim(store.get("T-1"), "bob")

        outcome = claims.unclaim(stale, "alice")
        assert outcome.refusal.code == RefusalCode.CONCURRENCY_CONFLICT
        assert store.get("T-1").assignee_id == "bob"

    def test_unclaim_completed_refused(self, store: WorkItemStore, claims: ClaimManager) -> None:
        done = store.get("T-1")
        done.status = WorkItemStatus.COMPLETED
        done.assignee_id = "alice"
        store.compare_and_swap(done, expected_version=done.version)
        outcome = claims.unclaim(store.get("T-1"), "alice")
        assert outcome.refusal.code == RefusalCode.INVALID_STATE
