"""Claim manager — owns the exclusive-assignment invariant.

A claim is a compare-and-swap against "assignee is empty": the claim is
committed only if the record's version is still the one that was read
with no assignee. When two actors race, the store lets exactly one commit
through. The loser's conflict is resolved by re-reading the record: if
someone now holds it, the loser gets ALREADY_CLAIMED. Otherwise the
conflict is reported as-is so the caller can retry.

Unclaim follows the same commit discipline against the assignee that was
read, so a stale unclaim never releases someone else's fresh claim.

Eligibility (role, standing, moderator override) is not checked here.
The service runs the eligibility gate between check_claim() and claim().
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from bandtasks.models.refusal import Refusal, RefusalCode
from bandtasks.models.work_item import WorkItem, WorkItemAction
from bandtasks.persistence.state_store import ConcurrencyConflict, WorkItemStore
from bandtasks.workflow.state_machine import VerificationWorkflow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClaimOutcome:
    """Committed item on success, refusal otherwise."""
    item: Optional[WorkItem] = None
    refusal: Optional[Refusal] = None

    @property
    def success(self) -> bool:
        return self.refusal is None


class ClaimManager:
    """Atomic claim and unclaim against a WorkItemStore."""

    def __init__(self, store: WorkItemStore, workflow: VerificationWorkflow) -> None:
        self._store = store
        self._workflow = workflow

    def check_claim(self, item: WorkItem, actor_id: str) -> Optional[Refusal]:
        """State preconditions for a claim on the record as read."""
        if item.is_terminal:
            return self._workflow.check(item, WorkItemAction.CLAIM)
        if item.assignee_id is not None:
            return _already_claimed(item, actor_id)
        return self._workflow.check(item, WorkItemAction.CLAIM)

    def claim(
        self,
        item: WorkItem,
        actor_id: str,
        now: Optional[datetime] = None,
    ) -> ClaimOutcome:
        """Assign `item` to `actor_id` if nobody holds it.

        `item` is the record as read; its version is the commit condition.
        Raises ItemNotFound or PersistenceUnavailable from the store.
        """
        refusal = self.check_claim(item, actor_id)
        if refusal is not None:
            return ClaimOutcome(refusal=refusal)

        updated = self._workflow.apply(
            copy.deepcopy(item), WorkItemAction.CLAIM, actor_id, now=now,
        )
        try:
            committed = self._store.compare_and_swap(updated, expected_version=item.version)
        except ConcurrencyConflict as e:
            current = self._store.get(item.item_id)
            if current.assignee_id is not None:
                logger.info(
                    "Claim race on %s lost by %s (held by %s)",
                    item.item_id, actor_id, current.assignee_id,
                )
                return ClaimOutcome(refusal=_already_claimed(current, actor_id))
            logger.info("Claim on %s by %s hit a stale read: %s", item.item_id, actor_id, e)
            return ClaimOutcome(refusal=conflict_refusal(e))

        logger.info("Work item %s claimed by %s", item.item_id, actor_id)
        return ClaimOutcome(item=committed)

    def unclaim(
        self,
        item: WorkItem,
        actor_id: str,
        now: Optional[datetime] = None,
    ) -> ClaimOutcome:
        """Release the assignment on `item`, returning it to TODO.

        The deliverable is kept. Raises ItemNotFound or PersistenceUnavailable.
        """
        refusal = self._workflow.check(item, WorkItemAction.UNCLAIM)
        if refusal is not None:
            return ClaimOutcome(refusal=refusal)

        previous_assignee = item.assignee_id
        updated = self._workflow.apply(
            copy.deepcopy(item), WorkItemAction.UNCLAIM, actor_id, now=now,
        )
        try:
            committed = self._store.compare_and_swap(updated, expected_version=item.version)
        except ConcurrencyConflict as e:
            logger.info("Unclaim on %s by %s hit a stale read: %s", item.item_id, actor_id, e)
            return ClaimOutcome(refusal=conflict_refusal(e))

        logger.info(
            "Work item %s released by %s (was held by %s)",
            item.item_id, actor_id, previous_assignee,
        )
        return ClaimOutcome(item=committed)


def conflict_refusal(conflict: ConcurrencyConflict) -> Refusal:
    """Refusal for a record that changed between read and commit."""
    return Refusal(
        RefusalCode.CONCURRENCY_CONFLICT,
        "This item was changed by someone else. Reload it and try again.",
        {
            "item_id": conflict.item_id,
            "expected_version": conflict.expected_version,
            "actual_version": conflict.actual_version,
        },
    )


def _already_claimed(item: WorkItem, actor_id: str) -> Refusal:
    if item.assignee_id == actor_id:
        return Refusal(
            RefusalCode.ALREADY_CLAIMED,
            "You have already claimed this item.",
            {"held_by_actor": True, "assignee_id": item.assignee_id},
        )
    return Refusal(
        RefusalCode.ALREADY_CLAIMED,
        "Someone else has already claimed this item.",
        {"held_by_actor": False, "assignee_id": item.assignee_id},
    )
