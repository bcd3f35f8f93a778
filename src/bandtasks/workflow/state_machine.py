"""Verification workflow — the work item state machine.

Valid transitions (source status, action) -> target status:
    TODO         + claim               -> IN_PROGRESS
    IN_PROGRESS  + submit              -> IN_REVIEW    (requires_verification, not rejected)
    IN_PROGRESS  + retry               -> IN_REVIEW    (only after a rejection)
    IN_PROGRESS  + mark_complete       -> COMPLETED    (no verification required)
    IN_PROGRESS  + block               -> BLOCKED      (tasks only)
    BLOCKED      + unblock             -> IN_PROGRESS  (tasks only)
    IN_REVIEW    + approve             -> COMPLETED
    IN_REVIEW    + reject              -> IN_PROGRESS  (reason required)
    any non-terminal + unclaim         -> TODO
    TODO / IN_PROGRESS / BLOCKED + update_deliverable -> unchanged

COMPLETED is terminal. Every transition out of it is refused.

The workflow answers "is this transition valid from the item's current
state?" and applies the side effects of a transition to a private copy.
It does not check who the actor is (that is the eligibility gate) and it
does not commit anything (that is the store).
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from bandtasks.models.refusal import Refusal, RefusalCode
from bandtasks.models.work_item import (
    Deliverable,
    VerificationStatus,
    WorkItem,
    WorkItemAction,
    WorkItemStatus,
)

logger = logging.getLogger(__name__)

_S = WorkItemStatus
_A = WorkItemAction

TRANSITIONS: dict[tuple[WorkItemStatus, WorkItemAction], WorkItemStatus] = {
    (_S.TODO, _A.CLAIM): _S.IN_PROGRESS,
    (_S.IN_PROGRESS, _A.SUBMIT): _S.IN_REVIEW,
    (_S.IN_PROGRESS, _A.RETRY): _S.IN_REVIEW,
    (_S.IN_PROGRESS, _A.MARK_COMPLETE): _S.COMPLETED,
    (_S.IN_PROGRESS, _A.BLOCK): _S.BLOCKED,
    (_S.BLOCKED, _A.UNBLOCK): _S.IN_PROGRESS,
    (_S.IN_REVIEW, _A.APPROVE): _S.COMPLETED,
    (_S.IN_REVIEW, _A.REJECT): _S.IN_PROGRESS,
    (_S.TODO, _A.UNCLAIM): _S.TODO,
    (_S.IN_PROGRESS, _A.UNCLAIM): _S.TODO,
    (_S.IN_REVIEW, _A.UNCLAIM): _S.TODO,
    (_S.BLOCKED, _A.UNCLAIM): _S.TODO,
    (_S.TODO, _A.UPDATE_DELIVERABLE): _S.TODO,
    (_S.IN_PROGRESS, _A.UPDATE_DELIVERABLE): _S.IN_PROGRESS,
    (_S.BLOCKED, _A.UPDATE_DELIVERABLE): _S.BLOCKED,
}


def allowed_actions(status: WorkItemStatus) -> list[WorkItemAction]:
    """Actions the table accepts from `status`, in declaration order."""
    return [action for (source, action) in TRANSITIONS if source == status]


class VerificationWorkflow:
    """Validates and applies work item transitions.

    Usage:
        workflow = VerificationWorkflow()
        refusal = workflow.check(item, WorkItemAction.SUBMIT)
        if refusal is None:
            workflow.apply(item, WorkItemAction.SUBMIT, actor_id="alice")
    """

    def check(
        self,
        item: WorkItem,
        action: WorkItemAction,
        reason: Optional[str] = None,
    ) -> Optional[Refusal]:
        """Return a Refusal if `action` is not valid from the item's state."""
        if action == WorkItemAction.VIEW:
            return None
        if item.is_terminal:
            return _invalid(
                item, action,
                "This item is already completed and can no longer be changed.",
            )

        target = TRANSITIONS.get((item.status, action))
        if target is None:
            return _invalid(
                item, action,
                f"Cannot {action.value} an item that is "
                f"{item.display_status.value}.",
            )

        if action in (WorkItemAction.BLOCK, WorkItemAction.UNBLOCK):
            if not item.kind.supports_blocking:
                return _invalid(
                    item, action,
                    f"Only tasks can be {action.value}ed, not {item.kind.value}s.",
                )

        if action == WorkItemAction.SUBMIT:
            if not item.requires_verification:
                return _invalid(
                    item, action,
                    "This item does not require verification. Mark it complete instead.",
                )
            if item.is_rejected:
                return _invalid(
                    item, action,
                    "This item was rejected. Use retry to resubmit it.",
                )

        if action == WorkItemAction.MARK_COMPLETE and item.requires_verification:
            return _invalid(
                item, action,
                "This item requires verification. Submit it for review instead.",
            )

        if action == WorkItemAction.RETRY and not item.is_rejected:
            return _invalid(
                item, action,
                "Only a rejected item can be retried.",
            )

        if action == WorkItemAction.REJECT and not (reason and reason.strip()):
            return Refusal(
                RefusalCode.MISSING_REASON,
                "A reason is required when rejecting a submission.",
                {"action": action.value},
            )

        return None

    def apply(
        self,
        item: WorkItem,
        action: WorkItemAction,
        actor_id: str,
        now: Optional[datetime] = None,
        reason: Optional[str] = None,
        note: Optional[str] = None,
        deliverable: Optional[Deliverable] = None,
    ) -> WorkItem:
        """Apply the transition to `item` in place and return it.

        Callers must have passed check() first. Raises ValueError otherwise.
        """
        refusal = self.check(item, action, reason=reason)
        if refusal is not None:
            raise ValueError(str(refusal))

        ts = now or datetime.now(timezone.utc)
        source = item.status
        item.status = TRANSITIONS[(source, action)]

        if action == WorkItemAction.CLAIM:
            item.assignee_id = actor_id
            item.assigned_utc = ts
            item.verification_status = None
            item.verified_by_id = None
            item.verified_utc = None
            item.rejection_reason = None

        elif action == WorkItemAction.UNCLAIM:
            # Deliverable is kept for whoever claims next
            item.assignee_id = None
            item.assigned_utc = None
            item.verification_status = None
            item.verified_by_id = None
            item.verified_utc = None
            item.rejection_reason = None

        elif action == WorkItemAction.UPDATE_DELIVERABLE:
            item.deliverable = deliverable

        elif action in (WorkItemAction.SUBMIT, WorkItemAction.RETRY):
            item.verification_status = VerificationStatus.PENDING
            item.rejection_reason = None
            if note:
                item.completion_note = note

        elif action == WorkItemAction.MARK_COMPLETE:
            item.completed_utc = ts
            item.completed_by_id = actor_id
            if note:
                item.completion_note = note

        elif action == WorkItemAction.APPROVE:
            item.verification_status = VerificationStatus.APPROVED
            item.verified_by_id = actor_id
            item.verified_utc = ts
            item.completed_utc = ts
            item.completed_by_id = item.assignee_id

        elif action == WorkItemAction.REJECT:
            item.verification_status = VerificationStatus.REJECTED
            item.verified_by_id = actor_id
            item.verified_utc = ts
            item.rejection_reason = reason.strip()

        logger.debug(
            "Work item %s: %s -> %s (%s by %s)",
            item.item_id, source.value, item.status.value, action.value, actor_id,
        )
        return item


def _invalid(item: WorkItem, action: WorkItemAction, message: str) -> Refusal:
    return Refusal(
        RefusalCode.INVALID_STATE,
        message,
        {
            "current_status": item.display_status.value,
            "action": action.value,
            "allowed_actions": [a.value for a in allowed_actions(item.status)],
        },
    )
