"""Work item, deliverable, and lifecycle-action data models.

A work item is the unit of claimable, verifiable work inside a band.
It comes in two forms that share one lifecycle:
- TASK: a top-level task. May be BLOCKED by a moderator.
- CHECKLIST_ITEM: a step nested under a task (parent_id is the task).

Invariants enforced by the lifecycle engine, not by these classes:
- assignee_id is set whenever status is IN_PROGRESS, IN_REVIEW or BLOCKED.
- verification_status stays None unless requires_verification is True.
- COMPLETED is terminal; completed_utc / completed_by_id are set once.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from bandtasks.models.membership import MemberRole


def to_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Return `value` as an aware UTC datetime. Naive values are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class WorkItemKind(str, enum.Enum):
    """Concrete form of a work item."""
    TASK = "task"
    CHECKLIST_ITEM = "checklist_item"

    @property
    def supports_blocking(self) -> bool:
        """Only top-level tasks can enter BLOCKED."""
        return self is WorkItemKind.TASK


class WorkItemStatus(str, enum.Enum):
    """Lifecycle states for a work item.

    REJECTED is never persisted. A rejected item sits in IN_PROGRESS with
    verification_status REJECTED; WorkItem.display_status reports it.
    """
    TODO = "todo"
    IN_PROGRESS = "in_progress"
    IN_REVIEW = "in_review"
    COMPLETED = "completed"
    BLOCKED = "blocked"
    REJECTED = "rejected"


class VerificationStatus(str, enum.Enum):
    """Reviewer decision state, only meaningful with requires_verification."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class Priority(str, enum.Enum):
    """Scheduling priority. Not part of the state machine."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"

    @property
    def rank(self) -> int:
        return _PRIORITY_ORDER.index(self)


_PRIORITY_ORDER = [Priority.LOW, Priority.MEDIUM, Priority.HIGH, Priority.URGENT]


class WorkItemAction(str, enum.Enum):
    """Every operation an actor can attempt on a work item."""
    VIEW = "view"
    CLAIM = "claim"
    UNCLAIM = "unclaim"
    UPDATE_DELIVERABLE = "update_deliverable"
    SUBMIT = "submit"
    MARK_COMPLETE = "mark_complete"
    RETRY = "retry"
    APPROVE = "approve"
    REJECT = "reject"
    BLOCK = "block"
    UNBLOCK = "unblock"


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DeliverableLink:
    """A single (url, title) evidence link. Validated by DeliverableValidator."""
    url: str
    title: str


@dataclass(frozen=True)
class Deliverable:
    """Structured evidence of completed work.

    Owned by the assignee and replaced wholesale on every update.
    Survives unclaim so the next claimant inherits the work product.
    """
    summary: str
    links: tuple[DeliverableLink, ...] = ()
    next_steps: Optional[str] = None
    updated_by_id: Optional[str] = None
    updated_utc: Optional[datetime] = None

    @property
    def summary_length(self) -> int:
        return len(self.summary.strip())


@dataclass
class WorkItem:
    """A claimable, verifiable unit of work (task or checklist item).

    `version` is bumped by the store on every successful commit and is
    the optimistic-concurrency token for compare-and-swap writes.
    """
    item_id: str
    band_id: str
    kind: WorkItemKind
    title: str
    status: WorkItemStatus = WorkItemStatus.TODO
    parent_id: Optional[str] = None

    assignee_id: Optional[str] = None
    assigned_utc: Optional[datetime] = None
    min_claim_role: Optional[MemberRole] = None  # None means anyone may claim

    requires_verification: bool = False
    requires_deliverable: bool = False
    deliverable: Optional[Deliverable] = None

    verification_status: Optional[VerificationStatus] = None
    verified_by_id: Optional[str] = None
    verified_utc: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    completion_note: Optional[str] = None

    completed_utc: Optional[datetime] = None
    completed_by_id: Optional[str] = None

    due_utc: Optional[datetime] = None
    priority: Priority = Priority.MEDIUM
    created_utc: Optional[datetime] = None
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status == WorkItemStatus.COMPLETED

    @property
    def is_rejected(self) -> bool:
        """True for an item sent back by a reviewer and not yet retried."""
        return (
            self.status == WorkItemStatus.IN_PROGRESS
            and self.verification_status == VerificationStatus.REJECTED
        )

    @property
    def display_status(self) -> WorkItemStatus:
        """Status for presentation; surfaces the rejected annotation."""
        if self.is_rejected:
            return WorkItemStatus.REJECTED
        return self.status
