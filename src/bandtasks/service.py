"""Work item lifecycle service — unified facade for band task workflows.

This is the primary interface for programmatic access to the lifecycle.
It orchestrates all subsystems:
- Eligibility (role + good standing, read fresh at mutation time)
- Claims (exclusive, compare-and-swap assignment)
- Deliverables (evidence validation before submit / complete / retry)
- Verification workflow (submit, approve, reject, retry, block)
- Persistence (versioned store, event log)

Every operation returns a ServiceResult. Expected failures ("you can't do
that right now") are typed refusals carried in the result, never raised.
Only infrastructure failures propagate: PersistenceUnavailable from the
store and whatever the membership provider raises when it is unreachable.

Each successful transition is committed first and then recorded as one
event. If the event log cannot be written, the committed transition
stands; the result carries a warning and the service is flagged as
degraded for operator attention.
"""

from __future__ import annotations

import copy
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional, Sequence, Union

from bandtasks.claims.manager import ClaimManager, ClaimOutcome, conflict_refusal
from bandtasks.deliverable.validator import DeliverableValidator
from bandtasks.eligibility.gate import Eligibility, EligibilityGate
from bandtasks.membership.directory import MembershipProvider
from bandtasks.models.membership import MemberRole, MembershipContext
from bandtasks.models.refusal import Refusal, RefusalCode
from bandtasks.models.work_item import (
    Deliverable,
    DeliverableLink,
    Priority,
    WorkItem,
    WorkItemAction,
    WorkItemKind,
    WorkItemStatus,
    to_utc,
)
from bandtasks.persistence.event_log import EventKind, EventLog, EventRecord
from bandtasks.persistence.state_store import (
    ConcurrencyConflict,
    ItemNotFound,
    WorkItemStore,
)
from bandtasks.policy.resolver import PolicyResolver
from bandtasks.workflow.state_machine import VerificationWorkflow

logger = logging.getLogger(__name__)

LinkInput = Union[DeliverableLink, tuple[str, str]]

_EVENT_KINDS: dict[WorkItemAction, EventKind] = {
    WorkItemAction.CLAIM: EventKind.ITEM_CLAIMED,
    WorkItemAction.UNCLAIM: EventKind.ITEM_UNCLAIMED,
    WorkItemAction.UPDATE_DELIVERABLE: EventKind.DELIVERABLE_UPDATED,
    WorkItemAction.SUBMIT: EventKind.ITEM_SUBMITTED,
    WorkItemAction.MARK_COMPLETE: EventKind.ITEM_COMPLETED,
    WorkItemAction.APPROVE: EventKind.ITEM_APPROVED,
    WorkItemAction.REJECT: EventKind.ITEM_REJECTED,
    WorkItemAction.RETRY: EventKind.ITEM_RESUBMITTED,
    WorkItemAction.BLOCK: EventKind.ITEM_BLOCKED,
    WorkItemAction.UNBLOCK: EventKind.ITEM_UNBLOCKED,
}

_SUBMISSION_ACTIONS = frozenset({
    WorkItemAction.SUBMIT,
    WorkItemAction.RETRY,
    WorkItemAction.MARK_COMPLETE,
})


@dataclass(frozen=True)
class ServiceResult:
    """Result of a service operation.

    On success `item` is the committed record. On refusal `refusal`
    names the failed predicate and `errors` holds its message.
    """
    success: bool
    errors: list[str] = field(default_factory=list)
    data: dict[str, Any] = field(default_factory=dict)
    item: Optional[WorkItem] = None
    refusal: Optional[Refusal] = None

    @property
    def code(self) -> Optional[RefusalCode]:
        return self.refusal.code if self.refusal else None


class WorkItemService:
    """Work item lifecycle facade.

    Usage:
        resolver = PolicyResolver.from_config_dir(config_dir)
        directory = MembershipDirectory(resolver)
        service = WorkItemService(resolver, WorkItemStore(), directory)

        service.create_item("T-1", "band-1", WorkItemKind.TASK, "Book the venue")
        result = service.claim("alice", "T-1")
        result = service.update_deliverable("alice", "T-1", summary="...")
        result = service.mark_complete("alice", "T-1")

    Persistence (optional):
        service = WorkItemService(
            resolver, WorkItemStore(path), directory, event_log=EventLog(log_path),
        )
    """

    def __init__(
        self,
        resolver: PolicyResolver,
        store: WorkItemStore,
        membership: MembershipProvider,
        event_log: Optional[EventLog] = None,
    ) -> None:
        self._resolver = resolver
        self._store = store
        self._membership = membership
        self._event_log = event_log

        self._gate = EligibilityGate(resolver)
        self._validator = DeliverableValidator(resolver)
        self._workflow = VerificationWorkflow()
        self._claims = ClaimManager(store, self._workflow)

        # Initialize counter from persisted log to avoid ID collision on restart
        self._event_counter = event_log.count if event_log is not None else 0
        self._counter_lock = threading.Lock()

        # Set when an event could not be recorded after a committed transition.
        # The store is authoritative; the audit trail is missing entries.
        self._event_sink_degraded: bool = False

    @property
    def event_sink_degraded(self) -> bool:
        return self._event_sink_degraded

    # ------------------------------------------------------------------
    # Creation and reads
    # ------------------------------------------------------------------

    def create_item(
        self,
        item_id: str,
        band_id: str,
        kind: WorkItemKind,
        title: str,
        parent_id: Optional[str] = None,
        min_claim_role: Optional[MemberRole] = None,
        requires_verification: bool = False,
        requires_deliverable: bool = False,
        priority: Priority = Priority.MEDIUM,
        due_utc: Optional[datetime] = None,
        created_by: str = "system",
    ) -> ServiceResult:
        """Register a new work item in TODO.

        A checklist item must name an existing task in the same band as
        its parent. A task may not have a parent. `due_utc` is stored in
        UTC; a naive value is taken to be UTC already.
        """
        errors: list[str] = []
        if not item_id or not item_id.strip():
            errors.append("Item ID must not be blank")
        if not band_id or not band_id.strip():
            errors.append("Band ID must not be blank")
        if not title or not title.strip():
            errors.append("Title must not be blank")

        if kind == WorkItemKind.TASK and parent_id is not None:
            errors.append("Tasks cannot be nested under another item")
        if kind == WorkItemKind.CHECKLIST_ITEM:
            if parent_id is None:
                errors.append("Checklist items require a parent task")
            else:
                parent = self._store.find(parent_id)
                if parent is None:
                    errors.append(f"Parent task not found: {parent_id}")
                elif parent.kind != WorkItemKind.TASK:
                    errors.append(f"Parent {parent_id} is not a task")
                elif parent.band_id != band_id:
                    errors.append(f"Parent {parent_id} belongs to another band")
                elif parent.is_terminal:
                    errors.append(f"Parent task {parent_id} is already completed")
        if errors:
            return ServiceResult(success=False, errors=errors)

        item = WorkItem(
            item_id=item_id.strip(),
            band_id=band_id,
            kind=kind,
            title=title.strip(),
            parent_id=parent_id,
            min_claim_role=min_claim_role,
            requires_verification=requires_verification,
            requires_deliverable=requires_deliverable,
            priority=priority,
            due_utc=to_utc(due_utc),
            created_utc=datetime.now(timezone.utc),
        )
        try:
            committed = self._store.add(item)
        except ValueError as e:
            return ServiceResult(success=False, errors=[str(e)])

        logger.info("Work item %s created in band %s (%s)", committed.item_id, band_id, kind.value)
        warning = self._record_event(
            EventKind.ITEM_CREATED, created_by, committed, None,
            {"title": committed.title, "parent_id": parent_id},
        )
        return self._success(committed, warning)

    def get_item(self, item_id: str) -> Optional[WorkItem]:
        """Return a copy of the item. Viewing is never standing-gated."""
        return self._store.find(item_id)

    def get_checklist(self, task_id: str) -> list[WorkItem]:
        return sorted(
            self._store.children(task_id),
            key=lambda i: (i.created_utc or _EPOCH, i.item_id),
        )

    def check_eligibility(
        self, actor_id: str, item_id: str, action: WorkItemAction,
    ) -> Eligibility:
        """Would `action` be allowed right now? Deliverable content is not checked.

        Advisory only: the authoritative check reruns when the action is taken.
        """
        item = self._store.find(item_id)
        if item is None:
            return Eligibility(allowed=False, refusal=_not_found(item_id))
        refusal = self._precheck(self._context(actor_id, item.band_id), item, action)
        if refusal is not None:
            return Eligibility(allowed=False, refusal=refusal)
        return Eligibility(allowed=True)

    def list_claimable(
        self,
        actor_id: str,
        band_id: str,
        limit: Optional[int] = None,
    ) -> list[WorkItem]:
        """Unassigned, open items in the band that the actor's role may claim.

        Empty for non-members and for a dissolved band.

        Ordered by priority (highest first), due date (soonest first, undated
        last), then creation time (newest first).
        """
        role = self._membership.get_role(actor_id, band_id)
        if role is None or self._membership.is_band_dissolved(band_id):
            return []

        candidates = [
            i for i in self._store.items(band_id)
            if i.assignee_id is None
            and i.status == WorkItemStatus.TODO
            and (i.min_claim_role is None or role.at_least(i.min_claim_role))
        ]
        # Stable sorts, least significant key first
        candidates.sort(key=lambda i: i.created_utc or _EPOCH, reverse=True)
        candidates.sort(key=lambda i: (i.due_utc is None, to_utc(i.due_utc) or _EPOCH))
        candidates.sort(key=lambda i: i.priority.rank, reverse=True)
        if limit is not None:
            return candidates[:max(limit, 0)]
        return candidates

    # ------------------------------------------------------------------
    # Claims
    # ------------------------------------------------------------------

    def claim(self, actor_id: str, item_id: str) -> ServiceResult:
        """Exclusively assign the item to the actor (TODO -> IN_PROGRESS)."""
        action = WorkItemAction.CLAIM
        item = self._store.find(item_id)
        if item is None:
            return self._refused(_not_found(item_id), action, actor_id)

        refusal = self._precheck(self._context(actor_id, item.band_id), item, action)
        if refusal is not None:
            return self._refused(refusal, action, actor_id, item_id)

        return self._claim_outcome(
            self._claims_call(self._claims.claim, item, actor_id),
            action, actor_id, item, {},
        )

    def unclaim(
        self, actor_id: str, item_id: str, reason: Optional[str] = None,
    ) -> ServiceResult:
        """Release the item back to TODO. The deliverable is kept.

        Allowed for the assignee, or a moderator acting on someone else's claim.
        """
        action = WorkItemAction.UNCLAIM
        item = self._store.find(item_id)
        if item is None:
            return self._refused(_not_found(item_id), action, actor_id)

        refusal = self._precheck(self._context(actor_id, item.band_id), item, action)
        if refusal is not None:
            return self._refused(refusal, action, actor_id, item_id)

        extra: dict[str, Any] = {"previous_assignee_id": item.assignee_id}
        if reason and reason.strip():
            extra["reason"] = reason.strip()
        return self._claim_outcome(
            self._claims_call(self._claims.unclaim, item, actor_id),
            action, actor_id, item, extra,
        )

    # ------------------------------------------------------------------
    # Deliverables and verification
    # ------------------------------------------------------------------

    def update_deliverable(
        self,
        actor_id: str,
        item_id: str,
        summary: str,
        links: Iterable[LinkInput] = (),
        next_steps: Optional[str] = None,
    ) -> ServiceResult:
        """Replace the item's deliverable. Assignee only.

        Drafts may be short; the minimum summary length is enforced at
        submit / complete / retry. Links and size ceilings are checked here.
        Each link is a DeliverableLink or a (url, title) pair of strings; any
        other shape is refused as INVALID_LINK at its index.
        """
        links = list(links)
        malformed = [index for index, link in enumerate(links) if not _is_link_input(link)]
        deliverable = Deliverable(
            summary=summary or "",
            links=tuple(_as_link(link) for link in links if _is_link_input(link)),
            next_steps=next_steps if next_steps and next_steps.strip() else None,
            updated_by_id=actor_id,
            updated_utc=datetime.now(timezone.utc),
        )
        return self._transition(
            actor_id, item_id, WorkItemAction.UPDATE_DELIVERABLE,
            deliverable=deliverable, malformed_links=malformed,
        )

    def submit_for_verification(
        self, actor_id: str, item_id: str, note: Optional[str] = None,
    ) -> ServiceResult:
        """IN_PROGRESS -> IN_REVIEW for items that require verification."""
        return self._transition(actor_id, item_id, WorkItemAction.SUBMIT, note=note)

    def mark_complete(
        self, actor_id: str, item_id: str, note: Optional[str] = None,
    ) -> ServiceResult:
        """IN_PROGRESS -> COMPLETED for items that need no verification."""
        return self._transition(actor_id, item_id, WorkItemAction.MARK_COMPLETE, note=note)

    def retry(
        self, actor_id: str, item_id: str, note: Optional[str] = None,
    ) -> ServiceResult:
        """Resubmit a rejected item. The deliverable is validated again."""
        return self._transition(actor_id, item_id, WorkItemAction.RETRY, note=note)

    def approve(self, reviewer_id: str, item_id: str) -> ServiceResult:
        return self._transition(reviewer_id, item_id, WorkItemAction.APPROVE)

    def reject(self, reviewer_id: str, item_id: str, reason: str) -> ServiceResult:
        """Send a submission back to its assignee with a reason."""
        return self._transition(reviewer_id, item_id, WorkItemAction.REJECT, reason=reason)

    def block(
        self, actor_id: str, item_id: str, reason: Optional[str] = None,
    ) -> ServiceResult:
        """Moderator hold on an in-progress task."""
        return self._transition(actor_id, item_id, WorkItemAction.BLOCK, note=reason)

    def unblock(self, actor_id: str, item_id: str) -> ServiceResult:
        return self._transition(actor_id, item_id, WorkItemAction.UNBLOCK)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    @property
    def max_conflict_retries(self) -> int:
        return self._resolver.max_conflict_retries()

    def status(self) -> dict[str, Any]:
        """Summary of current lifecycle state."""
        counts: dict[str, int] = {}
        for item in self._store.items():
            key = item.display_status.value
            counts[key] = counts.get(key, 0) + 1
        return {
            "policy_version": self._resolver.version,
            "items": {
                "total": self._store.count,
                "by_status": counts,
            },
            "events": self._event_log.count if self._event_log is not None else 0,
            "event_sink_degraded": self._event_sink_degraded,
        }

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _context(self, actor_id: str, band_id: str) -> MembershipContext:
        """Fresh role and standing from the membership provider."""
        return MembershipContext(
            actor_id=actor_id,
            band_id=band_id,
            role=self._membership.get_role(actor_id, band_id),
            standing=self._membership.is_in_good_standing(actor_id, band_id),
            band_dissolved=self._membership.is_band_dissolved(band_id),
        )

    def _precheck(
        self,
        context: MembershipContext,
        item: WorkItem,
        action: WorkItemAction,
        reason: Optional[str] = None,
    ) -> Optional[Refusal]:
        """Terminal state, then claim state, then eligibility, then transition."""
        if item.is_terminal:
            return self._workflow.check(item, action)
        if action == WorkItemAction.CLAIM:
            refusal = self._claims.check_claim(item, context.actor_id)
            if refusal is not None:
                return refusal
        eligibility = self._gate.can_act(context, item, action)
        if not eligibility.allowed:
            return eligibility.refusal
        return self._workflow.check(item, action, reason=reason)

    def _content_check(
        self,
        item: WorkItem,
        action: WorkItemAction,
        deliverable: Optional[Deliverable],
        malformed_links: Sequence[int] = (),
    ) -> Optional[Refusal]:
        if action == WorkItemAction.UPDATE_DELIVERABLE:
            if malformed_links:
                return _malformed_links(malformed_links)
            return self._validator.validate_format(deliverable).refusal
        if action in _SUBMISSION_ACTIONS:
            check = self._validator.validate(item, item.deliverable)
            if not check.ok:
                return check.refusal
            return self._checklist_refusal(item)
        return None

    def _checklist_refusal(self, item: WorkItem) -> Optional[Refusal]:
        if item.kind != WorkItemKind.TASK or not self._resolver.require_checklist_complete():
            return None
        checklist = self._store.children(item.item_id)
        incomplete = sorted(c.item_id for c in checklist if not c.is_terminal)
        if not incomplete:
            return None
        return Refusal(
            RefusalCode.CHECKLIST_INCOMPLETE,
            f"{len(incomplete)} of {len(checklist)} checklist items are not completed yet.",
            {
                "incomplete_count": len(incomplete),
                "total_count": len(checklist),
                "incomplete_ids": incomplete,
            },
        )

    def _transition(
        self,
        actor_id: str,
        item_id: str,
        action: WorkItemAction,
        reason: Optional[str] = None,
        note: Optional[str] = None,
        deliverable: Optional[Deliverable] = None,
        malformed_links: Sequence[int] = (),
    ) -> ServiceResult:
        """Read, check, apply to a copy, commit against the version read."""
        item = self._store.find(item_id)
        if item is None:
            return self._refused(_not_found(item_id), action, actor_id)

        context = self._context(actor_id, item.band_id)
        refusal = self._precheck(context, item, action, reason=reason)
        if refusal is None:
            refusal = self._content_check(item, action, deliverable, malformed_links)
        if refusal is not None:
            return self._refused(refusal, action, actor_id, item_id)

        note = note.strip() if note and note.strip() else None
        updated = self._workflow.apply(
            copy.deepcopy(item), action, actor_id,
            reason=reason, note=note, deliverable=deliverable,
        )
        try:
            committed = self._store.compare_and_swap(updated, expected_version=item.version)
        except ItemNotFound:
            return self._refused(_not_found(item_id), action, actor_id)
        except ConcurrencyConflict as e:
            logger.info("%s on %s by %s hit a stale read: %s", action.value, item_id, actor_id, e)
            return self._refused(conflict_refusal(e), action, actor_id, item_id)

        logger.info(
            "Work item %s: %s by %s (%s -> %s)",
            item_id, action.value, actor_id,
            item.display_status.value, committed.display_status.value,
        )
        extra: dict[str, Any] = {}
        if note:
            extra["note"] = note
        if action == WorkItemAction.REJECT:
            extra["reason"] = committed.rejection_reason
        warning = self._record_event(
            _EVENT_KINDS[action], actor_id, committed, item.display_status, extra,
        )
        return self._success(committed, warning)

    def _claims_call(
        self,
        call: Callable[[WorkItem, str], ClaimOutcome],
        item: WorkItem,
        actor_id: str,
    ) -> ClaimOutcome:
        try:
            return call(item, actor_id)
        except ItemNotFound:
            return ClaimOutcome(refusal=_not_found(item.item_id))

    def _claim_outcome(
        self,
        outcome: ClaimOutcome,
        action: WorkItemAction,
        actor_id: str,
        item: WorkItem,
        extra: dict[str, Any],
    ) -> ServiceResult:
        if outcome.refusal is not None:
            return self._refused(outcome.refusal, action, actor_id, item.item_id)
        warning = self._record_event(
            _EVENT_KINDS[action], actor_id, outcome.item, item.display_status, extra,
        )
        return self._success(outcome.item, warning)

    def _success(self, item: WorkItem, warning: Optional[str]) -> ServiceResult:
        data: dict[str, Any] = {
            "item_id": item.item_id,
            "status": item.display_status.value,
            "assignee_id": item.assignee_id,
            "verification_status": (
                item.verification_status.value if item.verification_status else None
            ),
            "version": item.version,
        }
        if warning:
            data["warning"] = warning
        return ServiceResult(success=True, data=data, item=item)

    @staticmethod
    def _refused(
        refusal: Refusal,
        action: WorkItemAction,
        actor_id: str,
        item_id: Optional[str] = None,
    ) -> ServiceResult:
        logger.debug(
            "Refused %s on %s by %s: %s",
            action.value, item_id or refusal.details.get("item_id"), actor_id, refusal,
        )
        return ServiceResult(success=False, errors=[refusal.message], refusal=refusal)

    def _next_event_id(self) -> str:
        """Generate a monotonically increasing unique event ID."""
        with self._counter_lock:
            self._event_counter += 1
            return f"EVT-{self._event_counter:08d}"

    def _record_event(
        self,
        kind: EventKind,
        actor_id: str,
        item: WorkItem,
        from_status: Optional[WorkItemStatus],
        extra: dict[str, Any],
    ) -> Optional[str]:
        """Record one event for a committed transition. Returns a warning or None.

        MUST NOT roll back the transition: the store is already updated.
        A failure flags the service as degraded and returns a warning.
        """
        if self._event_log is None:
            return None
        payload: dict[str, Any] = {
            "item_id": item.item_id,
            "band_id": item.band_id,
            "kind": item.kind.value,
            "from_status": from_status.value if from_status else None,
            "status": item.display_status.value,
            "assignee_id": item.assignee_id,
            "verification_status": (
                item.verification_status.value if item.verification_status else None
            ),
            "version": item.version,
        }
        payload.update(extra)
        try:
            event = EventRecord.create(
                event_id=self._next_event_id(),
                event_kind=kind,
                actor_id=actor_id,
                payload=payload,
            )
            self._event_log.append(event)
        except (ValueError, OSError) as e:
            self._event_sink_degraded = True
            logger.error("Event sink failure for %s on %s: %s", kind.value, item.item_id, e)
            return (
                f"Event sink degraded: {e}. The transition was committed "
                f"but no {kind.value} event was recorded"
            )
        return None


def call_with_conflict_retry(
    call: Callable[[], ServiceResult],
    attempts: int = 3,
) -> ServiceResult:
    """Invoke `call` until it stops reporting a concurrency conflict.

    At most `attempts` invocations. The last conflict is returned unchanged,
    never swallowed. Any other result, success or refusal, returns at once.

    Usage:
        result = call_with_conflict_retry(
            lambda: service.submit_for_verification("alice", "T-1"),
            attempts=service.max_conflict_retries,
        )
    """
    if attempts < 1:
        raise ValueError(f"attempts must be at least 1, got {attempts}")
    result = call()
    for attempt in range(2, attempts + 1):
        if result.code != RefusalCode.CONCURRENCY_CONFLICT:
            return result
        logger.info("Retrying after concurrency conflict (attempt %d of %d)", attempt, attempts)
        result = call()
    return result


_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _is_link_input(link: object) -> bool:
    if isinstance(link, DeliverableLink):
        return True
    return (
        isinstance(link, tuple)
        and len(link) == 2
        and all(isinstance(part, str) for part in link)
    )


def _as_link(link: LinkInput) -> DeliverableLink:
    if isinstance(link, DeliverableLink):
        return link
    url, title = link
    return DeliverableLink(url=url, title=title)


def _malformed_links(indexes: Sequence[int]) -> Refusal:
    problems = [
        {
            "index": index,
            "field": "link",
            "problem": "expected a DeliverableLink or a (url, title) pair",
        }
        for index in indexes
    ]
    return Refusal(
        RefusalCode.INVALID_LINK,
        f"{len(problems)} deliverable link problem(s) found.",
        {"links": problems},
    )


def _not_found(item_id: str) -> Refusal:
    return Refusal(
        RefusalCode.NOT_FOUND,
        f"Work item not found: {item_id}",
        {"item_id": item_id},
    )
