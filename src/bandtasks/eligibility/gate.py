"""Eligibility gate — may this actor perform this action on this item now?

Pure computation: no side effects, no I/O. The service reads the actor's
MembershipContext (role + standing) at mutation time and passes it in, so
the authoritative check always uses fresh membership data.

Two independent predicates are composed:
- Standing: dues in order. Required to claim, edit deliverables, submit,
  retry, or mark complete. Never required to view or unclaim.
- Role: claim requires rank >= min_claim_role unless the actor already
  holds the item. Review requires a reviewer role, a separate set that
  ignores min_claim_role entirely.

A failed check is a Refusal, never an exception.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from bandtasks.models.membership import MembershipContext
from bandtasks.models.refusal import Refusal, RefusalCode
from bandtasks.models.work_item import WorkItem, WorkItemAction
from bandtasks.policy.resolver import PolicyResolver


_STANDING_GATED = frozenset({
    WorkItemAction.CLAIM,
    WorkItemAction.UPDATE_DELIVERABLE,
    WorkItemAction.SUBMIT,
    WorkItemAction.RETRY,
    WorkItemAction.MARK_COMPLETE,
})

_ASSIGNEE_ONLY = frozenset({
    WorkItemAction.UPDATE_DELIVERABLE,
    WorkItemAction.SUBMIT,
    WorkItemAction.RETRY,
    WorkItemAction.MARK_COMPLETE,
})


@dataclass(frozen=True)
class Eligibility:
    """Result of an eligibility check."""
    allowed: bool
    refusal: Optional[Refusal] = None


_ALLOWED = Eligibility(allowed=True)


class EligibilityGate:
    """Evaluates claim, participation, and review eligibility."""

    def __init__(self, resolver: PolicyResolver) -> None:
        self._resolver = resolver
        self._reviewer_roles = resolver.reviewer_roles()
        self._moderator_roles = resolver.moderator_roles()

    def can_act(
        self,
        context: MembershipContext,
        item: WorkItem,
        action: WorkItemAction,
    ) -> Eligibility:
        """Check whether the actor in `context` may perform `action` on `item`."""
        if action == WorkItemAction.VIEW:
            return _ALLOWED
        if action == WorkItemAction.CLAIM:
            return self.can_claim(context, item)
        if action in (WorkItemAction.APPROVE, WorkItemAction.REJECT):
            return self.can_review(context, item)
        if action in (WorkItemAction.BLOCK, WorkItemAction.UNBLOCK):
            return self._can_moderate(context, action)
        if action == WorkItemAction.UNCLAIM:
            return self._can_unclaim(context, item)

        if action in _ASSIGNEE_ONLY and item.assignee_id != context.actor_id:
            return _refuse(
                RefusalCode.NOT_ASSIGNEE,
                "Only the current assignee can do this. Claim the item first.",
                assignee_id=item.assignee_id,
            )
        if action in _STANDING_GATED:
            return self._check_standing(context)
        return _ALLOWED

    def can_claim(self, context: MembershipContext, item: WorkItem) -> Eligibility:
        """Band dissolution, membership, standing, then role against min_claim_role.

        The role check is skipped for the item's current assignee.
        """
        if context.band_dissolved:
            return _refuse(
                RefusalCode.BAND_DISSOLVED,
                "This band has been dissolved. No new work can be claimed.",
                band_id=context.band_id,
            )
        role = context.role
        if role is None:
            return _refuse(
                RefusalCode.NOT_ELIGIBLE_ROLE,
                "You must be an active member of this band to claim work.",
                member=False,
            )
        standing = self._check_standing(context)
        if not standing.allowed:
            return standing

        if item.assignee_id == context.actor_id or item.min_claim_role is None:
            return _ALLOWED
        if not role.at_least(item.min_claim_role):
            return _refuse(
                RefusalCode.NOT_ELIGIBLE_ROLE,
                f"This item requires {item.min_claim_role.value} role or higher.",
                required_role=item.min_claim_role.value,
                actual_role=role.value,
            )
        return _ALLOWED

    def can_review(self, context: MembershipContext, item: WorkItem) -> Eligibility:
        """Reviewer role set, self-review rule, and optional standing."""
        if context.role is None or context.role not in self._reviewer_roles:
            return _refuse(
                RefusalCode.NOT_REVIEWER,
                "You do not have permission to verify work items.",
                reviewer_roles=sorted(r.value for r in self._reviewer_roles),
                actual_role=context.role.value if context.role else None,
            )
        if (
            not self._resolver.allow_self_review()
            and item.assignee_id == context.actor_id
        ):
            return _refuse(
                RefusalCode.NOT_REVIEWER,
                "You cannot review your own submission.",
                self_review=True,
            )
        if self._resolver.review_requires_good_standing():
            return self._check_standing(context)
        return _ALLOWED

    def is_moderator(self, context: MembershipContext) -> bool:
        return context.role is not None and context.role in self._moderator_roles

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _can_unclaim(self, context: MembershipContext, item: WorkItem) -> Eligibility:
        if item.assignee_id is not None and item.assignee_id == context.actor_id:
            return _ALLOWED
        if item.assignee_id is not None and self.is_moderator(context):
            return _ALLOWED
        return _refuse(
            RefusalCode.NOT_ASSIGNEE,
            "You have not claimed this item.",
            assignee_id=item.assignee_id,
        )

    def _can_moderate(
        self, context: MembershipContext, action: WorkItemAction,
    ) -> Eligibility:
        if self.is_moderator(context):
            return _ALLOWED
        return _refuse(
            RefusalCode.NOT_AUTHORIZED,
            f"Only moderators can {action.value} tasks.",
            moderator_roles=sorted(r.value for r in self._moderator_roles),
            actual_role=context.role.value if context.role else None,
        )

    @staticmethod
    def _check_standing(context: MembershipContext) -> Eligibility:
        if context.standing.ok:
            return _ALLOWED
        return _refuse(
            RefusalCode.NOT_ELIGIBLE_STANDING,
            context.standing.reason or "Please pay your dues to perform this action.",
            remediation="dues",
        )


def _refuse(code: RefusalCode, message: str, **details: object) -> Eligibility:
    return Eligibility(allowed=False, refusal=Refusal(code, message, dict(details)))
