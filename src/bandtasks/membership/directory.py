"""Membership directory — roles and dues standing for band members.

The lifecycle engine consumes membership through the MembershipProvider
protocol: get_role(), is_in_good_standing() and is_band_dissolved().
Production deployments back it with the membership and billing services;
MembershipDirectory is the in-process implementation used by single-node
deployments and tests.

Standing rules, evaluated in order:
1. An open dissolution vote freezes dues: everyone is in good standing.
2. No dues plan, a zero-amount plan, or disabled enforcement: good standing.
3. Unknown or inactive members are not in good standing.
4. New members are in good standing during the new-member grace period.
5. ACTIVE billing is good standing.
6. PAST_DUE billing keeps good standing during the lapsed grace period.
7. Billing owners and treasurers are exempt (good standing, flagged).
8. Otherwise: not in good standing, with a billing-status-specific reason.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol

from bandtasks.models.membership import (
    BandDuesPolicy,
    BillingStatus,
    MemberRecord,
    MemberRole,
    StandingResult,
)
from bandtasks.policy.resolver import PolicyResolver


_NOT_PAID_REASON = "You have not paid your dues yet."

_BILLING_REASONS: dict[BillingStatus, str] = {
    BillingStatus.PAST_DUE: (
        "Your dues payment is past due. Please update your payment "
        "to continue participating."
    ),
    BillingStatus.CANCELED: (
        "Your dues subscription has been canceled. Please renew "
        "to continue participating."
    ),
    BillingStatus.UNPAID: "Please pay your dues to participate in band activities.",
}


class MembershipProvider(Protocol):
    """Read-only membership collaborator consumed by the lifecycle service.

    Implementations raise (rather than return a refusal) when the backing
    service is unreachable; such failures are infrastructure faults.
    """

    def get_role(self, actor_id: str, band_id: str) -> Optional[MemberRole]:
        """Return the actor's role, or None if not an active member."""
        ...

    def is_in_good_standing(self, actor_id: str, band_id: str) -> StandingResult:
        """Return the actor's dues standing in the band."""
        ...

    def is_band_dissolved(self, band_id: str) -> bool:
        """Return True once the band has been dissolved."""
        ...


class MembershipDirectory:
    """In-memory membership registry implementing MembershipProvider.

    Thread-safety: reads are safe alongside each other; the caller must
    synchronise registration with concurrent reads.
    """

    def __init__(self, resolver: PolicyResolver) -> None:
        self._resolver = resolver
        self._members: dict[tuple[str, str], MemberRecord] = {}
        self._dues: dict[str, BandDuesPolicy] = {}
        self._dissolved: dict[str, datetime] = {}

    def register(self, record: MemberRecord) -> None:
        """Register a member or replace an existing record.

        Raises ValueError on a blank actor or band ID.
        """
        actor_id = record.actor_id.strip()
        band_id = record.band_id.strip()
        if not actor_id:
            raise ValueError("Cannot register member with blank actor ID")
        if not band_id:
            raise ValueError("Cannot register member with blank band ID")
        record.actor_id = actor_id
        record.band_id = band_id
        self._members[(band_id, actor_id)] = record

    def remove(self, actor_id: str, band_id: str) -> None:
        self._members.pop((band_id.strip(), actor_id.strip()), None)

    def get(self, actor_id: str, band_id: str) -> Optional[MemberRecord]:
        return self._members.get((band_id.strip(), actor_id.strip()))

    def members_of(self, band_id: str) -> list[MemberRecord]:
        return [m for (b, _), m in self._members.items() if b == band_id]

    def set_dues_policy(self, policy: BandDuesPolicy) -> None:
        if policy.dues_amount_cents < 0:
            raise ValueError(
                f"Dues amount must be non-negative, got {policy.dues_amount_cents}"
            )
        self._dues[policy.band_id] = policy

    def dues_policy(self, band_id: str) -> Optional[BandDuesPolicy]:
        return self._dues.get(band_id)

    def dissolve_band(self, band_id: str, when: Optional[datetime] = None) -> None:
        """Record the band as dissolved. The first dissolution time is kept."""
        self._dissolved.setdefault(band_id, when or datetime.now(timezone.utc))

    def dissolved_utc(self, band_id: str) -> Optional[datetime]:
        return self._dissolved.get(band_id)

    # ------------------------------------------------------------------
    # MembershipProvider
    # ------------------------------------------------------------------

    def get_role(self, actor_id: str, band_id: str) -> Optional[MemberRole]:
        member = self.get(actor_id, band_id)
        if member is None or not member.is_active():
            return None
        return member.role

    def is_in_good_standing(
        self,
        actor_id: str,
        band_id: str,
        now: Optional[datetime] = None,
    ) -> StandingResult:
        now = now or datetime.now(timezone.utc)
        dues = self._dues.get(band_id)

        if dues is not None and dues.dissolution_vote_open:
            return StandingResult(ok=True)
        if dues is None or dues.dues_amount_cents == 0 or not dues.enforcement_enabled:
            return StandingResult(ok=True)

        member = self.get(actor_id, band_id)
        if member is None:
            return StandingResult(ok=False, reason="You are not a member of this band.")
        if not member.is_active():
            return StandingResult(
                ok=False,
                reason=f"Your membership is {member.status.value}.",
            )

        exempt = dues.billing_owner_id == member.actor_id or member.is_treasurer
        new_grace_days, lapsed_grace_days = self._resolver.standing_grace_days()

        if member.activated_utc is not None:
            if now < member.activated_utc + timedelta(days=new_grace_days):
                return StandingResult(ok=True)

        if member.billing_status is None:
            if exempt:
                return StandingResult(ok=True, exempt=True)
            return StandingResult(ok=False, reason=_NOT_PAID_REASON)

        if member.billing_status == BillingStatus.ACTIVE:
            return StandingResult(ok=True)

        if (
            member.billing_status == BillingStatus.PAST_DUE
            and member.billing_updated_utc is not None
            and now < member.billing_updated_utc + timedelta(days=lapsed_grace_days)
        ):
            return StandingResult(ok=True)

        if exempt:
            return StandingResult(ok=True, exempt=True)

        return StandingResult(
            ok=False,
            reason=_BILLING_REASONS.get(
                member.billing_status, _BILLING_REASONS[BillingStatus.UNPAID],
            ),
        )

    def is_band_dissolved(self, band_id: str) -> bool:
        return band_id in self._dissolved
