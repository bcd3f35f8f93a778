"""Membership, role hierarchy, and dues-standing models.

Two independent facts decide whether a member may act on work:
- Role: position in a fixed hierarchy. Gates claiming (via min_claim_role)
  and reviewing (via the reviewer role set).
- Standing: whether the member's dues are in order. Gates participation
  (claim, submit, retry, complete, deliverable edits) but never viewing.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Optional


class MemberRole(str, enum.Enum):
    """Organisational roles, declared least to most privileged.

    Declaration order IS the hierarchy; compare with `rank` or `at_least`.
    """
    OBSERVER = "OBSERVER"
    VOTING_MEMBER = "VOTING_MEMBER"
    CONDUCTOR = "CONDUCTOR"
    MODERATOR = "MODERATOR"
    GOVERNOR = "GOVERNOR"
    FOUNDER = "FOUNDER"

    @property
    def rank(self) -> int:
        return list(MemberRole).index(self)

    def at_least(self, minimum: MemberRole) -> bool:
        return self.rank >= minimum.rank

    @classmethod
    def parse(cls, value: str) -> MemberRole:
        """Parse a role name, case-insensitively. Raises ValueError."""
        try:
            return cls(value.strip().upper())
        except ValueError:
            raise ValueError(f"Unknown member role: {value!r}") from None


class MemberStatus(str, enum.Enum):
    """Membership lifecycle status within a band."""
    ACTIVE = "active"
    PENDING = "pending"
    INACTIVE = "inactive"


class BillingStatus(str, enum.Enum):
    """Dues subscription status reported by the billing system."""
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"


@dataclass
class MemberRecord:
    """A member of a band as seen by the membership directory."""
    actor_id: str
    band_id: str
    role: MemberRole
    status: MemberStatus = MemberStatus.ACTIVE
    is_treasurer: bool = False
    activated_utc: Optional[datetime] = None
    billing_status: Optional[BillingStatus] = None  # None: never billed
    billing_updated_utc: Optional[datetime] = None

    def is_active(self) -> bool:
        return self.status == MemberStatus.ACTIVE


@dataclass
class BandDuesPolicy:
    """Per-band dues configuration consulted by the standing check."""
    band_id: str
    dues_amount_cents: int = 0
    enforcement_enabled: bool = True
    billing_owner_id: Optional[str] = None
    dissolution_vote_open: bool = False


@dataclass(frozen=True)
class StandingResult:
    """Outcome of a good-standing check.

    `reason` is human-readable and only set when ok is False.
    `exempt` marks billing owners and treasurers who pass without paying.
    """
    ok: bool
    reason: Optional[str] = None
    exempt: bool = False


@dataclass(frozen=True)
class MembershipContext:
    """Role and standing of one actor in one band, read at mutation time.

    role is None when the actor is not an active member of the band.
    band_dissolved is a property of the band, not the actor: no new work
    may be claimed in a dissolved band.
    """
    actor_id: str
    band_id: str
    role: Optional[MemberRole]
    standing: StandingResult
    band_dissolved: bool = False

    @property
    def is_member(self) -> bool:
        return self.role is not None
