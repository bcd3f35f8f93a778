"""Typed refusals — the answer to "you can't do that right now".

Every expected failure of a lifecycle operation is a Refusal value, not an
exception. The code names the predicate that failed; details carry what a
presentation layer needs to render remediation (missing characters, the
required role, the offending link index) without re-deriving it.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any


class RefusalCode(str, enum.Enum):
    """Taxonomy of expected, recoverable lifecycle outcomes."""
    NOT_ELIGIBLE_ROLE = "not_eligible_role"
    NOT_ELIGIBLE_STANDING = "not_eligible_standing"
    ALREADY_CLAIMED = "already_claimed"
    NOT_ASSIGNEE = "not_assignee"
    NOT_REVIEWER = "not_reviewer"
    NOT_AUTHORIZED = "not_authorized"
    BAND_DISSOLVED = "band_dissolved"
    INVALID_STATE = "invalid_state"
    DELIVERABLE_TOO_SHORT = "deliverable_too_short"
    DELIVERABLE_TOO_LONG = "deliverable_too_long"
    INVALID_LINK = "invalid_link"
    MISSING_REASON = "missing_reason"
    CHECKLIST_INCOMPLETE = "checklist_incomplete"
    NOT_FOUND = "not_found"
    CONCURRENCY_CONFLICT = "concurrency_conflict"


@dataclass(frozen=True)
class Refusal:
    """A structured, non-fatal refusal."""
    code: RefusalCode
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"
