"""Policy resolver — loads lifecycle_policy.json and exposes every runtime
decision of the work-item lifecycle as a typed method call.

No magic. No defaults. If a value is missing from the config, it fails loud.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from bandtasks.models.membership import MemberRole


@dataclass(frozen=True)
class DeliverableLimits:
    """Resolved size and format limits for deliverable records."""
    min_summary_chars: int
    max_summary_chars: int
    max_links: int
    max_link_title_chars: int
    max_next_steps_chars: int
    allowed_link_schemes: frozenset[str]


class PolicyResolver:
    """Loads and resolves lifecycle policy.

    Usage:
        resolver = PolicyResolver.from_config_dir(Path("config"))
        limits = resolver.deliverable_limits()
        reviewers = resolver.reviewer_roles()
    """

    def __init__(self, policy: dict[str, Any]) -> None:
        self._policy = policy
        self._validate()

    @classmethod
    def from_config_dir(cls, config_dir: Path) -> PolicyResolver:
        """Load from the canonical config directory."""
        return cls(_load_json(config_dir / "lifecycle_policy.json"))

    def _validate(self) -> None:
        if "version" not in self._policy:
            raise ValueError("lifecycle_policy.json missing version")
        for section in ("roles", "deliverable", "verification", "tasks", "standing", "concurrency"):
            if section not in self._policy:
                raise ValueError(f"lifecycle_policy.json missing section: {section}")
        # Bad role names fail here, at load
        self.reviewer_roles()
        self.moderator_roles()
        limits = self.deliverable_limits()
        if limits.min_summary_chars > limits.max_summary_chars:
            raise ValueError(
                f"min_summary_chars {limits.min_summary_chars} exceeds "
                f"max_summary_chars {limits.max_summary_chars}"
            )

    @property
    def version(self) -> str:
        return self._policy["version"]

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    def reviewer_roles(self) -> frozenset[MemberRole]:
        """Roles permitted to approve or reject submissions."""
        return frozenset(MemberRole.parse(r) for r in self._policy["roles"]["reviewer_roles"])

    def moderator_roles(self) -> frozenset[MemberRole]:
        """Roles with moderator-equivalent override (block, unblock, forced unclaim)."""
        return frozenset(MemberRole.parse(r) for r in self._policy["roles"]["moderator_roles"])

    # ------------------------------------------------------------------
    # Deliverables
    # ------------------------------------------------------------------

    def deliverable_limits(self) -> DeliverableLimits:
        d = self._policy["deliverable"]
        return DeliverableLimits(
            min_summary_chars=d["min_summary_chars"],
            max_summary_chars=d["max_summary_chars"],
            max_links=d["max_links"],
            max_link_title_chars=d["max_link_title_chars"],
            max_next_steps_chars=d["max_next_steps_chars"],
            allowed_link_schemes=frozenset(s.lower() for s in d["allowed_link_schemes"]),
        )

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def allow_self_review(self) -> bool:
        """Whether an assignee may approve or reject their own submission."""
        return self._policy["verification"]["allow_self_review"]

    def review_requires_good_standing(self) -> bool:
        return self._policy["verification"]["review_requires_good_standing"]

    def require_checklist_complete(self) -> bool:
        """Whether a task's checklist must be finished before it can finish."""
        return self._policy["tasks"]["require_checklist_complete"]

    # ------------------------------------------------------------------
    # Standing
    # ------------------------------------------------------------------

    def standing_grace_days(self) -> tuple[int, int]:
        """Return (new_member_grace_days, lapsed_member_grace_days)."""
        s = self._policy["standing"]
        return s["new_member_grace_days"], s["lapsed_member_grace_days"]

    # ------------------------------------------------------------------
    # Concurrency
    # ------------------------------------------------------------------

    def max_conflict_retries(self) -> int:
        """Upper bound on caller-side retries after a concurrency conflict."""
        return self._policy["concurrency"]["max_conflict_retries"]


def _load_json(path: Path) -> dict[str, Any]:
    """Load a JSON file or raise with clear path."""
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    with path.open("r", encoding="utf-8") as f:
        return json.load(f)
