"""Deliverable validator — checks evidence records against an item's rules.

Pure computation: no side effects. Two entry points:
- validate_format(): shape checks applied on every deliverable edit.
  Drafts may be short; links, titles and size ceilings are enforced.
- validate(): the full gate applied before submission or completion.
  If the item requires a deliverable, the trimmed summary must reach the
  configured minimum. The minimum is checked first so a short summary is
  always reported as too short, whatever the links look like.

Each malformed link is reported individually (index, field, problem)
rather than collapsing the whole submission into one opaque failure.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import urlsplit

from bandtasks.models.refusal import Refusal, RefusalCode
from bandtasks.models.work_item import Deliverable, DeliverableLink, WorkItem
from bandtasks.policy.resolver import DeliverableLimits, PolicyResolver


class DeliverableVerdict(str, enum.Enum):
    """OK_EMPTY: nothing was required and nothing was supplied."""
    OK = "ok"
    OK_EMPTY = "ok_empty"
    ERROR = "error"


@dataclass(frozen=True)
class DeliverableCheck:
    """Result of a deliverable validation."""
    verdict: DeliverableVerdict
    refusal: Optional[Refusal] = None

    @property
    def ok(self) -> bool:
        return self.verdict != DeliverableVerdict.ERROR


_OK = DeliverableCheck(DeliverableVerdict.OK)
_OK_EMPTY = DeliverableCheck(DeliverableVerdict.OK_EMPTY)


class DeliverableValidator:
    """Validates deliverable records against policy limits."""

    def __init__(self, resolver: PolicyResolver) -> None:
        self._limits: DeliverableLimits = resolver.deliverable_limits()

    @property
    def min_summary_chars(self) -> int:
        return self._limits.min_summary_chars

    def validate(
        self,
        item: WorkItem,
        candidate: Optional[Deliverable],
    ) -> DeliverableCheck:
        """Full validation of `candidate` as the item's evidence of completion."""
        if candidate is None:
            if item.requires_deliverable:
                return self._too_short(0)
            return _OK_EMPTY

        if item.requires_deliverable and candidate.summary_length < self._limits.min_summary_chars:
            return self._too_short(candidate.summary_length)

        return self.validate_format(candidate)

    def validate_format(self, candidate: Deliverable) -> DeliverableCheck:
        """Size ceilings and per-link checks. No minimum summary length."""
        limits = self._limits
        oversize: dict[str, Any] = {}
        if len(candidate.summary) > limits.max_summary_chars:
            oversize["summary"] = {
                "max_chars": limits.max_summary_chars,
                "actual_chars": len(candidate.summary),
            }
        if candidate.next_steps is not None and len(candidate.next_steps) > limits.max_next_steps_chars:
            oversize["next_steps"] = {
                "max_chars": limits.max_next_steps_chars,
                "actual_chars": len(candidate.next_steps),
            }
        if len(candidate.links) > limits.max_links:
            oversize["links"] = {
                "max_links": limits.max_links,
                "actual_links": len(candidate.links),
            }
        if oversize:
            fields = ", ".join(sorted(oversize))
            return DeliverableCheck(
                DeliverableVerdict.ERROR,
                Refusal(
                    RefusalCode.DELIVERABLE_TOO_LONG,
                    f"Deliverable exceeds size limits: {fields}.",
                    {"fields": oversize},
                ),
            )

        problems: list[dict[str, Any]] = []
        for index, link in enumerate(candidate.links):
            problems.extend(self._link_problems(index, link))
        if problems:
            return DeliverableCheck(
                DeliverableVerdict.ERROR,
                Refusal(
                    RefusalCode.INVALID_LINK,
                    f"{len(problems)} deliverable link problem(s) found.",
                    {"links": problems},
                ),
            )
        return _OK

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _too_short(self, actual: int) -> DeliverableCheck:
        minimum = self._limits.min_summary_chars
        missing = minimum - actual
        return DeliverableCheck(
            DeliverableVerdict.ERROR,
            Refusal(
                RefusalCode.DELIVERABLE_TOO_SHORT,
                f"Deliverable summary must be at least {minimum} characters "
                f"({missing} more needed).",
                {"min_chars": minimum, "actual_chars": actual, "missing_chars": missing},
            ),
        )

    def _link_problems(self, index: int, link: DeliverableLink) -> list[dict[str, Any]]:
        problems: list[dict[str, Any]] = []
        url_problem = self._url_problem(link.url)
        if url_problem:
            problems.append({"index": index, "field": "url", "problem": url_problem})

        title = link.title.strip()
        if not title:
            problems.append({"index": index, "field": "title", "problem": "title is empty"})
        elif len(title) > self._limits.max_link_title_chars:
            problems.append({
                "index": index,
                "field": "title",
                "problem": f"title longer than {self._limits.max_link_title_chars} characters",
            })
        return problems

    def _url_problem(self, url: str) -> Optional[str]:
        raw = url.strip()
        if not raw:
            return "url is empty"
        if any(ch.isspace() for ch in raw):
            return "url contains whitespace"
        try:
            parts = urlsplit(raw)
            # Accessing port validates it
            parts.port
        except ValueError as e:
            return f"url is malformed: {e}"
        if not parts.scheme:
            return "url is not absolute"
        if parts.scheme.lower() not in self._limits.allowed_link_schemes:
            allowed = ", ".join(sorted(self._limits.allowed_link_schemes))
            return f"url scheme '{parts.scheme}' not allowed (expected {allowed})"
        if not parts.hostname:
            return "url has no host"
        return None
