"""Deliverable module — evidence record validation."""

from bandtasks.deliverable.validator import (
    DeliverableCheck,
    DeliverableValidator,
    DeliverableVerdict,
)

__all__ = ["DeliverableCheck", "DeliverableValidator", "DeliverableVerdict"]
