"""Claims module — exclusive assignment of work items."""

from bandtasks.claims.manager import ClaimManager, ClaimOutcome

__all__ = ["ClaimManager", "ClaimOutcome"]
