"""Policy module — lifecycle configuration."""

from bandtasks.policy.resolver import DeliverableLimits, PolicyResolver

__all__ = ["DeliverableLimits", "PolicyResolver"]
