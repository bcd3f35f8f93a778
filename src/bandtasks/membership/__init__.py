"""Membership module — role and standing provider."""

from bandtasks.membership.directory import MembershipDirectory, MembershipProvider

__all__ = ["MembershipDirectory", "MembershipProvider"]
