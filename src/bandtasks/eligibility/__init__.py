"""Eligibility module — role and standing predicates."""

from bandtasks.eligibility.gate import Eligibility, EligibilityGate

__all__ = ["Eligibility", "EligibilityGate"]
