"""Workflow module — work item state machine."""

from bandtasks.workflow.state_machine import TRANSITIONS, VerificationWorkflow

__all__ = ["TRANSITIONS", "VerificationWorkflow"]
