"""Band tasks — claimable, verifiable work items for member-run bands.

Tasks and checklist items share one lifecycle: claim, work, deliver
evidence, submit for review (or complete directly), approve or reject.
"""

__version__ = "0.1.0"
