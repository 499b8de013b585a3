"""
approval_batch -- periodic sweeps for the approval engine.

``ApprovalSweepScheduler`` runs escalation, reminder and retention sweeps
from a background polling thread.
"""

from approval_batch.scheduler import (
    ApprovalSweepScheduler,
    SweepTarget,
    SweepTickResult,
)

__all__ = [
    "ApprovalSweepScheduler",
    "SweepTarget",
    "SweepTickResult",
]
