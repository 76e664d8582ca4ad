"""Milestone state machine for gigsettle."""

from gigsettle.commerce.milestones.models import (
    VALID_MILESTONE_TRANSITIONS,
    AutoReleased,
    DisputeRaised,
    Milestone,
    MilestoneExtension,
    MilestoneStatus,
    PendingRelease,
)
from gigsettle.commerce.milestones.service import ApprovalResult, MilestoneService

__all__ = [
    "Milestone",
    "MilestoneStatus",
    "MilestoneExtension",
    "PendingRelease",
    "AutoReleased",
    "DisputeRaised",
    "VALID_MILESTONE_TRANSITIONS",
    "MilestoneService",
    "ApprovalResult",
]
