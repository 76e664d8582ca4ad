"""Milestone data models.

A milestone moves along a fixed graph::

    pending -> in_progress -> submitted -> approved
                    |              |
                    +-> disputed <-+

Extension data written by particular transitions (a pending on-chain release,
the auto-release marker) is modelled as explicit variants instead of a
free-form dict, so code can only read what a transition actually wrote.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Union

from gigsettle.commerce.escrow.adapter import ReleaseDescriptor
from gigsettle.commerce.money import to_money


class MilestoneStatus(str, Enum):
    """Milestone lifecycle status."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUBMITTED = "submitted"
    APPROVED = "approved"
    DISPUTED = "disputed"


VALID_MILESTONE_TRANSITIONS = {
    MilestoneStatus.PENDING: {MilestoneStatus.IN_PROGRESS},
    MilestoneStatus.IN_PROGRESS: {MilestoneStatus.SUBMITTED, MilestoneStatus.DISPUTED},
    MilestoneStatus.SUBMITTED: {MilestoneStatus.APPROVED, MilestoneStatus.DISPUTED},
}

# Milestones whose due date still matters
OPEN_MILESTONE_STATUSES = (MilestoneStatus.PENDING.value, MilestoneStatus.IN_PROGRESS.value)

_MILESTONE_STATUSES = {s.value for s in MilestoneStatus}


def can_transition(from_status: str, to_status: str) -> bool:
    """Check whether a milestone status transition is an edge of the graph."""
    try:
        source = MilestoneStatus(from_status)
        target = MilestoneStatus(to_status)
    except ValueError:
        return False
    return target in VALID_MILESTONE_TRANSITIONS.get(source, set())


def milestone_sources(target: MilestoneStatus) -> tuple:
    """Status values from which ``target`` may be reached."""
    return tuple(
        sorted(src.value for src, dests in VALID_MILESTONE_TRANSITIONS.items() if target in dests)
    )


# === Extension variants ===


@dataclass(frozen=True)
class PendingRelease:
    """An on-chain release waiting for an external signer."""

    descriptor: ReleaseDescriptor
    recorded_at: datetime


@dataclass(frozen=True)
class AutoReleased:
    """Marker written when the reconciler approved the milestone."""

    released_at: datetime
    pending_release: Optional[PendingRelease] = None


@dataclass(frozen=True)
class DisputeRaised:
    """Written when either party disputes the milestone."""

    reason: str
    raised_by: str
    raised_at: datetime


MilestoneExtension = Union[None, PendingRelease, AutoReleased, DisputeRaised]


def extension_to_dict(extension: MilestoneExtension) -> Optional[Dict[str, Any]]:
    """Serialize an extension variant for storage."""
    if extension is None:
        return None
    if isinstance(extension, PendingRelease):
        return {
            "kind": "pending_release",
            "descriptor": extension.descriptor.to_dict(),
            "recorded_at": extension.recorded_at.isoformat(),
        }
    if isinstance(extension, AutoReleased):
        return {
            "kind": "auto_released",
            "released_at": extension.released_at.isoformat(),
            "pending_release": extension_to_dict(extension.pending_release),
        }
    if isinstance(extension, DisputeRaised):
        return {
            "kind": "dispute_raised",
            "reason": extension.reason,
            "raised_by": extension.raised_by,
            "raised_at": extension.raised_at.isoformat(),
        }
    raise TypeError(f"Unknown milestone extension: {type(extension).__name__}")


def extension_from_dict(data: Optional[Dict[str, Any]]) -> MilestoneExtension:
    """Deserialize a stored extension variant."""
    if not data:
        return None
    kind = data.get("kind")
    if kind == "pending_release":
        return PendingRelease(
            descriptor=ReleaseDescriptor.from_dict(data["descriptor"]),
            recorded_at=datetime.fromisoformat(data["recorded_at"]),
        )
    if kind == "auto_released":
        return AutoReleased(
            released_at=datetime.fromisoformat(data["released_at"]),
            pending_release=extension_from_dict(data.get("pending_release")),
        )
    if kind == "dispute_raised":
        return DisputeRaised(
            reason=data["reason"],
            raised_by=data["raised_by"],
            raised_at=datetime.fromisoformat(data["raised_at"]),
        )
    raise ValueError(f"Unknown milestone extension kind: {kind!r}")


@dataclass
class Milestone:
    """A priced, dated unit of work within a job."""

    id: str
    job_id: str
    title: str
    amount: Decimal
    due_date: datetime
    sort_order: int
    description: str = ""
    status: str = MilestoneStatus.PENDING.value
    auto_release_enabled: bool = True
    feedback: Optional[str] = None
    submission_url: Optional[str] = None
    submission_note: Optional[str] = None
    extension: MilestoneExtension = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    submitted_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    disputed_at: Optional[datetime] = None

    def __post_init__(self):
        if not self.title or not self.title.strip():
            raise ValueError("Title cannot be empty")
        if len(self.title) > 200:
            raise ValueError("Title too long (max 200 characters)")
        self.amount = to_money(self.amount)
        if self.amount <= 0:
            raise ValueError("Milestone amount must be positive")
        if self.sort_order < 0:
            raise ValueError("sort_order cannot be negative")
        if self.status not in _MILESTONE_STATUSES:
            raise ValueError(f"Invalid status: {self.status}")

    @property
    def pending_release(self) -> Optional[ReleaseDescriptor]:
        """The recorded release call, if one was written on approval."""
        extension = self.extension
        if isinstance(extension, AutoReleased):
            extension = extension.pending_release
        if isinstance(extension, PendingRelease):
            return extension.descriptor
        return None

    @property
    def auto_released(self) -> bool:
        return isinstance(self.extension, AutoReleased)

    @property
    def dispute_reason(self) -> Optional[str]:
        if isinstance(self.extension, DisputeRaised):
            return self.extension.reason
        return None
