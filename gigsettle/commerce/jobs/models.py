"""Job, bid and trade data models."""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from gigsettle.commerce.money import to_money


class JobStatus(str, Enum):
    """Job posting lifecycle status."""

    OPEN = "open"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class BidStatus(str, Enum):
    """Bid lifecycle status."""

    PENDING = "pending"
    SHORTLISTED = "shortlisted"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    WITHDRAWN = "withdrawn"


class TradeStatus(str, Enum):
    """Escrow pointer lifecycle status."""

    PENDING_DEPOSIT = "pending_deposit"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


VALID_JOB_TRANSITIONS = {
    JobStatus.OPEN: {JobStatus.IN_PROGRESS, JobStatus.CANCELLED},
    JobStatus.IN_PROGRESS: {JobStatus.COMPLETED},
}

VALID_BID_TRANSITIONS = {
    BidStatus.PENDING: {
        BidStatus.SHORTLISTED,
        BidStatus.ACCEPTED,
        BidStatus.REJECTED,
        BidStatus.WITHDRAWN,
    },
    BidStatus.SHORTLISTED: {BidStatus.ACCEPTED, BidStatus.REJECTED},
}

VALID_TRADE_TRANSITIONS = {
    TradeStatus.PENDING_DEPOSIT: {TradeStatus.ACTIVE, TradeStatus.CANCELLED},
    TradeStatus.ACTIVE: {TradeStatus.COMPLETED},
}

# Bids that are still competing for the job
LIVE_BID_STATUSES = (BidStatus.PENDING.value, BidStatus.SHORTLISTED.value)

# Job statuses that have an assigned freelancer
ASSIGNED_JOB_STATUSES = (JobStatus.IN_PROGRESS.value, JobStatus.COMPLETED.value)

_JOB_STATUSES = {s.value for s in JobStatus}
_BID_STATUSES = {s.value for s in BidStatus}
_TRADE_STATUSES = {s.value for s in TradeStatus}


def sources_for(transitions: dict, target: Enum) -> tuple:
    """Status values from which ``target`` may be reached."""
    return tuple(sorted(src.value for src, dests in transitions.items() if target in dests))


@dataclass
class JobPosting:
    """A job posted by a client.

    ``freelancer_id`` is set exactly when the job is in progress or completed.
    """

    id: str
    client_id: str
    title: str
    description: str = ""
    currency: str = "USD"
    status: str = JobStatus.OPEN.value
    freelancer_id: Optional[str] = None
    bid_count: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    def __post_init__(self):
        if not self.client_id:
            raise ValueError("client_id is required")
        if not self.title or not self.title.strip():
            raise ValueError("Title cannot be empty")
        if len(self.title) > 200:
            raise ValueError("Title too long (max 200 characters)")
        if not self.currency or len(self.currency) > 10:
            raise ValueError(f"Invalid currency: {self.currency!r}")
        if self.status not in _JOB_STATUSES:
            raise ValueError(f"Invalid status: {self.status}")
        assigned = self.status in ASSIGNED_JOB_STATUSES
        if assigned and not self.freelancer_id:
            raise ValueError(f"Job in status {self.status} must have a freelancer")
        if not assigned and self.freelancer_id:
            raise ValueError(f"Job in status {self.status} cannot have a freelancer")
        if self.bid_count < 0:
            raise ValueError("bid_count cannot be negative")

    @property
    def is_open(self) -> bool:
        return self.status == JobStatus.OPEN.value

    def is_party(self, user_id: str) -> bool:
        return user_id in (self.client_id, self.freelancer_id)


@dataclass
class Bid:
    """A freelancer's bid on a job. One per (job, freelancer)."""

    id: str
    job_id: str
    freelancer_id: str
    amount: Decimal
    delivery_days: int
    proposal: str = ""
    status: str = BidStatus.PENDING.value
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    shortlisted_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    withdrawn_at: Optional[datetime] = None

    def __post_init__(self):
        self.amount = to_money(self.amount)
        if self.amount <= 0:
            raise ValueError("Bid amount must be positive")
        if self.delivery_days <= 0:
            raise ValueError("delivery_days must be positive")
        if self.status not in _BID_STATUSES:
            raise ValueError(f"Invalid status: {self.status}")


@dataclass
class Trade:
    """Escrow pointer created when a bid is accepted.

    Immutable after creation apart from its status; the escrow identifier is
    recorded once, when the client's deposit is confirmed.
    """

    id: str
    job_id: str
    bid_id: str
    buyer_id: str
    seller_id: str
    amount: Decimal
    currency: str
    chain_id: int
    deposit_deadline: datetime
    status: str = TradeStatus.PENDING_DEPOSIT.value
    escrow_id: Optional[int] = None
    created_at: Optional[datetime] = None
    deposited_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None

    def __post_init__(self):
        self.amount = to_money(self.amount)
        if self.amount <= 0:
            raise ValueError("Trade amount must be positive")
        if self.status not in _TRADE_STATUSES:
            raise ValueError(f"Invalid status: {self.status}")
        if self.escrow_id is not None and self.escrow_id < 0:
            raise ValueError("escrow_id cannot be negative")
        if self.buyer_id == self.seller_id:
            raise ValueError("Buyer and seller must differ")

    @property
    def has_escrow(self) -> bool:
        return self.escrow_id is not None
