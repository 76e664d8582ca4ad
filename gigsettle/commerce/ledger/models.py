"""Earnings ledger data models.

The available balance is always derived from the rows here and never stored:

    available = sum(released earnings) - sum(reserving withdrawals)

Released earnings are those ``completed`` or already ``withdrawn``; a
withdrawn earning is money that was paid out through a completed withdrawal,
which is itself on the reserving side.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Iterable, Optional

from gigsettle.commerce.money import to_money, total


class EarningType(str, Enum):
    MILESTONE = "milestone"
    TIP = "tip"


class EarningStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    WITHDRAWN = "withdrawn"


class WithdrawalStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    REJECTED = "rejected"


class WithdrawalMethod(str, Enum):
    CRYPTO = "crypto"
    BANK = "bank"
    PAYPAL = "paypal"


RELEASED_EARNING_STATUSES = (EarningStatus.COMPLETED.value, EarningStatus.WITHDRAWN.value)

RESERVING_WITHDRAWAL_STATUSES = (
    WithdrawalStatus.PENDING.value,
    WithdrawalStatus.PROCESSING.value,
    WithdrawalStatus.COMPLETED.value,
)

_EARNING_TYPES = {t.value for t in EarningType}
_EARNING_STATUSES = {s.value for s in EarningStatus}
_WITHDRAWAL_STATUSES = {s.value for s in WithdrawalStatus}
_WITHDRAWAL_METHODS = {m.value for m in WithdrawalMethod}


@dataclass
class Earning:
    """Append-only ledger entry for money released to a freelancer."""

    id: str
    freelancer_id: str
    amount: Decimal
    type: str = EarningType.MILESTONE.value
    status: str = EarningStatus.COMPLETED.value
    job_id: Optional[str] = None
    milestone_id: Optional[str] = None
    description: Optional[str] = None
    created_at: Optional[datetime] = None
    withdrawn_at: Optional[datetime] = None

    def __post_init__(self):
        self.amount = to_money(self.amount)
        if self.amount <= 0:
            raise ValueError("Earning amount must be positive")
        if self.type not in _EARNING_TYPES:
            raise ValueError(f"Invalid earning type: {self.type}")
        if self.status not in _EARNING_STATUSES:
            raise ValueError(f"Invalid status: {self.status}")
        if self.type == EarningType.MILESTONE.value and not self.milestone_id:
            raise ValueError("Milestone earnings must reference a milestone")


@dataclass
class Withdrawal:
    """A payout request against the available balance."""

    id: str
    freelancer_id: str
    amount: Decimal
    fee: Decimal
    net_amount: Decimal
    method: str
    destination: str
    status: str = WithdrawalStatus.PENDING.value
    notes: Optional[str] = None
    transaction_ref: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None

    def __post_init__(self):
        self.amount = to_money(self.amount)
        self.fee = to_money(self.fee)
        self.net_amount = to_money(self.net_amount)
        if self.amount <= 0:
            raise ValueError("Withdrawal amount must be positive")
        if self.fee < 0:
            raise ValueError("Fee cannot be negative")
        if self.net_amount != self.amount - self.fee:
            raise ValueError("net_amount must equal amount - fee")
        if self.method not in _WITHDRAWAL_METHODS:
            raise ValueError(f"Invalid withdrawal method: {self.method}")
        if not self.destination or not self.destination.strip():
            raise ValueError("Destination cannot be empty")
        if self.status not in _WITHDRAWAL_STATUSES:
            raise ValueError(f"Invalid status: {self.status}")


@dataclass
class BalanceSummary:
    """Derived view of a freelancer's ledger."""

    freelancer_id: str
    total_released: Decimal = Decimal("0")
    total_tips: Decimal = Decimal("0")
    pending_earnings: Decimal = Decimal("0")
    pending_withdrawals: Decimal = Decimal("0")
    processing_withdrawals: Decimal = Decimal("0")
    withdrawn: Decimal = Decimal("0")
    fees_paid: Decimal = Decimal("0")
    earning_count: int = 0
    withdrawal_count: int = 0
    by_status: dict = field(default_factory=dict)

    @property
    def total_reserved(self) -> Decimal:
        return self.pending_withdrawals + self.processing_withdrawals + self.withdrawn

    @property
    def available(self) -> Decimal:
        return self.total_released - self.total_reserved


def compute_available_balance(
    earnings: Iterable[Earning], withdrawals: Iterable[Withdrawal]
) -> Decimal:
    """Available balance from ledger rows."""
    released = total(e.amount for e in earnings if e.status in RELEASED_EARNING_STATUSES)
    reserved = total(w.amount for w in withdrawals if w.status in RESERVING_WITHDRAWAL_STATUSES)
    return released - reserved


def summarize(
    freelancer_id: str, earnings: Iterable[Earning], withdrawals: Iterable[Withdrawal]
) -> BalanceSummary:
    """Build a balance summary from ledger rows."""
    earnings = list(earnings)
    withdrawals = list(withdrawals)

    def _sum_withdrawals(status: WithdrawalStatus) -> Decimal:
        return total(w.amount for w in withdrawals if w.status == status.value)

    return BalanceSummary(
        freelancer_id=freelancer_id,
        total_released=total(
            e.amount for e in earnings if e.status in RELEASED_EARNING_STATUSES
        ),
        total_tips=total(
            e.amount
            for e in earnings
            if e.type == EarningType.TIP.value and e.status in RELEASED_EARNING_STATUSES
        ),
        pending_earnings=total(
            e.amount for e in earnings if e.status == EarningStatus.PENDING.value
        ),
        pending_withdrawals=_sum_withdrawals(WithdrawalStatus.PENDING),
        processing_withdrawals=_sum_withdrawals(WithdrawalStatus.PROCESSING),
        withdrawn=_sum_withdrawals(WithdrawalStatus.COMPLETED),
        fees_paid=total(
            w.fee for w in withdrawals if w.status == WithdrawalStatus.COMPLETED.value
        ),
        earning_count=len(earnings),
        withdrawal_count=len(withdrawals),
        by_status={
            s.value: total(e.amount for e in earnings if e.status == s.value)
            for s in EarningStatus
        },
    )
