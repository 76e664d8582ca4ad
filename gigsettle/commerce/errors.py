"""Error taxonomy for the settlement engine.

Every failure a caller can act on is one of these typed errors. They abort the
surrounding transaction and reach the caller unchanged; external-dependency
failures (notifications, escrow adapter) are never raised from here, they are
logged and reported as warnings on the operation result.
"""

from decimal import Decimal
from typing import Optional


class SettlementError(Exception):
    """Base class for settlement engine errors."""

    code = "settlement_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidInputError(SettlementError):
    """Malformed or missing input. Raised before any write."""

    code = "invalid_input"


class UnauthorizedError(SettlementError):
    """The actor is not the party required for the operation."""

    code = "unauthorized"


class InvalidTransitionError(SettlementError):
    """The entity is not in a valid source state for the requested transition."""

    code = "state_conflict"

    def __init__(
        self,
        message: str,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        current_status: Optional[str] = None,
        target_status: Optional[str] = None,
    ):
        super().__init__(message)
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.current_status = current_status
        self.target_status = target_status


class DuplicateBidError(InvalidTransitionError):
    """The freelancer already has a bid on this job."""

    code = "duplicate_bid"


class InsufficientBalanceError(SettlementError):
    """Withdrawal amount exceeds the available balance."""

    code = "insufficient_balance"

    def __init__(self, available: Decimal, requested: Decimal):
        super().__init__(
            f"Insufficient balance: requested {requested}, available {available}"
        )
        self.available = available
        self.requested = requested


class NotFoundError(SettlementError):
    """Referenced entity does not exist or does not belong to its parent."""

    code = "not_found"


class JobNotFoundError(NotFoundError):
    code = "job_not_found"


class BidNotFoundError(NotFoundError):
    code = "bid_not_found"


class TradeNotFoundError(NotFoundError):
    code = "trade_not_found"


class MilestoneNotFoundError(NotFoundError):
    code = "milestone_not_found"


class WithdrawalNotFoundError(NotFoundError):
    code = "withdrawal_not_found"
