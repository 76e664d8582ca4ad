"""Job and bid registry for gigsettle.

Models:
- JobPosting: A job posted by a client
- Bid: A freelancer's bid on a job
- Trade: Escrow pointer created when a bid is accepted
- JobStatus, BidStatus, TradeStatus: Lifecycle statuses

Service:
- JobService: post, bid, shortlist, reject, withdraw, accept, deposit, expiry
"""

from gigsettle.commerce.jobs.models import (
    VALID_BID_TRANSITIONS,
    VALID_JOB_TRANSITIONS,
    VALID_TRADE_TRANSITIONS,
    Bid,
    BidStatus,
    JobPosting,
    JobStatus,
    Trade,
    TradeStatus,
)
from gigsettle.commerce.jobs.service import (
    DEPOSIT_EXPIRED_REASON,
    AcceptanceResult,
    JobService,
    TradeExpiryResult,
)

__all__ = [
    # Models
    "JobPosting",
    "Bid",
    "Trade",
    "JobStatus",
    "BidStatus",
    "TradeStatus",
    "VALID_JOB_TRANSITIONS",
    "VALID_BID_TRANSITIONS",
    "VALID_TRADE_TRANSITIONS",
    # Service
    "JobService",
    "AcceptanceResult",
    "TradeExpiryResult",
    "DEPOSIT_EXPIRED_REASON",
]
