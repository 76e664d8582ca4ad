"""Earnings ledger and withdrawals for gigsettle.

The available balance is derived, never stored:
released earnings minus pending, processing and completed withdrawals.
"""

from gigsettle.commerce.ledger.models import (
    BalanceSummary,
    Earning,
    EarningStatus,
    EarningType,
    Withdrawal,
    WithdrawalMethod,
    WithdrawalStatus,
    compute_available_balance,
)
from gigsettle.commerce.ledger.service import LedgerService, select_earnings_to_withdraw

__all__ = [
    "Earning",
    "EarningStatus",
    "EarningType",
    "Withdrawal",
    "WithdrawalMethod",
    "WithdrawalStatus",
    "BalanceSummary",
    "compute_available_balance",
    "LedgerService",
    "select_earnings_to_withdraw",
]
