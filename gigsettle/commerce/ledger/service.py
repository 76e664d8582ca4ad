"""Settlement ledger and withdrawal workflow.

The available balance is derived from earnings and withdrawals on every
read. A withdrawal request computes it and inserts the withdrawal inside one
``BEGIN IMMEDIATE`` transaction, so two concurrent requests for the same
freelancer cannot both spend the same balance.
"""

import logging
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional, Union

from gigsettle.commerce.base import OperationResult, SettlementService, new_id, user_actor
from gigsettle.commerce.errors import (
    InsufficientBalanceError,
    InvalidInputError,
    WithdrawalNotFoundError,
)
from gigsettle.commerce.ledger.models import (
    RELEASED_EARNING_STATUSES,
    RESERVING_WITHDRAWAL_STATUSES,
    BalanceSummary,
    Earning,
    EarningStatus,
    Withdrawal,
    WithdrawalMethod,
    WithdrawalStatus,
    compute_available_balance,
    summarize,
)
from gigsettle.commerce.money import MONEY_QUANTUM, to_money, total
from gigsettle.commerce.notifications import Notification, NotificationEvent
from gigsettle.logging_config import log_settlement
from gigsettle.storage.base import utc_now

logger = logging.getLogger(__name__)

_METHODS = {m.value for m in WithdrawalMethod}


def select_earnings_to_withdraw(
    completed_earnings: List[Earning], budget: Decimal
) -> List[Earning]:
    """Pick completed earnings covered by ``budget``, oldest first.

    Stops at the first earning that does not fit; rows are never split, so
    any remainder waits for the next completed withdrawal.
    """
    selected = []
    remaining = budget
    for earning in sorted(completed_earnings, key=lambda e: (e.created_at, e.id)):
        if earning.amount > remaining:
            break
        selected.append(earning)
        remaining -= earning.amount
    return selected


class LedgerService(SettlementService):
    """Earnings reads, balance computation and withdrawals."""

    # === Reads ===

    def _balance(self, tx, freelancer_id: str) -> Decimal:
        earnings = tx.list_earnings(freelancer_id=freelancer_id, statuses=RELEASED_EARNING_STATUSES)
        withdrawals = tx.list_withdrawals(
            freelancer_id=freelancer_id, statuses=RESERVING_WITHDRAWAL_STATUSES
        )
        return compute_available_balance(earnings, withdrawals)

    def available_balance(self, freelancer_id: str) -> Decimal:
        with self.store.transaction(immediate=False) as tx:
            return self._balance(tx, freelancer_id)

    def get_balance_summary(self, freelancer_id: str) -> BalanceSummary:
        with self.store.transaction(immediate=False) as tx:
            earnings = tx.list_earnings(freelancer_id=freelancer_id)
            withdrawals = tx.list_withdrawals(freelancer_id=freelancer_id)
        return summarize(freelancer_id, earnings, withdrawals)

    def list_earnings(
        self,
        freelancer_id: str,
        status: Optional[str] = None,
        type: Optional[str] = None,
    ) -> List[Earning]:
        with self.store.transaction(immediate=False) as tx:
            return tx.list_earnings(
                freelancer_id=freelancer_id,
                statuses=(status,) if status else None,
                type=type,
            )

    def list_withdrawals(
        self,
        freelancer_id: Optional[str] = None,
        status: Optional[str] = None,
        method: Optional[str] = None,
    ) -> List[Withdrawal]:
        with self.store.transaction(immediate=False) as tx:
            return tx.list_withdrawals(
                freelancer_id=freelancer_id,
                statuses=(status,) if status else None,
                method=method,
            )

    def get_withdrawal(self, withdrawal_id: str) -> Withdrawal:
        with self.store.transaction(immediate=False) as tx:
            withdrawal = tx.get_withdrawal(withdrawal_id)
        if withdrawal is None:
            raise WithdrawalNotFoundError(f"Withdrawal {withdrawal_id} not found")
        return withdrawal

    # === Requests ===

    def calculate_fee(self, amount: Decimal) -> Decimal:
        return (amount * self.config.withdrawal_fee_rate).quantize(
            MONEY_QUANTUM, rounding=ROUND_HALF_UP
        )

    def request_withdrawal(
        self,
        freelancer_id: str,
        amount: Union[Decimal, str, int],
        method: str,
        destination: str,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> OperationResult[Withdrawal]:
        """Request a payout against the available balance.

        Raises:
            InvalidInputError: Bad amount, method or destination, or below the minimum
            InsufficientBalanceError: Amount exceeds the available balance
        """
        actor = user_actor(freelancer_id)
        try:
            amount = to_money(amount)
        except ValueError as e:
            raise InvalidInputError(str(e)) from e
        if amount <= 0:
            raise InvalidInputError("Withdrawal amount must be positive")
        if amount < self.config.minimum_withdrawal:
            raise InvalidInputError(
                f"Minimum withdrawal amount is {self.config.minimum_withdrawal}"
            )
        if method not in _METHODS:
            raise InvalidInputError(
                f"Invalid withdrawal method: {method} (expected one of {sorted(_METHODS)})"
            )
        if not destination or not destination.strip():
            raise InvalidInputError("A withdrawal destination is required")

        now = now or utc_now()
        fee = self.calculate_fee(amount)
        withdrawal = Withdrawal(
            id=new_id(),
            freelancer_id=freelancer_id,
            amount=amount,
            fee=fee,
            net_amount=amount - fee,
            method=method,
            destination=destination.strip(),
            notes=notes,
            created_at=now,
            updated_at=now,
        )

        log = []
        with self.store.transaction() as tx:
            available = self._balance(tx, freelancer_id)
            if amount > available:
                raise InsufficientBalanceError(available=available, requested=amount)
            tx.insert_withdrawal(withdrawal)
            self._record(tx, log, "withdrawal", withdrawal.id, None, withdrawal.status, actor, now)

        self._log_committed(log)
        log_settlement(
            "withdrawal_requested",
            freelancer_id,
            amount,
            fee=fee,
            net=withdrawal.net_amount,
            method=method,
            balance_after=available - amount,
        )
        warnings = self._notify(
            [
                Notification(
                    recipient_id=self.config.admin_recipient_id,
                    event_type=NotificationEvent.WITHDRAWAL_REQUESTED,
                    title="Withdrawal requested",
                    message=f"A freelancer requested a withdrawal of {amount} via {method}.",
                    data={
                        "withdrawal_id": withdrawal.id,
                        "freelancer_id": freelancer_id,
                        "amount": str(amount),
                        "fee": str(fee),
                        "net_amount": str(withdrawal.net_amount),
                        "method": method,
                    },
                )
            ]
        )
        return OperationResult(withdrawal, warnings)

    # === Processing ===

    def _move_withdrawal(
        self,
        tx,
        log: list,
        withdrawal_id: str,
        expected: tuple,
        target: WithdrawalStatus,
        actor,
        now: datetime,
        reason: Optional[str] = None,
        **fields,
    ) -> Withdrawal:
        withdrawal = tx.get_withdrawal(withdrawal_id)
        if withdrawal is None:
            raise WithdrawalNotFoundError(f"Withdrawal {withdrawal_id} not found")
        if not tx.update_withdrawal_status(withdrawal_id, expected, target.value, now=now, **fields):
            raise self._conflict(
                "withdrawal", withdrawal_id, expected, withdrawal.status, target.value
            )
        self._record(
            tx, log, "withdrawal", withdrawal_id, withdrawal.status, target.value, actor, now,
            reason=reason,
        )
        return tx.get_withdrawal(withdrawal_id)

    def _notify_processed(self, withdrawal: Withdrawal) -> List[str]:
        return self._notify(
            [
                Notification(
                    recipient_id=withdrawal.freelancer_id,
                    event_type=NotificationEvent.WITHDRAWAL_PROCESSED,
                    title=f"Withdrawal {withdrawal.status}",
                    message=f"Your withdrawal of {withdrawal.amount} is {withdrawal.status}.",
                    data={
                        "withdrawal_id": withdrawal.id,
                        "status": withdrawal.status,
                        "net_amount": str(withdrawal.net_amount),
                        "reason": withdrawal.failure_reason,
                    },
                )
            ]
        )

    def mark_processing(
        self, withdrawal_id: str, actor_id: str, now: Optional[datetime] = None
    ) -> OperationResult[Withdrawal]:
        """pending -> processing."""
        actor = user_actor(actor_id)
        now = now or utc_now()
        log = []
        with self.store.transaction() as tx:
            withdrawal = self._move_withdrawal(
                tx, log, withdrawal_id, (WithdrawalStatus.PENDING.value,),
                WithdrawalStatus.PROCESSING, actor, now,
            )
        self._log_committed(log)
        return OperationResult(withdrawal, self._notify_processed(withdrawal))

    def complete_withdrawal(
        self,
        withdrawal_id: str,
        actor_id: str,
        transaction_ref: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> OperationResult[Withdrawal]:
        """processing -> completed, then mark covered earnings withdrawn.

        Earnings are matched oldest first against the freelancer's total of
        completed withdrawals; see ``select_earnings_to_withdraw``.
        """
        actor = user_actor(actor_id)
        now = now or utc_now()
        log = []
        with self.store.transaction() as tx:
            withdrawal = self._move_withdrawal(
                tx, log, withdrawal_id, (WithdrawalStatus.PROCESSING.value,),
                WithdrawalStatus.COMPLETED, actor, now,
                transaction_ref=transaction_ref, processed_at=now,
            )
            freelancer_id = withdrawal.freelancer_id
            paid_out = total(
                w.amount
                for w in tx.list_withdrawals(
                    freelancer_id=freelancer_id, statuses=(WithdrawalStatus.COMPLETED.value,)
                )
            )
            already_marked = total(
                e.amount
                for e in tx.list_earnings(
                    freelancer_id=freelancer_id, statuses=(EarningStatus.WITHDRAWN.value,)
                )
            )
            selected = select_earnings_to_withdraw(
                tx.list_earnings(
                    freelancer_id=freelancer_id, statuses=(EarningStatus.COMPLETED.value,)
                ),
                paid_out - already_marked,
            )
            marked = tx.mark_earnings_withdrawn([e.id for e in selected], now)

        self._log_committed(log)
        log_settlement(
            "withdrawal_completed",
            freelancer_id,
            withdrawal.amount,
            net=withdrawal.net_amount,
            earnings_marked=marked,
            ref=transaction_ref,
        )
        return OperationResult(withdrawal, self._notify_processed(withdrawal))

    def reject_withdrawal(
        self,
        withdrawal_id: str,
        actor_id: str,
        reason: str,
        now: Optional[datetime] = None,
    ) -> OperationResult[Withdrawal]:
        """pending|processing -> rejected. The amount returns to the balance."""
        actor = user_actor(actor_id)
        if not reason or not reason.strip():
            raise InvalidInputError("A rejection reason is required")
        now = now or utc_now()
        log = []
        with self.store.transaction() as tx:
            withdrawal = self._move_withdrawal(
                tx, log, withdrawal_id,
                (WithdrawalStatus.PENDING.value, WithdrawalStatus.PROCESSING.value),
                WithdrawalStatus.REJECTED, actor, now,
                reason=reason.strip(), failure_reason=reason.strip(), processed_at=now,
            )
        self._log_committed(log)
        log_settlement(
            "withdrawal_rejected", withdrawal.freelancer_id, withdrawal.amount, reason=reason.strip()
        )
        return OperationResult(withdrawal, self._notify_processed(withdrawal))
