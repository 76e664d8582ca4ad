"""Job and bid registry.

Owns job postings, bids and the trade (escrow pointer) created when a bid is
accepted. Every status change is a conditional update on the expected source
status; a zero-row update becomes an InvalidTransitionError and rolls the
transaction back.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Union

from gigsettle.commerce.actors import SYSTEM, Actor
from gigsettle.commerce.base import (
    OperationResult,
    SettlementService,
    new_id,
    user_actor,
)
from gigsettle.commerce.errors import (
    BidNotFoundError,
    DuplicateBidError,
    InvalidInputError,
    JobNotFoundError,
    TradeNotFoundError,
    UnauthorizedError,
)
from gigsettle.commerce.jobs.models import (
    LIVE_BID_STATUSES,
    VALID_BID_TRANSITIONS,
    VALID_JOB_TRANSITIONS,
    VALID_TRADE_TRANSITIONS,
    Bid,
    BidStatus,
    JobPosting,
    JobStatus,
    Trade,
    TradeStatus,
    sources_for,
)
from gigsettle.commerce.notifications import Notification, NotificationEvent
from gigsettle.storage.base import DuplicateRecordError, utc_now

logger = logging.getLogger(__name__)

DEPOSIT_EXPIRED_REASON = "Payment window expired"


@dataclass
class AcceptanceResult:
    """Outcome of accepting a bid."""

    job: JobPosting
    bid: Bid
    trade: Trade
    rejected_bid_ids: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


@dataclass
class TradeExpiryResult:
    """Outcome of one unfunded-trade sweep."""

    expired: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


class JobService(SettlementService):
    """Job postings, bids, acceptance and escrow deposit tracking."""

    # === Lookups ===

    def _require_job(self, tx, job_id: str) -> JobPosting:
        job = tx.get_job(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        return job

    def _require_bid(self, tx, job_id: str, bid_id: str) -> Bid:
        bid = tx.get_bid(bid_id)
        if bid is None or bid.job_id != job_id:
            raise BidNotFoundError(f"Bid {bid_id} not found on job {job_id}")
        return bid

    def _require_client(self, job: JobPosting, actor_id: str, action: str) -> None:
        if actor_id != job.client_id:
            raise UnauthorizedError(f"Only the job's client can {action}")

    def get_job(self, job_id: str) -> JobPosting:
        with self.store.transaction(immediate=False) as tx:
            return self._require_job(tx, job_id)

    def list_jobs(
        self,
        status: Optional[str] = None,
        client_id: Optional[str] = None,
        freelancer_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[JobPosting]:
        with self.store.transaction(immediate=False) as tx:
            return tx.list_jobs(
                status=status,
                client_id=client_id,
                freelancer_id=freelancer_id,
                limit=limit,
                offset=offset,
            )

    def get_bid(self, job_id: str, bid_id: str) -> Bid:
        with self.store.transaction(immediate=False) as tx:
            return self._require_bid(tx, job_id, bid_id)

    def list_bids(self, job_id: str, statuses: Optional[List[str]] = None) -> List[Bid]:
        with self.store.transaction(immediate=False) as tx:
            self._require_job(tx, job_id)
            return tx.list_bids(job_id=job_id, statuses=statuses)

    def get_trade(self, job_id: str) -> Trade:
        with self.store.transaction(immediate=False) as tx:
            self._require_job(tx, job_id)
            trade = tx.get_trade_for_job(job_id)
        if trade is None:
            raise TradeNotFoundError(f"No trade for job {job_id}")
        return trade

    def get_transitions(self, entity_type: str, entity_id: str) -> list:
        with self.store.transaction(immediate=False) as tx:
            return tx.list_transitions(entity_type=entity_type, entity_id=entity_id)

    # === Jobs ===

    def post_job(
        self,
        client_id: str,
        title: str,
        description: str = "",
        currency: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> JobPosting:
        """Create an open job posting."""
        actor = user_actor(client_id)
        now = now or utc_now()
        try:
            job = JobPosting(
                id=new_id(),
                client_id=client_id,
                title=title,
                description=description or "",
                currency=(currency or self.config.default_currency).upper(),
                created_at=now,
                updated_at=now,
            )
        except ValueError as e:
            raise InvalidInputError(str(e)) from e

        log = []
        with self.store.transaction() as tx:
            tx.insert_job(job)
            self._record(tx, log, "job", job.id, None, job.status, actor, now)
        self._log_committed(log)
        logger.info(f"Job posted | id={job.id} | client={client_id}")
        return job

    def cancel_job(
        self, job_id: str, actor_id: str, now: Optional[datetime] = None
    ) -> OperationResult[JobPosting]:
        """Cancel an open job and reject its live bids."""
        actor = user_actor(actor_id)
        now = now or utc_now()
        target = JobStatus.CANCELLED
        expected = sources_for(VALID_JOB_TRANSITIONS, target)
        log = []
        with self.store.transaction() as tx:
            job = self._require_job(tx, job_id)
            self._require_client(job, actor_id, "cancel it")
            if not tx.update_job_status(job_id, expected, target.value, now=now, cancelled_at=now):
                raise self._conflict("job", job_id, expected, job.status, target.value)
            self._record(tx, log, "job", job_id, job.status, target.value, actor, now)
            live_bids = tx.list_bids(job_id=job_id, statuses=LIVE_BID_STATUSES)
            tx.reject_bids(job_id, LIVE_BID_STATUSES, now)
            for bid in live_bids:
                self._record(
                    tx, log, "bid", bid.id, bid.status, BidStatus.REJECTED.value, actor, now,
                    reason="job cancelled",
                )
            job = tx.get_job(job_id)

        self._log_committed(log)
        logger.info(f"Job cancelled | id={job_id} | rejected_bids={len(live_bids)}")
        warnings = self._notify(
            Notification(
                recipient_id=bid.freelancer_id,
                event_type=NotificationEvent.JOB_CANCELLED,
                title="Job cancelled",
                message=f'The job "{job.title}" was cancelled by the client.',
                data={"job_id": job_id, "bid_id": bid.id},
            )
            for bid in live_bids
        )
        return OperationResult(job, warnings)

    # === Bids ===

    def submit_bid(
        self,
        job_id: str,
        freelancer_id: str,
        amount: Union[Decimal, str, int],
        delivery_days: int,
        proposal: str = "",
        now: Optional[datetime] = None,
    ) -> OperationResult[Bid]:
        """Place a pending bid on an open job."""
        actor = user_actor(freelancer_id)
        now = now or utc_now()
        try:
            bid = Bid(
                id=new_id(),
                job_id=job_id,
                freelancer_id=freelancer_id,
                amount=amount,
                delivery_days=delivery_days,
                proposal=proposal or "",
                created_at=now,
                updated_at=now,
            )
        except (TypeError, ValueError) as e:
            raise InvalidInputError(str(e)) from e

        log = []
        with self.store.transaction() as tx:
            job = self._require_job(tx, job_id)
            if job.client_id == freelancer_id:
                raise UnauthorizedError("Cannot bid on your own job")
            if not job.is_open:
                raise self._conflict(
                    "job", job_id, (JobStatus.OPEN.value,), job.status, "bid",
                    message=f"Job is not accepting bids (current status: {job.status})",
                )
            try:
                tx.insert_bid(bid)
            except DuplicateRecordError as e:
                raise DuplicateBidError(
                    "You have already placed a bid on this job",
                    entity_type="bid",
                    entity_id=job_id,
                ) from e
            tx.increment_bid_count(job_id)
            self._record(tx, log, "bid", bid.id, None, bid.status, actor, now)

        self._log_committed(log)
        logger.info(f"Bid submitted | job={job_id} | freelancer={freelancer_id} | amount={bid.amount}")
        warnings = self._notify(
            [
                Notification(
                    recipient_id=job.client_id,
                    event_type=NotificationEvent.BID_RECEIVED,
                    title="New bid received",
                    message=f'A freelancer bid {bid.amount} {job.currency} on "{job.title}".',
                    data={"job_id": job_id, "bid_id": bid.id, "amount": str(bid.amount)},
                )
            ]
        )
        return OperationResult(bid, warnings)

    def _move_bid(
        self,
        job_id: str,
        bid_id: str,
        actor_id: str,
        target: BidStatus,
        now: Optional[datetime],
        require_open_job: bool = False,
    ) -> OperationResult[Bid]:
        """Shared path for withdraw, shortlist and reject."""
        actor = user_actor(actor_id)
        now = now or utc_now()
        expected = sources_for(VALID_BID_TRANSITIONS, target)
        stamp_column = f"{target.value}_at"
        log = []
        with self.store.transaction() as tx:
            job = self._require_job(tx, job_id)
            bid = self._require_bid(tx, job_id, bid_id)
            if target == BidStatus.WITHDRAWN:
                if actor_id != bid.freelancer_id:
                    raise UnauthorizedError("Only the bidder can withdraw a bid")
            else:
                self._require_client(job, actor_id, f"change bids to {target.value}")
            if require_open_job and not job.is_open:
                raise self._conflict(
                    "job", job_id, (JobStatus.OPEN.value,), job.status, target.value,
                    message=f"Job is no longer open (current status: {job.status})",
                )
            fields = {stamp_column: now}
            if not tx.update_bid_status(bid_id, expected, target.value, now=now, **fields):
                raise self._conflict("bid", bid_id, expected, bid.status, target.value)
            if target == BidStatus.WITHDRAWN:
                tx.decrement_bid_count(job_id)
            self._record(tx, log, "bid", bid_id, bid.status, target.value, actor, now)
            updated = tx.get_bid(bid_id)

        self._log_committed(log)
        recipient = job.client_id if target == BidStatus.WITHDRAWN else bid.freelancer_id
        warnings = self._notify(
            [
                Notification(
                    recipient_id=recipient,
                    event_type=NotificationEvent.BID_STATUS_UPDATE,
                    title=f"Bid {target.value}",
                    message=f'A bid on "{job.title}" was {target.value}.',
                    data={"job_id": job_id, "bid_id": bid_id, "status": target.value},
                )
            ]
        )
        return OperationResult(updated, warnings)

    def withdraw_bid(
        self, job_id: str, bid_id: str, actor_id: str, now: Optional[datetime] = None
    ) -> OperationResult[Bid]:
        """Withdraw one's own pending bid. Decrements the job's bid counter."""
        return self._move_bid(job_id, bid_id, actor_id, BidStatus.WITHDRAWN, now)

    def shortlist_bid(
        self, job_id: str, bid_id: str, actor_id: str, now: Optional[datetime] = None
    ) -> OperationResult[Bid]:
        return self._move_bid(
            job_id, bid_id, actor_id, BidStatus.SHORTLISTED, now, require_open_job=True
        )

    def reject_bid(
        self, job_id: str, bid_id: str, actor_id: str, now: Optional[datetime] = None
    ) -> OperationResult[Bid]:
        return self._move_bid(job_id, bid_id, actor_id, BidStatus.REJECTED, now)

    # === Acceptance ===

    def accept_bid(
        self, job_id: str, bid_id: str, actor_id: str, now: Optional[datetime] = None
    ) -> AcceptanceResult:
        """Accept a bid, atomically.

        In one transaction:
        1. job open -> in_progress with the bidder as freelancer
        2. bid pending|shortlisted -> accepted
        3. every other pending or shortlisted bid -> rejected
        4. a Trade in pending_deposit with the deposit deadline

        A second call fails on step 1 with a state conflict, so step 3 never
        re-fires.
        """
        actor = user_actor(actor_id)
        now = now or utc_now()
        job_expected = sources_for(VALID_JOB_TRANSITIONS, JobStatus.IN_PROGRESS)
        bid_expected = sources_for(VALID_BID_TRANSITIONS, BidStatus.ACCEPTED)
        log = []
        with self.store.transaction() as tx:
            job = self._require_job(tx, job_id)
            self._require_client(job, actor_id, "accept bids")
            bid = self._require_bid(tx, job_id, bid_id)

            if not tx.update_job_status(
                job_id,
                job_expected,
                JobStatus.IN_PROGRESS.value,
                now=now,
                freelancer_id=bid.freelancer_id,
            ):
                raise self._conflict(
                    "job", job_id, job_expected, job.status, JobStatus.IN_PROGRESS.value,
                    message=f"Job is not open for acceptance (current status: {job.status})",
                )
            if not tx.update_bid_status(
                bid_id, bid_expected, BidStatus.ACCEPTED.value, now=now, accepted_at=now
            ):
                raise self._conflict(
                    "bid", bid_id, bid_expected, bid.status, BidStatus.ACCEPTED.value
                )
            losing_bids = [
                b
                for b in tx.list_bids(job_id=job_id, statuses=LIVE_BID_STATUSES)
                if b.id != bid_id
            ]
            rejected_ids = tx.reject_bids(job_id, LIVE_BID_STATUSES, now, exclude_bid_id=bid_id)

            trade = Trade(
                id=new_id(),
                job_id=job_id,
                bid_id=bid_id,
                buyer_id=job.client_id,
                seller_id=bid.freelancer_id,
                amount=bid.amount,
                currency=job.currency,
                chain_id=self.config.chain_id,
                deposit_deadline=now + self.config.deposit_window,
                created_at=now,
            )
            tx.insert_trade(trade)

            self._record(
                tx, log, "job", job_id, job.status, JobStatus.IN_PROGRESS.value, actor, now
            )
            self._record(
                tx, log, "bid", bid_id, bid.status, BidStatus.ACCEPTED.value, actor, now
            )
            for other in losing_bids:
                self._record(
                    tx, log, "bid", other.id, other.status, BidStatus.REJECTED.value, actor, now,
                    reason="another bid was accepted",
                )
            self._record(tx, log, "trade", trade.id, None, trade.status, actor, now)

            job = tx.get_job(job_id)
            bid = tx.get_bid(bid_id)

        self._log_committed(log)
        logger.info(
            f"Bid accepted | job={job_id} | bid={bid_id} | freelancer={bid.freelancer_id} "
            f"| rejected={len(rejected_ids)}"
        )

        notifications = [
            Notification(
                recipient_id=bid.freelancer_id,
                event_type=NotificationEvent.BID_STATUS_UPDATE,
                title="Bid accepted",
                message=f'Your bid on "{job.title}" was accepted.',
                data={
                    "job_id": job_id,
                    "bid_id": bid_id,
                    "trade_id": trade.id,
                    "status": BidStatus.ACCEPTED.value,
                },
            )
        ]
        notifications.extend(
            Notification(
                recipient_id=other.freelancer_id,
                event_type=NotificationEvent.BID_STATUS_UPDATE,
                title="Bid not selected",
                message=f'Another bid was accepted for "{job.title}".',
                data={"job_id": job_id, "bid_id": other.id, "status": BidStatus.REJECTED.value},
            )
            for other in losing_bids
        )
        warnings = self._notify(notifications)
        return AcceptanceResult(
            job=job, bid=bid, trade=trade, rejected_bid_ids=rejected_ids, warnings=warnings
        )

    # === Escrow deposit ===

    def record_deposit(
        self, job_id: str, actor_id: str, escrow_id: int, now: Optional[datetime] = None
    ) -> OperationResult[Trade]:
        """Record the on-chain escrow id once the client has funded it."""
        actor = user_actor(actor_id)
        if isinstance(escrow_id, bool) or not isinstance(escrow_id, int) or escrow_id < 0:
            raise InvalidInputError(f"Invalid escrow id: {escrow_id!r}")
        now = now or utc_now()
        target = TradeStatus.ACTIVE
        expected = sources_for(VALID_TRADE_TRANSITIONS, target)
        log = []
        with self.store.transaction() as tx:
            job = self._require_job(tx, job_id)
            self._require_client(job, actor_id, "record the escrow deposit")
            trade = tx.get_trade_for_job(job_id)
            if trade is None:
                raise TradeNotFoundError(f"No trade for job {job_id}")
            if not tx.update_trade_status(
                trade.id, expected, target.value, now=now, escrow_id=escrow_id, deposited_at=now
            ):
                raise self._conflict("trade", trade.id, expected, trade.status, target.value)
            self._record(tx, log, "trade", trade.id, trade.status, target.value, actor, now)
            trade = tx.get_trade(trade.id)

        self._log_committed(log)
        logger.info(f"Escrow funded | job={job_id} | trade={trade.id} | escrow={escrow_id}")
        warnings = self._notify(
            [
                Notification(
                    recipient_id=trade.seller_id,
                    event_type=NotificationEvent.ESCROW_FUNDED,
                    title="Escrow funded",
                    message=f'Payment for "{job.title}" is now held in escrow.',
                    data={"job_id": job_id, "trade_id": trade.id, "escrow_id": escrow_id},
                )
            ]
        )
        return OperationResult(trade, warnings)

    def expire_unfunded_trades(
        self, now: Optional[datetime] = None, actor: Actor = SYSTEM
    ) -> TradeExpiryResult:
        """Cancel trades still awaiting deposit after their deadline.

        Each trade is expired in its own transaction; a failure on one does
        not stop the others.
        """
        now = now or utc_now()
        result = TradeExpiryResult()
        target = TradeStatus.CANCELLED
        expected = (TradeStatus.PENDING_DEPOSIT.value,)

        with self.store.transaction(immediate=False) as tx:
            candidates = tx.list_expired_trades(now)

        for trade in candidates:
            log = []
            try:
                with self.store.transaction() as tx:
                    if not tx.update_trade_status(
                        trade.id,
                        expected,
                        target.value,
                        now=now,
                        cancelled_at=now,
                        cancellation_reason=DEPOSIT_EXPIRED_REASON,
                    ):
                        result.skipped.append(trade.id)
                        continue
                    self._record(
                        tx, log, "trade", trade.id, trade.status, target.value, actor, now,
                        reason=DEPOSIT_EXPIRED_REASON,
                    )
            except Exception as e:
                logger.error(f"Failed to expire trade {trade.id}: {e}")
                result.errors.append(f"{trade.id}: {e}")
                continue

            self._log_committed(log)
            result.expired.append(trade.id)
            result.warnings.extend(
                self._notify(
                    Notification(
                        recipient_id=recipient,
                        event_type=NotificationEvent.TRADE_EXPIRED,
                        title="Trade cancelled",
                        message=f"{DEPOSIT_EXPIRED_REASON}. The escrow deposit was not received in time.",
                        data={"job_id": trade.job_id, "trade_id": trade.id},
                    )
                    for recipient in (trade.buyer_id, trade.seller_id)
                )
            )

        logger.info(
            f"Trade expiry sweep | expired={len(result.expired)} | skipped={len(result.skipped)} "
            f"| errors={len(result.errors)}"
        )
        return result
