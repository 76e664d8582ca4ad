"""Milestone state machine.

Drives milestones along pending -> in_progress -> submitted -> approved, with
disputes out of in_progress or submitted. Approval (manual or automatic)
releases the milestone amount into the earnings ledger in the same
transaction as the status change, and completes the job once every
milestone is approved.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Union
from urllib.parse import urlparse

from gigsettle.commerce.actors import SYSTEM, Actor
from gigsettle.commerce.base import OperationResult, SettlementService, new_id, user_actor
from gigsettle.commerce.errors import (
    InvalidInputError,
    JobNotFoundError,
    MilestoneNotFoundError,
    UnauthorizedError,
)
from gigsettle.commerce.escrow.adapter import EscrowAdapter, ReleaseDescriptor
from gigsettle.commerce.jobs.models import JobPosting, JobStatus, TradeStatus
from gigsettle.commerce.ledger.models import Earning, EarningStatus, EarningType
from gigsettle.commerce.milestones.models import (
    AutoReleased,
    DisputeRaised,
    Milestone,
    MilestoneStatus,
    PendingRelease,
    milestone_sources,
)
from gigsettle.commerce.money import to_money
from gigsettle.commerce.notifications import Notification, NotificationEvent
from gigsettle.logging_config import log_settlement
from gigsettle.storage.base import DuplicateRecordError, ensure_utc, utc_now

logger = logging.getLogger(__name__)

# Job statuses in which the client may still add milestones
_EDITABLE_JOB_STATUSES = (JobStatus.OPEN.value, JobStatus.IN_PROGRESS.value)


@dataclass
class ApprovalResult:
    """Outcome of releasing one milestone."""

    milestone: Milestone
    job: JobPosting
    earnings: List[Earning] = field(default_factory=list)
    job_completed: bool = False
    warnings: List[str] = field(default_factory=list)

    @property
    def released_amount(self) -> Decimal:
        return sum((e.amount for e in self.earnings), Decimal("0"))


def _validate_submission_url(url: Optional[str]) -> str:
    if not url or not url.strip():
        raise InvalidInputError("A submission URL is required")
    url = url.strip()
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise InvalidInputError(f"Submission URL must be an http(s) URL: {url}")
    return url


class MilestoneService(SettlementService):
    """Milestone lifecycle, approval and release."""

    def __init__(
        self,
        store,
        config=None,
        escrow_adapter: Optional[EscrowAdapter] = None,
        notifier=None,
    ):
        super().__init__(store, config, notifier)
        self.escrow_adapter = escrow_adapter

    # === Lookups ===

    def _require_job(self, tx, job_id: str) -> JobPosting:
        job = tx.get_job(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        return job

    def _require_milestone(self, tx, job_id: str, milestone_id: str) -> Milestone:
        milestone = tx.get_milestone(milestone_id)
        if milestone is None or milestone.job_id != job_id:
            raise MilestoneNotFoundError(f"Milestone {milestone_id} not found on job {job_id}")
        return milestone

    def get_milestone(self, job_id: str, milestone_id: str) -> Milestone:
        with self.store.transaction(immediate=False) as tx:
            self._require_job(tx, job_id)
            return self._require_milestone(tx, job_id, milestone_id)

    def list_milestones(self, job_id: str) -> List[Milestone]:
        """Milestones of a job in sort order."""
        with self.store.transaction(immediate=False) as tx:
            self._require_job(tx, job_id)
            return tx.list_milestones(job_id)

    # === Management ===

    def add_milestone(
        self,
        job_id: str,
        actor_id: str,
        title: str,
        amount: Union[Decimal, str, int],
        due_date: datetime,
        description: str = "",
        sort_order: Optional[int] = None,
        auto_release_enabled: bool = True,
        now: Optional[datetime] = None,
    ) -> Milestone:
        """Add a milestone to an open or in-progress job (client only).

        ``sort_order`` defaults to one past the job's last milestone.
        """
        actor = user_actor(actor_id)
        now = now or utc_now()
        if not isinstance(due_date, datetime):
            raise InvalidInputError("due_date must be a datetime")
        log = []
        with self.store.transaction() as tx:
            job = self._require_job(tx, job_id)
            if actor_id != job.client_id:
                raise UnauthorizedError("Only the job's client can add milestones")
            if job.status not in _EDITABLE_JOB_STATUSES:
                raise self._conflict(
                    "job", job_id, _EDITABLE_JOB_STATUSES, job.status, "add milestone",
                    message=f"Cannot add milestones to a {job.status} job",
                )
            try:
                milestone = Milestone(
                    id=new_id(),
                    job_id=job_id,
                    title=title,
                    description=description or "",
                    amount=amount,
                    due_date=ensure_utc(due_date),
                    sort_order=tx.next_sort_order(job_id) if sort_order is None else sort_order,
                    auto_release_enabled=auto_release_enabled,
                    created_at=now,
                    updated_at=now,
                )
            except (TypeError, ValueError) as e:
                raise InvalidInputError(str(e)) from e
            try:
                tx.insert_milestone(milestone)
            except DuplicateRecordError as e:
                raise InvalidInputError(
                    f"sort_order {milestone.sort_order} is already used on this job"
                ) from e
            self._record(tx, log, "milestone", milestone.id, None, milestone.status, actor, now)

        self._log_committed(log)
        logger.info(
            f"Milestone added | job={job_id} | id={milestone.id} | order={milestone.sort_order}"
        )
        return milestone

    def remove_milestone(self, job_id: str, milestone_id: str, actor_id: str) -> None:
        """Delete a milestone that has not been started (client only)."""
        user_actor(actor_id)
        expected = (MilestoneStatus.PENDING.value,)
        with self.store.transaction() as tx:
            job = self._require_job(tx, job_id)
            if actor_id != job.client_id:
                raise UnauthorizedError("Only the job's client can remove milestones")
            milestone = self._require_milestone(tx, job_id, milestone_id)
            if not tx.delete_milestone(milestone_id, expected):
                raise self._conflict(
                    "milestone", milestone_id, expected, milestone.status, "deleted",
                    message=f"Only pending milestones can be removed (current status: {milestone.status})",
                )
        logger.info(f"Milestone removed | job={job_id} | id={milestone_id}")

    # === Freelancer transitions ===

    def start_milestone(
        self, job_id: str, milestone_id: str, actor_id: str, now: Optional[datetime] = None
    ) -> OperationResult[Milestone]:
        """pending -> in_progress. The previous milestone must be approved."""
        actor = user_actor(actor_id)
        now = now or utc_now()
        target = MilestoneStatus.IN_PROGRESS
        expected = milestone_sources(target)
        log = []
        with self.store.transaction() as tx:
            job = self._require_job(tx, job_id)
            if actor_id != job.freelancer_id:
                raise UnauthorizedError("Only the job's freelancer can start milestones")
            milestone = self._require_milestone(tx, job_id, milestone_id)
            previous = tx.get_previous_milestone(job_id, milestone.sort_order)
            if previous is not None and previous.status != MilestoneStatus.APPROVED.value:
                raise self._conflict(
                    "milestone", previous.id, (MilestoneStatus.APPROVED.value,), previous.status,
                    target.value,
                    message=f'Previous milestone "{previous.title}" must be approved first',
                )
            if not tx.update_milestone_status(
                milestone_id, expected, target.value, now=now, started_at=now
            ):
                raise self._conflict(
                    "milestone", milestone_id, expected, milestone.status, target.value
                )
            self._record(tx, log, "milestone", milestone_id, milestone.status, target.value, actor, now)
            milestone = tx.get_milestone(milestone_id)

        self._log_committed(log)
        warnings = self._notify(
            [
                Notification(
                    recipient_id=job.client_id,
                    event_type=NotificationEvent.MILESTONE_STARTED,
                    title="Milestone started",
                    message=f'Work has started on "{milestone.title}".',
                    data={"job_id": job_id, "milestone_id": milestone_id},
                )
            ]
        )
        return OperationResult(milestone, warnings)

    def submit_milestone(
        self,
        job_id: str,
        milestone_id: str,
        actor_id: str,
        submission_url: str,
        note: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> OperationResult[Milestone]:
        """in_progress -> submitted. Starts the auto-release grace period."""
        actor = user_actor(actor_id)
        submission_url = _validate_submission_url(submission_url)
        now = now or utc_now()
        target = MilestoneStatus.SUBMITTED
        expected = milestone_sources(target)
        log = []
        with self.store.transaction() as tx:
            job = self._require_job(tx, job_id)
            if actor_id != job.freelancer_id:
                raise UnauthorizedError("Only the job's freelancer can submit milestones")
            milestone = self._require_milestone(tx, job_id, milestone_id)
            if not tx.update_milestone_status(
                milestone_id,
                expected,
                target.value,
                now=now,
                submitted_at=now,
                submission_url=submission_url,
                submission_note=note,
            ):
                raise self._conflict(
                    "milestone", milestone_id, expected, milestone.status, target.value,
                    message=f"Milestone must be in progress before submission "
                    f"(current status: {milestone.status})",
                )
            self._record(tx, log, "milestone", milestone_id, milestone.status, target.value, actor, now)
            milestone = tx.get_milestone(milestone_id)

        self._log_committed(log)
        warnings = self._notify(
            [
                Notification(
                    recipient_id=job.client_id,
                    event_type=NotificationEvent.MILESTONE_SUBMITTED,
                    title="Milestone submitted for review",
                    message=f'"{milestone.title}" was submitted. It will be released automatically '
                    f"after {self.config.grace_period_hours} hours unless you respond.",
                    data={
                        "job_id": job_id,
                        "milestone_id": milestone_id,
                        "submission_url": submission_url,
                    },
                )
            ]
        )
        return OperationResult(milestone, warnings)

    # === Disputes ===

    def dispute_milestone(
        self,
        job_id: str,
        milestone_id: str,
        actor_id: str,
        reason: str,
        now: Optional[datetime] = None,
    ) -> OperationResult[Milestone]:
        """in_progress|submitted -> disputed. Either party may raise it."""
        actor = user_actor(actor_id)
        if not reason or not reason.strip():
            raise InvalidInputError("A dispute reason is required")
        reason = reason.strip()
        now = now or utc_now()
        target = MilestoneStatus.DISPUTED
        expected = milestone_sources(target)
        log = []
        with self.store.transaction() as tx:
            job = self._require_job(tx, job_id)
            if actor_id not in (job.client_id, job.freelancer_id):
                raise UnauthorizedError("Only the client or freelancer can dispute a milestone")
            milestone = self._require_milestone(tx, job_id, milestone_id)
            if not tx.update_milestone_status(
                milestone_id,
                expected,
                target.value,
                now=now,
                disputed_at=now,
                extension=DisputeRaised(reason=reason, raised_by=str(actor), raised_at=now),
            ):
                raise self._conflict(
                    "milestone", milestone_id, expected, milestone.status, target.value
                )
            self._record(
                tx, log, "milestone", milestone_id, milestone.status, target.value, actor, now,
                reason=reason,
            )
            milestone = tx.get_milestone(milestone_id)

        self._log_committed(log)
        other_party = job.freelancer_id if actor_id == job.client_id else job.client_id
        warnings = self._notify(
            [
                Notification(
                    recipient_id=other_party,
                    event_type=NotificationEvent.MILESTONE_DISPUTED,
                    title="Milestone disputed",
                    message=f'A dispute was raised on "{milestone.title}": {reason}',
                    data={"job_id": job_id, "milestone_id": milestone_id, "reason": reason},
                )
            ]
        )
        return OperationResult(milestone, warnings)

    # === Release ===

    def _release_descriptor(self, job_id: str, warnings: List[str]) -> Optional[ReleaseDescriptor]:
        """Ask the escrow adapter for the release call. Never raises."""
        if self.escrow_adapter is None:
            return None
        with self.store.transaction(immediate=False) as tx:
            trade = tx.get_trade_for_job(job_id)
        if trade is None or not trade.has_escrow:
            return None
        try:
            return self.escrow_adapter.get_release_descriptor(trade.escrow_id)
        except Exception as e:
            logger.warning(f"Escrow adapter failed for job {job_id} escrow {trade.escrow_id}: {e}")
            warnings.append("on-chain release descriptor could not be prepared")
            return None

    def _release(
        self,
        tx,
        log: list,
        job: JobPosting,
        milestone: Milestone,
        actor: Actor,
        now: datetime,
        descriptor: Optional[ReleaseDescriptor],
        feedback: Optional[str] = None,
        tip: Decimal = Decimal("0"),
        auto: bool = False,
    ) -> Optional[ApprovalResult]:
        """Approve a submitted milestone and credit the freelancer.

        Returns None if the milestone was no longer submitted.
        """
        extension = PendingRelease(descriptor, now) if descriptor else None
        if auto:
            extension = AutoReleased(released_at=now, pending_release=extension)

        expected = milestone_sources(MilestoneStatus.APPROVED)
        if not tx.update_milestone_status(
            milestone.id,
            expected,
            MilestoneStatus.APPROVED.value,
            now=now,
            approved_at=now,
            feedback=feedback,
            extension=extension,
        ):
            return None
        self._record(
            tx, log, "milestone", milestone.id, milestone.status, MilestoneStatus.APPROVED.value,
            actor, now, reason="auto-release after grace period" if auto else None,
        )

        earnings = [
            Earning(
                id=new_id(),
                freelancer_id=job.freelancer_id,
                amount=milestone.amount,
                type=EarningType.MILESTONE.value,
                status=EarningStatus.COMPLETED.value,
                job_id=job.id,
                milestone_id=milestone.id,
                description=f"Milestone: {milestone.title}",
                created_at=now,
            )
        ]
        if tip > 0:
            earnings.append(
                Earning(
                    id=new_id(),
                    freelancer_id=job.freelancer_id,
                    amount=tip,
                    type=EarningType.TIP.value,
                    status=EarningStatus.COMPLETED.value,
                    job_id=job.id,
                    milestone_id=milestone.id,
                    description=f"Tip for: {milestone.title}",
                    created_at=now,
                )
            )
        for earning in earnings:
            tx.insert_earning(earning)

        job_completed = False
        if tx.count_unapproved_milestones(job.id) == 0:
            job_expected = (JobStatus.IN_PROGRESS.value,)
            if tx.update_job_status(
                job.id, job_expected, JobStatus.COMPLETED.value, now=now, completed_at=now
            ):
                job_completed = True
                self._record(
                    tx, log, "job", job.id, job.status, JobStatus.COMPLETED.value, actor, now,
                    reason="all milestones approved",
                )
                trade = tx.get_trade_for_job(job.id)
                if trade is not None and tx.update_trade_status(
                    trade.id,
                    (TradeStatus.ACTIVE.value,),
                    TradeStatus.COMPLETED.value,
                    now=now,
                    completed_at=now,
                ):
                    self._record(
                        tx, log, "trade", trade.id, trade.status, TradeStatus.COMPLETED.value,
                        actor, now,
                    )
            else:
                logger.warning(f"Job {job.id} not in progress; leaving status {job.status}")

        return ApprovalResult(
            milestone=tx.get_milestone(milestone.id),
            job=tx.get_job(job.id),
            earnings=earnings,
            job_completed=job_completed,
        )

    def _after_release(self, result: ApprovalResult, log: list, auto: bool) -> ApprovalResult:
        """Post-commit logging and notifications."""
        self._log_committed(log)
        milestone, job = result.milestone, result.job
        for earning in result.earnings:
            log_settlement(
                f"earning_{earning.type}",
                earning.freelancer_id,
                earning.amount,
                job=job.id,
                milestone=milestone.id,
                auto=auto or None,
            )

        data = {
            "job_id": job.id,
            "milestone_id": milestone.id,
            "amount": str(milestone.amount),
            "tip": str(result.released_amount - milestone.amount),
        }
        if auto:
            data["due_date"] = milestone.due_date.isoformat()
            notifications = [
                Notification(
                    recipient_id=recipient,
                    event_type=NotificationEvent.MILESTONE_AUTO_RELEASED,
                    title="Milestone payment auto-released",
                    message=f'"{milestone.title}" was approved automatically after the '
                    f"{self.config.grace_period_hours}-hour review period.",
                    data=data,
                )
                for recipient in (job.freelancer_id, job.client_id)
            ]
        else:
            notifications = [
                Notification(
                    recipient_id=job.freelancer_id,
                    event_type=NotificationEvent.MILESTONE_APPROVED,
                    title="Milestone approved",
                    message=f'"{milestone.title}" was approved and {result.released_amount} '
                    f"{job.currency} was released.",
                    data=data,
                )
            ]
        if result.job_completed:
            notifications.extend(
                Notification(
                    recipient_id=recipient,
                    event_type=NotificationEvent.JOB_COMPLETED,
                    title="Job completed",
                    message=f'All milestones of "{job.title}" are approved.',
                    data={"job_id": job.id},
                )
                for recipient in (job.client_id, job.freelancer_id)
            )
        result.warnings.extend(self._notify(notifications))
        return result

    def approve_milestone(
        self,
        job_id: str,
        milestone_id: str,
        actor_id: str,
        feedback: Optional[str] = None,
        tip_amount: Union[Decimal, str, int, None] = None,
        now: Optional[datetime] = None,
    ) -> ApprovalResult:
        """Client approval of a submitted milestone.

        In one transaction: milestone -> approved, a milestone earning, an
        optional tip earning, the pending on-chain release (best effort), and
        job completion when this was the last milestone.
        """
        actor = user_actor(actor_id)
        try:
            tip = to_money(tip_amount) if tip_amount is not None else Decimal("0")
        except ValueError as e:
            raise InvalidInputError(str(e)) from e
        if tip < 0:
            raise InvalidInputError("Tip amount cannot be negative")
        now = now or utc_now()

        warnings: List[str] = []
        descriptor = self._release_descriptor(job_id, warnings)
        expected = milestone_sources(MilestoneStatus.APPROVED)
        log = []
        with self.store.transaction() as tx:
            job = self._require_job(tx, job_id)
            if actor_id != job.client_id:
                raise UnauthorizedError("Only the job's client can approve milestones")
            milestone = self._require_milestone(tx, job_id, milestone_id)
            result = self._release(
                tx, log, job, milestone, actor, now, descriptor, feedback=feedback, tip=tip
            )
            if result is None:
                raise self._conflict(
                    "milestone", milestone_id, expected, milestone.status,
                    MilestoneStatus.APPROVED.value,
                    message=f"Milestone must be submitted before approval "
                    f"(current status: {milestone.status})",
                )

        result.warnings.extend(warnings)
        logger.info(
            f"Milestone approved | job={job_id} | id={milestone_id} | "
            f"released={result.released_amount} | job_completed={result.job_completed}"
        )
        return self._after_release(result, log, auto=False)

    def auto_release(
        self, milestone_id: str, now: Optional[datetime] = None, actor: Actor = SYSTEM
    ) -> Optional[ApprovalResult]:
        """Release a milestone whose grace period has elapsed.

        Returns None if the milestone is no longer eligible, including when a
        concurrent approval or sweep got there first.
        """
        now = now or utc_now()
        cutoff = now - self.config.grace_period

        with self.store.transaction(immediate=False) as tx:
            milestone = tx.get_milestone(milestone_id)
        if milestone is None:
            raise MilestoneNotFoundError(f"Milestone {milestone_id} not found")

        warnings: List[str] = []
        descriptor = self._release_descriptor(milestone.job_id, warnings)
        log = []
        with self.store.transaction() as tx:
            milestone = tx.get_milestone(milestone_id)
            if (
                milestone is None
                or milestone.status != MilestoneStatus.SUBMITTED.value
                or not milestone.auto_release_enabled
                or milestone.submitted_at is None
                or milestone.submitted_at > cutoff
            ):
                return None
            job = self._require_job(tx, milestone.job_id)
            result = self._release(tx, log, job, milestone, actor, now, descriptor, auto=True)
            if result is None:
                return None

        result.warnings.extend(warnings)
        logger.info(
            f"Milestone auto-released | job={job.id} | id={milestone_id} | amount={milestone.amount}"
        )
        return self._after_release(result, log, auto=True)
