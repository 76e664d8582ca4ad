"""Auto-release reconciliation sweep.

Invoked by an external scheduler. Each run:

1. selects submitted milestones with auto-release enabled whose grace period
   has elapsed, and releases each one in its own transaction;
2. emits an overdue notice for every pending or in-progress milestone on an
   assigned job whose due date has been reached (no state change). Every
   such milestone is noticed on every run; the release batch size does not
   apply.

Idempotence comes from the selection predicate plus the conditional update:
a milestone already approved no longer matches ``status = 'submitted'``, so
re-running the sweep, or running two sweeps at once, releases it once.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from gigsettle.commerce.actors import SYSTEM, Actor
from gigsettle.commerce.milestones.service import MilestoneService
from gigsettle.commerce.notifications import Notification, NotificationEvent, dispatch_all
from gigsettle.storage.base import utc_now

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    """What one sweep did."""

    checked_at: datetime
    released: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    overdue_notified: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def released_count(self) -> int:
        return len(self.released)


@dataclass
class AutoReleaseStatus:
    """Monitoring snapshot."""

    checked_at: datetime
    pending_auto_release: int
    overdue_milestones: int


class AutoReleaseReconciler:
    """Releases milestones the client did not review within the grace period."""

    def __init__(self, milestones: MilestoneService, batch_size: int = 500):
        self.milestones = milestones
        self.store = milestones.store
        self.config = milestones.config
        self.batch_size = batch_size

    def run(self, now: Optional[datetime] = None, actor: Actor = SYSTEM) -> SweepResult:
        """Run one sweep. Per-milestone failures are recorded, not raised."""
        now = now or utc_now()
        cutoff = now - self.config.grace_period
        result = SweepResult(checked_at=now)

        with self.store.transaction(immediate=False) as tx:
            candidates = tx.list_auto_release_candidates(cutoff, limit=self.batch_size)
            overdue = tx.list_overdue_milestones(now)
            jobs = {m.job_id: tx.get_job(m.job_id) for m in overdue}

        logger.info(
            f"Auto-release sweep | cutoff={cutoff.isoformat()} | candidates={len(candidates)} "
            f"| overdue={len(overdue)}"
        )

        for milestone in candidates:
            try:
                released = self.milestones.auto_release(milestone.id, now=now, actor=actor)
            except Exception as e:
                logger.error(f"Auto-release failed for milestone {milestone.id}: {e}")
                result.errors.append(f"{milestone.id}: {e}")
                continue
            if released is None:
                result.skipped.append(milestone.id)
                continue
            result.released.append(milestone.id)
            result.warnings.extend(released.warnings)

        for milestone in overdue:
            job = jobs.get(milestone.job_id)
            if job is None or not job.freelancer_id:
                continue
            warnings = dispatch_all(
                self.milestones.notifier,
                [
                    Notification(
                        recipient_id=job.freelancer_id,
                        event_type=NotificationEvent.MILESTONE_OVERDUE,
                        title="Milestone overdue",
                        message=f'"{milestone.title}" was due {milestone.due_date.date().isoformat()}.',
                        data={
                            "job_id": job.id,
                            "milestone_id": milestone.id,
                            "due_date": milestone.due_date.isoformat(),
                            "status": milestone.status,
                        },
                    )
                ],
            )
            result.warnings.extend(warnings)
            if not warnings:
                result.overdue_notified.append(milestone.id)

        logger.info(
            f"Auto-release sweep complete | released={len(result.released)} "
            f"| skipped={len(result.skipped)} | overdue_notified={len(result.overdue_notified)} "
            f"| errors={len(result.errors)}"
        )
        return result

    def status(self, now: Optional[datetime] = None) -> AutoReleaseStatus:
        """Count milestones eligible for release and overdue milestones."""
        now = now or utc_now()
        cutoff = now - self.config.grace_period
        with self.store.transaction(immediate=False) as tx:
            pending = len(tx.list_auto_release_candidates(cutoff, limit=-1))
            overdue = len(tx.list_overdue_milestones(now))
        return AutoReleaseStatus(
            checked_at=now, pending_auto_release=pending, overdue_milestones=overdue
        )
