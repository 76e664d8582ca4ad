"""Tests for the milestone service: lifecycle, approval and release."""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from gigsettle.commerce.actors import SYSTEM
from gigsettle.commerce.engine import SettlementEngine
from gigsettle.commerce.errors import (
    InvalidInputError,
    InvalidTransitionError,
    JobNotFoundError,
    MilestoneNotFoundError,
    UnauthorizedError,
)
from gigsettle.commerce.escrow.adapter import EscrowAdapterError
from gigsettle.commerce.notifications import NotificationEvent


@pytest.fixture
def service(engine):
    return engine.milestones


def start_and_submit(service, job, milestone, now):
    service.start_milestone(job.id, milestone.id, job.freelancer_id, now=now)
    return service.submit_milestone(
        job.id, milestone.id, job.freelancer_id, "https://example.com/work", note="Done", now=now
    ).value


class TestAddMilestone:
    """Tests for adding and removing milestones."""

    def test_sort_order_defaults_to_next(self, engine, service, now):
        job = engine.jobs.post_job("client-1", "Site")
        first = service.add_milestone(job.id, "client-1", "Design", "100", now + timedelta(days=7))
        second = service.add_milestone(job.id, "client-1", "Build", "200", now + timedelta(days=14))

        assert (first.sort_order, second.sort_order) == (0, 1)
        assert [m.id for m in service.list_milestones(job.id)] == [first.id, second.id]

    def test_explicit_sort_order_conflict(self, engine, service, now):
        job = engine.jobs.post_job("client-1", "Site")
        service.add_milestone(job.id, "client-1", "Design", "100", now, sort_order=3)
        with pytest.raises(InvalidInputError, match="sort_order 3"):
            service.add_milestone(job.id, "client-1", "Build", "100", now, sort_order=3)

    def test_naive_due_date_is_utc(self, engine, service):
        job = engine.jobs.post_job("client-1", "Site")
        milestone = service.add_milestone(
            job.id, "client-1", "Design", "100", datetime(2026, 5, 1, 12, 0)
        )
        assert milestone.due_date.utcoffset() == timedelta(0)
        assert service.get_milestone(job.id, milestone.id).due_date == milestone.due_date

    def test_due_date_must_be_datetime(self, engine, service):
        job = engine.jobs.post_job("client-1", "Site")
        with pytest.raises(InvalidInputError, match="due_date"):
            service.add_milestone(job.id, "client-1", "Design", "100", "2026-05-01")

    def test_invalid_amount(self, engine, service, now):
        job = engine.jobs.post_job("client-1", "Site")
        with pytest.raises(InvalidInputError):
            service.add_milestone(job.id, "client-1", "Design", "0", now)

    def test_oversized_amount(self, engine, service, now):
        job = engine.jobs.post_job("client-1", "Site")
        with pytest.raises(InvalidInputError, match="maximum"):
            service.add_milestone(job.id, "client-1", "Design", "1e30", now)

    def test_only_client_can_add(self, engine, service, now):
        job = engine.jobs.post_job("client-1", "Site")
        with pytest.raises(UnauthorizedError):
            service.add_milestone(job.id, "f-1", "Design", "100", now)

    def test_cannot_add_to_cancelled_job(self, engine, service, now):
        job = engine.jobs.post_job("client-1", "Site")
        engine.jobs.cancel_job(job.id, "client-1")
        with pytest.raises(InvalidTransitionError):
            service.add_milestone(job.id, "client-1", "Design", "100", now)

    def test_unknown_job(self, service, now):
        with pytest.raises(JobNotFoundError):
            service.add_milestone("missing", "client-1", "Design", "100", now)

    def test_remove_pending_milestone(self, make_assigned_job, service):
        job, (milestone,) = make_assigned_job()
        service.remove_milestone(job.id, milestone.id, "client-1")
        with pytest.raises(MilestoneNotFoundError):
            service.get_milestone(job.id, milestone.id)

    def test_cannot_remove_started_milestone(self, make_assigned_job, service):
        job, (milestone,) = make_assigned_job()
        service.start_milestone(job.id, milestone.id, "freelancer-1")
        with pytest.raises(InvalidTransitionError, match="Only pending milestones"):
            service.remove_milestone(job.id, milestone.id, "client-1")

    def test_milestone_of_other_job_not_found(self, make_assigned_job, service):
        job, _ = make_assigned_job()
        _, (foreign,) = make_assigned_job(client_id="client-2", freelancer_id="freelancer-2")
        with pytest.raises(MilestoneNotFoundError):
            service.get_milestone(job.id, foreign.id)


class TestFreelancerTransitions:
    """Tests for start and submit."""

    def test_start_and_submit(self, make_assigned_job, service, notifier, now):
        job, (milestone,) = make_assigned_job()
        notifier.clear()

        started = service.start_milestone(job.id, milestone.id, "freelancer-1", now=now).value
        assert started.status == "in_progress"
        assert started.started_at == now

        submitted = service.submit_milestone(
            job.id, milestone.id, "freelancer-1", " https://example.com/v1 ", note="v1", now=now
        ).value
        assert submitted.status == "submitted"
        assert submitted.submitted_at == now
        assert submitted.submission_url == "https://example.com/v1"
        assert submitted.submission_note == "v1"

        events = [n.event_type for n in notifier.sent]
        assert events == [NotificationEvent.MILESTONE_STARTED, NotificationEvent.MILESTONE_SUBMITTED]
        assert all(n.recipient_id == "client-1" for n in notifier.sent)

    def test_only_freelancer_can_start(self, make_assigned_job, service):
        job, (milestone,) = make_assigned_job()
        with pytest.raises(UnauthorizedError):
            service.start_milestone(job.id, milestone.id, "client-1")

    def test_cannot_start_on_unassigned_job(self, engine, service, now):
        job = engine.jobs.post_job("client-1", "Site")
        milestone = service.add_milestone(job.id, "client-1", "Design", "100", now)
        with pytest.raises(UnauthorizedError):
            service.start_milestone(job.id, milestone.id, "freelancer-1")

    def test_previous_milestone_must_be_approved(self, make_assigned_job, service, now):
        job, (first, second) = make_assigned_job(amounts=("100", "200"))
        with pytest.raises(InvalidTransitionError, match="must be approved first"):
            service.start_milestone(job.id, second.id, "freelancer-1")

        start_and_submit(service, job, first, now)
        service.approve_milestone(job.id, first.id, "client-1", now=now)
        assert service.start_milestone(job.id, second.id, "freelancer-1").value.status == "in_progress"

    def test_cannot_start_twice(self, make_assigned_job, service):
        job, (milestone,) = make_assigned_job()
        service.start_milestone(job.id, milestone.id, "freelancer-1")
        with pytest.raises(InvalidTransitionError):
            service.start_milestone(job.id, milestone.id, "freelancer-1")

    def test_submit_requires_in_progress(self, make_assigned_job, service):
        job, (milestone,) = make_assigned_job()
        with pytest.raises(InvalidTransitionError, match="must be in progress"):
            service.submit_milestone(job.id, milestone.id, "freelancer-1", "https://example.com")

    @pytest.mark.parametrize("url", ["", "   ", "ftp://example.com/x", "example.com/work", "https://"])
    def test_submit_rejects_bad_urls(self, make_assigned_job, service, url):
        job, (milestone,) = make_assigned_job()
        service.start_milestone(job.id, milestone.id, "freelancer-1")
        with pytest.raises(InvalidInputError):
            service.submit_milestone(job.id, milestone.id, "freelancer-1", url)
        assert service.get_milestone(job.id, milestone.id).status == "in_progress"


class TestApproval:
    """Tests for approving a submitted milestone."""

    def test_approve_records_earning(self, engine, make_submitted, notifier, now):
        job, milestone = make_submitted(amounts=("250",))
        notifier.clear()

        result = engine.milestones.approve_milestone(
            job.id, milestone.id, "client-1", feedback="Great work", now=now
        )

        assert result.milestone.status == "approved"
        assert result.milestone.approved_at == now
        assert result.milestone.feedback == "Great work"
        assert result.milestone.pending_release is None
        assert not result.milestone.auto_released
        assert result.released_amount == Decimal("250")
        (earning,) = result.earnings
        assert earning.type == "milestone"
        assert earning.freelancer_id == "freelancer-1"
        assert earning.milestone_id == milestone.id
        assert engine.ledger.available_balance("freelancer-1") == Decimal("250")

        approved = notifier.events(NotificationEvent.MILESTONE_APPROVED)
        assert [n.recipient_id for n in approved] == ["freelancer-1"]

    def test_approve_with_tip(self, engine, make_submitted, now):
        job, milestone = make_submitted(amounts=("100",))
        result = engine.milestones.approve_milestone(
            job.id, milestone.id, "client-1", tip_amount="15.5", now=now
        )

        assert sorted(e.type for e in result.earnings) == ["milestone", "tip"]
        assert result.released_amount == Decimal("115.5")
        tips = engine.ledger.list_earnings("freelancer-1", type="tip")
        assert [t.amount for t in tips] == [Decimal("15.5")]

    def test_tip_credits_milestone_plus_tip(self, engine, make_submitted, now):
        job, milestone = make_submitted(amounts=("100",))
        before = engine.ledger.available_balance("freelancer-1")

        engine.milestones.approve_milestone(
            job.id, milestone.id, "client-1", tip_amount="25", now=now
        )

        earnings = engine.ledger.list_earnings("freelancer-1")
        assert sorted((e.type, e.amount, e.status) for e in earnings) == [
            ("milestone", Decimal("100"), "completed"),
            ("tip", Decimal("25"), "completed"),
        ]
        assert engine.ledger.available_balance("freelancer-1") - before == Decimal("125")

    @pytest.mark.parametrize("tip", ["1e30", "0.0000001"])
    def test_malformed_tip_rejected_before_write(self, engine, make_submitted, tip):
        job, milestone = make_submitted()
        with pytest.raises(InvalidInputError):
            engine.milestones.approve_milestone(job.id, milestone.id, "client-1", tip_amount=tip)
        assert engine.milestones.get_milestone(job.id, milestone.id).status == "submitted"

    def test_negative_tip_rejected_before_write(self, engine, make_submitted):
        job, milestone = make_submitted()
        with pytest.raises(InvalidInputError, match="Tip"):
            engine.milestones.approve_milestone(job.id, milestone.id, "client-1", tip_amount="-1")
        assert engine.milestones.get_milestone(job.id, milestone.id).status == "submitted"

    def test_last_approval_completes_job_and_trade(self, engine, make_assigned_job, notifier, now):
        job, (first, second) = make_assigned_job(amounts=("100", "200"))
        service = engine.milestones

        start_and_submit(service, job, first, now)
        result = service.approve_milestone(job.id, first.id, "client-1", now=now)
        assert not result.job_completed
        assert result.job.status == "in_progress"

        start_and_submit(service, job, second, now)
        notifier.clear()
        result = service.approve_milestone(job.id, second.id, "client-1", now=now)

        assert result.job_completed
        assert result.job.status == "completed"
        assert result.job.completed_at == now
        assert engine.jobs.get_trade(job.id).status == "completed"
        completed = notifier.events(NotificationEvent.JOB_COMPLETED)
        assert {n.recipient_id for n in completed} == {"client-1", "freelancer-1"}
        assert engine.ledger.available_balance("freelancer-1") == Decimal("300")

    def test_job_with_unfunded_trade_completes_without_trade(self, engine, make_submitted, now):
        job, milestone = make_submitted(escrow_id=None)
        result = engine.milestones.approve_milestone(job.id, milestone.id, "client-1", now=now)
        assert result.job_completed
        assert engine.jobs.get_trade(job.id).status == "pending_deposit"

    def test_only_client_can_approve(self, engine, make_submitted):
        job, milestone = make_submitted()
        with pytest.raises(UnauthorizedError):
            engine.milestones.approve_milestone(job.id, milestone.id, "freelancer-1")

    def test_second_approval_conflicts(self, engine, make_submitted):
        job, milestone = make_submitted()
        engine.milestones.approve_milestone(job.id, milestone.id, "client-1")

        with pytest.raises(InvalidTransitionError) as exc:
            engine.milestones.approve_milestone(job.id, milestone.id, "client-1")

        assert exc.value.current_status == "approved"
        assert len(engine.ledger.list_earnings("freelancer-1")) == 1

    def test_cannot_approve_before_submission(self, engine, make_assigned_job):
        job, (milestone,) = make_assigned_job()
        engine.milestones.start_milestone(job.id, milestone.id, "freelancer-1")
        with pytest.raises(InvalidTransitionError, match="must be submitted"):
            engine.milestones.approve_milestone(job.id, milestone.id, "client-1")
        assert engine.ledger.list_earnings("freelancer-1") == []

    def test_approval_transitions_are_audited(self, engine, make_submitted):
        job, milestone = make_submitted()
        engine.milestones.approve_milestone(job.id, milestone.id, "client-1")
        steps = [
            (t.from_status, t.to_status)
            for t in engine.jobs.get_transitions("milestone", milestone.id)
        ]
        assert steps == [
            (None, "pending"),
            ("pending", "in_progress"),
            ("in_progress", "submitted"),
            ("submitted", "approved"),
        ]


class TestEscrowRelease:
    """Tests for recording the on-chain release call."""

    def test_release_descriptor_recorded(self, escrow_engine, make_submitted, contract_address, now):
        job, milestone = make_submitted(on=escrow_engine, escrow_id=42)

        result = escrow_engine.milestones.approve_milestone(job.id, milestone.id, "client-1", now=now)

        descriptor = result.milestone.pending_release
        assert descriptor.contract_address == contract_address
        assert descriptor.function_name == "releaseMilestone"
        assert descriptor.arguments == (42,)
        assert descriptor.chain_id == 8453
        stored = escrow_engine.milestones.get_milestone(job.id, milestone.id)
        assert stored.pending_release == descriptor

    def test_no_descriptor_without_deposit(self, escrow_engine, make_submitted):
        job, milestone = make_submitted(on=escrow_engine, escrow_id=None)
        result = escrow_engine.milestones.approve_milestone(job.id, milestone.id, "client-1")
        assert result.milestone.pending_release is None
        assert result.warnings == []

    def test_adapter_failure_is_a_warning(self, store, notifier, make_submitted):
        class BrokenAdapter:
            def get_release_descriptor(self, escrow_id):
                raise EscrowAdapterError("rpc unavailable")

        engine = SettlementEngine(store, escrow_adapter=BrokenAdapter(), notifier=notifier)
        job, milestone = make_submitted(on=engine)

        result = engine.milestones.approve_milestone(job.id, milestone.id, "client-1")

        assert result.milestone.status == "approved"
        assert result.milestone.pending_release is None
        assert any("release descriptor" in w for w in result.warnings)
        assert len(result.earnings) == 1


class TestNotificationFailures:
    """Notification failures never undo a committed transition."""

    def test_approval_commits_when_notifier_fails(self, store, make_submitted, failing_notifier):
        engine = SettlementEngine(store, notifier=failing_notifier)
        job, milestone = make_submitted(on=engine)

        result = engine.milestones.approve_milestone(job.id, milestone.id, "client-1")

        assert result.milestone.status == "approved"
        assert result.warnings
        assert failing_notifier.attempts >= 1
        assert engine.ledger.available_balance("freelancer-1") == Decimal("100")


class TestDispute:
    """Tests for raising disputes."""

    def test_client_disputes_submission(self, engine, make_submitted, notifier, now):
        job, milestone = make_submitted()
        notifier.clear()

        result = engine.milestones.dispute_milestone(
            job.id, milestone.id, "client-1", "  Pages missing  ", now=now
        )

        assert result.value.status == "disputed"
        assert result.value.disputed_at == now
        assert result.value.dispute_reason == "Pages missing"
        assert result.value.extension.raised_by == "user:client-1"
        disputed = notifier.events(NotificationEvent.MILESTONE_DISPUTED)
        assert [n.recipient_id for n in disputed] == ["freelancer-1"]
        transition = engine.jobs.get_transitions("milestone", milestone.id)[-1]
        assert transition.reason == "Pages missing"

    def test_freelancer_disputes_in_progress(self, engine, make_assigned_job):
        job, (milestone,) = make_assigned_job()
        engine.milestones.start_milestone(job.id, milestone.id, "freelancer-1")
        result = engine.milestones.dispute_milestone(job.id, milestone.id, "freelancer-1", "Scope creep")
        assert result.value.status == "disputed"

    def test_reason_required(self, engine, make_submitted):
        job, milestone = make_submitted()
        with pytest.raises(InvalidInputError):
            engine.milestones.dispute_milestone(job.id, milestone.id, "client-1", " ")

    def test_stranger_cannot_dispute(self, engine, make_submitted):
        job, milestone = make_submitted()
        with pytest.raises(UnauthorizedError):
            engine.milestones.dispute_milestone(job.id, milestone.id, "someone", "Because")

    def test_cannot_dispute_pending_or_approved(self, engine, make_assigned_job, now):
        job, (milestone,) = make_assigned_job()
        with pytest.raises(InvalidTransitionError):
            engine.milestones.dispute_milestone(job.id, milestone.id, "client-1", "Too early")

        start_and_submit(engine.milestones, job, milestone, now)
        engine.milestones.approve_milestone(job.id, milestone.id, "client-1")
        with pytest.raises(InvalidTransitionError):
            engine.milestones.dispute_milestone(job.id, milestone.id, "client-1", "Too late")

    def test_disputed_milestone_is_not_approvable(self, engine, make_submitted):
        job, milestone = make_submitted()
        engine.milestones.dispute_milestone(job.id, milestone.id, "client-1", "Wrong files")
        with pytest.raises(InvalidTransitionError):
            engine.milestones.approve_milestone(job.id, milestone.id, "client-1")


class TestAutoRelease:
    """Tests for releasing a single milestone after the grace period."""

    def test_not_eligible_before_grace_period(self, engine, make_submitted, now):
        job, milestone = make_submitted()
        almost = now + timedelta(hours=71, minutes=59)
        assert engine.milestones.auto_release(milestone.id, now=almost) is None
        assert engine.milestones.get_milestone(job.id, milestone.id).status == "submitted"

    def test_released_after_grace_period(self, engine, make_submitted, notifier, now):
        job, milestone = make_submitted()
        notifier.clear()
        later = now + timedelta(hours=72)

        result = engine.milestones.auto_release(milestone.id, now=later)

        assert result.milestone.status == "approved"
        assert result.milestone.auto_released
        assert result.milestone.extension.released_at == later
        assert result.job_completed
        transition = engine.jobs.get_transitions("milestone", milestone.id)[-1]
        assert transition.actor == SYSTEM
        released = notifier.events(NotificationEvent.MILESTONE_AUTO_RELEASED)
        assert {n.recipient_id for n in released} == {"client-1", "freelancer-1"}
        assert all("due_date" in n.data for n in released)

    def test_auto_release_disabled(self, engine, make_submitted, now):
        job, milestone = make_submitted(auto_release=False)
        assert engine.milestones.auto_release(milestone.id, now=now + timedelta(days=30)) is None

    def test_already_approved_returns_none(self, engine, make_submitted, now):
        job, milestone = make_submitted()
        engine.milestones.approve_milestone(job.id, milestone.id, "client-1", now=now)
        assert engine.milestones.auto_release(milestone.id, now=now + timedelta(days=5)) is None
        assert len(engine.ledger.list_earnings("freelancer-1")) == 1

    def test_unknown_milestone(self, engine, now):
        with pytest.raises(MilestoneNotFoundError):
            engine.milestones.auto_release("missing", now=now)

    def test_auto_release_keeps_descriptor(self, escrow_engine, make_submitted, now):
        job, milestone = make_submitted(on=escrow_engine, escrow_id=9)
        result = escrow_engine.milestones.auto_release(milestone.id, now=now + timedelta(days=4))
        assert result.milestone.auto_released
        assert result.milestone.pending_release.arguments == (9,)
