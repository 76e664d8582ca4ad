"""Tests for job, bid and trade data models."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

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

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class TestJobPosting:
    """Tests for JobPosting dataclass."""

    def test_create_basic_job(self):
        job = JobPosting(id="job-1", client_id="client-1", title="Landing page")

        assert job.status == "open"
        assert job.freelancer_id is None
        assert job.bid_count == 0
        assert job.currency == "USD"
        assert job.is_open

    def test_empty_title_rejected(self):
        with pytest.raises(ValueError, match="Title cannot be empty"):
            JobPosting(id="job-1", client_id="client-1", title="   ")

    def test_title_too_long(self):
        with pytest.raises(ValueError, match="Title too long"):
            JobPosting(id="job-1", client_id="client-1", title="x" * 201)

    def test_in_progress_requires_freelancer(self):
        with pytest.raises(ValueError, match="must have a freelancer"):
            JobPosting(id="job-1", client_id="client-1", title="T", status="in_progress")

    def test_open_job_cannot_have_freelancer(self):
        with pytest.raises(ValueError, match="cannot have a freelancer"):
            JobPosting(id="job-1", client_id="client-1", title="T", freelancer_id="f-1")

    def test_cancelled_job_cannot_have_freelancer(self):
        with pytest.raises(ValueError, match="cannot have a freelancer"):
            JobPosting(
                id="job-1", client_id="client-1", title="T", status="cancelled", freelancer_id="f-1"
            )

    def test_invalid_status(self):
        with pytest.raises(ValueError, match="Invalid status"):
            JobPosting(id="job-1", client_id="client-1", title="T", status="funded")

    def test_negative_bid_count(self):
        with pytest.raises(ValueError, match="bid_count"):
            JobPosting(id="job-1", client_id="client-1", title="T", bid_count=-1)

    def test_is_party(self):
        job = JobPosting(
            id="job-1", client_id="client-1", title="T", status="in_progress", freelancer_id="f-1"
        )
        assert job.is_party("client-1")
        assert job.is_party("f-1")
        assert not job.is_party("someone-else")


class TestBid:
    """Tests for Bid dataclass."""

    def test_amount_is_quantized_decimal(self):
        bid = Bid(id="b-1", job_id="job-1", freelancer_id="f-1", amount="150.5", delivery_days=10)
        assert bid.amount == Decimal("150.500000")
        assert bid.status == "pending"

    def test_float_amount_goes_through_str(self):
        bid = Bid(id="b-1", job_id="job-1", freelancer_id="f-1", amount=0.1, delivery_days=1)
        assert bid.amount == Decimal("0.1")

    @pytest.mark.parametrize("amount", [0, -5])
    def test_non_positive_amount(self, amount):
        with pytest.raises(ValueError, match="must be positive"):
            Bid(id="b-1", job_id="job-1", freelancer_id="f-1", amount=amount, delivery_days=1)

    @pytest.mark.parametrize("amount", ["0.0000001", "10.0000004"])
    def test_extra_precision_rejected(self, amount):
        with pytest.raises(ValueError, match="more than 6 decimal places"):
            Bid(id="b-1", job_id="job-1", freelancer_id="f-1", amount=amount, delivery_days=1)

    @pytest.mark.parametrize("amount", ["1e30", "1000000000000.000001"])
    def test_oversized_amount_rejected(self, amount):
        with pytest.raises(ValueError, match="exceeds the maximum"):
            Bid(id="b-1", job_id="job-1", freelancer_id="f-1", amount=amount, delivery_days=1)

    def test_garbage_amount(self):
        with pytest.raises(ValueError, match="Invalid amount"):
            Bid(id="b-1", job_id="job-1", freelancer_id="f-1", amount="lots", delivery_days=1)

    def test_delivery_days_must_be_positive(self):
        with pytest.raises(ValueError, match="delivery_days"):
            Bid(id="b-1", job_id="job-1", freelancer_id="f-1", amount=10, delivery_days=0)


class TestTrade:
    """Tests for Trade dataclass."""

    def _trade(self, **overrides):
        fields = dict(
            id="t-1",
            job_id="job-1",
            bid_id="b-1",
            buyer_id="client-1",
            seller_id="f-1",
            amount=Decimal("500"),
            currency="USD",
            chain_id=1,
            deposit_deadline=NOW + timedelta(days=7),
        )
        fields.update(overrides)
        return Trade(**fields)

    def test_defaults(self):
        trade = self._trade()
        assert trade.status == "pending_deposit"
        assert not trade.has_escrow

    def test_has_escrow(self):
        assert self._trade(escrow_id=0).has_escrow

    def test_buyer_and_seller_must_differ(self):
        with pytest.raises(ValueError, match="Buyer and seller must differ"):
            self._trade(seller_id="client-1")

    def test_negative_escrow_id(self):
        with pytest.raises(ValueError, match="escrow_id"):
            self._trade(escrow_id=-1)


class TestTransitions:
    """Tests for the status graphs."""

    def test_terminal_job_states_have_no_exits(self):
        assert JobStatus.COMPLETED not in VALID_JOB_TRANSITIONS
        assert JobStatus.CANCELLED not in VALID_JOB_TRANSITIONS

    def test_only_open_jobs_can_be_cancelled(self):
        assert sources_for(VALID_JOB_TRANSITIONS, JobStatus.CANCELLED) == ("open",)

    def test_acceptance_sources(self):
        assert sources_for(VALID_BID_TRANSITIONS, BidStatus.ACCEPTED) == ("pending", "shortlisted")

    def test_withdraw_only_from_pending(self):
        assert sources_for(VALID_BID_TRANSITIONS, BidStatus.WITHDRAWN) == ("pending",)

    def test_deposit_only_from_pending_deposit(self):
        assert sources_for(VALID_TRADE_TRANSITIONS, TradeStatus.ACTIVE) == ("pending_deposit",)

    def test_live_bids(self):
        assert set(LIVE_BID_STATUSES) == {"pending", "shortlisted"}
