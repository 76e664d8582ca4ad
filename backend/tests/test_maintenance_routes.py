"""Tests for scheduler-driven maintenance routes."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest


@pytest.fixture
def stale_submission(engine):
    """A milestone submitted four days ago through the engine directly."""
    past = datetime.now(timezone.utc) - timedelta(days=4)
    job = engine.jobs.post_job("client-1", "Landing page", now=past)
    milestone = engine.milestones.add_milestone(
        job.id, "client-1", "Build", "100", past + timedelta(days=30), now=past
    )
    bid = engine.jobs.submit_bid(job.id, "freelancer-1", "100", 10, "Hi", now=past).value
    engine.jobs.accept_bid(job.id, bid.id, "client-1", now=past)
    engine.jobs.record_deposit(job.id, "client-1", 3, now=past)
    engine.milestones.start_milestone(job.id, milestone.id, "freelancer-1", now=past)
    engine.milestones.submit_milestone(
        job.id, milestone.id, "freelancer-1", "https://example.com/site", now=past
    )
    return job, milestone


class TestCronAuth:
    def test_missing_key(self, client):
        assert client.post("/maintenance/auto-release").status_code == 401

    def test_wrong_key(self, client):
        response = client.post("/maintenance/auto-release", headers={"x-api-key": "wrong"})
        assert response.status_code == 401

    def test_unconfigured_key(self, client, monkeypatch):
        from app.config import get_settings

        monkeypatch.setenv("CRON_API_KEY", "")
        get_settings.cache_clear()

        response = client.post("/maintenance/auto-release", headers={"x-api-key": "anything"})

        assert response.status_code == 503


class TestAutoRelease:
    def test_status_then_sweep(self, client, cron_headers, engine, stale_submission):
        job, milestone = stale_submission

        before = client.get("/maintenance/auto-release", headers=cron_headers).json()
        swept = client.post("/maintenance/auto-release", headers=cron_headers).json()
        after = client.get("/maintenance/auto-release", headers=cron_headers).json()

        assert before["status"] == "action_needed"
        assert before["pending_auto_release"] == 1
        assert before["grace_period_hours"] == 72
        assert swept["released"] == 1
        assert swept["released_ids"] == [milestone.id]
        assert after["status"] == "healthy"
        assert engine.ledger.available_balance("freelancer-1") == Decimal("100")
        assert engine.jobs.get_job(job.id).status == "completed"

    def test_sweep_twice_releases_once(self, client, cron_headers, engine, stale_submission):
        client.post("/maintenance/auto-release", headers=cron_headers)
        second = client.post("/maintenance/auto-release", headers=cron_headers).json()

        assert second["released"] == 0
        assert len(engine.ledger.list_earnings("freelancer-1")) == 1

    def test_fresh_submission_untouched(self, client, cron_headers, submitted_milestone):
        submitted_milestone()
        swept = client.post("/maintenance/auto-release", headers=cron_headers).json()
        assert swept["released"] == 0


class TestTradeExpiry:
    def test_expire_unfunded(self, client, cron_headers, engine):
        past = datetime.now(timezone.utc) - timedelta(days=8)
        job = engine.jobs.post_job("client-1", "Landing page", now=past)
        bid = engine.jobs.submit_bid(job.id, "freelancer-1", "100", 10, "Hi", now=past).value
        accepted = engine.jobs.accept_bid(job.id, bid.id, "client-1", now=past)

        response = client.post("/maintenance/expire-trades", headers=cron_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["expired_ids"] == [accepted.trade.id]
        assert engine.jobs.get_trade(job.id).status == "cancelled"
