"""
Pytest fixtures and test configuration for gigsettle tests.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import List

import pytest

from gigsettle.commerce.config import CommerceConfig
from gigsettle.commerce.engine import SettlementEngine
from gigsettle.commerce.notifications import Notification
from gigsettle.storage.sqlite import SQLiteSettlementStore

CONTRACT_ADDRESS = "0x" + "ab" * 20


class RecordingDispatcher:
    """Keeps every notification it is asked to deliver."""

    def __init__(self):
        self.sent: List[Notification] = []

    def dispatch(self, notification: Notification) -> None:
        self.sent.append(notification)

    def events(self, event_type: str) -> List[Notification]:
        return [n for n in self.sent if n.event_type == event_type]

    def clear(self) -> None:
        self.sent.clear()


class FailingDispatcher:
    """Raises on every delivery attempt."""

    def __init__(self):
        self.attempts = 0

    def dispatch(self, notification: Notification) -> None:
        self.attempts += 1
        raise ConnectionError("notification service unreachable")


@pytest.fixture
def now():
    """Fixed reference time for deterministic tests."""
    return datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "settlement.db"


@pytest.fixture
def store(db_path):
    """SQLite store in a temporary directory."""
    return SQLiteSettlementStore(db_path)


@pytest.fixture
def config():
    return CommerceConfig()


@pytest.fixture
def notifier():
    return RecordingDispatcher()


@pytest.fixture
def engine(store, config, notifier):
    """Engine without an escrow adapter."""
    return SettlementEngine(store, config=config, notifier=notifier)


@pytest.fixture
def failing_notifier():
    return FailingDispatcher()


@pytest.fixture
def contract_address():
    return CONTRACT_ADDRESS


@pytest.fixture
def escrow_engine(store, notifier):
    """Engine whose config names an escrow contract, so approvals record a release call."""
    config = CommerceConfig(escrow_contract_address=CONTRACT_ADDRESS, chain_id=8453)
    return SettlementEngine(store, config=config, notifier=notifier)


def _assign(engine, now, amounts, client_id, freelancer_id, escrow_id, auto_release):
    job = engine.jobs.post_job(client_id, "Landing page", "Marketing site rebuild", now=now)
    milestones = [
        engine.milestones.add_milestone(
            job.id,
            client_id,
            title=f"Part {i + 1}",
            amount=amount,
            due_date=now + timedelta(days=14 * (i + 1)),
            auto_release_enabled=auto_release,
            now=now,
        )
        for i, amount in enumerate(amounts)
    ]
    bid_amount = sum((Decimal(str(a)) for a in amounts), Decimal("0"))
    bid = engine.jobs.submit_bid(job.id, freelancer_id, bid_amount, 30, "I can do this", now=now)
    engine.jobs.accept_bid(job.id, bid.value.id, client_id, now=now)
    if escrow_id is not None:
        engine.jobs.record_deposit(job.id, client_id, escrow_id, now=now)
    return engine.jobs.get_job(job.id), milestones


@pytest.fixture
def make_assigned_job(engine, now):
    """Factory: an in-progress job with a funded trade and one milestone per amount."""

    def _make(
        amounts=("100",),
        client_id="client-1",
        freelancer_id="freelancer-1",
        escrow_id=7,
        auto_release=True,
        on=None,
    ):
        return _assign(
            on or engine, now, amounts, client_id, freelancer_id, escrow_id, auto_release
        )

    return _make


@pytest.fixture
def make_submitted(engine, make_assigned_job, now):
    """Factory: the first milestone of a fresh assigned job, started and submitted at ``now``."""

    def _make(on=None, **kwargs):
        target = on or engine
        job, milestones = make_assigned_job(on=target, **kwargs)
        first = milestones[0]
        target.milestones.start_milestone(job.id, first.id, job.freelancer_id, now=now)
        target.milestones.submit_milestone(
            job.id, first.id, job.freelancer_id, "https://example.com/deliverable", now=now
        )
        return job, target.milestones.get_milestone(job.id, first.id)

    return _make


@pytest.fixture
def fund_freelancer(engine, make_submitted, now):
    """Factory: release ``amount`` into a freelancer's earnings via an approved milestone."""

    def _fund(amount="100", freelancer_id="freelancer-1", client_id="client-1"):
        job, milestone = make_submitted(
            amounts=(amount,), client_id=client_id, freelancer_id=freelancer_id
        )
        engine.milestones.approve_milestone(job.id, milestone.id, client_id, now=now)
        return job

    return _fund
