"""Tests for the SQLite settlement store."""

import sqlite3
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from gigsettle.commerce.audit import StateTransition
from gigsettle.commerce.actors import SYSTEM, UserActor
from gigsettle.commerce.jobs.models import JobPosting
from gigsettle.storage.base import (
    DuplicateRecordError,
    format_datetime,
    parse_datetime,
)
from gigsettle.storage.schema import SCHEMA_VERSION, validate_table_name
from gigsettle.storage.sqlite import SQLiteSettlementStore


def make_job(job_id="job-1", now=None):
    now = now or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
    return JobPosting(id=job_id, client_id="client-1", title="Landing page", created_at=now)


class TestSchema:
    def test_tables_created(self, store, db_path):
        conn = sqlite3.connect(db_path)
        try:
            tables = {
                r[0] for r in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
            }
            version = conn.execute("SELECT version FROM schema_version").fetchone()[0]
        finally:
            conn.close()
        assert {"jobs", "bids", "trades", "milestones", "earnings", "withdrawals", "transitions"} <= tables
        assert version == SCHEMA_VERSION

    def test_reopen_is_safe(self, store, db_path):
        with store.transaction() as tx:
            tx.insert_job(make_job())
        reopened = SQLiteSettlementStore(db_path)
        with reopened.transaction(immediate=False) as tx:
            assert tx.get_job("job-1").title == "Landing page"

    def test_memory_database_rejected(self):
        with pytest.raises(ValueError, match="In-memory"):
            SQLiteSettlementStore(":memory:")

    def test_table_allowlist(self):
        assert validate_table_name("jobs") == "jobs"
        with pytest.raises(ValueError, match="Invalid table name"):
            validate_table_name("jobs; DROP TABLE jobs")


class TestTransactions:
    def test_rollback_on_error(self, store):
        with pytest.raises(RuntimeError):
            with store.transaction() as tx:
                tx.insert_job(make_job())
                raise RuntimeError("boom")

        with store.transaction(immediate=False) as tx:
            assert tx.get_job("job-1") is None

    def test_duplicate_insert(self, store):
        with store.transaction() as tx:
            tx.insert_job(make_job())
        with pytest.raises(DuplicateRecordError):
            with store.transaction() as tx:
                tx.insert_job(make_job())


class TestConditionalUpdate:
    def test_matches_expected_status(self, store):
        with store.transaction() as tx:
            tx.insert_job(make_job())
            assert tx.update_job_status("job-1", ("open",), "cancelled", cancelled_at=datetime.now(timezone.utc))
            assert tx.get_job("job-1").status == "cancelled"

    def test_stale_status_matches_nothing(self, store):
        with store.transaction() as tx:
            tx.insert_job(make_job())
            tx.update_job_status("job-1", ("open",), "cancelled")
            assert not tx.update_job_status("job-1", ("open",), "cancelled")

    def test_unknown_row(self, store):
        with store.transaction() as tx:
            assert not tx.update_job_status("missing", ("open",), "cancelled")

    def test_column_allowlist(self, store):
        with store.transaction() as tx:
            tx.insert_job(make_job())
            with pytest.raises(ValueError, match="Cannot update columns"):
                tx.update_job_status("job-1", ("open",), "cancelled", client_id="someone-else")

    def test_expected_required(self, store):
        with store.transaction() as tx:
            with pytest.raises(ValueError):
                tx.update_job_status("job-1", (), "cancelled")


class TestTransitions:
    def test_actors_round_trip(self, store):
        at = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
        with store.transaction() as tx:
            tx.insert_job(make_job())
            tx.insert_transition(
                StateTransition("t-1", "job", "job-1", None, "open", UserActor("client-1"), created_at=at)
            )
            tx.insert_transition(
                StateTransition(
                    "t-2", "job", "job-1", "open", "cancelled", SYSTEM, reason="expired",
                    created_at=at + timedelta(seconds=1),
                )
            )

        with store.transaction(immediate=False) as tx:
            steps = tx.list_transitions(entity_type="job", entity_id="job-1")

        assert [s.actor for s in steps] == [UserActor("client-1"), SYSTEM]
        assert steps[1].reason == "expired"


class TestEncoding:
    def test_timestamps_sort_as_text(self):
        early = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
        late = early + timedelta(microseconds=1)
        assert format_datetime(early) < format_datetime(late)
        assert len(format_datetime(early)) == len(format_datetime(late))

    def test_naive_timestamp_is_utc(self):
        naive = datetime(2026, 3, 2, 9, 0)
        assert parse_datetime(format_datetime(naive)) == naive.replace(tzinfo=timezone.utc)

    def test_offset_timestamp_normalized(self):
        plus_two = timezone(timedelta(hours=2))
        local = datetime(2026, 3, 2, 11, 0, tzinfo=plus_two)
        assert format_datetime(local).startswith("2026-03-02T09:00:00")

    def test_amounts_stored_exactly(self, engine, fund_freelancer, db_path):
        fund_freelancer("0.1")
        fund_freelancer("0.2", client_id="client-2")

        conn = sqlite3.connect(db_path)
        try:
            stored = [r[0] for r in conn.execute("SELECT amount FROM earnings ORDER BY amount")]
        finally:
            conn.close()

        assert stored == ["0.100000", "0.200000"]
        assert engine.ledger.available_balance("freelancer-1") == Decimal("0.3")
