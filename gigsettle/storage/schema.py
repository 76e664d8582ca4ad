"""Database schema for the settlement store.

Contains:
- Schema DDL (SCHEMA)
- Schema version tracking (SCHEMA_VERSION)
- Table allowlist (ALLOWED_TABLES, validate_table_name)
- Database initialization (init_db)

Amounts are stored as TEXT decimal strings and summed in Python so no
binary floating point touches money. Timestamps are fixed-width UTC strings.
"""

import logging
import sqlite3

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

# Allowed table names for SQL queries (security: prevents SQL injection via table names)
ALLOWED_TABLES = frozenset(
    {
        "jobs",
        "bids",
        "trades",
        "milestones",
        "earnings",
        "withdrawals",
        "transitions",
        "schema_version",
    }
)


def validate_table_name(table: str) -> str:
    """Validate table name against allowlist to prevent SQL injection.

    Raises:
        ValueError: If table name is not in allowlist
    """
    if table not in ALLOWED_TABLES:
        raise ValueError(f"Invalid table name: {table}")
    return table


SCHEMA = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    client_id TEXT NOT NULL,
    freelancer_id TEXT,
    title TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    currency TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'open',
    bid_count INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    completed_at TEXT,
    cancelled_at TEXT,
    CHECK (bid_count >= 0),
    CHECK ((status IN ('in_progress', 'completed')) = (freelancer_id IS NOT NULL))
);
CREATE INDEX IF NOT EXISTS idx_jobs_client ON jobs(client_id);
CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status);

CREATE TABLE IF NOT EXISTS bids (
    id TEXT PRIMARY KEY,
    job_id TEXT NOT NULL REFERENCES jobs(id),
    freelancer_id TEXT NOT NULL,
    amount TEXT NOT NULL,
    delivery_days INTEGER NOT NULL,
    proposal TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL DEFAULT 'pending',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    shortlisted_at TEXT,
    accepted_at TEXT,
    rejected_at TEXT,
    withdrawn_at TEXT,
    UNIQUE (job_id, freelancer_id)
);
CREATE INDEX IF NOT EXISTS idx_bids_freelancer ON bids(freelancer_id);
-- At most one accepted bid per job, whatever the application does
CREATE UNIQUE INDEX IF NOT EXISTS idx_bids_one_accepted
    ON bids(job_id) WHERE status = 'accepted';

CREATE TABLE IF NOT EXISTS trades (
    id TEXT PRIMARY KEY,
    job_id TEXT NOT NULL UNIQUE REFERENCES jobs(id),
    bid_id TEXT NOT NULL UNIQUE REFERENCES bids(id),
    buyer_id TEXT NOT NULL,
    seller_id TEXT NOT NULL,
    amount TEXT NOT NULL,
    currency TEXT NOT NULL,
    chain_id INTEGER NOT NULL,
    escrow_id INTEGER,
    status TEXT NOT NULL DEFAULT 'pending_deposit',
    deposit_deadline TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    deposited_at TEXT,
    completed_at TEXT,
    cancelled_at TEXT,
    cancellation_reason TEXT
);
CREATE INDEX IF NOT EXISTS idx_trades_status_deadline ON trades(status, deposit_deadline);

CREATE TABLE IF NOT EXISTS milestones (
    id TEXT PRIMARY KEY,
    job_id TEXT NOT NULL REFERENCES jobs(id),
    title TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    amount TEXT NOT NULL,
    due_date TEXT NOT NULL,
    sort_order INTEGER NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    auto_release_enabled INTEGER NOT NULL DEFAULT 1,
    feedback TEXT,
    submission_url TEXT,
    submission_note TEXT,
    extension TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    started_at TEXT,
    submitted_at TEXT,
    approved_at TEXT,
    disputed_at TEXT,
    UNIQUE (job_id, sort_order)
);
CREATE INDEX IF NOT EXISTS idx_milestones_release
    ON milestones(status, auto_release_enabled, submitted_at);
CREATE INDEX IF NOT EXISTS idx_milestones_due ON milestones(status, due_date);

CREATE TABLE IF NOT EXISTS earnings (
    id TEXT PRIMARY KEY,
    freelancer_id TEXT NOT NULL,
    job_id TEXT REFERENCES jobs(id),
    milestone_id TEXT REFERENCES milestones(id),
    amount TEXT NOT NULL,
    type TEXT NOT NULL,
    status TEXT NOT NULL,
    description TEXT,
    created_at TEXT NOT NULL,
    withdrawn_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_earnings_freelancer ON earnings(freelancer_id, status);
-- A milestone pays out once
CREATE UNIQUE INDEX IF NOT EXISTS idx_earnings_one_per_milestone
    ON earnings(milestone_id) WHERE type = 'milestone';

CREATE TABLE IF NOT EXISTS withdrawals (
    id TEXT PRIMARY KEY,
    freelancer_id TEXT NOT NULL,
    amount TEXT NOT NULL,
    fee TEXT NOT NULL,
    net_amount TEXT NOT NULL,
    method TEXT NOT NULL,
    destination TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    notes TEXT,
    transaction_ref TEXT,
    failure_reason TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    processed_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_withdrawals_freelancer ON withdrawals(freelancer_id, status);

CREATE TABLE IF NOT EXISTS transitions (
    id TEXT PRIMARY KEY,
    entity_type TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    from_status TEXT,
    to_status TEXT NOT NULL,
    actor TEXT NOT NULL,
    reason TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_transitions_entity ON transitions(entity_type, entity_id);
"""


def init_db(conn: sqlite3.Connection) -> None:
    """Initialize the database schema.

    Safe to run repeatedly; every statement is ``IF NOT EXISTS``.
    """
    conn.executescript(SCHEMA)

    row = conn.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
    if row is None:
        conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
    elif row[0] != SCHEMA_VERSION:
        logger.info(f"Updating schema version {row[0]} -> {SCHEMA_VERSION}")
        conn.execute("UPDATE schema_version SET version = ?", (SCHEMA_VERSION,))
