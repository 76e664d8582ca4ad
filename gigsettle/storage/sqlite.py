"""SQLite-based settlement store.

One connection per transaction. Write transactions start with
``BEGIN IMMEDIATE`` so the database write lock is taken before the first
read; a balance check and the insert that depends on it therefore see no
interleaved writer.

Every status change is a conditional update::

    UPDATE milestones SET status = 'approved', ...
    WHERE id = ? AND status IN ('submitted')

and reports whether a row matched. Callers treat zero rows as losing a race
(or a stale precondition) and raise a state-conflict error.
"""

import contextlib
import json
import logging
import sqlite3
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Union

from gigsettle.commerce.actors import actor_from_db, actor_to_db
from gigsettle.commerce.audit import StateTransition
from gigsettle.commerce.jobs.models import Bid, JobPosting, Trade
from gigsettle.commerce.ledger.models import Earning, EarningStatus, Withdrawal
from gigsettle.commerce.milestones.models import (
    Milestone,
    MilestoneStatus,
    extension_from_dict,
    extension_to_dict,
)
from gigsettle.commerce.money import money_str
from gigsettle.storage.base import (
    DuplicateRecordError,
    StorageError,
    format_datetime,
    parse_datetime,
    parse_decimal,
    utc_now,
)
from gigsettle.storage.schema import init_db, validate_table_name

logger = logging.getLogger(__name__)

# Columns a status update may set, per table
_UPDATABLE_COLUMNS = {
    "jobs": frozenset({"freelancer_id", "completed_at", "cancelled_at"}),
    "bids": frozenset({"shortlisted_at", "accepted_at", "rejected_at", "withdrawn_at"}),
    "trades": frozenset(
        {"escrow_id", "deposited_at", "completed_at", "cancelled_at", "cancellation_reason"}
    ),
    "milestones": frozenset(
        {
            "feedback",
            "submission_url",
            "submission_note",
            "extension",
            "started_at",
            "submitted_at",
            "approved_at",
            "disputed_at",
        }
    ),
    "withdrawals": frozenset({"transaction_ref", "failure_reason", "processed_at"}),
}


def _to_db(value: Any) -> Any:
    """Convert a Python value to its stored form."""
    if isinstance(value, datetime):
        return format_datetime(value)
    if isinstance(value, Decimal):
        return money_str(value)
    if isinstance(value, bool):
        return int(value)
    return value


def _placeholders(values: Sequence) -> str:
    return ", ".join("?" for _ in values)


class SettlementTransaction:
    """All SQL for the settlement engine, bound to one open transaction."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    # === Generic conditional update ===

    def _update_status(
        self,
        table: str,
        entity_id: str,
        expected: Iterable[str],
        new_status: str,
        fields: Dict[str, Any],
        now: Optional[datetime] = None,
    ) -> bool:
        """Move a row to ``new_status`` only if it is currently in ``expected``.

        Returns:
            True if exactly one row was updated
        """
        validate_table_name(table)
        unknown = set(fields) - _UPDATABLE_COLUMNS[table]
        if unknown:
            raise ValueError(f"Cannot update columns on {table}: {sorted(unknown)}")
        expected = tuple(expected)
        if not expected:
            raise ValueError("At least one expected status is required")

        assignments = ["status = ?", "updated_at = ?"]
        params: List[Any] = [new_status, format_datetime(now or utc_now())]
        for column, value in fields.items():
            assignments.append(f"{column} = ?")
            params.append(_to_db(value))
        params.append(entity_id)
        params.extend(expected)

        cur = self.conn.execute(
            f"UPDATE {table} SET {', '.join(assignments)} "
            f"WHERE id = ? AND status IN ({_placeholders(expected)})",
            params,
        )
        return cur.rowcount == 1

    def _insert(self, table: str, values: Dict[str, Any]) -> None:
        validate_table_name(table)
        columns = list(values)
        try:
            self.conn.execute(
                f"INSERT INTO {table} ({', '.join(columns)}) "
                f"VALUES ({_placeholders(columns)})",
                [_to_db(values[c]) for c in columns],
            )
        except sqlite3.IntegrityError as e:
            raise DuplicateRecordError(f"{table}: {e}") from e

    # === Jobs ===

    def insert_job(self, job: JobPosting) -> None:
        self._insert(
            "jobs",
            {
                "id": job.id,
                "client_id": job.client_id,
                "freelancer_id": job.freelancer_id,
                "title": job.title,
                "description": job.description,
                "currency": job.currency,
                "status": job.status,
                "bid_count": job.bid_count,
                "created_at": job.created_at,
                "updated_at": job.updated_at or job.created_at,
                "completed_at": job.completed_at,
                "cancelled_at": job.cancelled_at,
            },
        )

    def get_job(self, job_id: str) -> Optional[JobPosting]:
        row = self.conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        return self._row_to_job(row) if row else None

    def list_jobs(
        self,
        status: Optional[str] = None,
        client_id: Optional[str] = None,
        freelancer_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[JobPosting]:
        query = "SELECT * FROM jobs WHERE 1=1"
        params: List[Any] = []
        if status:
            query += " AND status = ?"
            params.append(status)
        if client_id:
            query += " AND client_id = ?"
            params.append(client_id)
        if freelancer_id:
            query += " AND freelancer_id = ?"
            params.append(freelancer_id)
        query += " ORDER BY created_at DESC, id LIMIT ? OFFSET ?"
        params.extend([limit, offset])
        return [self._row_to_job(r) for r in self.conn.execute(query, params).fetchall()]

    def update_job_status(
        self, job_id: str, expected: Iterable[str], new_status: str, now=None, **fields
    ) -> bool:
        return self._update_status("jobs", job_id, expected, new_status, fields, now)

    def increment_bid_count(self, job_id: str) -> None:
        self.conn.execute("UPDATE jobs SET bid_count = bid_count + 1 WHERE id = ?", (job_id,))

    def decrement_bid_count(self, job_id: str) -> None:
        self.conn.execute(
            "UPDATE jobs SET bid_count = MAX(bid_count - 1, 0) WHERE id = ?", (job_id,)
        )

    # === Bids ===

    def insert_bid(self, bid: Bid) -> None:
        self._insert(
            "bids",
            {
                "id": bid.id,
                "job_id": bid.job_id,
                "freelancer_id": bid.freelancer_id,
                "amount": bid.amount,
                "delivery_days": bid.delivery_days,
                "proposal": bid.proposal,
                "status": bid.status,
                "created_at": bid.created_at,
                "updated_at": bid.updated_at or bid.created_at,
            },
        )

    def get_bid(self, bid_id: str) -> Optional[Bid]:
        row = self.conn.execute("SELECT * FROM bids WHERE id = ?", (bid_id,)).fetchone()
        return self._row_to_bid(row) if row else None

    def list_bids(
        self,
        job_id: Optional[str] = None,
        freelancer_id: Optional[str] = None,
        statuses: Optional[Sequence[str]] = None,
    ) -> List[Bid]:
        query = "SELECT * FROM bids WHERE 1=1"
        params: List[Any] = []
        if job_id:
            query += " AND job_id = ?"
            params.append(job_id)
        if freelancer_id:
            query += " AND freelancer_id = ?"
            params.append(freelancer_id)
        if statuses:
            query += f" AND status IN ({_placeholders(statuses)})"
            params.extend(statuses)
        query += " ORDER BY created_at, id"
        return [self._row_to_bid(r) for r in self.conn.execute(query, params).fetchall()]

    def update_bid_status(
        self, bid_id: str, expected: Iterable[str], new_status: str, now=None, **fields
    ) -> bool:
        return self._update_status("bids", bid_id, expected, new_status, fields, now)

    def reject_bids(
        self, job_id: str, statuses: Sequence[str], now: datetime, exclude_bid_id: Optional[str] = None
    ) -> List[str]:
        """Reject every bid of a job in one of ``statuses``.

        Returns:
            IDs of the rejected bids
        """
        query = f"SELECT id FROM bids WHERE job_id = ? AND status IN ({_placeholders(statuses)})"
        params: List[Any] = [job_id, *statuses]
        if exclude_bid_id:
            query += " AND id != ?"
            params.append(exclude_bid_id)
        ids = [r["id"] for r in self.conn.execute(query + " ORDER BY created_at, id", params)]
        if ids:
            stamp = format_datetime(now)
            self.conn.execute(
                f"UPDATE bids SET status = 'rejected', rejected_at = ?, updated_at = ? "
                f"WHERE id IN ({_placeholders(ids)}) AND status IN ({_placeholders(statuses)})",
                [stamp, stamp, *ids, *statuses],
            )
        return ids

    # === Trades ===

    def insert_trade(self, trade: Trade) -> None:
        self._insert(
            "trades",
            {
                "id": trade.id,
                "job_id": trade.job_id,
                "bid_id": trade.bid_id,
                "buyer_id": trade.buyer_id,
                "seller_id": trade.seller_id,
                "amount": trade.amount,
                "currency": trade.currency,
                "chain_id": trade.chain_id,
                "escrow_id": trade.escrow_id,
                "status": trade.status,
                "deposit_deadline": trade.deposit_deadline,
                "created_at": trade.created_at,
                "updated_at": trade.created_at,
            },
        )

    def get_trade(self, trade_id: str) -> Optional[Trade]:
        row = self.conn.execute("SELECT * FROM trades WHERE id = ?", (trade_id,)).fetchone()
        return self._row_to_trade(row) if row else None

    def get_trade_for_job(self, job_id: str) -> Optional[Trade]:
        row = self.conn.execute("SELECT * FROM trades WHERE job_id = ?", (job_id,)).fetchone()
        return self._row_to_trade(row) if row else None

    def update_trade_status(
        self, trade_id: str, expected: Iterable[str], new_status: str, now=None, **fields
    ) -> bool:
        return self._update_status("trades", trade_id, expected, new_status, fields, now)

    def list_expired_trades(self, now: datetime) -> List[Trade]:
        rows = self.conn.execute(
            "SELECT * FROM trades WHERE status = 'pending_deposit' AND deposit_deadline < ? "
            "ORDER BY deposit_deadline, id",
            (format_datetime(now),),
        ).fetchall()
        return [self._row_to_trade(r) for r in rows]

    # === Milestones ===

    def insert_milestone(self, milestone: Milestone) -> None:
        self._insert(
            "milestones",
            {
                "id": milestone.id,
                "job_id": milestone.job_id,
                "title": milestone.title,
                "description": milestone.description,
                "amount": milestone.amount,
                "due_date": milestone.due_date,
                "sort_order": milestone.sort_order,
                "status": milestone.status,
                "auto_release_enabled": milestone.auto_release_enabled,
                "extension": self._extension_json(milestone.extension),
                "created_at": milestone.created_at,
                "updated_at": milestone.updated_at or milestone.created_at,
            },
        )

    def get_milestone(self, milestone_id: str) -> Optional[Milestone]:
        row = self.conn.execute(
            "SELECT * FROM milestones WHERE id = ?", (milestone_id,)
        ).fetchone()
        return self._row_to_milestone(row) if row else None

    def list_milestones(self, job_id: str) -> List[Milestone]:
        rows = self.conn.execute(
            "SELECT * FROM milestones WHERE job_id = ? ORDER BY sort_order", (job_id,)
        ).fetchall()
        return [self._row_to_milestone(r) for r in rows]

    def next_sort_order(self, job_id: str) -> int:
        row = self.conn.execute(
            "SELECT MAX(sort_order) AS max_order FROM milestones WHERE job_id = ?", (job_id,)
        ).fetchone()
        return 0 if row["max_order"] is None else row["max_order"] + 1

    def get_previous_milestone(self, job_id: str, sort_order: int) -> Optional[Milestone]:
        row = self.conn.execute(
            "SELECT * FROM milestones WHERE job_id = ? AND sort_order < ? "
            "ORDER BY sort_order DESC LIMIT 1",
            (job_id, sort_order),
        ).fetchone()
        return self._row_to_milestone(row) if row else None

    def count_unapproved_milestones(self, job_id: str) -> int:
        row = self.conn.execute(
            "SELECT COUNT(*) AS n FROM milestones WHERE job_id = ? AND status != ?",
            (job_id, MilestoneStatus.APPROVED.value),
        ).fetchone()
        return row["n"]

    def update_milestone_status(
        self, milestone_id: str, expected: Iterable[str], new_status: str, now=None, **fields
    ) -> bool:
        if "extension" in fields:
            fields["extension"] = self._extension_json(fields["extension"])
        return self._update_status("milestones", milestone_id, expected, new_status, fields, now)

    def delete_milestone(self, milestone_id: str, expected: Iterable[str]) -> bool:
        expected = tuple(expected)
        cur = self.conn.execute(
            f"DELETE FROM milestones WHERE id = ? AND status IN ({_placeholders(expected)})",
            (milestone_id, *expected),
        )
        return cur.rowcount == 1

    def list_auto_release_candidates(self, cutoff: datetime, limit: int = 500) -> List[Milestone]:
        """Submitted milestones with auto-release on, submitted at or before ``cutoff``."""
        rows = self.conn.execute(
            "SELECT * FROM milestones WHERE status = ? AND auto_release_enabled = 1 "
            "AND submitted_at IS NOT NULL AND submitted_at <= ? "
            "ORDER BY submitted_at, id LIMIT ?",
            (MilestoneStatus.SUBMITTED.value, format_datetime(cutoff), limit),
        ).fetchall()
        return [self._row_to_milestone(r) for r in rows]

    def list_overdue_milestones(self, now: datetime, limit: int = -1) -> List[Milestone]:
        """Pending or in-progress milestones due at or before ``now`` on assigned jobs.

        Unlimited unless ``limit`` is given.
        """
        rows = self.conn.execute(
            "SELECT m.* FROM milestones m JOIN jobs j ON j.id = m.job_id "
            "WHERE m.status IN (?, ?) AND m.due_date <= ? AND j.freelancer_id IS NOT NULL "
            "ORDER BY m.due_date, m.id LIMIT ?",
            (
                MilestoneStatus.PENDING.value,
                MilestoneStatus.IN_PROGRESS.value,
                format_datetime(now),
                limit,
            ),
        ).fetchall()
        return [self._row_to_milestone(r) for r in rows]

    # === Earnings ===

    def insert_earning(self, earning: Earning) -> None:
        self._insert(
            "earnings",
            {
                "id": earning.id,
                "freelancer_id": earning.freelancer_id,
                "job_id": earning.job_id,
                "milestone_id": earning.milestone_id,
                "amount": earning.amount,
                "type": earning.type,
                "status": earning.status,
                "description": earning.description,
                "created_at": earning.created_at,
                "withdrawn_at": earning.withdrawn_at,
            },
        )

    def list_earnings(
        self,
        freelancer_id: Optional[str] = None,
        statuses: Optional[Sequence[str]] = None,
        type: Optional[str] = None,
        milestone_id: Optional[str] = None,
    ) -> List[Earning]:
        """List earnings oldest first."""
        query = "SELECT * FROM earnings WHERE 1=1"
        params: List[Any] = []
        if freelancer_id:
            query += " AND freelancer_id = ?"
            params.append(freelancer_id)
        if statuses:
            query += f" AND status IN ({_placeholders(statuses)})"
            params.extend(statuses)
        if type:
            query += " AND type = ?"
            params.append(type)
        if milestone_id:
            query += " AND milestone_id = ?"
            params.append(milestone_id)
        query += " ORDER BY created_at, id"
        return [self._row_to_earning(r) for r in self.conn.execute(query, params).fetchall()]

    def mark_earnings_withdrawn(self, earning_ids: Sequence[str], now: datetime) -> int:
        """Advance completed earnings to withdrawn. Returns the number of rows moved."""
        if not earning_ids:
            return 0
        cur = self.conn.execute(
            f"UPDATE earnings SET status = ?, withdrawn_at = ? "
            f"WHERE id IN ({_placeholders(earning_ids)}) AND status = ?",
            (
                EarningStatus.WITHDRAWN.value,
                format_datetime(now),
                *earning_ids,
                EarningStatus.COMPLETED.value,
            ),
        )
        return cur.rowcount

    # === Withdrawals ===

    def insert_withdrawal(self, withdrawal: Withdrawal) -> None:
        self._insert(
            "withdrawals",
            {
                "id": withdrawal.id,
                "freelancer_id": withdrawal.freelancer_id,
                "amount": withdrawal.amount,
                "fee": withdrawal.fee,
                "net_amount": withdrawal.net_amount,
                "method": withdrawal.method,
                "destination": withdrawal.destination,
                "status": withdrawal.status,
                "notes": withdrawal.notes,
                "created_at": withdrawal.created_at,
                "updated_at": withdrawal.updated_at or withdrawal.created_at,
            },
        )

    def get_withdrawal(self, withdrawal_id: str) -> Optional[Withdrawal]:
        row = self.conn.execute(
            "SELECT * FROM withdrawals WHERE id = ?", (withdrawal_id,)
        ).fetchone()
        return self._row_to_withdrawal(row) if row else None

    def list_withdrawals(
        self,
        freelancer_id: Optional[str] = None,
        statuses: Optional[Sequence[str]] = None,
        method: Optional[str] = None,
    ) -> List[Withdrawal]:
        query = "SELECT * FROM withdrawals WHERE 1=1"
        params: List[Any] = []
        if freelancer_id:
            query += " AND freelancer_id = ?"
            params.append(freelancer_id)
        if statuses:
            query += f" AND status IN ({_placeholders(statuses)})"
            params.extend(statuses)
        if method:
            query += " AND method = ?"
            params.append(method)
        query += " ORDER BY created_at, id"
        return [self._row_to_withdrawal(r) for r in self.conn.execute(query, params).fetchall()]

    def update_withdrawal_status(
        self, withdrawal_id: str, expected: Iterable[str], new_status: str, now=None, **fields
    ) -> bool:
        return self._update_status("withdrawals", withdrawal_id, expected, new_status, fields, now)

    # === Audit ===

    def insert_transition(self, transition: StateTransition) -> None:
        self._insert(
            "transitions",
            {
                "id": transition.id,
                "entity_type": transition.entity_type,
                "entity_id": transition.entity_id,
                "from_status": transition.from_status,
                "to_status": transition.to_status,
                "actor": actor_to_db(transition.actor),
                "reason": transition.reason,
                "created_at": transition.created_at or utc_now(),
            },
        )

    def list_transitions(
        self, entity_type: Optional[str] = None, entity_id: Optional[str] = None
    ) -> List[StateTransition]:
        query = "SELECT * FROM transitions WHERE 1=1"
        params: List[Any] = []
        if entity_type:
            query += " AND entity_type = ?"
            params.append(entity_type)
        if entity_id:
            query += " AND entity_id = ?"
            params.append(entity_id)
        query += " ORDER BY created_at, rowid"
        return [
            StateTransition(
                id=r["id"],
                entity_type=r["entity_type"],
                entity_id=r["entity_id"],
                from_status=r["from_status"],
                to_status=r["to_status"],
                actor=actor_from_db(r["actor"]),
                reason=r["reason"],
                created_at=parse_datetime(r["created_at"]),
            )
            for r in self.conn.execute(query, params).fetchall()
        ]

    # === Row conversion ===

    @staticmethod
    def _extension_json(extension) -> Optional[str]:
        data = extension_to_dict(extension)
        return json.dumps(data) if data is not None else None

    @staticmethod
    def _row_to_job(row: sqlite3.Row) -> JobPosting:
        return JobPosting(
            id=row["id"],
            client_id=row["client_id"],
            title=row["title"],
            description=row["description"],
            currency=row["currency"],
            status=row["status"],
            freelancer_id=row["freelancer_id"],
            bid_count=row["bid_count"],
            created_at=parse_datetime(row["created_at"]),
            updated_at=parse_datetime(row["updated_at"]),
            completed_at=parse_datetime(row["completed_at"]),
            cancelled_at=parse_datetime(row["cancelled_at"]),
        )

    @staticmethod
    def _row_to_bid(row: sqlite3.Row) -> Bid:
        return Bid(
            id=row["id"],
            job_id=row["job_id"],
            freelancer_id=row["freelancer_id"],
            amount=parse_decimal(row["amount"]),
            delivery_days=row["delivery_days"],
            proposal=row["proposal"],
            status=row["status"],
            created_at=parse_datetime(row["created_at"]),
            updated_at=parse_datetime(row["updated_at"]),
            shortlisted_at=parse_datetime(row["shortlisted_at"]),
            accepted_at=parse_datetime(row["accepted_at"]),
            rejected_at=parse_datetime(row["rejected_at"]),
            withdrawn_at=parse_datetime(row["withdrawn_at"]),
        )

    @staticmethod
    def _row_to_trade(row: sqlite3.Row) -> Trade:
        return Trade(
            id=row["id"],
            job_id=row["job_id"],
            bid_id=row["bid_id"],
            buyer_id=row["buyer_id"],
            seller_id=row["seller_id"],
            amount=parse_decimal(row["amount"]),
            currency=row["currency"],
            chain_id=row["chain_id"],
            deposit_deadline=parse_datetime(row["deposit_deadline"]),
            status=row["status"],
            escrow_id=row["escrow_id"],
            created_at=parse_datetime(row["created_at"]),
            deposited_at=parse_datetime(row["deposited_at"]),
            completed_at=parse_datetime(row["completed_at"]),
            cancelled_at=parse_datetime(row["cancelled_at"]),
            cancellation_reason=row["cancellation_reason"],
        )

    @staticmethod
    def _row_to_milestone(row: sqlite3.Row) -> Milestone:
        extension = json.loads(row["extension"]) if row["extension"] else None
        return Milestone(
            id=row["id"],
            job_id=row["job_id"],
            title=row["title"],
            description=row["description"],
            amount=parse_decimal(row["amount"]),
            due_date=parse_datetime(row["due_date"]),
            sort_order=row["sort_order"],
            status=row["status"],
            auto_release_enabled=bool(row["auto_release_enabled"]),
            feedback=row["feedback"],
            submission_url=row["submission_url"],
            submission_note=row["submission_note"],
            extension=extension_from_dict(extension),
            created_at=parse_datetime(row["created_at"]),
            updated_at=parse_datetime(row["updated_at"]),
            started_at=parse_datetime(row["started_at"]),
            submitted_at=parse_datetime(row["submitted_at"]),
            approved_at=parse_datetime(row["approved_at"]),
            disputed_at=parse_datetime(row["disputed_at"]),
        )

    @staticmethod
    def _row_to_earning(row: sqlite3.Row) -> Earning:
        return Earning(
            id=row["id"],
            freelancer_id=row["freelancer_id"],
            amount=parse_decimal(row["amount"]),
            type=row["type"],
            status=row["status"],
            job_id=row["job_id"],
            milestone_id=row["milestone_id"],
            description=row["description"],
            created_at=parse_datetime(row["created_at"]),
            withdrawn_at=parse_datetime(row["withdrawn_at"]),
        )

    @staticmethod
    def _row_to_withdrawal(row: sqlite3.Row) -> Withdrawal:
        return Withdrawal(
            id=row["id"],
            freelancer_id=row["freelancer_id"],
            amount=parse_decimal(row["amount"]),
            fee=parse_decimal(row["fee"]),
            net_amount=parse_decimal(row["net_amount"]),
            method=row["method"],
            destination=row["destination"],
            status=row["status"],
            notes=row["notes"],
            transaction_ref=row["transaction_ref"],
            failure_reason=row["failure_reason"],
            created_at=parse_datetime(row["created_at"]),
            updated_at=parse_datetime(row["updated_at"]),
            processed_at=parse_datetime(row["processed_at"]),
        )


class SQLiteSettlementStore:
    """SQLite persistence for jobs, bids, trades, milestones and the ledger."""

    BUSY_TIMEOUT_MS = 10000

    def __init__(self, db_path: Union[str, Path]):
        self.db_path = self._validate_db_path(Path(db_path))
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _validate_db_path(self, db_path: Path) -> Path:
        if str(db_path) == ":memory:":
            raise ValueError("In-memory databases are not supported; each transaction opens a connection")
        try:
            return db_path.expanduser().resolve()
        except (OSError, RuntimeError) as e:
            logger.error(f"Invalid database path: {e}")
            raise ValueError(f"Invalid database path: {e}") from e

    def _get_conn(self) -> sqlite3.Connection:
        """Open a connection in autocommit mode; transactions are explicit."""
        conn = sqlite3.connect(
            self.db_path, timeout=self.BUSY_TIMEOUT_MS / 1000, isolation_level=None
        )
        conn.row_factory = sqlite3.Row
        conn.execute(f"PRAGMA busy_timeout={self.BUSY_TIMEOUT_MS}")
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    @contextlib.contextmanager
    def _connect(self, immediate: bool = True) -> Iterator[sqlite3.Connection]:
        """Context manager that handles transactions AND closes connection.

        - BEGIN IMMEDIATE (write) or BEGIN (read) on entry
        - COMMIT on success
        - ROLLBACK on exception
        - Connection close in all cases
        """
        conn = self._get_conn()
        try:
            conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
            try:
                yield conn
                conn.execute("COMMIT")
            except Exception as e:
                logger.debug(f"Transaction failed, rolling back: {e}")
                conn.execute("ROLLBACK")
                raise
        except sqlite3.OperationalError as e:
            raise StorageError(f"Database unavailable: {e}") from e
        finally:
            conn.close()

    @contextlib.contextmanager
    def transaction(self, immediate: bool = True) -> Iterator[SettlementTransaction]:
        """Run a block of reads and writes atomically."""
        with self._connect(immediate=immediate) as conn:
            yield SettlementTransaction(conn)

    def _init_db(self) -> None:
        conn = self._get_conn()
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            init_db(conn)
        finally:
            conn.close()

    def close(self):
        """Connections are per-transaction; nothing to release."""
        pass
