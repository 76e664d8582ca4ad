"""Wires the settlement services to a single store."""

import logging
from pathlib import Path
from typing import Optional, Union

from gigsettle.commerce.config import CommerceConfig
from gigsettle.commerce.escrow.adapter import EscrowAdapter, MilestoneEscrowAdapter
from gigsettle.commerce.jobs.service import JobService
from gigsettle.commerce.ledger.service import LedgerService
from gigsettle.commerce.milestones.service import MilestoneService
from gigsettle.commerce.notifications import NotificationDispatcher
from gigsettle.commerce.reconciler import AutoReleaseReconciler
from gigsettle.storage.sqlite import SQLiteSettlementStore

logger = logging.getLogger(__name__)


class SettlementEngine:
    """Job, milestone and ledger services sharing one store and config.

    Example:
        engine = SettlementEngine.from_path("settlement.db")
        job = engine.jobs.post_job("client-1", "Landing page")
    """

    def __init__(
        self,
        store,
        config: Optional[CommerceConfig] = None,
        escrow_adapter: Optional[EscrowAdapter] = None,
        notifier: Optional[NotificationDispatcher] = None,
    ):
        self.store = store
        self.config = config or CommerceConfig()
        if escrow_adapter is None and self.config.escrow_contract_address:
            escrow_adapter = MilestoneEscrowAdapter(
                self.config.escrow_contract_address, chain_id=self.config.chain_id
            )
        self.escrow_adapter = escrow_adapter
        self.notifier = notifier

        self.jobs = JobService(store, self.config, notifier)
        self.milestones = MilestoneService(store, self.config, escrow_adapter, notifier)
        self.ledger = LedgerService(store, self.config, notifier)
        self.reconciler = AutoReleaseReconciler(self.milestones)

    @classmethod
    def from_path(
        cls,
        db_path: Union[str, Path],
        config: Optional[CommerceConfig] = None,
        escrow_adapter: Optional[EscrowAdapter] = None,
        notifier: Optional[NotificationDispatcher] = None,
    ) -> "SettlementEngine":
        """Open (or create) a SQLite store at ``db_path``."""
        logger.debug(f"Opening settlement store at {db_path}")
        return cls(SQLiteSettlementStore(db_path), config, escrow_adapter, notifier)

    def close(self) -> None:
        """Release the notifier's resources (e.g. a webhook HTTP client) and the store."""
        close_notifier = getattr(self.notifier, "close", None)
        if close_notifier is not None:
            close_notifier()
        self.store.close()
