"""Configuration for the gigsettle settlement engine.

Holds the fixed platform constants (grace period, fees, minimums) and the
escrow chain settings. Values can be overridden from the environment with
``GIGSETTLE_*`` variables via :meth:`CommerceConfig.from_env`.
"""

import os
import re
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import Optional

# Platform constants
GRACE_PERIOD_HOURS = 72  # Submitted milestones auto-release after this window
DEPOSIT_WINDOW_DAYS = 7  # Client must fund escrow within this window after acceptance
WITHDRAWAL_FEE_RATE = Decimal("0.02")  # 2% platform fee
MINIMUM_WITHDRAWAL = Decimal("0.01")
DEFAULT_CHAIN_ID = 1
DEFAULT_CURRENCY = "USD"
ADMIN_RECIPIENT_ID = "admin"

_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")


@dataclass
class CommerceConfig:
    """Settlement engine configuration."""

    grace_period_hours: int = GRACE_PERIOD_HOURS
    deposit_window_days: int = DEPOSIT_WINDOW_DAYS
    withdrawal_fee_rate: Decimal = WITHDRAWAL_FEE_RATE
    minimum_withdrawal: Decimal = MINIMUM_WITHDRAWAL
    chain_id: int = DEFAULT_CHAIN_ID
    escrow_contract_address: Optional[str] = None
    default_currency: str = DEFAULT_CURRENCY
    admin_recipient_id: str = ADMIN_RECIPIENT_ID

    def __post_init__(self):
        if self.grace_period_hours <= 0:
            raise ValueError("grace_period_hours must be positive")
        if self.deposit_window_days <= 0:
            raise ValueError("deposit_window_days must be positive")
        self.withdrawal_fee_rate = Decimal(str(self.withdrawal_fee_rate))
        self.minimum_withdrawal = Decimal(str(self.minimum_withdrawal))
        if not (Decimal("0") <= self.withdrawal_fee_rate < Decimal("1")):
            raise ValueError("withdrawal_fee_rate must be in [0, 1)")
        if self.minimum_withdrawal <= 0:
            raise ValueError("minimum_withdrawal must be positive")
        if self.escrow_contract_address is not None and not _ADDRESS_RE.match(
            self.escrow_contract_address
        ):
            raise ValueError(f"Invalid escrow contract address: {self.escrow_contract_address}")

    @property
    def grace_period(self) -> timedelta:
        return timedelta(hours=self.grace_period_hours)

    @property
    def deposit_window(self) -> timedelta:
        return timedelta(days=self.deposit_window_days)

    @classmethod
    def from_env(cls) -> "CommerceConfig":
        """Build a config from ``GIGSETTLE_*`` environment variables.

        Unset variables fall back to the platform constants.
        """

        def _get(name: str) -> Optional[str]:
            value = os.environ.get(f"GIGSETTLE_{name}")
            return value.strip() if value and value.strip() else None

        kwargs = {}
        try:
            if _get("GRACE_PERIOD_HOURS"):
                kwargs["grace_period_hours"] = int(_get("GRACE_PERIOD_HOURS"))
            if _get("DEPOSIT_WINDOW_DAYS"):
                kwargs["deposit_window_days"] = int(_get("DEPOSIT_WINDOW_DAYS"))
            if _get("WITHDRAWAL_FEE_RATE"):
                kwargs["withdrawal_fee_rate"] = Decimal(_get("WITHDRAWAL_FEE_RATE"))
            if _get("MINIMUM_WITHDRAWAL"):
                kwargs["minimum_withdrawal"] = Decimal(_get("MINIMUM_WITHDRAWAL"))
            if _get("CHAIN_ID"):
                kwargs["chain_id"] = int(_get("CHAIN_ID"))
        except (ValueError, InvalidOperation) as e:
            raise ValueError(f"Invalid GIGSETTLE_* environment value: {e}") from e

        if _get("ESCROW_CONTRACT_ADDRESS"):
            kwargs["escrow_contract_address"] = _get("ESCROW_CONTRACT_ADDRESS")
        if _get("DEFAULT_CURRENCY"):
            kwargs["default_currency"] = _get("DEFAULT_CURRENCY")
        if _get("ADMIN_RECIPIENT_ID"):
            kwargs["admin_recipient_id"] = _get("ADMIN_RECIPIENT_ID")
        return cls(**kwargs)
