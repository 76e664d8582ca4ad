"""
gigsettle - Job, bid and milestone settlement engine.

Escrowed milestone payments for a freelance marketplace: bid acceptance,
milestone approval and auto-release, an earnings ledger, and withdrawals.
"""

from .commerce.config import CommerceConfig
from .commerce.engine import SettlementEngine

try:
    from importlib.metadata import version

    __version__ = version("gigsettle")
except Exception:
    __version__ = "0.0.0"

__all__ = ["CommerceConfig", "SettlementEngine"]
