"""Escrow subsystem for gigsettle.

Funds for an accepted bid are held by an on-chain escrow contract. The engine
only records release descriptors; signing and broadcasting happen elsewhere.

Modules:
- adapter.py: ReleaseDescriptor, the EscrowAdapter protocol and the
  milestone escrow contract adapter
"""

from gigsettle.commerce.escrow.adapter import (
    RELEASE_FUNCTION,
    EscrowAdapter,
    EscrowAdapterError,
    MilestoneEscrowAdapter,
    ReleaseDescriptor,
)

__all__ = [
    "RELEASE_FUNCTION",
    "EscrowAdapter",
    "EscrowAdapterError",
    "MilestoneEscrowAdapter",
    "ReleaseDescriptor",
]
