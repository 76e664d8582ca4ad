"""Escrow contract adapter.

The engine never signs or broadcasts transactions. Given an escrow
identifier, an adapter describes the contract call that releases payment;
the descriptor is stored on the milestone for an external signer.
"""

import re
from dataclasses import dataclass
from typing import Any, Dict, Protocol, Tuple, runtime_checkable

ADDRESS_PATTERN = re.compile(r"^0x[a-fA-F0-9]{40}$")

RELEASE_FUNCTION = "releaseMilestone"


class EscrowAdapterError(Exception):
    """Raised when a release descriptor cannot be produced."""


@dataclass(frozen=True)
class ReleaseDescriptor:
    """A payment-release call for an external signer to execute."""

    contract_address: str
    function_name: str
    arguments: Tuple[Any, ...]
    chain_id: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "contract_address": self.contract_address,
            "function_name": self.function_name,
            "arguments": list(self.arguments),
            "chain_id": self.chain_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReleaseDescriptor":
        return cls(
            contract_address=data["contract_address"],
            function_name=data["function_name"],
            arguments=tuple(data.get("arguments") or ()),
            chain_id=int(data["chain_id"]),
        )


@runtime_checkable
class EscrowAdapter(Protocol):
    """Pure read: no side effect on the adapter side."""

    def get_release_descriptor(self, escrow_id: int) -> ReleaseDescriptor:
        ...


class MilestoneEscrowAdapter:
    """Adapter for the milestone escrow contract deployed at a fixed address."""

    def __init__(
        self,
        contract_address: str,
        chain_id: int = 1,
        function_name: str = RELEASE_FUNCTION,
    ):
        if not ADDRESS_PATTERN.match(contract_address or ""):
            raise EscrowAdapterError(f"Invalid contract address: {contract_address!r}")
        if chain_id <= 0:
            raise EscrowAdapterError(f"Invalid chain id: {chain_id}")
        self.contract_address = contract_address
        self.chain_id = chain_id
        self.function_name = function_name

    def get_release_descriptor(self, escrow_id: int) -> ReleaseDescriptor:
        if isinstance(escrow_id, bool) or not isinstance(escrow_id, int) or escrow_id < 0:
            raise EscrowAdapterError(f"Invalid escrow id: {escrow_id!r}")
        return ReleaseDescriptor(
            contract_address=self.contract_address,
            function_name=self.function_name,
            arguments=(escrow_id,),
            chain_id=self.chain_id,
        )
