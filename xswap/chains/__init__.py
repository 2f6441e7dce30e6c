"""
Chain escrow adapters for xswap.

Each adapter provides a unified interface for:
- Locking funds under a hashlock and timelock
- Claiming with the preimage
- Refunding after the timelock
- Querying lock state
"""

from .base import EscrowAdapter
from .memory import InMemoryEscrowAdapter
from .evm import EVMEscrowAdapter
from .near import NEAREscrowAdapter
from .aptos import AptosEscrowAdapter

__all__ = [
    "EscrowAdapter", "InMemoryEscrowAdapter", "EVMEscrowAdapter", "NEAREscrowAdapter",
    "AptosEscrowAdapter",
]
