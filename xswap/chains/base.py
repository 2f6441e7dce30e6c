"""
Escrow adapter interface.

Each chain backend implements the same four capabilities against its own
escrow program:
- escrow: lock funds under a hashlock and a timelock
- claim: release funds given the preimage
- refund: return funds to the depositor after the timelock
- query_active: current lock state

Adapters report failures with the errors of xswap.errors (AlreadyExists,
NotFound, NotExpired, ...). Network trouble is TransientChainError, which
the orchestrator retries; everything else is final.
"""

from abc import ABC, abstractmethod
from typing import Dict, Optional

from ..core import ChainId, ChainOrderView, EscrowReceipt, Party, CHAIN_TIME_UNITS
from ..htlc.crypto import HashAlgorithm
from ..htlc.timelock import ChainTimeUnit


class EscrowAdapter(ABC):
    """Abstract base class for chain escrow backends."""

    def __init__(self, chain: ChainId, time_unit: Optional[ChainTimeUnit] = None,
                 hash_algorithm: HashAlgorithm = HashAlgorithm.SHA256):
        self.chain = chain
        self.time_unit = time_unit or CHAIN_TIME_UNITS[chain]
        self.hash_algorithm = hash_algorithm

    @abstractmethod
    def escrow(self, order_hash: str, counterparty: str, token: str, amount: int,
               hashlock: str, timelock_native: int,
               party: Party = Party.MAKER) -> EscrowReceipt:
        """
        Lock funds for `counterparty` under hashlock/timelock.

        Args:
            order_hash: Correlation key (64 hex chars)
            counterparty: Who can claim with the preimage
            token: Token identifier on this chain
            amount: Smallest units
            hashlock: 32-byte hashlock (hex)
            timelock_native: Expiry in this chain's time unit
            party: Role whose wallet funds and signs the lock

        Raises:
            AlreadyExists, InvalidAmount, InvalidTimelock, Unsupported
        """

    @abstractmethod
    def claim(self, order_hash: str, secret: str,
              party: Party = Party.RESOLVER) -> EscrowReceipt:
        """
        Release funds to the counterparty by revealing the preimage.

        Raises:
            NotFound, NotActive, Expired, InvalidSecret
        """

    @abstractmethod
    def refund(self, order_hash: str, party: Party = Party.MAKER) -> EscrowReceipt:
        """
        Return funds to the depositor after the timelock.

        Raises:
            NotFound, NotActive, NotExpired
        """

    @abstractmethod
    def query_active(self, order_hash: str) -> ChainOrderView:
        """Lock state for an order hash. MISSING when nothing is escrowed."""

    def wallet_addresses(self) -> Dict[str, str]:
        """Signer address per party role (maker, resolver), where known."""
        return {}

    def close(self):
        """Release network resources."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.chain.value})"
