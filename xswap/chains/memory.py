"""
In-memory escrow backend.

A deterministic simulated chain: locks live in a dict, time comes from an
injectable clock (ms), tx hashes from a counter. It enforces the same rules
as the on-chain escrow programs, so the orchestrator and manager can be run
end to end without a node. Used by the tests and by dry runs of the example.
"""

import hashlib
import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set, Tuple

from ..core import ChainId, ChainOrderView, EscrowReceipt, LockState, Party
from ..errors import (
    AlreadyExists, Expired, InvalidAmount, InvalidSecret, InvalidTimelock,
    NotActive, NotExpired, NotFound, Unsupported, ValidationError,
)
from ..htlc.crypto import SECRET_SIZE, HashAlgorithm, normalize_hex, verify_preimage
from ..htlc.timelock import ChainTimeUnit, convert_timestamp, now_ms
from .base import EscrowAdapter

log = logging.getLogger(__name__)


@dataclass
class SimulatedLock:
    """One escrowed amount on the simulated chain."""
    order_hash: str
    depositor: Party
    counterparty: str
    token: str
    amount: int
    hashlock: str
    timelock: int               # Native unit
    state: LockState = LockState.ACTIVE
    preimage: Optional[str] = None
    txs: List[str] = field(default_factory=list)


class InMemoryEscrowAdapter(EscrowAdapter):
    """
    Simulated escrow program for one chain.

    Every call is appended to `calls` as (action, order_hash), including
    calls that fail, so tests can assert that no chain call happened.
    """

    def __init__(self, chain: ChainId, clock: Callable[[], int] = now_ms,
                 time_unit: Optional[ChainTimeUnit] = None,
                 hash_algorithm: HashAlgorithm = HashAlgorithm.SHA256,
                 supported_tokens: Optional[Set[str]] = None,
                 addresses: Optional[Dict[str, str]] = None):
        super().__init__(chain, time_unit, hash_algorithm)
        prefix = chain.value.lower()
        self.addresses = addresses or {
            Party.MAKER.value: f"{prefix}-maker",
            Party.RESOLVER.value: f"{prefix}-resolver",
        }
        self._clock = clock
        self._locks: Dict[str, SimulatedLock] = {}
        self._lock = threading.Lock()
        self._tx_counter = 0
        self._failures: Dict[str, List[Exception]] = {}
        self.supported_tokens = supported_tokens
        self.calls: List[Tuple[str, str]] = []

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _now_native(self) -> int:
        return convert_timestamp(self._clock(), self.time_unit)

    def _next_tx_hash(self, action: str, order_hash: str) -> str:
        self._tx_counter += 1
        seed = f"{self.chain.value}:{action}:{order_hash}:{self._tx_counter}"
        return "0x" + hashlib.sha256(seed.encode()).hexdigest()

    def _receipt(self, action: str, order_hash: str, **raw) -> EscrowReceipt:
        tx_hash = self._next_tx_hash(action, order_hash)
        self._locks[order_hash].txs.append(tx_hash)
        return EscrowReceipt(
            chain=self.chain,
            order_hash=order_hash,
            action=action,
            tx_hash=tx_hash,
            timestamp_ms=self._clock(),
            raw=raw,
        )

    def _record(self, action: str, order_hash: str):
        self.calls.append((action, order_hash))
        queued = self._failures.get(action)
        if queued:
            raise queued.pop(0)

    def fail_next(self, action: str, error: Exception, times: int = 1):
        """Make the next `times` calls of `action` raise `error` (RPC faults)."""
        with self._lock:
            self._failures.setdefault(action, []).extend([error] * times)

    def wallet_addresses(self) -> Dict[str, str]:
        return dict(self.addresses)

    def calls_for(self, order_hash: str) -> List[str]:
        return [action for action, h in self.calls if h == order_hash]

    def get_lock(self, order_hash: str) -> Optional[SimulatedLock]:
        return self._locks.get(normalize_hex(order_hash))

    # -------------------------------------------------------------------------
    # EscrowAdapter
    # -------------------------------------------------------------------------

    def escrow(self, order_hash: str, counterparty: str, token: str, amount: int,
               hashlock: str, timelock_native: int,
               party: Party = Party.MAKER) -> EscrowReceipt:
        order_hash = normalize_hex(order_hash)
        with self._lock:
            self._record("escrow", order_hash)

            if order_hash in self._locks:
                raise AlreadyExists("Order already exists", order_hash=order_hash)
            if self.supported_tokens is not None and token not in self.supported_tokens:
                raise Unsupported(f"Token {token} not supported on {self.chain.value}",
                                  order_hash=order_hash)
            if amount is None or int(amount) <= 0:
                raise InvalidAmount("Amount must be greater than 0", order_hash=order_hash)
            try:
                hashlock_bytes = bytes.fromhex(normalize_hex(hashlock))
            except ValueError:
                hashlock_bytes = b""
            if len(hashlock_bytes) != SECRET_SIZE:
                raise ValidationError("Invalid hash lock length", order_hash=order_hash)
            if timelock_native <= self._now_native():
                raise InvalidTimelock("Timelock must be in the future", order_hash=order_hash)

            self._locks[order_hash] = SimulatedLock(
                order_hash=order_hash,
                depositor=party,
                counterparty=counterparty,
                token=token,
                amount=int(amount),
                hashlock=hashlock_bytes.hex(),
                timelock=int(timelock_native),
            )
            receipt = self._receipt("escrow", order_hash, amount=int(amount),
                                    timelock=int(timelock_native))

        log.info(f"[{self.chain.value}] escrowed {amount} {token} for {order_hash[:16]}... "
                 f"(timelock {timelock_native})")
        return receipt

    def claim(self, order_hash: str, secret: str,
              party: Party = Party.RESOLVER) -> EscrowReceipt:
        order_hash = normalize_hex(order_hash)
        with self._lock:
            self._record("claim", order_hash)

            lock = self._locks.get(order_hash)
            if lock is None:
                raise NotFound("Order not found", order_hash=order_hash)
            if lock.state != LockState.ACTIVE:
                raise NotActive("Order not active", order_hash=order_hash)
            if self._now_native() > lock.timelock:
                raise Expired("HTLC expired", order_hash=order_hash)
            if not verify_preimage(secret, lock.hashlock, self.hash_algorithm):
                raise InvalidSecret("Invalid secret", order_hash=order_hash)

            lock.state = LockState.CLAIMED
            lock.preimage = normalize_hex(secret)
            receipt = self._receipt("claim", order_hash, secret=lock.preimage)

        log.info(f"[{self.chain.value}] claimed {order_hash[:16]}... "
                 f"(secret {lock.preimage[:16]}...)")
        return receipt

    def refund(self, order_hash: str, party: Party = Party.MAKER) -> EscrowReceipt:
        order_hash = normalize_hex(order_hash)
        with self._lock:
            self._record("refund", order_hash)

            lock = self._locks.get(order_hash)
            if lock is None:
                raise NotFound("Order not found", order_hash=order_hash)
            if lock.state != LockState.ACTIVE:
                raise NotActive("Order not active", order_hash=order_hash)
            if self._now_native() <= lock.timelock:
                raise NotExpired("HTLC not expired", order_hash=order_hash)

            lock.state = LockState.REFUNDED
            receipt = self._receipt("refund", order_hash, amount=lock.amount)

        log.info(f"[{self.chain.value}] refunded {order_hash[:16]}...")
        return receipt

    def query_active(self, order_hash: str) -> ChainOrderView:
        order_hash = normalize_hex(order_hash)
        with self._lock:
            self._record("query", order_hash)

            lock = self._locks.get(order_hash)
            if lock is None:
                return ChainOrderView(active=False, state=LockState.MISSING)

            state = lock.state
            if state == LockState.ACTIVE and self._now_native() > lock.timelock:
                state = LockState.EXPIRED

            raw = {
                "counterparty": lock.counterparty,
                "token": lock.token,
                "amount": lock.amount,
                "hashlock": lock.hashlock,
                "timelock": lock.timelock,
            }
            if lock.preimage:
                raw["secret"] = lock.preimage

        return ChainOrderView(active=state == LockState.ACTIVE, state=state, raw=raw)
