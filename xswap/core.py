"""
Core types and interfaces for xswap SDK.
"""

import dataclasses
from enum import Enum
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List, Tuple, Union

from .errors import StatePreconditionError, UnsupportedDirection
from .htlc.timelock import BidirectionalTimelocks, ChainTimeUnit, now_ms


class ChainId(Enum):
    """Chains with an escrow backend."""
    ETH = "ETH"         # EVM (Base Sepolia by default)
    NEAR = "NEAR"
    APTOS = "APTOS"

    @classmethod
    def parse(cls, value: Union[str, "ChainId"]) -> "ChainId":
        if isinstance(value, ChainId):
            return value
        key = str(value).strip().upper()
        key = CHAIN_ALIASES.get(key, key)
        try:
            return cls(key)
        except ValueError:
            raise UnsupportedDirection(f"Unsupported chain: {value}")


# Names the UI and older configs use for the same chains
CHAIN_ALIASES = {
    "BASE": "ETH",
    "BASE_SEPOLIA": "ETH",
    "ETHEREUM": "ETH",
    "EVM": "ETH",
    "APT": "APTOS",
}

# Native clock unit of each chain's escrow program
CHAIN_TIME_UNITS = {
    ChainId.ETH: ChainTimeUnit.SECONDS,
    ChainId.NEAR: ChainTimeUnit.NANOSECONDS,
    ChainId.APTOS: ChainTimeUnit.SECONDS,
}


@dataclass(frozen=True)
class Direction:
    """Directional chain pair: funds leave `src`, arrive on `dst`."""
    src: ChainId
    dst: ChainId

    def __post_init__(self):
        if self.src == self.dst:
            raise UnsupportedDirection(f"Source and destination are both {self.src.value}")

    @property
    def name(self) -> str:
        return f"{self.src.value}_TO_{self.dst.value}"

    def reversed(self) -> "Direction":
        return Direction(self.dst, self.src)

    @classmethod
    def of(cls, src: Union[str, ChainId], dst: Union[str, ChainId]) -> "Direction":
        return cls(ChainId.parse(src), ChainId.parse(dst))

    @classmethod
    def parse(cls, name: str) -> "Direction":
        """Parse "ETH_TO_NEAR" style names."""
        parts = name.upper().split("_TO_")
        if len(parts) != 2:
            raise UnsupportedDirection(f"Malformed direction: {name}")
        return cls.of(parts[0], parts[1])

    def __str__(self) -> str:
        return self.name


class Party(Enum):
    """Swap role; selects the wallet an adapter signs with."""
    MAKER = "maker"         # Locks source funds, reveals the secret on the destination
    RESOLVER = "resolver"   # Locks destination funds, claims the source with the secret


class SwapStatus(Enum):
    """Registry-level swap status."""
    INITIATED = "INITIATED"     # Both escrows submitted
    DEPOSITED = "DEPOSITED"     # Both escrows observed active on-chain
    COMPLETED = "COMPLETED"     # Both legs claimed
    EXPIRED = "EXPIRED"         # Expiration reached, awaiting refund
    CANCELLED = "CANCELLED"     # Refunded


ACTIVE_STATUSES = (SwapStatus.INITIATED, SwapStatus.DEPOSITED)
TERMINAL_STATUSES = (SwapStatus.COMPLETED, SwapStatus.CANCELLED)


class LockState(Enum):
    """On-chain state of one escrow leg."""
    MISSING = "missing"
    ACTIVE = "active"
    CLAIMED = "claimed"
    REFUNDED = "refunded"
    EXPIRED = "expired"         # Timelock elapsed, not yet refunded


@dataclass(frozen=True)
class EscrowReceipt:
    """Chain-specific receipt for an escrow/claim/refund transaction."""
    chain: ChainId
    order_hash: str
    action: str                 # escrow, claim, refund
    tx_hash: str
    timestamp_ms: int = 0
    raw: Dict[str, Any] = field(default_factory=dict, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chain": self.chain.value,
            "order_hash": self.order_hash,
            "action": self.action,
            "tx_hash": self.tx_hash,
            "timestamp_ms": self.timestamp_ms,
        }


@dataclass(frozen=True)
class ChainOrderView:
    """Result of query_active on one leg."""
    active: bool
    state: LockState
    raw: Dict[str, Any] = field(default_factory=dict, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return {"active": self.active, "state": self.state.value, "raw": self.raw}


@dataclass
class SwapRequest:
    """Request accepted by SwapManager.initiate_swap()."""
    src_chain: Union[str, ChainId]
    dst_chain: Union[str, ChainId]
    src_token: str
    dst_token: str
    src_amount: int             # Smallest unit (wei, yocto, octa)
    dst_amount: int
    recipient: str              # Maker's address on the destination chain
    maker: str = "unknown"      # Maker's address on the source chain
    resolver: Optional[str] = None  # Counterparty's address on the source chain
    timeout_minutes: int = 60
    nonce: Optional[int] = None

    @property
    def direction(self) -> Direction:
        return Direction.of(self.src_chain, self.dst_chain)

    def order_terms(self) -> Dict[str, Any]:
        return {
            "srcChain": self.direction.src.value,
            "dstChain": self.direction.dst.value,
            "srcToken": self.src_token,
            "dstToken": self.dst_token,
            "srcAmount": self.src_amount,
            "dstAmount": self.dst_amount,
            "maker": self.maker,
            "recipient": self.recipient,
        }


@dataclass(frozen=True)
class SwapOrder:
    """
    Aggregate record of one swap.

    Immutable: every protocol step produces a new value through one of the
    with_* transitions, which raise StatePreconditionError when the step is
    not legal from the current status.
    """
    order_hash: str
    direction: Direction
    src_token: str
    dst_token: str
    src_amount: int
    dst_amount: int
    maker: str
    recipient: str
    resolver: Optional[str]
    hashlock: str
    secret: Optional[str]       # Client-side only until revealed
    timelocks: BidirectionalTimelocks
    nonce: int
    status: SwapStatus = SwapStatus.INITIATED

    # Per-leg receipts
    src_escrow: Optional[EscrowReceipt] = None
    dst_escrow: Optional[EscrowReceipt] = None
    dst_claim: Optional[EscrowReceipt] = None
    src_claim: Optional[EscrowReceipt] = None
    dst_refund: Optional[EscrowReceipt] = None
    src_refund: Optional[EscrowReceipt] = None

    revealed_secret: Optional[str] = None

    # Timing (ms)
    created_at: int = 0
    deposited_at: Optional[int] = None
    completed_at: Optional[int] = None
    expired_at: Optional[int] = None
    cancelled_at: Optional[int] = None

    last_error: Optional[str] = None

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    @property
    def src_chain(self) -> ChainId:
        return self.direction.src

    @property
    def dst_chain(self) -> ChainId:
        return self.direction.dst

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def terminal_at(self) -> Optional[int]:
        if self.status == SwapStatus.COMPLETED:
            return self.completed_at
        if self.status == SwapStatus.CANCELLED:
            return self.cancelled_at
        return None

    @property
    def expires_at(self) -> int:
        """Expiration of the shorter (destination) leg, in ms."""
        return self.timelocks.phases.expiration

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def _require(self, allowed: Tuple[SwapStatus, ...], step: str):
        if self.status not in allowed:
            raise StatePreconditionError(
                f"Cannot {step} swap in status {self.status.value}",
                order_hash=self.order_hash,
            )

    def with_escrows(self, src_escrow: EscrowReceipt,
                     dst_escrow: EscrowReceipt) -> "SwapOrder":
        self._require((SwapStatus.INITIATED,), "record escrows of")
        if self.src_escrow or self.dst_escrow:
            raise StatePreconditionError("Escrows already recorded", order_hash=self.order_hash)
        return dataclasses.replace(self, src_escrow=src_escrow, dst_escrow=dst_escrow)

    def with_deposit_confirmed(self, at_ms: Optional[int] = None) -> "SwapOrder":
        self._require((SwapStatus.INITIATED,), "confirm deposits of")
        return dataclasses.replace(
            self, status=SwapStatus.DEPOSITED,
            deposited_at=at_ms if at_ms is not None else now_ms(),
        )

    def with_secret_revealed(self, secret: str,
                             dst_claim: Optional[EscrowReceipt] = None) -> "SwapOrder":
        self._require(ACTIVE_STATUSES + (SwapStatus.EXPIRED,), "reveal secret of")
        return dataclasses.replace(
            self, revealed_secret=secret, dst_claim=dst_claim or self.dst_claim,
        )

    def with_claims(self, dst_claim: Optional[EscrowReceipt],
                    src_claim: Optional[EscrowReceipt], secret: str,
                    at_ms: Optional[int] = None) -> "SwapOrder":
        self._require(ACTIVE_STATUSES + (SwapStatus.EXPIRED,), "complete")
        return dataclasses.replace(
            self,
            status=SwapStatus.COMPLETED,
            dst_claim=dst_claim or self.dst_claim,
            src_claim=src_claim or self.src_claim,
            revealed_secret=secret,
            completed_at=at_ms if at_ms is not None else now_ms(),
            last_error=None,
        )

    def with_expired(self, at_ms: Optional[int] = None) -> "SwapOrder":
        self._require(ACTIVE_STATUSES, "expire")
        return dataclasses.replace(
            self, status=SwapStatus.EXPIRED,
            expired_at=at_ms if at_ms is not None else now_ms(),
        )

    def with_refunds(self, dst_refund: Optional[EscrowReceipt],
                     src_refund: Optional[EscrowReceipt],
                     at_ms: Optional[int] = None) -> "SwapOrder":
        self._require(ACTIVE_STATUSES + (SwapStatus.EXPIRED,), "cancel")
        return dataclasses.replace(
            self,
            status=SwapStatus.CANCELLED,
            dst_refund=dst_refund or self.dst_refund,
            src_refund=src_refund or self.src_refund,
            cancelled_at=at_ms if at_ms is not None else now_ms(),
            last_error=None,
        )

    def with_partial_refunds(self, dst_refund: Optional[EscrowReceipt],
                             src_refund: Optional[EscrowReceipt]) -> "SwapOrder":
        """Record refunds that landed while another leg was still locked."""
        self._require(ACTIVE_STATUSES + (SwapStatus.EXPIRED,), "refund")
        return dataclasses.replace(
            self,
            dst_refund=dst_refund or self.dst_refund,
            src_refund=src_refund or self.src_refund,
        )

    def with_error(self, message: str) -> "SwapOrder":
        return dataclasses.replace(self, last_error=message)

    # -------------------------------------------------------------------------

    def to_dict(self, include_secret: bool = False) -> Dict[str, Any]:
        def receipt(r: Optional[EscrowReceipt]):
            return r.to_dict() if r else None

        data = {
            "order_hash": self.order_hash,
            "direction": self.direction.name,
            "src_chain": self.src_chain.value,
            "dst_chain": self.dst_chain.value,
            "src_token": self.src_token,
            "dst_token": self.dst_token,
            "src_amount": str(self.src_amount),
            "dst_amount": str(self.dst_amount),
            "maker": self.maker,
            "recipient": self.recipient,
            "resolver": self.resolver,
            "hashlock": self.hashlock,
            "nonce": self.nonce,
            "status": self.status.value,
            "timelocks": self.timelocks.to_dict(),
            "receipts": {
                "src_escrow": receipt(self.src_escrow),
                "dst_escrow": receipt(self.dst_escrow),
                "dst_claim": receipt(self.dst_claim),
                "src_claim": receipt(self.src_claim),
                "dst_refund": receipt(self.dst_refund),
                "src_refund": receipt(self.src_refund),
            },
            "revealed_secret": self.revealed_secret,
            "created_at": self.created_at,
            "deposited_at": self.deposited_at,
            "completed_at": self.completed_at,
            "expired_at": self.expired_at,
            "cancelled_at": self.cancelled_at,
            "error": self.last_error,
        }
        if include_secret:
            data["secret"] = self.secret
        return data


# =============================================================================
# Constants
# =============================================================================

# Swap pairs served by the default deployment (chain A, chain B)
SUPPORTED_PAIRS: List[Tuple[ChainId, ChainId]] = [
    (ChainId.ETH, ChainId.NEAR),
    (ChainId.ETH, ChainId.APTOS),
]

# Token symbol -> per-chain token identifier
TOKEN_MAPPINGS = {
    "ETH": {
        ChainId.ETH: "0x0000000000000000000000000000000000000000",  # Native ETH
        ChainId.NEAR: "NEAR",
        ChainId.APTOS: "0x1::aptos_coin::AptosCoin",
    },
    "USDC": {
        ChainId.ETH: "0x036CbD53842c5426634e7929541eC2318f3dCF7e",  # USDC on Base Sepolia
        ChainId.NEAR: "usdc.fakes.testnet",
    },
    "USDT": {
        ChainId.NEAR: "usdt.fakes.testnet",
    },
}

# Smallest-unit decimals of native assets
NATIVE_DECIMALS = {
    ChainId.ETH: 18,     # wei
    ChainId.NEAR: 24,    # yoctoNEAR
    ChainId.APTOS: 8,    # octa
}


def to_smallest_unit(amount: float, chain: ChainId) -> int:
    """Convert a display amount of the chain's native asset to smallest units."""
    return int(round(amount * (10 ** NATIVE_DECIMALS[chain])))


def from_smallest_unit(amount: int, chain: ChainId) -> float:
    """Convert smallest units of the chain's native asset to a display amount."""
    return amount / (10 ** NATIVE_DECIMALS[chain])
