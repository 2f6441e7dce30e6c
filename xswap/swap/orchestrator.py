"""
Pair orchestrator for xswap.

Runs the four-transaction HTLC protocol between the two chains of a pair.
One orchestrator serves both directions; for a given direction leg A is the
source chain and leg B the destination chain.

Swap Flow (ETH -> NEAR example):
1. Maker escrows on ETH (leg A) under H, counterparty = resolver
2. Resolver escrows on NEAR (leg B) under the same H, counterparty = recipient
3. Maker claims leg B with the secret, revealing it on NEAR
4. Resolver claims leg A with the revealed secret

Leg A's timelock is later than leg B's by the safety margin, so the
resolver can always finish step 4 after step 3 happened.

If anything stalls, cancel_swap() refunds whatever is still locked once the
timelocks allow it.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..config import SwapConfig
from ..core import (
    ChainId, ChainOrderView, Direction, EscrowReceipt, LockState, Party, SwapOrder,
)
from ..errors import (
    AlreadyExists, Expired, InvalidAmount, InvalidTimelock, NotExpired,
    PartialProtocolFailure, SecretMismatchError, StatePreconditionError, SwapError,
    TimingError, TransientChainError, UnsupportedDirection, ValidationError,
)
from ..htlc.crypto import SECRET_SIZE, hashlocks_equal, normalize_hex, to_bytes, verify_preimage
from ..htlc.order import create_order_hash
from ..htlc.timelock import BidirectionalTimelocks, TimelockDirection, convert_timestamp, now_ms
from ..chains.base import EscrowAdapter
from .watcher import SwapMonitor

log = logging.getLogger(__name__)

STEP_NAMES = {
    1: "escrow_source",
    2: "escrow_destination",
    3: "claim_destination",
    4: "claim_source",
}


@dataclass(frozen=True)
class EscrowParams:
    """Everything the escrow steps need for one swap."""
    direction: Direction
    src_token: str
    dst_token: str
    src_amount: int
    dst_amount: int
    maker: str          # Maker address on the source chain
    recipient: str      # Maker address on the destination chain (receives leg B)
    resolver: str       # Resolver address on the source chain (receives leg A)
    hashlock: str
    timelocks: BidirectionalTimelocks
    order_hash: Optional[str] = None
    nonce: Optional[int] = None

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
class StepResult:
    """Outcome of one protocol step."""
    step: int
    order_hash: str
    chain: ChainId
    receipt: EscrowReceipt
    params: EscrowParams
    secret: Optional[str] = None    # Set from step 3 on
    skipped: bool = False           # Leg was already in the target state

    @property
    def name(self) -> str:
        return STEP_NAMES[self.step]

    @property
    def hashlock(self) -> str:
        return self.params.hashlock

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step": self.step,
            "name": self.name,
            "chain": self.chain.value,
            "order_hash": self.order_hash,
            "tx_hash": self.receipt.tx_hash,
            "skipped": self.skipped,
        }


@dataclass
class AtomicSwapResult:
    """Result of a full four-step run."""
    order_hash: str
    direction: Direction
    steps: List[StepResult] = field(default_factory=list)
    secret: Optional[str] = None

    @property
    def success(self) -> bool:
        return len(self.steps) == 4

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order_hash": self.order_hash,
            "direction": self.direction.name,
            "success": self.success,
            "steps": [s.to_dict() for s in self.steps],
        }


@dataclass(frozen=True)
class RefundResult:
    order_hash: str
    dst_refund: Optional[EscrowReceipt] = None
    src_refund: Optional[EscrowReceipt] = None

    @property
    def receipts(self) -> List[EscrowReceipt]:
        return [r for r in (self.dst_refund, self.src_refund) if r is not None]


@dataclass(frozen=True)
class SwapStatusView:
    """Lock state of both legs, queried together."""
    order_hash: str
    direction: Direction
    leg_a: ChainOrderView       # Source chain
    leg_b: ChainOrderView       # Destination chain

    @property
    def both_active(self) -> bool:
        return self.leg_a.active and self.leg_b.active

    @property
    def any_claimed(self) -> bool:
        return LockState.CLAIMED in (self.leg_a.state, self.leg_b.state)

    @property
    def all_claimed(self) -> bool:
        return self.leg_a.state == LockState.CLAIMED and self.leg_b.state == LockState.CLAIMED

    @property
    def any_refunded(self) -> bool:
        return LockState.REFUNDED in (self.leg_a.state, self.leg_b.state)

    @property
    def revealed_secret(self) -> Optional[str]:
        """Preimage published by a claim, when the chain exposes it."""
        return self.leg_b.raw.get("secret") or self.leg_a.raw.get("secret")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order_hash": self.order_hash,
            "direction": self.direction.name,
            "leg_a": {"chain": self.direction.src.value, **self.leg_a.to_dict()},
            "leg_b": {"chain": self.direction.dst.value, **self.leg_b.to_dict()},
            "both_active": self.both_active,
            "any_claimed": self.any_claimed,
            "all_claimed": self.all_claimed,
        }


class PairOrchestrator:
    """
    Four-step atomic swap protocol over one chain pair.

    Every adapter call goes through _call(), which retries
    TransientChainError up to config.max_retries attempts with exponential
    backoff. Any other error surfaces immediately.
    """

    def __init__(self, chain_a: EscrowAdapter, chain_b: EscrowAdapter,
                 config: Optional[SwapConfig] = None,
                 clock: Callable[[], int] = now_ms,
                 sleep: Callable[[float], None] = time.sleep):
        if chain_a.chain == chain_b.chain:
            raise ValidationError(f"Pair needs two distinct chains, got {chain_a.chain.value} twice")
        if chain_a.hash_algorithm != chain_b.hash_algorithm:
            raise ValidationError(
                f"Hashlock algorithms differ: {chain_a.chain.value} uses "
                f"{chain_a.hash_algorithm.value}, {chain_b.chain.value} uses "
                f"{chain_b.hash_algorithm.value}"
            )

        self.chain_a = chain_a
        self.chain_b = chain_b
        self.config = config or SwapConfig()
        self._clock = clock
        self._sleep = sleep
        self._pool = ThreadPoolExecutor(
            max_workers=4,
            thread_name_prefix=f"{chain_a.chain.value}-{chain_b.chain.value}",
        )

    def __repr__(self) -> str:
        return f"PairOrchestrator({self.chain_a.chain.value}<->{self.chain_b.chain.value})"

    @property
    def hash_algorithm(self):
        return self.chain_a.hash_algorithm

    @property
    def directions(self) -> List[Direction]:
        forward = Direction(self.chain_a.chain, self.chain_b.chain)
        return [forward, forward.reversed()]

    def timelock_direction(self, direction: Direction) -> TimelockDirection:
        self.legs(direction)
        if direction.src == self.chain_a.chain:
            return TimelockDirection.FORWARD
        return TimelockDirection.REVERSE

    def legs(self, direction: Direction) -> Tuple[EscrowAdapter, EscrowAdapter]:
        """(leg A adapter, leg B adapter) for a direction."""
        if direction == Direction(self.chain_a.chain, self.chain_b.chain):
            return self.chain_a, self.chain_b
        if direction == Direction(self.chain_b.chain, self.chain_a.chain):
            return self.chain_b, self.chain_a
        raise UnsupportedDirection(f"{self!r} does not serve {direction.name}")

    def settle(self):
        """Wait settle_delay between protocol steps."""
        if self.config.settle_delay > 0:
            self._sleep(self.config.settle_delay)

    def close(self):
        self._pool.shutdown(wait=False)
        self.chain_a.close()
        self.chain_b.close()

    # =========================================================================
    # Retry
    # =========================================================================

    def _call(self, fn: Callable, *args, **kwargs):
        """Call an adapter method, retrying transient chain errors."""
        delay = self.config.retry_delay
        attempts = max(1, self.config.max_retries)

        for attempt in range(1, attempts + 1):
            try:
                return fn(*args, **kwargs)
            except TransientChainError as e:
                if attempt >= attempts:
                    log.error(f"Giving up after {attempt} attempts: {e}")
                    raise
                log.warning(f"Transient chain error (attempt {attempt}/{attempts}): {e}; "
                            f"retrying in {delay}s")
                self._sleep(delay)
                delay *= 2

    def _escrow_leg(self, adapter: EscrowAdapter, order_hash: str, counterparty: str,
                    token: str, amount: int, hashlock: str, timelock_ms: int,
                    party: Party) -> EscrowReceipt:
        """
        Escrow with retry.

        A transient failure can hide a lock that did land; AlreadyExists on a
        later attempt is accepted when the existing lock carries our hashlock.
        """
        timelock_native = convert_timestamp(timelock_ms, adapter.time_unit)
        delay = self.config.retry_delay
        attempts = max(1, self.config.max_retries)
        saw_transient = False

        for attempt in range(1, attempts + 1):
            try:
                return adapter.escrow(order_hash, counterparty, token, amount,
                                      hashlock, timelock_native, party=party)
            except AlreadyExists:
                if not saw_transient:
                    raise
                view = adapter.query_active(order_hash)
                if view.state == LockState.ACTIVE and hashlocks_equal(view.raw.get("hashlock", ""), hashlock):
                    log.warning(f"Escrow {order_hash[:16]}... on {adapter.chain.value} "
                                f"landed during a transient failure")
                    return EscrowReceipt(chain=adapter.chain, order_hash=order_hash,
                                         action="escrow", tx_hash="",
                                         timestamp_ms=self._clock(), raw={"recovered": True})
                raise
            except TransientChainError as e:
                saw_transient = True
                if attempt >= attempts:
                    log.error(f"Giving up escrow after {attempt} attempts: {e}")
                    raise
                log.warning(f"Transient chain error on escrow (attempt {attempt}/{attempts}): {e}; "
                            f"retrying in {delay}s")
                self._sleep(delay)
                delay *= 2

    # =========================================================================
    # Protocol steps
    # =========================================================================

    def escrow_source(self, params: EscrowParams) -> StepResult:
        """
        Step 1: maker locks funds on the source chain.

        Raises:
            UnsupportedDirection, InvalidAmount, ValidationError, InvalidTimelock,
            plus adapter escrow errors
        """
        leg_a, _ = self.legs(params.direction)

        if int(params.src_amount) <= 0:
            raise InvalidAmount("Source amount must be greater than 0")
        try:
            hashlock_ok = len(to_bytes(params.hashlock)) == SECRET_SIZE
        except ValueError:
            hashlock_ok = False
        if not hashlock_ok:
            raise ValidationError("Hashlock must be 32 bytes (64 hex characters)")

        now = self._clock()
        timelock = params.timelocks.src_leg.timelock
        if timelock - now < self.config.min_timelock_margin_ms:
            raise InvalidTimelock(
                f"Source timelock must be at least {self.config.min_timelock_margin_seconds}s "
                f"in the future"
            )
        if timelock - now > self.config.max_timelock_horizon_ms:
            raise InvalidTimelock(
                f"Source timelock more than {self.config.max_timelock_horizon_seconds}s ahead"
            )

        order_hash = params.order_hash or create_order_hash(
            params.order_terms(), params.hashlock, params.nonce
        )
        order_hash = normalize_hex(order_hash)

        log.info(f"Step 1: maker escrow on {leg_a.chain.value} for {order_hash[:16]}...")
        receipt = self._escrow_leg(leg_a, order_hash, params.resolver, params.src_token,
                                   int(params.src_amount), params.hashlock, timelock,
                                   Party.MAKER)
        return StepResult(step=1, order_hash=order_hash, chain=leg_a.chain,
                          receipt=receipt, params=params)

    def escrow_destination(self, step1: StepResult, params: EscrowParams) -> StepResult:
        """
        Step 2: resolver locks funds on the destination chain under the same hashlock.

        Raises:
            ValidationError (missing step 1 / hashlock mismatch), InvalidAmount,
            InvalidTimelock, plus adapter escrow errors
        """
        if step1 is None or step1.step != 1 or step1.receipt is None:
            raise ValidationError("Destination escrow requires a completed source escrow")
        if not hashlocks_equal(step1.hashlock, params.hashlock):
            raise ValidationError("Hashlock mismatch between legs", order_hash=step1.order_hash)
        if step1.params.direction != params.direction:
            raise ValidationError("Direction mismatch between legs", order_hash=step1.order_hash)

        _, leg_b = self.legs(params.direction)
        order_hash = step1.order_hash

        if int(params.dst_amount) <= 0:
            raise InvalidAmount("Destination amount must be greater than 0", order_hash=order_hash)

        timelock = params.timelocks.dst_leg.timelock
        if timelock <= self._clock():
            raise InvalidTimelock("Destination timelock already passed", order_hash=order_hash)
        if timelock >= params.timelocks.src_leg.timelock:
            raise InvalidTimelock("Destination timelock must expire before the source timelock",
                                  order_hash=order_hash)

        log.info(f"Step 2: resolver escrow on {leg_b.chain.value} for {order_hash[:16]}...")
        receipt = self._escrow_leg(leg_b, order_hash, params.recipient, params.dst_token,
                                   int(params.dst_amount), params.hashlock, timelock,
                                   Party.RESOLVER)
        return StepResult(step=2, order_hash=order_hash, chain=leg_b.chain,
                          receipt=receipt, params=params)

    def claim_destination(self, step2: StepResult, secret: str) -> StepResult:
        """
        Step 3: maker claims the destination leg, revealing the secret.

        Raises:
            Expired, SecretMismatchError (no chain call), plus adapter claim errors
        """
        params = step2.params
        _, leg_b = self.legs(params.direction)
        order_hash = step2.order_hash

        if self._clock() > params.timelocks.dst_leg.timelock:
            raise Expired("Destination leg expired, secret must not be revealed",
                          order_hash=order_hash)
        if not verify_preimage(secret, params.hashlock, self.hash_algorithm):
            raise SecretMismatchError("Secret does not match hashlock", order_hash=order_hash)

        secret = normalize_hex(secret)
        log.info(f"Step 3: maker claims {leg_b.chain.value} for {order_hash[:16]}... "
                 f"(secret {secret[:16]}...)")
        receipt = self._call(leg_b.claim, order_hash, secret, party=Party.MAKER)
        return StepResult(step=3, order_hash=order_hash, chain=leg_b.chain,
                          receipt=receipt, params=params, secret=secret)

    def claim_source(self, step3: StepResult) -> StepResult:
        """
        Step 4: resolver claims the source leg with the revealed secret.

        Raises:
            Expired, plus adapter claim errors
        """
        params = step3.params
        leg_a, _ = self.legs(params.direction)
        order_hash = step3.order_hash

        if not step3.secret:
            raise ValidationError("Source claim requires the revealed secret", order_hash=order_hash)
        if self._clock() > params.timelocks.src_leg.timelock:
            raise Expired("Source leg expired", order_hash=order_hash)

        log.info(f"Step 4: resolver claims {leg_a.chain.value} for {order_hash[:16]}...")
        receipt = self._call(leg_a.claim, order_hash, step3.secret, party=Party.RESOLVER)
        return StepResult(step=4, order_hash=order_hash, chain=leg_a.chain,
                          receipt=receipt, params=params, secret=step3.secret)

    # =========================================================================
    # Composite operations
    # =========================================================================

    def execute_atomic_swap(self, params: EscrowParams, secret: str) -> AtomicSwapResult:
        """
        Run steps 1-4 with settle_delay between them.

        Raises:
            The step 1 error when nothing was escrowed;
            PartialProtocolFailure once any leg is locked
        """
        step1 = self.escrow_source(params)
        result = AtomicSwapResult(order_hash=step1.order_hash, direction=params.direction,
                                  steps=[step1], secret=normalize_hex(secret))

        def run(step_no: int, fn: Callable, *args) -> StepResult:
            self.settle()
            try:
                step = fn(*args)
            except SwapError as e:
                log.error(f"Swap {step1.order_hash[:16]}... failed at step {step_no}: {e}")
                raise PartialProtocolFailure(
                    f"Step {step_no} ({STEP_NAMES[step_no]}) failed: {e}",
                    order_hash=step1.order_hash, steps=list(result.steps),
                    cause=e, failed_step=step_no,
                ) from e
            result.steps.append(step)
            return step

        step2 = run(2, self.escrow_destination, step1, params)
        step3 = run(3, self.claim_destination, step2, secret)
        run(4, self.claim_source, step3)

        log.info(f"Atomic swap {step1.order_hash[:16]}... completed ({params.direction.name})")
        return result

    def params_for(self, order: SwapOrder) -> EscrowParams:
        return EscrowParams(
            direction=order.direction,
            src_token=order.src_token,
            dst_token=order.dst_token,
            src_amount=order.src_amount,
            dst_amount=order.dst_amount,
            maker=order.maker,
            recipient=order.recipient,
            resolver=order.resolver or "",
            hashlock=order.hashlock,
            timelocks=order.timelocks,
            order_hash=order.order_hash,
            nonce=order.nonce,
        )

    def complete_swap(self, order: SwapOrder, secret: str) -> List[StepResult]:
        """
        Claim path for a registered swap (steps 3-4).

        Re-entrant: a leg already claimed on-chain is skipped.

        Returns:
            [step3, step4]

        Raises:
            PartialProtocolFailure when step 4 fails after step 3 succeeded
        """
        if order.src_escrow is None or order.dst_escrow is None:
            raise ValidationError("Both escrows must be recorded before claiming",
                                  order_hash=order.order_hash)

        params = self.params_for(order)
        leg_a, leg_b = self.legs(order.direction)
        secret = normalize_hex(secret)

        step2 = StepResult(step=2, order_hash=order.order_hash, chain=leg_b.chain,
                           receipt=order.dst_escrow, params=params)

        dst_view = self._call(leg_b.query_active, order.order_hash)
        if dst_view.state == LockState.CLAIMED:
            log.info(f"Destination of {order.order_hash[:16]}... already claimed, skipping step 3")
            receipt = order.dst_claim or EscrowReceipt(
                chain=leg_b.chain, order_hash=order.order_hash, action="claim", tx_hash="",
                timestamp_ms=self._clock(),
            )
            step3 = StepResult(step=3, order_hash=order.order_hash, chain=leg_b.chain,
                               receipt=receipt, params=params, secret=secret, skipped=True)
        else:
            step3 = self.claim_destination(step2, secret)
            self.settle()

        src_view = self._call(leg_a.query_active, order.order_hash)
        if src_view.state == LockState.CLAIMED:
            log.info(f"Source of {order.order_hash[:16]}... already claimed, skipping step 4")
            receipt = order.src_claim or EscrowReceipt(
                chain=leg_a.chain, order_hash=order.order_hash, action="claim", tx_hash="",
                timestamp_ms=self._clock(),
            )
            return [step3, StepResult(step=4, order_hash=order.order_hash, chain=leg_a.chain,
                                      receipt=receipt, params=params, secret=secret,
                                      skipped=True)]

        try:
            step4 = self.claim_source(step3)
        except SwapError as e:
            raise PartialProtocolFailure(
                f"Secret revealed but source claim failed: {e}",
                order_hash=order.order_hash, steps=[step3], cause=e, failed_step=4,
            ) from e
        return [step3, step4]

    def cancel_swap(self, order_hash: str, direction: Direction) -> RefundResult:
        """
        Refund every leg that is still locked, destination first.

        A claimed destination leg means the secret is public; the source leg
        then belongs to the resolver and is never refunded.

        Raises:
            TimingError when a leg cannot be refunded yet; `receipts` holds
            the refunds that did land
            StatePreconditionError when the destination leg is claimed
        """
        leg_a, leg_b = self.legs(direction)
        order_hash = normalize_hex(order_hash)
        refunds: Dict[str, EscrowReceipt] = {}

        for role, adapter, party in (("dst", leg_b, Party.RESOLVER), ("src", leg_a, Party.MAKER)):
            view = self._call(adapter.query_active, order_hash)
            if role == "dst" and view.state == LockState.CLAIMED:
                raise StatePreconditionError(
                    f"Destination leg on {adapter.chain.value} already claimed, "
                    f"source leg must be claimed, not refunded",
                    order_hash=order_hash,
                )
            if view.state not in (LockState.ACTIVE, LockState.EXPIRED):
                log.info(f"Nothing to refund on {adapter.chain.value} for {order_hash[:16]}... "
                         f"({view.state.value})")
                continue
            try:
                refunds[role] = self._call(adapter.refund, order_hash, party=party)
            except NotExpired as e:
                raise TimingError(
                    f"Refund too early on {adapter.chain.value}: {e.message}",
                    order_hash=order_hash, receipts=list(refunds.values()),
                ) from e
            log.info(f"Refunded {adapter.chain.value} leg of {order_hash[:16]}...")

        return RefundResult(order_hash=order_hash, dst_refund=refunds.get("dst"),
                            src_refund=refunds.get("src"))

    def get_swap_status(self, order_hash: str, direction: Direction) -> SwapStatusView:
        """Query both legs concurrently."""
        leg_a, leg_b = self.legs(direction)
        future_a = self._pool.submit(self._call, leg_a.query_active, order_hash)
        future_b = self._pool.submit(self._call, leg_b.query_active, order_hash)
        return SwapStatusView(order_hash=order_hash, direction=direction,
                              leg_a=future_a.result(), leg_b=future_b.result())

    def monitor_swap(self, order_hash: str, direction: Direction, expires_at_ms: int,
                     on_complete: Callable, on_expire: Callable,
                     on_tick: Optional[Callable] = None,
                     poll_interval: Optional[float] = None) -> SwapMonitor:
        """Start a SwapMonitor polling both legs of a swap."""
        self.legs(direction)
        monitor = SwapMonitor(
            order_hash,
            poll=lambda: self.get_swap_status(order_hash, direction),
            expires_at_ms=expires_at_ms,
            on_complete=on_complete,
            on_expire=on_expire,
            on_tick=on_tick,
            poll_interval=self.config.poll_interval if poll_interval is None else poll_interval,
            clock=self._clock,
        )
        monitor.start()
        return monitor
