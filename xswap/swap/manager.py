"""
Swap manager for xswap.

Owns the lifecycle of every swap this process coordinates:
- initiate_swap: secret, timelocks, order hash, escrow steps 1-2, register
- refresh_swap: fold on-chain lock states into the swap record
- complete_swap: claim steps 3-4
- cancel_swap: refund path once timelocks allow it

Every swap has a registry entry holding its immutable SwapOrder, its
HTLCStateMachine, its SwapMonitor and its expiry timer (auto-cancel, or a
source-claim retry once the secret is public). State-changing
operations on one order hash are serialized by a per-key lock; no lock is
shared between swaps.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

from ..config import SwapConfig
from ..core import Direction, LockState, SwapOrder, SwapRequest, SwapStatus
from ..errors import (
    AlreadyExists, ConflictError, Expired, InvalidAmount, InvalidTimelock, NotExpired,
    NotFound, PartialProtocolFailure, StatePreconditionError, SwapError,
    TimingError, UnsupportedDirection, ValidationError,
)
from ..htlc.crypto import generate_secret, normalize_hex
from ..htlc.order import create_order_hash, order_summary, validate_htlc_params
from ..htlc.state_machine import HTLCEvent, HTLCState, HTLCStateMachine, build_state_machine
from ..htlc.timelock import bidirectional, now_ms, swap_snapshot
from .orchestrator import EscrowParams, PairOrchestrator, SwapStatusView
from .watcher import SwapMonitor

log = logging.getLogger(__name__)

EVENTS = (
    "swapInitiated",
    "swapDeposited",
    "swapSecretRevealed",
    "swapCompleted",
    "swapExpired",
    "swapCancelled",
    "swapError",
)


@dataclass
class RegistryEntry:
    """Everything tracked for one order hash."""
    order: SwapOrder
    state_machine: HTLCStateMachine
    orchestrator: PairOrchestrator
    monitor: Optional[SwapMonitor] = None
    expiry_timer: Optional[threading.Timer] = None    # auto-cancel or source-claim retry
    expiry_attempts: int = 0


@dataclass
class SwapDetails:
    """Swap record plus its state machine and timing snapshot."""
    order: SwapOrder
    state: HTLCState
    snapshot: Dict[str, Any]
    history: List[Dict[str, Any]] = field(default_factory=list)
    monitoring: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            **self.order.to_dict(),
            "htlc_state": self.state.value,
            "snapshot": self.snapshot,
            "history": self.history,
            "monitoring": self.monitoring,
        }


class SwapRegistry:
    """In-memory registry of swaps keyed by order hash."""

    def __init__(self):
        self._entries: Dict[str, RegistryEntry] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def lock_for(self, order_hash: str) -> threading.Lock:
        """Per-order-hash lock for state-changing operations."""
        with self._guard:
            lock = self._locks.get(order_hash)
            if lock is None:
                lock = self._locks[order_hash] = threading.Lock()
            return lock

    def register(self, entry: RegistryEntry):
        order_hash = entry.order.order_hash
        with self._guard:
            if order_hash in self._entries:
                raise AlreadyExists(f"Swap {order_hash[:16]}... already registered",
                                    order_hash=order_hash)
            self._entries[order_hash] = entry

    def contains(self, order_hash: str) -> bool:
        with self._guard:
            return order_hash in self._entries

    def get(self, order_hash: str) -> Optional[RegistryEntry]:
        with self._guard:
            return self._entries.get(order_hash)

    def require(self, order_hash: str) -> RegistryEntry:
        entry = self.get(order_hash)
        if entry is None:
            raise NotFound(f"Swap not found: {order_hash}", order_hash=order_hash)
        return entry

    def evict(self, order_hash: str) -> Optional[RegistryEntry]:
        with self._guard:
            self._locks.pop(order_hash, None)
            return self._entries.pop(order_hash, None)

    def discard_lock(self, order_hash: str):
        """Drop the lock of an order hash that never got registered."""
        with self._guard:
            if order_hash not in self._entries:
                self._locks.pop(order_hash, None)

    def entries(self) -> List[RegistryEntry]:
        with self._guard:
            return list(self._entries.values())

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)

    def close(self):
        """Stop every monitor and pending expiry timer, then forget all swaps."""
        for entry in self.entries():
            if entry.expiry_timer:
                entry.expiry_timer.cancel()
            if entry.monitor:
                entry.monitor.stop()
        with self._guard:
            self._entries.clear()
            self._locks.clear()


class SwapManager:
    """
    High-level swap coordination with event emission.

    Pair orchestrators are registered at construction; each serves both
    directions of its chain pair.

    Events (on/off):
    - swapInitiated(order), swapDeposited(order), swapSecretRevealed(order),
      swapCompleted(order), swapExpired(order), swapCancelled(order)
    - swapError({"order_hash", "error"})
    """

    def __init__(self, orchestrators: Iterable[PairOrchestrator],
                 config: Optional[SwapConfig] = None,
                 clock: Callable[[], int] = now_ms,
                 registry: Optional[SwapRegistry] = None,
                 auto_monitor: bool = True,
                 timer_factory: Callable[..., threading.Timer] = threading.Timer):
        self.config = config or SwapConfig()
        self.registry = registry or SwapRegistry()
        self.auto_monitor = auto_monitor
        self._clock = clock
        self._timer_factory = timer_factory
        self._routes: Dict[Direction, PairOrchestrator] = {}
        self._admission = threading.Lock()
        self._pending = 0    # Admitted initiations not yet registered

        # Event handlers
        self._handlers: Dict[str, List[Callable]] = {name: [] for name in EVENTS}

        for orchestrator in orchestrators:
            self.add_orchestrator(orchestrator)

    # =========================================================================
    # Routing
    # =========================================================================

    def add_orchestrator(self, orchestrator: PairOrchestrator):
        for direction in orchestrator.directions:
            existing = self._routes.get(direction)
            if existing is not None and existing is not orchestrator:
                raise ConflictError(f"Pair {direction.name} already served by {existing!r}")
        for direction in orchestrator.directions:
            self._routes[direction] = orchestrator
        log.info(f"Registered {orchestrator!r}")

    def orchestrator_for(self, direction: Direction) -> PairOrchestrator:
        orchestrator = self._routes.get(direction)
        if orchestrator is None:
            raise UnsupportedDirection(f"Unsupported swap direction: {direction.name}")
        return orchestrator

    def supported_directions(self) -> List[Direction]:
        return list(self._routes)

    def orchestrators(self) -> List[PairOrchestrator]:
        unique = []
        for orchestrator in self._routes.values():
            if orchestrator not in unique:
                unique.append(orchestrator)
        return unique

    # =========================================================================
    # Events
    # =========================================================================

    def on(self, event: str, handler: Callable):
        """Register event handler."""
        if event not in self._handlers:
            raise ValueError(f"Unknown event: {event}")
        self._handlers[event].append(handler)

    def off(self, event: str, handler: Callable):
        """Remove event handler."""
        if event in self._handlers and handler in self._handlers[event]:
            self._handlers[event].remove(handler)

    def _emit(self, event: str, *args):
        """Emit event to handlers."""
        for handler in list(self._handlers.get(event, [])):
            try:
                handler(*args)
            except Exception as e:
                log.error(f"Handler error for {event}: {e}")

    def _emit_error(self, order_hash: Optional[str], error: Exception):
        self._emit("swapError", {"order_hash": order_hash, "error": error})

    # =========================================================================
    # Initiate
    # =========================================================================

    def _validate_request(self, request: SwapRequest) -> int:
        errors = []
        timeout = request.timeout_minutes or self.config.default_timeout_minutes
        if not (self.config.min_timeout_minutes <= timeout <= self.config.max_timeout_minutes):
            raise InvalidTimelock(
                f"Timeout must be between {self.config.min_timeout_minutes} and "
                f"{self.config.max_timeout_minutes} minutes"
            )
        for name in ("src_amount", "dst_amount"):
            try:
                if int(getattr(request, name)) <= 0:
                    errors.append(f"{name} must be greater than 0")
            except (TypeError, ValueError):
                errors.append(f"{name} must be an integer amount of smallest units")
        if errors:
            raise InvalidAmount(", ".join(errors), errors=errors)
        if not request.recipient:
            raise ValidationError("Recipient address is required")
        return timeout

    def _active_count(self) -> int:
        return sum(1 for entry in self.registry.entries() if entry.order.is_active)

    def _reserve_slot(self):
        """Claim one max_concurrent_swaps slot until the swap is registered or fails."""
        with self._admission:
            if self._active_count() + self._pending >= self.config.max_concurrent_swaps:
                raise ConflictError(
                    f"Too many active swaps (max {self.config.max_concurrent_swaps})"
                )
            self._pending += 1

    def _release_slot(self):
        with self._admission:
            self._pending -= 1

    def _escrow_and_register(self, orchestrator: PairOrchestrator, params: EscrowParams,
                             request: SwapRequest, secret: str, now: int) -> SwapOrder:
        """Escrow steps 1-2 under the order hash lock, then register the swap."""
        order_hash = params.order_hash
        with self.registry.lock_for(order_hash):
            if self.registry.contains(order_hash):
                raise AlreadyExists(f"Swap {order_hash[:16]}... already exists",
                                    order_hash=order_hash)

            step1 = orchestrator.escrow_source(params)
            orchestrator.settle()
            try:
                step2 = orchestrator.escrow_destination(step1, params)
            except SwapError as e:
                raise PartialProtocolFailure(
                    f"Source escrowed but destination escrow failed: {e}",
                    order_hash=order_hash, steps=[step1], cause=e, failed_step=2,
                ) from e

            order = SwapOrder(
                order_hash=order_hash,
                direction=params.direction,
                src_token=request.src_token,
                dst_token=request.dst_token,
                src_amount=params.src_amount,
                dst_amount=params.dst_amount,
                maker=request.maker,
                recipient=request.recipient,
                resolver=params.resolver,
                hashlock=params.hashlock,
                secret=secret,
                timelocks=params.timelocks,
                nonce=params.nonce,
                created_at=now,
            ).with_escrows(step1.receipt, step2.receipt)

            state_machine = build_state_machine(order_hash, params.timelocks.phases, self._clock)
            self.registry.register(RegistryEntry(
                order=order, state_machine=state_machine, orchestrator=orchestrator,
            ))
        return order

    def initiate_swap(self, request: SwapRequest) -> SwapOrder:
        """
        Start a swap: escrow both legs and register it.

        Nothing is registered unless both escrows succeed.

        Raises:
            ValidationError family, ConflictError (duplicate / capacity),
            PartialProtocolFailure (source escrowed, destination failed),
            adapter errors
        """
        order_hash = None
        try:
            direction = request.direction
            orchestrator = self.orchestrator_for(direction)
            timeout = self._validate_request(request)

            secret, hashlock = generate_secret(orchestrator.hash_algorithm)
            now = self._clock()
            timelocks = bidirectional(
                orchestrator.timelock_direction(direction),
                base_duration_minutes=timeout,
                safety_margin_minutes=self.config.safety_margin_minutes,
                now=now,
            )
            nonce = request.nonce if request.nonce is not None else now
            terms = request.order_terms()
            order_hash = create_order_hash(terms, hashlock, nonce)

            validate_htlc_params({
                "hashLock": hashlock,
                "timelock": timelocks.src_leg.timelock,
                "srcAmount": request.src_amount,
                "dstAmount": request.dst_amount,
                "maker": request.maker,
                "recipient": request.recipient,
            }, now=now, max_horizon_ms=self.config.max_timelock_horizon_ms).raise_if_invalid()

            src_adapter, _ = orchestrator.legs(direction)
            resolver = request.resolver or src_adapter.wallet_addresses().get("resolver")
            if not resolver:
                raise ValidationError(f"No resolver address on {direction.src.value}")

            params = EscrowParams(
                direction=direction,
                src_token=request.src_token,
                dst_token=request.dst_token,
                src_amount=int(request.src_amount),
                dst_amount=int(request.dst_amount),
                maker=request.maker,
                recipient=request.recipient,
                resolver=resolver,
                hashlock=hashlock,
                timelocks=timelocks,
                order_hash=order_hash,
                nonce=nonce,
            )

            self._reserve_slot()
            try:
                log.info(f"Initiating swap {order_hash[:16]}... {order_summary(terms)}")
                order = self._escrow_and_register(orchestrator, params, request, secret, now)
            finally:
                self._release_slot()

        except Exception as e:
            log.error(f"Failed to initiate swap: {e}")
            if order_hash and not self.registry.contains(order_hash):
                self.registry.discard_lock(order_hash)
            self._emit_error(order_hash, e)
            raise

        log.info(f"Swap {order_hash[:16]}... initiated ({direction.name}, "
                 f"src timelock {timelocks.src_leg.timelock}, dst timelock {timelocks.dst_leg.timelock})")

        if self.auto_monitor:
            self.start_swap_monitoring(order_hash)
        self._emit("swapInitiated", order)
        return order

    # =========================================================================
    # Observation
    # =========================================================================

    def refresh_swap(self, order_hash: str,
                     status: Optional[SwapStatusView] = None) -> SwapOrder:
        """
        Fold the on-chain state of both legs into the swap record.

        Fires RESOLVER_DEPOSIT when both legs are locked, SECRET_REVEAL when
        the destination leg is claimed and COMPLETED when both are claimed.
        """
        order_hash = normalize_hex(order_hash)
        events = []
        with self.registry.lock_for(order_hash):
            entry = self.registry.require(order_hash)
            order = entry.order
            if order.is_terminal:
                return order

            if status is None:
                status = entry.orchestrator.get_swap_status(order_hash, order.direction)

            order = self._apply_status(entry, status, events)
            entry.order = order

        for event, payload in events:
            self._emit(event, payload)
        if order.is_terminal:
            self.stop_swap_monitoring(order_hash)
        return order

    def _apply_status(self, entry: RegistryEntry, status: SwapStatusView,
                      events: List) -> SwapOrder:
        order = entry.order
        machine = entry.state_machine
        now = self._clock()

        if order.status == SwapStatus.INITIATED and status.both_active:
            machine.process_event(HTLCEvent.RESOLVER_DEPOSIT)
            order = order.with_deposit_confirmed(now)
            events.append(("swapDeposited", order))
            log.info(f"Both escrows active for {order.order_hash[:16]}...")

        if status.leg_b.state == LockState.CLAIMED and order.revealed_secret is None:
            secret = status.revealed_secret or order.secret
            machine.process_event(HTLCEvent.RESOLVER_DEPOSIT)
            machine.process_event(HTLCEvent.SECRET_REVEAL)
            order = order.with_secret_revealed(secret)
            events.append(("swapSecretRevealed", order))
            log.info(f"Secret revealed on {order.dst_chain.value} for {order.order_hash[:16]}...")

        if status.all_claimed:
            machine.process_event(HTLCEvent.COMPLETED)
            order = order.with_claims(None, None, order.revealed_secret or order.secret, now)
            events.append(("swapCompleted", order))
            log.info(f"Swap {order.order_hash[:16]}... completed on both chains")
        elif (status.any_refunded and not status.any_claimed
              and status.leg_a.state in (LockState.REFUNDED, LockState.MISSING)
              and status.leg_b.state in (LockState.REFUNDED, LockState.MISSING)):
            machine.process_event(HTLCEvent.TIMEOUT)
            machine.process_event(HTLCEvent.CANCELLED)
            order = order.with_refunds(None, None, now)
            events.append(("swapCancelled", order))
            log.info(f"Swap {order.order_hash[:16]}... refunded on-chain")

        return order

    # =========================================================================
    # Complete / cancel
    # =========================================================================

    def complete_swap(self, order_hash: str) -> SwapOrder:
        """
        Run claim steps 3-4 for a deposited swap.

        Raises:
            NotFound, StatePreconditionError (terminal or not completable),
            PartialProtocolFailure, adapter errors
        """
        order_hash = normalize_hex(order_hash)
        with self.registry.lock_for(order_hash):
            entry = self.registry.require(order_hash)
            order = entry.order
            machine = entry.state_machine

            if order.is_terminal:
                raise StatePreconditionError(
                    f"Swap already {order.status.value.lower()}", order_hash=order_hash
                )
            if not machine.can_complete():
                raise StatePreconditionError(
                    f"Cannot complete swap in state {machine.get_current_state().value}",
                    order_hash=order_hash,
                )

            try:
                step3, step4 = entry.orchestrator.complete_swap(order, order.secret)
            except PartialProtocolFailure as e:
                if e.steps:
                    machine.process_event(HTLCEvent.SECRET_REVEAL)
                    order = order.with_secret_revealed(e.steps[0].secret, e.steps[0].receipt)
                entry.order = order.with_error(e.message)
                log.error(f"Completion of {order_hash[:16]}... failed after reveal: {e}")
                self._emit_error(order_hash, e)
                raise
            except SwapError as e:
                entry.order = order.with_error(e.message)
                log.error(f"Completion of {order_hash[:16]}... failed: {e}")
                self._emit_error(order_hash, e)
                raise

            machine.process_event(HTLCEvent.SECRET_REVEAL)
            machine.process_event(HTLCEvent.COMPLETED)
            order = order.with_claims(step3.receipt, step4.receipt, step3.secret, self._clock())
            entry.order = order
            if entry.expiry_timer:
                entry.expiry_timer.cancel()

        self.stop_swap_monitoring(order_hash)
        log.info(f"Swap {order_hash[:16]}... completed")
        self._emit("swapCompleted", order)
        return order

    def cancel_swap(self, order_hash: str) -> SwapOrder:
        """
        Refund both legs of an expired swap.

        Raises:
            NotFound, StatePreconditionError (terminal or secret revealed),
            NotExpired (too early), TimingError (one leg refunded, the other
            still locked)
        """
        order_hash = normalize_hex(order_hash)
        with self.registry.lock_for(order_hash):
            entry = self.registry.require(order_hash)
            order = entry.order
            machine = entry.state_machine

            if order.is_terminal:
                raise StatePreconditionError(
                    f"Swap already {order.status.value.lower()}", order_hash=order_hash
                )
            if self._secret_revealed(entry):
                raise StatePreconditionError(
                    "Secret already revealed, source leg must be claimed", order_hash=order_hash
                )
            if not machine.can_refund():
                raise NotExpired(
                    f"Swap cannot be refunded before {order.expires_at}", order_hash=order_hash
                )

            now = self._clock()
            machine.process_event(HTLCEvent.TIMEOUT)
            if order.is_active:
                order = order.with_expired(now)

            try:
                refunds = entry.orchestrator.cancel_swap(order_hash, order.direction)
            except TimingError as e:
                dst = next((r for r in e.receipts if r.chain == order.dst_chain), None)
                src = next((r for r in e.receipts if r.chain == order.src_chain), None)
                entry.order = order.with_partial_refunds(dst, src).with_error(e.message)
                log.warning(f"Cancel of {order_hash[:16]}... incomplete: {e}")
                raise
            except SwapError as e:
                entry.order = order.with_error(e.message)
                log.error(f"Cancel of {order_hash[:16]}... failed: {e}")
                self._emit_error(order_hash, e)
                raise

            machine.process_event(HTLCEvent.CANCELLED)
            order = order.with_refunds(refunds.dst_refund, refunds.src_refund, self._clock())
            entry.order = order
            if entry.expiry_timer:
                entry.expiry_timer.cancel()

        self.stop_swap_monitoring(order_hash)
        log.info(f"Swap {order_hash[:16]}... cancelled")
        self._emit("swapCancelled", order)
        return order

    # =========================================================================
    # Expiry: auto-cancel, or source-claim retry once the secret is out
    # =========================================================================

    @staticmethod
    def _secret_revealed(entry: RegistryEntry) -> bool:
        return (entry.state_machine.get_current_state() == HTLCState.SECRET_REVEALED
                or entry.order.revealed_secret is not None)

    def _on_expire(self, order_hash: str):
        with self.registry.lock_for(order_hash):
            entry = self.registry.get(order_hash)
            if entry is None or entry.order.is_terminal:
                return
            if self._secret_revealed(entry):
                # Destination already claimed: the source leg is still claimable
                # until its own timelock, which trails by the safety margin.
                self._schedule_expiry_timer(entry, self.config.retry_delay, self._auto_complete)
                log.warning(f"Swap {order_hash[:16]}... passed destination expiry with the "
                            f"secret revealed, retrying source claim in {self.config.retry_delay}s")
                return
            entry.state_machine.process_event(HTLCEvent.TIMEOUT)
            if entry.order.is_active:
                entry.order = entry.order.with_expired(self._clock())
            order = entry.order
            self._schedule_expiry_timer(entry, self.config.auto_cancel_delay, self._auto_cancel)

        log.warning(f"Swap {order_hash[:16]}... expired, auto-cancel in "
                    f"{self.config.auto_cancel_delay}s")
        self._emit("swapExpired", order)

    def _schedule_expiry_timer(self, entry: RegistryEntry, delay: float, callback: Callable):
        if entry.expiry_timer:
            entry.expiry_timer.cancel()
        timer = self._timer_factory(delay, callback, args=(entry.order.order_hash,))
        timer.daemon = True
        entry.expiry_timer = timer
        timer.start()

    def _auto_complete(self, order_hash: str):
        """Timer callback: claim the source leg of a swap whose secret is public."""
        try:
            self.complete_swap(order_hash)
        except NotFound:
            log.info(f"Source-claim retry: swap {order_hash[:16]}... no longer registered")
        except StatePreconditionError:
            log.info(f"Source-claim retry: swap {order_hash[:16]}... already settled")
        except SwapError as e:
            entry = self.registry.get(order_hash)
            if entry is None:
                return
            with self.registry.lock_for(order_hash):
                src_timelock = entry.order.timelocks.src_leg.timelock
                cause = getattr(e, "cause", None) or e
                if isinstance(cause, Expired) or self._clock() >= src_timelock:
                    log.error(f"Source claim of {order_hash[:16]}... gave up, "
                              f"source timelock {src_timelock} passed: {e}")
                    self._emit_error(order_hash, e)
                    return
                entry.expiry_attempts += 1
                delay = self.config.retry_delay
                self._schedule_expiry_timer(entry, delay, self._auto_complete)
            log.info(f"Source claim of {order_hash[:16]}... retry {entry.expiry_attempts} "
                     f"in {delay}s")

    def _auto_cancel(self, order_hash: str):
        """Timer callback: cancel an expired swap."""
        try:
            self.cancel_swap(order_hash)
        except NotFound:
            log.info(f"Auto-cancel: swap {order_hash[:16]}... no longer registered")
        except StatePreconditionError:
            log.info(f"Auto-cancel: swap {order_hash[:16]}... already settled")
        except TimingError as e:
            entry = self.registry.get(order_hash)
            if entry is None:
                return
            with self.registry.lock_for(order_hash):
                if entry.expiry_attempts >= 1:
                    log.error(f"Auto-cancel of {order_hash[:16]}... gave up: {e}")
                    self._emit_error(order_hash, e)
                    return
                entry.expiry_attempts += 1
                longest = max(entry.order.timelocks.src_leg.timelock,
                              entry.order.timelocks.dst_leg.timelock)
                delay = max(0.0, (longest - self._clock()) / 1000) + self.config.auto_cancel_delay
                self._schedule_expiry_timer(entry, delay, self._auto_cancel)
            log.info(f"Auto-cancel of {order_hash[:16]}... rescheduled in {delay:.0f}s")
        except SwapError as e:
            log.error(f"Auto-cancel of {order_hash[:16]}... failed: {e}")

    # =========================================================================
    # Monitoring
    # =========================================================================

    def start_swap_monitoring(self, order_hash: str) -> SwapMonitor:
        order_hash = normalize_hex(order_hash)
        with self.registry.lock_for(order_hash):
            entry = self.registry.require(order_hash)
            if entry.monitor and entry.monitor.is_running:
                return entry.monitor

            order = entry.order
            entry.monitor = entry.orchestrator.monitor_swap(
                order_hash,
                order.direction,
                expires_at_ms=order.expires_at,
                on_complete=lambda status: self._on_observed(order_hash, status),
                on_expire=lambda status: self._on_expire(order_hash),
                on_tick=lambda status: self._on_observed(order_hash, status),
                poll_interval=self.config.poll_interval,
            )
            return entry.monitor

    def _on_observed(self, order_hash: str, status: SwapStatusView):
        if self.registry.contains(order_hash):
            self.refresh_swap(order_hash, status)

    def stop_swap_monitoring(self, order_hash: str):
        order_hash = normalize_hex(order_hash)
        entry = self.registry.get(order_hash)
        if entry is None or entry.monitor is None:
            return
        monitor = entry.monitor
        entry.monitor = None
        monitor.stop()

    # =========================================================================
    # Queries
    # =========================================================================

    def get_swap(self, order_hash: str) -> Optional[SwapOrder]:
        order_hash = normalize_hex(order_hash)
        entry = self.registry.get(order_hash)
        return entry.order if entry else None

    def get_swap_details(self, order_hash: str) -> Optional[SwapDetails]:
        order_hash = normalize_hex(order_hash)
        entry = self.registry.get(order_hash)
        if entry is None:
            return None

        order = entry.order
        src_locked = order.src_escrow is not None and not (order.src_claim or order.src_refund)
        dst_locked = order.dst_escrow is not None and not (order.dst_claim or order.dst_refund)
        snapshot = swap_snapshot(order.order_hash, order.timelocks.phases,
                                 src_active=src_locked, dst_active=dst_locked,
                                 now=self._clock())
        snapshot["can_complete"] = entry.state_machine.can_complete() and not order.is_terminal
        snapshot["can_refund"] = entry.state_machine.can_refund() and not order.is_terminal

        history = [
            {"from": src.value, "to": dst.value, "event": event.value, "at": at}
            for src, dst, event, at in entry.state_machine.history
        ]
        return SwapDetails(order=order, state=entry.state_machine.get_current_state(),
                           snapshot=snapshot, history=history,
                           monitoring=bool(entry.monitor and entry.monitor.is_running))

    def get_all_active_swaps(self) -> List[SwapOrder]:
        return [entry.order for entry in self.registry.entries() if entry.order.is_active]

    def get_all_swaps(self) -> List[SwapOrder]:
        return [entry.order for entry in self.registry.entries()]

    def cleanup(self, now_ms: Optional[int] = None) -> int:
        """Evict terminal swaps older than the retention window. Returns the count."""
        now = self._clock() if now_ms is None else now_ms
        cutoff = now - self.config.retention_ms
        removed = 0

        for entry in self.registry.entries():
            order = entry.order
            if not order.is_terminal or (order.terminal_at or now) > cutoff:
                continue
            self.stop_swap_monitoring(order.order_hash)
            if entry.expiry_timer:
                entry.expiry_timer.cancel()
            self.registry.evict(order.order_hash)
            removed += 1

        if removed:
            log.info(f"Cleaned up {removed} old swaps")
        return removed

    def get_statistics(self) -> Dict[str, Any]:
        now = self._clock()
        orders = self.get_all_swaps()

        by_status = {status.value: 0 for status in SwapStatus}
        by_direction: Dict[str, int] = {d.name: 0 for d in self.supported_directions()}
        for order in orders:
            by_status[order.status.value] += 1
            by_direction[order.direction.name] = by_direction.get(order.direction.name, 0) + 1

        return {
            "total": len(orders),
            "active": by_status[SwapStatus.INITIATED.value] + by_status[SwapStatus.DEPOSITED.value],
            "completed": by_status[SwapStatus.COMPLETED.value],
            "cancelled": by_status[SwapStatus.CANCELLED.value],
            "expired": by_status[SwapStatus.EXPIRED.value],
            "by_status": by_status,
            "by_direction": by_direction,
            "recent_24h": sum(1 for o in orders if now - o.created_at < 24 * 3_600_000),
        }

    def shutdown(self):
        """Stop all monitors and timers and release orchestrator resources."""
        self.registry.close()
        for orchestrator in self.orchestrators():
            orchestrator.close()
        log.info("Swap manager shut down")
