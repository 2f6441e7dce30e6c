#!/usr/bin/env python3
"""
Swap Manager E2E Tests

End-to-end scenarios over simulated ETH / NEAR / Aptos chains:
A. ETH -> NEAR with wei/yocto amounts, 600 s gap between the native timelocks
B. complete_swap before deposits are confirmed is rejected without chain calls
C. cancel after the source timelock refunds both legs; complete then fails
D. same-tick duplicate request is rejected without overwriting the first swap

Plus observation (refresh), expiry and auto-cancel, source-claim retry after
the secret is out, concurrency (admission, per-swap exclusion), cleanup,
statistics and events.

Usage:
    python -m unittest tests.test_manager
"""

import sys
import os
import threading
import time
import unittest
from unittest.mock import MagicMock, patch

# Add SDK to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from xswap.config import SwapConfig
from xswap.core import ChainId, LockState, SwapRequest, SwapStatus
from xswap.errors import (
    AlreadyExists, ChainRevertError, ConflictError, InvalidAmount, InvalidTimelock,
    NotExpired, PartialProtocolFailure, StatePreconditionError, TimingError,
    TransientChainError, UnsupportedDirection, ValidationError,
)
from xswap.htlc.crypto import generate_secret, verify_preimage
from xswap.htlc.state_machine import HTLCState
from xswap.chains.memory import InMemoryEscrowAdapter
from xswap.swap.manager import SwapManager
from xswap.swap.orchestrator import PairOrchestrator

T0 = 1_700_000_000_000
MINUTE_MS = 60_000
NATIVE_ETH = "0x0000000000000000000000000000000000000000"


class FakeClock:
    def __init__(self, now: int = T0):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int):
        self.now += ms


class FakeTimer:
    """threading.Timer stand-in; fire() runs the callback synchronously."""

    def __init__(self, delay, fn, args=()):
        self.delay = delay
        self.fn = fn
        self.args = args
        self.daemon = False
        self.started = False
        self.cancelled = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        if not self.cancelled:
            self.fn(*self.args)


class SlowEscrowAdapter(InMemoryEscrowAdapter):
    """Simulated chain whose escrow and claim calls take `delay` seconds."""

    delay = 0.2

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.inflight = 0
        self.max_inflight = 0
        self._count_lock = threading.Lock()

    def _slow(self, fn, *args, **kwargs):
        with self._count_lock:
            self.inflight += 1
            self.max_inflight = max(self.max_inflight, self.inflight)
        try:
            time.sleep(self.delay)
            return fn(*args, **kwargs)
        finally:
            with self._count_lock:
                self.inflight -= 1

    def escrow(self, *args, **kwargs):
        return self._slow(super().escrow, *args, **kwargs)

    def claim(self, *args, **kwargs):
        return self._slow(super().claim, *args, **kwargs)


class ManagerTestCase(unittest.TestCase):

    auto_monitor = False
    poll_interval = 30.0
    max_concurrent_swaps = 10
    adapter_class = InMemoryEscrowAdapter

    def setUp(self):
        self.clock = FakeClock()
        self.timers = []
        self.eth = self.adapter_class(ChainId.ETH, clock=self.clock)
        self.near = self.adapter_class(ChainId.NEAR, clock=self.clock)
        self.aptos = InMemoryEscrowAdapter(ChainId.APTOS, clock=self.clock)
        self.config = SwapConfig(settle_delay=0, retry_delay=0, poll_interval=self.poll_interval,
                                 max_concurrent_swaps=self.max_concurrent_swaps)
        self.manager = SwapManager(
            [
                PairOrchestrator(self.eth, self.near, self.config, clock=self.clock),
                PairOrchestrator(self.eth, self.aptos, self.config, clock=self.clock),
            ],
            config=self.config,
            clock=self.clock,
            auto_monitor=self.auto_monitor,
            timer_factory=self.make_timer,
        )
        self.events = []
        for name in ("swapInitiated", "swapDeposited", "swapSecretRevealed", "swapCompleted",
                     "swapExpired", "swapCancelled", "swapError"):
            self.manager.on(name, lambda payload, name=name: self.events.append((name, payload)))

    def tearDown(self):
        self.manager.shutdown()

    def make_timer(self, delay, fn, args=()):
        timer = FakeTimer(delay, fn, args)
        self.timers.append(timer)
        return timer

    def request(self, **overrides) -> SwapRequest:
        args = dict(
            src_chain="ETH",
            dst_chain="NEAR",
            src_token=NATIVE_ETH,
            dst_token="NEAR",
            src_amount=10**15,          # 0.001 ETH in wei
            dst_amount=10**23,          # 0.1 NEAR in yocto
            maker="0xMaker",
            recipient="maker.testnet",
            timeout_minutes=60,
        )
        args.update(overrides)
        return SwapRequest(**args)

    def event_names(self):
        return [name for name, _ in self.events]

    def chain_actions(self, order_hash):
        return self.eth.calls_for(order_hash) + self.near.calls_for(order_hash)

    def run_parallel(self, *calls):
        """Run (fn, *args) calls on threads released together; returns results or errors."""
        barrier = threading.Barrier(len(calls))
        outcomes = [None] * len(calls)

        def run(index, fn, *args):
            barrier.wait()
            try:
                outcomes[index] = fn(*args)
            except Exception as e:
                outcomes[index] = e

        threads = [threading.Thread(target=run, args=(i,) + tuple(call))
                   for i, call in enumerate(calls)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(10)
        return outcomes


class TestScenarios(ManagerTestCase):

    def test_a_eth_to_near(self):
        order = self.manager.initiate_swap(self.request())

        self.assertEqual(order.status, SwapStatus.INITIATED)
        self.assertEqual(order.resolver, "eth-resolver")
        self.assertIsNotNone(order.src_escrow)
        self.assertIsNotNone(order.dst_escrow)
        self.assertTrue(verify_preimage(order.secret, order.hashlock))

        eth_lock = self.eth.get_lock(order.order_hash)
        near_lock = self.near.get_lock(order.order_hash)
        self.assertEqual(eth_lock.amount, 10**15)
        self.assertEqual(near_lock.amount, 10**23)
        self.assertEqual(eth_lock.counterparty, "eth-resolver")
        self.assertEqual(near_lock.counterparty, "maker.testnet")
        self.assertEqual(eth_lock.timelock - near_lock.timelock // 1_000_000_000, 600)

        order = self.manager.refresh_swap(order.order_hash)
        self.assertEqual(order.status, SwapStatus.DEPOSITED)

        order = self.manager.complete_swap(order.order_hash)
        self.assertEqual(order.status, SwapStatus.COMPLETED)
        self.assertEqual(order.revealed_secret, order.secret)
        self.assertEqual(self.eth.query_active(order.order_hash).state, LockState.CLAIMED)
        self.assertEqual(self.near.query_active(order.order_hash).state, LockState.CLAIMED)

        details = self.manager.get_swap_details(order.order_hash)
        self.assertEqual(details.state, HTLCState.COMPLETED)
        self.assertEqual(self.event_names(),
                         ["swapInitiated", "swapDeposited", "swapCompleted"])

    def test_b_complete_before_deposit_confirmed(self):
        order = self.manager.initiate_swap(self.request())

        with self.assertRaises(StatePreconditionError):
            self.manager.complete_swap(order.order_hash)

        self.assertNotIn("claim", self.chain_actions(order.order_hash))
        self.assertEqual(self.manager.get_swap(order.order_hash).status, SwapStatus.INITIATED)

    def test_c_cancel_after_expiry(self):
        order = self.manager.initiate_swap(self.request())
        self.manager.refresh_swap(order.order_hash)

        self.clock.advance(71 * MINUTE_MS)
        order = self.manager.cancel_swap(order.order_hash)

        self.assertEqual(order.status, SwapStatus.CANCELLED)
        self.assertIsNotNone(order.src_refund)
        self.assertIsNotNone(order.dst_refund)
        self.assertEqual(self.eth.query_active(order.order_hash).state, LockState.REFUNDED)
        self.assertEqual(self.near.query_active(order.order_hash).state, LockState.REFUNDED)

        with self.assertRaises(StatePreconditionError):
            self.manager.complete_swap(order.order_hash)
        self.assertNotIn("claim", self.chain_actions(order.order_hash))
        self.assertEqual(self.event_names()[-1], "swapCancelled")

    def test_d_same_tick_duplicate(self):
        secret, hashlock = generate_secret()
        with patch("xswap.swap.manager.generate_secret", return_value=(secret, hashlock)):
            first = self.manager.initiate_swap(self.request())
            with self.assertRaises(AlreadyExists):
                self.manager.initiate_swap(self.request())

        self.assertEqual(len(self.manager.get_all_swaps()), 1)
        self.assertIs(self.manager.get_swap(first.order_hash), first)
        self.assertEqual(self.eth.calls_for(first.order_hash), ["escrow"])
        name, payload = self.events[-1]
        self.assertEqual(name, "swapError")
        self.assertEqual(payload["order_hash"], first.order_hash)


class TestInitiateValidation(ManagerTestCase):

    def assert_rejected(self, error_type, **overrides):
        with self.assertRaises(error_type):
            self.manager.initiate_swap(self.request(**overrides))
        self.assertEqual(self.eth.calls + self.near.calls + self.aptos.calls, [])
        self.assertEqual(self.manager.get_all_swaps(), [])

    def test_timeout_out_of_range(self):
        self.assert_rejected(InvalidTimelock, timeout_minutes=5)
        self.assert_rejected(InvalidTimelock, timeout_minutes=2000)

    def test_amounts(self):
        self.assert_rejected(InvalidAmount, src_amount=0)
        self.assert_rejected(InvalidAmount, dst_amount="lots")

    def test_recipient_required(self):
        self.assert_rejected(ValidationError, recipient="")

    def test_unsupported_direction(self):
        self.assert_rejected(UnsupportedDirection, src_chain="NEAR", dst_chain="APTOS")
        self.assert_rejected(UnsupportedDirection, src_chain="SOL")

    def test_chain_aliases(self):
        order = self.manager.initiate_swap(self.request(src_chain="base_sepolia",
                                                        dst_chain="apt", dst_token="APT"))
        self.assertEqual(order.direction.name, "ETH_TO_APTOS")

    def test_errors_are_emitted(self):
        with self.assertRaises(InvalidAmount):
            self.manager.initiate_swap(self.request(src_amount=-1))
        name, payload = self.events[-1]
        self.assertEqual(name, "swapError")
        self.assertIsInstance(payload["error"], InvalidAmount)

    def test_destination_failure_is_partial(self):
        self.near.fail_next("escrow", ChainRevertError("deposit too small"))
        with self.assertRaises(PartialProtocolFailure) as ctx:
            self.manager.initiate_swap(self.request())

        order_hash = ctx.exception.order_hash
        self.assertEqual(ctx.exception.failed_step, 2)
        self.assertEqual(self.eth.query_active(order_hash).state, LockState.ACTIVE)
        self.assertIsNone(self.manager.get_swap(order_hash))


class TestCapacity(ManagerTestCase):

    max_concurrent_swaps = 1

    def test_admission_limit(self):
        self.manager.initiate_swap(self.request(nonce=1))
        with self.assertRaises(ConflictError):
            self.manager.initiate_swap(self.request(nonce=2))
        self.assertEqual(len(self.manager.get_all_active_swaps()), 1)

    def test_failed_initiation_releases_its_slot(self):
        self.eth.fail_next("escrow", ChainRevertError("reverted"))
        with self.assertRaises(ChainRevertError):
            self.manager.initiate_swap(self.request(nonce=1))

        order = self.manager.initiate_swap(self.request(nonce=2))
        self.assertTrue(order.is_active)


class TestConcurrentAdmission(ManagerTestCase):

    max_concurrent_swaps = 1
    adapter_class = SlowEscrowAdapter

    def test_parallel_initiations_respect_limit(self):
        outcomes = self.run_parallel(
            *[(self.manager.initiate_swap, self.request(nonce=n)) for n in (1, 2, 3)]
        )

        started = [o for o in outcomes if not isinstance(o, Exception)]
        rejected = [o for o in outcomes if isinstance(o, ConflictError)]
        self.assertEqual(len(started), 1)
        self.assertEqual(len(rejected), 2)
        self.assertEqual(len(self.manager.get_all_active_swaps()), 1)
        self.assertEqual(self.eth.max_inflight, 1)

        # The slot stays taken once the winner is registered
        with self.assertRaises(ConflictError):
            self.manager.initiate_swap(self.request(nonce=4))


class TestObservation(ManagerTestCase):

    def test_counterparty_claims_are_observed(self):
        order = self.manager.initiate_swap(self.request())
        self.manager.refresh_swap(order.order_hash)

        self.near.claim(order.order_hash, order.secret)
        order = self.manager.refresh_swap(order.order_hash)
        self.assertEqual(order.revealed_secret, order.secret)
        self.assertEqual(order.status, SwapStatus.DEPOSITED)
        self.assertEqual(self.manager.get_swap_details(order.order_hash).state,
                         HTLCState.SECRET_REVEALED)

        self.eth.claim(order.order_hash, order.secret)
        order = self.manager.refresh_swap(order.order_hash)
        self.assertEqual(order.status, SwapStatus.COMPLETED)
        self.assertEqual(self.event_names(), [
            "swapInitiated", "swapDeposited", "swapSecretRevealed", "swapCompleted",
        ])

    def test_on_chain_refunds_are_observed(self):
        order = self.manager.initiate_swap(self.request())
        self.clock.advance(71 * MINUTE_MS)
        self.near.refund(order.order_hash)
        self.eth.refund(order.order_hash)

        order = self.manager.refresh_swap(order.order_hash)
        self.assertEqual(order.status, SwapStatus.CANCELLED)
        self.assertEqual(self.manager.get_swap_details(order.order_hash).state,
                         HTLCState.CANCELLED)

    def test_refresh_terminal_swap_is_noop(self):
        order = self.manager.initiate_swap(self.request())
        self.manager.refresh_swap(order.order_hash)
        self.manager.complete_swap(order.order_hash)
        queries = self.eth.calls_for(order.order_hash).count("query")

        self.manager.refresh_swap(order.order_hash)
        self.assertEqual(self.eth.calls_for(order.order_hash).count("query"), queries)

    def test_details_snapshot(self):
        order = self.manager.initiate_swap(self.request())
        details = self.manager.get_swap_details(order.order_hash)
        self.assertFalse(details.snapshot["can_complete"])
        self.assertFalse(details.snapshot["can_refund"])
        self.assertTrue(details.snapshot["both_chains_active"])

        self.manager.refresh_swap(order.order_hash)
        details = self.manager.get_swap_details(order.order_hash)
        self.assertTrue(details.snapshot["can_complete"])
        self.assertEqual(details.history[0]["event"], "RESOLVER_DEPOSIT")

        data = details.to_dict()
        self.assertEqual(data["htlc_state"], "RESOLVER_DEPOSITED")
        self.assertNotIn("secret", data)
        self.assertIsNone(self.manager.get_swap_details("00" * 32))

    def test_prefixed_uppercase_order_hash(self):
        order = self.manager.initiate_swap(self.request())
        spelled = "0x" + order.order_hash.upper()

        self.assertEqual(self.manager.get_swap(spelled).order_hash, order.order_hash)
        self.assertEqual(self.manager.get_swap_details(spelled).order.order_hash, order.order_hash)
        self.manager.refresh_swap(spelled)
        order = self.manager.complete_swap(spelled)
        self.assertEqual(order.status, SwapStatus.COMPLETED)
        with self.assertRaises(StatePreconditionError):
            self.manager.cancel_swap(spelled)


class TestCompleteAndCancel(ManagerTestCase):

    def test_source_claim_failure_keeps_reveal(self):
        order = self.manager.initiate_swap(self.request())
        self.manager.refresh_swap(order.order_hash)

        self.eth.fail_next("claim", ChainRevertError("out of gas"))
        with self.assertRaises(PartialProtocolFailure):
            self.manager.complete_swap(order.order_hash)

        order = self.manager.get_swap(order.order_hash)
        self.assertEqual(order.revealed_secret, order.secret)
        self.assertIn("out of gas", order.last_error)
        self.assertEqual(self.near.query_active(order.order_hash).state, LockState.CLAIMED)

        # Retrying skips the destination leg
        order = self.manager.complete_swap(order.order_hash)
        self.assertEqual(order.status, SwapStatus.COMPLETED)
        self.assertEqual(self.near.calls_for(order.order_hash).count("claim"), 1)

    def test_transient_claim_is_retried(self):
        order = self.manager.initiate_swap(self.request())
        self.manager.refresh_swap(order.order_hash)
        self.near.fail_next("claim", TransientChainError("timeout"), times=2)

        order = self.manager.complete_swap(order.order_hash)
        self.assertEqual(order.status, SwapStatus.COMPLETED)

    def test_cancel_too_early(self):
        order = self.manager.initiate_swap(self.request())
        with self.assertRaises(NotExpired):
            self.manager.cancel_swap(order.order_hash)
        self.assertNotIn("refund", self.chain_actions(order.order_hash))
        self.assertTrue(self.manager.get_swap(order.order_hash).is_active)

    def test_cancel_between_timelocks(self):
        order = self.manager.initiate_swap(self.request())
        self.clock.advance(65 * MINUTE_MS)

        with self.assertRaises(TimingError):
            # Destination refunded, source still locked
            self.manager.cancel_swap(order.order_hash)

        order = self.manager.get_swap(order.order_hash)
        self.assertEqual(order.status, SwapStatus.EXPIRED)
        self.assertIsNotNone(order.dst_refund)
        self.assertIsNone(order.src_refund)

        self.clock.advance(10 * MINUTE_MS)
        order = self.manager.cancel_swap(order.order_hash)
        self.assertEqual(order.status, SwapStatus.CANCELLED)
        self.assertIsNotNone(order.dst_refund)
        self.assertIsNotNone(order.src_refund)

    def test_cancel_refused_after_reveal(self):
        order = self.manager.initiate_swap(self.request())
        self.manager.refresh_swap(order.order_hash)
        self.near.claim(order.order_hash, order.secret)
        self.manager.refresh_swap(order.order_hash)

        # Past both timelocks the source leg would be refundable on-chain
        self.clock.advance(71 * MINUTE_MS)
        self.assertFalse(self.manager.get_swap_details(order.order_hash).snapshot["can_refund"])
        with self.assertRaises(StatePreconditionError):
            self.manager.cancel_swap(order.order_hash)
        self.assertNotIn("refund", self.chain_actions(order.order_hash))
        self.assertEqual(self.manager.get_swap_details(order.order_hash).state,
                         HTLCState.SECRET_REVEALED)

    def test_unknown_swap(self):
        with self.assertRaises(Exception) as ctx:
            self.manager.complete_swap("00" * 32)
        self.assertEqual(ctx.exception.code, "not_found")


class TestAutoCancel(ManagerTestCase):

    def test_expiry_schedules_auto_cancel(self):
        order = self.manager.initiate_swap(self.request())
        self.clock.advance(61 * MINUTE_MS)

        self.manager._on_expire(order.order_hash)
        self.assertEqual(self.manager.get_swap(order.order_hash).status, SwapStatus.EXPIRED)
        self.assertEqual(self.event_names()[-1], "swapExpired")
        self.assertEqual(len(self.timers), 1)
        self.assertEqual(self.timers[0].delay, self.config.auto_cancel_delay)
        self.assertTrue(self.timers[0].started and self.timers[0].daemon)

        # Source leg still locked: refund the destination, retry after the source timelock
        self.timers[0].fire()
        self.assertEqual(len(self.timers), 2)
        self.assertEqual(self.timers[1].delay, 9 * 60 + self.config.auto_cancel_delay)
        self.assertEqual(self.near.query_active(order.order_hash).state, LockState.REFUNDED)

        self.clock.advance(10 * MINUTE_MS)
        self.timers[1].fire()
        order = self.manager.get_swap(order.order_hash)
        self.assertEqual(order.status, SwapStatus.CANCELLED)
        self.assertEqual(self.event_names()[-1], "swapCancelled")

    def test_auto_cancel_gives_up_after_one_retry(self):
        order = self.manager.initiate_swap(self.request())
        self.clock.advance(61 * MINUTE_MS)
        self.manager._on_expire(order.order_hash)

        self.timers[0].fire()
        self.timers[1].fire()

        self.assertEqual(len(self.timers), 2)
        name, payload = self.events[-1]
        self.assertEqual(name, "swapError")
        self.assertEqual(payload["order_hash"], order.order_hash)
        self.assertEqual(self.manager.get_swap(order.order_hash).status, SwapStatus.EXPIRED)

    def test_auto_cancel_of_settled_swap(self):
        order = self.manager.initiate_swap(self.request())
        self.manager.refresh_swap(order.order_hash)
        self.manager.complete_swap(order.order_hash)

        self.manager._auto_cancel(order.order_hash)
        self.manager._auto_cancel("00" * 32)
        self.assertNotIn("swapError", self.event_names())


class TestSourceClaimAfterReveal(ManagerTestCase):
    """Destination claimed, source claim failed, then the destination timelock passes."""

    def reveal_without_source_claim(self, error, times=1):
        order = self.manager.initiate_swap(self.request())
        self.manager.refresh_swap(order.order_hash)
        self.eth.fail_next("claim", error, times=times)
        with self.assertRaises(PartialProtocolFailure):
            self.manager.complete_swap(order.order_hash)
        self.assertEqual(self.near.query_active(order.order_hash).state, LockState.CLAIMED)
        return order

    def test_expiry_retries_source_claim(self):
        order = self.reveal_without_source_claim(TransientChainError("rpc timeout"), times=3)
        self.clock.advance(61 * MINUTE_MS)

        self.manager._on_expire(order.order_hash)
        self.assertEqual(self.manager.get_swap(order.order_hash).status, SwapStatus.DEPOSITED)
        self.assertNotIn("swapExpired", self.event_names())
        self.assertEqual(len(self.timers), 1)
        self.assertEqual(self.timers[0].delay, self.config.retry_delay)

        with self.assertRaises(StatePreconditionError):
            self.manager.cancel_swap(order.order_hash)

        self.timers[0].fire()
        order = self.manager.get_swap(order.order_hash)
        self.assertEqual(order.status, SwapStatus.COMPLETED)
        self.assertEqual(self.eth.query_active(order.order_hash).state, LockState.CLAIMED)
        self.assertNotIn("refund", self.chain_actions(order.order_hash))
        self.assertEqual(self.manager.get_swap_details(order.order_hash).state,
                         HTLCState.COMPLETED)

    def test_retry_stops_at_source_timelock(self):
        order = self.reveal_without_source_claim(ChainRevertError("out of gas"))
        self.clock.advance(61 * MINUTE_MS)
        self.manager._on_expire(order.order_hash)

        # Still inside the safety margin: rescheduled
        self.eth.fail_next("claim", ChainRevertError("out of gas"))
        self.timers[0].fire()
        self.assertEqual(len(self.timers), 2)

        # Source timelock passed: give up without refunding
        self.clock.advance(10 * MINUTE_MS)
        self.timers[1].fire()
        self.assertEqual(len(self.timers), 2)
        name, payload = self.events[-1]
        self.assertEqual(name, "swapError")
        self.assertEqual(payload["order_hash"], order.order_hash)
        self.assertNotIn("refund", self.eth.calls_for(order.order_hash))
        self.assertEqual(self.manager.get_swap(order.order_hash).status, SwapStatus.DEPOSITED)


class TestPerSwapExclusion(ManagerTestCase):

    adapter_class = SlowEscrowAdapter

    def test_concurrent_completes_of_one_swap(self):
        order = self.manager.initiate_swap(self.request())
        self.manager.refresh_swap(order.order_hash)

        outcomes = self.run_parallel((self.manager.complete_swap, order.order_hash),
                                     (self.manager.complete_swap, order.order_hash))

        completed = [o for o in outcomes if not isinstance(o, Exception)]
        refused = [o for o in outcomes if isinstance(o, StatePreconditionError)]
        self.assertEqual(len(completed), 1)
        self.assertEqual(len(refused), 1)
        self.assertEqual(completed[0].status, SwapStatus.COMPLETED)
        self.assertEqual(self.near.calls_for(order.order_hash).count("claim"), 1)
        self.assertEqual(self.eth.calls_for(order.order_hash).count("claim"), 1)
        self.assertEqual(self.near.max_inflight, 1)

    def test_complete_races_cancel_after_reveal(self):
        order = self.manager.initiate_swap(self.request())
        self.manager.refresh_swap(order.order_hash)
        self.eth.fail_next("claim", ChainRevertError("out of gas"))
        with self.assertRaises(PartialProtocolFailure):
            self.manager.complete_swap(order.order_hash)
        self.clock.advance(65 * MINUTE_MS)

        completed, refused = self.run_parallel((self.manager.complete_swap, order.order_hash),
                                               (self.manager.cancel_swap, order.order_hash))

        self.assertEqual(completed.status, SwapStatus.COMPLETED)
        self.assertIsInstance(refused, StatePreconditionError)
        self.assertNotIn("refund", self.chain_actions(order.order_hash))
        self.assertEqual(self.eth.query_active(order.order_hash).state, LockState.CLAIMED)

    def test_different_swaps_run_in_parallel(self):
        first = self.manager.initiate_swap(self.request(nonce=1))
        second = self.manager.initiate_swap(self.request(nonce=2))
        self.manager.refresh_swap(first.order_hash)
        self.manager.refresh_swap(second.order_hash)

        outcomes = self.run_parallel((self.manager.complete_swap, first.order_hash),
                                     (self.manager.complete_swap, second.order_hash))

        self.assertEqual([o.status for o in outcomes], [SwapStatus.COMPLETED] * 2)
        self.assertGreaterEqual(self.near.max_inflight, 2)


class TestMonitoring(ManagerTestCase):

    auto_monitor = True
    poll_interval = 0.01

    def test_monitor_observes_deposit_and_completion(self):
        completed = threading.Event()
        self.manager.on("swapCompleted", lambda order: completed.set())

        order = self.manager.initiate_swap(self.request())
        self.assertTrue(self.manager.get_swap_details(order.order_hash).monitoring)

        self.near.claim(order.order_hash, order.secret)
        self.eth.claim(order.order_hash, order.secret)

        self.assertTrue(completed.wait(5))
        self.assertEqual(self.manager.get_swap(order.order_hash).status, SwapStatus.COMPLETED)

    def test_monitor_reports_expiry(self):
        expired = threading.Event()
        self.manager.on("swapExpired", lambda order: expired.set())

        order = self.manager.initiate_swap(self.request())
        self.clock.advance(61 * MINUTE_MS)

        self.assertTrue(expired.wait(5))
        self.assertEqual(self.manager.get_swap(order.order_hash).status, SwapStatus.EXPIRED)
        self.assertEqual(len(self.timers), 1)


class TestRegistry(ManagerTestCase):

    def complete(self, nonce):
        order = self.manager.initiate_swap(self.request(nonce=nonce))
        self.manager.refresh_swap(order.order_hash)
        return self.manager.complete_swap(order.order_hash)

    def test_cleanup_evicts_old_terminal_swaps(self):
        done = self.complete(1)
        active = self.manager.initiate_swap(self.request(nonce=2))

        self.assertEqual(self.manager.cleanup(), 0)
        self.clock.advance(25 * 60 * MINUTE_MS)
        self.assertEqual(self.manager.cleanup(), 1)

        self.assertIsNone(self.manager.get_swap(done.order_hash))
        self.assertIsNotNone(self.manager.get_swap(active.order_hash))

    def test_statistics(self):
        self.complete(1)
        self.manager.initiate_swap(self.request(nonce=2))
        self.manager.initiate_swap(self.request(nonce=3, src_chain="NEAR", dst_chain="ETH",
                                                src_token="NEAR", dst_token=NATIVE_ETH,
                                                maker="maker.testnet", recipient="0xMaker"))

        stats = self.manager.get_statistics()
        self.assertEqual(stats["total"], 3)
        self.assertEqual(stats["active"], 2)
        self.assertEqual(stats["completed"], 1)
        self.assertEqual(stats["by_direction"]["ETH_TO_NEAR"], 2)
        self.assertEqual(stats["by_direction"]["NEAR_TO_ETH"], 1)
        self.assertEqual(stats["by_direction"]["ETH_TO_APTOS"], 0)
        self.assertEqual(stats["recent_24h"], 3)

    def test_pair_routing_conflict(self):
        other = PairOrchestrator(InMemoryEscrowAdapter(ChainId.NEAR),
                                 InMemoryEscrowAdapter(ChainId.ETH), self.config)
        with self.assertRaises(ConflictError):
            self.manager.add_orchestrator(other)
        other.close()

    def test_events(self):
        with self.assertRaises(ValueError):
            self.manager.on("swapExploded", print)

        handler = MagicMock(side_effect=RuntimeError("handler bug"))
        self.manager.on("swapInitiated", handler)
        order = self.manager.initiate_swap(self.request())
        handler.assert_called_once_with(order)

        self.manager.off("swapInitiated", handler)
        self.manager.initiate_swap(self.request(nonce=7))
        self.assertEqual(handler.call_count, 1)


if __name__ == "__main__":
    unittest.main()
