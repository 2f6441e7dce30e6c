#!/usr/bin/env python3
"""
HTLC Primitive Tests

Covers the chain-independent building blocks:
1. Secrets and hashlocks
2. Timelock planning and chain clock units
3. Order hash and parameter validation
4. HTLC state machine

Usage:
    python -m unittest tests.test_htlc
"""

import sys
import os
import hashlib
import unittest
from unittest.mock import patch

# Add SDK to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from xswap.errors import EntropyError, UnsupportedChainTimeUnit, ValidationError
from xswap.htlc.crypto import (
    HashAlgorithm, generate_secret, hashlock_of, hashlocks_equal, normalize_hex,
    verify_preimage,
)
from xswap.htlc.timelock import (
    ChainTimeUnit, Phase, TimelockDirection, bidirectional, convert_timestamp,
    current_phase, is_in_secret_reveal_window, is_timelock_expired, native_to_ms,
    phase_schedule, swap_snapshot, time_remaining,
)
from xswap.htlc.order import create_order_hash, order_summary, validate_htlc_params
from xswap.htlc.state_machine import (
    HTLCEvent, HTLCState, HTLCStateMachine, build_state_machine,
)

T0 = 1_700_000_000_000
HOUR_MS = 3_600_000


def terms(**overrides):
    data = {
        "srcChain": "ETH",
        "dstChain": "NEAR",
        "srcToken": "0x0000000000000000000000000000000000000000",
        "dstToken": "NEAR",
        "srcAmount": 10**15,
        "dstAmount": 10**23,
        "maker": "0xMaker",
        "recipient": "maker.testnet",
    }
    data.update(overrides)
    return data


class TestSecrets(unittest.TestCase):
    """Secret generation and preimage checks."""

    def test_generate_secret_round_trip(self):
        secret, hashlock = generate_secret()
        self.assertEqual(len(secret), 64)
        self.assertEqual(len(hashlock), 64)
        self.assertEqual(hashlock, hashlib.sha256(bytes.fromhex(secret)).hexdigest())
        self.assertTrue(verify_preimage(secret, hashlock))

    def test_secrets_are_unique(self):
        self.assertNotEqual(generate_secret()[0], generate_secret()[0])

    def test_prefix_and_case_are_ignored(self):
        secret, hashlock = generate_secret()
        self.assertTrue(verify_preimage("0x" + secret.upper(), "0X" + hashlock))

    def test_wrong_secret_fails(self):
        _, hashlock = generate_secret()
        other, _ = generate_secret()
        self.assertFalse(verify_preimage(other, hashlock))

    def test_malformed_input_never_raises(self):
        _, hashlock = generate_secret()
        self.assertFalse(verify_preimage("not hex", hashlock))
        self.assertFalse(verify_preimage("ab" * 16, hashlock))     # 16 bytes
        self.assertFalse(verify_preimage("ab" * 32, "cd" * 20))    # short hashlock
        self.assertFalse(verify_preimage(None, hashlock))

    def test_sha3_hashlock(self):
        secret, hashlock = generate_secret(HashAlgorithm.SHA3_256)
        self.assertEqual(hashlock, hashlib.sha3_256(bytes.fromhex(secret)).hexdigest())
        self.assertTrue(verify_preimage(secret, hashlock, HashAlgorithm.SHA3_256))
        self.assertFalse(verify_preimage(secret, hashlock, HashAlgorithm.SHA256))

    def test_hashlock_of_bytes_and_hex_agree(self):
        raw = bytes(range(32))
        self.assertEqual(hashlock_of(raw), hashlock_of(raw.hex()))
        self.assertEqual(hashlock_of(raw), hashlib.sha256(raw).hexdigest())

    def test_hashlocks_equal(self):
        _, hashlock = generate_secret()
        self.assertTrue(hashlocks_equal(hashlock, "0x" + hashlock.upper()))
        self.assertFalse(hashlocks_equal(hashlock, "00" * 32))
        self.assertFalse(hashlocks_equal("zz", "zz"))

    def test_normalize_hex(self):
        self.assertEqual(normalize_hex(" 0xABcd "), "abcd")

    def test_entropy_failure(self):
        with patch("xswap.htlc.crypto.secrets.token_bytes", side_effect=OSError("no entropy")):
            with self.assertRaises(EntropyError):
                generate_secret()


class TestTimelocks(unittest.TestCase):
    """Phase schedule, per-leg timelocks and unit conversion."""

    def test_phase_schedule(self):
        schedule = phase_schedule(60, now=T0)
        self.assertEqual(schedule.initiation, T0)
        self.assertEqual(schedule.resolver_deposit, T0 + HOUR_MS // 4)
        self.assertEqual(schedule.secret_reveal, T0 + HOUR_MS // 2)
        self.assertEqual(schedule.resolver_complete, T0 + 3 * HOUR_MS // 4)
        self.assertEqual(schedule.expiration, T0 + HOUR_MS)
        self.assertEqual(schedule.grace_period, T0 + 5 * HOUR_MS // 4)

    def test_phase_schedule_rejects_non_positive_duration(self):
        with self.assertRaises(ValidationError):
            phase_schedule(0, now=T0)

    def test_source_leg_outlives_destination_by_margin(self):
        for direction in TimelockDirection:
            locks = bidirectional(direction, base_duration_minutes=60,
                                  safety_margin_minutes=10, now=T0)
            self.assertEqual(locks.dst_leg.timelock, T0 + HOUR_MS)
            self.assertEqual(locks.src_leg.timelock, T0 + HOUR_MS + 600_000)
            self.assertEqual(locks.safety_margin_ms, 600_000)
            self.assertLess(locks.dst_leg.timelock, locks.src_leg.timelock)

    def test_direction_maps_pair_legs(self):
        forward = bidirectional(TimelockDirection.FORWARD, now=T0)
        reverse = bidirectional(TimelockDirection.REVERSE, now=T0)
        self.assertEqual(forward.chain_a_leg, forward.src_leg)
        self.assertEqual(forward.chain_b_leg, forward.dst_leg)
        self.assertEqual(reverse.chain_a_leg, reverse.dst_leg)
        self.assertEqual(reverse.chain_b_leg, reverse.src_leg)

    def test_bidirectional_rejects_bad_margin(self):
        with self.assertRaises(ValidationError):
            bidirectional(TimelockDirection.FORWARD, safety_margin_minutes=0, now=T0)
        with self.assertRaises(ValidationError):
            bidirectional("forward", now=T0)

    def test_convert_timestamp(self):
        ms = T0 + 123
        self.assertEqual(convert_timestamp(ms, ChainTimeUnit.SECONDS), T0 // 1000)
        self.assertEqual(convert_timestamp(ms, ChainTimeUnit.MILLISECONDS), ms)
        self.assertEqual(convert_timestamp(ms, ChainTimeUnit.NANOSECONDS), ms * 1_000_000)
        self.assertEqual(convert_timestamp(ms, "near"), ms * 1_000_000)
        self.assertEqual(convert_timestamp(ms, "ethereum"), T0 // 1000)
        self.assertEqual(native_to_ms(T0 // 1000, ChainTimeUnit.SECONDS), T0)
        self.assertEqual(native_to_ms(ms * 1_000_000, "near"), ms)

    def test_convert_timestamp_unknown_unit(self):
        with self.assertRaises(UnsupportedChainTimeUnit):
            convert_timestamp(T0, "fortnights")

    def test_phases_are_monotonic(self):
        schedule = phase_schedule(60, now=T0)
        order = list(Phase)
        last = 0
        for t in range(T0 - 1000, T0 + 2 * HOUR_MS, 60_000):
            index = order.index(current_phase(schedule, t))
            self.assertGreaterEqual(index, last)
            last = index
        self.assertEqual(current_phase(schedule, T0), Phase.INITIATION)
        self.assertEqual(current_phase(schedule, T0 + HOUR_MS), Phase.EXPIRED)
        self.assertEqual(current_phase(schedule, T0 + 2 * HOUR_MS), Phase.GRACE_PERIOD)

    def test_expiry_is_strict(self):
        self.assertFalse(is_timelock_expired(T0, now=T0))
        self.assertTrue(is_timelock_expired(T0, now=T0 + 1))

    def test_secret_reveal_window(self):
        schedule = phase_schedule(60, now=T0)
        self.assertFalse(is_in_secret_reveal_window(schedule, T0))
        self.assertTrue(is_in_secret_reveal_window(schedule, T0 + HOUR_MS // 2))
        self.assertFalse(is_in_secret_reveal_window(schedule, T0 + HOUR_MS))

    def test_time_remaining(self):
        remaining = time_remaining(T0 + 3_725_000, now=T0)
        self.assertFalse(remaining.expired)
        self.assertEqual((remaining.hours, remaining.minutes, remaining.seconds), (1, 2, 5))
        self.assertTrue(time_remaining(T0, now=T0).expired)

    def test_swap_snapshot(self):
        schedule = phase_schedule(60, now=T0)
        snapshot = swap_snapshot("ab" * 32, schedule, src_active=True, dst_active=True,
                                 now=T0 + HOUR_MS // 2)
        self.assertEqual(snapshot["phase"], Phase.SECRET_REVEAL_WINDOW.value)
        self.assertTrue(snapshot["can_complete"])
        self.assertFalse(snapshot["can_refund"])
        self.assertTrue(snapshot["both_chains_active"])

        late = swap_snapshot("ab" * 32, schedule, now=T0 + HOUR_MS + 1)
        self.assertTrue(late["expired"])
        self.assertTrue(late["can_refund"])


class TestOrderIdentity(unittest.TestCase):
    """Order hash and parameter validation."""

    HASHLOCK = "11" * 32

    def test_order_hash_is_deterministic(self):
        a = create_order_hash(terms(), self.HASHLOCK, nonce=T0)
        b = create_order_hash(terms(), "0x" + self.HASHLOCK, nonce=T0)
        self.assertEqual(a, b)
        self.assertEqual(len(a), 64)

    def test_order_hash_depends_on_nonce_and_terms(self):
        base = create_order_hash(terms(), self.HASHLOCK, nonce=T0)
        self.assertNotEqual(base, create_order_hash(terms(), self.HASHLOCK, nonce=T0 + 1))
        self.assertNotEqual(base, create_order_hash(terms(dstAmount=1), self.HASHLOCK, nonce=T0))

    def test_amounts_hash_as_strings(self):
        self.assertEqual(
            create_order_hash(terms(srcAmount=10**15), self.HASHLOCK, nonce=T0),
            create_order_hash(terms(srcAmount=str(10**15)), self.HASHLOCK, nonce=T0),
        )

    def test_missing_terms(self):
        data = terms()
        del data["recipient"]
        with self.assertRaises(ValidationError):
            create_order_hash(data, self.HASHLOCK, nonce=T0)

    def test_validate_ok(self):
        result = validate_htlc_params({
            "hashLock": self.HASHLOCK, "timelock": T0 + HOUR_MS,
            "srcAmount": 1, "dstAmount": 1, "maker": "m", "recipient": "r",
        }, now=T0)
        self.assertTrue(result.valid)
        result.raise_if_invalid()

    def test_validate_collects_errors(self):
        result = validate_htlc_params({
            "hashLock": "abcd", "timelock": T0 - 1,
            "srcAmount": 0, "dstAmount": "x", "maker": "", "recipient": None,
        }, now=T0)
        self.assertFalse(result.valid)
        self.assertEqual(len(result.errors), 6)
        with self.assertRaises(ValidationError) as ctx:
            result.raise_if_invalid()
        self.assertEqual(len(ctx.exception.errors), 6)

    def test_validate_horizon(self):
        result = validate_htlc_params({
            "hashLock": self.HASHLOCK, "timelock": T0 + 25 * HOUR_MS,
            "srcAmount": 1, "dstAmount": 1, "maker": "m", "recipient": "r",
        }, now=T0)
        self.assertFalse(result.valid)
        self.assertIn("24 hours", result.errors[0])

    def test_order_summary(self):
        summary = order_summary(terms())
        self.assertEqual(summary["srcAmount"], str(10**15))
        self.assertNotIn("maker", summary)


class TestStateMachine(unittest.TestCase):
    """Closed transition table."""

    def setUp(self):
        self.now = T0
        self.schedule = phase_schedule(60, now=T0)
        self.machine = build_state_machine("ab" * 32, self.schedule, clock=lambda: self.now)

    def test_happy_path(self):
        self.assertTrue(self.machine.process_event(HTLCEvent.RESOLVER_DEPOSIT))
        self.assertTrue(self.machine.can_complete())
        self.assertTrue(self.machine.process_event(HTLCEvent.SECRET_REVEAL))
        self.assertTrue(self.machine.process_event(HTLCEvent.COMPLETED))
        self.assertEqual(self.machine.get_current_state(), HTLCState.COMPLETED)
        self.assertTrue(self.machine.is_terminal())
        self.assertEqual(len(self.machine.history), 3)

    def test_unmatched_event_is_noop(self):
        self.assertFalse(self.machine.process_event(HTLCEvent.COMPLETED))
        self.assertFalse(self.machine.process_event(HTLCEvent.CANCELLED))
        self.assertEqual(self.machine.state, HTLCState.INITIATED)
        self.assertFalse(self.machine.can_complete())
        self.assertEqual(self.machine.history, [])

    def test_reachable_states_from_initiated(self):
        reachable = {HTLCState.INITIATED}
        frontier = [HTLCState.INITIATED]
        while frontier:
            state = frontier.pop()
            for event in HTLCEvent:
                machine = build_state_machine("ab" * 32, self.schedule)
                machine._state = state
                machine.process_event(event)
                if machine.state not in reachable:
                    reachable.add(machine.state)
                    frontier.append(machine.state)
        self.assertEqual(reachable, set(HTLCState))

    def test_timeout_then_cancel(self):
        self.machine.process_event(HTLCEvent.RESOLVER_DEPOSIT)
        self.assertTrue(self.machine.process_event(HTLCEvent.TIMEOUT))
        self.assertTrue(self.machine.can_refund())
        self.assertTrue(self.machine.process_event(HTLCEvent.CANCELLED))
        self.assertFalse(self.machine.can_refund())

    def test_can_refund_falls_back_to_wall_clock(self):
        self.assertFalse(self.machine.can_refund())
        self.now = self.schedule.expiration + 1
        self.assertTrue(self.machine.can_refund())
        self.assertEqual(self.machine.state, HTLCState.INITIATED)

    def test_no_refund_once_secret_revealed(self):
        self.machine.process_event(HTLCEvent.RESOLVER_DEPOSIT)
        self.machine.process_event(HTLCEvent.SECRET_REVEAL)
        self.now = self.schedule.expiration + 1

        self.assertFalse(self.machine.can_refund())
        self.assertTrue(self.machine.can_complete())
        self.assertFalse(self.machine.process_event(HTLCEvent.TIMEOUT))

    def test_empty_machine_has_no_transitions(self):
        machine = HTLCStateMachine("ab" * 32, self.schedule)
        self.assertFalse(machine.process_event(HTLCEvent.RESOLVER_DEPOSIT))

    def test_conflicting_transition(self):
        with self.assertRaises(ValueError):
            self.machine.add_transition(HTLCState.INITIATED, HTLCState.COMPLETED,
                                        HTLCEvent.RESOLVER_DEPOSIT)
        # Re-adding the same edge is fine
        self.machine.add_transition(HTLCState.INITIATED, HTLCState.RESOLVER_DEPOSITED,
                                    HTLCEvent.RESOLVER_DEPOSIT)


if __name__ == "__main__":
    unittest.main()
