"""
HTLC (Hash Time-Locked Contract) primitives shared by every chain.

HTLCs enable trustless atomic swaps by ensuring:
1. Funds can only be claimed with knowledge of a secret (preimage)
2. Funds can be refunded after a timeout if not claimed

- crypto: secrets, hashlocks, preimage verification
- timelock: phase schedule, per-leg timelocks, chain clock units
- order: order hash and HTLC parameter validation
- state_machine: per-swap state machine
"""

from .crypto import (
    HashAlgorithm, generate_secret, hashlock_of, verify_preimage,
    hashlocks_equal, normalize_hex,
)
from .timelock import (
    ChainTimeUnit, Phase, TimelockDirection, TimelockSchedule, LegTimelock,
    BidirectionalTimelocks, phase_schedule, bidirectional, current_phase,
    convert_timestamp, now_ms,
)
from .order import create_order_hash, validate_htlc_params, ValidationResult
from .state_machine import HTLCState, HTLCEvent, HTLCStateMachine, build_state_machine

__all__ = [
    "HashAlgorithm",
    "generate_secret",
    "hashlock_of",
    "verify_preimage",
    "hashlocks_equal",
    "normalize_hex",
    "ChainTimeUnit",
    "Phase",
    "TimelockDirection",
    "TimelockSchedule",
    "LegTimelock",
    "BidirectionalTimelocks",
    "phase_schedule",
    "bidirectional",
    "current_phase",
    "convert_timestamp",
    "now_ms",
    "create_order_hash",
    "validate_htlc_params",
    "ValidationResult",
    "HTLCState",
    "HTLCEvent",
    "HTLCStateMachine",
    "build_state_machine",
]
