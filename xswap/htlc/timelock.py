"""
Timelock planning for two-leg HTLC swaps.

All schedule timestamps are Unix milliseconds. Chain escrow programs use
their own clock units (EVM and Aptos: seconds, NEAR: nanoseconds); use
convert_timestamp() at the adapter boundary.

Safety rule: the source leg (claimed second, by the resolver, with the
secret the maker revealed on the destination leg) always expires
`safety_margin` after the destination leg. Once the maker reveals the
secret, the resolver still has that margin to claim before the maker
could refund the source leg.
"""

import time
from enum import Enum
from dataclasses import dataclass
from typing import Optional, Dict, Any, Union

from ..errors import UnsupportedChainTimeUnit, ValidationError

MINUTE_MS = 60 * 1000
DEFAULT_BASE_DURATION_MINUTES = 60
DEFAULT_SAFETY_MARGIN_MINUTES = 10


def now_ms() -> int:
    """Wall clock in Unix milliseconds."""
    return int(time.time() * 1000)


class ChainTimeUnit(Enum):
    SECONDS = "seconds"
    MILLISECONDS = "milliseconds"
    NANOSECONDS = "nanoseconds"


# ms -> native conversion
_UNIT_CONVERTERS = {
    ChainTimeUnit.SECONDS: lambda ms: ms // 1000,
    ChainTimeUnit.MILLISECONDS: lambda ms: ms,
    ChainTimeUnit.NANOSECONDS: lambda ms: ms * 1_000_000,
}

# native -> ms conversion
_UNIT_TO_MS = {
    ChainTimeUnit.SECONDS: lambda v: v * 1000,
    ChainTimeUnit.MILLISECONDS: lambda v: v,
    ChainTimeUnit.NANOSECONDS: lambda v: v // 1_000_000,
}

# Chain format names accepted in place of a ChainTimeUnit
CHAIN_FORMATS = {
    "ethereum": ChainTimeUnit.SECONDS,
    "eth": ChainTimeUnit.SECONDS,
    "evm": ChainTimeUnit.SECONDS,
    "base": ChainTimeUnit.SECONDS,
    "aptos": ChainTimeUnit.SECONDS,
    "near": ChainTimeUnit.NANOSECONDS,
}


def resolve_time_unit(unit: Union[ChainTimeUnit, str]) -> ChainTimeUnit:
    if isinstance(unit, ChainTimeUnit):
        return unit
    if isinstance(unit, str):
        key = unit.strip().lower()
        if key in CHAIN_FORMATS:
            return CHAIN_FORMATS[key]
        for member in ChainTimeUnit:
            if member.value == key:
                return member
    raise UnsupportedChainTimeUnit(f"Unsupported timestamp format: {unit}")


def convert_timestamp(timestamp_ms: int, unit: Union[ChainTimeUnit, str]) -> int:
    """Convert a millisecond timestamp to a chain's native time unit."""
    return _UNIT_CONVERTERS[resolve_time_unit(unit)](int(timestamp_ms))


def native_to_ms(value: int, unit: Union[ChainTimeUnit, str]) -> int:
    """Inverse of convert_timestamp (truncating)."""
    return _UNIT_TO_MS[resolve_time_unit(unit)](int(value))


class Phase(Enum):
    INITIATION = "INITIATION"
    AWAITING_RESOLVER_DEPOSIT = "AWAITING_RESOLVER_DEPOSIT"
    SECRET_REVEAL_WINDOW = "SECRET_REVEAL_WINDOW"
    AWAITING_RESOLVER_COMPLETE = "AWAITING_RESOLVER_COMPLETE"
    EXPIRED = "EXPIRED"
    GRACE_PERIOD = "GRACE_PERIOD"


class TimelockDirection(Enum):
    """Which chain of a pair is the source leg."""
    FORWARD = "forward"     # Pair chain A is the source
    REVERSE = "reverse"     # Pair chain B is the source


@dataclass(frozen=True)
class TimelockSchedule:
    initiation: int
    resolver_deposit: int
    secret_reveal: int
    resolver_complete: int
    expiration: int
    grace_period: int

    def to_dict(self) -> Dict[str, int]:
        return {
            "initiation": self.initiation,
            "resolver_deposit": self.resolver_deposit,
            "secret_reveal": self.secret_reveal,
            "resolver_complete": self.resolver_complete,
            "expiration": self.expiration,
            "grace_period": self.grace_period,
        }


@dataclass(frozen=True)
class LegTimelock:
    timelock: int
    secret_reveal_deadline: int
    refund_available: int

    def to_dict(self) -> Dict[str, int]:
        return {
            "timelock": self.timelock,
            "secret_reveal_deadline": self.secret_reveal_deadline,
            "refund_available": self.refund_available,
        }


@dataclass(frozen=True)
class BidirectionalTimelocks:
    direction: TimelockDirection
    src_leg: LegTimelock
    dst_leg: LegTimelock
    phases: TimelockSchedule

    @property
    def safety_margin_ms(self) -> int:
        return self.src_leg.timelock - self.dst_leg.timelock

    @property
    def chain_a_leg(self) -> LegTimelock:
        return self.src_leg if self.direction == TimelockDirection.FORWARD else self.dst_leg

    @property
    def chain_b_leg(self) -> LegTimelock:
        return self.dst_leg if self.direction == TimelockDirection.FORWARD else self.src_leg

    def to_dict(self) -> Dict[str, Any]:
        return {
            "direction": self.direction.value,
            "src_leg": self.src_leg.to_dict(),
            "dst_leg": self.dst_leg.to_dict(),
            "phases": self.phases.to_dict(),
        }


@dataclass(frozen=True)
class TimeRemaining:
    expired: bool
    total_ms: int
    hours: int
    minutes: int
    seconds: int


# =============================================================================
# Planner
# =============================================================================

def phase_schedule(base_duration_minutes: float = DEFAULT_BASE_DURATION_MINUTES,
                   now: Optional[int] = None) -> TimelockSchedule:
    """
    Phase timestamps over a base duration D, starting now.

    initiation t0, resolver_deposit t0+0.25D, secret_reveal t0+0.5D,
    resolver_complete t0+0.75D, expiration t0+D, grace_period t0+1.25D.
    """
    if base_duration_minutes <= 0:
        raise ValidationError(f"Base duration must be positive, got {base_duration_minutes}")

    t0 = now_ms() if now is None else int(now)
    base = int(base_duration_minutes * MINUTE_MS)

    return TimelockSchedule(
        initiation=t0,
        resolver_deposit=t0 + base // 4,
        secret_reveal=t0 + base // 2,
        resolver_complete=t0 + (base * 3) // 4,
        expiration=t0 + base,
        grace_period=t0 + (base * 5) // 4,
    )


def bidirectional(direction: TimelockDirection,
                  base_duration_minutes: float = DEFAULT_BASE_DURATION_MINUTES,
                  safety_margin_minutes: float = DEFAULT_SAFETY_MARGIN_MINUTES,
                  now: Optional[int] = None) -> BidirectionalTimelocks:
    """
    Per-leg timelocks for a swap.

    The destination leg expires at the schedule's expiration; the source leg
    expires safety_margin later. `direction` records which chain of the pair
    plays the source role.
    """
    if safety_margin_minutes <= 0:
        raise ValidationError("Safety margin must be positive")
    if not isinstance(direction, TimelockDirection):
        raise ValidationError(f"Unknown timelock direction: {direction}")

    phases = phase_schedule(base_duration_minutes, now)
    margin = int(safety_margin_minutes * MINUTE_MS)

    src_leg = LegTimelock(
        timelock=phases.expiration + margin,
        secret_reveal_deadline=phases.secret_reveal,
        refund_available=phases.expiration + margin,
    )
    dst_leg = LegTimelock(
        timelock=phases.expiration,
        secret_reveal_deadline=phases.secret_reveal,
        refund_available=phases.expiration,
    )
    return BidirectionalTimelocks(direction=direction, src_leg=src_leg,
                                  dst_leg=dst_leg, phases=phases)


def current_phase(schedule: TimelockSchedule, now: Optional[int] = None) -> Phase:
    """Phase of the swap at `now`. Recomputed every call."""
    t = now_ms() if now is None else now

    if t < schedule.resolver_deposit:
        return Phase.INITIATION
    elif t < schedule.secret_reveal:
        return Phase.AWAITING_RESOLVER_DEPOSIT
    elif t < schedule.resolver_complete:
        return Phase.SECRET_REVEAL_WINDOW
    elif t < schedule.expiration:
        return Phase.AWAITING_RESOLVER_COMPLETE
    elif t < schedule.grace_period:
        return Phase.EXPIRED
    return Phase.GRACE_PERIOD


def is_timelock_expired(timelock_ms: int, now: Optional[int] = None) -> bool:
    t = now_ms() if now is None else now
    return t > timelock_ms


def is_in_secret_reveal_window(schedule: TimelockSchedule, now: Optional[int] = None) -> bool:
    t = now_ms() if now is None else now
    return schedule.secret_reveal <= t < schedule.expiration


def time_remaining(timelock_ms: int, now: Optional[int] = None) -> TimeRemaining:
    t = now_ms() if now is None else now
    remaining = timelock_ms - t

    if remaining <= 0:
        return TimeRemaining(expired=True, total_ms=0, hours=0, minutes=0, seconds=0)

    return TimeRemaining(
        expired=False,
        total_ms=remaining,
        hours=remaining // 3_600_000,
        minutes=(remaining % 3_600_000) // 60_000,
        seconds=(remaining % 60_000) // 1000,
    )


def swap_snapshot(order_hash: str, schedule: TimelockSchedule,
                  src_active: bool = False, dst_active: bool = False,
                  now: Optional[int] = None) -> Dict[str, Any]:
    """Compact view of a swap's timing for monitoring and UI."""
    t = now_ms() if now is None else now
    phase = current_phase(schedule, t)
    remaining = time_remaining(schedule.expiration, t)

    return {
        "order_hash": order_hash,
        "phase": phase.value,
        "time_remaining": {
            "total_ms": remaining.total_ms,
            "hours": remaining.hours,
            "minutes": remaining.minutes,
            "seconds": remaining.seconds,
        },
        "expired": remaining.expired,
        "can_complete": phase in (Phase.SECRET_REVEAL_WINDOW, Phase.AWAITING_RESOLVER_COMPLETE),
        "can_refund": phase in (Phase.EXPIRED, Phase.GRACE_PERIOD),
        "src_chain_active": src_active,
        "dst_chain_active": dst_active,
        "both_chains_active": src_active and dst_active,
    }
