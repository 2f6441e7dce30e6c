"""
HTLC state machine, one instance per order hash.

The transition table is explicit and closed. An event with no matching
(state, event) pair is a no-op that returns False, so callers can fire
events opportunistically (monitor ticks, retries) without checking first.
"""

import logging
import threading
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from .timelock import TimelockSchedule, now_ms

log = logging.getLogger(__name__)


class HTLCState(Enum):
    INITIATED = "INITIATED"
    RESOLVER_DEPOSITED = "RESOLVER_DEPOSITED"
    SECRET_REVEALED = "SECRET_REVEALED"
    COMPLETED = "COMPLETED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


class HTLCEvent(Enum):
    RESOLVER_DEPOSIT = "RESOLVER_DEPOSIT"
    SECRET_REVEAL = "SECRET_REVEAL"
    COMPLETED = "COMPLETED"
    TIMEOUT = "TIMEOUT"
    CANCELLED = "CANCELLED"


# (from_state, to_state, event)
DEFAULT_TRANSITIONS: List[Tuple[HTLCState, HTLCState, HTLCEvent]] = [
    (HTLCState.INITIATED, HTLCState.RESOLVER_DEPOSITED, HTLCEvent.RESOLVER_DEPOSIT),
    (HTLCState.RESOLVER_DEPOSITED, HTLCState.SECRET_REVEALED, HTLCEvent.SECRET_REVEAL),
    (HTLCState.SECRET_REVEALED, HTLCState.COMPLETED, HTLCEvent.COMPLETED),
    (HTLCState.INITIATED, HTLCState.EXPIRED, HTLCEvent.TIMEOUT),
    (HTLCState.RESOLVER_DEPOSITED, HTLCState.EXPIRED, HTLCEvent.TIMEOUT),
    (HTLCState.EXPIRED, HTLCState.CANCELLED, HTLCEvent.CANCELLED),
]

TERMINAL_STATES = (HTLCState.COMPLETED, HTLCState.CANCELLED)


class HTLCStateMachine:
    """
    Finite-state model of one swap.

    Starts in INITIATED with an empty table; the owner registers the
    transitions it wants (see install_default_transitions()).
    """

    def __init__(self, order_hash: str, schedule: TimelockSchedule,
                 clock: Callable[[], int] = now_ms):
        self.order_hash = order_hash
        self.schedule = schedule
        self._clock = clock
        self._state = HTLCState.INITIATED
        self._table: Dict[Tuple[HTLCState, HTLCEvent], HTLCState] = {}
        self._lock = threading.Lock()
        self.history: List[Tuple[HTLCState, HTLCState, HTLCEvent, int]] = []

    @property
    def state(self) -> HTLCState:
        return self._state

    def add_transition(self, from_state: HTLCState, to_state: HTLCState, event: HTLCEvent):
        with self._lock:
            key = (from_state, event)
            existing = self._table.get(key)
            if existing is not None and existing != to_state:
                raise ValueError(
                    f"Conflicting transition for {from_state.value}/{event.value}: "
                    f"{existing.value} vs {to_state.value}"
                )
            self._table[key] = to_state

    def install_default_transitions(self):
        for from_state, to_state, event in DEFAULT_TRANSITIONS:
            self.add_transition(from_state, to_state, event)

    def process_event(self, event: HTLCEvent) -> bool:
        """Apply an event. Returns True if the state changed."""
        with self._lock:
            to_state = self._table.get((self._state, event))
            if to_state is None:
                return False

            old_state = self._state
            self._state = to_state
            self.history.append((old_state, to_state, event, self._clock()))

        log.info(f"State transition {self.order_hash[:16]}: "
                 f"{old_state.value} -> {to_state.value} ({event.value})")
        return True

    def get_current_state(self) -> HTLCState:
        return self._state

    def can_complete(self) -> bool:
        return self._state in (HTLCState.RESOLVER_DEPOSITED, HTLCState.SECRET_REVEALED)

    def can_refund(self) -> bool:
        """
        EXPIRED, or expiration elapsed on the wall clock even without the event.

        Never once the secret is revealed: the source leg must be claimed.
        """
        if self._state in TERMINAL_STATES or self._state == HTLCState.SECRET_REVEALED:
            return False
        return self._state == HTLCState.EXPIRED or self._clock() > self.schedule.expiration

    def is_terminal(self) -> bool:
        return self._state in TERMINAL_STATES


def build_state_machine(order_hash: str, schedule: TimelockSchedule,
                        clock: Optional[Callable[[], int]] = None) -> HTLCStateMachine:
    """New state machine with the standard swap transition table."""
    machine = HTLCStateMachine(order_hash, schedule, clock or now_ms)
    machine.install_default_transitions()
    return machine
