"""
Swap monitor for xswap.

Polls both escrow legs of one swap until:
- Both legs are claimed (on_complete)
- The destination leg's timelock passes (on_expire)

One daemon thread per active swap; stop() cancels it.
"""

import logging
import threading
from typing import Callable, Optional

from ..errors import SwapError
from ..htlc.timelock import now_ms

log = logging.getLogger(__name__)


class SwapMonitor:
    """
    Background poller for one swap.

    Callbacks:
    - on_tick(status): every successful poll
    - on_complete(status): both legs claimed, then the monitor exits
    - on_expire(status): expiration passed, then the monitor exits

    At most one of on_complete / on_expire fires.
    """

    def __init__(self, order_hash: str, poll: Callable, expires_at_ms: int,
                 on_complete: Callable, on_expire: Callable,
                 on_tick: Optional[Callable] = None,
                 poll_interval: float = 30.0,
                 clock: Callable[[], int] = now_ms):
        self.order_hash = order_hash
        self.expires_at_ms = expires_at_ms
        self.poll_interval = poll_interval
        self._poll = poll
        self._clock = clock

        # Callbacks
        self.on_complete = on_complete
        self.on_expire = on_expire
        self.on_tick = on_tick

        # State
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.ticks = 0
        self.outcome: Optional[str] = None   # "complete", "expire" or "stopped"

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        """Start monitor in background thread."""
        if self.is_running:
            return

        self._stop.clear()
        self._thread = threading.Thread(
            target=self._watch_loop,
            name=f"swap-monitor-{self.order_hash[:8]}",
            daemon=True,
        )
        self._thread.start()
        log.info(f"Monitoring swap {self.order_hash[:16]}... every {self.poll_interval}s")

    def stop(self, timeout: float = 5.0):
        """Stop monitor. Safe to call from a callback."""
        self._stop.set()
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout=timeout)
        if self.outcome is None:
            self.outcome = "stopped"

    def _watch_loop(self):
        """Main watch loop."""
        while not self._stop.wait(self.poll_interval):
            try:
                if self._tick():
                    return
            except SwapError as e:
                log.warning(f"Monitor poll failed for {self.order_hash[:16]}...: {e}")
            except Exception as e:
                log.error(f"Monitor error for {self.order_hash[:16]}...: {e}")

    def _tick(self) -> bool:
        """One poll. Returns True when the monitor is done."""
        status = self._poll()
        self.ticks += 1

        if self.on_tick:
            self.on_tick(status)

        if status.all_claimed:
            self.outcome = "complete"
            log.info(f"Swap {self.order_hash[:16]}... completed on both chains")
            self.on_complete(status)
            return True

        if self._clock() > self.expires_at_ms:
            self.outcome = "expire"
            log.warning(f"Swap {self.order_hash[:16]}... expired")
            self.on_expire(status)
            return True

        return False
