"""Global request throttle shared by every worker."""

from __future__ import annotations

import threading
import time
from typing import Callable


class RateGate:
    """Fixed-interval ticking gate.

    Each call to :meth:`wait` reserves the next free slot, ``1/rate``
    seconds after the previous one, then sleeps until that slot.  The
    reservation happens under the lock; the sleep does not, so many
    threads can queue up behind the gate while the aggregate rate stays
    at ``rate`` regardless of how many workers there are.
    """

    def __init__(
        self,
        rate: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.rate = float(rate)
        self.interval = 1.0 / self.rate if self.rate > 0 else 0.0
        self._clock = clock
        self._sleep = sleep
        self._next_slot: float = 0.0
        self._lock = threading.Lock()

    def reserve(self) -> float:
        """Claim the next slot and return how long the caller must wait for it."""
        if self.interval <= 0:
            return 0.0
        with self._lock:
            now = self._clock()
            slot = max(now, self._next_slot)
            self._next_slot = slot + self.interval
        return slot - now

    def wait(self) -> None:
        delay = self.reserve()
        if delay > 0:
            self._sleep(delay)
