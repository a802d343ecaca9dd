from __future__ import annotations

import time
from threading import Lock
from typing import Callable


class TokenBucket:
    """
    Reservation-based token bucket.

    Each ``acquire`` reserves the next free slot under the lock and then
    sleeps until that slot outside the lock, so concurrent callers are spaced
    ``1 / rate`` seconds apart. ``capacity`` is the burst size allowed after an
    idle period.
    """

    def __init__(
        self,
        rate: float,
        *,
        capacity: int = 1,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if rate <= 0:
            raise ValueError("rate must be positive")
        self.rate = rate
        self.capacity = max(1, capacity)
        self.interval = 1.0 / rate
        self._clock = clock
        self._sleep = sleep
        self._lock = Lock()
        self._next_free = None

    def reserve(self) -> float:
        """Reserve a slot and return how long the caller must wait for it."""
        with self._lock:
            now = self._clock()
            theoretical = now if self._next_free is None else max(self._next_free, now)
            allowed_at = theoretical - (self.capacity - 1) * self.interval
            self._next_free = theoretical + self.interval
            return max(0.0, allowed_at - now)

    def acquire(self) -> None:
        wait = self.reserve()
        if wait > 0:
            self._sleep(wait)
