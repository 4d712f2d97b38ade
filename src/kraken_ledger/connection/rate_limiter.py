# src/kraken_ledger/connection/rate_limiter.py

import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from kraken_ledger.logging_config import structured_log_extra

logger = logging.getLogger(__name__)

DEFAULT_SAFETY_MARGIN_SEC = 0.5


@dataclass(frozen=True)
class RateBudget:
    counter: float
    max_counter: float
    decay_rate_per_second: float
    last_decay_timestamp: float


class RateLimiter:
    """
    Decaying call counter mirroring Kraken's private endpoint limits.

    Every call adds its cost to ``counter``; the counter drains at
    ``decay_rate_per_second``. :meth:`reserve` blocks until the cost fits under
    ``max_counter``. Callers are served in the order they reach the lock, and
    the state lock is released while a caller sleeps so :meth:`budget` stays
    readable during a wait.
    """
    def __init__(
        self,
        max_counter: float = 15.0,
        decay_rate_per_second: float = 0.33,
        safety_margin_sec: float = DEFAULT_SAFETY_MARGIN_SEC,
        clock: Optional[Callable[[], float]] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        if max_counter <= 0:
            raise ValueError("max_counter must be positive")
        if decay_rate_per_second <= 0:
            raise ValueError("Decay rate must be positive")
        if safety_margin_sec < 0:
            raise ValueError("Safety margin cannot be negative")

        self.max_counter = float(max_counter)
        self.decay_rate = float(decay_rate_per_second)
        self.safety_margin = float(safety_margin_sec)
        self._clock = clock or time.monotonic
        self._sleep = sleep or time.sleep

        self.counter = 0.0
        self.last_decay = self._clock()
        self.wait_count = 0
        self.total_wait_seconds = 0.0
        self.lock = threading.Lock()
        # Held by one reserving caller at a time, including while it sleeps
        self._turn = threading.Lock()

    def _decay(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self.last_decay)
        self.counter = max(0.0, self.counter - elapsed * self.decay_rate)
        self.last_decay = now

    def _wait_seconds(self, cost: float) -> float:
        excess = self.counter + cost - self.max_counter
        return math.ceil(excess / self.decay_rate) + self.safety_margin

    def reserve(self, cost: float) -> None:
        """
        Blocks until ``cost`` fits in the budget, then charges it.
        """
        if cost < 0:
            raise ValueError("Cost cannot be negative")
        if cost > self.max_counter:
            raise ValueError(
                f"Cost {cost} exceeds max counter {self.max_counter}; it can never be granted"
            )

        with self._turn:
            while True:
                with self.lock:
                    self._decay()
                    if self.counter + cost <= self.max_counter:
                        self.counter += cost
                        return
                    counter = self.counter
                    wait = self._wait_seconds(cost)
                    self.wait_count += 1
                    self.total_wait_seconds += wait

                logger.info(
                    "Rate limit counter at %.1f, waiting %.1fs before +%s call",
                    counter,
                    wait,
                    cost,
                    extra=structured_log_extra(
                        event="rate_limit_wait", counter=counter, cost=cost, wait_seconds=wait
                    ),
                )
                self._sleep(wait)

    def budget(self) -> RateBudget:
        """Return the current (decayed) budget state."""
        with self.lock:
            self._decay()
            return RateBudget(
                counter=self.counter,
                max_counter=self.max_counter,
                decay_rate_per_second=self.decay_rate,
                last_decay_timestamp=self.last_decay,
            )
