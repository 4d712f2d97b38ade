# src/kraken_ledger/connection/nonce.py

import threading
import time
from typing import Callable, Optional


def _epoch_millis() -> int:
    return time.time_ns() // 1_000_000


class NonceGenerator:
    """
    Strictly increasing millisecond nonces for signed requests.

    Kraken rejects a nonce that is not above the last one it saw for the key,
    so bursts within one millisecond are bumped past the previous value.
    """

    def __init__(self, clock_ms: Optional[Callable[[], int]] = None, start_after: int = 0):
        self._clock_ms = clock_ms or _epoch_millis
        self._lock = threading.Lock()
        self._last_nonce = start_after

    @property
    def last(self) -> int:
        return self._last_nonce

    def generate(self) -> int:
        with self._lock:
            nonce = max(self._clock_ms(), self._last_nonce + 1)
            self._last_nonce = nonce
            return nonce
