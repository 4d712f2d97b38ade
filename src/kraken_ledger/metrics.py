"""Lightweight in-memory counters for operational visibility."""

from __future__ import annotations

from collections import deque
from datetime import datetime, timezone
from threading import Lock
from typing import Deque, Dict, Optional


class SystemMetrics:
    """Thread-safe, low-overhead counters for ledger sync activity."""

    def __init__(self, max_errors: int = 50) -> None:
        self._lock = Lock()
        self._recent_errors: Deque[Dict[str, str]] = deque(maxlen=max_errors)
        self.syncs_completed = 0
        self.syncs_failed = 0
        self.pages_fetched = 0
        self.trades_ingested = 0
        self.cost_basis_rebuilds = 0
        self.gateway_errors = 0
        self.persistence_errors = 0
        self.last_sync_at: Optional[str] = None
        self.last_sync_error: Optional[str] = None
        self.last_realized_pnl: Optional[float] = None
        self.last_unrealized_pnl: Optional[float] = None
        self.rate_limit_waits = 0
        self.rate_limit_wait_seconds = 0.0

    def record_sync(
        self,
        *,
        success: bool,
        pages: int,
        new_records: int,
        error: Optional[str] = None,
    ) -> None:
        """Track a sync cycle and its outcome."""

        with self._lock:
            self.pages_fetched += max(pages, 0)
            self.trades_ingested += max(new_records, 0)
            self.last_sync_at = datetime.now(timezone.utc).isoformat()
            if success:
                self.syncs_completed += 1
                self.last_sync_error = None
            else:
                self.syncs_failed += 1
                self.last_sync_error = error
                if error:
                    self._recent_errors.appendleft(self._format_error(error))

    def record_rebuild(self, realized_pnl: float) -> None:
        with self._lock:
            self.cost_basis_rebuilds += 1
            self.last_realized_pnl = realized_pnl

    def record_gateway_error(self, message: str) -> None:
        """Track gateway failures outside of trade sync (balance, orders, ticker)."""

        with self._lock:
            self.gateway_errors += 1
            self._recent_errors.appendleft(self._format_error(message))

    def record_persistence_error(self, message: str) -> None:
        with self._lock:
            self.persistence_errors += 1
            self._recent_errors.appendleft(self._format_error(message))

    def update_unrealized_pnl(self, unrealized_pnl: Optional[float]) -> None:
        with self._lock:
            self.last_unrealized_pnl = unrealized_pnl

    def update_rate_limit(self, waits: int, wait_seconds: float) -> None:
        with self._lock:
            self.rate_limit_waits = waits
            self.rate_limit_wait_seconds = wait_seconds

    def snapshot(self) -> Dict[str, object]:
        """Return a read-only snapshot of current counters."""

        with self._lock:
            return {
                "syncs_completed": self.syncs_completed,
                "syncs_failed": self.syncs_failed,
                "pages_fetched": self.pages_fetched,
                "trades_ingested": self.trades_ingested,
                "cost_basis_rebuilds": self.cost_basis_rebuilds,
                "gateway_errors": self.gateway_errors,
                "persistence_errors": self.persistence_errors,
                "last_sync_at": self.last_sync_at,
                "last_sync_error": self.last_sync_error,
                "last_realized_pnl": self.last_realized_pnl,
                "last_unrealized_pnl": self.last_unrealized_pnl,
                "rate_limit_waits": self.rate_limit_waits,
                "rate_limit_wait_seconds": self.rate_limit_wait_seconds,
                "recent_errors": list(self._recent_errors),
            }

    @staticmethod
    def _format_error(message: str) -> Dict[str, str]:
        return {
            "at": datetime.now(timezone.utc).isoformat(),
            "message": message,
        }


__all__ = ["SystemMetrics"]
