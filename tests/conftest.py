"""Shared fixtures: a scripted exchange gateway and trade builders."""
from __future__ import annotations

from typing import Dict, List, Optional, Set

import pytest

from kraken_ledger.config import AppConfig
from kraken_ledger.connection.gateway import GatewayError, GatewayResult, TradePage
from kraken_ledger.ledger.models import TradeRecord


def make_trade(
    trade_id: str,
    side: str,
    volume: float,
    cost: float,
    time: float,
    pair: str = "XXBTZEUR",
    price: Optional[float] = None,
) -> TradeRecord:
    return TradeRecord(
        id=trade_id,
        pair=pair,
        side=side,
        price=price if price is not None else (cost / volume if volume else 0.0),
        volume=volume,
        cost=cost,
        time=time,
    )


def make_history(count: int, start_time: float = 1_700_000_000.0, prefix: str = "T") -> List[TradeRecord]:
    """``count`` buy trades, newest first as Kraken serves them."""
    trades = [
        make_trade(f"{prefix}{i:05d}", "buy", 0.01, 300.0, start_time + i * 60)
        for i in range(count)
    ]
    return list(reversed(trades))


class FakeExchange:
    """
    Serves a reverse-chronological history in fixed pages.

    ``fail_offsets`` makes the page at that offset return a transient error.
    """

    def __init__(self, history: List[TradeRecord], page_size: int = 50):
        self.history = list(history)
        self.page_size = page_size
        self.fail_offsets: Set[int] = set()
        self.error = GatewayError(kind="transient", message="Request timed out", retryable=True)
        self.calls: List[int] = []
        self.balances: Dict[str, float] = {}
        self.open_orders: Dict[str, dict] = {}
        self.prices: Dict[str, float] = {}

    def add_newer(self, trades: List[TradeRecord]) -> None:
        """Prepend trades newer than everything already in the history."""
        self.history = sorted(trades, key=lambda t: t.time, reverse=True) + self.history

    def fetch_trade_page(self, offset: int, page_size: int = 50) -> TradePage:
        self.calls.append(offset)
        if offset in self.fail_offsets:
            return TradePage(error=self.error)
        return TradePage(records=self.history[offset : offset + min(page_size, self.page_size)])

    def fetch_balance(self) -> GatewayResult:
        return GatewayResult(value=dict(self.balances))

    def fetch_open_orders(self) -> GatewayResult:
        return GatewayResult(value=dict(self.open_orders))

    def fetch_ticker(self, pairs) -> GatewayResult:
        return GatewayResult(value={p: self.prices[p] for p in pairs if p in self.prices})


class FakeClock:
    def __init__(self, start: float = 1_000.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def app_config(tmp_path) -> AppConfig:
    config = AppConfig()
    config.ledger.data_dir = str(tmp_path / "data")
    return config
