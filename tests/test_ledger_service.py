# tests/test_ledger_service.py

import threading
import time
from pathlib import Path

import pytest

from kraken_ledger.connection.gateway import GatewayError, GatewayResult
from kraken_ledger.ledger.models import SyncMode
from kraken_ledger.ledger.service import LedgerService, normalize_asset
from kraken_ledger.ledger.store import (
    ANALYTICS_FILENAME,
    COST_BASIS_FILENAME,
    TRADE_HISTORY_FILENAME,
    LedgerStore,
)
from kraken_ledger.metrics import SystemMetrics

from conftest import FakeExchange, make_history, make_trade

NOW = 1_000.0


def _scenario_history():
    return [
        make_trade("S1", "sell", 1.5, 37_500.0, 300),
        make_trade("B2", "buy", 1.0, 20_000.0, 200),
        make_trade("B1", "buy", 1.0, 10_000.0, 100),
    ]


@pytest.fixture
def exchange():
    return FakeExchange(_scenario_history())


@pytest.fixture
def service(app_config, exchange):
    return LedgerService(app_config, gateway=exchange, clock=lambda: NOW)


def test_sync_rebuilds_cost_basis_and_analytics(service, app_config):
    result = service.trigger_sync()

    assert result.success
    assert result.new_records == 3
    cost_basis = service.get_cost_basis_snapshot()
    assert cost_basis["XXBT"].realized_pnl == pytest.approx(17_500)
    summary = service.get_analytics_summary()
    assert summary.summary.total_trades == 1
    assert summary.summary.realized_pnl == pytest.approx(17_500)
    assert summary.summary.weekly_pnl == pytest.approx(17_500)
    assert summary.last_update == NOW

    for name in (TRADE_HISTORY_FILENAME, COST_BASIS_FILENAME, ANALYTICS_FILENAME):
        assert (Path(app_config.ledger.data_dir) / name).exists()


def test_state_reloads_from_disk(service, app_config, exchange):
    service.trigger_sync()

    reloaded = LedgerService(app_config, gateway=exchange, clock=lambda: NOW)
    reloaded.initialize()

    assert len(reloaded.get_ledger_snapshot()) == 3
    assert reloaded.get_cost_basis_snapshot("XXBT").realized_pnl == pytest.approx(17_500)


def test_missing_cost_basis_is_rebuilt_on_load(service, app_config, exchange):
    service.trigger_sync()
    store = LedgerStore(app_config.ledger.data_dir)
    (store.data_dir / COST_BASIS_FILENAME).unlink()

    reloaded = LedgerService(app_config, gateway=exchange, clock=lambda: NOW)
    reloaded.initialize()

    assert reloaded.get_cost_basis_snapshot("XXBT").lots[0].remaining == pytest.approx(0.5)


def test_snapshots_are_copies(service):
    service.trigger_sync()

    ledger = service.get_ledger_snapshot()
    ledger.trades.clear()
    cost_basis = service.get_cost_basis_snapshot()
    cost_basis["XXBT"].lots.clear()

    assert len(service.get_ledger_snapshot()) == 3
    assert len(service.get_cost_basis_snapshot("XXBT").lots) == 1


def test_failed_sync_reports_without_raising(service, exchange):
    exchange.fail_offsets = {0}

    result = service.trigger_sync()

    assert not result.success
    assert result.retryable
    snapshot = service.metrics.snapshot()
    assert snapshot["syncs_failed"] == 1
    assert snapshot["last_sync_error"] == "Request timed out"


def test_no_rebuild_without_new_trades(service):
    service.trigger_sync()
    rebuilds = service.metrics.snapshot()["cost_basis_rebuilds"]

    result = service.trigger_sync(SyncMode.INCREMENTAL)

    assert result.new_records == 0
    assert service.metrics.snapshot()["cost_basis_rebuilds"] == rebuilds


def test_concurrent_syncs_are_serialized(app_config):
    class SlowExchange(FakeExchange):
        def __init__(self, history):
            super().__init__(history)
            self.active = 0
            self.max_active = 0
            self._guard = threading.Lock()

        def fetch_trade_page(self, offset, page_size=50):
            with self._guard:
                self.active += 1
                self.max_active = max(self.max_active, self.active)
            time.sleep(0.01)
            try:
                return super().fetch_trade_page(offset, page_size)
            finally:
                with self._guard:
                    self.active -= 1

    exchange = SlowExchange(make_history(120))
    service = LedgerService(app_config, gateway=exchange, clock=lambda: NOW)
    threads = [threading.Thread(target=service.trigger_sync) for _ in range(4)]

    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert exchange.max_active == 1
    assert len(service.get_ledger_snapshot()) == 120


def test_recent_trades_newest_first(service):
    service.trigger_sync()

    assert [t.id for t in service.get_recent_trades(2)] == ["S1", "B2"]
    assert len(service.get_recent_trades()) == 3


def test_asset_activity_summarizes_one_asset(service, exchange):
    exchange.add_newer([make_trade("E1", "buy", 2.0, 4_000.0, 400, pair="XETHZEUR")])
    service.trigger_sync()

    activity = service.get_asset_activity("XBT")

    assert activity.asset == "XXBT"
    assert activity.buy_count == 2
    assert activity.sell_count == 1
    assert activity.total_bought == pytest.approx(30_000)
    assert activity.avg_buy_price == pytest.approx(15_000)
    assert activity.avg_sell_price == pytest.approx(25_000)
    assert activity.realized_pnl == pytest.approx(17_500)
    assert activity.open_lots == 1
    assert activity.completed_trades_count == 1
    assert [t.id for t in activity.recent_trades] == ["S1", "B2", "B1"]
    assert len(activity.closed_pnl) == 1


def test_unknown_asset_lookup(service):
    service.trigger_sync()

    assert service.get_cost_basis_snapshot("DOGE") is None
    assert service.get_asset_activity("DOGE").buy_count == 0


def test_refresh_account_and_positions(service, exchange):
    exchange.balances = {"XXBT": 0.5, "ZEUR": 100.0}
    exchange.open_orders = {"O1": {"status": "open"}}
    exchange.prices = {"XXBTZEUR": 40_000.0}

    outcome = service.refresh_account()
    positions = service.get_positions()

    assert outcome["balance_ok"] and outcome["open_orders_ok"]
    assert outcome["sync"].new_records == 3
    assert service.get_open_orders() == {"O1": {"status": "open"}}
    assert set(positions) == {"XXBT"}
    assert positions["XXBT"].cost_basis == pytest.approx(10_000)
    assert positions["XXBT"].unrealized_pnl == pytest.approx(10_000)
    assert service.metrics.snapshot()["last_unrealized_pnl"] == pytest.approx(10_000)


def test_balance_failure_is_recorded(app_config, exchange):
    class NoBalanceExchange(FakeExchange):
        def fetch_balance(self):
            return GatewayResult(error=GatewayError(kind="auth", message="EAPI:Invalid key", retryable=False))

    metrics = SystemMetrics()
    broken = NoBalanceExchange(exchange.history)
    service = LedgerService(app_config, gateway=broken, metrics=metrics, clock=lambda: NOW)

    outcome = service.refresh_account()

    assert outcome["balance_ok"] is False
    assert metrics.snapshot()["gateway_errors"] == 1
    assert service.get_balances() == {}


def test_persistence_failure_keeps_memory_state(app_config, exchange, tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory")
    app_config.ledger.data_dir = str(blocker)
    service = LedgerService(app_config, gateway=exchange, clock=lambda: NOW)

    result = service.trigger_sync()

    assert result.success
    assert not result.persisted
    assert len(service.get_ledger_snapshot()) == 3
    assert service.metrics.snapshot()["persistence_errors"] == 3


def test_run_forever_stops_on_event(service):
    stop = threading.Event()
    calls = []

    def refresh():
        calls.append(1)
        stop.set()
        return {"sync": service.trigger_sync()}

    service.refresh_account = refresh
    service.run_forever(interval_sec=0.01, stop_event=stop)

    assert calls == [1]


def test_rate_budget_reflects_limiter(service):
    budget = service.get_rate_budget()

    assert budget.max_counter == 15
    assert budget.counter == 0



def test_repair_survives_service_restart(app_config):
    exchange = FakeExchange(make_history(130))
    exchange.fail_offsets = {50}
    first = LedgerService(app_config, gateway=exchange, clock=lambda: NOW)

    failed = first.trigger_sync()

    assert not failed.success
    assert len(first.get_ledger_snapshot()) == 50

    exchange.fail_offsets = set()
    exchange.calls.clear()
    restarted = LedgerService(app_config, gateway=exchange, clock=lambda: NOW)

    result = restarted.trigger_sync()

    assert result.mode == SyncMode.FULL
    assert result.success
    assert exchange.calls == [0, 50, 100]
    assert len(restarted.get_ledger_snapshot()) == 130
    assert not restarted.get_ledger_snapshot().needs_repair


def test_get_metrics_includes_rate_counter(service):
    service.trigger_sync()

    metrics = service.get_metrics()

    assert metrics["syncs_completed"] == 1
    assert metrics["trades_ingested"] == 3
    assert metrics["rate_limit_counter"] == 0

@pytest.mark.parametrize(
    "raw, expected",
    [("XXBT", "XBT"), ("XBT", "XBT"), ("ZEUR", "EUR"), ("DOT.S", "DOT"), ("sol", "SOL")],
)
def test_normalize_asset(raw, expected):
    assert normalize_asset(raw) == expected
