# tests/test_ledger_store.py

import json
import os
from unittest.mock import patch

import pytest

from kraken_ledger.ledger.exceptions import PersistenceError
from kraken_ledger.ledger.models import (
    AnalyticsSummary,
    CompletedTrade,
    CostBasisLedger,
    Lot,
    TradeAnalytics,
    TradeLedger,
    TradeRecord,
)
from kraken_ledger.ledger.store import (
    COST_BASIS_FILENAME,
    TRADE_HISTORY_FILENAME,
    JsonDocumentStore,
    LedgerStore,
)

RAW_TRADE = {
    "ordertxid": "OQCLML-BW3P3-BUCMWZ",
    "postxid": "TKH2SE-M7IF5-CFI7LT",
    "pair": "XXBTZEUR",
    "time": 1688667796.8802,
    "type": "buy",
    "ordertype": "limit",
    "price": "30010.00000",
    "cost": "600.20000",
    "fee": "0.00000",
    "vol": "0.02000000",
    "margin": "0.00000",
    "misc": "",
}


@pytest.fixture
def store(tmp_path):
    return LedgerStore(str(tmp_path))


def test_missing_files_load_as_empty_defaults(store):
    assert len(store.load_trade_ledger()) == 0
    assert store.load_cost_basis() == {}
    assert store.load_analytics().summary == AnalyticsSummary()


def test_trade_history_round_trips_exchange_payload(store, tmp_path):
    ledger = TradeLedger(last_fetch_time=1_700_000_000.0)
    ledger.add(TradeRecord.from_kraken("TCWJEG-FL4SZ-3FKGH6", RAW_TRADE))
    ledger.refresh_count()

    assert store.save_trade_ledger(ledger)
    written = json.loads((tmp_path / TRADE_HISTORY_FILENAME).read_text())

    assert written == {
        "trades": {"TCWJEG-FL4SZ-3FKGH6": RAW_TRADE},
        "lastFetchTime": 1_700_000_000.0,
        "totalCount": 1,
        "needsRepair": False,
    }
    loaded = store.load_trade_ledger()
    assert loaded.trades["TCWJEG-FL4SZ-3FKGH6"].volume == pytest.approx(0.02)
    assert loaded.to_dict() == written


def test_trade_history_without_repair_flag_loads_clean(store, tmp_path):
    (tmp_path / TRADE_HISTORY_FILENAME).write_text(
        json.dumps({"trades": {"T1": RAW_TRADE}, "lastFetchTime": None, "totalCount": 1})
    )

    assert store.load_trade_ledger().needs_repair is False


def test_repair_flag_survives_reload(store):
    ledger = TradeLedger(needs_repair=True)
    ledger.add(TradeRecord.from_kraken("T1", RAW_TRADE))

    assert store.save_trade_ledger(ledger)

    assert store.load_trade_ledger().needs_repair is True


def test_cost_basis_round_trip(store, tmp_path):
    cost_basis = {
        "XXBT": CostBasisLedger(
            lots=[Lot(price=20_000.0, amount=1.0, remaining=0.5, time=200)],
            total_invested=30_000.0,
            total_returned=37_500.0,
            realized_pnl=17_500.0,
            completed_trades=[CompletedTrade(300, 25_000.0, 1.5, 1.5, 17_500.0, 87.5)],
        )
    }

    assert store.save_cost_basis(cost_basis)
    written = json.loads((tmp_path / COST_BASIS_FILENAME).read_text())

    assert written["XXBT"]["realizedPnL"] == 17_500.0
    assert written["XXBT"]["completedTrades"][0]["amountMatched"] == 1.5
    assert store.load_cost_basis()["XXBT"].to_dict() == cost_basis["XXBT"].to_dict()


def test_analytics_round_trip(store):
    analytics = TradeAnalytics(last_update=1.0, summary=AnalyticsSummary(total_trades=4, weekly_pnl=2.5))

    store.save_analytics(analytics)

    assert store.load_analytics().to_dict() == analytics.to_dict()


@pytest.mark.parametrize("content", ["{not json", "[1, 2, 3]", '{"trades": [1, 2]}'])
def test_malformed_trade_history_falls_back_to_empty(store, tmp_path, content):
    (tmp_path / TRADE_HISTORY_FILENAME).write_text(content)

    ledger = store.load_trade_ledger()

    assert len(ledger) == 0
    assert ledger.last_fetch_time is None


def test_malformed_cost_basis_falls_back_to_empty(store, tmp_path):
    (tmp_path / COST_BASIS_FILENAME).write_text('{"XXBT": {"lots": [{"price": 1}]}}')

    assert store.load_cost_basis() == {}


def test_failed_save_returns_false_and_keeps_previous_file(store, tmp_path):
    ledger = TradeLedger()
    ledger.add(TradeRecord.from_kraken("T1", RAW_TRADE))
    store.save_trade_ledger(ledger)
    before = (tmp_path / TRADE_HISTORY_FILENAME).read_text()

    ledger.add(TradeRecord.from_kraken("T2", RAW_TRADE))
    with patch("kraken_ledger.ledger.store.os.replace", side_effect=OSError("disk full")):
        assert store.save_trade_ledger(ledger) is False

    assert (tmp_path / TRADE_HISTORY_FILENAME).read_text() == before
    assert [p.name for p in tmp_path.iterdir()] == [TRADE_HISTORY_FILENAME]


def test_document_store_write_is_atomic_replace(tmp_path):
    document = JsonDocumentStore(tmp_path / "nested" / "doc.json")

    document.write({"a": 1})
    document.write({"a": 2})

    assert document.read() == {"a": 2}
    assert os.listdir(tmp_path / "nested") == ["doc.json"]


def test_document_store_read_error_is_wrapped(tmp_path):
    with pytest.raises(PersistenceError) as excinfo:
        JsonDocumentStore(tmp_path / "missing.json").read()

    assert excinfo.value.path.endswith("missing.json")
