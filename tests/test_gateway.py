# tests/test_gateway.py

from unittest.mock import MagicMock

import pytest

from kraken_ledger.connection.exceptions import (
    AuthError,
    KrakenAPIError,
    RateLimitError,
    ServiceUnavailableError,
)
from kraken_ledger.connection.gateway import KrakenGateway, classify_error


def _trade_payload(time, side="buy", pair="XXBTZEUR"):
    return {
        "ordertxid": "OABC-123",
        "pair": pair,
        "time": time,
        "type": side,
        "ordertype": "limit",
        "price": "30000.0",
        "cost": "300.0",
        "fee": "0.48",
        "vol": "0.01",
    }


@pytest.fixture
def rest_client():
    return MagicMock()


@pytest.fixture
def gateway(rest_client):
    return KrakenGateway(rest_client)


def test_fetch_trade_page_parses_and_orders_newest_first(gateway, rest_client):
    rest_client.get_trades_history.return_value = {
        "trades": {
            "TA": _trade_payload(1_700_000_000.1),
            "TB": _trade_payload(1_700_000_500.2, side="sell"),
        },
        "count": 2,
    }

    page = gateway.fetch_trade_page(offset=0)

    assert page.ok
    assert [r.id for r in page.records] == ["TB", "TA"]
    assert page.total_available == 2
    first = page.records[0]
    assert first.side == "sell"
    assert first.volume == pytest.approx(0.01)
    assert first.fee == pytest.approx(0.48)
    assert first.raw["price"] == "30000.0"
    rest_client.get_trades_history.assert_called_once_with(offset=0)


def test_fetch_trade_page_bounds_records_by_page_size(gateway, rest_client):
    rest_client.get_trades_history.return_value = {
        "trades": {f"T{i}": _trade_payload(1_700_000_000 + i) for i in range(5)},
        "count": "5",
    }

    page = gateway.fetch_trade_page(offset=0, page_size=3)

    assert [r.id for r in page.records] == ["T4", "T3", "T2"]


@pytest.mark.parametrize(
    "exc, kind, retryable",
    [
        (RateLimitError("EAPI:Rate limit exceeded"), "transient", True),
        (ServiceUnavailableError("Request timed out"), "transient", True),
        (AuthError("EAPI:Invalid key"), "auth", False),
        (KrakenAPIError("EGeneral:Invalid arguments"), "api", False),
    ],
)
def test_fetch_trade_page_tags_client_errors(gateway, rest_client, exc, kind, retryable):
    rest_client.get_trades_history.side_effect = exc

    page = gateway.fetch_trade_page(offset=100)

    assert not page.ok
    assert page.records == []
    assert page.error.kind == kind
    assert page.error.retryable is retryable


def test_fetch_trade_page_flags_malformed_payload(gateway, rest_client):
    rest_client.get_trades_history.return_value = {"trades": {"T1": {"price": "not-a-number"}}}

    page = gateway.fetch_trade_page(offset=0)

    assert page.error.kind == "invalid_response"
    assert page.error.retryable is False


def test_fetch_balance_converts_amounts(gateway, rest_client):
    rest_client.get_balance.return_value = {"ZEUR": "100.50", "XXBT": "0.25"}

    result = gateway.fetch_balance()

    assert result.ok
    assert result.value == {"ZEUR": 100.5, "XXBT": 0.25}


def test_fetch_open_orders_returns_open_map(gateway, rest_client):
    rest_client.get_open_orders.return_value = {"open": {"O1": {"status": "open"}}}

    result = gateway.fetch_open_orders()

    assert result.value == {"O1": {"status": "open"}}


def test_fetch_open_orders_reports_errors(gateway, rest_client):
    rest_client.get_open_orders.side_effect = ServiceUnavailableError("EService:Busy")

    result = gateway.fetch_open_orders()

    assert not result.ok
    assert result.error.retryable


def test_fetch_ticker_reads_last_trade_price(gateway, rest_client):
    rest_client.get_ticker.return_value = {"XXBTZEUR": {"c": ["35000.1", "0.01"]}}

    result = gateway.fetch_ticker(["XXBTZEUR"])

    assert result.value == {"XXBTZEUR": pytest.approx(35000.1)}


def test_fetch_ticker_without_pairs_skips_request(gateway, rest_client):
    assert gateway.fetch_ticker([]).value == {}
    rest_client.get_ticker.assert_not_called()


def test_classify_unknown_exception_as_invalid_response():
    error = classify_error(ValueError("boom"))

    assert error.kind == "invalid_response"
    assert error.message == "boom"
