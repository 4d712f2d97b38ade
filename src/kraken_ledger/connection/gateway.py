# src/kraken_ledger/connection/gateway.py

"""Exchange gateway returning tagged results instead of raising.

Sync code runs against :class:`ExchangeGateway`; :class:`KrakenGateway` is the
production implementation on top of :class:`KrakenRESTClient`. Every private
call reserves its cost on the client's rate limiter before going out.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Generic, List, Optional, Protocol, TypeVar

from kraken_ledger.ledger.models import TradeRecord
from kraken_ledger.logging_config import structured_log_extra

from .exceptions import AuthError, KrakenAPIError, TransientGatewayError
from .rest_client import KrakenRESTClient

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 50

T = TypeVar("T")


@dataclass(frozen=True)
class GatewayError:
    kind: str  # "transient" | "auth" | "api" | "invalid_response"
    message: str
    retryable: bool


@dataclass
class GatewayResult(Generic[T]):
    value: Optional[T] = None
    error: Optional[GatewayError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class TradePage:
    records: List[TradeRecord] = field(default_factory=list)
    error: Optional[GatewayError] = None
    total_available: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def classify_error(exc: Exception) -> GatewayError:
    """Map a client exception onto a gateway error tag."""
    if isinstance(exc, TransientGatewayError):
        return GatewayError(kind="transient", message=str(exc), retryable=True)
    if isinstance(exc, AuthError):
        return GatewayError(kind="auth", message=str(exc), retryable=False)
    if isinstance(exc, KrakenAPIError):
        return GatewayError(kind="api", message=str(exc), retryable=False)
    return GatewayError(kind="invalid_response", message=str(exc), retryable=False)


class ExchangeGateway(Protocol):
    def fetch_trade_page(self, offset: int, page_size: int = DEFAULT_PAGE_SIZE) -> TradePage: ...

    def fetch_balance(self) -> GatewayResult[Dict[str, float]]: ...

    def fetch_open_orders(self) -> GatewayResult[Dict[str, Any]]: ...

    def fetch_ticker(self, pairs: List[str]) -> GatewayResult[Dict[str, float]]: ...


class KrakenGateway:
    def __init__(self, rest_client: KrakenRESTClient):
        self.rest_client = rest_client

    def fetch_trade_page(self, offset: int, page_size: int = DEFAULT_PAGE_SIZE) -> TradePage:
        """
        Fetch one page of trades starting at ``offset``, newest first.

        Kraken serves a fixed page of 50; ``page_size`` only bounds what is returned.
        """
        try:
            result = self.rest_client.get_trades_history(offset=offset)
            trades = result.get("trades") or {}
            records = [TradeRecord.from_kraken(trade_id, payload) for trade_id, payload in trades.items()]
        except (KrakenAPIError, ValueError, TypeError, AttributeError) as exc:
            error = classify_error(exc)
            logger.warning(
                "Trade history page at offset %s failed: %s",
                offset,
                exc,
                extra=structured_log_extra(
                    event="gateway_trade_page_failed", offset=offset, error_kind=error.kind
                ),
            )
            return TradePage(error=error)

        records.sort(key=lambda r: r.time, reverse=True)
        try:
            total_available = int(result["count"]) if result.get("count") is not None else None
        except (TypeError, ValueError):
            total_available = None

        return TradePage(records=records[:page_size], total_available=total_available)

    def fetch_balance(self) -> GatewayResult[Dict[str, float]]:
        try:
            result = self.rest_client.get_balance()
            balances = {asset: float(amount) for asset, amount in result.items()}
        except (KrakenAPIError, ValueError, TypeError, AttributeError) as exc:
            error = classify_error(exc)
            logger.warning(
                "Balance fetch failed: %s", exc,
                extra=structured_log_extra(event="gateway_balance_failed", error_kind=error.kind),
            )
            return GatewayResult(error=error)
        return GatewayResult(value=balances)

    def fetch_open_orders(self) -> GatewayResult[Dict[str, Any]]:
        try:
            result = self.rest_client.get_open_orders()
            orders = dict(result.get("open") or {})
        except (KrakenAPIError, ValueError, TypeError, AttributeError) as exc:
            error = classify_error(exc)
            logger.warning(
                "Open orders fetch failed: %s", exc,
                extra=structured_log_extra(event="gateway_open_orders_failed", error_kind=error.kind),
            )
            return GatewayResult(error=error)
        return GatewayResult(value=orders)

    def fetch_ticker(self, pairs: List[str]) -> GatewayResult[Dict[str, float]]:
        """Last trade price per pair. Public endpoint, not charged to the private counter."""
        if not pairs:
            return GatewayResult(value={})
        try:
            result = self.rest_client.get_ticker(pairs)
            prices = {pair: float(data["c"][0]) for pair, data in result.items()}
        except (KrakenAPIError, ValueError, TypeError, KeyError, IndexError) as exc:
            error = classify_error(exc)
            logger.warning(
                "Ticker fetch failed: %s", exc,
                extra=structured_log_extra(event="gateway_ticker_failed", error_kind=error.kind),
            )
            return GatewayResult(error=error)
        return GatewayResult(value=prices)
