# src/kraken_ledger/ledger/service.py

import copy
import logging
import re
import threading
import time
from typing import Any, Callable, Dict, List, Optional

from kraken_ledger.config import AppConfig
from kraken_ledger.connection.gateway import ExchangeGateway, KrakenGateway
from kraken_ledger.connection.rate_limiter import RateBudget, RateLimiter
from kraken_ledger.connection.rest_client import KrakenRESTClient
from kraken_ledger.logging_config import structured_log_extra
from kraken_ledger.metrics import SystemMetrics

from .analytics import AnalyticsAggregator
from .cost_basis import CostBasisEngine, asset_from_pair
from .models import (
    AssetActivity,
    CostBasisLedger,
    PositionView,
    SyncMode,
    SyncResult,
    TradeAnalytics,
    TradeLedger,
    TradeRecord,
)
from .positions import build_positions, total_unrealized_pnl
from .store import LedgerStore
from .sync import TradeSync

logger = logging.getLogger(__name__)

ASSET_ACTIVITY_TRADES = 50


def normalize_asset(asset: str) -> str:
    """Strip Kraken's legacy X/Z prefix from four-letter codes and the staking suffix."""
    asset = re.sub(r"\.S$", "", asset.upper())
    if len(asset) == 4 and asset[0] in "XZ":
        return asset[1:]
    return asset


class LedgerService:
    """
    Owns the trade ledger and its derived cost basis and analytics.

    All writes happen inside :meth:`trigger_sync` under one re-entrant lock, so
    overlapping callers (scheduler, CLI, UI) run their cycles one at a time and
    readers never see a half-rebuilt state. Read accessors return copies.
    """

    def __init__(
        self,
        config: AppConfig,
        gateway: Optional[ExchangeGateway] = None,
        store: Optional[LedgerStore] = None,
        rate_limiter: Optional[RateLimiter] = None,
        metrics: Optional[SystemMetrics] = None,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.config = config
        self._clock = clock or time.time

        rl_config = config.connection.rate_limit
        self.rate_limiter = rate_limiter or RateLimiter(
            max_counter=rl_config.max_counter,
            decay_rate_per_second=rl_config.decay_rate_per_second,
            safety_margin_sec=rl_config.safety_margin_sec,
        )
        if gateway is None:
            rest_client = KrakenRESTClient(
                api_url=config.connection.api_url,
                api_key=api_key,
                api_secret=api_secret,
                rate_limiter=self.rate_limiter,
                request_timeout=config.connection.request_timeout,
                endpoint_costs={
                    "TradesHistory": config.connection.trade_page_cost,
                    "Balance": config.connection.balance_cost,
                    "OpenOrders": config.connection.open_orders_cost,
                },
            )
            gateway = KrakenGateway(rest_client)
        self.gateway = gateway

        self.store = store or LedgerStore(config.ledger.data_dir)
        self.metrics = metrics or SystemMetrics()
        self.engine = CostBasisEngine(quote=config.ledger.base_currency, pair_bases=config.ledger.pair_bases)
        self.aggregator = AnalyticsAggregator(
            recent_window=config.ledger.recent_window_size,
            time_window_days=config.ledger.time_window_days,
        )

        self._lock = threading.RLock()
        self._ledger = TradeLedger()
        self._cost_basis: Dict[str, CostBasisLedger] = {}
        self._analytics = TradeAnalytics()
        self._balances: Dict[str, float] = {}
        self._open_orders: Dict[str, Any] = {}
        self._trade_sync = self._build_trade_sync()
        self._initialized = False

    def _build_trade_sync(self) -> TradeSync:
        return TradeSync(
            self.gateway,
            self._ledger,
            store=self.store,
            page_size=self.config.sync.page_size,
            max_pages=self.config.sync.max_pages,
            clock=self._clock,
        )

    def initialize(self) -> None:
        """Load persisted state. Rebuilds the cost basis if it is missing for a non-empty ledger."""
        with self._lock:
            if self._initialized:
                return

            logger.info("Loading persisted ledger state...", extra=structured_log_extra(event="ledger_init"))
            self._ledger = self.store.load_trade_ledger()
            self._cost_basis = self.store.load_cost_basis()
            self._analytics = self.store.load_analytics()
            self._trade_sync = self._build_trade_sync()

            if self._ledger.trades and not self._cost_basis:
                self._rebuild()
                self._refresh_analytics()

            self._initialized = True
            logger.info(
                "Ledger loaded with %d trades across %d assets",
                len(self._ledger),
                len(self._cost_basis),
                extra=structured_log_extra(
                    event="ledger_loaded", trades=len(self._ledger), assets=len(self._cost_basis)
                ),
            )

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------
    def trigger_sync(self, mode: SyncMode = SyncMode.AUTO) -> SyncResult:
        """
        Run one sync cycle: fetch trades, rebuild cost basis when new trades
        arrived, and refresh analytics. Never raises for gateway failures.
        """
        with self._lock:
            self.initialize()
            result = self._trade_sync.sync(mode)

            if not result.persisted:
                self.metrics.record_persistence_error("Failed to persist trade ledger")

            if result.new_records > 0:
                self._rebuild()
            # Time-window figures move even without new trades
            self._refresh_analytics()

            self.metrics.record_sync(
                success=result.success,
                pages=result.pages_fetched,
                new_records=result.new_records,
                error=result.error.message if result.error else None,
            )
            self.metrics.update_rate_limit(self.rate_limiter.wait_count, self.rate_limiter.total_wait_seconds)
            return result

    def _rebuild(self) -> None:
        self._cost_basis = self.engine.rebuild(self._ledger, previous=self._cost_basis)
        if not self.store.save_cost_basis(self._cost_basis):
            self.metrics.record_persistence_error("Failed to persist cost basis")
        self.metrics.record_rebuild(sum(cb.realized_pnl for cb in self._cost_basis.values()))

    def _refresh_analytics(self) -> None:
        self._analytics = self.aggregator.summarize(self._cost_basis, now=self._clock())
        if not self.store.save_analytics(self._analytics):
            self.metrics.record_persistence_error("Failed to persist analytics")

    def refresh_account(self) -> Dict[str, Any]:
        """Balance (+1), open orders (+1), then an incremental trade sync (+2 per page)."""
        with self._lock:
            balance = self.gateway.fetch_balance()
            if balance.ok:
                self._balances = balance.value or {}
            else:
                self.metrics.record_gateway_error(f"Balance: {balance.error.message}")

            orders = self.gateway.fetch_open_orders()
            if orders.ok:
                self._open_orders = orders.value or {}
            else:
                self.metrics.record_gateway_error(f"OpenOrders: {orders.error.message}")

            sync_result = self.trigger_sync(SyncMode.AUTO)
            return {
                "balance_ok": balance.ok,
                "open_orders_ok": orders.ok,
                "sync": sync_result,
            }

    def run_forever(self, interval_sec: Optional[float] = None, stop_event: Optional[threading.Event] = None) -> None:
        """Refresh the account on a fixed interval until ``stop_event`` is set."""
        interval = interval_sec if interval_sec is not None else self.config.sync.interval_sec
        stop_event = stop_event or threading.Event()

        logger.info(
            "Starting ledger refresh loop every %.0fs",
            interval,
            extra=structured_log_extra(event="ledger_loop_start", interval_sec=interval),
        )
        while not stop_event.is_set():
            outcome = self.refresh_account()
            sync_result: SyncResult = outcome["sync"]
            if not sync_result.success and sync_result.error and not sync_result.error.retryable:
                logger.error(
                    "Trade sync rejected by exchange: %s",
                    sync_result.error.message,
                    extra=structured_log_extra(event="ledger_loop_api_error", error_kind=sync_result.error.kind),
                )
            stop_event.wait(interval)
        logger.info("Ledger refresh loop stopped", extra=structured_log_extra(event="ledger_loop_stop"))

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------
    def get_ledger_snapshot(self) -> TradeLedger:
        with self._lock:
            return copy.deepcopy(self._ledger)

    def get_cost_basis_snapshot(self, asset: Optional[str] = None):
        """All per-asset ledgers, or the one for ``asset`` (``None`` when unknown)."""
        with self._lock:
            if asset is None:
                return copy.deepcopy(self._cost_basis)
            key = self._resolve_asset_key(asset)
            return copy.deepcopy(self._cost_basis[key]) if key is not None else None

    def get_analytics_summary(self) -> TradeAnalytics:
        with self._lock:
            return copy.deepcopy(self._analytics)

    def get_rate_budget(self) -> RateBudget:
        return self.rate_limiter.budget()

    def get_metrics(self) -> Dict[str, Any]:
        """Counters for syncs, rebuilds and errors, plus the live rate-limit counter."""
        snapshot = self.metrics.snapshot()
        snapshot["rate_limit_counter"] = self.rate_limiter.budget().counter
        return snapshot

    def get_balances(self) -> Dict[str, float]:
        with self._lock:
            return dict(self._balances)

    def get_open_orders(self) -> Dict[str, Any]:
        with self._lock:
            return copy.deepcopy(self._open_orders)

    def get_recent_trades(self, count: Optional[int] = None) -> List[TradeRecord]:
        """Most recent trades from the local ledger (no API call)."""
        count = count if count is not None else self.config.ledger.recent_trades_count
        with self._lock:
            trades = sorted(self._ledger.trades.values(), key=lambda t: t.time, reverse=True)
        return trades[:count]

    def _asset_of(self, trade: TradeRecord) -> str:
        return asset_from_pair(trade.pair, self.engine.quote, self.engine.pair_bases)

    def _resolve_asset_key(self, asset: str) -> Optional[str]:
        if asset in self._cost_basis:
            return asset
        wanted = normalize_asset(asset)
        for key in self._cost_basis:
            if normalize_asset(key) == wanted:
                return key
        return None

    def get_asset_activity(self, asset: str) -> AssetActivity:
        """Per-asset detail: cost basis totals, recent trades and closed P&L."""
        wanted = normalize_asset(asset)
        with self._lock:
            key = self._resolve_asset_key(asset)
            cb = self._cost_basis.get(key) if key is not None else None
            trades = [t for t in self._ledger.trades.values() if normalize_asset(self._asset_of(t)) == wanted]
            closed = [
                copy.deepcopy(item)
                for item in self._analytics.recent_activity
                if normalize_asset(item.asset) == wanted
            ]

        trades.sort(key=lambda t: t.time, reverse=True)
        buys = [t for t in trades if t.side == "buy"]
        sells = [t for t in trades if t.side == "sell"]
        buy_volume = sum(t.volume for t in buys)
        sell_volume = sum(t.volume for t in sells)

        activity = AssetActivity(
            asset=key or asset,
            recent_trades=trades[:ASSET_ACTIVITY_TRADES],
            buy_count=len(buys),
            sell_count=len(sells),
            total_bought=sum(t.cost for t in buys),
            total_sold=sum(t.cost for t in sells),
            avg_buy_price=sum(t.price * t.volume for t in buys) / buy_volume if buy_volume > 0 else 0.0,
            avg_sell_price=sum(t.price * t.volume for t in sells) / sell_volume if sell_volume > 0 else 0.0,
            closed_pnl=closed,
        )
        if cb is not None:
            activity.total_invested = cb.total_invested
            activity.total_returned = cb.total_returned
            activity.realized_pnl = cb.realized_pnl
            activity.open_lots = len([lot for lot in cb.lots if lot.remaining > 0])
            activity.completed_trades_count = len(cb.completed_trades)
        return activity

    def asset_pairs(self) -> Dict[str, str]:
        """Asset -> pair as seen in the ledger (latest trade wins)."""
        with self._lock:
            trades = sorted(self._ledger.trades.values(), key=lambda t: t.time)
        return {self._asset_of(t): t.pair for t in trades}

    def get_positions(self, prices: Optional[Dict[str, float]] = None) -> Dict[str, PositionView]:
        """
        Unrealized P&L per held asset from the last fetched balances.

        ``prices`` maps asset to price; when omitted, last prices are fetched
        from the public ticker for pairs known from the ledger.
        """
        if prices is None:
            pairs = self.asset_pairs()
            ticker = self.gateway.fetch_ticker(sorted(set(pairs.values())))
            if not ticker.ok:
                self.metrics.record_gateway_error(f"Ticker: {ticker.error.message}")
            by_pair = ticker.value or {}
            prices = {asset: by_pair[pair] for asset, pair in pairs.items() if pair in by_pair}

        with self._lock:
            positions = build_positions(
                self._cost_basis,
                self._balances,
                prices,
                now=self._clock(),
                fiat_assets=self.config.ledger.fiat_assets,
                min_value=self.config.ledger.min_position_value,
            )
        self.metrics.update_unrealized_pnl(total_unrealized_pnl(positions))
        return positions
