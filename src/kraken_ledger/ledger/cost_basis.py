# src/kraken_ledger/ledger/cost_basis.py

"""FIFO cost-basis replay.

The ledger is replayed per asset in ascending trade time. Buys open lots, sells
drain the oldest lots first. Only the matched share of a sale contributes to
realized P&L; sells with no recorded acquisition (staking rewards, airdrops)
are logged with zero P&L and excluded from ``realized_pnl``.
"""

from __future__ import annotations

import logging
import re
from typing import Dict, Iterable, List, Mapping, Optional

from kraken_ledger.logging_config import structured_log_extra

from .exceptions import InvariantViolation
from .models import CompletedTrade, CostBasisLedger, Lot, TradeLedger, TradeRecord

logger = logging.getLogger(__name__)

# Float noise tolerated when checking lot/match bounds
EPSILON = 1e-9


def asset_from_pair(pair: str, quote: str = "EUR", pair_bases: Optional[Mapping[str, str]] = None) -> str:
    """
    Derive the base asset key for ``pair``.

    Known pairs resolve through ``pair_bases``; otherwise the quote suffix
    (with Kraken's optional ``Z`` prefix) and a staking ``.S`` suffix are stripped.
    """
    if pair_bases and pair in pair_bases:
        return pair_bases[pair]

    quote = quote.upper()
    asset = re.sub(rf"Z?{re.escape(quote)}$", "", pair)
    asset = re.sub(r"\.S$", "", asset)
    return asset or pair


class CostBasisEngine:
    def __init__(self, quote: str = "EUR", pair_bases: Optional[Mapping[str, str]] = None):
        self.quote = quote
        self.pair_bases = dict(pair_bases or {})

    def group_by_asset(self, trades: Iterable[TradeRecord]) -> Dict[str, List[TradeRecord]]:
        # sorted() is stable, so equal timestamps keep their ledger order
        grouped: Dict[str, List[TradeRecord]] = {}
        for trade in sorted(trades, key=lambda t: t.time):
            asset = asset_from_pair(trade.pair, self.quote, self.pair_bases)
            grouped.setdefault(asset, []).append(trade)
        return grouped

    def rebuild(
        self,
        ledger: TradeLedger,
        previous: Optional[Mapping[str, CostBasisLedger]] = None,
    ) -> Dict[str, CostBasisLedger]:
        """
        Replay the full ledger into per-asset cost-basis ledgers.

        An asset whose replay violates an invariant keeps its entry from
        ``previous`` (or is omitted when there is none).
        """
        previous = previous or {}
        result: Dict[str, CostBasisLedger] = {}

        for asset, trades in self.group_by_asset(ledger.trades.values()).items():
            try:
                result[asset] = replay_asset(asset, trades)
            except InvariantViolation as exc:
                logger.error(
                    "Cost basis rebuild abandoned for %s: %s",
                    asset,
                    exc,
                    extra=structured_log_extra(event="cost_basis_invariant", asset=asset),
                )
                if asset in previous:
                    result[asset] = previous[asset]

        logger.debug(
            "Rebuilt cost basis for %d assets from %d trades",
            len(result),
            len(ledger),
            extra=structured_log_extra(event="cost_basis_rebuilt", assets=len(result)),
        )
        return result


def replay_asset(asset: str, trades: Iterable[TradeRecord]) -> CostBasisLedger:
    """Replay one asset's trades (already in ascending time order)."""
    cb = CostBasisLedger()

    for trade in trades:
        if trade.volume < 0 or trade.cost < 0 or trade.price < 0:
            raise InvariantViolation(asset, f"trade {trade.id} has negative volume, cost or price")

        if trade.side == "buy":
            cb.lots.append(Lot(price=trade.price, amount=trade.volume, remaining=trade.volume, time=trade.time))
            cb.total_invested += trade.cost
        elif trade.side == "sell":
            _apply_sell(cb, trade)
        else:
            logger.debug(
                "Ignoring trade %s with unsupported type %r",
                trade.id,
                trade.side,
                extra=structured_log_extra(event="cost_basis_skip_trade", asset=asset, trade_id=trade.id),
            )

    _check_invariants(asset, cb)
    return cb


def _apply_sell(cb: CostBasisLedger, trade: TradeRecord) -> None:
    remaining = trade.volume
    cost_basis_used = 0.0
    amount_matched = 0.0

    while remaining > 0 and cb.lots:
        lot = cb.lots[0]
        used = min(remaining, lot.remaining)
        cost_basis_used += used * lot.price
        amount_matched += used
        lot.remaining -= used
        remaining -= used

        if lot.remaining <= 0:
            cb.lots.pop(0)

    # Only the matched share of the proceeds is compared against cost basis
    matched_sale_value = (amount_matched / trade.volume) * trade.cost if amount_matched > 0 else 0.0
    pnl = matched_sale_value - cost_basis_used

    if amount_matched > 0:
        cb.realized_pnl += pnl
    cb.total_returned += trade.cost

    cb.completed_trades.append(
        CompletedTrade(
            sell_time=trade.time,
            sell_price=trade.price,
            amount=trade.volume,
            amount_matched=amount_matched,
            pnl=pnl if amount_matched > 0 else 0.0,
            pnl_percent=(pnl / cost_basis_used) * 100 if cost_basis_used > 0 else 0.0,
        )
    )


def _check_invariants(asset: str, cb: CostBasisLedger) -> None:
    for lot in cb.lots:
        if lot.remaining < -EPSILON:
            raise InvariantViolation(asset, f"lot at {lot.time} has negative remaining {lot.remaining}")
        if lot.remaining > lot.amount + EPSILON:
            raise InvariantViolation(asset, f"lot at {lot.time} has remaining above its amount")

    for completed in cb.completed_trades:
        if completed.amount_matched < -EPSILON or completed.amount_matched > completed.amount + EPSILON:
            raise InvariantViolation(asset, f"sell at {completed.sell_time} matched outside [0, amount]")
