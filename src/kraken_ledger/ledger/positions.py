# src/kraken_ledger/ledger/positions.py

"""Unrealized P&L for held assets, valued from open FIFO lots."""

from __future__ import annotations

import time
from typing import Collection, Dict, List, Mapping, Optional

from .models import CostBasisLedger, PositionView

SECONDS_PER_DAY = 86400
# Lot times above this are treated as milliseconds
_MILLISECOND_THRESHOLD = 1e12


def _lot_seconds(value: float) -> float:
    return value / 1000 if value > _MILLISECOND_THRESHOLD else value


def build_positions(
    cost_basis: Mapping[str, CostBasisLedger],
    balances: Mapping[str, float],
    prices: Mapping[str, float],
    now: Optional[float] = None,
    fiat_assets: Collection[str] = ("ZEUR", "EUR", "ZUSD", "USD"),
    min_value: float = 1.0,
) -> Dict[str, PositionView]:
    """
    Build a position per held asset.

    ``balances`` is the live wallet (source of truth for amounts) and ``prices``
    maps asset to current price. Assets without a price, fiat, and positions
    worth less than ``min_value`` are left out. Without open lots the position
    is valued at the current price (zero unrealized P&L).
    """
    now = time.time() if now is None else now
    positions: Dict[str, PositionView] = {}

    for asset, amount in balances.items():
        if asset in fiat_assets or amount <= 0:
            continue

        current_price = prices.get(asset, 0.0)
        current_value = amount * current_price
        if current_value < min_value:
            continue

        avg_cost = current_price
        basis = current_value
        oldest = now

        cb = cost_basis.get(asset)
        open_lots = [lot for lot in cb.lots if lot.remaining > 0] if cb else []
        if open_lots:
            total_amount = sum(lot.remaining for lot in open_lots)
            total_cost = sum(lot.remaining * lot.price for lot in open_lots)
            oldest = min(_lot_seconds(float(lot.time)) for lot in open_lots)
            if total_amount > 0:
                avg_cost = total_cost / total_amount
                basis = total_cost

        unrealized = current_value - basis
        positions[asset] = PositionView(
            asset=asset,
            amount=amount,
            avg_cost=avg_cost,
            cost_basis=basis,
            current_price=current_price,
            current_value=current_value,
            unrealized_pnl=unrealized,
            unrealized_pct=(unrealized / basis) * 100 if basis > 0 else 0.0,
            holding_days=max(0, int((now - oldest) // SECONDS_PER_DAY)),
        )

    return positions


def total_unrealized_pnl(positions: Mapping[str, PositionView]) -> float:
    return sum(p.unrealized_pnl for p in positions.values())


def sorted_by_value(positions: Mapping[str, PositionView]) -> List[PositionView]:
    return sorted(positions.values(), key=lambda p: p.current_value, reverse=True)
