# src/kraken_ledger/ledger/analytics.py

from __future__ import annotations

import time
from typing import Iterable, List, Mapping, Optional, Tuple

from .models import AnalyticsSummary, CostBasisLedger, RecentActivity, TradeAnalytics

SECONDS_PER_DAY = 24 * 60 * 60
DEFAULT_RECENT_WINDOW = 50
DEFAULT_TIME_WINDOW_DAYS = 7


def _pnl_and_win_rate(activity: Iterable[RecentActivity]) -> Tuple[float, float]:
    pnl = 0.0
    wins = 0
    losses = 0
    for item in activity:
        pnl += item.pnl
        if item.pnl >= 0:
            wins += 1
        else:
            losses += 1
    total = wins + losses
    return pnl, (wins / total) * 100 if total > 0 else 0.0


class AnalyticsAggregator:
    """
    Summarizes completed trades across assets.

    Two windows are computed independently and may disagree: the count window
    (``recent_*``) covers the N most recent sells, the time window
    (``weekly_*``) covers sells in the last N days.
    """

    def __init__(
        self,
        recent_window: int = DEFAULT_RECENT_WINDOW,
        time_window_days: int = DEFAULT_TIME_WINDOW_DAYS,
    ):
        if recent_window < 1:
            raise ValueError("recent_window must be at least 1")
        if time_window_days < 1:
            raise ValueError("time_window_days must be at least 1")
        self.recent_window = recent_window
        self.time_window_days = time_window_days

    def collect(self, cost_basis: Mapping[str, CostBasisLedger]) -> List[RecentActivity]:
        """All completed trades across assets, newest first."""
        activity = [
            RecentActivity(
                asset=asset,
                pnl=t.pnl,
                pnl_percent=t.pnl_percent,
                sell_time=t.sell_time,
                sell_price=t.sell_price,
            )
            for asset, cb in cost_basis.items()
            for t in cb.completed_trades
        ]
        activity.sort(key=lambda item: item.sell_time, reverse=True)
        return activity

    def summarize(
        self, cost_basis: Mapping[str, CostBasisLedger], now: Optional[float] = None
    ) -> TradeAnalytics:
        now = time.time() if now is None else now
        activity = self.collect(cost_basis)

        wins = sum(1 for item in activity if item.pnl >= 0)
        losses = len(activity) - wins

        recent = activity[: self.recent_window]
        recent_pnl, recent_win_rate = _pnl_and_win_rate(recent)

        window_start = now - self.time_window_days * SECONDS_PER_DAY
        weekly_pnl, weekly_win_rate = _pnl_and_win_rate(
            item for item in activity if item.sell_time >= window_start
        )

        summary = AnalyticsSummary(
            total_trades=wins + losses,
            realized_pnl=sum(cb.realized_pnl for cb in cost_basis.values()),
            winning_trades=wins,
            losing_trades=losses,
            win_rate=(wins / len(activity)) * 100 if activity else 0.0,
            weekly_pnl=weekly_pnl,
            weekly_win_rate=weekly_win_rate,
            recent_pnl=recent_pnl,
            recent_win_rate=recent_win_rate,
        )
        return TradeAnalytics(last_update=now, summary=summary, recent_activity=recent)
