# src/kraken_ledger/ledger/models.py

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional

if TYPE_CHECKING:  # pragma: no cover
    from kraken_ledger.connection.gateway import GatewayError


def _optional_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    return float(value)


@dataclass(frozen=True)
class TradeRecord:
    id: str
    pair: str
    side: str  # "buy" | "sell"
    price: float
    volume: float
    cost: float  # quote-currency notional
    time: float  # UTC Timestamp (seconds)
    fee: Optional[float] = None
    ordertxid: Optional[str] = None
    ordertype: Optional[str] = None
    # Exchange payload as received; persisted verbatim so stored files round-trip
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_kraken(cls, trade_id: str, payload: Mapping[str, Any]) -> "TradeRecord":
        return cls(
            id=str(trade_id),
            pair=str(payload.get("pair", "")),
            side=str(payload.get("type", "")),
            price=float(payload.get("price", 0)),
            volume=float(payload.get("vol", 0)),
            cost=float(payload.get("cost", 0)),
            time=float(payload.get("time", 0)),
            fee=_optional_float(payload.get("fee")),
            ordertxid=payload.get("ordertxid"),
            ordertype=payload.get("ordertype"),
            raw=dict(payload),
        )

    def to_dict(self) -> Dict[str, Any]:
        if self.raw:
            return dict(self.raw)

        data: Dict[str, Any] = {
            "pair": self.pair,
            "type": self.side,
            "price": self.price,
            "vol": self.volume,
            "cost": self.cost,
            "time": self.time,
        }
        if self.fee is not None:
            data["fee"] = self.fee
        if self.ordertxid is not None:
            data["ordertxid"] = self.ordertxid
        if self.ordertype is not None:
            data["ordertype"] = self.ordertype
        return data


@dataclass
class TradeLedger:
    """Append-only store of account trades keyed by Kraken trade id."""

    trades: Dict[str, TradeRecord] = field(default_factory=dict)
    total_count: int = 0
    last_fetch_time: Optional[float] = None
    # An aborted sync merged records; the next sync walks the full history
    needs_repair: bool = False

    def __contains__(self, trade_id: object) -> bool:
        return trade_id in self.trades

    def __len__(self) -> int:
        return len(self.trades)

    def add(self, record: TradeRecord) -> bool:
        """Insert ``record`` unless its id is already known. Returns whether it was added."""
        if record.id in self.trades:
            return False
        self.trades[record.id] = record
        return True

    def refresh_count(self) -> None:
        self.total_count = len(self.trades)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trades": {trade_id: record.to_dict() for trade_id, record in self.trades.items()},
            "lastFetchTime": self.last_fetch_time,
            "totalCount": self.total_count,
            "needsRepair": self.needs_repair,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TradeLedger":
        raw_trades = data.get("trades") or {}
        if not isinstance(raw_trades, Mapping):
            raise ValueError("'trades' must be a mapping of trade id to trade")

        trades = {
            str(trade_id): TradeRecord.from_kraken(trade_id, payload)
            for trade_id, payload in raw_trades.items()
        }
        return cls(
            trades=trades,
            total_count=int(data.get("totalCount", len(trades))),
            last_fetch_time=data.get("lastFetchTime"),
            needs_repair=bool(data.get("needsRepair", False)),
        )


@dataclass
class Lot:
    price: float
    amount: float
    remaining: float
    time: float

    def to_dict(self) -> Dict[str, Any]:
        return {"price": self.price, "amount": self.amount, "remaining": self.remaining, "time": self.time}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Lot":
        return cls(
            price=float(data["price"]),
            amount=float(data["amount"]),
            remaining=float(data["remaining"]),
            time=data["time"],
        )


@dataclass
class CompletedTrade:
    sell_time: float
    sell_price: float
    amount: float
    amount_matched: float
    pnl: float
    pnl_percent: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sellTime": self.sell_time,
            "sellPrice": self.sell_price,
            "amount": self.amount,
            "amountMatched": self.amount_matched,
            "pnl": self.pnl,
            "pnlPercent": self.pnl_percent,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CompletedTrade":
        return cls(
            sell_time=data["sellTime"],
            sell_price=float(data["sellPrice"]),
            amount=float(data["amount"]),
            amount_matched=float(data.get("amountMatched", 0.0)),
            pnl=float(data["pnl"]),
            pnl_percent=float(data.get("pnlPercent", 0.0)),
        )


@dataclass
class CostBasisLedger:
    lots: List[Lot] = field(default_factory=list)
    total_invested: float = 0.0
    total_returned: float = 0.0
    realized_pnl: float = 0.0
    completed_trades: List[CompletedTrade] = field(default_factory=list)

    @property
    def open_amount(self) -> float:
        return sum(lot.remaining for lot in self.lots)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lots": [lot.to_dict() for lot in self.lots],
            "totalInvested": self.total_invested,
            "totalReturned": self.total_returned,
            "realizedPnL": self.realized_pnl,
            "completedTrades": [trade.to_dict() for trade in self.completed_trades],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CostBasisLedger":
        return cls(
            lots=[Lot.from_dict(item) for item in data.get("lots", [])],
            total_invested=float(data.get("totalInvested", 0.0)),
            total_returned=float(data.get("totalReturned", 0.0)),
            realized_pnl=float(data.get("realizedPnL", 0.0)),
            completed_trades=[CompletedTrade.from_dict(item) for item in data.get("completedTrades", [])],
        )


def cost_basis_to_dict(cost_basis: Mapping[str, CostBasisLedger]) -> Dict[str, Any]:
    return {asset: cb.to_dict() for asset, cb in cost_basis.items()}


def cost_basis_from_dict(data: Mapping[str, Any]) -> Dict[str, CostBasisLedger]:
    if not isinstance(data, Mapping):
        raise ValueError("cost basis document must be a mapping of asset to ledger")
    return {str(asset): CostBasisLedger.from_dict(item) for asset, item in data.items()}


@dataclass
class RecentActivity:
    asset: str
    pnl: float
    pnl_percent: float
    sell_time: float
    sell_price: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "asset": self.asset,
            "pnl": self.pnl,
            "pnlPercent": self.pnl_percent,
            "sellTime": self.sell_time,
            "sellPrice": self.sell_price,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RecentActivity":
        return cls(
            asset=str(data["asset"]),
            pnl=float(data["pnl"]),
            pnl_percent=float(data.get("pnlPercent", 0.0)),
            sell_time=data["sellTime"],
            sell_price=float(data.get("sellPrice", 0.0)),
        )


@dataclass
class AnalyticsSummary:
    total_trades: int = 0
    realized_pnl: float = 0.0
    winning_trades: int = 0
    losing_trades: int = 0
    win_rate: float = 0.0
    # Time window: completed trades within the last N days
    weekly_pnl: float = 0.0
    weekly_win_rate: float = 0.0
    # Count window: the N most recent completed trades
    recent_pnl: float = 0.0
    recent_win_rate: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalTrades": self.total_trades,
            "realizedPnL": self.realized_pnl,
            "weeklyPnL": self.weekly_pnl,
            "winningTrades": self.winning_trades,
            "losingTrades": self.losing_trades,
            "winRate": self.win_rate,
            "weeklyWinRate": self.weekly_win_rate,
            "recentPnL": self.recent_pnl,
            "recentWinRate": self.recent_win_rate,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AnalyticsSummary":
        return cls(
            total_trades=int(data.get("totalTrades", 0)),
            realized_pnl=float(data.get("realizedPnL", 0.0)),
            winning_trades=int(data.get("winningTrades", 0)),
            losing_trades=int(data.get("losingTrades", 0)),
            win_rate=float(data.get("winRate", 0.0)),
            weekly_pnl=float(data.get("weeklyPnL", 0.0)),
            weekly_win_rate=float(data.get("weeklyWinRate", 0.0)),
            recent_pnl=float(data.get("recentPnL", 0.0)),
            recent_win_rate=float(data.get("recentWinRate", 0.0)),
        )


@dataclass
class TradeAnalytics:
    last_update: Optional[float] = None
    summary: AnalyticsSummary = field(default_factory=AnalyticsSummary)
    recent_activity: List[RecentActivity] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lastUpdate": self.last_update,
            "summary": self.summary.to_dict(),
            "recentActivity": [item.to_dict() for item in self.recent_activity],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TradeAnalytics":
        return cls(
            last_update=data.get("lastUpdate"),
            summary=AnalyticsSummary.from_dict(data.get("summary") or {}),
            recent_activity=[RecentActivity.from_dict(item) for item in data.get("recentActivity", [])],
        )


class SyncMode(str, Enum):
    AUTO = "auto"
    FULL = "full"
    INCREMENTAL = "incremental"


@dataclass
class SyncResult:
    mode: SyncMode
    new_records: int = 0
    pages_fetched: int = 0
    converged: bool = False
    success: bool = True
    error: Optional["GatewayError"] = None
    persisted: bool = True

    @property
    def retryable(self) -> bool:
        return self.error is not None and self.error.retryable


@dataclass
class PositionView:
    asset: str
    amount: float
    avg_cost: float
    cost_basis: float
    current_price: float
    current_value: float
    unrealized_pnl: float
    unrealized_pct: float
    holding_days: int


@dataclass
class AssetActivity:
    asset: str
    total_invested: float = 0.0
    total_returned: float = 0.0
    realized_pnl: float = 0.0
    open_lots: int = 0
    completed_trades_count: int = 0
    recent_trades: List[TradeRecord] = field(default_factory=list)
    buy_count: int = 0
    sell_count: int = 0
    total_bought: float = 0.0
    total_sold: float = 0.0
    avg_buy_price: float = 0.0
    avg_sell_price: float = 0.0
    closed_pnl: List[RecentActivity] = field(default_factory=list)
