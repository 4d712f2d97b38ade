from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional


# Kraken private-endpoint counter limits per verification tier: (max counter, decay per second)
RATE_LIMIT_TIERS: Dict[str, tuple[float, float]] = {
    "starter": (15.0, 0.33),
    "intermediate": (20.0, 0.5),
    "pro": (20.0, 1.0),
}


@dataclass
class RateLimitConfig:
    tier: str = "starter"
    max_counter: float = 15.0
    decay_rate_per_second: float = 0.33
    safety_margin_sec: float = 0.5


@dataclass
class ConnectionConfig:
    api_url: str = "https://api.kraken.com"
    request_timeout: float = 10.0
    trade_page_cost: float = 2.0
    balance_cost: float = 1.0
    open_orders_cost: float = 1.0
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)


@dataclass
class SyncConfig:
    page_size: int = 50
    max_pages: int = 2000
    interval_sec: float = 300.0


@dataclass
class LedgerConfig:
    data_dir: str = ""
    base_currency: str = "EUR"
    fiat_assets: List[str] = field(default_factory=lambda: ["ZEUR", "EUR", "ZUSD", "USD"])
    pair_bases: Dict[str, str] = field(default_factory=dict)
    recent_window_size: int = 50
    time_window_days: int = 7
    recent_trades_count: int = 200
    min_position_value: float = 1.0


@dataclass
class AppConfig:
    env: str = "paper"
    connection: ConnectionConfig = field(default_factory=ConnectionConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    config_path: Optional[str] = None
