from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import appdirs  # type: ignore[import-untyped]
import yaml  # type: ignore[import-untyped]

from kraken_ledger.config_models import (
    RATE_LIMIT_TIERS,
    AppConfig,
    ConnectionConfig,
    LedgerConfig,
    RateLimitConfig,
    SyncConfig,
)

logger = logging.getLogger(__name__)

APP_NAME = "kraken_ledger"
ALLOWED_ENVS = {"dev", "paper", "live"}


def get_config_dir() -> Path:
    """
    Returns the OS-specific configuration directory using appdirs.
    """
    return Path(appdirs.user_config_dir(APP_NAME))


def get_default_data_dir() -> Path:
    """Directory holding the persisted trade ledger, cost basis and analytics files."""
    return Path(appdirs.user_data_dir(APP_NAME))


def _deep_merge_dicts(base: Dict[str, Any], overlay: Dict[str, Any]) -> Dict[str, Any]:
    merged = base.copy()
    for key, value in overlay.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge_dicts(merged[key], value)
        else:
            merged[key] = value
    return merged


def _read_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    with open(path, "r") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        logger.warning(
            "Configuration file is not a mapping; ignoring",
            extra={"event": "config_invalid_format", "config_path": str(path)},
        )
        return {}
    return data


def _positive_number(value: Any, default: float, field_name: str) -> float:
    if isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0:
        return float(value)
    if value is not None:
        logger.warning(
            "%s is invalid; using default",
            field_name,
            extra={"event": "config_invalid_value", "field": field_name},
        )
    return default


def _positive_int(value: Any, default: int, field_name: str) -> int:
    if isinstance(value, int) and not isinstance(value, bool) and value >= 1:
        return value
    if value is not None:
        logger.warning(
            "%s is invalid; using default",
            field_name,
            extra={"event": "config_invalid_value", "field": field_name},
        )
    return default


def _build_rate_limit(raw: Dict[str, Any]) -> RateLimitConfig:
    tier = raw.get("tier", "starter")
    if tier not in RATE_LIMIT_TIERS:
        logger.warning(
            "Unknown rate limit tier '%s'; defaulting to 'starter'",
            tier,
            extra={"event": "config_invalid_tier"},
        )
        tier = "starter"

    tier_max, tier_decay = RATE_LIMIT_TIERS[tier]
    return RateLimitConfig(
        tier=tier,
        max_counter=_positive_number(raw.get("max_counter"), tier_max, "rate_limit.max_counter"),
        decay_rate_per_second=_positive_number(
            raw.get("decay_rate_per_second"), tier_decay, "rate_limit.decay_rate_per_second"
        ),
        safety_margin_sec=_positive_number(
            raw.get("safety_margin_sec"), RateLimitConfig.safety_margin_sec, "rate_limit.safety_margin_sec"
        ),
    )


def _build_connection(raw: Dict[str, Any]) -> ConnectionConfig:
    defaults = ConnectionConfig()
    return ConnectionConfig(
        api_url=str(raw.get("api_url", defaults.api_url)),
        request_timeout=_positive_number(
            raw.get("request_timeout"), defaults.request_timeout, "connection.request_timeout"
        ),
        trade_page_cost=_positive_number(
            raw.get("trade_page_cost"), defaults.trade_page_cost, "connection.trade_page_cost"
        ),
        balance_cost=_positive_number(raw.get("balance_cost"), defaults.balance_cost, "connection.balance_cost"),
        open_orders_cost=_positive_number(
            raw.get("open_orders_cost"), defaults.open_orders_cost, "connection.open_orders_cost"
        ),
        rate_limit=_build_rate_limit(raw.get("rate_limit") or {}),
    )


def _build_sync(raw: Dict[str, Any]) -> SyncConfig:
    defaults = SyncConfig()
    page_size = _positive_int(raw.get("page_size"), defaults.page_size, "sync.page_size")
    # Kraken serves TradesHistory in fixed pages of 50; a larger size would read as a short page
    if page_size > defaults.page_size:
        logger.warning(
            "sync.page_size %d exceeds the exchange page of %d; using %d",
            page_size,
            defaults.page_size,
            defaults.page_size,
            extra={"event": "config_invalid_value", "field": "sync.page_size"},
        )
        page_size = defaults.page_size
    return SyncConfig(
        page_size=page_size,
        max_pages=_positive_int(raw.get("max_pages"), defaults.max_pages, "sync.max_pages"),
        interval_sec=_positive_number(raw.get("interval_sec"), defaults.interval_sec, "sync.interval_sec"),
    )


def _build_ledger(raw: Dict[str, Any]) -> LedgerConfig:
    defaults = LedgerConfig()
    data_dir = os.environ.get("KRAKEN_LEDGER_DATA_DIR") or raw.get("data_dir") or str(get_default_data_dir())

    fiat_assets = raw.get("fiat_assets", defaults.fiat_assets)
    if not isinstance(fiat_assets, list):
        fiat_assets = defaults.fiat_assets

    pair_bases = raw.get("pair_bases") or {}
    if not isinstance(pair_bases, dict):
        pair_bases = {}

    return LedgerConfig(
        data_dir=str(Path(data_dir).expanduser()),
        base_currency=str(raw.get("base_currency", defaults.base_currency)).upper(),
        fiat_assets=[str(a) for a in fiat_assets],
        pair_bases={str(k): str(v) for k, v in pair_bases.items()},
        recent_window_size=_positive_int(
            raw.get("recent_window_size"), defaults.recent_window_size, "ledger.recent_window_size"
        ),
        time_window_days=_positive_int(
            raw.get("time_window_days"), defaults.time_window_days, "ledger.time_window_days"
        ),
        recent_trades_count=_positive_int(
            raw.get("recent_trades_count"), defaults.recent_trades_count, "ledger.recent_trades_count"
        ),
        min_position_value=_positive_number(
            raw.get("min_position_value"), defaults.min_position_value, "ledger.min_position_value"
        ),
    )


def load_config(config_path: Optional[Path] = None, env: Optional[str] = None) -> AppConfig:
    """
    Loads the application configuration from the default location or a specified path.

    A ``config.<env>.yaml`` file next to the main config is merged on top when present.
    """
    if config_path is None:
        config_path = get_config_dir() / "config.yaml"
    config_path = Path(config_path).expanduser()

    initial_env = env if env is not None else os.environ.get("KRAKEN_LEDGER_ENV")
    if initial_env not in ALLOWED_ENVS:
        logger.warning(
            "Invalid or missing environment '%s'; defaulting to 'paper'",
            initial_env,
            extra={"event": "config_invalid_env", "config_path": str(config_path)},
        )
        effective_env = "paper"
    else:
        effective_env = initial_env

    if not config_path.exists():
        logger.warning(
            "Configuration file not found; using defaults",
            extra={"event": "config_missing_file", "config_path": str(config_path)},
        )
    raw_config = _read_yaml(config_path)

    env_config = _read_yaml(config_path.parent / f"config.{effective_env}.yaml")
    if env_config:
        raw_config = _deep_merge_dicts(raw_config, env_config)

    return AppConfig(
        env=effective_env,
        connection=_build_connection(raw_config.get("connection") or {}),
        sync=_build_sync(raw_config.get("sync") or {}),
        ledger=_build_ledger(raw_config.get("ledger") or {}),
        config_path=str(config_path),
    )
