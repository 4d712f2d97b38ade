"""Command line interface for kraken_ledger utilities."""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any, Callable, Optional

from kraken_ledger import APP_VERSION
from kraken_ledger.config import AppConfig, load_config
from kraken_ledger.ledger.models import SyncMode, TradeRecord
from kraken_ledger.ledger.positions import sorted_by_value
from kraken_ledger.ledger.service import LedgerService
from kraken_ledger.logging_config import configure_logging

API_KEY_ENV = "KRAKEN_API_KEY"
API_SECRET_ENV = "KRAKEN_API_SECRET"


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _trade_payload(trade: TradeRecord) -> dict:
    return {"id": trade.id, **trade.to_dict()}


def _load_app_config(args: argparse.Namespace) -> AppConfig:
    config_path = Path(args.config) if args.config else None
    config = load_config(config_path=config_path, env=args.env)
    if args.data_dir:
        config.ledger.data_dir = str(Path(args.data_dir).expanduser())
    return config


def _build_service(args: argparse.Namespace) -> LedgerService:
    config = _load_app_config(args)
    service = LedgerService(
        config,
        api_key=os.getenv(API_KEY_ENV),
        api_secret=os.getenv(API_SECRET_ENV),
    )
    service.initialize()
    return service


def _has_credentials() -> bool:
    return bool(os.getenv(API_KEY_ENV) and os.getenv(API_SECRET_ENV))


def _sync_command(args: argparse.Namespace) -> int:
    """Run one trade sync cycle and report the outcome."""

    if not _has_credentials():
        print(f"Credentials not available; set {API_KEY_ENV} and {API_SECRET_ENV}.")
        return 1

    service = _build_service(args)
    result = service.trigger_sync(SyncMode(args.mode))
    _print_json(
        {
            "mode": result.mode.value,
            "success": result.success,
            "new_records": result.new_records,
            "pages_fetched": result.pages_fetched,
            "converged": result.converged,
            "error": asdict(result.error) if result.error else None,
            "total_trades": len(service.get_ledger_snapshot()),
            "metrics": service.get_metrics(),
        }
    )
    return 0 if result.success else 1


def _summary_command(args: argparse.Namespace) -> int:
    """Print the persisted analytics summary."""

    service = _build_service(args)
    _print_json(service.get_analytics_summary().to_dict())
    return 0


def _cost_basis_command(args: argparse.Namespace) -> int:
    service = _build_service(args)
    if args.asset:
        cb = service.get_cost_basis_snapshot(args.asset)
        if cb is None:
            print(f"No cost basis recorded for {args.asset}")
            return 1
        _print_json({args.asset: cb.to_dict()})
        return 0

    _print_json({asset: cb.to_dict() for asset, cb in service.get_cost_basis_snapshot().items()})
    return 0


def _trades_command(args: argparse.Namespace) -> int:
    service = _build_service(args)
    _print_json([_trade_payload(t) for t in service.get_recent_trades(args.count)])
    return 0


def _asset_command(args: argparse.Namespace) -> int:
    service = _build_service(args)
    activity = service.get_asset_activity(args.asset)
    payload = asdict(activity)
    payload["recent_trades"] = [_trade_payload(t) for t in activity.recent_trades]
    _print_json(payload)
    return 0


def _positions_command(args: argparse.Namespace) -> int:
    """Fetch balances and prices, then show unrealized P&L per held asset."""

    if not _has_credentials():
        print(f"Credentials not available; set {API_KEY_ENV} and {API_SECRET_ENV}.")
        return 1

    service = _build_service(args)
    service.refresh_account()
    _print_json([asdict(p) for p in sorted_by_value(service.get_positions())])
    return 0


def _run_command(args: argparse.Namespace) -> int:
    """Refresh balances, orders and trades on an interval until interrupted."""

    if not _has_credentials():
        print(f"Credentials not available; set {API_KEY_ENV} and {API_SECRET_ENV}.")
        return 1

    service = _build_service(args)
    try:
        service.run_forever(interval_sec=args.interval)
    except KeyboardInterrupt:
        print("Interrupted; shutting down.")
    return 0


def _version_command(_: argparse.Namespace) -> int:
    print(APP_VERSION)
    return 0


def _add_common_arguments(subparser: argparse.ArgumentParser) -> None:
    subparser.add_argument("--config", help="Path to config.yaml (defaults to the user config dir)")
    subparser.add_argument("--env", help="Environment overlay to apply (dev, paper, live)")
    subparser.add_argument("--data-dir", help="Directory holding the persisted ledger files")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="kraken-ledger", description="Kraken trade ledger and P&L utilities")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    sync_parser = subparsers.add_parser("sync", help="Fetch new trades and rebuild cost basis")
    _add_common_arguments(sync_parser)
    sync_parser.add_argument(
        "--mode",
        choices=[m.value for m in SyncMode],
        default=SyncMode.AUTO.value,
        help="auto: full backfill when empty, incremental otherwise; full: walk every page",
    )
    sync_parser.set_defaults(func=_sync_command)

    summary_parser = subparsers.add_parser("summary", help="Show realized P&L and win-rate analytics")
    _add_common_arguments(summary_parser)
    summary_parser.set_defaults(func=_summary_command)

    cost_basis_parser = subparsers.add_parser("cost-basis", help="Show FIFO lots and completed trades")
    _add_common_arguments(cost_basis_parser)
    cost_basis_parser.add_argument("asset", nargs="?", help="Restrict output to one asset")
    cost_basis_parser.set_defaults(func=_cost_basis_command)

    trades_parser = subparsers.add_parser("trades", help="List the most recent stored trades")
    _add_common_arguments(trades_parser)
    trades_parser.add_argument("--count", type=int, default=None, help="Number of trades to show")
    trades_parser.set_defaults(func=_trades_command)

    asset_parser = subparsers.add_parser("asset", help="Show trade activity and closed P&L for one asset")
    _add_common_arguments(asset_parser)
    asset_parser.add_argument("asset")
    asset_parser.set_defaults(func=_asset_command)

    positions_parser = subparsers.add_parser("positions", help="Show unrealized P&L for held assets")
    _add_common_arguments(positions_parser)
    positions_parser.set_defaults(func=_positions_command)

    run_parser = subparsers.add_parser("run", help="Keep the ledger in sync on an interval")
    _add_common_arguments(run_parser)
    run_parser.add_argument("--interval", type=float, default=None, help="Seconds between refreshes")
    run_parser.set_defaults(func=_run_command)

    version_parser = subparsers.add_parser("version", help="Show the installed version")
    version_parser.set_defaults(func=_version_command)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """Entry point for the `kraken-ledger` console script."""

    parser = _build_parser()
    args = parser.parse_args(argv)
    configure_logging(level=logging.DEBUG if args.verbose else logging.INFO)
    command: Callable[[argparse.Namespace], int] = getattr(args, "func")
    return command(args)


if __name__ == "__main__":
    sys.exit(main())
