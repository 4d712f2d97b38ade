# src/kraken_ledger/ledger/store.py

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, TypeVar

from kraken_ledger.logging_config import structured_log_extra

from .exceptions import PersistenceError
from .models import (
    CostBasisLedger,
    TradeAnalytics,
    TradeLedger,
    cost_basis_from_dict,
    cost_basis_to_dict,
)

logger = logging.getLogger(__name__)

TRADE_HISTORY_FILENAME = "full_trade_history.json"
COST_BASIS_FILENAME = "cost_basis.json"
ANALYTICS_FILENAME = "trade_analytics.json"

T = TypeVar("T")


class JsonDocumentStore:
    """Reads and atomically writes a single JSON document."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def read(self) -> Any:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, ValueError) as exc:
            raise PersistenceError(f"Unable to read {self.path}: {exc}", str(self.path)) from exc

    def write(self, data: Any) -> None:
        tmp_path: Path | None = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                mode="w",
                encoding="utf-8",
                delete=False,
                dir=self.path.parent,
                prefix=self.path.name,
                suffix=".tmp",
            ) as f:
                tmp_path = Path(f.name)
                json.dump(data, f, indent=2)
                f.flush()
                os.fsync(f.fileno())

            os.replace(tmp_path, self.path)
        except (OSError, TypeError, ValueError) as exc:
            raise PersistenceError(f"Unable to write {self.path}: {exc}", str(self.path)) from exc
        finally:
            if tmp_path is not None and tmp_path.exists():
                try:
                    tmp_path.unlink()
                except OSError:
                    pass


class LedgerStore:
    """
    JSON file persistence for the trade ledger, cost basis and analytics documents.

    Loads never fail: a missing or malformed file yields an empty default. Saves
    log failures and return ``False`` so the caller keeps its in-memory state.
    """

    def __init__(self, data_dir: str):
        self.data_dir = Path(data_dir).expanduser()
        self.trade_history = JsonDocumentStore(self.data_dir / TRADE_HISTORY_FILENAME)
        self.cost_basis = JsonDocumentStore(self.data_dir / COST_BASIS_FILENAME)
        self.analytics = JsonDocumentStore(self.data_dir / ANALYTICS_FILENAME)

    def _load(self, document: JsonDocumentStore, parse: Callable[[Any], T], default: Callable[[], T]) -> T:
        if not document.path.exists():
            logger.info(
                "No persisted document at %s; starting empty",
                document.path,
                extra=structured_log_extra(event="ledger_load_missing", path=str(document.path)),
            )
            return default()

        try:
            return parse(document.read())
        except (PersistenceError, ValueError, TypeError, KeyError, AttributeError) as exc:
            logger.warning(
                "Failed to load %s; substituting empty default: %s",
                document.path,
                exc,
                extra=structured_log_extra(event="ledger_load_failed", path=str(document.path)),
            )
            return default()

    def _save(self, document: JsonDocumentStore, data: Any) -> bool:
        try:
            document.write(data)
        except PersistenceError as exc:
            logger.error(
                "Failed to persist %s; keeping in-memory state: %s",
                document.path,
                exc,
                extra=structured_log_extra(event="ledger_save_failed", path=str(document.path)),
            )
            return False
        return True

    def load_trade_ledger(self) -> TradeLedger:
        return self._load(self.trade_history, _parse_trade_ledger, TradeLedger)

    def save_trade_ledger(self, ledger: TradeLedger) -> bool:
        return self._save(self.trade_history, ledger.to_dict())

    def load_cost_basis(self) -> Dict[str, CostBasisLedger]:
        return self._load(self.cost_basis, cost_basis_from_dict, dict)

    def save_cost_basis(self, cost_basis: Mapping[str, CostBasisLedger]) -> bool:
        return self._save(self.cost_basis, cost_basis_to_dict(cost_basis))

    def load_analytics(self) -> TradeAnalytics:
        return self._load(self.analytics, _parse_analytics, TradeAnalytics)

    def save_analytics(self, analytics: TradeAnalytics) -> bool:
        return self._save(self.analytics, analytics.to_dict())


def _parse_trade_ledger(data: Any) -> TradeLedger:
    if not isinstance(data, dict):
        raise ValueError("trade history document must be a mapping")
    return TradeLedger.from_dict(data)


def _parse_analytics(data: Any) -> TradeAnalytics:
    if not isinstance(data, dict):
        raise ValueError("analytics document must be a mapping")
    return TradeAnalytics.from_dict(data)
