# src/kraken_ledger/ledger/sync.py

"""Reconcile the local trade ledger against Kraken's paginated trade history.

Pages arrive newest first at fixed offsets. An empty ledger is backfilled page
by page until a short page. A populated ledger is synced incrementally: the
first page holding a known id means everything older is already stored, so
paging stops after that page.
"""

import logging
import time
from typing import Callable, Optional

from kraken_ledger.connection.gateway import DEFAULT_PAGE_SIZE, ExchangeGateway
from kraken_ledger.logging_config import structured_log_extra

from .models import SyncMode, SyncResult, TradeLedger
from .store import LedgerStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_PAGES = 2000


class TradeSync:
    def __init__(
        self,
        gateway: ExchangeGateway,
        ledger: TradeLedger,
        store: Optional[LedgerStore] = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        max_pages: int = DEFAULT_MAX_PAGES,
        clock: Optional[Callable[[], float]] = None,
    ):
        if not 1 <= page_size <= DEFAULT_PAGE_SIZE:
            raise ValueError(f"page_size must be between 1 and {DEFAULT_PAGE_SIZE}")
        self.gateway = gateway
        self.ledger = ledger
        self.store = store
        self.page_size = page_size
        self.max_pages = max_pages
        self._clock = clock or time.time

    @property
    def needs_repair(self) -> bool:
        """Whether the last sync aborted after merging records, leaving older history possibly incomplete."""
        return self.ledger.needs_repair

    def resolve_mode(self, mode: SyncMode) -> SyncMode:
        if not self.ledger.trades:
            return SyncMode.FULL
        if mode == SyncMode.FULL or self.needs_repair:
            return SyncMode.FULL
        return SyncMode.INCREMENTAL

    def sync(self, mode: SyncMode = SyncMode.AUTO) -> SyncResult:
        """
        Fetch pages and merge unseen trades into the ledger.

        Gateway failures stop paging and are reported on the result; records
        merged before the failure are kept and persisted.
        """
        effective = self.resolve_mode(SyncMode(mode))
        backfill = effective == SyncMode.FULL
        result = SyncResult(mode=effective)

        logger.info(
            "Starting %s trade sync (%d cached trades)",
            effective.value,
            len(self.ledger),
            extra=structured_log_extra(event="trade_sync_start", sync_mode=effective.value),
        )

        offset = 0
        total_available = None
        while True:
            if result.pages_fetched >= self.max_pages:
                logger.warning(
                    "Trade sync aborted after %d pages to avoid an endless loop.",
                    result.pages_fetched,
                    extra=structured_log_extra(event="trade_sync_page_cap", sync_mode=effective.value),
                )
                break

            page = self.gateway.fetch_trade_page(offset, self.page_size)
            if not page.ok:
                result.success = False
                result.error = page.error
                break

            result.pages_fetched += 1
            if page.total_available is not None:
                total_available = page.total_available
            new_in_page = 0
            for record in page.records:
                if self.ledger.add(record):
                    new_in_page += 1
                else:
                    result.converged = True
            result.new_records += new_in_page

            logger.info(
                "Fetched %d trades at offset %d (%d new)",
                len(page.records),
                offset,
                new_in_page,
                extra=structured_log_extra(
                    event="trade_sync_page", sync_mode=effective.value, offset=offset, new_records=new_in_page
                ),
            )

            if len(page.records) < self.page_size:
                break
            if not backfill and result.converged:
                break

            offset += self.page_size

        if backfill and result.success and total_available is not None and len(self.ledger) < total_available:
            logger.warning(
                "Backfill finished with %d trades but the exchange reports %d",
                len(self.ledger),
                total_available,
                extra=structured_log_extra(
                    event="trade_sync_count_mismatch", sync_mode=effective.value, total_available=total_available
                ),
            )

        self._finish(result)
        return result

    def _finish(self, result: SyncResult) -> None:
        repair_before = self.ledger.needs_repair
        if result.success:
            self.ledger.needs_repair = False
        elif result.new_records > 0:
            self.ledger.needs_repair = True

        if result.new_records > 0 or self.ledger.needs_repair != repair_before:
            self.ledger.refresh_count()
            if result.success and result.new_records > 0:
                self.ledger.last_fetch_time = self._clock()
            if self.store is not None:
                result.persisted = self.store.save_trade_ledger(self.ledger)

        if result.success:
            logger.info(
                "Trade sync complete: %d new trades (total: %d)",
                result.new_records,
                len(self.ledger),
                extra=structured_log_extra(
                    event="trade_sync_complete",
                    sync_mode=result.mode.value,
                    new_records=result.new_records,
                    pages=result.pages_fetched,
                ),
            )
        else:
            error = result.error
            logger.warning(
                "Trade sync failed after %d pages (%d new trades kept): %s",
                result.pages_fetched,
                result.new_records,
                error.message if error else "unknown error",
                extra=structured_log_extra(
                    event="trade_sync_failed",
                    sync_mode=result.mode.value,
                    error_kind=error.kind if error else None,
                    retryable=result.retryable,
                ),
            )
