"""Trade ledger, cost basis and analytics state.

:class:`~kraken_ledger.ledger.service.LedgerService` owns the in-memory ledger
and derived cost basis, serializes sync cycles and persists results through
:class:`~kraken_ledger.ledger.store.LedgerStore`.
"""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .service import LedgerService

__all__ = ["LedgerService"]


def __getattr__(name):  # pragma: no cover - lightweight lazy import helper
    if name == "LedgerService":
        from .service import LedgerService

        return LedgerService
    raise AttributeError(name)
