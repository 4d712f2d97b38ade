# src/kraken_ledger/ledger/exceptions.py


class LedgerError(Exception):
    """Base exception for ledger related errors."""

    pass


class PersistenceError(LedgerError):
    """Raised when a ledger document cannot be read or written."""

    def __init__(self, message: str, path: str):
        super().__init__(message)
        self.path = path


class InvariantViolation(LedgerError):
    """Raised when a cost-basis replay produces an impossible state for an asset."""

    def __init__(self, asset: str, message: str):
        super().__init__(f"{asset}: {message}")
        self.asset = asset
