"""Kraken trade ledger: rate-limited history sync, FIFO cost basis and P&L analytics."""

from importlib import metadata

try:
    APP_VERSION: str = metadata.version("kraken-ledger")
except metadata.PackageNotFoundError:
    # Running from a source checkout without an installed distribution
    APP_VERSION = "0.0.0-dev"

__version__: str = APP_VERSION

__all__ = ["APP_VERSION", "__version__"]
