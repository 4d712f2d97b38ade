from __future__ import annotations

# Re-export loader helpers
from .config_loader import get_config_dir, get_default_data_dir, load_config

# Re-export config models
from .config_models import (
    RATE_LIMIT_TIERS,
    AppConfig,
    ConnectionConfig,
    LedgerConfig,
    RateLimitConfig,
    SyncConfig,
)

__all__ = [
    # models
    "RATE_LIMIT_TIERS",
    "RateLimitConfig",
    "ConnectionConfig",
    "SyncConfig",
    "LedgerConfig",
    "AppConfig",
    # loader
    "get_config_dir",
    "get_default_data_dir",
    "load_config",
]
