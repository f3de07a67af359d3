"""
Loyalty Points Ledger

This module provides:
- Per-account point balances backed by an append-only entry history
- Idempotent accrual keyed by (account, related order, reason)
- Redemption into a currency discount with an atomic balance guard
- In-memory and SQL ledger stores
"""

from .config import PointsConfig, load_points_config
from .errors import (
    LedgerServiceError,
    LedgerValidationError,
    InvalidAmountError,
    UnsupportedCurrencyError,
    AccountNotFoundError,
    InsufficientBalanceError,
    DuplicateEntryError,
    AlreadyAwardedError,
    LedgerUnavailableError,
    PointsDisabledError,
    ConfigError,
)
from .models import (
    EntryType,
    LedgerEntry,
    AccountBalance,
    AccrualResult,
    RedemptionResult,
    RedemptionQuote,
)
from .service import AccrualService, RedemptionService, PointsService
from .store import LedgerStore, InMemoryLedgerStore

__all__ = [
    "PointsConfig",
    "load_points_config",
    "LedgerServiceError",
    "LedgerValidationError",
    "InvalidAmountError",
    "UnsupportedCurrencyError",
    "AccountNotFoundError",
    "InsufficientBalanceError",
    "DuplicateEntryError",
    "AlreadyAwardedError",
    "LedgerUnavailableError",
    "PointsDisabledError",
    "ConfigError",
    "EntryType",
    "LedgerEntry",
    "AccountBalance",
    "AccrualResult",
    "RedemptionResult",
    "RedemptionQuote",
    "AccrualService",
    "RedemptionService",
    "PointsService",
    "LedgerStore",
    "InMemoryLedgerStore",
]
