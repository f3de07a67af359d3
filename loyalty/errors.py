from typing import Optional


class LedgerServiceError(Exception):
    pass


class LedgerValidationError(LedgerServiceError):
    pass


class InvalidAmountError(LedgerValidationError):
    pass


class UnsupportedCurrencyError(LedgerValidationError):
    pass


class AccountNotFoundError(LedgerServiceError):
    def __init__(self, account_id: str):
        super().__init__(f"Account {account_id} has no ledger record")
        self.account_id = account_id


class InsufficientBalanceError(LedgerServiceError):
    def __init__(self, account_id: str, balance: int, requested: int):
        super().__init__(
            f"Insufficient points for account {account_id}: balance {balance}, requested {requested}"
        )
        self.account_id = account_id
        self.balance = balance
        self.requested = requested


class DuplicateEntryError(LedgerServiceError):
    """Raised when an idempotency key was already used. Nothing was written."""

    def __init__(self, entry, message: Optional[str] = None):
        super().__init__(message or f"Entry with idempotency key {entry.idempotency_key} already exists")
        self.entry = entry


class AlreadyAwardedError(DuplicateEntryError):
    pass


class LedgerUnavailableError(LedgerServiceError):
    """Store or network failure. The write may or may not have happened."""


class PointsDisabledError(LedgerServiceError):
    pass


class ConfigError(ValueError):
    pass
