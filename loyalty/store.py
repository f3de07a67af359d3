"""
Ledger storage.

A store owns one balance per account plus the append-only history of signed
entries behind it. ``append_entry`` is the only mutation and applies the
balance change and the entry insert as one atomic step; a redeem that would
drive the balance below zero is refused here, whatever the caller checked
beforehand.
"""

import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import uuid4

from .conversion import require_points
from .errors import (
    AccountNotFoundError,
    AlreadyAwardedError,
    DuplicateEntryError,
    InsufficientBalanceError,
    LedgerValidationError,
)
from .models import AccountBalance, EntryType, LedgerEntry, ReconciliationReport

logger = logging.getLogger(__name__)

MAX_HISTORY_LIMIT = 500
_TICK = timedelta(microseconds=1)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def next_timestamp(previous: Optional[datetime], now: datetime) -> datetime:
    # history order relies on created_at being strictly increasing per account
    if previous is not None and now <= previous:
        return previous + _TICK
    return now


def check_account_id(account_id) -> str:
    if not isinstance(account_id, str) or not account_id.strip():
        raise LedgerValidationError(f"account_id must be a non-empty string, got {account_id!r}")
    return account_id


def check_page(limit: int, offset: int) -> None:
    if not 1 <= limit <= MAX_HISTORY_LIMIT:
        raise ValueError(f"limit must be between 1 and {MAX_HISTORY_LIMIT}")
    if offset < 0:
        raise ValueError("offset must be >= 0")


def duplicate_error(entry: LedgerEntry) -> DuplicateEntryError:
    if entry.entry_type == EntryType.EARN:
        return AlreadyAwardedError(entry, f"Points already awarded for key {entry.idempotency_key}")
    return DuplicateEntryError(entry)


class LedgerStore(ABC):

    @abstractmethod
    def get_balance(self, account_id: str) -> int:
        """Current balance. Raises AccountNotFoundError for unknown accounts."""

    @abstractmethod
    def get_account(self, account_id: str) -> AccountBalance:
        """Balance with running totals. Raises AccountNotFoundError."""

    @abstractmethod
    def append_entry(
        self,
        account_id: str,
        amount: int,
        entry_type: EntryType,
        description: str,
        related_order_id: Optional[str] = None,
        *,
        reason_code: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> LedgerEntry:
        """Insert one immutable entry and move the balance by its signed amount.

        Raises:
            InvalidAmountError: amount is not a positive integer
            InsufficientBalanceError: a redeem would leave the balance negative
            AlreadyAwardedError / DuplicateEntryError: idempotency key already used
        """

    @abstractmethod
    def get_history(self, account_id: str, limit: int = 50, offset: int = 0) -> list[LedgerEntry]:
        """Entries newest first."""

    @abstractmethod
    def count_entries(self, account_id: str) -> int:
        pass

    @abstractmethod
    def find_by_idempotency_key(self, idempotency_key: str) -> Optional[LedgerEntry]:
        pass

    def reconcile(self, account_id: str) -> ReconciliationReport:
        try:
            balance = self.get_balance(account_id)
        except AccountNotFoundError:
            balance = 0

        ledger_sum = 0
        count = 0
        offset = 0
        while True:
            page = self.get_history(account_id, limit=MAX_HISTORY_LIMIT, offset=offset)
            if not page:
                break
            ledger_sum += sum(e.signed_amount for e in page)
            count += len(page)
            offset += len(page)

        return ReconciliationReport(account_id=account_id, balance=balance, ledger_sum=ledger_sum, entry_count=count)

    def close(self) -> None:
        pass


class InMemoryLedgerStore(LedgerStore):
    """Process-local store. A single lock serializes every mutation."""

    def __init__(self):
        self._lock = threading.RLock()
        self.accounts: dict[str, dict] = {}
        self.entries: dict[str, list[LedgerEntry]] = {}
        self.idempotency_index: dict[str, LedgerEntry] = {}

    def get_balance(self, account_id: str) -> int:
        with self._lock:
            account = self.accounts.get(account_id)
            if account is None:
                raise AccountNotFoundError(account_id)
            return account["balance"]

    def get_account(self, account_id: str) -> AccountBalance:
        with self._lock:
            account = self.accounts.get(account_id)
            if account is None:
                raise AccountNotFoundError(account_id)
            return AccountBalance(
                account_id=account_id,
                balance=account["balance"],
                total_earned=account["total_earned"],
                total_redeemed=account["total_redeemed"],
                total_entries=len(self.entries[account_id]),
                last_transaction_at=account["last_entry_at"],
            )

    def append_entry(
        self,
        account_id: str,
        amount: int,
        entry_type: EntryType,
        description: str,
        related_order_id: Optional[str] = None,
        *,
        reason_code: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> LedgerEntry:
        check_account_id(account_id)
        amount = require_points(amount)
        entry_type = EntryType(entry_type)

        with self._lock:
            if idempotency_key is not None:
                existing = self.idempotency_index.get(idempotency_key)
                if existing is not None:
                    raise duplicate_error(existing)

            account = self.accounts.get(account_id)
            balance = account["balance"] if account else 0

            if entry_type == EntryType.EARN:
                new_balance = balance + amount
            else:
                if balance < amount:
                    raise InsufficientBalanceError(account_id, balance, amount)
                new_balance = balance - amount

            previous = account["last_entry_at"] if account else None
            entry = LedgerEntry(
                id=uuid4(),
                account_id=account_id,
                entry_type=entry_type,
                amount=amount,
                description=description,
                related_order_id=related_order_id,
                reason_code=reason_code,
                idempotency_key=idempotency_key,
                balance_after=new_balance,
                created_at=next_timestamp(previous, utcnow()),
                metadata=dict(metadata or {}),
            )

            if account is None:
                account = self.accounts[account_id] = {
                    "balance": 0, "total_earned": 0, "total_redeemed": 0, "last_entry_at": None,
                }
                self.entries[account_id] = []

            account["balance"] = new_balance
            if entry_type == EntryType.EARN:
                account["total_earned"] += amount
            else:
                account["total_redeemed"] += amount
            account["last_entry_at"] = entry.created_at
            self.entries[account_id].append(entry)
            if idempotency_key is not None:
                self.idempotency_index[idempotency_key] = entry

        logger.debug("Appended %s entry of %d points for %s", entry_type.value, amount, account_id)
        return entry

    def get_history(self, account_id: str, limit: int = 50, offset: int = 0) -> list[LedgerEntry]:
        check_page(limit, offset)
        with self._lock:
            newest_first = list(reversed(self.entries.get(account_id, [])))
        return newest_first[offset:offset + limit]

    def count_entries(self, account_id: str) -> int:
        with self._lock:
            return len(self.entries.get(account_id, []))

    def find_by_idempotency_key(self, idempotency_key: str) -> Optional[LedgerEntry]:
        with self._lock:
            return self.idempotency_index.get(idempotency_key)

    def reconcile(self, account_id: str) -> ReconciliationReport:
        with self._lock:
            return super().reconcile(account_id)
