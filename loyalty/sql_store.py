"""
SQL-backed ledger store.

Each ``append_entry`` runs in one database transaction: the balance update
and the entry insert commit or roll back together. Redeems use a single
conditional UPDATE (``balance >= amount``) so two concurrent redemptions can
never both pass the sufficiency check.
"""

import logging
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    case,
    create_engine,
    func,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker

from .conversion import require_points
from .errors import AccountNotFoundError, InsufficientBalanceError, LedgerUnavailableError
from .models import AccountBalance, EntryType, LedgerEntry, ReconciliationReport
from .store import LedgerStore, check_account_id, check_page, duplicate_error, next_timestamp, utcnow

logger = logging.getLogger(__name__)

Base = declarative_base()


class AccountRecord(Base):
    __tablename__ = "points_accounts"
    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_points_accounts_balance_non_negative"),
    )

    account_id = Column(String(128), primary_key=True)
    balance = Column(BigInteger, nullable=False, default=0)
    total_earned = Column(BigInteger, nullable=False, default=0)
    total_redeemed = Column(BigInteger, nullable=False, default=0)
    entry_count = Column(Integer, nullable=False, default=0)
    last_entry_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class LedgerEntryRecord(Base):
    __tablename__ = "points_ledger_entries"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_points_ledger_entries_amount_positive"),
        Index("ix_points_ledger_entries_account_created", "account_id", "created_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    entry_id = Column(String(36), nullable=False, unique=True)
    account_id = Column(String(128), ForeignKey("points_accounts.account_id"), nullable=False)
    entry_type = Column(String(16), nullable=False)
    amount = Column(BigInteger, nullable=False)
    balance_after = Column(BigInteger, nullable=False)
    description = Column(Text, nullable=False)
    related_order_id = Column(String(128))
    reason_code = Column(String(128))
    # unique: a retried accrual or redemption can only land once
    idempotency_key = Column(String(255), unique=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    extra = Column("metadata", JSON, nullable=False, default=dict)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SqlLedgerStore(LedgerStore):

    def __init__(self, database_url: str, *, create_schema: bool = True, echo: bool = False):
        connect_args = {}
        if database_url.startswith("sqlite"):
            connect_args = {"check_same_thread": False, "timeout": 30}
        self.engine = create_engine(database_url, echo=echo, connect_args=connect_args)
        self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)
        if create_schema:
            Base.metadata.create_all(self.engine)

    def get_balance(self, account_id: str) -> int:
        try:
            with self._session_factory() as session:
                balance = session.execute(
                    select(AccountRecord.balance).where(AccountRecord.account_id == account_id)
                ).scalar_one_or_none()
        except SQLAlchemyError as e:
            raise LedgerUnavailableError(f"Could not read balance for {account_id}: {e}") from e
        if balance is None:
            raise AccountNotFoundError(account_id)
        return int(balance)

    def get_account(self, account_id: str) -> AccountBalance:
        try:
            with self._session_factory() as session:
                record = session.get(AccountRecord, account_id)
        except SQLAlchemyError as e:
            raise LedgerUnavailableError(f"Could not read account {account_id}: {e}") from e
        if record is None:
            raise AccountNotFoundError(account_id)
        return AccountBalance(
            account_id=record.account_id,
            balance=record.balance,
            total_earned=record.total_earned,
            total_redeemed=record.total_redeemed,
            total_entries=record.entry_count,
            last_transaction_at=_as_utc(record.last_entry_at),
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

        try:
            if entry_type == EntryType.EARN:
                self._ensure_account(account_id)

            with self._session_factory.begin() as session:
                if idempotency_key is not None:
                    existing = session.execute(
                        select(LedgerEntryRecord).where(LedgerEntryRecord.idempotency_key == idempotency_key)
                    ).scalar_one_or_none()
                    if existing is not None:
                        raise duplicate_error(self._to_entry(existing))

                if entry_type == EntryType.EARN:
                    stmt = (
                        update(AccountRecord)
                        .where(AccountRecord.account_id == account_id)
                        .values(
                            balance=AccountRecord.balance + amount,
                            total_earned=AccountRecord.total_earned + amount,
                            entry_count=AccountRecord.entry_count + 1,
                        )
                    )
                else:
                    stmt = (
                        update(AccountRecord)
                        .where(AccountRecord.account_id == account_id, AccountRecord.balance >= amount)
                        .values(
                            balance=AccountRecord.balance - amount,
                            total_redeemed=AccountRecord.total_redeemed + amount,
                            entry_count=AccountRecord.entry_count + 1,
                        )
                    )
                result = session.execute(stmt.execution_options(synchronize_session=False))

                if result.rowcount == 0:
                    balance = session.execute(
                        select(AccountRecord.balance).where(AccountRecord.account_id == account_id)
                    ).scalar_one_or_none()
                    raise InsufficientBalanceError(account_id, int(balance or 0), amount)

                # the row is locked by our UPDATE until commit
                balance, last_entry_at = session.execute(
                    select(AccountRecord.balance, AccountRecord.last_entry_at)
                    .where(AccountRecord.account_id == account_id)
                ).one()
                created_at = next_timestamp(_as_utc(last_entry_at), utcnow())
                session.execute(
                    update(AccountRecord)
                    .where(AccountRecord.account_id == account_id)
                    .values(last_entry_at=created_at)
                    .execution_options(synchronize_session=False)
                )

                record = LedgerEntryRecord(
                    entry_id=str(uuid4()),
                    account_id=account_id,
                    entry_type=entry_type.value,
                    amount=amount,
                    balance_after=int(balance),
                    description=description,
                    related_order_id=related_order_id,
                    reason_code=reason_code,
                    idempotency_key=idempotency_key,
                    created_at=created_at,
                    extra=dict(metadata or {}),
                )
                session.add(record)
                session.flush()
                entry = self._to_entry(record)
        except IntegrityError as e:
            if idempotency_key is not None:
                existing = self.find_by_idempotency_key(idempotency_key)
                if existing is not None:
                    raise duplicate_error(existing) from e
            raise LedgerUnavailableError(f"Ledger write for {account_id} rejected: {e}") from e
        except SQLAlchemyError as e:
            logger.exception("Ledger write failed for %s", account_id)
            raise LedgerUnavailableError(f"Ledger write for {account_id} failed: {e}") from e

        logger.debug("Appended %s entry of %d points for %s", entry_type.value, amount, account_id)
        return entry

    def get_history(self, account_id: str, limit: int = 50, offset: int = 0) -> list[LedgerEntry]:
        check_page(limit, offset)
        try:
            with self._session_factory() as session:
                records = session.execute(
                    select(LedgerEntryRecord)
                    .where(LedgerEntryRecord.account_id == account_id)
                    .order_by(LedgerEntryRecord.created_at.desc(), LedgerEntryRecord.id.desc())
                    .limit(limit)
                    .offset(offset)
                ).scalars().all()
                return [self._to_entry(r) for r in records]
        except SQLAlchemyError as e:
            raise LedgerUnavailableError(f"Could not read history for {account_id}: {e}") from e

    def count_entries(self, account_id: str) -> int:
        try:
            with self._session_factory() as session:
                return session.execute(
                    select(func.count(LedgerEntryRecord.id)).where(LedgerEntryRecord.account_id == account_id)
                ).scalar_one()
        except SQLAlchemyError as e:
            raise LedgerUnavailableError(f"Could not count entries for {account_id}: {e}") from e

    def find_by_idempotency_key(self, idempotency_key: str) -> Optional[LedgerEntry]:
        try:
            with self._session_factory() as session:
                record = session.execute(
                    select(LedgerEntryRecord).where(LedgerEntryRecord.idempotency_key == idempotency_key)
                ).scalar_one_or_none()
                return self._to_entry(record) if record is not None else None
        except SQLAlchemyError as e:
            raise LedgerUnavailableError(f"Could not look up idempotency key: {e}") from e

    def reconcile(self, account_id: str) -> ReconciliationReport:
        signed = case(
            (LedgerEntryRecord.entry_type == EntryType.EARN.value, LedgerEntryRecord.amount),
            else_=-LedgerEntryRecord.amount,
        )
        try:
            with self._session_factory.begin() as session:
                balance = session.execute(
                    select(AccountRecord.balance).where(AccountRecord.account_id == account_id)
                ).scalar_one_or_none()
                ledger_sum, count = session.execute(
                    select(func.coalesce(func.sum(signed), 0), func.count(LedgerEntryRecord.id))
                    .where(LedgerEntryRecord.account_id == account_id)
                ).one()
        except SQLAlchemyError as e:
            raise LedgerUnavailableError(f"Could not reconcile {account_id}: {e}") from e
        return ReconciliationReport(
            account_id=account_id,
            balance=int(balance or 0),
            ledger_sum=int(ledger_sum),
            entry_count=int(count),
        )

    def close(self) -> None:
        self.engine.dispose()

    def _ensure_account(self, account_id: str) -> None:
        try:
            with self._session_factory.begin() as session:
                if session.get(AccountRecord, account_id) is None:
                    session.add(AccountRecord(account_id=account_id, balance=0, total_earned=0,
                                              total_redeemed=0, entry_count=0))
        except IntegrityError:
            # opened by a concurrent first accrual
            logger.debug("Account %s created concurrently", account_id)

    @staticmethod
    def _to_entry(record: LedgerEntryRecord) -> LedgerEntry:
        return LedgerEntry(
            id=UUID(record.entry_id),
            account_id=record.account_id,
            entry_type=EntryType(record.entry_type),
            amount=record.amount,
            description=record.description,
            related_order_id=record.related_order_id,
            reason_code=record.reason_code,
            idempotency_key=record.idempotency_key,
            balance_after=record.balance_after,
            created_at=_as_utc(record.created_at),
            metadata=dict(record.extra or {}),
        )
