import json
import logging
from decimal import Decimal
from typing import Any, Optional

from earn_rules.rule_engine import RuleEngine, TriggerEvent, build_engine

from .config import PointsConfig
from .conversion import points_to_discount, require_points
from .errors import (
    AccountNotFoundError,
    AlreadyAwardedError,
    DuplicateEntryError,
    InsufficientBalanceError,
    LedgerUnavailableError,
    LedgerValidationError,
    PointsDisabledError,
)
from .models import (
    AccountBalance,
    AccrualResult,
    EntryType,
    LedgerEntry,
    LedgerHistoryResponse,
    ReconciliationReport,
    RedemptionQuote,
    RedemptionResult,
)
from .notifications import (
    BackgroundNotificationDispatcher,
    LoggingNotifier,
    Notifier,
    NullNotifier,
    PointsNotification,
)
from .store import InMemoryLedgerStore, LedgerStore, check_account_id

logger = logging.getLogger(__name__)

DEFAULT_REDEEM_DESCRIPTION = "Points redeemed at checkout"


def accrual_key(account_id: str, related_order_id: Optional[str], reason_code: str) -> str:
    # JSON encoding keeps ids containing separators from colliding
    return json.dumps(["earn", account_id, related_order_id, reason_code], separators=(",", ":"))


def redemption_key(account_id: str, idempotency_key: str) -> str:
    return json.dumps(["redeem", account_id, idempotency_key], separators=(",", ":"))


def _check_description(description: Any) -> str:
    if not isinstance(description, str) or not description.strip():
        raise LedgerValidationError("description must be a non-empty string")
    return description


def _notify(notifier: Notifier, config: PointsConfig, account_id: str, title: str, message: str, data: dict) -> None:
    if not config.notifications.enabled:
        return
    notification = PointsNotification(
        account_id=account_id, title=title, message=message,
        channels=list(config.notifications.channels), data=data,
    )
    try:
        notifier.dispatch(notification)
    except Exception:
        # delivery problems never undo a committed ledger write
        logger.exception("Could not dispatch '%s' notification for %s", title, account_id)


class AccrualService:
    def __init__(
        self,
        store: LedgerStore,
        config: Optional[PointsConfig] = None,
        notifier: Optional[Notifier] = None,
        rule_engine: Optional[RuleEngine] = None,
    ):
        self.store = store
        self.config = config or PointsConfig()
        self.notifier = notifier or NullNotifier()
        self.rule_engine = rule_engine or build_engine(self.config)

    def award_points(
        self,
        account_id: str,
        amount: int,
        description: str,
        related_order_id: Optional[str] = None,
        *,
        reason_code: Optional[str] = None,
    ) -> int:
        """Grant points and return the new balance.

        Calls repeating ``(account_id, related_order_id, reason_code)`` are
        no-ops that return the current balance. Without a reason code the
        description identifies the grant.
        """
        return self.award(account_id, amount, description, related_order_id, reason_code=reason_code).balance

    def award(
        self,
        account_id: str,
        amount: int,
        description: str,
        related_order_id: Optional[str] = None,
        *,
        reason_code: Optional[str] = None,
        config: Optional[PointsConfig] = None,
    ) -> AccrualResult:
        config = config or self.config
        check_account_id(account_id)
        amount = require_points(amount)
        description = _check_description(description)
        key = accrual_key(account_id, related_order_id, reason_code or description)

        try:
            entry = self.store.append_entry(
                account_id, amount, EntryType.EARN, description, related_order_id,
                reason_code=reason_code, idempotency_key=key,
            )
        except AlreadyAwardedError as e:
            if e.entry.account_id != account_id:
                raise LedgerValidationError(f"Idempotency key {key} belongs to another account") from e
            logger.info("Points already awarded to %s for %s, skipping", account_id, key)
            return AccrualResult(
                account_id=account_id,
                points=e.entry.amount,
                balance=self.store.get_balance(account_id),
                applied=False,
                entry=e.entry,
                message="Points already awarded (idempotent return)",
            )
        except LedgerUnavailableError:
            logger.error("Accrual of %d points for %s has unknown outcome", amount, account_id)
            raise

        logger.info("Awarded %d points to %s (%s), balance now %d", amount, account_id, description, entry.balance_after)
        _notify(
            self.notifier, config, account_id,
            title="Points earned",
            message=f"You earned {amount} points: {description}",
            data={"points": amount, "balance": entry.balance_after, "order_id": related_order_id},
        )
        return AccrualResult(
            account_id=account_id,
            points=amount,
            balance=entry.balance_after,
            entry=entry,
            message="Points awarded successfully",
        )

    def handle_event(
        self,
        trigger: TriggerEvent,
        context: dict,
        *,
        config: Optional[PointsConfig] = None,
    ) -> list[AccrualResult]:
        """Award every grant the earn rules produce for an event.

        Grants commit one by one. If the store fails midway the error
        propagates; delivering the same event again only applies the grants
        that are still missing.
        """
        config = config or self.config
        if not config.enabled:
            logger.info("Points disabled, ignoring %s event", TriggerEvent(trigger).value)
            return []

        engine = self.rule_engine if config is self.config else build_engine(config)
        results = []
        for grant in engine.grants(trigger, context):
            results.append(self.award(
                grant.account_id, grant.amount, grant.description, grant.related_order_id,
                reason_code=grant.reason_code, config=config,
            ))
        return results


class RedemptionService:
    def __init__(
        self,
        store: LedgerStore,
        config: Optional[PointsConfig] = None,
        notifier: Optional[Notifier] = None,
    ):
        self.store = store
        self.config = config or PointsConfig()
        self.notifier = notifier or NullNotifier()

    def quote(self, points: int, currency: str, *, config: Optional[PointsConfig] = None) -> RedemptionQuote:
        config = config or self.config
        points = require_points(points, "points")
        code = config.currency(currency).code
        point_value = config.redeem_value_for(code)
        return RedemptionQuote(
            points=points,
            currency=code,
            point_value=point_value,
            discount_amount=points_to_discount(points, point_value, config.minor_units(code)),
        )

    def redeem_points(
        self,
        account_id: str,
        points_requested: int,
        currency: str,
        description: str = DEFAULT_REDEEM_DESCRIPTION,
        *,
        idempotency_key: Optional[str] = None,
        config: Optional[PointsConfig] = None,
    ) -> Decimal:
        """Spend points and return the monetary discount they buy."""
        return self.redeem(
            account_id, points_requested, currency, description,
            idempotency_key=idempotency_key, config=config,
        ).discount_amount

    def redeem(
        self,
        account_id: str,
        points_requested: int,
        currency: str,
        description: str = DEFAULT_REDEEM_DESCRIPTION,
        *,
        idempotency_key: Optional[str] = None,
        config: Optional[PointsConfig] = None,
    ) -> RedemptionResult:
        config = config or self.config
        if not config.enabled:
            raise PointsDisabledError("Points redemption is disabled")
        check_account_id(account_id)
        description = _check_description(description)
        quote = self.quote(points_requested, currency, config=config)

        key = redemption_key(account_id, idempotency_key) if idempotency_key else None
        if key is not None:
            existing = self.store.find_by_idempotency_key(key)
            if existing is not None:
                return self._replayed(existing, account_id)

        # fast, friendly failure; the store re-checks atomically
        try:
            balance = self.store.get_balance(account_id)
        except AccountNotFoundError:
            balance = 0
        if balance < quote.points:
            logger.warning("Redemption of %d points refused for %s: balance %d", quote.points, account_id, balance)
            raise InsufficientBalanceError(account_id, balance, quote.points)

        try:
            entry = self.store.append_entry(
                account_id, quote.points, EntryType.REDEEM, description,
                reason_code="redemption",
                idempotency_key=key,
                metadata={
                    "currency": quote.currency,
                    "point_value": str(quote.point_value),
                    "discount_amount": str(quote.discount_amount),
                },
            )
        except DuplicateEntryError as e:
            return self._replayed(e.entry, account_id)
        except InsufficientBalanceError as e:
            logger.warning("Redemption for %s lost a concurrent update: %s", account_id, e)
            raise
        except LedgerUnavailableError:
            logger.error("Redemption of %d points for %s has unknown outcome", quote.points, account_id)
            raise

        logger.info(
            "Redeemed %d points for %s: discount %s %s, balance now %d",
            quote.points, account_id, quote.discount_amount, quote.currency, entry.balance_after,
        )
        _notify(
            self.notifier, config, account_id,
            title="Points redeemed",
            message=f"You redeemed {quote.points} points for {quote.discount_amount} {quote.currency}",
            data={"points": quote.points, "balance": entry.balance_after,
                  "discount_amount": str(quote.discount_amount), "currency": quote.currency},
        )
        return RedemptionResult(
            account_id=account_id,
            points=quote.points,
            currency=quote.currency,
            discount_amount=quote.discount_amount,
            balance=entry.balance_after,
            entry=entry,
            message="Points redeemed successfully",
        )

    def _replayed(self, entry: LedgerEntry, account_id: str) -> RedemptionResult:
        if entry.account_id != account_id or entry.entry_type != EntryType.REDEEM:
            raise LedgerValidationError(f"Idempotency key {entry.idempotency_key} belongs to another operation")
        logger.info("Redemption %s already applied for %s", entry.idempotency_key, entry.account_id)
        return RedemptionResult(
            account_id=entry.account_id,
            points=entry.amount,
            currency=entry.metadata.get("currency", self.config.base_currency),
            discount_amount=Decimal(entry.metadata.get("discount_amount", "0")),
            balance=self.store.get_balance(entry.account_id),
            applied=False,
            entry=entry,
            message="Redemption already applied (idempotent return)",
        )


class PointsService:
    """Entry point used by the HTTP layer: balances, history, accrual and redemption."""

    def __init__(
        self,
        store: Optional[LedgerStore] = None,
        config: Optional[PointsConfig] = None,
        notifier: Optional[Notifier] = None,
    ):
        self.config = config or PointsConfig()
        self.store = store or InMemoryLedgerStore()
        self.notifier = notifier or NullNotifier()
        self.accrual = AccrualService(self.store, self.config, self.notifier)
        self.redemption = RedemptionService(self.store, self.config, self.notifier)

    @classmethod
    def from_config(cls, config: PointsConfig) -> "PointsService":
        if config.database_url:
            # imported here so the in-memory setup does not need a database driver
            from .sql_store import SqlLedgerStore
            store = SqlLedgerStore(config.database_url)
        else:
            store = InMemoryLedgerStore()

        if config.notifications.enabled:
            notifier = BackgroundNotificationDispatcher(
                LoggingNotifier().dispatch, max_workers=config.notifications.max_workers
            )
        else:
            notifier = NullNotifier()
        return cls(store=store, config=config, notifier=notifier)

    def award_points(self, account_id: str, amount: int, description: str,
                     related_order_id: Optional[str] = None, *, reason_code: Optional[str] = None) -> int:
        return self.accrual.award_points(account_id, amount, description, related_order_id, reason_code=reason_code)

    def redeem_points(self, account_id: str, points_requested: int, currency: str,
                      description: str = DEFAULT_REDEEM_DESCRIPTION, *,
                      idempotency_key: Optional[str] = None, config: Optional[PointsConfig] = None) -> Decimal:
        return self.redemption.redeem_points(
            account_id, points_requested, currency, description,
            idempotency_key=idempotency_key, config=config,
        )

    def get_balance(self, account_id: str) -> int:
        try:
            return self.store.get_balance(account_id)
        except AccountNotFoundError:
            return 0

    def get_account(self, account_id: str) -> AccountBalance:
        try:
            return self.store.get_account(account_id)
        except AccountNotFoundError:
            return AccountBalance(account_id=account_id)

    def get_history(self, account_id: str, limit: int = 50, offset: int = 0) -> LedgerHistoryResponse:
        entries = self.store.get_history(account_id, limit=limit, offset=offset)
        return LedgerHistoryResponse(
            account_id=account_id,
            entries=entries,
            total_count=self.store.count_entries(account_id),
            current_balance=self.get_balance(account_id),
            limit=limit,
            offset=offset,
        )

    def reconcile(self, account_id: str) -> ReconciliationReport:
        report = self.store.reconcile(account_id)
        if not report.consistent:
            logger.error(
                "Ledger mismatch for %s: balance %d, entries sum to %d",
                account_id, report.balance, report.ledger_sum,
            )
        return report

    def close(self) -> None:
        shutdown = getattr(self.notifier, "shutdown", None)
        if shutdown is not None:
            shutdown()
        self.store.close()
