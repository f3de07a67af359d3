"""
Unit Tests for the Redemption Service

Tests cover:
1. Discount arithmetic and rounding
2. Balance sufficiency
3. Validation ahead of any store call
4. Idempotent retries
"""

from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from loyalty.config import PointsConfig
from loyalty.errors import (
    InsufficientBalanceError,
    InvalidAmountError,
    LedgerValidationError,
    PointsDisabledError,
    UnsupportedCurrencyError,
)
from loyalty.models import EntryType
from loyalty.service import RedemptionService, redemption_key
from loyalty.store import InMemoryLedgerStore, LedgerStore


ACCOUNT = "buyer-7"


def funded_store(points: int) -> InMemoryLedgerStore:
    store = InMemoryLedgerStore()
    store.append_entry(ACCOUNT, points, EntryType.EARN, "Seed balance")
    return store


class TestDiscountArithmetic:

    def test_two_hundred_points_is_ten_dollars(self):
        """200 points at 0.05 USD/point is exactly 10.00 USD."""
        service = RedemptionService(funded_store(500))

        discount = service.redeem_points(ACCOUNT, 200, "USD", "Checkout")

        assert discount == Decimal("10.00")
        assert str(discount) == "10.00"

    def test_converted_currency(self):
        service = RedemptionService(funded_store(500))

        result = service.redeem(ACCOUNT, 100, "eur", "Checkout")

        # 0.05 * 0.96 = 0.048 per point
        assert result.currency == "EUR"
        assert result.discount_amount == Decimal("4.80")

    def test_rounds_half_up_to_minor_units(self):
        config = PointsConfig(redeem_values={"USD": "0.005"})
        service = RedemptionService(funded_store(10), config)

        assert service.quote(1, "USD").discount_amount == Decimal("0.01")
        assert service.quote(3, "USD").discount_amount == Decimal("0.02")

    def test_zero_decimal_currency(self):
        config = PointsConfig(currencies=[
            {"code": "USD", "convert_rate": 1},
            {"code": "JPY", "convert_rate": 150, "decimals": 0},
        ])
        service = RedemptionService(funded_store(10), config)

        quote = service.quote(3, "JPY")

        # 3 * 7.5 = 22.5 -> 23
        assert quote.discount_amount == Decimal("23")

    def test_quote_does_not_touch_balance(self):
        store = funded_store(100)
        service = RedemptionService(store)

        quote = service.quote(60, "USD")

        assert quote.point_value == Decimal("0.05")
        assert quote.discount_amount == Decimal("3.00")
        assert store.get_balance(ACCOUNT) == 100

    def test_rate_injected_per_call(self):
        service = RedemptionService(funded_store(100))
        promo = PointsConfig(redeem_value="0.10")

        discount = service.redeem_points(ACCOUNT, 50, "USD", "Checkout", config=promo)

        assert discount == Decimal("5.00")


class TestBalanceSufficiency:

    def test_insufficient_balance(self):
        store = funded_store(50)
        service = RedemptionService(store)

        with pytest.raises(InsufficientBalanceError) as exc_info:
            service.redeem_points(ACCOUNT, 51, "USD", "Checkout")

        assert exc_info.value.balance == 50
        assert store.get_balance(ACCOUNT) == 50
        assert store.count_entries(ACCOUNT) == 1

    def test_unknown_account_is_zero_balance(self):
        service = RedemptionService(InMemoryLedgerStore())

        with pytest.raises(InsufficientBalanceError) as exc_info:
            service.redeem_points("stranger", 1, "USD", "Checkout")

        assert exc_info.value.balance == 0

    def test_redeem_writes_entry(self):
        store = funded_store(100)
        service = RedemptionService(store)

        result = service.redeem(ACCOUNT, 40, "USD", "Order 55 discount")

        assert result.balance == 60
        assert result.entry.entry_type == EntryType.REDEEM
        assert result.entry.amount == 40
        assert result.entry.metadata["discount_amount"] == "2.00"
        assert store.get_balance(ACCOUNT) == 60

    def test_store_guard_catches_stale_check(self):
        """If the balance drops between check and write, the store refuses."""
        store = funded_store(100)
        service = RedemptionService(store)
        real_get_balance = store.get_balance

        def stale_balance(account_id):
            balance = real_get_balance(account_id)
            # a concurrent checkout spends points right after our read
            store.append_entry(account_id, 90, EntryType.REDEEM, "Concurrent checkout")
            return balance

        store.get_balance = stale_balance

        with pytest.raises(InsufficientBalanceError):
            service.redeem_points(ACCOUNT, 80, "USD", "Checkout")

        assert real_get_balance(ACCOUNT) == 10


class TestValidation:
    """Bad input is rejected before the store is consulted."""

    @pytest.mark.parametrize("points", [0, -1, 1.5, True])
    def test_invalid_points(self, points):
        store = MagicMock(spec=LedgerStore)
        service = RedemptionService(store)

        with pytest.raises(InvalidAmountError):
            service.redeem_points(ACCOUNT, points, "USD", "Checkout")

        store.get_balance.assert_not_called()
        store.append_entry.assert_not_called()

    @pytest.mark.parametrize("currency", ["US", "usd1", "", None, "GBP"])
    def test_bad_currency(self, currency):
        store = MagicMock(spec=LedgerStore)
        service = RedemptionService(store)

        with pytest.raises(UnsupportedCurrencyError):
            service.redeem_points(ACCOUNT, 10, currency, "Checkout")

        store.get_balance.assert_not_called()
        store.append_entry.assert_not_called()

    def test_disabled_points(self):
        service = RedemptionService(funded_store(100), PointsConfig(enabled=False))

        with pytest.raises(PointsDisabledError):
            service.redeem_points(ACCOUNT, 10, "USD", "Checkout")


class TestIdempotentRedemption:

    def test_retry_with_key_does_not_double_spend(self, store):
        store.append_entry(ACCOUNT, 100, EntryType.EARN, "Seed balance")
        service = RedemptionService(store)

        first = service.redeem(ACCOUNT, 60, "USD", "Checkout", idempotency_key="cart-1")
        retry = service.redeem(ACCOUNT, 60, "USD", "Checkout", idempotency_key="cart-1")

        assert first.applied
        assert not retry.applied
        assert retry.discount_amount == first.discount_amount == Decimal("3.00")
        assert retry.balance == 40
        assert store.get_balance(ACCOUNT) == 40

    def test_retry_succeeds_even_after_balance_spent(self):
        """A replay is answered from the original entry, not re-checked."""
        store = funded_store(60)
        service = RedemptionService(store)

        service.redeem_points(ACCOUNT, 60, "USD", "Checkout", idempotency_key="cart-2")
        discount = service.redeem_points(ACCOUNT, 60, "USD", "Checkout", idempotency_key="cart-2")

        assert discount == Decimal("3.00")
        assert store.get_balance(ACCOUNT) == 0

    def test_keys_are_scoped_per_account(self):
        store = funded_store(100)
        store.append_entry("buyer-8", 100, EntryType.EARN, "Seed balance")
        service = RedemptionService(store)

        service.redeem_points(ACCOUNT, 10, "USD", "Checkout", idempotency_key="same")
        service.redeem_points("buyer-8", 10, "USD", "Checkout", idempotency_key="same")

        assert store.get_balance(ACCOUNT) == 90
        assert store.get_balance("buyer-8") == 90

    def test_replay_never_returns_another_accounts_redemption(self):
        """Account ids containing separators cannot reach each other's keys."""
        store = InMemoryLedgerStore()
        store.append_entry("shop:a", 200, EntryType.EARN, "Seed balance")
        store.append_entry("shop", 200, EntryType.EARN, "Seed balance")
        service = RedemptionService(store)

        service.redeem("shop:a", 200, "USD", "Checkout", idempotency_key="k")
        result = service.redeem("shop", 200, "USD", "Checkout", idempotency_key="a:k")

        assert result.account_id == "shop"
        assert result.applied
        assert store.get_balance("shop") == 0
        assert store.get_balance("shop:a") == 0

    def test_key_owned_by_other_account_is_refused(self):
        store = funded_store(100)
        service = RedemptionService(store)
        service.redeem(ACCOUNT, 10, "USD", "Checkout", idempotency_key="cart-3")
        foreign = store.find_by_idempotency_key(redemption_key(ACCOUNT, "cart-3"))

        with pytest.raises(LedgerValidationError):
            service._replayed(foreign, "buyer-8")

    def test_without_key_each_call_spends(self):
        store = funded_store(100)
        service = RedemptionService(store)

        service.redeem_points(ACCOUNT, 10, "USD", "Checkout")
        service.redeem_points(ACCOUNT, 10, "USD", "Checkout")

        assert store.get_balance(ACCOUNT) == 80
