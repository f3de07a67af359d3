"""
End-to-end points lifecycle through the PointsService facade.
"""

import random
from decimal import Decimal

import pytest

from loyalty.errors import InsufficientBalanceError
from loyalty.models import ReconciliationReport
from loyalty.service import PointsService


SELLER_ID = "seller-1"


class TestPointsLifecycle:

    def test_earn_then_redeem_everything(self, store, notifier):
        """Welcome bonus and a sale, then the whole balance is spent."""
        service = PointsService(store=store, notifier=notifier)

        service.award_points(SELLER_ID, 50, "Welcome bonus", reason_code="registration")
        balance = service.award_points(SELLER_ID, 10, "Sale of T-Shirt", "order-1", reason_code="sale")
        assert balance == 60
        assert service.get_balance(SELLER_ID) == 60

        discount = service.redeem_points(SELLER_ID, 60, "USD", "Checkout discount")
        assert discount == Decimal("3.00")
        assert service.get_balance(SELLER_ID) == 0

        with pytest.raises(InsufficientBalanceError):
            service.redeem_points(SELLER_ID, 1, "USD", "Checkout discount")

        history = service.get_history(SELLER_ID)
        assert history.total_count == 3
        assert history.current_balance == 0
        assert [e.description for e in history.entries] == ["Checkout discount", "Sale of T-Shirt", "Welcome bonus"]
        assert [n.title for n in notifier.sent] == ["Points earned", "Points earned", "Points redeemed"]
        assert service.reconcile(SELLER_ID).consistent

    def test_unknown_account_reads_as_empty(self, store):
        service = PointsService(store=store)

        assert service.get_balance("nobody") == 0
        account = service.get_account("nobody")
        assert account.balance == 0
        assert account.total_entries == 0
        assert service.get_history("nobody").entries == []

    def test_random_sequence_never_goes_negative(self, store):
        """Balance tracks a running model and always matches the ledger."""
        service = PointsService(store=store)
        rng = random.Random(1234)
        expected = 0

        for n in range(60):
            points = rng.randint(1, 40)
            if rng.random() < 0.5:
                expected = service.award_points("shopper", points, f"Grant {n}", f"order-{n}", reason_code="purchase")
            else:
                try:
                    service.redeem_points("shopper", points, "USD", f"Checkout {n}")
                    expected -= points
                except InsufficientBalanceError:
                    assert points > expected
            assert service.get_balance("shopper") == expected
            assert expected >= 0

        report = service.reconcile("shopper")
        assert report.consistent
        assert report.balance == expected


class TestMismatchReporting:

    def test_reconcile_logs_mismatch(self, caplog):
        class DriftingStore:
            def reconcile(self, account_id):
                return ReconciliationReport(account_id=account_id, balance=10, ledger_sum=7, entry_count=2)

            def close(self):
                pass

        service = PointsService(store=DriftingStore())

        report = service.reconcile("drifted")

        assert not report.consistent
        assert "Ledger mismatch for drifted" in caplog.text
