"""
HTTP API tests with an in-memory ledger behind the dependency.
"""

import json
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from loyalty.api import app, get_points_service
from loyalty.config import PointsConfig
from loyalty.errors import LedgerUnavailableError
from loyalty.service import PointsService
from loyalty.store import InMemoryLedgerStore


ACCOUNT = "buyer-42"


@pytest.fixture
def service():
    return PointsService(store=InMemoryLedgerStore())


@pytest.fixture
def client(service):
    app.dependency_overrides[get_points_service] = lambda: service
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestAccountEndpoints:

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_balance_of_unknown_account_is_zero(self, client):
        response = client.get(f"/accounts/{ACCOUNT}/balance")

        assert response.status_code == 200
        assert response.json()["balance"] == 0

    def test_history_newest_first(self, client, service):
        service.award_points(ACCOUNT, 50, "Welcome bonus")
        service.award_points(ACCOUNT, 10, "Sale bonus", "order-1", reason_code="sale")

        response = client.get(f"/accounts/{ACCOUNT}/history", params={"limit": 1})

        body = response.json()
        assert response.status_code == 200
        assert body["total_count"] == 2
        assert body["current_balance"] == 60
        assert [e["description"] for e in body["entries"]] == ["Sale bonus"]

    def test_history_limit_is_bounded(self, client):
        response = client.get(f"/accounts/{ACCOUNT}/history", params={"limit": 10_000})

        assert response.status_code == 422

    def test_reconcile(self, client, service):
        service.award_points(ACCOUNT, 50, "Welcome bonus")

        response = client.get(f"/accounts/{ACCOUNT}/reconcile")

        assert response.json() == {
            "account_id": ACCOUNT, "balance": 50, "ledger_sum": 50, "entry_count": 1, "consistent": True,
        }


class TestPointsEndpoints:

    def test_award_creates_entry(self, client):
        payload = {"amount": 10, "description": "Sale bonus", "related_order_id": "order-1", "reason_code": "sale"}

        first = client.post(f"/accounts/{ACCOUNT}/award", json=payload)
        retry = client.post(f"/accounts/{ACCOUNT}/award", json=payload)

        assert first.status_code == 201
        assert first.json()["balance"] == 10
        assert retry.status_code == 200
        assert retry.json()["applied"] is False
        assert retry.json()["balance"] == 10

    def test_award_rejects_non_positive_amount(self, client):
        response = client.post(f"/accounts/{ACCOUNT}/award", json={"amount": 0, "description": "Nothing"})

        assert response.status_code == 422

    def test_redeem_returns_discount_as_string(self, client, service):
        service.award_points(ACCOUNT, 500, "Purchase on order order-9")

        response = client.post(f"/accounts/{ACCOUNT}/redeem", json={"points": 200, "currency": "USD"})

        assert response.status_code == 200
        body = response.json()
        assert body["discount_amount"] == "10.00"
        assert body["balance"] == 300

    def test_redeem_insufficient_is_conflict(self, client, service):
        service.award_points(ACCOUNT, 50, "Welcome bonus")

        response = client.post(f"/accounts/{ACCOUNT}/redeem", json={"points": 80})

        assert response.status_code == 409
        assert "Insufficient points" in response.json()["detail"]

    def test_redeem_unsupported_currency(self, client, service):
        service.award_points(ACCOUNT, 50, "Welcome bonus")

        response = client.post(f"/accounts/{ACCOUNT}/redeem", json={"points": 10, "currency": "GBP"})

        assert response.status_code == 400

    def test_redeem_when_disabled(self):
        disabled = PointsService(store=InMemoryLedgerStore(), config=PointsConfig(enabled=False))
        app.dependency_overrides[get_points_service] = lambda: disabled
        try:
            response = TestClient(app).post(f"/accounts/{ACCOUNT}/redeem", json={"points": 10})
        finally:
            app.dependency_overrides.clear()

        assert response.status_code == 403

    def test_store_outage_is_service_unavailable(self):
        store = MagicMock(spec=InMemoryLedgerStore)
        store.get_account.side_effect = LedgerUnavailableError("connection reset")
        app.dependency_overrides[get_points_service] = lambda: PointsService(store=store)
        try:
            response = TestClient(app).get(f"/accounts/{ACCOUNT}/balance")
        finally:
            app.dependency_overrides.clear()

        assert response.status_code == 503

    def test_quote(self, client):
        response = client.get("/redemptions/quote", params={"points": 200, "currency": "EUR"})

        assert response.status_code == 200
        assert response.json()["discount_amount"] == "9.60"


class TestEventEndpoints:

    def test_order_paid_event(self, client, service):
        context = {"order": {
            "id": "order-7",
            "buyer_id": ACCOUNT,
            "total_price": 59.99,
            "items": [{"product_id": "p-1", "name": "Watch", "seller_id": "seller-3"}],
        }}

        response = client.post("/events/order_paid", json={"context": context})

        assert response.status_code == 200
        assert [r["points"] for r in response.json()] == [59, 10]
        assert service.get_balance(ACCOUNT) == 59
        assert service.get_balance("seller-3") == 10

    def test_infinite_order_total_earns_nothing(self, client, service):
        context = {"order": {"id": "order-8", "buyer_id": ACCOUNT, "total_price": float("inf"), "items": []}}

        response = client.post(
            "/events/order_paid",
            content=json.dumps({"context": context}),
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 200
        assert response.json() == []
        assert service.get_balance(ACCOUNT) == 0

    def test_unknown_trigger(self, client):
        response = client.post("/events/birthday", json={"context": {}})

        assert response.status_code == 422
