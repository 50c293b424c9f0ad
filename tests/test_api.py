"""HTTP surface tests (FastAPI TestClient against an in-memory container)."""

import hashlib
import hmac
import json

import pytest
from fastapi.testclient import TestClient

from conftest import ADMIN_EMAILS, ORDER_ID, FakeInvoker, build_order
from migma_backend.api import create_app, wire
from migma_backend.config import AppConfig, WebhookConfig
from migma_backend.schemas.orders import PaymentStatus
from migma_backend.services.directory import StaticDirectory
from migma_backend.storage import InMemoryOrderStore

WISE_SECRET = "wise-whsec"


@pytest.fixture
def api_store():
    return InMemoryOrderStore()


@pytest.fixture
def container(api_store):
    config = AppConfig(
        site_url="https://migma.com",
        webhooks=WebhookConfig(wise_secret=WISE_SECRET),
    )
    return wire(
        config,
        api_store,
        StaticDirectory(admin_emails=ADMIN_EMAILS),
        invoker=FakeInvoker(),
        env={},
    )


@pytest.fixture
def client(container):
    with TestClient(create_app(container)) as test_client:
        yield test_client


def parcelow_paid():
    return {
        "event": "event_order_paid",
        "order": {
            "id": 4411,
            "reference": "MIG-1001",
            "status": 1,
            "status_text": "Paid",
            "order_amount": 58000,
            "total_usd": 58000,
        },
    }


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["store"] == "memory"
        assert body["pending_side_effects"] == 0

    def test_correlation_id_is_echoed(self, client):
        response = client.get("/health", headers={"X-Correlation-Id": "abc-123"})

        assert response.headers["X-Correlation-Id"] == "abc-123"
        assert "X-Response-Time-Ms" in response.headers


class TestWebhooks:
    def test_liveness_check(self, client):
        assert client.get("/webhooks/parcelow").json() == {"status": "ok", "provider": "parcelow"}
        assert client.get("/webhooks/stripe").status_code == 404

    def test_preflight(self, client):
        assert client.options("/webhooks/wise").status_code == 200

    def test_invalid_json(self, client):
        response = client.post("/webhooks/parcelow", content=b"{not json")

        assert response.status_code == 400
        assert response.json() == {"error": "Invalid JSON"}

    def test_paid_webhook_completes_order(self, client, api_store):
        client.portal.call(api_store.save, build_order(parcelow_order_id="4411"))

        response = client.post("/webhooks/parcelow", json=parcelow_paid())

        assert response.status_code == 200
        assert response.json() == {"received": True, "outcome": "completed"}
        order = client.portal.call(api_store.get, ORDER_ID)
        assert order.payment_status == PaymentStatus.COMPLETED

    def test_unknown_order_is_still_acknowledged(self, client):
        response = client.post("/webhooks/parcelow", json=parcelow_paid())

        assert response.status_code == 200
        assert response.json()["outcome"] == "order_not_found"

    def test_bad_wise_signature_is_rejected(self, client):
        body = json.dumps({"event_type": "transfers#state-change", "data": {}}).encode()

        response = client.post("/webhooks/wise", content=body, headers={"X-Signature-SHA256": "deadbeef"})

        assert response.status_code == 401

    def test_signed_wise_webhook_is_accepted(self, client):
        body = json.dumps({"event_type": "balances#credit", "data": {}}).encode()
        signature = hmac.new(WISE_SECRET.encode(), body, hashlib.sha256).hexdigest()

        response = client.post("/webhooks/wise", content=body, headers={"X-Signature-SHA256": signature})

        assert response.status_code == 200
        assert response.json()["outcome"] == "ignored"


class TestCheckout:
    def test_missing_provider_credentials(self, client):
        response = client.post("/checkout/parcelow", json={"order_id": ORDER_ID})

        assert response.status_code == 500
        assert response.json()["success"] is False

    def test_unsupported_currency_rejected_by_schema(self, client):
        response = client.post("/checkout/parcelow", json={"order_id": ORDER_ID, "currency": "EUR"})
        assert response.status_code == 422


class TestZelleNotify:
    def test_unknown_order(self, client):
        response = client.post("/zelle/notify", json={"order_id": "missing"})
        assert response.status_code == 404

    def test_pending_order_is_rejected(self, client, api_store):
        client.portal.call(api_store.save, build_order(payment_method="zelle"))

        response = client.post("/zelle/notify", json={"order_id": ORDER_ID})

        assert response.status_code == 400
        assert response.json()["success"] is False

    def test_approved_order_triggers_fanout(self, client, api_store):
        client.portal.call(
            api_store.save,
            build_order(payment_method="zelle", payment_status=PaymentStatus.COMPLETED),
        )

        response = client.post("/zelle/notify", json={"order_id": ORDER_ID})

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert "client_email" in body["side_effects"]
        assert "admin_emails" in body["side_effects"]
        assert body["outcome"] == "completed"

    def test_second_notify_is_reported_as_duplicate(self, client, api_store):
        client.portal.call(
            api_store.save,
            build_order(payment_method="zelle", payment_status=PaymentStatus.COMPLETED),
        )

        first = client.post("/zelle/notify", json={"order_id": ORDER_ID})
        second = client.post("/zelle/notify", json={"order_id": ORDER_ID})

        assert first.json()["outcome"] == "completed"
        assert second.status_code == 200
        assert second.json() == {
            "success": True,
            "order_id": ORDER_ID,
            "outcome": "duplicate",
            "side_effects": [],
        }
