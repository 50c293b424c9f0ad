"""Tests for the Parcelow checkout orchestrator."""

import json

import httpx
import pytest

from conftest import ORDER_ID, build_order
from migma_backend.checkout import ParcelowCheckout
from migma_backend.config import ParcelowConfig
from migma_backend.errors import CheckoutConflictError, StoreError, ValidationError
from migma_backend.gateways.parcelow import ParcelowClient
from migma_backend.schemas.orders import ClientProfile, Provider
from migma_backend.storage import InMemoryOrderStore

CHECKOUT_URL = "https://sandbox-2.parcelow.com.br/checkout/4411"
NOTIFY_URL = "https://proj.supabase.co/functions/v1/parcelow-webhook"
FROZEN_TIME = 1_700_000_000.0


class FakeParcelowApi:
    def __init__(self):
        self.created: list[tuple[str, dict]] = []
        self.cancelled: list[str] = []
        self.create_responses: list[httpx.Response] = []
        self.order_lookup_status = 200

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/oauth/token":
            return httpx.Response(200, json={"access_token": "tok", "expires_in": 3600})

        if request.method == "POST" and path in ("/api/orders", "/api/orders/brl"):
            self.created.append((path, json.loads(request.content)))
            if self.create_responses:
                return self.create_responses.pop(0)
            return httpx.Response(
                200, json={"success": True, "data": {"order_id": 4411, "url_checkout": CHECKOUT_URL}}
            )

        if request.method == "GET" and path == "/api/order/4411":
            if self.order_lookup_status != 200:
                return httpx.Response(self.order_lookup_status, json={"message": "order not found"})
            return httpx.Response(200, json={"data": [{
                "id": 4411,
                "status": 0,
                "status_text": "Open",
                "order_amount": 58000,
                "total_usd": 60320,
                "total_brl": 331760,
            }]})

        if request.method == "GET" and path == "/api/simulate":
            return httpx.Response(200, json={"data": {"dolar": "5.50", "ted": {"amount": "3190.00"}}})

        if request.method == "DELETE" and path.startswith("/api/order/"):
            self.cancelled.append(path.rsplit("/", 1)[-1])
            return httpx.Response(204)

        return httpx.Response(404, json={"message": f"unexpected {request.method} {path}"})


@pytest.fixture
def parcelow_api():
    return FakeParcelowApi()


def make_checkout(store, api, sleep):
    client = ParcelowClient(
        ParcelowConfig(client_id=1, client_secret="s"),
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(api)),
        sleep=sleep,
    )
    return ParcelowCheckout(
        store,
        client,
        site_url="https://migma.com",
        notify_url=NOTIFY_URL,
        clock=lambda: FROZEN_TIME,
    )


@pytest.fixture
def checkout(seeded_store, parcelow_api, sleep_recorder):
    return make_checkout(seeded_store, parcelow_api, sleep_recorder)


class TestCreateCheckout:
    async def test_usd_checkout_links_the_order(self, checkout, seeded_store, parcelow_api):
        result = await checkout.create_checkout(ORDER_ID)

        assert result.success
        assert result.order_id == "4411"
        assert result.checkout_url == CHECKOUT_URL
        assert result.status == "Open"
        assert result.order_amount == 58000
        assert result.total_usd == 60320

        path, body = parcelow_api.created[0]
        assert path == "/api/orders"
        assert body["reference"] == "MIG-1001"
        assert body["partner_reference"] == ORDER_ID
        assert body["items"] == [{
            "reference": "MIG-1001",
            "description": "Order MIG-1001 - Ana Souza",
            "quantity": 1,
            "amount": 58000,
        }]
        assert body["client"]["cpf"] == "12345678909"
        assert body["redirect"] == {
            "success": f"https://migma.com/checkout/success?order_id={ORDER_ID}",
            "failed": f"https://migma.com/checkout/cancel?order_id={ORDER_ID}",
        }
        assert body["notify_url"] == NOTIFY_URL

        order = await seeded_store.get(ORDER_ID)
        assert order.linked_provider == Provider.PARCELOW
        assert order.parcelow_order_id == "4411"
        assert order.parcelow_checkout_url == CHECKOUT_URL
        assert order.parcelow_status == "Open"
        assert order.payment_method == "parcelow"

    async def test_second_checkout_is_a_conflict(self, checkout, parcelow_api):
        await checkout.create_checkout(ORDER_ID)

        with pytest.raises(CheckoutConflictError):
            await checkout.create_checkout(ORDER_ID)

        assert len(parcelow_api.created) == 1

    async def test_brl_checkout_converts_at_simulated_rate(self, checkout, parcelow_api):
        await checkout.create_checkout(ORDER_ID, currency="BRL")

        path, body = parcelow_api.created[0]
        assert path == "/api/orders/brl"
        assert body["items"][0]["amount"] == 319000

    async def test_existing_email_is_retried_with_alias(self, checkout, parcelow_api):
        parcelow_api.create_responses.append(
            httpx.Response(200, json={"success": False, "message": "Email do cliente existente"})
        )

        result = await checkout.create_checkout(ORDER_ID)

        assert result.order_id == "4411"
        emails = [body["client"]["email"] for _, body in parcelow_api.created]
        assert emails == ["ana@example.com", "ana+1700000000000@example.com"]

    async def test_status_falls_back_to_creation_response(self, checkout, parcelow_api):
        parcelow_api.order_lookup_status = 404

        result = await checkout.create_checkout(ORDER_ID)

        assert result.status == "Open"
        assert result.order_amount == 58000
        assert result.total_usd == 58000

    async def test_failed_linkage_cancels_provider_order(self, parcelow_api, sleep_recorder):
        class BrokenStore(InMemoryOrderStore):
            async def attach_provider(self, order_id, linkage):
                raise StoreError("write failed")

        store = BrokenStore()
        await store.save(build_order())
        checkout = make_checkout(store, parcelow_api, sleep_recorder)

        with pytest.raises(StoreError):
            await checkout.create_checkout(ORDER_ID)

        assert parcelow_api.cancelled == ["4411"]
        assert (await store.get(ORDER_ID)).linked_provider is None


class TestDocumentNumber:
    async def test_payment_step_cpf_wins(self, checkout, seeded_store, parcelow_api):
        await seeded_store.save(build_order(
            id="ord-2",
            order_number="MIG-1002",
            service_request_id="sr-2",
            payment_metadata={"cpf": "987.654.321-00"},
        ))
        await seeded_store.add_service_request("sr-2", client=ClientProfile(document_number="11122233344"))

        await checkout.create_checkout("ord-2")

        assert parcelow_api.created[0][1]["client"]["cpf"] == "98765432100"

    async def test_client_record_fills_missing_order_fields(self, checkout, seeded_store, parcelow_api):
        await seeded_store.save(build_order(
            id="ord-3",
            order_number="MIG-1003",
            service_request_id="sr-3",
            client_cpf=None,
            client_whatsapp=None,
        ))
        await seeded_store.add_service_request("sr-3", client=ClientProfile(
            document_number="111.222.333-44",
            postal_code="01310-100",
            address_line="Av. Paulista 1000",
            city="Sao Paulo",
            state="SP",
            phone="+5511988887777",
        ))

        await checkout.create_checkout("ord-3")

        client = parcelow_api.created[0][1]["client"]
        assert client["cpf"] == "11122233344"
        assert client["phone"] == "+5511988887777"
        assert client["cep"] == "01310-100"
        assert client["address_street"] == "Av. Paulista 1000"
        assert client["address_city"] == "Sao Paulo"

    async def test_missing_cpf_is_rejected_before_any_provider_call(self, checkout, seeded_store, parcelow_api):
        await seeded_store.save(build_order(id="ord-4", order_number="MIG-1004", client_cpf="123", service_request_id=None))

        with pytest.raises(ValidationError, match="CPF is required for Parcelow payment."):
            await checkout.create_checkout("ord-4")

        assert parcelow_api.created == []


class TestSimulate:
    async def test_simulation_in_cents(self, checkout):
        result = await checkout.simulate("580")

        assert result.total_usd == 58000
        assert result.total_brl == 319000
        assert result.exchange_rate == "5.50"

    async def test_amount_required(self, checkout):
        with pytest.raises(ValidationError):
            await checkout.simulate(None)
