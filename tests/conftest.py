"""Shared fixtures: in-memory store, fake function invoker, static directory."""

from decimal import Decimal

import pytest

from migma_backend.errors import SideEffectError
from migma_backend.pipeline import BackgroundTaskQueue, SideEffectFanout
from migma_backend.schemas.orders import Order, Product, Seller
from migma_backend.services.directory import StaticDirectory
from migma_backend.storage import InMemoryOrderStore, PaymentRecord

ORDER_ID = "8f14e45f-ceea-467f-a0e6-1b1c2d3e4f50"
ADMIN_EMAILS = ["ops@migma.com", "finance@migma.com"]


class FakeInvoker:
    """Records function calls; names in `failing` raise SideEffectError."""

    def __init__(self, failing=()):
        self.calls: list[tuple[str, dict]] = []
        self.failing = set(failing)

    async def invoke(self, name: str, body: dict) -> dict:
        self.calls.append((name, body))
        if name in self.failing:
            raise SideEffectError(f"{name} failed")
        return {"success": True}

    def names(self) -> list[str]:
        return [name for name, _ in self.calls]

    def count(self, name: str) -> int:
        return self.names().count(name)


class SleepRecorder:
    """Stands in for asyncio.sleep so backoff is asserted, not waited."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float):
        self.delays.append(delay)


def build_order(**overrides) -> Order:
    fields = {
        "id": ORDER_ID,
        "order_number": "MIG-1001",
        "product_slug": "initial-f1",
        "total_price_usd": Decimal("580.00"),
        "base_price_usd": Decimal("400.00"),
        "extra_unit_price_usd": Decimal("90.00"),
        "extra_units": 2,
        "client_name": "Ana Souza",
        "client_email": "ana@example.com",
        "client_whatsapp": "+5511999990000",
        "client_cpf": "123.456.789-09",
        "service_request_id": "sr-1",
        "seller_id": "seller-7",
        "dependent_names": ["Joao Souza", "Maria Souza"],
    }
    fields.update(overrides)
    return Order(**fields)


@pytest.fixture
def order_factory():
    return build_order


@pytest.fixture
def sleep_recorder():
    return SleepRecorder()


@pytest.fixture
def store():
    return InMemoryOrderStore()


@pytest.fixture
async def seeded_store(store):
    """Store holding the default order plus its service request and ledger row."""
    await store.save(build_order())
    await store.add_service_request("sr-1")
    await store.add_payment_record(
        PaymentRecord(service_request_id="sr-1", external_payment_id=ORDER_ID)
    )
    await store.add_product(Product(slug="initial-f1", name="F1 Initial Visa"))
    return store


@pytest.fixture
def invoker():
    return FakeInvoker()


@pytest.fixture
def directory():
    return StaticDirectory(
        admin_emails=ADMIN_EMAILS,
        sellers=[Seller(seller_id="seller-7", full_name="Carla Lima", email="carla@migma.com")],
    )


@pytest.fixture
def queue():
    return BackgroundTaskQueue()


@pytest.fixture
def fanout(store, directory, queue, invoker):
    return SideEffectFanout(store, directory, queue, invoker=invoker)
