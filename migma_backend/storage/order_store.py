"""
Order Store
===========
Persistence interface for the order aggregate and the rows the payment
pipeline touches around it (service requests, payment ledger, funnel
events, Wise transfer ledger).

Writes that guard invariants are conditional at the store level:
- attach_provider: only when the order has no provider linkage yet
- complete_payment: only when the order is not already completed
- claim_fanout: only when no fan-out has been dispatched for the order
Each reports the outcome so callers never read-then-write.
"""

import asyncio
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from migma_backend.errors import CheckoutConflictError, OrderNotFoundError
from migma_backend.schemas.orders import (
    ClientProfile,
    Order,
    PaymentStatus,
    Product,
    Provider,
    ProviderLinkage,
)

FANOUT_MARKER = "fanout_dispatched_at"


# =============================================================================
# RECORDS
# =============================================================================

class FunnelEvent(BaseModel):
    """Row of `seller_funnel_events` used for commission attribution."""

    seller_id: str
    product_slug: str
    event_type: str = "payment_completed"
    session_id: str
    metadata: dict = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.utcnow)


class WiseTransferRecord(BaseModel):
    """Row of `wise_transfers`."""

    visa_order_id: str
    wise_transfer_id: str
    wise_quote_uuid: str
    wise_recipient_id: str
    source_currency: str
    target_currency: str
    source_amount: Optional[Decimal] = None
    target_amount: Optional[Decimal] = None
    exchange_rate: Optional[Decimal] = None
    fee_amount: Optional[Decimal] = None
    status: str = "incoming_payment_waiting"
    status_details: dict = Field(default_factory=dict)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class PaymentRecord(BaseModel):
    """Row of `payments` linked to a service request."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    service_request_id: str
    external_payment_id: Optional[str] = None
    status: str = "pending"
    raw_webhook_log: Optional[dict] = None
    updated_at: datetime = Field(default_factory=datetime.utcnow)


# =============================================================================
# INTERFACE
# =============================================================================

class IOrderStore(ABC):
    """Abstract order store"""

    @abstractmethod
    async def get(self, order_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def find_by_provider_reference(
        self,
        provider: Provider,
        external_id: str,
        reference: Optional[str] = None,
    ) -> Optional[Order]:
        """Match on the provider's id, falling back to the order number."""
        pass

    @abstractmethod
    async def attach_provider(self, order_id: str, linkage: ProviderLinkage) -> Order:
        """Link a checkout session. CheckoutConflictError if already linked."""
        pass

    @abstractmethod
    async def update_provider_status(
        self,
        order_id: str,
        provider: Provider,
        status_text: Optional[str],
        status_code: Optional[int] = None,
    ) -> None:
        pass

    @abstractmethod
    async def complete_payment(
        self,
        order_id: str,
        provider: Provider,
        status_text: Optional[str],
        status_code: Optional[int],
        metadata: dict,
    ) -> bool:
        """True only for the call that moved the order to completed."""
        pass

    @abstractmethod
    async def set_payment_status(self, order_id: str, status: PaymentStatus) -> bool:
        """Non-completion transition; never leaves `completed`."""
        pass

    @abstractmethod
    async def claim_fanout(self, order_id: str, dispatched_at: datetime) -> bool:
        """Stamp payment_metadata.fanout_dispatched_at; True only for the first caller."""
        pass

    @abstractmethod
    async def mark_service_request_paid(self, service_request_id: str) -> bool:
        pass

    @abstractmethod
    async def mark_payment_record_paid(
        self, service_request_id: str, order_id: str, audit: dict
    ) -> bool:
        pass

    @abstractmethod
    async def record_funnel_event(self, event: FunnelEvent) -> None:
        pass

    @abstractmethod
    async def record_wise_transfer(self, record: WiseTransferRecord) -> None:
        pass

    @abstractmethod
    async def update_wise_transfer(self, transfer_id: str, status: str, details: dict) -> None:
        pass

    @abstractmethod
    async def get_client_profile(self, service_request_id: str) -> Optional[ClientProfile]:
        pass

    @abstractmethod
    async def get_product(self, slug: str) -> Optional[Product]:
        pass


# =============================================================================
# IN-MEMORY IMPLEMENTATION
# =============================================================================

def _mirror_fields(provider: Provider, status_text: Optional[str], status_code: Optional[int]) -> dict:
    if provider == Provider.PARCELOW:
        return {"parcelow_status": status_text, "parcelow_status_code": status_code}
    return {"wise_payment_status": status_text}


class InMemoryOrderStore(IOrderStore):
    """Lock-guarded in-memory store for local runs and tests"""

    def __init__(self):
        self._orders: dict[str, Order] = {}
        self._service_requests: dict[str, dict] = {}
        self._client_profiles: dict[str, ClientProfile] = {}
        self._products: dict[str, Product] = {}
        self.payments: dict[str, PaymentRecord] = {}
        self.funnel_events: list[FunnelEvent] = []
        self.wise_transfers: dict[str, WiseTransferRecord] = {}
        self._lock = asyncio.Lock()

    # ----- seeding -----

    async def save(self, order: Order) -> Order:
        async with self._lock:
            self._orders[order.id] = order
            return order

    async def add_service_request(
        self,
        service_request_id: str,
        status: str = "pending",
        client: Optional[ClientProfile] = None,
    ):
        async with self._lock:
            self._service_requests[service_request_id] = {"id": service_request_id, "status": status}
            if client is not None:
                self._client_profiles[service_request_id] = client

    async def add_payment_record(self, record: PaymentRecord):
        async with self._lock:
            self.payments[record.id] = record

    async def add_product(self, product: Product):
        async with self._lock:
            self._products[product.slug] = product

    def service_request_status(self, service_request_id: str) -> Optional[str]:
        row = self._service_requests.get(service_request_id)
        return row["status"] if row else None

    # ----- orders -----

    async def get(self, order_id: str) -> Optional[Order]:
        async with self._lock:
            return self._orders.get(order_id)

    async def find_by_provider_reference(
        self,
        provider: Provider,
        external_id: str,
        reference: Optional[str] = None,
    ) -> Optional[Order]:
        async with self._lock:
            for order in self._orders.values():
                linked_id = (
                    order.parcelow_order_id if provider == Provider.PARCELOW else order.wise_transfer_id
                )
                if linked_id and linked_id == external_id:
                    return order
            if reference:
                for order in self._orders.values():
                    if order.order_number == reference:
                        return order
            return None

    async def attach_provider(self, order_id: str, linkage: ProviderLinkage) -> Order:
        async with self._lock:
            order = self._orders.get(order_id)
            if order is None:
                raise OrderNotFoundError(order_id)
            if order.linked_provider is not None:
                raise CheckoutConflictError(
                    f"Order {order.order_number} already has a {order.linked_provider.value} checkout"
                )

            if linkage.provider == Provider.PARCELOW:
                update = {
                    "parcelow_order_id": linkage.parcelow_order_id,
                    "parcelow_checkout_url": linkage.checkout_url,
                    "parcelow_status": linkage.status_text,
                    "parcelow_status_code": linkage.status_code,
                    "payment_method": "parcelow",
                }
            else:
                update = {
                    "wise_transfer_id": linkage.wise_transfer_id,
                    "wise_quote_id": linkage.wise_quote_id,
                    "wise_recipient_id": linkage.wise_recipient_id,
                    "wise_payment_status": linkage.status_text,
                    "wise_checkout_url": linkage.checkout_url,
                    "payment_method": "wise",
                }
            update["updated_at"] = datetime.utcnow()
            updated = order.model_copy(update=update)
            self._orders[order_id] = updated
            return updated

    async def update_provider_status(
        self,
        order_id: str,
        provider: Provider,
        status_text: Optional[str],
        status_code: Optional[int] = None,
    ) -> None:
        async with self._lock:
            order = self._orders.get(order_id)
            if order is None:
                raise OrderNotFoundError(order_id)
            update = _mirror_fields(provider, status_text, status_code)
            update["updated_at"] = datetime.utcnow()
            self._orders[order_id] = order.model_copy(update=update)

    async def complete_payment(
        self,
        order_id: str,
        provider: Provider,
        status_text: Optional[str],
        status_code: Optional[int],
        metadata: dict,
    ) -> bool:
        async with self._lock:
            order = self._orders.get(order_id)
            if order is None:
                raise OrderNotFoundError(order_id)
            if order.payment_status == PaymentStatus.COMPLETED:
                return False
            update = _mirror_fields(provider, status_text, status_code)
            update.update({
                "payment_status": PaymentStatus.COMPLETED,
                "payment_metadata": {**order.payment_metadata, **metadata},
                "updated_at": datetime.utcnow(),
            })
            self._orders[order_id] = order.model_copy(update=update)
            return True

    async def set_payment_status(self, order_id: str, status: PaymentStatus) -> bool:
        async with self._lock:
            order = self._orders.get(order_id)
            if order is None:
                raise OrderNotFoundError(order_id)
            if order.payment_status in (PaymentStatus.COMPLETED, status):
                return False
            self._orders[order_id] = order.model_copy(
                update={"payment_status": status, "updated_at": datetime.utcnow()}
            )
            return True

    async def claim_fanout(self, order_id: str, dispatched_at: datetime) -> bool:
        async with self._lock:
            order = self._orders.get(order_id)
            if order is None:
                raise OrderNotFoundError(order_id)
            if FANOUT_MARKER in order.payment_metadata:
                return False
            self._orders[order_id] = order.model_copy(update={
                "payment_metadata": {**order.payment_metadata, FANOUT_MARKER: dispatched_at.isoformat()},
                "updated_at": datetime.utcnow(),
            })
            return True

    # ----- related rows -----

    async def mark_service_request_paid(self, service_request_id: str) -> bool:
        async with self._lock:
            row = self._service_requests.get(service_request_id)
            if row is None:
                return False
            row["status"] = "paid"
            return True

    async def mark_payment_record_paid(
        self, service_request_id: str, order_id: str, audit: dict
    ) -> bool:
        async with self._lock:
            for record in self.payments.values():
                if record.service_request_id == service_request_id and record.external_payment_id == order_id:
                    record.status = "paid"
                    record.raw_webhook_log = audit
                    record.updated_at = datetime.utcnow()
                    return True
            return False

    async def record_funnel_event(self, event: FunnelEvent) -> None:
        async with self._lock:
            self.funnel_events.append(event)

    async def record_wise_transfer(self, record: WiseTransferRecord) -> None:
        async with self._lock:
            self.wise_transfers[record.wise_transfer_id] = record

    async def update_wise_transfer(self, transfer_id: str, status: str, details: dict) -> None:
        async with self._lock:
            record = self.wise_transfers.get(transfer_id)
            if record is None:
                return
            self.wise_transfers[transfer_id] = record.model_copy(
                update={"status": status, "status_details": details, "updated_at": datetime.utcnow()}
            )

    async def get_client_profile(self, service_request_id: str) -> Optional[ClientProfile]:
        async with self._lock:
            return self._client_profiles.get(service_request_id)

    async def get_product(self, slug: str) -> Optional[Product]:
        async with self._lock:
            return self._products.get(slug)
