"""
Parcelow Checkout
=================
Single-step checkout: one create-order call returns the hosted checkout URL.

1. Refuse orders already linked to a provider session (409)
2. Resolve the client's CPF/CNPJ (payment step -> client record -> order)
3. Create the order in USD, or in BRL at the simulated exchange rate
4. Fetch the created order for its initial status (falls back to the
   creation response)
5. Link the session to the order in one conditional write; on failure the
   provider order is cancelled before the error surfaces
"""

import time
from decimal import Decimal, InvalidOperation
from typing import Callable, Optional, Union

import structlog
from pydantic import BaseModel

from migma_backend.errors import (
    CheckoutConflictError,
    OrderNotFoundError,
    ProviderError,
    ValidationError,
)
from migma_backend.gateways.parcelow import EMAIL_ALREADY_EXISTS, ParcelowClient, extract_order_ref
from migma_backend.schemas.orders import (
    ClientProfile,
    Order,
    Provider,
    ProviderLinkage,
    clean_document_number,
    to_minor_units,
)
from migma_backend.storage.order_store import IOrderStore

logger = structlog.get_logger().bind(component="parcelow_checkout")

CPF_LENGTH = 11
CNPJ_LENGTH = 14
DEFAULT_STATUS_TEXT = "Open"


class SimulationResult(BaseModel):
    """Exchange simulation; amounts in cents."""

    total_usd: int
    total_brl: int
    exchange_rate: Optional[str] = None


class ParcelowCheckoutResult(BaseModel):
    success: bool = True
    order_id: str
    checkout_url: str
    status: str
    total_usd: Optional[int] = None
    total_brl: Optional[int] = None
    order_amount: int


def _decimal(value) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


def _int_or_none(value) -> Optional[int]:
    amount = _decimal(value)
    return int(amount) if amount is not None else None


def alias_email(email: str, stamp: Union[int, float]) -> str:
    """`name@host` -> `name+<stamp>@host`"""
    local, _, domain = email.partition("@")
    return f"{local}+{int(stamp)}@{domain}"


def build_client_data(order: Order, document: str, profile: Optional[ClientProfile]) -> dict:
    """Order fields first, the linked client record fills the gaps."""
    profile = profile or ClientProfile()
    client = {
        "cpf": document,
        "name": order.client_name,
        "email": order.client_email,
        "phone": order.client_whatsapp or profile.phone or "",
        "birthdate": order.client_birthdate or profile.date_of_birth,
        "cep": order.client_cep or profile.postal_code,
        "address_street": order.client_address_street or profile.address_line,
        "address_number": order.client_address_number or ("N/A" if profile.address_line else None),
        "address_neighborhood": order.client_address_neighborhood or ("Centro" if profile.address_line else None),
        "address_city": order.client_address_city or profile.city,
        "address_state": order.client_address_state or profile.state,
        "address_complement": order.client_address_complement,
    }
    return {key: value for key, value in client.items() if value is not None}


class ParcelowCheckout:
    def __init__(
        self,
        store: IOrderStore,
        client: ParcelowClient,
        site_url: str,
        notify_url: Optional[str] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.client = client
        self.site_url = site_url.rstrip("/")
        self.notify_url = notify_url
        self.clock = clock

    # =========================================================================
    # SIMULATION
    # =========================================================================

    async def simulate(self, amount_usd) -> SimulationResult:
        amount = _decimal(amount_usd)
        if amount is None or amount <= 0:
            raise ValidationError("amount_usd is required for simulation")

        amount_cents = to_minor_units(amount)
        simulation = await self.client.simulate(amount_cents)
        ted = simulation.get("ted") if isinstance(simulation.get("ted"), dict) else {}
        brl = _decimal(ted.get("amount"))

        logger.info("parcelow_simulated", amount_cents=amount_cents, exchange_rate=simulation.get("dolar"))
        return SimulationResult(
            total_usd=amount_cents,
            total_brl=to_minor_units(brl) if brl is not None else 0,
            exchange_rate=str(simulation["dolar"]) if simulation.get("dolar") is not None else None,
        )

    # =========================================================================
    # CHECKOUT
    # =========================================================================

    async def create_checkout(self, order_id: str, currency: str = "USD") -> ParcelowCheckoutResult:
        currency = (currency or "USD").upper()
        if currency not in ("USD", "BRL"):
            raise ValidationError(f"Unsupported Parcelow currency: {currency}")

        order = await self.store.get(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        log = logger.bind(order_id=order.id, order_number=order.order_number, currency=currency)

        if order.linked_provider is not None:
            raise CheckoutConflictError(
                f"Order {order.order_number} already has a {order.linked_provider.value} checkout"
            )

        profile = await self._client_profile(order, log)
        document = self._resolve_document(order, profile)
        amount_cents = order.amount_in_cents

        body = {
            "reference": order.order_number,
            "partner_reference": order.id,
            "client": build_client_data(order, document, profile),
            "items": [
                {
                    "reference": order.order_number,
                    "description": f"Order {order.order_number} - {order.client_name}",
                    "quantity": 1,
                    "amount": await self._item_amount(amount_cents, currency),
                }
            ],
            "redirect": {
                "success": f"{self.site_url}/checkout/success?order_id={order.id}",
                "failed": f"{self.site_url}/checkout/cancel?order_id={order.id}",
            },
        }
        if self.notify_url:
            body["notify_url"] = self.notify_url

        response = await self._create_order(body, currency, log)
        parcelow_order_id, checkout_url = extract_order_ref(response)
        if not parcelow_order_id or not checkout_url:
            raise ProviderError(
                Provider.PARCELOW.value, "Parcelow API response missing order_id or url_checkout"
            )
        log = log.bind(parcelow_order_id=parcelow_order_id)

        details = await self._order_details(parcelow_order_id, response, log)
        status_text = details.get("status_text") or DEFAULT_STATUS_TEXT
        linkage = ProviderLinkage(
            provider=Provider.PARCELOW,
            checkout_url=checkout_url,
            status_text=status_text,
            status_code=_int_or_none(details.get("status")) or 0,
            parcelow_order_id=parcelow_order_id,
        )

        try:
            await self.store.attach_provider(order.id, linkage)
        except Exception as e:
            log.error("checkout_linkage_failed", error=str(e))
            await self._compensate(parcelow_order_id, log)
            raise

        order_amount = _int_or_none(details.get("order_amount")) or amount_cents
        log.info("parcelow_checkout_created", checkout_url=checkout_url, status=status_text)
        return ParcelowCheckoutResult(
            order_id=parcelow_order_id,
            checkout_url=checkout_url,
            status=status_text,
            total_usd=_int_or_none(details.get("total_usd")) or order_amount,
            total_brl=_int_or_none(details.get("total_brl")),
            order_amount=order_amount,
        )

    # ----- steps -----

    async def _client_profile(self, order: Order, log) -> Optional[ClientProfile]:
        if not order.service_request_id:
            return None
        try:
            return await self.store.get_client_profile(order.service_request_id)
        except Exception as e:
            log.warning("client_profile_unavailable", error=str(e))
            return None

    @staticmethod
    def _resolve_document(order: Order, profile: Optional[ClientProfile]) -> str:
        # The payment step CPF wins over the profile document (may be a passport)
        raw = (
            order.payment_metadata.get("cpf")
            or (profile.document_number if profile else None)
            or order.client_cpf
        )
        document = clean_document_number(raw)
        if len(document) not in (CPF_LENGTH, CNPJ_LENGTH):
            raise ValidationError("CPF is required for Parcelow payment.")
        return document

    async def _item_amount(self, amount_cents: int, currency: str) -> int:
        if currency == "USD":
            return amount_cents
        simulation = await self.client.simulate(amount_cents)
        rate = _decimal(simulation.get("dolar"))
        if rate is None or rate <= 0:
            raise ProviderError(Provider.PARCELOW.value, "simulation returned no exchange rate")
        return to_minor_units(Decimal(amount_cents) / 100 * rate)

    async def _create_order(self, body: dict, currency: str, log) -> dict:
        create = self.client.create_order_brl if currency == "BRL" else self.client.create_order_usd
        try:
            return await create(body)
        except ProviderError as e:
            if EMAIL_ALREADY_EXISTS not in e.message:
                raise
            aliased = alias_email(body["client"]["email"], self.clock() * 1000)
            log.warning("parcelow_email_exists_retrying", aliased_email=aliased)
            return await create({**body, "client": {**body["client"], "email": aliased}})

    async def _order_details(self, parcelow_order_id: str, response: dict, log) -> dict:
        try:
            return await self.client.get_order(parcelow_order_id)
        except ProviderError as e:
            log.warning("parcelow_order_fetch_failed", error=str(e))
            data = response.get("data")
            return data if isinstance(data, dict) else response

    async def _compensate(self, parcelow_order_id: str, log):
        try:
            await self.client.cancel_order(parcelow_order_id)
            log.info("parcelow_order_cancelled_after_failure")
        except ProviderError as e:
            log.error("parcelow_compensation_failed", error=str(e))
