# checkout/wise_checkout.py
# ============================================================================
# WISE CHECKOUT (three-step)
# ============================================================================
# quote (target = order total) -> recipient (platform account) -> transfer.
# The client pays the transfer's pay-in on Wise; the platform receives the
# full order total in its own currency.
#
# Recipient accounts are reused: WISE_RECIPIENT_ID pins one, otherwise the
# first one created for a given account is cached for the process lifetime.
# ============================================================================

import uuid

import structlog
from pydantic import BaseModel

from migma_backend.config import BankAccountConfig
from migma_backend.errors import (
    CheckoutConflictError,
    ConfigurationError,
    OrderNotFoundError,
    ProviderError,
    ValidationError,
)
from migma_backend.gateways.wise import WiseClient, find_payment_url
from migma_backend.schemas.orders import Order, Provider, ProviderLinkage
from migma_backend.storage.order_store import IOrderStore, WiseTransferRecord

logger = structlog.get_logger().bind(component="wise_checkout")

INITIAL_TRANSFER_STATE = "incoming_payment_waiting"


class WiseCheckoutResult(BaseModel):
    success: bool = True
    payment_url: str
    transfer_id: str
    quote_id: str
    recipient_id: str
    status: str


def customer_transaction_id(order_id: str) -> str:
    """Wise requires a UUID; orders with other id formats get a fresh one."""
    try:
        return str(uuid.UUID(order_id))
    except (ValueError, AttributeError, TypeError):
        return str(uuid.uuid4())


def fallback_payment_url(transfer: dict, sandbox: bool) -> str:
    host = "https://sandbox.wise.com" if sandbox else "https://wise.com"
    if transfer.get("payinSessionId"):
        return f"{host}/pay/r/{transfer['payinSessionId']}"
    return f"{host}/payments/{transfer.get('id')}"


def account_fingerprint(profile_id: str, bank: BankAccountConfig) -> tuple:
    return (
        profile_id,
        bank.currency,
        bank.type,
        bank.routing_number or bank.swift or bank.iban or bank.sort_code,
        bank.account_number,
    )


class WiseCheckout:
    def __init__(self, store: IOrderStore, client: WiseClient, bank: BankAccountConfig):
        # Quotes fix the target amount to the order total, which is priced in USD
        if bank.currency.upper() != "USD":
            raise ConfigurationError(
                f"WISE_MIGMA_CURRENCY must be USD to receive USD order totals, got {bank.currency}"
            )
        self.store = store
        self.client = client
        self.bank = bank
        self._recipients: dict[tuple, str] = {}

    async def create_checkout(self, order_id: str, client_currency: str = "USD") -> WiseCheckoutResult:
        client_currency = (client_currency or "USD").upper()
        if len(client_currency) != 3 or not client_currency.isalpha():
            raise ValidationError(f"Invalid client currency: {client_currency}")

        order = await self.store.get(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        log = logger.bind(order_id=order.id, order_number=order.order_number)

        if order.linked_provider is not None:
            raise CheckoutConflictError(
                f"Order {order.order_number} already has a {order.linked_provider.value} checkout"
            )

        profile_id = await self.client.get_profile_id()

        # 1. Quote: the platform must receive the full order total
        quote = await self.client.create_quote(
            profile_id,
            source_currency=client_currency,
            target_currency=self.bank.currency,
            target_amount=order.total_price_usd,
        )
        quote_id = str(quote.get("id") or "")
        if not quote_id:
            raise ProviderError(Provider.WISE.value, "quote response missing id")
        log.info("wise_quote_created", quote_id=quote_id, source_currency=client_currency)

        # 2. Recipient
        recipient_id = await self._recipient_id(profile_id, log)

        # 3. Transfer
        transfer = await self.client.create_transfer(
            target_account=recipient_id,
            quote_uuid=quote_id,
            customer_transaction_id=customer_transaction_id(order.id),
            reference=f"Order {order.order_number} - {order.client_name}",
        )
        if transfer.get("id") is None:
            raise ProviderError(Provider.WISE.value, "transfer response missing id")
        transfer_id = str(transfer["id"])
        status = transfer.get("status") or INITIAL_TRANSFER_STATE
        log = log.bind(transfer_id=transfer_id)

        payment_url = await self._payment_url(transfer, quote, log)

        linkage = ProviderLinkage(
            provider=Provider.WISE,
            checkout_url=payment_url,
            status_text=status,
            wise_transfer_id=transfer_id,
            wise_quote_id=quote_id,
            wise_recipient_id=recipient_id,
        )
        try:
            await self.store.attach_provider(order.id, linkage)
        except Exception as e:
            log.error("checkout_linkage_failed", error=str(e))
            await self._compensate(transfer_id, log)
            raise

        await self._record_transfer(order, transfer, quote, recipient_id, client_currency, status, log)

        log.info("wise_checkout_created", status=status, payment_url=payment_url)
        return WiseCheckoutResult(
            payment_url=payment_url,
            transfer_id=transfer_id,
            quote_id=quote_id,
            recipient_id=recipient_id,
            status=status,
        )

    # ----- steps -----

    async def _recipient_id(self, profile_id: str, log) -> str:
        if self.client.config.recipient_id:
            return self.client.config.recipient_id

        key = account_fingerprint(profile_id, self.bank)
        cached = self._recipients.get(key)
        if cached:
            return cached

        recipient = await self.client.create_recipient(profile_id, self.bank)
        if recipient.get("id") is None:
            raise ProviderError(Provider.WISE.value, "recipient response missing id")
        recipient_id = str(recipient["id"])
        self._recipients[key] = recipient_id
        log.info("wise_recipient_created", recipient_id=recipient_id, account_type=self.bank.type)
        return recipient_id

    async def _payment_url(self, transfer: dict, quote: dict, log) -> str:
        url = find_payment_url(transfer) or find_payment_url(quote)
        if url:
            return url
        url = await self.client.get_transfer_payment_url(str(transfer["id"]))
        if url:
            return url
        url = fallback_payment_url(transfer, self.client.config.is_sandbox)
        log.warning("wise_payment_url_fallback", payment_url=url)
        return url

    async def _record_transfer(
        self,
        order: Order,
        transfer: dict,
        quote: dict,
        recipient_id: str,
        client_currency: str,
        status: str,
        log,
    ):
        fee = quote.get("fee") if isinstance(quote.get("fee"), dict) else {}
        try:
            await self.store.record_wise_transfer(
                WiseTransferRecord(
                    visa_order_id=order.id,
                    wise_transfer_id=str(transfer["id"]),
                    wise_quote_uuid=str(quote["id"]),
                    wise_recipient_id=recipient_id,
                    source_currency=client_currency,
                    target_currency=self.bank.currency,
                    source_amount=transfer.get("sourceValue") or quote.get("sourceAmount"),
                    target_amount=transfer.get("targetValue") or quote.get("targetAmount") or order.total_price_usd,
                    exchange_rate=transfer.get("rate") or quote.get("rate"),
                    fee_amount=fee.get("total"),
                    status=status,
                    status_details=transfer,
                )
            )
        except Exception as e:
            log.error("wise_transfer_record_failed", error=str(e))

    async def _compensate(self, transfer_id: str, log):
        try:
            await self.client.cancel_transfer(transfer_id)
            log.info("wise_transfer_cancelled_after_failure")
        except ProviderError as e:
            log.error("wise_compensation_failed", error=str(e))
