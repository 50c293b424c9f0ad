"""
Webhook Reconciler
==================
Applies one decoded provider event to the matching order, exactly once.

Flow per event:
1. verify the inbound signature (when a secret is configured)
2. decode into a PaymentEvent and look the order up (not found -> ack + log)
3. paid event on an already completed order -> no-op
4. completion: conditional complete_payment, fan-out only if this call won
5. anything else: mirror fields, then payment_status when it changed

Deliveries for the same order are serialized in-process; the conditional
store write covers concurrent workers.
"""

import asyncio
import hashlib
import hmac
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime
from enum import Enum
from typing import Callable, Mapping, Optional

import structlog
from pydantic import BaseModel, Field

from migma_backend.errors import WebhookSignatureError
from migma_backend.pipeline.fanout import SideEffectFanout
from migma_backend.schemas.orders import Order, PaymentStatus, Provider
from migma_backend.schemas.webhooks import (
    PaymentEvent,
    SettlementAmounts,
    decode_parcelow,
    decode_wise,
)
from migma_backend.storage.order_store import IOrderStore

PARCELOW_SECRET_HEADER = "x-webhook-secret"
WISE_SIGNATURE_HEADER = "x-signature-sha256"


class ReconcileOutcome(str, Enum):
    COMPLETED = "completed"
    UPDATED = "updated"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    NOT_FOUND = "order_not_found"


class ReconcileResult(BaseModel):
    outcome: ReconcileOutcome
    provider: Provider
    order_id: Optional[str] = None
    payment_status: Optional[PaymentStatus] = None
    side_effects: list[str] = Field(default_factory=list)


class WebhookReconciler(ABC):
    """Provider-agnostic reconciliation; subclasses decode and authenticate."""

    provider: Provider

    def __init__(
        self,
        store: IOrderStore,
        fanout: SideEffectFanout,
        *,
        secret: Optional[str] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.store = store
        self.fanout = fanout
        self.secret = secret
        self.clock = clock
        self._order_locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}
        self.logger = structlog.get_logger().bind(
            component="webhook_reconciler", provider=self.provider.value
        )

    # ----- provider hooks -----

    @abstractmethod
    def verify_signature(self, body: bytes, headers: Mapping[str, str]) -> None:
        """Raise WebhookSignatureError when the delivery is not authentic."""

    @abstractmethod
    def decode(self, payload: dict) -> Optional[PaymentEvent]:
        """None for deliveries that carry nothing to reconcile."""

    @abstractmethod
    def settlement(self, order: Order, event: PaymentEvent) -> SettlementAmounts:
        pass

    async def on_event(self, order: Order, event: PaymentEvent) -> None:
        """Called for every matched event before the order is touched."""

    # ----- entry points -----

    async def handle(self, payload: dict) -> ReconcileResult:
        event = self.decode(payload)
        if event is None:
            self.logger.info("webhook_ignored", event_type=payload.get("event_type") or payload.get("event"))
            return ReconcileResult(outcome=ReconcileOutcome.IGNORED, provider=self.provider)
        return await self.reconcile(event)

    async def reconcile(self, event: PaymentEvent) -> ReconcileResult:
        log = self.logger.bind(event_type=event.event_type, external_id=event.external_id)

        order = await self.store.find_by_provider_reference(
            self.provider, event.external_id, event.reference
        )
        if order is None:
            log.warning("webhook_order_not_found", reference=event.reference)
            return ReconcileResult(outcome=ReconcileOutcome.NOT_FOUND, provider=self.provider)

        async with self._order_lock(order.id):
            # Re-read under the lock; a concurrent delivery may have completed it
            order = await self.store.get(order.id) or order
            log = log.bind(order_id=order.id, order_number=order.order_number)

            if order.is_completed and event.is_payment_completed:
                log.info("webhook_duplicate_ignored")
                return self._result(ReconcileOutcome.DUPLICATE, order)

            await self.on_event(order, event)

            if event.is_payment_completed:
                return await self._complete(order, event, log)
            return await self._apply_status(order, event, log)

    # ----- transitions -----

    async def _complete(self, order: Order, event: PaymentEvent, log) -> ReconcileResult:
        amounts = self.settlement(order, event)
        completed_at = self.clock()
        transitioned = await self.store.complete_payment(
            order.id,
            self.provider,
            event.raw_status,
            event.status_code,
            amounts.to_metadata(self.provider.value, completed_at),
        )
        if not transitioned:
            log.info("webhook_completion_lost_race")
            return self._result(ReconcileOutcome.DUPLICATE, order)

        log.info(
            "payment_completed",
            total_usd=str(amounts.gross_usd),
            fee_usd=str(amounts.fee_usd),
            installments=amounts.installments,
        )
        completed = await self.store.get(order.id) or order
        audit = {
            "provider": self.provider.value,
            "event_type": event.event_type,
            "external_id": event.external_id,
            "raw_status": event.raw_status,
            "received_at": completed_at.isoformat(),
            "payload": event.raw,
        }
        side_effects = await self.fanout.run(
            completed, payment_method=self.provider.value, audit=audit
        )
        return self._result(ReconcileOutcome.COMPLETED, completed, side_effects)

    async def _apply_status(self, order: Order, event: PaymentEvent, log) -> ReconcileResult:
        await self.store.update_provider_status(
            order.id, self.provider, event.raw_status, event.status_code
        )
        target = event.target_status
        if target is None or target == order.payment_status:
            log.info("webhook_status_mirrored", raw_status=event.raw_status)
            return self._result(ReconcileOutcome.UPDATED, order)

        if order.is_completed:
            log.warning("webhook_late_event_after_completion", target_status=target.value)
            return self._result(ReconcileOutcome.UPDATED, order)

        changed = await self.store.set_payment_status(order.id, target)
        if changed:
            log.info("payment_status_changed", from_status=order.payment_status.value, to_status=target.value)
        return self._result(ReconcileOutcome.UPDATED, order, status=target if changed else None)

    # ----- helpers -----

    @asynccontextmanager
    async def _order_lock(self, order_id: str):
        """Serialize deliveries per order; the lock is dropped once nobody holds or awaits it."""
        lock = self._order_locks.setdefault(order_id, asyncio.Lock())
        self._lock_users[order_id] = self._lock_users.get(order_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[order_id] -= 1
            if not self._lock_users[order_id]:
                del self._lock_users[order_id]
                del self._order_locks[order_id]

    def _result(
        self,
        outcome: ReconcileOutcome,
        order: Order,
        side_effects: Optional[list[str]] = None,
        status: Optional[PaymentStatus] = None,
    ) -> ReconcileResult:
        if outcome == ReconcileOutcome.COMPLETED:
            status = PaymentStatus.COMPLETED
        return ReconcileResult(
            outcome=outcome,
            provider=self.provider,
            order_id=order.id,
            payment_status=status or order.payment_status,
            side_effects=side_effects or [],
        )


# =============================================================================
# PARCELOW
# =============================================================================

class ParcelowReconciler(WebhookReconciler):
    provider = Provider.PARCELOW

    def verify_signature(self, body: bytes, headers: Mapping[str, str]) -> None:
        if not self.secret:
            return
        received = headers.get(PARCELOW_SECRET_HEADER, "")
        if not hmac.compare_digest(received.encode(), self.secret.encode()):
            raise WebhookSignatureError("Invalid Parcelow webhook secret")

    def decode(self, payload: dict) -> Optional[PaymentEvent]:
        return decode_parcelow(payload)

    def settlement(self, order: Order, event: PaymentEvent) -> SettlementAmounts:
        if event.amounts is not None:
            return event.amounts
        # Callback without amounts: settle at the order's own total
        return SettlementAmounts(
            gross_usd=order.total_price_usd,
            base_usd=order.total_price_usd,
            fee_usd=0,
        )


# =============================================================================
# WISE
# =============================================================================

class WiseReconciler(WebhookReconciler):
    provider = Provider.WISE

    def verify_signature(self, body: bytes, headers: Mapping[str, str]) -> None:
        if not self.secret:
            self.logger.warning("webhook_signature_not_verified")
            return
        received = headers.get(WISE_SIGNATURE_HEADER)
        if not received:
            raise WebhookSignatureError("Missing Wise webhook signature")
        expected = hmac.new(self.secret.encode(), body, hashlib.sha256).hexdigest()
        if not hmac.compare_digest(received.strip().lower(), expected):
            raise WebhookSignatureError("Invalid Wise webhook signature")

    def decode(self, payload: dict) -> Optional[PaymentEvent]:
        return decode_wise(payload)

    def settlement(self, order: Order, event: PaymentEvent) -> SettlementAmounts:
        # The quote targets the order total, so the platform receives it in full
        return SettlementAmounts(
            gross_usd=order.total_price_usd,
            base_usd=order.total_price_usd,
            fee_usd=0,
        )

    async def on_event(self, order: Order, event: PaymentEvent) -> None:
        try:
            await self.store.update_wise_transfer(
                event.external_id,
                event.raw_status or "",
                event.raw.get("data", {}),
            )
        except Exception as e:
            self.logger.error(
                "wise_transfer_ledger_update_failed",
                transfer_id=event.external_id,
                error=str(e),
            )
