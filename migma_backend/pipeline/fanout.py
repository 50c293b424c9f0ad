"""
Side-Effect Fan-out
===================
Runs once per order, right after the order was persisted as completed.

Critical (awaited in order, each failure logged, payment is never rolled back):
- service request -> paid
- payment ledger record -> paid, with the webhook snapshot as audit trail
- seller funnel event (commission attribution)

Best-effort (submitted to the BackgroundTaskQueue, independent of each other):
- contract PDF (not for the consultation product), annex PDF, invoice PDF
- client confirmation email, seller email, one email per admin
- client automation webhook (main + dependents)
"""

import asyncio
from typing import Optional

import structlog

from migma_backend.errors import SideEffectError
from migma_backend.pipeline.task_queue import BackgroundTaskQueue
from migma_backend.schemas.orders import Order
from migma_backend.services.directory import Directory
from migma_backend.services.functions import (
    ADMIN_NOTIFICATION_EMAIL,
    ANNEX_PDF,
    CLIENT_CONFIRMATION_EMAIL,
    CONTRACT_PDF,
    INVOICE_PDF,
    SELLER_NOTIFICATION_EMAIL,
    FunctionInvoker,
)
from migma_backend.services.notifications import ClientWebhookNotifier
from migma_backend.storage.order_store import FunnelEvent, IOrderStore

logger = structlog.get_logger().bind(component="fanout")


def email_payload(order: Order, payment_method: str) -> dict:
    metadata = order.payment_metadata or {}
    final_amount = metadata.get("total_usd", float(order.total_price_usd))
    return {
        "clientName": order.client_name,
        "clientEmail": order.client_email,
        "orderNumber": order.order_number,
        "productSlug": order.product_slug,
        "totalAmount": float(order.total_price_usd),
        "paymentMethod": payment_method,
        "currency": metadata.get("currency", "USD"),
        "finalAmount": final_amount,
    }


class SideEffectFanout:
    def __init__(
        self,
        store: IOrderStore,
        directory: Directory,
        queue: BackgroundTaskQueue,
        invoker: Optional[FunctionInvoker] = None,
        notifier: Optional[ClientWebhookNotifier] = None,
        consultation_product_slug: str = "consultation-common",
    ):
        self.store = store
        self.directory = directory
        self.queue = queue
        self.invoker = invoker
        self.notifier = notifier
        self.consultation_product_slug = consultation_product_slug

    async def run(self, order: Order, *, payment_method: str, audit: dict) -> list[str]:
        """Critical updates, then best-effort submissions. Returns submitted task names."""
        log = logger.bind(order_id=order.id, order_number=order.order_number)
        await self._run_critical(order, payment_method, audit, log)
        submitted = self._schedule_best_effort(order, payment_method, log)
        log.info("fanout_scheduled", tasks=submitted)
        return submitted

    # =========================================================================
    # CRITICAL
    # =========================================================================

    async def _run_critical(self, order: Order, payment_method: str, audit: dict, log):
        if order.service_request_id:
            try:
                if await self.store.mark_service_request_paid(order.service_request_id):
                    log.info("service_request_paid", service_request_id=order.service_request_id)
                else:
                    log.warning("service_request_missing", service_request_id=order.service_request_id)
            except Exception as e:
                log.error("critical_step_failed", step="service_request", error=str(e))

            try:
                updated = await self.store.mark_payment_record_paid(
                    order.service_request_id, order.id, audit
                )
                if updated:
                    log.info("payment_record_paid", service_request_id=order.service_request_id)
            except Exception as e:
                log.error("critical_step_failed", step="payment_record", error=str(e))

        if order.seller_id:
            try:
                await self.store.record_funnel_event(
                    FunnelEvent(
                        seller_id=order.seller_id,
                        product_slug=order.product_slug,
                        session_id=f"order_{order.id}",
                        metadata={
                            "order_id": order.id,
                            "order_number": order.order_number,
                            "payment_method": payment_method,
                            "total_amount": float(order.total_price_usd),
                        },
                    )
                )
                log.info("funnel_event_recorded", seller_id=order.seller_id)
            except Exception as e:
                log.error("critical_step_failed", step="funnel_event", error=str(e))

    # =========================================================================
    # BEST EFFORT
    # =========================================================================

    def _schedule_best_effort(self, order: Order, payment_method: str, log) -> list[str]:
        context = {"order_id": order.id, "order_number": order.order_number}
        submitted: list[str] = []

        def submit(name: str, coro):
            self.queue.submit(name, coro, **context)
            submitted.append(name)

        if self.invoker is None:
            log.warning("functions_not_configured", skipped="pdf_and_email")
        else:
            if order.product_slug != self.consultation_product_slug:
                submit("contract_pdf", self.invoker.invoke(CONTRACT_PDF, {"order_id": order.id}))
            submit("annex_pdf", self.invoker.invoke(ANNEX_PDF, {"order_id": order.id}))
            submit("invoice_pdf", self.invoker.invoke(INVOICE_PDF, {"order_id": order.id}))
            submit(
                "client_email",
                self.invoker.invoke(CLIENT_CONFIRMATION_EMAIL, email_payload(order, payment_method)),
            )
            if order.seller_id:
                submit("seller_email", self._notify_seller(order, payment_method))
            submit("admin_emails", self._notify_admins(order, payment_method, log))

        if self.notifier is not None:
            submit("client_webhook", self._notify_client_webhook(order))

        return submitted

    async def _seller_name(self, order: Order) -> str:
        if not order.seller_id:
            return "Direct Sale"
        seller = await self.directory.get_seller(order.seller_id)
        return seller.full_name if seller and seller.full_name else order.seller_id

    async def _notify_seller(self, order: Order, payment_method: str) -> dict:
        seller = await self.directory.get_seller(order.seller_id)
        if seller is None or not seller.email:
            raise SideEffectError(f"seller {order.seller_id} has no email on file")
        return await self.invoker.invoke(
            SELLER_NOTIFICATION_EMAIL,
            {
                **email_payload(order, payment_method),
                "sellerEmail": seller.email,
                "sellerName": seller.full_name or seller.seller_id,
            },
        )

    async def _notify_admins(self, order: Order, payment_method: str, log) -> int:
        admins = await self.directory.list_admin_emails()
        if not admins:
            log.warning("no_admins_to_notify")
            return 0

        body = {**email_payload(order, payment_method), "sellerName": await self._seller_name(order)}
        results = await asyncio.gather(
            *(self.invoker.invoke(ADMIN_NOTIFICATION_EMAIL, {**body, "adminEmail": email}) for email in admins),
            return_exceptions=True,
        )
        sent = 0
        for email, result in zip(admins, results):
            if isinstance(result, Exception):
                log.error("admin_email_failed", admin_email=email, error=str(result))
            else:
                sent += 1
        log.info("admin_emails_sent", sent=sent, total=len(admins))
        return sent

    async def _notify_client_webhook(self, order: Order):
        product = await self.store.get_product(order.product_slug) if order.product_slug else None
        return await self.notifier.notify_order_completed(
            order, product.name if product else None
        )
