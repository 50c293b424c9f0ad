"""Tests for the post-payment side-effect fan-out and the manual approval replay."""

import asyncio
from datetime import datetime

import pytest

from conftest import ORDER_ID, FakeInvoker, build_order
from migma_backend.errors import ValidationError
from migma_backend.pipeline import ManualApprovalHandler, ReconcileOutcome, SideEffectFanout
from migma_backend.schemas.orders import PaymentStatus
from migma_backend.services.directory import StaticDirectory
from migma_backend.services.functions import (
    ADMIN_NOTIFICATION_EMAIL,
    ANNEX_PDF,
    CLIENT_CONFIRMATION_EMAIL,
    CONTRACT_PDF,
    INVOICE_PDF,
    SELLER_NOTIFICATION_EMAIL,
)
from migma_backend.storage import InMemoryOrderStore, PaymentRecord

AUDIT = {"provider": "parcelow", "event_type": "order_paid"}
APPROVED_AT = datetime(2026, 3, 2, 14, 30)


class RecordingNotifier:
    def __init__(self):
        self.calls = []

    async def notify_order_completed(self, order, product_name=None):
        self.calls.append((order.id, product_name))


class CountingDirectory(StaticDirectory):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.admin_lookups = 0

    async def list_admin_emails(self):
        self.admin_lookups += 1
        return await super().list_admin_emails()


@pytest.fixture(autouse=True)
async def drain_side_effects(queue):
    yield
    await queue.drain()


class TestCriticalSteps:
    async def test_marks_request_and_ledger_paid_and_records_funnel_event(self, fanout, seeded_store):
        await fanout.run(build_order(), payment_method="parcelow", audit=AUDIT)

        assert seeded_store.service_request_status("sr-1") == "paid"
        record = next(iter(seeded_store.payments.values()))
        assert record.status == "paid"
        assert record.raw_webhook_log == AUDIT

        event = seeded_store.funnel_events[0]
        assert event.event_type == "payment_completed"
        assert event.product_slug == "initial-f1"
        assert event.metadata["payment_method"] == "parcelow"
        assert event.metadata["total_amount"] == 580.0

    async def test_failed_step_does_not_stop_the_next(self, directory, queue, invoker):
        class FlakyStore(InMemoryOrderStore):
            async def mark_service_request_paid(self, service_request_id):
                raise RuntimeError("connection reset")

        store = FlakyStore()
        await store.add_payment_record(PaymentRecord(service_request_id="sr-1", external_payment_id=ORDER_ID))
        fanout = SideEffectFanout(store, directory, queue, invoker=invoker)

        submitted = await fanout.run(build_order(), payment_method="parcelow", audit=AUDIT)

        assert next(iter(store.payments.values())).status == "paid"
        assert len(store.funnel_events) == 1
        assert "client_email" in submitted

    async def test_direct_sale_records_no_funnel_event(self, fanout, seeded_store, queue, invoker):
        submitted = await fanout.run(build_order(seller_id=None), payment_method="wise", audit=AUDIT)
        await queue.drain()

        assert seeded_store.funnel_events == []
        assert "seller_email" not in submitted
        admin_bodies = [body for name, body in invoker.calls if name == ADMIN_NOTIFICATION_EMAIL]
        assert {body["sellerName"] for body in admin_bodies} == {"Direct Sale"}


class TestBestEffort:
    async def test_every_side_effect_is_submitted(self, fanout, seeded_store, queue, invoker):
        submitted = await fanout.run(build_order(), payment_method="parcelow", audit=AUDIT)
        await queue.drain()

        assert submitted == [
            "contract_pdf",
            "annex_pdf",
            "invoice_pdf",
            "client_email",
            "seller_email",
            "admin_emails",
        ]
        assert invoker.count(CONTRACT_PDF) == 1
        assert invoker.count(ANNEX_PDF) == 1
        assert invoker.count(INVOICE_PDF) == 1
        assert invoker.count(SELLER_NOTIFICATION_EMAIL) == 1
        assert invoker.count(ADMIN_NOTIFICATION_EMAIL) == 2
        assert queue.failed == 0

    async def test_client_email_payload(self, fanout, seeded_store, queue, invoker):
        order = build_order(payment_metadata={"total_usd": 600.0, "currency": "USD"})
        await fanout.run(order, payment_method="parcelow", audit=AUDIT)
        await queue.drain()

        body = next(body for name, body in invoker.calls if name == CLIENT_CONFIRMATION_EMAIL)
        assert body == {
            "clientName": "Ana Souza",
            "clientEmail": "ana@example.com",
            "orderNumber": "MIG-1001",
            "productSlug": "initial-f1",
            "totalAmount": 580.0,
            "paymentMethod": "parcelow",
            "currency": "USD",
            "finalAmount": 600.0,
        }

    async def test_consultation_product_skips_contract(self, store, directory, queue, invoker):
        fanout = SideEffectFanout(
            store, directory, queue, invoker=invoker, consultation_product_slug="consultation-common"
        )
        await fanout.run(build_order(product_slug="consultation-common"), payment_method="zelle", audit=AUDIT)
        await queue.drain()

        assert invoker.count(CONTRACT_PDF) == 0
        assert invoker.count(ANNEX_PDF) == 1

    async def test_one_failure_does_not_block_the_others(self, store, directory, queue):
        invoker = FakeInvoker(failing={INVOICE_PDF})
        fanout = SideEffectFanout(store, directory, queue, invoker=invoker)

        await fanout.run(build_order(), payment_method="parcelow", audit=AUDIT)
        await queue.drain()

        assert invoker.count(CLIENT_CONFIRMATION_EMAIL) == 1
        assert invoker.count(ANNEX_PDF) == 1
        assert queue.failed == 1

    async def test_failed_admin_email_still_reaches_other_admins(self, store, directory, queue):
        invoker = FakeInvoker()
        fanout = SideEffectFanout(store, directory, queue, invoker=invoker)
        recorded = invoker.invoke

        async def invoke(name, body):
            if body.get("adminEmail") == "ops@migma.com":
                await recorded(name, body)
                raise RuntimeError("smtp down")
            return await recorded(name, body)

        invoker.invoke = invoke
        await fanout.run(build_order(), payment_method="parcelow", audit=AUDIT)
        await queue.drain()

        admin_targets = [body["adminEmail"] for name, body in invoker.calls if name == ADMIN_NOTIFICATION_EMAIL]
        assert sorted(admin_targets) == ["finance@migma.com", "ops@migma.com"]

    async def test_admins_are_looked_up_per_payment(self, store, queue, invoker):
        directory = CountingDirectory(admin_emails=["ops@migma.com"])
        fanout = SideEffectFanout(store, directory, queue, invoker=invoker)

        await fanout.run(build_order(), payment_method="parcelow", audit=AUDIT)
        await fanout.run(build_order(id="other", order_number="MIG-2"), payment_method="parcelow", audit=AUDIT)
        await queue.drain()

        assert directory.admin_lookups == 2

    async def test_client_webhook_gets_product_name(self, seeded_store, directory, queue):
        notifier = RecordingNotifier()
        fanout = SideEffectFanout(seeded_store, directory, queue, notifier=notifier)

        submitted = await fanout.run(build_order(), payment_method="parcelow", audit=AUDIT)
        await queue.drain()

        assert submitted == ["client_webhook"]
        assert notifier.calls == [(ORDER_ID, "F1 Initial Visa")]


class TestManualApproval:
    @pytest.fixture
    async def approved_store(self, seeded_store):
        await seeded_store.save(build_order(payment_method="zelle", payment_status=PaymentStatus.COMPLETED))
        return seeded_store

    async def test_first_notify_runs_the_fanout(self, fanout, approved_store, queue, invoker):
        handler = ManualApprovalHandler(approved_store, fanout, clock=lambda: APPROVED_AT)

        result = await handler.notify(ORDER_ID)
        await queue.drain()

        assert result.outcome == ReconcileOutcome.COMPLETED
        assert "client_email" in result.side_effects
        assert invoker.count(CLIENT_CONFIRMATION_EMAIL) == 1
        order = await approved_store.get(ORDER_ID)
        assert order.payment_metadata["fanout_dispatched_at"] == APPROVED_AT.isoformat()

    async def test_repeated_notify_is_a_duplicate(self, fanout, approved_store, queue, invoker):
        handler = ManualApprovalHandler(approved_store, fanout)

        first = await handler.notify(ORDER_ID)
        second = await handler.notify(ORDER_ID)
        await queue.drain()

        assert first.outcome == ReconcileOutcome.COMPLETED
        assert second.outcome == ReconcileOutcome.DUPLICATE
        assert second.side_effects == []
        assert len(approved_store.funnel_events) == 1
        assert invoker.count(CLIENT_CONFIRMATION_EMAIL) == 1

    async def test_concurrent_notifies_fan_out_once(self, fanout, approved_store, queue, invoker):
        handler = ManualApprovalHandler(approved_store, fanout)

        results = await asyncio.gather(*(handler.notify(ORDER_ID) for _ in range(5)))
        await queue.drain()

        outcomes = sorted(result.outcome.value for result in results)
        assert outcomes == ["completed"] + ["duplicate"] * 4
        assert len(approved_store.funnel_events) == 1
        assert invoker.count(CLIENT_CONFIRMATION_EMAIL) == 1

    async def test_pending_order_is_not_claimed(self, fanout, seeded_store):
        await seeded_store.save(build_order(payment_method="zelle"))
        handler = ManualApprovalHandler(seeded_store, fanout)

        with pytest.raises(ValidationError):
            await handler.notify(ORDER_ID)

        order = await seeded_store.get(ORDER_ID)
        assert "fanout_dispatched_at" not in order.payment_metadata
