"""Tests for money helpers and provider webhook decoding."""

from decimal import Decimal

import pytest

from migma_backend.errors import ValidationError
from migma_backend.schemas.orders import (
    PaymentStatus,
    Provider,
    clean_document_number,
    from_minor_units,
    to_minor_units,
)
from migma_backend.schemas.webhooks import (
    decode_parcelow,
    decode_wise,
    map_parcelow_event,
    map_wise_state,
)


class TestMoney:
    @pytest.mark.parametrize("total", ["0.01", "19.99", "580.00", "1234.56"])
    def test_minor_units_reproduce_the_total(self, total):
        cents = to_minor_units(Decimal(total))
        assert cents == round(Decimal(total) * 100)
        assert from_minor_units(cents) == Decimal(total)

    def test_half_cent_rounds_up(self):
        assert to_minor_units("10.005") == 1001

    def test_document_number_is_digits_only(self):
        assert clean_document_number("123.456.789-09") == "12345678909"
        assert clean_document_number(None) == ""


class TestStatusMapping:
    @pytest.mark.parametrize(
        "event, expected",
        [
            ("event_order_paid", PaymentStatus.COMPLETED),
            ("order_confirmed", None),
            ("event_order_declined", PaymentStatus.FAILED),
            ("event_order_canceled", PaymentStatus.CANCELLED),
            ("event_order_expired", PaymentStatus.CANCELLED),
            ("event_order_waiting_payment", None),
            ("event_something_new", None),
        ],
    )
    def test_parcelow_events(self, event, expected):
        assert map_parcelow_event(event) == expected

    @pytest.mark.parametrize(
        "state, expected",
        [
            ("outgoing_payment_sent", PaymentStatus.COMPLETED),
            ("funds_converted", None),
            ("bounced_back", PaymentStatus.FAILED),
            ("charged_back", PaymentStatus.FAILED),
            ("cancelled", PaymentStatus.CANCELLED),
        ],
    )
    def test_wise_states(self, state, expected):
        assert map_wise_state(state) == expected


class TestDecodeParcelow:
    def test_paid_event_with_fee(self):
        event = decode_parcelow({
            "event": "event_order_paid",
            "order": {
                "id": 4411,
                "reference": "MIG-1001",
                "status": 1,
                "status_text": "Paid",
                "order_amount": 58000,
                "total_usd": 60000,
                "total_brl": 330000,
            },
        })

        assert event.provider == Provider.PARCELOW
        assert event.event_type == "order_paid"
        assert event.external_id == "4411"
        assert event.reference == "MIG-1001"
        assert event.is_payment_completed
        assert event.amounts.gross_usd == Decimal("600.00")
        assert event.amounts.base_usd == Decimal("580.00")
        assert event.amounts.fee_usd == Decimal("20.00")

    def test_fee_is_never_negative(self):
        event = decode_parcelow({
            "event": "event_order_paid",
            "order": {"id": 4411, "status": 1, "order_amount": 58000, "total_usd": 57500},
        })

        assert event.amounts.fee_usd == Decimal("0.00")

    def test_installment_plan_uses_the_financed_total(self):
        event = decode_parcelow({
            "event": "event_order_paid",
            "data": {
                "id": 9,
                "order_amount": 58000,
                "total_usd": 60000,
                "total_brl": 330000,
                "installments": 6,
                "payments": [{"total_brl": 363000}],
            },
        })

        # 60000 * 363000 / 330000 = 66000 cents
        assert event.amounts.gross_usd == Decimal("660.00")
        assert event.amounts.fee_usd == Decimal("80.00")
        assert event.amounts.installments == 6
        assert event.amounts.paid_total_brl == Decimal("3630.00")

    def test_non_completion_carries_no_amounts(self):
        event = decode_parcelow({"event": "event_order_waiting", "order": {"id": 9, "total_usd": 100}})
        assert event.target_status is None
        assert event.amounts is None

    def test_malformed_payload(self):
        with pytest.raises(ValidationError):
            decode_parcelow({"event": "event_order_paid"})


class TestDecodeWise:
    def test_state_change(self):
        event = decode_wise({
            "event_type": "transfers#state-change",
            "data": {
                "resource": {"id": 5001, "type": "transfer"},
                "current_state": "outgoing_payment_sent",
                "previous_state": "funds_converted",
            },
        })

        assert event.provider == Provider.WISE
        assert event.external_id == "5001"
        assert event.raw_status == "outgoing_payment_sent"
        assert event.is_payment_completed

    def test_other_event_types_are_ignored(self):
        assert decode_wise({
            "event_type": "balances#credit",
            "data": {"resource": {"id": 1}},
        }) is None

    def test_missing_data(self):
        with pytest.raises(ValidationError):
            decode_wise({"event_type": "transfers#state-change"})
