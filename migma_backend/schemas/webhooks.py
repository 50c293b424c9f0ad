"""
Inbound webhook payloads
========================
Provider-specific decoders turn raw callback JSON into one normalized
`PaymentEvent`; the reconciler never looks at provider JSON directly.

Parcelow: {"event": "event_order_paid", "order"|"data": {...}}
Wise:     {"event_type": "transfers#state-change", "data": {...}}
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as PydanticValidationError

from migma_backend.errors import ValidationError
from migma_backend.schemas.orders import (
    CENT,
    PaymentStatus,
    Provider,
    from_minor_units,
)


# =============================================================================
# STATUS MAPPING
# =============================================================================

# None = payment_status unchanged, only mirror fields are written
PARCELOW_EVENT_STATUS: dict[str, Optional[PaymentStatus]] = {
    "order_paid": PaymentStatus.COMPLETED,
    "order_confirmed": None,
    "order_declined": PaymentStatus.FAILED,
    "order_canceled": PaymentStatus.CANCELLED,
    "order_expired": PaymentStatus.CANCELLED,
    "order_waiting": None,
    "order_waiting_payment": None,
    "order_waiting_docs": None,
}

WISE_STATE_STATUS: dict[str, Optional[PaymentStatus]] = {
    "incoming_payment_waiting": None,
    "processing": None,
    "funds_converted": None,
    "outgoing_payment_sent": PaymentStatus.COMPLETED,
    "bounced_back": PaymentStatus.FAILED,
    "funds_refunded": PaymentStatus.FAILED,
    "charged_back": PaymentStatus.FAILED,
    "cancelled": PaymentStatus.CANCELLED,
}

PARCELOW_PAID_EVENT = "order_paid"
WISE_PAID_STATE = "outgoing_payment_sent"
WISE_STATE_CHANGE = "transfers#state-change"


def normalize_parcelow_event(event: str) -> str:
    """`event_order_paid` -> `order_paid`."""
    event = (event or "").strip().lower()
    return event[len("event_"):] if event.startswith("event_") else event


def map_parcelow_event(event: str) -> Optional[PaymentStatus]:
    return PARCELOW_EVENT_STATUS.get(normalize_parcelow_event(event))


def map_wise_state(state: str) -> Optional[PaymentStatus]:
    return WISE_STATE_STATUS.get((state or "").strip().lower())


# =============================================================================
# PARCELOW PAYLOAD
# =============================================================================

class ParcelowPayment(BaseModel):
    model_config = ConfigDict(extra="allow")

    total_usd: Optional[Decimal] = None
    total_brl: Optional[Decimal] = None
    installments: Optional[int] = None


class ParcelowOrderData(BaseModel):
    """Order object of a Parcelow callback. Amounts are minor units."""

    model_config = ConfigDict(extra="allow")

    id: Union[int, str]
    reference: Optional[str] = None
    status: Optional[int] = None
    status_text: Optional[str] = None
    order_amount: Optional[Decimal] = None
    total_usd: Optional[Decimal] = None
    total_brl: Optional[Decimal] = None
    installments: Optional[int] = 1
    payments: list[ParcelowPayment] = Field(default_factory=list)
    order_date: Optional[str] = None


class ParcelowWebhook(BaseModel):
    provider: Literal["parcelow"] = "parcelow"
    event: str
    order: ParcelowOrderData

    @model_validator(mode="before")
    @classmethod
    def _unwrap_order(cls, values: Any) -> Any:
        # Parcelow sends the order under "order"; older payloads use "data"
        if isinstance(values, dict) and "order" not in values and "data" in values:
            values = {**values, "order": values["data"]}
        return values


# =============================================================================
# WISE PAYLOAD
# =============================================================================

class WiseEventData(BaseModel):
    model_config = ConfigDict(extra="allow")

    resource: Any = None
    current_state: Optional[str] = None
    previous_state: Optional[str] = None
    occurred_at: Optional[str] = None
    transfer_id: Optional[Union[int, str]] = None
    profile_id: Optional[Union[int, str]] = None

    @property
    def resolved_transfer_id(self) -> Optional[str]:
        if self.transfer_id is not None:
            return str(self.transfer_id)
        if isinstance(self.resource, dict) and self.resource.get("id") is not None:
            return str(self.resource["id"])
        return None


class WiseWebhook(BaseModel):
    provider: Literal["wise"] = "wise"
    event_type: str
    subscription_id: Optional[str] = None
    data: WiseEventData


ProviderWebhook = Union[ParcelowWebhook, WiseWebhook]


# =============================================================================
# NORMALIZED EVENT
# =============================================================================

class SettlementAmounts(BaseModel):
    """Final amounts of a paid order, in the base currency."""

    gross_usd: Decimal
    base_usd: Decimal
    fee_usd: Decimal
    installments: int = 1
    total_brl: Optional[Decimal] = None
    paid_total_brl: Optional[Decimal] = None

    def to_metadata(self, payment_method: str, completed_at: datetime) -> dict:
        metadata = {
            "payment_method": payment_method,
            "currency": "USD",
            "total_usd": float(self.gross_usd),
            "order_amount": float(self.base_usd),
            "fee_amount": float(self.fee_usd),
            "installments": self.installments,
            "completed_at": completed_at.isoformat(),
        }
        if self.total_brl is not None:
            metadata["total_brl"] = float(self.total_brl)
        if self.paid_total_brl is not None:
            metadata["paid_total_brl"] = float(self.paid_total_brl)
        return metadata


class PaymentEvent(BaseModel):
    """One provider callback, normalized."""

    provider: Provider
    event_type: str
    external_id: str
    reference: Optional[str] = None
    raw_status: Optional[str] = None
    status_code: Optional[int] = None
    target_status: Optional[PaymentStatus] = None
    amounts: Optional[SettlementAmounts] = None
    raw: dict = Field(default_factory=dict)

    @property
    def is_payment_completed(self) -> bool:
        return self.target_status == PaymentStatus.COMPLETED


def parcelow_settlement(order: ParcelowOrderData) -> Optional[SettlementAmounts]:
    """
    Gross = what the client actually paid in USD terms. With an installment
    plan the first payment carries the financed total, which differs from the
    order's pre-installment `total_usd`.
    """
    if order.total_usd is None:
        return None

    installments = order.installments or 1
    gross_cents = order.total_usd
    paid_total_brl = None
    first = order.payments[0] if order.payments else None
    if installments > 1 and first is not None:
        if first.total_usd is not None:
            gross_cents = first.total_usd
        elif first.total_brl is not None and order.total_brl:
            gross_cents = order.total_usd * first.total_brl / order.total_brl
        if first.total_brl is not None:
            paid_total_brl = from_minor_units(first.total_brl)

    gross = from_minor_units(gross_cents)
    base = from_minor_units(order.order_amount) if order.order_amount is not None else gross
    fee = max(gross - base, Decimal("0")).quantize(CENT)

    return SettlementAmounts(
        gross_usd=gross,
        base_usd=base,
        fee_usd=fee,
        installments=installments,
        total_brl=from_minor_units(order.total_brl) if order.total_brl is not None else None,
        paid_total_brl=paid_total_brl,
    )


# =============================================================================
# DECODERS
# =============================================================================

def decode_parcelow(payload: dict) -> PaymentEvent:
    try:
        webhook = ParcelowWebhook.model_validate(payload)
    except PydanticValidationError as exc:
        raise ValidationError(f"Malformed Parcelow webhook: {exc.error_count()} invalid field(s)") from exc

    event_type = normalize_parcelow_event(webhook.event)
    target = map_parcelow_event(event_type)
    order = webhook.order
    return PaymentEvent(
        provider=Provider.PARCELOW,
        event_type=event_type,
        external_id=str(order.id),
        reference=order.reference,
        raw_status=order.status_text,
        status_code=order.status,
        target_status=target,
        amounts=parcelow_settlement(order) if target == PaymentStatus.COMPLETED else None,
        raw=payload,
    )


def decode_wise(payload: dict) -> Optional[PaymentEvent]:
    """None for events other than a transfer state change."""
    try:
        webhook = WiseWebhook.model_validate(payload)
    except PydanticValidationError as exc:
        raise ValidationError(f"Malformed Wise webhook: {exc.error_count()} invalid field(s)") from exc

    transfer_id = webhook.data.resolved_transfer_id
    if webhook.event_type != WISE_STATE_CHANGE or not transfer_id:
        return None

    state = (webhook.data.current_state or "").strip().lower()
    return PaymentEvent(
        provider=Provider.WISE,
        event_type=webhook.event_type,
        external_id=transfer_id,
        raw_status=state,
        target_status=map_wise_state(state),
        raw=payload,
    )
