"""
Order domain models
===================
The visa order aggregate, the related read models (client profile, seller,
product) and the money helpers shared by checkout and reconciliation.
"""

import re
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, computed_field

CENT = Decimal("0.01")


# =============================================================================
# ENUMS
# =============================================================================

class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class Provider(str, Enum):
    PARCELOW = "parcelow"
    WISE = "wise"


class CalculationType(str, Enum):
    BASE_PLUS_UNITS = "base_plus_units"
    UNITS_ONLY = "units_only"


# =============================================================================
# MONEY
# =============================================================================

def to_minor_units(amount: Any) -> int:
    """Base-currency amount -> integer cents, half-up."""
    value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    return int((value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(cents: Any) -> Decimal:
    value = cents if isinstance(cents, Decimal) else Decimal(str(cents))
    return (value / 100).quantize(CENT, rounding=ROUND_HALF_UP)


def clean_document_number(raw: Optional[str]) -> str:
    """Strip punctuation from a CPF/CNPJ."""
    return re.sub(r"\D", "", raw or "")


# =============================================================================
# PROVIDER LINKAGE
# =============================================================================

class ProviderLinkage(BaseModel):
    """Identifiers persisted once a provider checkout session exists."""

    provider: Provider
    checkout_url: str
    status_text: str
    status_code: Optional[int] = None

    # Parcelow
    parcelow_order_id: Optional[str] = None

    # Wise
    wise_transfer_id: Optional[str] = None
    wise_quote_id: Optional[str] = None
    wise_recipient_id: Optional[str] = None


# =============================================================================
# ORDER AGGREGATE
# =============================================================================

class Order(BaseModel):
    """A client purchase (row of `visa_orders`)."""

    id: str
    order_number: str
    product_slug: str = ""

    total_price_usd: Decimal
    base_price_usd: Optional[Decimal] = None
    extra_unit_price_usd: Optional[Decimal] = None
    extra_units: int = 0
    calculation_type: CalculationType = CalculationType.BASE_PLUS_UNITS

    payment_method: Optional[str] = None
    payment_status: PaymentStatus = PaymentStatus.PENDING
    payment_metadata: dict = Field(default_factory=dict)

    service_request_id: Optional[str] = None
    seller_id: Optional[str] = None

    client_name: str = ""
    client_email: str = ""
    client_whatsapp: Optional[str] = None
    client_cpf: Optional[str] = None
    client_birthdate: Optional[str] = None
    client_cep: Optional[str] = None
    client_address_street: Optional[str] = None
    client_address_number: Optional[str] = None
    client_address_neighborhood: Optional[str] = None
    client_address_city: Optional[str] = None
    client_address_state: Optional[str] = None
    client_address_complement: Optional[str] = None
    dependent_names: list[str] = Field(default_factory=list)

    # Parcelow mirror
    parcelow_order_id: Optional[str] = None
    parcelow_checkout_url: Optional[str] = None
    parcelow_status: Optional[str] = None
    parcelow_status_code: Optional[int] = None

    # Wise mirror
    wise_transfer_id: Optional[str] = None
    wise_quote_id: Optional[str] = None
    wise_recipient_id: Optional[str] = None
    wise_payment_status: Optional[str] = None
    wise_checkout_url: Optional[str] = None

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @computed_field
    @property
    def linked_provider(self) -> Optional[Provider]:
        if self.parcelow_order_id:
            return Provider.PARCELOW
        if self.wise_transfer_id:
            return Provider.WISE
        return None

    @property
    def is_completed(self) -> bool:
        return self.payment_status == PaymentStatus.COMPLETED

    @property
    def amount_in_cents(self) -> int:
        return to_minor_units(self.total_price_usd)

    @property
    def named_dependents(self) -> list[str]:
        return [name.strip() for name in self.dependent_names if name and name.strip()]


class ClientProfile(BaseModel):
    """Client record linked through service_requests -> clients."""

    document_number: Optional[str] = None
    date_of_birth: Optional[str] = None
    postal_code: Optional[str] = None
    address_line: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    phone: Optional[str] = None


class Seller(BaseModel):
    seller_id: str
    full_name: str = ""
    email: Optional[str] = None


class Product(BaseModel):
    slug: str
    name: str
