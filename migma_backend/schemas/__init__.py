# schemas/__init__.py
# ============================================================================
# MIGMA PAYMENTS - DOMAIN SCHEMAS
# ============================================================================
# Order aggregate and the normalized inbound payment event
# ============================================================================

from migma_backend.schemas.orders import (
    CalculationType,
    ClientProfile,
    Order,
    PaymentStatus,
    Product,
    Provider,
    ProviderLinkage,
    Seller,
    clean_document_number,
    from_minor_units,
    to_minor_units,
)

from migma_backend.schemas.webhooks import (
    PaymentEvent,
    SettlementAmounts,
    decode_parcelow,
    decode_wise,
    map_parcelow_event,
    map_wise_state,
)

__all__ = [
    # Orders
    "CalculationType",
    "ClientProfile",
    "Order",
    "PaymentStatus",
    "Product",
    "Provider",
    "ProviderLinkage",
    "Seller",
    "clean_document_number",
    "from_minor_units",
    "to_minor_units",
    # Webhooks
    "PaymentEvent",
    "SettlementAmounts",
    "decode_parcelow",
    "decode_wise",
    "map_parcelow_event",
    "map_wise_state",
]
