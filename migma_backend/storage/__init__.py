# storage/__init__.py
# ============================================================================
# MIGMA PAYMENTS - STORAGE MODULE
# ============================================================================
# Order store interface, in-memory and Postgres implementations
# ============================================================================

from migma_backend.storage.order_store import (
    FunnelEvent,
    InMemoryOrderStore,
    IOrderStore,
    PaymentRecord,
    WiseTransferRecord,
)

__all__ = [
    "FunnelEvent",
    "InMemoryOrderStore",
    "IOrderStore",
    "PaymentRecord",
    "WiseTransferRecord",
]
