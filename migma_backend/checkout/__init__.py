# checkout/__init__.py
# ============================================================================
# MIGMA PAYMENTS - CHECKOUT ORCHESTRATORS
# ============================================================================

from migma_backend.checkout.parcelow_checkout import (
    ParcelowCheckout,
    ParcelowCheckoutResult,
    SimulationResult,
)
from migma_backend.checkout.wise_checkout import WiseCheckout, WiseCheckoutResult

__all__ = [
    "ParcelowCheckout",
    "ParcelowCheckoutResult",
    "SimulationResult",
    "WiseCheckout",
    "WiseCheckoutResult",
]
