# gateways/__init__.py
# ============================================================================
# MIGMA PAYMENTS - PROVIDER CLIENTS
# ============================================================================

from migma_backend.gateways.base import AccessToken, ProviderClient, classify_provider_error
from migma_backend.gateways.parcelow import ParcelowClient
from migma_backend.gateways.wise import WiseClient, build_recipient_details

__all__ = [
    "AccessToken",
    "ProviderClient",
    "classify_provider_error",
    "ParcelowClient",
    "WiseClient",
    "build_recipient_details",
]
