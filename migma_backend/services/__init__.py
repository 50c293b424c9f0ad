# services/__init__.py
# ============================================================================
# MIGMA PAYMENTS - SERVICES MODULE
# ============================================================================
# Edge-function invoker, admin/seller directory, client webhook notifier
# ============================================================================

from migma_backend.services.directory import Directory, StaticDirectory
from migma_backend.services.functions import FunctionInvoker
from migma_backend.services.notifications import (
    ClientWebhookNotifier,
    NotificationSummary,
    build_dependent_payloads,
    build_main_payload,
)

__all__ = [
    "Directory",
    "StaticDirectory",
    "FunctionInvoker",
    "ClientWebhookNotifier",
    "NotificationSummary",
    "build_dependent_payloads",
    "build_main_payload",
]
