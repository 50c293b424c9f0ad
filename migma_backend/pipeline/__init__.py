# pipeline/__init__.py
# ============================================================================
# MIGMA PAYMENTS - PAYMENT PIPELINE
# ============================================================================
# Webhook reconciliation, post-payment fan-out, background task queue
# ============================================================================

from migma_backend.pipeline.fanout import SideEffectFanout
from migma_backend.pipeline.manual_approval import ManualApprovalHandler, ManualApprovalResult
from migma_backend.pipeline.reconciler import (
    ParcelowReconciler,
    ReconcileOutcome,
    ReconcileResult,
    WebhookReconciler,
    WiseReconciler,
)
from migma_backend.pipeline.task_queue import BackgroundTaskQueue

__all__ = [
    "BackgroundTaskQueue",
    "ManualApprovalHandler",
    "ManualApprovalResult",
    "ParcelowReconciler",
    "ReconcileOutcome",
    "ReconcileResult",
    "SideEffectFanout",
    "WebhookReconciler",
    "WiseReconciler",
]
