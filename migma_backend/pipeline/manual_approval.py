# pipeline/manual_approval.py
# ============================================================================
# MANUAL (ZELLE) APPROVAL
# ============================================================================
# Zelle payments are approved by an admin outside any provider callback.
# Once the order is completed by hand, this replays the same critical
# updates and fan-out a provider completion would have triggered.
# The fan-out runs once per order: the first caller to stamp
# payment_metadata.fanout_dispatched_at wins, later calls are duplicates.
# ============================================================================

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

import structlog

from migma_backend.errors import OrderNotFoundError, ValidationError
from migma_backend.pipeline.fanout import SideEffectFanout
from migma_backend.pipeline.reconciler import ReconcileOutcome
from migma_backend.storage.order_store import IOrderStore

ZELLE = "zelle"

logger = structlog.get_logger().bind(component="manual_approval")


@dataclass
class ManualApprovalResult:
    order_id: str
    outcome: ReconcileOutcome
    side_effects: list[str] = field(default_factory=list)


class ManualApprovalHandler:
    def __init__(
        self,
        store: IOrderStore,
        fanout: SideEffectFanout,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.store = store
        self.fanout = fanout
        self.clock = clock

    async def notify(self, order_id: str) -> ManualApprovalResult:
        order = await self.store.get(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        if order.payment_method != ZELLE:
            raise ValidationError(f"Order {order.order_number} is not a Zelle payment")
        if not order.is_completed:
            raise ValidationError(f"Order {order.order_number} has not been approved yet")

        log = logger.bind(order_id=order.id, order_number=order.order_number)
        now = self.clock()
        if not await self.store.claim_fanout(order.id, now):
            log.info("zelle_fanout_already_dispatched")
            return ManualApprovalResult(order_id=order.id, outcome=ReconcileOutcome.DUPLICATE)

        log.info("zelle_approval_fanout")
        audit = {
            "provider": ZELLE,
            "event_type": "manual_approval",
            "received_at": now.isoformat(),
        }
        side_effects = await self.fanout.run(order, payment_method=ZELLE, audit=audit)
        return ManualApprovalResult(
            order_id=order.id, outcome=ReconcileOutcome.COMPLETED, side_effects=side_effects
        )
