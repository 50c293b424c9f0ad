"""
Client Webhook Notifier
=======================
Delivers completed-order payloads to the external automation endpoint
(n8n): one payload for the main client plus one per named dependent, all
dispatched concurrently.

- 30s per-attempt timeout (asyncio.timeout), a timeout counts as retryable
- Retries only 5xx / 429 / transport errors, never other 4xx
- Response bodies read at most 10KB for logging
"""

import asyncio
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Optional

import httpx
import structlog

from migma_backend.config import NotificationConfig
from migma_backend.errors import NotificationDeliveryError, RetryExhaustedError
from migma_backend.retry import NOTIFICATION_BACKOFF, RetryDecision, RetryPolicy
from migma_backend.schemas.orders import CalculationType, Order

logger = structlog.get_logger().bind(component="client_webhook")

TRUNCATED_MARKER = "...[truncated]"

GROUPED_SERVICE_NAMES = (
    ("initial-", "F1 Initial"),
    ("cos-", "COS & Transfer"),
    ("transfer-", "COS & Transfer"),
)


# =============================================================================
# PAYLOADS
# =============================================================================

def normalize_service_name(product_slug: str, product_name: Optional[str]) -> str:
    for prefix, grouped in GROUPED_SERVICE_NAMES:
        if product_slug.startswith(prefix):
            return grouped
    return product_name or product_slug


def _money(value: Optional[Decimal]) -> str:
    return f"{(value or Decimal('0')):.2f}"


def unit_service_price(order: Order) -> Decimal:
    """Price of one service unit, never multiplied by the unit count."""
    if order.calculation_type == CalculationType.UNITS_ONLY:
        return order.extra_unit_price_usd or Decimal("0")
    return order.base_price_usd or Decimal("0")


def build_main_payload(order: Order, product_name: Optional[str] = None) -> dict:
    return {
        "servico": normalize_service_name(order.product_slug, product_name),
        "plano_servico": order.product_slug,
        "nome_completo": order.client_name,
        "whatsapp": order.client_whatsapp or "",
        "email": order.client_email,
        "valor_servico": _money(unit_service_price(order)),
        "vendedor": order.seller_id or "",
        "quantidade_dependentes": len(order.dependent_names),
    }


def build_dependent_payloads(order: Order) -> list[dict]:
    return [
        {
            "nome_completo_cliente_principal": order.client_name,
            "nome_completo_dependente": name,
            "valor_servico": _money(order.extra_unit_price_usd),
        }
        for name in order.named_dependents
    ]


# =============================================================================
# RESULTS
# =============================================================================

@dataclass
class DeliveryResult:
    label: str
    success: bool
    status_code: Optional[int] = None
    attempts: int = 0
    duration_ms: float = 0.0
    response_excerpt: str = ""
    error: Optional[str] = None
    error_type: Optional[str] = None


@dataclass
class NotificationSummary:
    results: list[DeliveryResult] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def succeeded(self) -> int:
        return sum(1 for result in self.results if result.success)

    @property
    def main_succeeded(self) -> bool:
        return any(result.success for result in self.results if result.label == "main")


def classify_delivery_error(exc: BaseException) -> RetryDecision:
    if isinstance(exc, NotificationDeliveryError):
        if exc.http_status == 429 or exc.http_status >= 500:
            return RetryDecision.BACKOFF
        return RetryDecision.STOP
    if isinstance(exc, (httpx.TransportError, asyncio.TimeoutError)):
        return RetryDecision.BACKOFF
    return RetryDecision.STOP


async def read_capped(response: httpx.Response, limit: int) -> str:
    """Read at most `limit` bytes of a streamed body."""
    chunks: list[bytes] = []
    size = 0
    truncated = False
    async for chunk in response.aiter_bytes():
        remaining = limit - size
        if len(chunk) > remaining:
            chunks.append(chunk[:remaining])
            truncated = True
            break
        chunks.append(chunk)
        size += len(chunk)
    text = b"".join(chunks).decode("utf-8", errors="replace")
    return f"{text}{TRUNCATED_MARKER}" if truncated else text


# =============================================================================
# NOTIFIER
# =============================================================================

class ClientWebhookNotifier:
    def __init__(
        self,
        config: NotificationConfig,
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: Optional[Callable[[float], Any]] = None,
    ):
        self.config = config
        self._client = http_client or httpx.AsyncClient(timeout=config.timeout_seconds)
        self._owns_client = http_client is None
        self.retry_policy = RetryPolicy(
            max_retries=config.max_retries,
            backoff=NOTIFICATION_BACKOFF,
            name="client_webhook",
            **({"sleep": sleep} if sleep is not None else {}),
        )

    async def close(self):
        if self._owns_client:
            await self._client.aclose()

    async def notify_order_completed(
        self, order: Order, product_name: Optional[str] = None
    ) -> Optional[NotificationSummary]:
        """Send main + dependent payloads; None when no endpoint is configured."""
        log = logger.bind(order_id=order.id, order_number=order.order_number)
        if not self.config.webhook_url:
            log.error("client_webhook_url_missing")
            return None

        skipped = len(order.dependent_names) - len(order.named_dependents)
        if skipped:
            log.warning("blank_dependents_skipped", count=skipped)

        deliveries = [("main", build_main_payload(order, product_name))]
        deliveries += [
            (f"dependent_{index}", payload)
            for index, payload in enumerate(build_dependent_payloads(order), start=1)
        ]

        outcomes = await asyncio.gather(
            *(self._deliver(label, payload, log) for label, payload in deliveries),
            return_exceptions=True,
        )

        summary = NotificationSummary()
        for (label, _), outcome in zip(deliveries, outcomes):
            if isinstance(outcome, BaseException):
                log.error("client_webhook_unexpected_error", target=label, error=str(outcome))
                outcome = DeliveryResult(label=label, success=False, error=str(outcome))
            summary.results.append(outcome)

        log.info(
            "client_webhook_summary",
            succeeded=summary.succeeded,
            total=summary.total,
            dependents=len(deliveries) - 1,
        )
        return summary

    async def _deliver(self, label: str, payload: dict, log) -> DeliveryResult:
        started = time.monotonic()
        attempts = 0

        async def attempt(number: int) -> tuple[int, str]:
            nonlocal attempts
            attempts = number
            async with asyncio.timeout(self.config.timeout_seconds):
                async with self._client.stream(
                    "POST", self.config.webhook_url, json=payload, timeout=self.config.timeout_seconds
                ) as response:
                    body = await read_capped(response, self.config.max_logged_body_bytes)
            if response.status_code >= 400:
                raise NotificationDeliveryError(response.status_code, body)
            return response.status_code, body

        try:
            status_code, body = await self.retry_policy.execute(
                attempt, classify_delivery_error, log=log
            )
        except (NotificationDeliveryError, RetryExhaustedError, httpx.HTTPError, asyncio.TimeoutError) as e:
            # str() of httpx timeouts is empty; the type names the failure
            cause = getattr(e, "last_error", e)
            result = DeliveryResult(
                label=label,
                success=False,
                status_code=getattr(e, "http_status", None),
                attempts=attempts,
                duration_ms=(time.monotonic() - started) * 1000,
                response_excerpt=getattr(e, "body", "") or "",
                error=str(e),
                error_type=type(cause).__name__,
            )
            log.error(
                "client_webhook_failed",
                target=label,
                status=result.status_code,
                attempts=attempts,
                error=result.error,
                error_type=result.error_type,
                response=result.response_excerpt,
                payload=payload,
            )
            return result

        result = DeliveryResult(
            label=label,
            success=True,
            status_code=status_code,
            attempts=attempts,
            duration_ms=(time.monotonic() - started) * 1000,
            response_excerpt=body,
        )
        log.info(
            "client_webhook_delivered",
            target=label,
            status=status_code,
            attempts=attempts,
            duration_ms=round(result.duration_ms, 1),
        )
        return result
