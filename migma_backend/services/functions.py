# services/functions.py
# ============================================================================
# FUNCTION INVOKER
# ============================================================================
# PDF rendering and transactional email live in separately deployed edge
# functions. They are opaque here: POST {base_url}/{name} with a JSON body,
# expect {"success": ..., "pdf_url"?: ...} or {"error": ...}.
# ============================================================================

from typing import Any, Optional

import httpx
import structlog

from migma_backend.config import FunctionsConfig
from migma_backend.errors import SideEffectError

CONTRACT_PDF = "generate-visa-contract-pdf"
ANNEX_PDF = "generate-annex-pdf"
INVOICE_PDF = "generate-invoice-pdf"
CLIENT_CONFIRMATION_EMAIL = "send-payment-confirmation-email"
SELLER_NOTIFICATION_EMAIL = "send-seller-payment-notification"
ADMIN_NOTIFICATION_EMAIL = "send-admin-payment-notification"


class FunctionInvoker:
    def __init__(
        self,
        config: FunctionsConfig,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout_seconds: float = 60.0,
    ):
        self.config = config
        self._client = http_client or httpx.AsyncClient(timeout=timeout_seconds)
        self._owns_client = http_client is None
        self._logger = structlog.get_logger().bind(component="function_invoker")

    async def close(self):
        if self._owns_client:
            await self._client.aclose()

    async def invoke(self, name: str, body: dict) -> dict:
        """Call one function; SideEffectError on transport failure or error reply."""
        try:
            response = await self._client.post(
                f"{self.config.base_url}/{name}",
                json=body,
                headers={
                    "Authorization": f"Bearer {self.config.service_key}",
                    "apikey": self.config.service_key,
                },
            )
        except httpx.HTTPError as e:
            raise SideEffectError(f"{name} unreachable: {e}") from e

        result: Any
        try:
            result = response.json()
        except ValueError:
            result = {}

        if not response.is_success or (isinstance(result, dict) and result.get("success") is False):
            message = result.get("error") if isinstance(result, dict) else None
            raise SideEffectError(
                f"{name} failed ({response.status_code}): {message or response.reason_phrase}"
            )

        self._logger.debug("function_invoked", function=name, status=response.status_code)
        return result if isinstance(result, dict) else {}
