# gateways/parcelow.py
# ============================================================================
# PARCELOW CLIENT (Gateway A)
# ============================================================================
# OAuth client-credentials at /oauth/token, orders in USD or BRL, exchange
# simulation. Parcelow may answer 2xx with {"success": false, "message": ...};
# that is a provider error too.
# ============================================================================

from typing import Any, Optional

import httpx

from migma_backend.config import ParcelowConfig
from migma_backend.errors import ProviderAuthError, ProviderError
from migma_backend.gateways.base import AccessToken, ProviderClient

EMAIL_ALREADY_EXISTS = "Email do cliente existente"


class ParcelowClient(ProviderClient):
    name = "parcelow"

    def __init__(self, config: ParcelowConfig, **kwargs):
        super().__init__(config.base_url, **kwargs)
        self.config = config

    async def _exchange_credentials(self) -> AccessToken:
        try:
            response = await self._client.post(
                self._url("/oauth/token"),
                json={
                    "client_id": self.config.client_id,
                    "client_secret": self.config.client_secret,
                    "grant_type": "client_credentials",
                },
                headers={"Accept": "application/json"},
            )
        except httpx.TransportError as e:
            raise ProviderAuthError(self.name, f"token request failed: {e}") from e

        if not response.is_success:
            raise ProviderAuthError(
                self.name,
                f"token exchange rejected: {self._error_message(response)}",
                http_status=response.status_code,
            )

        body = self._parse_body(response)
        if not isinstance(body, dict) or not body.get("access_token"):
            raise ProviderAuthError(self.name, "token response missing access_token")

        return AccessToken.from_expires_in(
            body["access_token"], body.get("expires_in", 3600), self._clock()
        )

    def _check_body(self, body: Any) -> Any:
        if isinstance(body, dict) and body.get("success") is False:
            raise ProviderError(
                self.name, body.get("message") or "Parcelow API returned an error"
            )
        return body

    # =========================================================================
    # ORDERS
    # =========================================================================

    async def create_order_usd(self, order: dict) -> dict:
        return await self.request("POST", "/api/orders", json_body=order)

    async def create_order_brl(self, order: dict) -> dict:
        return await self.request("POST", "/api/orders/brl", json_body=order)

    async def get_order(self, order_id: str) -> dict:
        response = await self.request("GET", f"/api/order/{order_id}")
        data = response.get("data") if isinstance(response, dict) else None
        if isinstance(data, list) and data:
            return data[0]
        if isinstance(data, dict):
            return data
        raise ProviderError(self.name, f"order {order_id} not found or invalid response format")

    async def get_orders_by_reference(self, reference: str) -> list[dict]:
        response = await self.request("GET", f"/api/orders/reference/{reference}")
        data = response.get("data", []) if isinstance(response, dict) else []
        if isinstance(data, dict):
            return [data]
        return list(data)

    async def cancel_order(self, order_id: str) -> dict:
        return await self.request("DELETE", f"/api/order/{order_id}")

    async def simulate(self, amount_cents: int) -> dict:
        response = await self.request("GET", "/api/simulate", params={"amount": amount_cents})
        data = response.get("data") if isinstance(response, dict) else None
        return data if isinstance(data, dict) else response


def extract_order_ref(response: dict) -> tuple[Optional[str], Optional[str]]:
    """(order_id, url_checkout) from a create-order response of either shape."""
    data = response.get("data") if isinstance(response.get("data"), dict) else {}
    order_id = data.get("order_id") or response.get("order_id") or data.get("id")
    checkout_url = data.get("url_checkout") or response.get("url_checkout")
    return (str(order_id) if order_id is not None else None), checkout_url
