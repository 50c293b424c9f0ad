"""
Provider Client
===============
Shared base for the payment-provider HTTP clients:

- Bearer token lifecycle (lazy exchange, cached until `expires_in - 300s`)
- One `request()` that owns retry/backoff; higher-level methods never retry
- Error bodies parsed into ProviderError; empty / non-JSON success -> {}
"""

import asyncio
import json
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Optional

import httpx
import structlog

from migma_backend.errors import ProviderAuthError, ProviderError
from migma_backend.logging_setup import mask_secret
from migma_backend.retry import PROVIDER_BACKOFF, RetryDecision, RetryPolicy

TOKEN_SAFETY_BUFFER_SECONDS = 300
DEFAULT_TIMEOUT_SECONDS = 30.0


@dataclass
class AccessToken:
    value: str
    expires_at: Optional[float] = None  # None = never expires (static token)

    def is_valid(self, now: float) -> bool:
        return self.expires_at is None or now < self.expires_at

    @classmethod
    def from_expires_in(cls, value: str, expires_in: float, now: float) -> "AccessToken":
        return cls(value=value, expires_at=now + float(expires_in) - TOKEN_SAFETY_BUFFER_SECONDS)


def classify_provider_error(exc: BaseException) -> RetryDecision:
    """Which provider failures are worth another attempt."""
    if isinstance(exc, ProviderAuthError):
        return RetryDecision.STOP
    if isinstance(exc, ProviderError):
        if exc.http_status == 401:
            return RetryDecision.IMMEDIATE
        if exc.http_status is not None and (exc.http_status == 429 or exc.http_status >= 500):
            return RetryDecision.BACKOFF
        return RetryDecision.STOP
    if isinstance(exc, (httpx.TransportError, asyncio.TimeoutError)):
        return RetryDecision.BACKOFF
    return RetryDecision.STOP


class ProviderClient(ABC):
    """Authenticated, retrying JSON client for one payment provider."""

    name: str = "provider"

    def __init__(
        self,
        base_url: str,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        max_retries: int = 3,
        sleep: Optional[Callable[[float], Any]] = None,
        clock: Callable[[], float] = time.time,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self.base_url = base_url.rstrip("/")
        self._client = http_client or httpx.AsyncClient(timeout=timeout_seconds)
        self._owns_client = http_client is None
        self._clock = clock
        self._token: Optional[AccessToken] = None
        self._token_lock = asyncio.Lock()
        self.retry_policy = RetryPolicy(
            max_retries=max_retries,
            backoff=PROVIDER_BACKOFF,
            name=self.name,
            **({"sleep": sleep} if sleep is not None else {}),
        )
        self._logger = structlog.get_logger().bind(component=f"{self.name}_client")

    async def close(self):
        if self._owns_client:
            await self._client.aclose()

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    # =========================================================================
    # TOKEN LIFECYCLE
    # =========================================================================

    @abstractmethod
    async def _exchange_credentials(self) -> AccessToken:
        """Perform the provider's credential exchange."""

    async def get_access_token(self) -> str:
        async with self._token_lock:
            if self._token is not None and self._token.is_valid(self._clock()):
                return self._token.value

            self._token = await self._exchange_credentials()
            self._logger.info(
                "access_token_refreshed",
                token=mask_secret(self._token.value),
                expires_at=self._token.expires_at,
            )
            return self._token.value

    def invalidate_token(self):
        self._token = None

    # =========================================================================
    # REQUEST
    # =========================================================================

    async def request(
        self,
        method: str,
        path: str,
        *,
        json_body: Optional[dict] = None,
        params: Optional[dict] = None,
    ) -> dict:
        """Authenticated call with 401 re-auth and 429/5xx backoff."""

        async def attempt(number: int) -> dict:
            token = await self.get_access_token()
            response = await self._client.request(
                method,
                self._url(path),
                json=json_body,
                params=params,
                headers={
                    "Authorization": f"Bearer {token}",
                    "Accept": "application/json",
                },
            )
            self._logger.debug(
                "provider_response",
                method=method,
                path=path,
                status=response.status_code,
                attempt=number,
            )

            if response.status_code == 401:
                self.invalidate_token()

            if not response.is_success:
                raise ProviderError(
                    self.name,
                    self._error_message(response),
                    http_status=response.status_code,
                )

            return self._check_body(self._parse_body(response))

        return await self.retry_policy.execute(
            attempt, classify_provider_error, log=self._logger
        )

    @staticmethod
    def _parse_body(response: httpx.Response) -> Any:
        content_type = response.headers.get("content-type", "")
        if response.status_code == 204 or "json" not in content_type or not response.content:
            return {}
        try:
            return response.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return {}

    def _check_body(self, body: Any) -> Any:
        """Hook for providers that signal errors inside a 2xx body."""
        return body

    def _error_message(self, response: httpx.Response) -> str:
        fallback = f"{response.status_code} {response.reason_phrase}".strip()
        try:
            body = response.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return fallback
        return self._extract_error_message(body) or fallback

    @staticmethod
    def _extract_error_message(body: Any) -> Optional[str]:
        if not isinstance(body, dict):
            return None
        if isinstance(body.get("message"), str):
            return body["message"]
        error = body.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return error["message"]
        if isinstance(error, str):
            return error
        errors = body.get("errors")
        if isinstance(errors, list) and errors and isinstance(errors[0], dict):
            return errors[0].get("message")
        return None
