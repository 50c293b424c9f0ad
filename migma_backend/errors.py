"""
Error taxonomy
==============
Every failure the service surfaces to a caller derives from PaymentsError and
carries the HTTP status the API layer answers with.

- ConfigurationError: missing credentials / bank details (500, never retried)
- ValidationError / OrderNotFoundError / CheckoutConflictError: caller fixes input
- ProviderError family: raised by the provider clients
- WebhookSignatureError: inbound webhook failed authentication
"""

from typing import Optional


class PaymentsError(Exception):
    """Base class for all service errors."""

    status_code: int = 500

    def __init__(self, message: str, *, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ConfigurationError(PaymentsError):
    status_code = 500


class ValidationError(PaymentsError):
    status_code = 400


class OrderNotFoundError(PaymentsError):
    status_code = 404

    def __init__(self, order_id: str):
        super().__init__(f"Order not found: {order_id}")
        self.order_id = order_id


class CheckoutConflictError(PaymentsError):
    """The order is already linked to a provider checkout session."""

    status_code = 409


class StoreError(PaymentsError):
    status_code = 500


class WebhookSignatureError(PaymentsError):
    status_code = 401


# =============================================================================
# PROVIDER ERRORS
# =============================================================================

class ProviderError(PaymentsError):
    """A provider call failed. `http_status` is the provider's status, if any."""

    status_code = 502

    def __init__(
        self,
        provider: str,
        message: str,
        *,
        http_status: Optional[int] = None,
    ):
        super().__init__(message)
        self.provider = provider
        self.http_status = http_status

    def __str__(self) -> str:
        return f"{self.provider}: {self.message}"


class ProviderAuthError(ProviderError):
    """Credential exchange with the provider did not succeed."""


class RetryExhaustedError(ProviderError):
    """Every allowed attempt failed with a retryable error."""

    def __init__(self, provider: str, attempts: int, last_error: BaseException):
        super().__init__(
            provider,
            f"request failed after {attempts} attempts: {last_error}",
            http_status=getattr(last_error, "http_status", None),
        )
        self.attempts = attempts
        self.last_error = last_error


class SideEffectError(PaymentsError):
    """A post-payment side effect (PDF, email, notification) failed."""


class NotificationDeliveryError(SideEffectError):
    """The automation webhook answered with a non-2xx status."""

    def __init__(self, http_status: int, body: str = ""):
        super().__init__(f"client webhook returned {http_status}")
        self.http_status = http_status
        self.body = body
