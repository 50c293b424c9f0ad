"""
Retry Policy
============
One retry loop shared by the provider clients and the client-webhook
notifier, built on tenacity. Callers supply a classifier that turns a
failure into a decision:

    STOP       re-raise immediately (permanent error)
    BACKOFF    sleep backoff(attempt) then try again (429 / 5xx / network)
    IMMEDIATE  try again without sleeping (e.g. 401 after the token was dropped)

An operation runs at most `max_retries + 1` times. A retryable failure on the
final attempt raises RetryExhaustedError so callers can tell "gave up after N
tries" apart from a single permanent failure.
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Optional, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception,
    stop_after_attempt,
)

from migma_backend.errors import RetryExhaustedError

T = TypeVar("T")

logger = structlog.get_logger().bind(component="retry")


class RetryDecision(str, Enum):
    STOP = "stop"
    BACKOFF = "backoff"
    IMMEDIATE = "immediate"


def exponential_backoff(initial: float, cap: float) -> Callable[[int], float]:
    """Delay for attempt n (1-based) is initial * 2^(n-1), capped."""

    def backoff(attempt: int) -> float:
        return min(initial * (2 ** (attempt - 1)), cap)

    return backoff


# Provider clients: 2^attempt * 1s -> 2s, 4s, 8s ... capped at 30s
PROVIDER_BACKOFF = exponential_backoff(2.0, 30.0)

# Client webhook: 0.5s, 1s, 2s ... capped at 10s
NOTIFICATION_BACKOFF = exponential_backoff(0.5, 10.0)


@dataclass
class RetryPolicy:
    max_retries: int = 3
    backoff: Callable[[int], float] = PROVIDER_BACKOFF
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep)
    name: str = "operation"

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def _retrying(self, classify: Callable[[BaseException], RetryDecision], log) -> AsyncRetrying:
        def wait(retry_state: RetryCallState) -> float:
            if classify(retry_state.outcome.exception()) is RetryDecision.IMMEDIATE:
                return 0.0
            return self.backoff(retry_state.attempt_number)

        def before_sleep(retry_state: RetryCallState) -> None:
            log.warning(
                "retry_scheduled",
                target=self.name,
                attempt=retry_state.attempt_number,
                max_attempts=self.max_attempts,
                delay_seconds=retry_state.next_action.sleep,
                error=str(retry_state.outcome.exception()),
            )

        async def sleep(delay: float) -> None:
            if delay > 0:
                await self.sleep(delay)

        return AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait,
            retry=retry_if_exception(lambda exc: classify(exc) is not RetryDecision.STOP),
            before_sleep=before_sleep,
            sleep=sleep,
        )

    async def execute(
        self,
        operation: Callable[[int], Awaitable[T]],
        classify: Callable[[BaseException], RetryDecision],
        *,
        log: Optional[structlog.BoundLogger] = None,
    ) -> T:
        """Run `operation(attempt)` until it succeeds or the policy gives up."""
        log = log or logger
        try:
            async for attempt in self._retrying(classify, log):
                with attempt:
                    result = await operation(attempt.retry_state.attempt_number)
        except RetryError as e:
            last_error = e.last_attempt.exception()
            attempts = e.last_attempt.attempt_number
            log.error(
                "retries_exhausted",
                target=self.name,
                attempts=attempts,
                error=str(last_error),
                error_type=type(last_error).__name__,
            )
            raise RetryExhaustedError(self.name, attempts, last_error) from last_error
        return result
