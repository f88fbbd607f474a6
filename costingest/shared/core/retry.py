"""
Retry Logic with Exponential Backoff

Every outbound call to a provider or bulk-store API goes through
ProviderCallExecutor: circuit-breaker admission, a per-attempt timeout,
bounded exponential backoff for transient failures, and exactly one breaker
outcome per call.
"""

import asyncio
import socket
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Optional, TypeVar

import httpx
import structlog
from botocore.exceptions import (
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from costingest.shared.core.circuit_breaker import CircuitBreakerRegistry
from costingest.shared.core.config import Settings
from costingest.shared.core.exceptions import (
    CircuitOpenError,
    ExternalAPIError,
    RetriesExhaustedError,
)

logger = structlog.get_logger()
T = TypeVar("T")

# AWS error codes that signal throttling or a transient service fault.
RETRYABLE_AWS_ERROR_CODES = frozenset(
    {
        "Throttling",
        "ThrottlingException",
        "TooManyRequestsException",
        "RequestLimitExceeded",
        "LimitExceededException",
        "SlowDown",
        "RequestTimeout",
        "RequestTimeoutException",
        "ServiceUnavailable",
        "InternalError",
        "InternalFailure",
    }
)

_TRANSIENT_EXCEPTIONS: tuple[type[BaseException], ...] = (
    asyncio.TimeoutError,
    TimeoutError,
    ConnectionError,
    socket.gaierror,
    EndpointConnectionError,
    ConnectTimeoutError,
    ReadTimeoutError,
    ConnectionClosedError,
    httpx.TimeoutException,
    httpx.NetworkError,
    httpx.RemoteProtocolError,
)


def is_retryable_status(status: Optional[int]) -> bool:
    """Rate limiting and upstream 5xx are transient; other statuses are not."""
    if status is None:
        return False
    return status == 429 or 500 <= status <= 599


def is_retryable_error(exc: BaseException) -> bool:
    """Classify a failure as transient (retry) or permanent (fail now)."""
    if isinstance(exc, CircuitOpenError):
        return False
    if isinstance(exc, ExternalAPIError):
        if exc.retryable is not None:
            return exc.retryable
        return is_retryable_status(exc.upstream_status)
    if isinstance(exc, _TRANSIENT_EXCEPTIONS):
        return True
    if isinstance(exc, ClientError):
        error_code = exc.response.get("Error", {}).get("Code", "")
        if error_code in RETRYABLE_AWS_ERROR_CODES:
            return True
        status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        return is_retryable_status(status)
    if isinstance(exc, httpx.HTTPStatusError):
        return is_retryable_status(exc.response.status_code)
    return False


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff and timeout parameters for one provider call."""

    max_attempts: int = 3
    initial_delay: float = 1.0
    backoff_factor: float = 2.0
    max_delay: float = 30.0
    timeout: float = 30.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.PROVIDER_RETRY_MAX_ATTEMPTS,
            initial_delay=settings.PROVIDER_RETRY_INITIAL_DELAY_SECONDS,
            backoff_factor=settings.PROVIDER_RETRY_BACKOFF_FACTOR,
            max_delay=settings.PROVIDER_RETRY_MAX_DELAY_SECONDS,
            timeout=settings.PROVIDER_CALL_TIMEOUT_SECONDS,
        )


def _log_before_sleep(provider: str, operation: str, max_attempts: int) -> Callable[[RetryCallState], None]:
    def _before_sleep(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else None
        logger.warning(
            "provider_call_failed_will_retry",
            provider=provider,
            operation=operation,
            attempt=retry_state.attempt_number,
            max_attempts=max_attempts,
            delay_seconds=round(delay, 3) if delay is not None else None,
            error=str(exc) if exc else None,
            error_type=type(exc).__name__ if exc else None,
        )

    return _before_sleep


class ProviderCallExecutor:
    """
    Runs provider calls under the breaker registry and a retry policy.

    Usage:
        executor = ProviderCallExecutor(registry, RetryPolicy())
        data = await executor.call("digitalocean", client.get, url, operation="invoices")
    """

    def __init__(
        self,
        breakers: CircuitBreakerRegistry,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.breakers = breakers
        self.policy = policy or RetryPolicy()
        self._sleep = sleep

    async def call(
        self,
        provider: str,
        func: Callable[..., Awaitable[T]],
        *args: Any,
        operation: str = "call",
        timeout: Optional[float] = None,
        **kwargs: Any,
    ) -> T:
        """`timeout` overrides the policy's per-attempt limit for long transfers."""
        policy = self.policy
        attempt_timeout = timeout if timeout is not None else policy.timeout
        breaker = self.breakers.get(provider)
        await breaker.admit()

        retrying = AsyncRetrying(
            stop=stop_after_attempt(policy.max_attempts),
            wait=wait_exponential(
                multiplier=policy.initial_delay,
                exp_base=policy.backoff_factor,
                max=policy.max_delay,
            ),
            retry=retry_if_exception(is_retryable_error),
            before_sleep=_log_before_sleep(provider, operation, policy.max_attempts),
            sleep=self._sleep,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    result = await asyncio.wait_for(
                        func(*args, **kwargs), timeout=attempt_timeout
                    )
        except RetryError as retry_error:
            last_attempt = retry_error.last_attempt
            last_exc = last_attempt.exception() or retry_error
            logger.error(
                "provider_call_retries_exhausted",
                provider=provider,
                operation=operation,
                total_attempts=last_attempt.attempt_number,
                error=str(last_exc),
                error_type=type(last_exc).__name__,
            )
            await breaker.record_failure(last_exc)
            raise RetriesExhaustedError(last_attempt.attempt_number, last_exc) from last_exc
        except Exception as e:
            logger.warning(
                "provider_call_failed",
                provider=provider,
                operation=operation,
                error=str(e),
                error_type=type(e).__name__,
            )
            await breaker.record_failure(e)
            raise

        await breaker.record_success()
        return result
