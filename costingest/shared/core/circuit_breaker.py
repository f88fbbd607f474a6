"""
Circuit Breaker Pattern Implementation

One breaker per upstream provider. The breaker models the health of the
provider itself, so every account syncing against that provider shares it.
Breakers live in a CircuitBreakerRegistry owned by the process runtime.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Optional, TypeVar

import structlog

from costingest.shared.core.config import Settings
from costingest.shared.core.exceptions import CircuitOpenError

logger = structlog.get_logger()
T = TypeVar("T")


class CircuitState(Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, requests rejected
    HALF_OPEN = "half_open"  # Testing recovery


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker behavior."""

    failure_threshold: int = 5  # Failures before opening
    success_threshold: int = 2  # Consecutive half-open successes needed to close
    timeout: float = 60.0  # Cooldown in seconds before a trial call is allowed
    half_open_max_calls: int = 3  # Trial calls admitted while HALF_OPEN
    name: str = "default"

    @classmethod
    def from_settings(cls, settings: Settings, name: str = "default") -> "CircuitBreakerConfig":
        return cls(
            failure_threshold=settings.CIRCUIT_BREAKER_FAILURE_THRESHOLD,
            success_threshold=settings.CIRCUIT_BREAKER_SUCCESS_THRESHOLD,
            timeout=settings.CIRCUIT_BREAKER_RECOVERY_TIMEOUT_SECONDS,
            half_open_max_calls=settings.CIRCUIT_BREAKER_HALF_OPEN_MAX_CALLS,
            name=name,
        )


@dataclass
class CircuitBreakerMetrics:
    """Metrics for circuit breaker monitoring."""

    total_requests: int = 0
    total_failures: int = 0
    total_successes: int = 0
    total_rejections: int = 0
    consecutive_failures: int = 0
    consecutive_successes: int = 0
    half_open_calls: int = 0
    last_failure_time: Optional[float] = None
    last_success_time: Optional[float] = None
    next_attempt_time: Optional[float] = None
    state_changes: int = 0


class CircuitBreaker:
    """
    Circuit Breaker with an explicit admission step.

    States:
    - CLOSED: requests pass through; consecutive failures are counted
    - OPEN: requests are rejected until the cooldown deadline passes
    - HALF_OPEN: a bounded number of trial requests are admitted; one failure
      re-opens, `success_threshold` consecutive successes close

    Admission and outcome recording are separate so a retrying caller can
    report a single outcome for a whole retry sequence:

        await breaker.admit()
        try:
            result = await do_call()
        except Exception as e:
            await breaker.record_failure(e)
            raise
        await breaker.record_success()
    """

    def __init__(
        self,
        config: CircuitBreakerConfig,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.state = CircuitState.CLOSED
        self.metrics = CircuitBreakerMetrics()
        self._clock = clock
        self._lock = asyncio.Lock()

    def _cooldown_elapsed(self) -> bool:
        deadline = self.metrics.next_attempt_time
        return deadline is None or self._clock() >= deadline

    def _reject(self) -> CircuitOpenError:
        self.metrics.total_rejections += 1
        return CircuitOpenError(
            self.config.name,
            details={
                "circuit_name": self.config.name,
                "state": self.state.value,
                "next_attempt_time": self.metrics.next_attempt_time,
            },
        )

    async def admit(self) -> None:
        """Admission check. Raises CircuitOpenError when the call must not run."""
        async with self._lock:
            if self.state == CircuitState.OPEN:
                if not self._cooldown_elapsed():
                    raise self._reject()
                self._change_state(CircuitState.HALF_OPEN)
                logger.info("circuit_breaker_attempting_reset", name=self.config.name)

            if self.state == CircuitState.HALF_OPEN:
                if self.metrics.half_open_calls >= self.config.half_open_max_calls:
                    raise self._reject()
                self.metrics.half_open_calls += 1

            self.metrics.total_requests += 1

    async def record_success(self) -> None:
        """Record a successful operation."""
        async with self._lock:
            self.metrics.total_successes += 1
            self.metrics.consecutive_failures = 0
            self.metrics.last_success_time = self._clock()

            if self.state == CircuitState.HALF_OPEN:
                self.metrics.consecutive_successes += 1
                if self.metrics.consecutive_successes >= self.config.success_threshold:
                    self._change_state(CircuitState.CLOSED)
                    logger.info("circuit_breaker_closed", name=self.config.name)

    async def record_failure(self, exception: BaseException) -> None:
        """Record a failed operation."""
        async with self._lock:
            self.metrics.total_failures += 1
            self.metrics.consecutive_failures += 1
            self.metrics.consecutive_successes = 0
            self.metrics.last_failure_time = self._clock()

            if self.state == CircuitState.HALF_OPEN:
                self._change_state(CircuitState.OPEN)
                logger.warning(
                    "circuit_breaker_half_open_failed",
                    name=self.config.name,
                    error=str(exception),
                )
            elif (
                self.state == CircuitState.CLOSED
                and self.metrics.consecutive_failures >= self.config.failure_threshold
            ):
                self._change_state(CircuitState.OPEN)
                logger.warning(
                    "circuit_breaker_opened",
                    name=self.config.name,
                    consecutive_failures=self.metrics.consecutive_failures,
                    failure_threshold=self.config.failure_threshold,
                    error=str(exception),
                )

    def _change_state(self, new_state: CircuitState) -> None:
        """Change circuit breaker state. Caller holds the lock."""
        old_state = self.state
        self.state = new_state
        self.metrics.state_changes += 1

        if new_state == CircuitState.OPEN:
            self.metrics.next_attempt_time = self._clock() + self.config.timeout
            self.metrics.half_open_calls = 0
            self.metrics.consecutive_successes = 0
        elif new_state == CircuitState.HALF_OPEN:
            self.metrics.half_open_calls = 0
            self.metrics.consecutive_successes = 0
        else:
            self.metrics.consecutive_failures = 0
            self.metrics.consecutive_successes = 0
            self.metrics.half_open_calls = 0
            self.metrics.next_attempt_time = None

        logger.info(
            "circuit_breaker_state_changed",
            name=self.config.name,
            old_state=old_state.value,
            new_state=new_state.value,
            total_requests=self.metrics.total_requests,
            total_failures=self.metrics.total_failures,
        )

    async def call(
        self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any
    ) -> T:
        """Call a function with circuit breaker protection."""
        await self.admit()
        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            await self.record_failure(e)
            raise
        await self.record_success()
        return result

    def get_status(self) -> dict[str, Any]:
        """Get circuit breaker status for monitoring."""
        return {
            "name": self.config.name,
            "state": self.state.value,
            "metrics": {
                "total_requests": self.metrics.total_requests,
                "total_failures": self.metrics.total_failures,
                "total_successes": self.metrics.total_successes,
                "total_rejections": self.metrics.total_rejections,
                "consecutive_failures": self.metrics.consecutive_failures,
                "consecutive_successes": self.metrics.consecutive_successes,
                "last_failure_time": self.metrics.last_failure_time,
                "last_success_time": self.metrics.last_success_time,
                "next_attempt_time": self.metrics.next_attempt_time,
                "state_changes": self.metrics.state_changes,
            },
            "config": {
                "failure_threshold": self.config.failure_threshold,
                "success_threshold": self.config.success_threshold,
                "timeout": self.config.timeout,
                "half_open_max_calls": self.config.half_open_max_calls,
            },
        }


class CircuitBreakerRegistry:
    """
    Process-owned map of provider identifier to CircuitBreaker.

    Constructed once at startup and passed to every component that calls a
    provider. Tests build a fresh registry to get isolated breaker state.
    """

    def __init__(
        self,
        defaults: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._defaults = defaults or CircuitBreakerConfig()
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}

    @classmethod
    def from_settings(cls, settings: Settings) -> "CircuitBreakerRegistry":
        return cls(CircuitBreakerConfig.from_settings(settings))

    def get(self, name: str) -> CircuitBreaker:
        """Get or create the breaker for `name`."""
        breaker = self._breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(replace(self._defaults, name=name), clock=self._clock)
            self._breakers[name] = breaker
        return breaker

    def snapshot(self) -> dict[str, dict[str, Any]]:
        """Status of every breaker created so far."""
        return {name: breaker.get_status() for name, breaker in self._breakers.items()}
