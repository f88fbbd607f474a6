import asyncio
import socket

import httpx
import pytest
from botocore.exceptions import ClientError

from costingest.shared.core.circuit_breaker import (
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitState,
)
from costingest.shared.core.exceptions import (
    CircuitOpenError,
    ConfigurationError,
    ExternalAPIError,
    RetriesExhaustedError,
)
from costingest.shared.core.retry import (
    ProviderCallExecutor,
    RetryPolicy,
    is_retryable_error,
)


def client_error(code: str, status: int = 400) -> ClientError:
    return ClientError(
        {"Error": {"Code": code, "Message": code}, "ResponseMetadata": {"HTTPStatusCode": status}},
        "GetCostAndUsage",
    )


class RecordingSleep:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def sleeper():
    return RecordingSleep()


@pytest.fixture
def registry():
    return CircuitBreakerRegistry()


@pytest.fixture
def retry_executor(registry, sleeper):
    return ProviderCallExecutor(registry, RetryPolicy(timeout=1.0), sleep=sleeper)


@pytest.mark.parametrize(
    "exc",
    [
        asyncio.TimeoutError(),
        ConnectionResetError(),
        socket.gaierror("dns"),
        ExternalAPIError("rate limited", upstream_status=429),
        ExternalAPIError("bad gateway", upstream_status=502),
        client_error("ThrottlingException"),
        client_error("InternalError", status=500),
        httpx.ConnectError("refused"),
    ],
)
def test_transient_errors_are_retryable(exc):
    assert is_retryable_error(exc)


@pytest.mark.parametrize(
    "exc",
    [
        ExternalAPIError("unauthorized", upstream_status=401),
        ExternalAPIError("not found", upstream_status=404),
        ExternalAPIError("explicit", upstream_status=503, retryable=False),
        CircuitOpenError("aws"),
        client_error("AccessDenied", status=403),
        ConfigurationError("missing field"),
        ValueError("bad input"),
    ],
)
def test_permanent_errors_are_not_retryable(exc):
    assert not is_retryable_error(exc)


@pytest.mark.asyncio
async def test_backoff_is_capped_at_max_delay(registry, sleeper):
    executor = ProviderCallExecutor(
        registry, RetryPolicy(max_attempts=4, initial_delay=10.0, max_delay=15.0, timeout=1.0), sleep=sleeper
    )

    async def unavailable():
        raise ExternalAPIError("unavailable", upstream_status=503)

    with pytest.raises(RetriesExhaustedError):
        await executor.call("hetzner", unavailable)

    assert sleeper.delays == [10.0, 15.0, 15.0]


@pytest.mark.asyncio
async def test_transient_failure_then_success_counts_one_breaker_success(retry_executor, registry, sleeper):
    attempts = 0

    async def flaky():
        nonlocal attempts
        attempts += 1
        if attempts < 3:
            raise ExternalAPIError("unavailable", upstream_status=503)
        return {"ok": True}

    result = await retry_executor.call("linode", flaky, operation="get_account")

    assert result == {"ok": True}
    assert attempts == 3
    assert sleeper.delays == [1.0, 2.0]
    breaker = registry.get("linode")
    assert breaker.metrics.total_successes == 1
    assert breaker.metrics.total_failures == 0


@pytest.mark.asyncio
async def test_exhausted_retries_record_one_failure(retry_executor, registry):
    attempts = 0

    async def always_throttled():
        nonlocal attempts
        attempts += 1
        raise ExternalAPIError("slow down", upstream_status=429)

    with pytest.raises(RetriesExhaustedError) as exc:
        await retry_executor.call("vultr", always_throttled)

    assert attempts == 3
    assert exc.value.attempts == 3
    assert str(exc.value).startswith("Failed after 3 attempts:")
    assert isinstance(exc.value.last_error, ExternalAPIError)
    assert registry.get("vultr").metrics.total_failures == 1


@pytest.mark.asyncio
async def test_non_retryable_error_fails_immediately(retry_executor, registry, sleeper):
    attempts = 0

    async def unauthorized():
        nonlocal attempts
        attempts += 1
        raise ExternalAPIError("unauthorized", upstream_status=401)

    with pytest.raises(ExternalAPIError) as exc:
        await retry_executor.call("digitalocean", unauthorized)

    assert exc.value.upstream_status == 401
    assert attempts == 1
    assert sleeper.delays == []
    assert registry.get("digitalocean").metrics.total_failures == 1


@pytest.mark.asyncio
async def test_attempt_timeout_is_retryable(registry, sleeper):
    executor = ProviderCallExecutor(registry, RetryPolicy(timeout=0.01), sleep=sleeper)
    attempts = 0

    async def hangs():
        nonlocal attempts
        attempts += 1
        await asyncio.sleep(1)

    with pytest.raises(RetriesExhaustedError):
        await executor.call("ibm", hangs)

    assert attempts == 3


@pytest.mark.asyncio
async def test_timeout_override_applies_to_long_transfers(registry, sleeper):
    executor = ProviderCallExecutor(registry, RetryPolicy(timeout=0.01), sleep=sleeper)

    async def slow_download():
        await asyncio.sleep(0.05)
        return "/tmp/file.parquet"

    assert await executor.call("aws", slow_download, timeout=1.0) == "/tmp/file.parquet"


@pytest.mark.asyncio
async def test_open_circuit_short_circuits_without_calling(sleeper):
    registry = CircuitBreakerRegistry(CircuitBreakerConfig(failure_threshold=1))
    executor = ProviderCallExecutor(registry, RetryPolicy(), sleep=sleeper)

    async def bad_request():
        raise ExternalAPIError("bad request", upstream_status=400)

    with pytest.raises(ExternalAPIError):
        await executor.call("mongodb", bad_request)
    assert registry.get("mongodb").state == CircuitState.OPEN

    called = False

    async def not_called():
        nonlocal called
        called = True

    with pytest.raises(CircuitOpenError):
        await executor.call("mongodb", not_called)
    assert not called
