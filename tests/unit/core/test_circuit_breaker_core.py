import pytest

from costingest.shared.core.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitState,
)
from costingest.shared.core.exceptions import CircuitOpenError, ExternalAPIError


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_breaker(clock, **overrides) -> CircuitBreaker:
    config = CircuitBreakerConfig(name="digitalocean", **overrides)
    return CircuitBreaker(config, clock=clock)


async def fail():
    raise ExternalAPIError("boom", upstream_status=503)


async def ok():
    return "ok"


async def trip(breaker: CircuitBreaker, times: int) -> None:
    for _ in range(times):
        with pytest.raises(ExternalAPIError):
            await breaker.call(fail)


@pytest.mark.asyncio
async def test_circuit_opens_after_failure_threshold():
    clock = FakeClock()
    breaker = make_breaker(clock)

    await trip(breaker, 4)
    assert breaker.state == CircuitState.CLOSED

    await trip(breaker, 1)
    assert breaker.state == CircuitState.OPEN
    assert breaker.metrics.next_attempt_time == clock.now + 60.0


@pytest.mark.asyncio
async def test_success_resets_consecutive_failures():
    breaker = make_breaker(FakeClock())

    await trip(breaker, 4)
    assert await breaker.call(ok) == "ok"
    await trip(breaker, 4)

    assert breaker.state == CircuitState.CLOSED


@pytest.mark.asyncio
async def test_open_circuit_rejects_until_deadline():
    clock = FakeClock()
    breaker = make_breaker(clock, failure_threshold=1)
    await trip(breaker, 1)

    called = False

    async def should_not_run():
        nonlocal called
        called = True

    clock.advance(59.9)
    with pytest.raises(CircuitOpenError) as exc:
        await breaker.call(should_not_run)

    assert not called
    assert exc.value.code == "circuit_breaker_open"
    assert "Service digitalocean is temporarily unavailable (circuit breaker open)" == exc.value.message
    assert breaker.metrics.total_rejections == 1


@pytest.mark.asyncio
async def test_half_open_closes_after_success_threshold():
    clock = FakeClock()
    breaker = make_breaker(clock, failure_threshold=1)
    await trip(breaker, 1)

    clock.advance(60)
    assert await breaker.call(ok) == "ok"
    assert breaker.state == CircuitState.HALF_OPEN

    assert await breaker.call(ok) == "ok"
    assert breaker.state == CircuitState.CLOSED
    assert breaker.metrics.consecutive_failures == 0
    assert breaker.metrics.next_attempt_time is None


@pytest.mark.asyncio
async def test_half_open_failure_reopens_with_new_deadline():
    clock = FakeClock()
    breaker = make_breaker(clock, failure_threshold=1)
    await trip(breaker, 1)

    clock.advance(61)
    await trip(breaker, 1)

    assert breaker.state == CircuitState.OPEN
    assert breaker.metrics.next_attempt_time == clock.now + 60.0


@pytest.mark.asyncio
async def test_half_open_admits_bounded_trial_calls():
    clock = FakeClock()
    breaker = make_breaker(clock, failure_threshold=1, success_threshold=3)
    await trip(breaker, 1)
    clock.advance(60)

    # Three admissions whose outcome is still pending
    for _ in range(3):
        await breaker.admit()

    with pytest.raises(CircuitOpenError):
        await breaker.admit()
    assert breaker.state == CircuitState.HALF_OPEN


@pytest.mark.asyncio
async def test_registry_returns_one_breaker_per_name():
    registry = CircuitBreakerRegistry(CircuitBreakerConfig(failure_threshold=2))

    first = registry.get("aws")
    assert registry.get("aws") is first
    assert registry.get("aws-sts") is not first
    assert first.config.name == "aws"
    assert first.config.failure_threshold == 2

    snapshot = registry.snapshot()
    assert set(snapshot) == {"aws", "aws-sts"}
    assert snapshot["aws"]["state"] == "closed"


def test_config_from_settings(settings):
    config = CircuitBreakerConfig.from_settings(settings, name="vultr")

    assert config.failure_threshold == 5
    assert config.timeout == 60.0
    assert config.half_open_max_calls == 3
    assert config.success_threshold == 2
    assert config.name == "vultr"


@pytest.mark.asyncio
async def test_registry_snapshot_reports_each_breaker_state():
    clock = FakeClock()
    registry = CircuitBreakerRegistry(CircuitBreakerConfig(failure_threshold=1), clock=clock)

    assert await registry.get("aws").call(ok) == "ok"
    await trip(registry.get("azure"), 1)
    await trip(registry.get("gcp"), 1)
    clock.advance(60)
    assert await registry.get("gcp").call(ok) == "ok"
    await trip(registry.get("vultr"), 1)

    snapshot = registry.snapshot()

    assert {name: status["state"] for name, status in snapshot.items()} == {
        "aws": "closed",
        "azure": "open",
        "gcp": "half_open",
        "vultr": "open",
    }
    assert snapshot["aws"]["metrics"]["total_successes"] == 1
    assert snapshot["azure"]["metrics"]["consecutive_failures"] == 1
    assert snapshot["azure"]["metrics"]["next_attempt_time"] == 1060.0
    assert snapshot["vultr"]["metrics"]["next_attempt_time"] == 1120.0
    assert snapshot["gcp"]["config"]["failure_threshold"] == 1
    assert snapshot["gcp"]["name"] == "gcp"
