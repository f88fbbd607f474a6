import json
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from pydantic import ValidationError

from costingest.shared.core import cache as cache_module
from costingest.shared.core.cache import CostCache
from costingest.shared.core.config import Settings
from costingest.shared.core.logging import secret_redactor
from costingest.shared.core.notifications import EXPORT_ACTIVE, NotificationDispatcher


def test_settings_defaults(settings):
    assert settings.EXPORT_MAX_FILE_SIZE_BYTES == 200 * 1024 * 1024
    assert settings.EXPORT_DOWNLOAD_CHUNK_BYTES == 16 * 1024 * 1024
    assert settings.EXPORT_PROCESSING_LEASE_SECONDS == 3600
    assert settings.STS_SESSION_DURATION_SECONDS == 3600
    assert settings.PROVIDER_CALL_TIMEOUT_SECONDS == 30.0


@pytest.mark.parametrize(
    "overrides",
    [
        {"CIRCUIT_BREAKER_FAILURE_THRESHOLD": 0},
        {"CIRCUIT_BREAKER_HALF_OPEN_MAX_CALLS": 1, "CIRCUIT_BREAKER_SUCCESS_THRESHOLD": 2},
        {"PROVIDER_RETRY_MAX_ATTEMPTS": 0},
        {"PROVIDER_RETRY_BACKOFF_FACTOR": 1.0},
        {"STS_SESSION_DURATION_SECONDS": 7200},
    ],
)
def test_settings_reject_nonsensical_resilience_values(overrides):
    with pytest.raises(ValidationError):
        Settings(_env_file=None, **overrides)


def test_secret_redactor_masks_credentials():
    event = secret_redactor(
        None,
        "info",
        {"event": "x", "api_token": "abc", "nested": {"secret_access_key": "s", "region": "us-east-1"}},
    )

    assert event["api_token"] != "abc"
    assert event["nested"]["secret_access_key"] != "s"
    assert event["nested"]["region"] == "us-east-1"


@pytest.mark.asyncio
async def test_cache_invalidate_user_only_drops_that_user(fake_redis):
    cache = CostCache(fake_redis)
    await cache.set_cost_data("user-1", "daily:a", [1])
    await cache.set_cost_data("user-1", "daily:b", [2])
    await cache.set_cost_data("user-2", "daily:a", [3])

    assert await cache.invalidate_user("user-1")

    assert await cache.get_cost_data("user-1", "daily:a") is None
    assert await cache.get_cost_data("user-1", "daily:b") is None
    assert await cache.get_cost_data("user-2", "daily:a") == [3]


@pytest.mark.asyncio
async def test_cache_writes_json_with_six_hour_ttl(fake_redis):
    cache = CostCache(fake_redis)

    assert await cache.set_cost_data("user-1", "q", {"cost": Decimal("1.50")})

    assert json.loads(fake_redis.store["costs:user-1:q"]) == {"cost": "1.50"}
    assert fake_redis.ttls["costs:user-1:q"] == 6 * 3600


@pytest.mark.asyncio
async def test_cache_is_a_noop_without_upstash_credentials(settings):
    cache = CostCache.from_settings(settings)

    assert cache.enabled is False
    assert await cache.set_cost_data("user-1", "q", [1]) is False
    assert await cache.get_cost_data("user-1", "q") is None
    assert await cache.invalidate_user("user-1") is False
    await cache.aclose()


def test_cache_client_is_built_from_upstash_settings(monkeypatch):
    created = {}

    class RecordingRedis:
        def __init__(self, url, token):
            created.update(url=url, token=token)

    monkeypatch.setattr(cache_module, "AsyncRedis", RecordingRedis)
    settings = Settings(_env_file=None, UPSTASH_REDIS_URL="https://cache.example", UPSTASH_REDIS_TOKEN="tok")

    cache = CostCache.from_settings(settings)

    assert cache.enabled
    assert created == {"url": "https://cache.example", "token": "tok"}


@pytest.mark.asyncio
async def test_cache_failures_never_reach_the_caller():
    redis = AsyncMock()
    redis.get.side_effect = ConnectionError("upstash unreachable")
    redis.set.side_effect = ConnectionError("upstash unreachable")
    redis.scan.side_effect = ConnectionError("upstash unreachable")
    cache = CostCache(redis)

    assert await cache.get_cost_data("user-1", "q") is None
    assert await cache.set_cost_data("user-1", "q", [1]) is False
    assert await cache.invalidate_user("user-1") is False


@pytest.mark.asyncio
async def test_cache_ignores_corrupt_payloads():
    redis = AsyncMock()
    redis.get.return_value = b"{not json"

    assert await CostCache(redis).get_cost_data("user-1", "q") is None


@pytest.mark.asyncio
async def test_dispatcher_isolates_broken_sinks(recording_sink):
    class BrokenSink:
        async def emit(self, *args, **kwargs):
            raise RuntimeError("smtp down")

    dispatcher = NotificationDispatcher([BrokenSink(), recording_sink])
    await dispatcher.notify("user-1", EXPORT_ACTIVE, "Export active", title="Active")

    assert recording_sink.kinds() == [EXPORT_ACTIVE]
    assert recording_sink.events[0]["title"] == "Active"


def test_setup_logging_renders_redacted_json(capsys, monkeypatch):
    import structlog

    from costingest.shared.core import logging as core_logging

    monkeypatch.setattr(core_logging, "get_settings", lambda: Settings(_env_file=None, DEBUG=False))
    monkeypatch.setattr(core_logging.logging, "basicConfig", lambda **kwargs: None)
    try:
        core_logging.setup_logging()
        structlog.get_logger().info("redaction_event", api_token="tok-123", key_id="ASIAEXAMPLEEXAMPLE12")
    finally:
        structlog.reset_defaults()

    output = capsys.readouterr().err
    assert '"event": "redaction_event"' in output
    assert "tok-123" not in output
    assert "ASIAEXAMPLEEXAMPLE12" not in output
