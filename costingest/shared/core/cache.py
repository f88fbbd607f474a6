"""
Cost Data Cache using Upstash Redis

Downstream readers cache per-user cost query results for 6h under
`costs:{user_id}:{query}`. Ingestion invalidates a user's entries after
every write so the next read sees the new numbers.

Falls back to a no-op when Upstash credentials are not configured.
"""

import json
from datetime import timedelta
from typing import Any, Optional

import structlog
from upstash_redis.asyncio import Redis as AsyncRedis

from costingest.shared.core.config import Settings

logger = structlog.get_logger()

COST_DATA_TTL = timedelta(hours=6)
PREFIX_COSTS = "costs"


def _safe_json_loads(payload: str, key: str) -> Optional[Any]:
    try:
        return json.loads(payload)
    except (TypeError, ValueError) as exc:
        logger.warning("cache_payload_invalid_json", key=key, error=str(exc))
        return None


def create_cache_client(settings: Settings) -> Optional[AsyncRedis]:
    """Async Upstash client, or None when the cache is not configured."""
    if not settings.UPSTASH_REDIS_URL or not settings.UPSTASH_REDIS_TOKEN:
        logger.debug("redis_disabled", reason="UPSTASH credentials not configured")
        return None
    client = AsyncRedis(url=settings.UPSTASH_REDIS_URL, token=settings.UPSTASH_REDIS_TOKEN)
    logger.info("redis_async_client_created")
    return client


class CostCache:
    """
    Per-user cost query cache.

    Cache failures never fail a caller: reads miss, writes and
    invalidations are logged and dropped.
    """

    def __init__(self, client: Optional[AsyncRedis] = None, ttl: timedelta = COST_DATA_TTL) -> None:
        self.client = client
        self.enabled = client is not None
        self.ttl = ttl

    @classmethod
    def from_settings(cls, settings: Settings) -> "CostCache":
        return cls(create_cache_client(settings))

    @staticmethod
    def make_key(user_id: str, query: str) -> str:
        return f"{PREFIX_COSTS}:{user_id}:{query}"

    async def get_cost_data(self, user_id: str, query: str) -> Optional[Any]:
        if not self.enabled or self.client is None:
            return None
        key = self.make_key(user_id, query)
        try:
            data = await self.client.get(key)
        except Exception as e:
            logger.warning("cache_get_error", key=key, error=str(e))
            return None
        if data is None:
            return None
        logger.debug("cache_hit", key=key)
        if isinstance(data, bytes):
            data = data.decode("utf-8", errors="replace")
        if isinstance(data, str):
            return _safe_json_loads(data, key=key)
        return data

    async def set_cost_data(self, user_id: str, query: str, value: Any) -> bool:
        if not self.enabled or self.client is None:
            return False
        key = self.make_key(user_id, query)
        ttl_seconds = int(self.ttl.total_seconds())
        try:
            await self.client.set(key, json.dumps(value, default=str), ex=ttl_seconds)
        except Exception as e:
            logger.warning("cache_set_error", key=key, error=str(e))
            return False
        logger.debug("cache_set", key=key, ttl_seconds=ttl_seconds)
        return True

    async def invalidate_user(self, user_id: str) -> bool:
        """Delete every cached query for a user."""
        if not self.enabled or self.client is None:
            return False
        pattern = f"{PREFIX_COSTS}:{user_id}:*"
        cursor = 0
        deleted = 0
        try:
            while True:
                next_cursor, keys = await self.client.scan(cursor, match=pattern, count=100)
                if keys:
                    await self.client.delete(*keys)
                    deleted += len(keys)
                cursor = int(next_cursor)
                if cursor == 0:
                    break
        except Exception as e:
            logger.warning("cache_invalidate_error", user_id=user_id, error=str(e))
            return False
        logger.info("cache_invalidated", user_id=user_id, keys_deleted=deleted)
        return True

    async def aclose(self) -> None:
        if self.client is not None:
            await self.client.close()
