"""
Global pytest fixtures for the costingest test suite.

Provides:
- Async SQLite database (temporary file) with all tables created
- Session factory shared by services that open their own sessions
- An IngestionRuntime wired with a no-wait retry policy and a recording
  notification sink
- Test data factories for accounts and export configs
"""
import os

# Set test environment BEFORE any package imports
os.environ["TESTING"] = "true"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["ENCRYPTION_KEY"] = "32-byte-long-test-encryption-key"

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from fnmatch import fnmatch
from typing import Any, AsyncGenerator, Optional
from uuid import uuid4

import httpx
import pytest
import pytest_asyncio


def _register_models():
    # Import all models to register them on Base.metadata
    from costingest.models.cloud import CloudAccount, CostSummary, DailyCost, ServiceCost, ServiceUsageMetric  # noqa: F401
    from costingest.models.export import ExportConfig, IngestionLog  # noqa: F401


_register_models()


class RecordingSink:
    """Notification sink that keeps every emitted notification."""

    def __init__(self):
        self.events: list[dict[str, Any]] = []

    async def emit(self, user_id, kind, message, *, title=None, details=None):
        self.events.append(
            {"user_id": user_id, "kind": kind, "message": message, "title": title, "details": details or {}}
        )

    def kinds(self) -> list[str]:
        return [e["kind"] for e in self.events]


async def no_sleep(_seconds: float) -> None:
    return None


class FakeRedis:
    """Stateful stand-in for the Upstash async client (get/set/scan/delete)."""

    def __init__(self):
        self.store: dict[str, str] = {}
        self.ttls: dict[str, Optional[int]] = {}
        self.closed = False

    async def get(self, key):
        return self.store.get(key)

    async def set(self, key, value, ex=None):
        self.store[key] = value
        self.ttls[key] = ex
        return True

    async def delete(self, *keys):
        removed = [k for k in keys if self.store.pop(k, None) is not None]
        return len(removed)

    async def scan(self, cursor, match=None, count=None):
        keys = [k for k in self.store if match is None or fnmatch(k, match)]
        return 0, keys

    async def close(self):
        self.closed = True


# ============================================================================
# Settings / resilience
# ============================================================================

@pytest.fixture
def settings():
    from costingest.shared.core.config import Settings

    return Settings(_env_file=None, TESTING=True, ENCRYPTION_KEY=os.environ["ENCRYPTION_KEY"])


@pytest.fixture
def executor():
    from costingest.shared.core.circuit_breaker import CircuitBreakerRegistry
    from costingest.shared.core.retry import ProviderCallExecutor, RetryPolicy

    return ProviderCallExecutor(CircuitBreakerRegistry(), RetryPolicy(timeout=5.0), sleep=no_sleep)


# ============================================================================
# Async Database Fixtures
# ============================================================================

@pytest_asyncio.fixture
async def async_engine(tmp_path):
    """Create async SQLite engine for testing using a temporary file."""
    from sqlalchemy.ext.asyncio import create_async_engine

    from costingest.shared.db.base import Base

    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.sqlite'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(async_engine):
    from costingest.shared.db.session import create_session_maker

    return create_session_maker(async_engine)


@pytest_asyncio.fixture
async def db_session(session_maker) -> AsyncGenerator:
    """Provide an async session with proper cleanup."""
    async with session_maker() as session:
        try:
            yield session
        finally:
            await session.rollback()
            await session.close()


# ============================================================================
# Runtime
# ============================================================================

@pytest.fixture
def recording_sink():
    return RecordingSink()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest_asyncio.fixture
async def runtime(settings, session_maker, executor, recording_sink, fake_redis):
    from costingest.shared.core.cache import CostCache
    from costingest.shared.core.notifications import NotificationDispatcher
    from costingest.shared.core.runtime import build_runtime

    http_client = httpx.AsyncClient(
        transport=httpx.MockTransport(lambda request: httpx.Response(404))
    )
    rt = build_runtime(
        settings,
        session_maker=session_maker,
        http_client=http_client,
        notifier=NotificationDispatcher([recording_sink]),
        cache=CostCache(fake_redis),
        executor=executor,
    )
    yield rt
    await rt.aclose()


# ============================================================================
# Test data factories
# ============================================================================

@pytest.fixture
def make_account(session_maker):
    from costingest.models.cloud import CONNECTION_DELEGATED, CONNECTION_DIRECT, CloudAccount

    async def _make(
        provider: str = "aws",
        *,
        user_id: str = "user-1",
        name: str = "Production",
        delegated: bool = True,
        credentials: Optional[dict[str, Any]] = None,
        export_enabled: bool = False,
        is_active: bool = True,
    ) -> CloudAccount:
        account = CloudAccount(
            id=uuid4(),
            user_id=user_id,
            provider=provider,
            name=name,
            connection_type=CONNECTION_DELEGATED if delegated else CONNECTION_DIRECT,
            role_arn="arn:aws:iam::123456789012:role/costingest-connection" if delegated else None,
            external_id="ext-123" if delegated else None,
            provider_account_id="123456789012" if delegated else None,
            export_enabled=export_enabled,
            is_active=is_active,
        )
        if credentials:
            account.credential_data = credentials
        async with session_maker() as session:
            session.add(account)
            await session.commit()
        return account

    return _make


@pytest.fixture
def make_export_config(session_maker):
    from costingest.models.export import EXPORT_PROVISIONING, ExportConfig

    async def _make(account, status: str = EXPORT_PROVISIONING, **overrides) -> ExportConfig:
        values = dict(
            id=uuid4(),
            account_id=account.id,
            user_id=account.user_id,
            export_name="costingest-cur-production-abcdef12",
            export_arn="arn:aws:bcm-data-exports:us-east-1:123456789012:export/abc",
            bucket_name="costingest-cur-123456789012-production-abcdef12",
            s3_prefix="cur-exports",
            region="us-east-1",
            status=status,
        )
        values.update(overrides)
        config = ExportConfig(**values)
        async with session_maker() as session:
            session.add(config)
            await session.commit()
        return config

    return _make


# ============================================================================
# AWS / export fixtures
# ============================================================================

class FakeBotoSession:
    """aioboto3.Session stand-in: `client(name)` yields the fake registered for that service."""

    def __init__(self, clients: dict[str, Any]):
        self.clients = clients
        self.client_calls: list[tuple[str, dict[str, Any]]] = []

    def client(self, service_name, **kwargs):
        self.client_calls.append((service_name, kwargs))
        fake = self.clients[service_name]

        @asynccontextmanager
        async def _client():
            yield fake

        return _client()


@pytest.fixture
def boto_session():
    return FakeBotoSession


@pytest.fixture
def aws_credentials():
    from costingest.shared.core.credentials import AWSCredentials

    return AWSCredentials(
        access_key_id="ASIAEXAMPLEEXAMPLE12",
        secret_access_key="secret",
        session_token="token",
        expiration=datetime(2099, 1, 1, tzinfo=timezone.utc),
    )


@pytest.fixture
def write_cur_parquet(tmp_path):
    """Write CUR 2.0 rows `(type, cost, usage start, product name, product code[, usage type, amount, unit])` to Parquet."""
    import pyarrow as pa
    import pyarrow.parquet as pq

    counter = {"n": 0}

    def _write(rows, name: Optional[str] = None, row_group_size: Optional[int] = None) -> str:
        counter["n"] += 1
        path = tmp_path / (name or f"cur-{counter['n']:05d}.snappy.parquet")
        columns = {
            "line_item_line_item_type": pa.array([r[0] for r in rows], type=pa.string()),
            "line_item_unblended_cost": pa.array([r[1] for r in rows], type=pa.float64()),
            "line_item_usage_start_date": pa.array(
                [r[2] for r in rows], type=pa.timestamp("ms", tz="UTC")
            ),
            "product_product_name": pa.array([r[3] for r in rows], type=pa.string()),
            "line_item_product_code": pa.array([r[4] for r in rows], type=pa.string()),
        }
        # Optional trailing fields: (usage type, usage amount, pricing unit)
        if any(len(r) > 5 for r in rows):
            padded = [tuple(r) + (None,) * (8 - len(r)) for r in rows]
            columns["line_item_usage_type"] = pa.array([r[5] for r in padded], type=pa.string())
            columns["line_item_usage_amount"] = pa.array([r[6] for r in padded], type=pa.float64())
            columns["pricing_unit"] = pa.array([r[7] for r in padded], type=pa.string())
        pq.write_table(pa.table(columns), path, row_group_size=row_group_size)
        return str(path)

    return _write
