"""
Ingestion Runtime

All process-wide state the ingestion core shares lives here, built once and
injected: breaker registry, call executor, delegated-credential cache,
adapter registry, HTTP client, notification and cache hooks, and the
database session factory. Nothing below this object reads module globals.
"""

from dataclasses import dataclass, field
from typing import Optional

import httpx
import structlog
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from costingest.shared.adapters.aws_export import ExportProvisioner
from costingest.shared.adapters.registry import AdapterRegistry, build_default_registry
from costingest.shared.adapters.role_delegation import RoleDelegationService
from costingest.shared.adapters.s3_parquet import S3ExportReader
from costingest.shared.core.cache import CostCache
from costingest.shared.core.circuit_breaker import CircuitBreakerRegistry
from costingest.shared.core.config import Settings, get_settings
from costingest.shared.core.notifications import NotificationDispatcher
from costingest.shared.core.retry import ProviderCallExecutor, RetryPolicy
from costingest.shared.db.session import create_engine, create_session_maker

logger = structlog.get_logger()


def create_http_client(settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> httpx.AsyncClient:
    """Shared client for REST billing APIs; retries are owned by the executor."""
    return httpx.AsyncClient(
        http2=transport is None,
        timeout=httpx.Timeout(
            settings.HTTP_TIMEOUT_SECONDS, connect=settings.HTTP_CONNECT_TIMEOUT_SECONDS
        ),
        limits=httpx.Limits(max_connections=100, max_keepalive_connections=20, keepalive_expiry=30.0),
        headers={"User-Agent": f"{settings.APP_NAME}/ingestion"},
        transport=transport,
    )


@dataclass
class IngestionRuntime:
    settings: Settings
    breakers: CircuitBreakerRegistry
    executor: ProviderCallExecutor
    delegation: RoleDelegationService
    http_client: httpx.AsyncClient
    adapters: AdapterRegistry
    provisioner: ExportProvisioner
    reader: S3ExportReader
    notifier: NotificationDispatcher
    cache: CostCache
    session_maker: async_sessionmaker[AsyncSession]
    engine: Optional[AsyncEngine] = field(default=None)

    async def aclose(self) -> None:
        await self.http_client.aclose()
        await self.cache.aclose()
        if self.engine is not None:
            await self.engine.dispose()
        logger.info("ingestion_runtime_closed")


def build_runtime(
    settings: Optional[Settings] = None,
    *,
    session_maker: Optional[async_sessionmaker[AsyncSession]] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    notifier: Optional[NotificationDispatcher] = None,
    cache: Optional[CostCache] = None,
    executor: Optional[ProviderCallExecutor] = None,
) -> IngestionRuntime:
    """Wire the shared ingestion state. Any piece may be injected (tests, workers)."""
    settings = settings or get_settings()
    breakers = executor.breakers if executor else CircuitBreakerRegistry.from_settings(settings)
    executor = executor or ProviderCallExecutor(breakers, RetryPolicy.from_settings(settings))
    http_client = http_client or create_http_client(settings)
    delegation = RoleDelegationService(executor, settings)

    engine: Optional[AsyncEngine] = None
    if session_maker is None:
        engine = create_engine(settings)
        session_maker = create_session_maker(engine)

    runtime = IngestionRuntime(
        settings=settings,
        breakers=breakers,
        executor=executor,
        delegation=delegation,
        http_client=http_client,
        adapters=build_default_registry(executor, http_client, delegation),
        provisioner=ExportProvisioner(executor, settings),
        reader=S3ExportReader(executor, chunk_bytes=settings.EXPORT_DOWNLOAD_CHUNK_BYTES),
        notifier=notifier or NotificationDispatcher(),
        cache=cache or CostCache.from_settings(settings),
        session_maker=session_maker,
        engine=engine,
    )
    logger.info(
        "ingestion_runtime_built",
        providers=[adapter.provider_id for adapter in runtime.adapters.all()],
    )
    return runtime
