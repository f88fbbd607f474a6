"""
Scheduler entry points.

The package never schedules itself: a cron job, worker or test calls these.
Each call may be given a prepared runtime; otherwise one is built for the run
and closed afterwards.
"""

import asyncio
import inspect
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import date
from typing import Any, Coroutine, Optional, cast

import structlog

from costingest.modules.governance.domain.jobs.export_ingestion import (
    CycleReport,
    ExportIngestionJob,
)
from costingest.modules.reporting.domain.sync import ProviderSyncService, SyncCycleReport
from costingest.shared.core.logging import setup_logging
from costingest.shared.core.runtime import IngestionRuntime, build_runtime

logger = structlog.get_logger()


@asynccontextmanager
async def _runtime_scope(runtime: Optional[IngestionRuntime]) -> AsyncGenerator[IngestionRuntime, None]:
    if runtime is not None:
        yield runtime
        return
    # Standalone run: configure logging for this process.
    setup_logging()
    owned = build_runtime()
    try:
        yield owned
    finally:
        await owned.aclose()


async def run_ingestion_cycle(
    runtime: Optional[IngestionRuntime] = None, today: Optional[date] = None
) -> CycleReport:
    """Bulk export path: poll every enabled export (every few hours)."""
    async with _runtime_scope(runtime) as rt:
        logger.info("export_ingestion_cycle_started")
        return await ExportIngestionJob(rt).run_ingestion_cycle(today=today)


async def run_provider_sync_cycle(
    runtime: Optional[IngestionRuntime] = None,
    user_id: Optional[str] = None,
    today: Optional[date] = None,
) -> SyncCycleReport:
    """Adapter path: sync every active account's current month (daily)."""
    async with _runtime_scope(runtime) as rt:
        logger.info("provider_sync_cycle_started", user_id=user_id)
        return await ProviderSyncService(rt).run_cycle(user_id=user_id, today=today)


# Helper for sync callers (cron scripts, worker hooks)
def run_async(task_or_coro: Any, *args: Any, **kwargs: Any) -> Any:
    """
    Run an async callable/coroutine from sync code.

    Supported call patterns:
    - run_async(coroutine)
    - run_async(callable, *args, **kwargs)
    """
    if asyncio.iscoroutine(task_or_coro) or inspect.isawaitable(task_or_coro):
        return asyncio.run(cast(Coroutine[Any, Any, Any], task_or_coro))

    if callable(task_or_coro):
        return asyncio.run(task_or_coro(*args, **kwargs))

    raise TypeError("run_async expects an awaitable or a callable async function")
