from datetime import date
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest

from costingest.schemas.costs import ProviderCostData
from costingest.tasks.ingestion_tasks import run_async, run_ingestion_cycle, run_provider_sync_cycle


@pytest.mark.asyncio
async def test_ingestion_cycle_uses_the_given_runtime(runtime):
    report = await run_ingestion_cycle(runtime=runtime, today=date(2025, 7, 5))

    assert report.configs_polled == 0
    assert report.ok
    # A caller-owned runtime is left open.
    assert not runtime.http_client.is_closed


@pytest.mark.asyncio
async def test_provider_sync_cycle_scopes_to_user(runtime, make_account):
    await make_account("digitalocean", delegated=False, credentials={"apiToken": "t"})
    await make_account("digitalocean", user_id="user-2", delegated=False, credentials={"apiToken": "t"})
    data = ProviderCostData(provider="digitalocean", current_month_total=Decimal("10"))

    with patch.object(runtime.adapters.get("digitalocean"), "fetch_cost_data", AsyncMock(return_value=data)):
        report = await run_provider_sync_cycle(runtime=runtime, user_id="user-2", today=date(2025, 7, 5))

    assert len(report.results) == 1
    assert report.synced == 1
    assert report.results[0].daily_points == 5


def test_run_async_accepts_coroutines_and_callables():
    async def add(a, b):
        return a + b

    assert run_async(add(1, 2)) == 3
    assert run_async(add, 2, b=3) == 5


def test_run_async_rejects_plain_values():
    with pytest.raises(TypeError):
        run_async(42)
