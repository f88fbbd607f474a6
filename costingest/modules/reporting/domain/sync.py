"""
Provider Sync

Adapter path of ingestion: for each connected account, resolve credentials,
fetch the current month through the provider adapter, fill in a daily series
where the provider only reports totals, and persist it as `api`-sourced data.
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Optional

import structlog
from sqlalchemy import select, update

from costingest.models.cloud import CloudAccount, utcnow
from costingest.modules.reporting.domain.persistence import CostPersistenceService
from costingest.shared.adapters.role_delegation import (
    KIND_ACCESS_DENIED,
    KIND_MISSING_CONFIGURATION,
)
from costingest.shared.core.exceptions import UnsupportedProviderError
from costingest.shared.core.notifications import SYNC_RECONNECT_REQUIRED
from costingest.shared.core.runtime import IngestionRuntime

logger = structlog.get_logger()

SYNC_OK = "synced"
SYNC_CREDENTIALS_ERROR = "credentials_error"
SYNC_FAILED = "failed"

# Credential failures the user has to fix; anything else is retried next cycle.
RECONNECT_KINDS = frozenset({KIND_ACCESS_DENIED, KIND_MISSING_CONFIGURATION})


@dataclass
class SyncResult:
    account_id: str
    provider: str
    status: str
    total_cost: Decimal = Decimal("0")
    daily_points: int = 0
    error: Optional[str] = None


@dataclass
class SyncCycleReport:
    results: list[SyncResult] = field(default_factory=list)

    @property
    def synced(self) -> int:
        return sum(1 for r in self.results if r.status == SYNC_OK)

    @property
    def failed(self) -> int:
        return len(self.results) - self.synced


class ProviderSyncService:
    def __init__(self, runtime: IngestionRuntime):
        self.runtime = runtime

    async def sync_account(self, account: CloudAccount, today: Optional[date] = None) -> SyncResult:
        """
        Sync one account's current month.

        Raises UnsupportedProviderError when no adapter serves the provider;
        credential problems are reported in the result instead of raised.
        """
        adapter = self.runtime.adapters.get(account.provider)
        if adapter is None:
            raise UnsupportedProviderError(account.provider)

        today = today or date.today()
        start = today.replace(day=1)
        account_id = str(account.id)

        resolution = await adapter.resolve_credentials(account)
        if not resolution.ok or resolution.credentials is None:
            logger.warning(
                "provider_sync_credentials_unavailable",
                account_id=account_id,
                provider=account.provider,
                error=resolution.error,
                error_kind=resolution.error_kind,
            )
            if resolution.error_kind in RECONNECT_KINDS:
                await self.runtime.notifier.notify(
                    account.user_id,
                    SYNC_RECONNECT_REQUIRED,
                    resolution.error or "Reconnect this cloud account to resume cost sync.",
                    title=f"Reconnect {account.name}",
                    details={"account_id": account_id, "provider": account.provider},
                )
            return SyncResult(
                account_id=account_id,
                provider=account.provider,
                status=SYNC_CREDENTIALS_ERROR,
                error=resolution.error,
            )

        cost_data = await adapter.fetch_cost_data(resolution.credentials, start, today)
        synthesized = adapter.synthesize_daily_data(cost_data, start, today, today=today)
        points = synthesized if synthesized is not None else cost_data.daily_points

        async with self.runtime.session_maker() as session:
            persistence = CostPersistenceService(session)
            await persistence.save_api_snapshot(account, cost_data, points, today=today)
            await session.execute(
                update(CloudAccount)
                .where(CloudAccount.id == account.id)
                .values(last_synced_at=utcnow())
            )
            await session.commit()

        await self.runtime.cache.invalidate_user(account.user_id)
        logger.info(
            "provider_sync_completed",
            account_id=account_id,
            provider=account.provider,
            total=str(cost_data.current_month_total),
            daily_points=len(points),
            synthesized=synthesized is not None and not cost_data.daily_points,
        )
        return SyncResult(
            account_id=account_id,
            provider=account.provider,
            status=SYNC_OK,
            total_cost=cost_data.current_month_total,
            daily_points=len(points),
        )

    async def run_cycle(
        self, user_id: Optional[str] = None, today: Optional[date] = None
    ) -> SyncCycleReport:
        """Sync every active account; one account's failure never stops the others."""
        stmt = select(CloudAccount).where(CloudAccount.is_active.is_(True))
        if user_id:
            stmt = stmt.where(CloudAccount.user_id == user_id)
        async with self.runtime.session_maker() as session:
            result = await session.execute(stmt.order_by(CloudAccount.created_at))
            accounts = list(result.scalars().all())

        report = SyncCycleReport()
        for account in accounts:
            try:
                report.results.append(await self.sync_account(account, today=today))
            except Exception as e:
                logger.error(
                    "provider_sync_failed",
                    account_id=str(account.id),
                    provider=account.provider,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                report.results.append(
                    SyncResult(
                        account_id=str(account.id),
                        provider=account.provider,
                        status=SYNC_FAILED,
                        error=str(e),
                    )
                )

        logger.info(
            "provider_sync_cycle_completed",
            accounts=len(accounts),
            synced=report.synced,
            failed=report.failed,
        )
        return report
