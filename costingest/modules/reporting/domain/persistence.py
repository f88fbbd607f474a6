"""
Cost Persistence Service

Idempotent storage of normalized cost data. Two write paths feed the same
tables: per-account API snapshots (current month, data_source `api`) and
finalized export periods (closed months, data_source `export`). Reads prefer
`export` rows over `api` rows for the same account and day.
"""

import calendar
from collections import defaultdict
from collections.abc import Iterable, Sequence
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from costingest.models.cloud import (
    DATA_SOURCE_API,
    DATA_SOURCE_EXPORT,
    CloudAccount,
    CostSummary,
    DailyCost,
    ServiceCost,
    ServiceUsageMetric,
    utcnow,
)
from costingest.schemas.costs import (
    DailyCostPoint,
    ProviderCostData,
    ServiceCostItem,
    ServiceUsageItem,
    round_money,
)
from costingest.shared.core.cache import CostCache
from costingest.shared.core.exceptions import ConfigurationError

logger = structlog.get_logger()

ZERO = Decimal("0")


def parse_billing_period(period: str) -> tuple[date, date]:
    """'YYYY-MM' -> (first day, last day)."""
    try:
        year_str, month_str = period.split("-")
        year, month = int(year_str), int(month_str)
        start = date(year, month, 1)
    except ValueError as e:
        raise ConfigurationError(f"Invalid billing period '{period}'") from e
    return start, date(year, month, calendar.monthrange(year, month)[1])


class CostPersistenceService:
    def __init__(self, db: AsyncSession, cache: Optional[CostCache] = None):
        self.db = db
        self.cache = cache

    def _is_postgres(self) -> bool:
        return self.db.get_bind().dialect.name == "postgresql"

    async def _upsert_summary(self, values: dict[str, Any]) -> UUID:
        """Insert or update the month bucket; returns its id."""
        update_fields = {
            k: v for k, v in values.items()
            if k not in ("user_id", "provider", "account_id", "period_start")
        }
        if self._is_postgres():
            stmt = pg_insert(CostSummary).values(**values)
            stmt = stmt.on_conflict_do_update(
                constraint="uq_cost_summary_bucket",
                set_={**{k: stmt.excluded[k] for k in update_fields}, "updated_at": utcnow()},
            ).returning(CostSummary.id)
            result = await self.db.execute(stmt)
            return result.scalar_one()

        # Portable path: select then update
        result = await self.db.execute(
            select(CostSummary).where(
                CostSummary.user_id == values["user_id"],
                CostSummary.provider == values["provider"],
                CostSummary.account_id == values["account_id"],
                CostSummary.period_start == values["period_start"],
            )
        )
        summary = result.scalars().first()
        if summary is None:
            summary = CostSummary(**values)
            self.db.add(summary)
        else:
            for key, value in update_fields.items():
                setattr(summary, key, value)
            summary.updated_at = utcnow()
        await self.db.flush()
        return summary.id

    async def _replace_services(self, summary_id: UUID, services: Sequence[ServiceCostItem]) -> None:
        await self.db.execute(delete(ServiceCost).where(ServiceCost.summary_id == summary_id))
        ordered = sorted(services, key=lambda item: item.cost, reverse=True)
        self.db.add_all(
            [
                ServiceCost(
                    summary_id=summary_id,
                    service_name=item.name,
                    cost=round_money(item.cost),
                    change_percent=item.change_percent,
                )
                for item in ordered
            ]
        )
        await self.db.flush()

    async def _upsert_daily(
        self,
        user_id: str,
        provider: str,
        account_id: Optional[UUID],
        points: Iterable[DailyCostPoint],
        data_source: str,
    ) -> int:
        values = [
            {
                "user_id": user_id,
                "provider": provider,
                "account_id": account_id,
                "cost_date": point.date,
                "cost": round_money(point.cost),
                "data_source": data_source,
            }
            for point in points
        ]
        if not values:
            return 0

        if self._is_postgres():
            BATCH_SIZE = 200
            for i in range(0, len(values), BATCH_SIZE):
                stmt = pg_insert(DailyCost).values(values[i : i + BATCH_SIZE])
                stmt = stmt.on_conflict_do_update(
                    constraint="uq_daily_cost_point",
                    set_={"cost": stmt.excluded.cost, "updated_at": utcnow()},
                )
                await self.db.execute(stmt)
            return len(values)

        # Fallback for SQLite/Testing: manual idempotency
        for val in values:
            result = await self.db.execute(
                select(DailyCost).where(
                    DailyCost.user_id == val["user_id"],
                    DailyCost.provider == val["provider"],
                    DailyCost.account_id == val["account_id"],
                    DailyCost.cost_date == val["cost_date"],
                    DailyCost.data_source == val["data_source"],
                )
            )
            existing = result.scalars().first()
            if existing:
                existing.cost = val["cost"]
                existing.updated_at = utcnow()
            else:
                self.db.add(DailyCost(**val))
        await self.db.flush()
        return len(values)

    async def _replace_usage_metrics(
        self,
        account: CloudAccount,
        period_start: date,
        period_end: date,
        metrics: Sequence[ServiceUsageItem],
    ) -> int:
        """Swap an account's usage rows for one billing period with a fresh set."""
        await self.db.execute(
            delete(ServiceUsageMetric).where(
                ServiceUsageMetric.user_id == account.user_id,
                ServiceUsageMetric.provider == account.provider,
                ServiceUsageMetric.account_id == account.id,
                ServiceUsageMetric.usage_date >= period_start,
                ServiceUsageMetric.usage_date <= period_end,
            )
        )
        rows = [
            ServiceUsageMetric(
                user_id=account.user_id,
                provider=account.provider,
                account_id=account.id,
                service_name=metric.service_name,
                usage_date=metric.date,
                usage_type=metric.usage_type,
                cost=round_money(metric.cost),
                usage_quantity=metric.usage_quantity,
                usage_unit=metric.usage_unit,
            )
            for metric in metrics
            if period_start <= metric.date <= period_end
        ]
        self.db.add_all(rows)
        await self.db.flush()
        return len(rows)

    async def save_api_snapshot(
        self,
        account: CloudAccount,
        cost_data: ProviderCostData,
        daily_points: Optional[Sequence[DailyCostPoint]] = None,
        today: Optional[date] = None,
    ) -> UUID:
        """Store the current month as reported by the provider API."""
        today = today or date.today()
        month_start = today.replace(day=1)
        month_end = date(today.year, today.month, calendar.monthrange(today.year, today.month)[1])
        points = daily_points if daily_points is not None else cost_data.daily_points

        summary_id = await self._upsert_summary(
            {
                "user_id": account.user_id,
                "provider": account.provider,
                "account_id": account.id,
                "period_start": month_start,
                "period_end": month_end,
                "total_cost": round_money(cost_data.current_month_total),
                "credits": round_money(cost_data.credits),
                "forecast": round_money(cost_data.forecast),
                "last_month_total": round_money(cost_data.last_month_total),
                "data_source": DATA_SOURCE_API,
            }
        )
        await self._replace_services(summary_id, cost_data.services)
        written = await self._upsert_daily(
            account.user_id, account.provider, account.id, points, DATA_SOURCE_API
        )
        logger.info(
            "api_snapshot_saved",
            user_id=account.user_id,
            provider=account.provider,
            account_id=str(account.id),
            total=str(cost_data.current_month_total),
            daily_points=written,
        )
        return summary_id

    async def save_export_period(
        self,
        account: CloudAccount,
        billing_period: str,
        total_cost: Decimal,
        tax: Decimal,
        services: Sequence[ServiceCostItem],
        daily_points: Sequence[DailyCostPoint],
        today: Optional[date] = None,
        usage_metrics: Sequence[ServiceUsageItem] = (),
    ) -> bool:
        """
        Store one finalized export period. The current (and any future) month
        is skipped: the provider API is fresher until the month closes.

        Runs inside the caller's transaction; returns False when skipped.
        """
        today = today or date.today()
        period_start, period_end = parse_billing_period(billing_period)
        if period_start >= today.replace(day=1):
            logger.info(
                "export_period_current_month_skipped",
                user_id=account.user_id,
                account_id=str(account.id),
                billing_period=billing_period,
            )
            return False

        summary_id = await self._upsert_summary(
            {
                "user_id": account.user_id,
                "provider": account.provider,
                "account_id": account.id,
                "period_start": period_start,
                "period_end": period_end,
                "total_cost": round_money(total_cost),
                "tax_cost": round_money(tax),
                "data_source": DATA_SOURCE_EXPORT,
            }
        )
        await self._replace_services(summary_id, services)
        written = await self._upsert_daily(
            account.user_id, account.provider, account.id, daily_points, DATA_SOURCE_EXPORT
        )
        usage_rows = await self._replace_usage_metrics(account, period_start, period_end, usage_metrics)
        logger.info(
            "export_period_saved",
            user_id=account.user_id,
            account_id=str(account.id),
            billing_period=billing_period,
            total=str(total_cost),
            tax=str(tax),
            daily_points=written,
            usage_metrics=usage_rows,
        )
        return True

    async def get_daily_costs(
        self,
        user_id: str,
        start: date,
        end: date,
        provider: Optional[str] = None,
        account_id: Optional[UUID] = None,
    ) -> list[DailyCostPoint]:
        """
        Per-day totals for a user. For each (provider, account, day) an
        `export` row replaces the `api` row; results are summed across accounts.
        """
        cache_query = f"daily:{start.isoformat()}:{end.isoformat()}:{provider or '*'}:{account_id or '*'}"
        if self.cache is not None:
            cached = await self.cache.get_cost_data(user_id, cache_query)
            if cached is not None:
                return [DailyCostPoint.model_validate(item) for item in cached]

        stmt = select(DailyCost).where(
            DailyCost.user_id == user_id,
            DailyCost.cost_date >= start,
            DailyCost.cost_date <= end,
        )
        if provider:
            stmt = stmt.where(DailyCost.provider == provider)
        if account_id:
            stmt = stmt.where(DailyCost.account_id == account_id)
        result = await self.db.execute(stmt)

        chosen: dict[tuple[str, Optional[UUID], date], DailyCost] = {}
        for row in result.scalars().all():
            key = (row.provider, row.account_id, row.cost_date)
            current = chosen.get(key)
            if current is None or (
                current.data_source != DATA_SOURCE_EXPORT and row.data_source == DATA_SOURCE_EXPORT
            ):
                chosen[key] = row

        totals: dict[date, Decimal] = defaultdict(lambda: ZERO)
        for (_, _, day), row in chosen.items():
            totals[day] += Decimal(row.cost)
        points = [DailyCostPoint(date=day, cost=round_money(cost)) for day, cost in sorted(totals.items())]

        if self.cache is not None:
            await self.cache.set_cost_data(
                user_id, cache_query, [p.model_dump(mode="json") for p in points]
            )
        return points

    async def get_service_usage(
        self,
        user_id: str,
        start: date,
        end: date,
        provider: Optional[str] = None,
        account_id: Optional[UUID] = None,
    ) -> list[dict[str, Any]]:
        """Cost vs usage per (service, usage type) over a date range, costliest first."""
        stmt = (
            select(
                ServiceUsageMetric.service_name,
                ServiceUsageMetric.usage_type,
                ServiceUsageMetric.usage_unit,
                func.sum(ServiceUsageMetric.cost),
                func.sum(ServiceUsageMetric.usage_quantity),
            )
            .where(
                ServiceUsageMetric.user_id == user_id,
                ServiceUsageMetric.usage_date >= start,
                ServiceUsageMetric.usage_date <= end,
            )
            .group_by(
                ServiceUsageMetric.service_name,
                ServiceUsageMetric.usage_type,
                ServiceUsageMetric.usage_unit,
            )
        )
        if provider:
            stmt = stmt.where(ServiceUsageMetric.provider == provider)
        if account_id:
            stmt = stmt.where(ServiceUsageMetric.account_id == account_id)
        result = await self.db.execute(stmt)

        rows = [
            {
                "service_name": service,
                "usage_type": usage_type,
                "usage_unit": unit,
                "total_cost": round_money(cost or ZERO),
                "total_usage": Decimal(str(quantity)) if quantity is not None else None,
            }
            for service, usage_type, unit, cost, quantity in result.all()
        ]
        rows.sort(key=lambda row: row["total_cost"], reverse=True)
        return rows

    async def get_export_periods(self, account_id: UUID) -> list[CostSummary]:
        result = await self.db.execute(
            select(CostSummary)
            .where(
                CostSummary.account_id == account_id,
                CostSummary.data_source == DATA_SOURCE_EXPORT,
            )
            .order_by(CostSummary.period_start.desc())
        )
        return list(result.scalars().all())


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; stored values are always UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)
