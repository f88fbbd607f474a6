from datetime import date, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from costingest.models.cloud import DATA_SOURCE_API, DATA_SOURCE_EXPORT, CostSummary, DailyCost, ServiceCost, ServiceUsageMetric
from costingest.modules.reporting.domain.persistence import CostPersistenceService, parse_billing_period
from costingest.schemas.costs import DailyCostPoint, ProviderCostData, ServiceCostItem, ServiceUsageItem
from costingest.shared.core.cache import CostCache
from costingest.shared.core.exceptions import ConfigurationError

TODAY = date(2025, 7, 10)


def june_points(cost: str = "4.00") -> list[DailyCostPoint]:
    return [DailyCostPoint(date=date(2025, 6, d), cost=Decimal(cost)) for d in range(1, 31)]


@pytest.mark.parametrize(
    "period, expected",
    [
        ("2025-06", (date(2025, 6, 1), date(2025, 6, 30))),
        ("2024-02", (date(2024, 2, 1), date(2024, 2, 29))),
        ("2025-12", (date(2025, 12, 1), date(2025, 12, 31))),
    ],
)
def test_parse_billing_period(period, expected):
    assert parse_billing_period(period) == expected


@pytest.mark.parametrize("period", ["2025", "2025-13", "June-2025", ""])
def test_parse_billing_period_rejects_garbage(period):
    with pytest.raises(ConfigurationError):
        parse_billing_period(period)


@pytest.mark.asyncio
async def test_save_export_period_writes_summary_services_and_days(db_session, make_account):
    account = await make_account("aws")
    service = CostPersistenceService(db_session)

    saved = await service.save_export_period(
        account,
        "2025-06",
        Decimal("120.00"),
        Decimal("9.60"),
        [ServiceCostItem(name="EC2", cost=Decimal("20")), ServiceCostItem(name="S3", cost=Decimal("100"))],
        june_points(),
        today=TODAY,
    )
    await db_session.commit()

    assert saved is True
    [summary] = await service.get_export_periods(account.id)
    assert summary.period_start == date(2025, 6, 1)
    assert summary.period_end == date(2025, 6, 30)
    assert summary.total_cost == Decimal("120.00")
    assert summary.tax_cost == Decimal("9.60")
    assert summary.data_source == DATA_SOURCE_EXPORT

    services = (await db_session.execute(select(ServiceCost).where(ServiceCost.summary_id == summary.id))).scalars().all()
    assert sorted((s.service_name, s.cost) for s in services) == [("EC2", Decimal("20.00")), ("S3", Decimal("100.00"))]

    days = (await db_session.execute(select(DailyCost))).scalars().all()
    assert len(days) == 30
    assert {d.data_source for d in days} == {DATA_SOURCE_EXPORT}


@pytest.mark.asyncio
async def test_rerunning_an_export_period_updates_in_place(db_session, make_account):
    account = await make_account("aws")
    service = CostPersistenceService(db_session)
    services = [ServiceCostItem(name="EC2", cost=Decimal("120"))]

    await service.save_export_period(account, "2025-06", Decimal("120"), Decimal("0"), services, june_points(), today=TODAY)
    await db_session.commit()
    await service.save_export_period(
        account, "2025-06", Decimal("150"), Decimal("1"), services, june_points("5.00"), today=TODAY
    )
    await db_session.commit()

    summaries = (await db_session.execute(select(CostSummary))).scalars().all()
    days = (await db_session.execute(select(DailyCost))).scalars().all()
    service_rows = (await db_session.execute(select(ServiceCost))).scalars().all()
    assert len(summaries) == 1
    assert summaries[0].total_cost == Decimal("150.00")
    assert len(days) == 30
    assert {d.cost for d in days} == {Decimal("5.00")}
    assert len(service_rows) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("period", ["2025-07", "2025-08"])
async def test_current_and_future_months_are_skipped(db_session, make_account, period):
    account = await make_account("aws")
    service = CostPersistenceService(db_session)

    saved = await service.save_export_period(
        account, period, Decimal("10"), Decimal("0"), [], june_points(), today=TODAY
    )

    assert saved is False
    assert (await db_session.execute(select(CostSummary))).scalars().all() == []
    assert (await db_session.execute(select(DailyCost))).scalars().all() == []


@pytest.mark.asyncio
async def test_api_snapshot_is_current_month(db_session, make_account):
    account = await make_account("digitalocean", delegated=False)
    service = CostPersistenceService(db_session)
    data = ProviderCostData(
        provider="digitalocean",
        current_month_total=Decimal("45.50"),
        last_month_total=Decimal("30"),
        forecast=Decimal("141.05"),
        services=[ServiceCostItem(name="DigitalOcean Services", cost=Decimal("45.50"))],
    )
    points = [DailyCostPoint(date=TODAY - timedelta(days=i), cost=Decimal("4.55")) for i in range(10)]

    await service.save_api_snapshot(account, data, points, today=TODAY)
    await db_session.commit()

    [summary] = (await db_session.execute(select(CostSummary))).scalars().all()
    assert (summary.period_start, summary.period_end) == (date(2025, 7, 1), date(2025, 7, 31))
    assert summary.data_source == DATA_SOURCE_API
    assert summary.forecast == Decimal("141.05")
    assert summary.last_month_total == Decimal("30.00")
    days = (await db_session.execute(select(DailyCost))).scalars().all()
    assert len(days) == 10


@pytest.mark.asyncio
async def test_daily_costs_prefer_export_rows_over_api_rows(db_session, make_account):
    aws = await make_account("aws")
    other = await make_account("aws", name="Staging")
    service = CostPersistenceService(db_session)
    june_1, june_2 = date(2025, 6, 1), date(2025, 6, 2)

    await service._upsert_daily(aws.user_id, "aws", aws.id, [
        DailyCostPoint(date=june_1, cost=Decimal("3.00")),
        DailyCostPoint(date=june_2, cost=Decimal("3.00")),
    ], DATA_SOURCE_API)
    await service._upsert_daily(aws.user_id, "aws", aws.id, [
        DailyCostPoint(date=june_1, cost=Decimal("4.00")),
    ], DATA_SOURCE_EXPORT)
    await service._upsert_daily(other.user_id, "aws", other.id, [
        DailyCostPoint(date=june_1, cost=Decimal("1.50")),
    ], DATA_SOURCE_API)
    await db_session.commit()

    points = await service.get_daily_costs("user-1", june_1, june_2)
    only_staging = await service.get_daily_costs("user-1", june_1, june_2, account_id=other.id)

    assert [(p.date, p.cost) for p in points] == [(june_1, Decimal("5.50")), (june_2, Decimal("3.00"))]
    assert [(p.date, p.cost) for p in only_staging] == [(june_1, Decimal("1.50"))]
    assert await service.get_daily_costs("user-1", june_1, june_2, provider="gcp") == []


@pytest.mark.asyncio
async def test_daily_costs_are_cached_until_invalidated(db_session, make_account, fake_redis):
    account = await make_account("aws")
    cache = CostCache(fake_redis)
    service = CostPersistenceService(db_session, cache=cache)
    june_1 = date(2025, 6, 1)

    await service._upsert_daily(account.user_id, "aws", account.id, [DailyCostPoint(date=june_1, cost=Decimal("2"))], DATA_SOURCE_API)
    await db_session.commit()
    first = await service.get_daily_costs(account.user_id, june_1, june_1)

    await service._upsert_daily(account.user_id, "aws", account.id, [DailyCostPoint(date=june_1, cost=Decimal("9"))], DATA_SOURCE_API)
    await db_session.commit()
    cached = await service.get_daily_costs(account.user_id, june_1, june_1)
    await cache.invalidate_user(account.user_id)
    fresh = await service.get_daily_costs(account.user_id, june_1, june_1)

    assert first[0].cost == cached[0].cost == Decimal("2.00")
    assert fresh[0].cost == Decimal("9.00")


def usage(service: str, day: int, usage_type: str, cost: str, quantity=None, unit=None) -> ServiceUsageItem:
    return ServiceUsageItem(
        service_name=service,
        date=date(2025, 6, day),
        usage_type=usage_type,
        cost=Decimal(cost),
        usage_quantity=Decimal(quantity) if quantity is not None else None,
        usage_unit=unit,
    )


@pytest.mark.asyncio
async def test_export_period_usage_rows_are_replaced_on_rerun(db_session, make_account):
    account = await make_account("aws")
    service = CostPersistenceService(db_session)

    await service.save_export_period(
        account, "2025-06", Decimal("10"), Decimal("0"), [], june_points(),
        today=TODAY,
        usage_metrics=[
            usage("EC2", 1, "BoxUsage:t3.large", "4.00", "16", "Hrs"),
            usage("S3", 1, "TimedStorage-ByteHrs", "0.50", "20", "GB-Mo"),
            # Outside the billing period
            ServiceUsageItem(service_name="EC2", date=date(2025, 7, 1), usage_type="BoxUsage:t3.large", cost=Decimal("1")),
        ],
    )
    await db_session.commit()
    first = (await db_session.execute(select(ServiceUsageMetric))).scalars().all()

    await service.save_export_period(
        account, "2025-06", Decimal("10"), Decimal("0"), [], june_points(),
        today=TODAY,
        usage_metrics=[usage("EC2", 1, "BoxUsage:t3.large", "6.00", "24", "Hrs")],
    )
    await db_session.commit()
    second = (await db_session.execute(select(ServiceUsageMetric))).scalars().all()

    assert sorted(m.service_name for m in first) == ["EC2", "S3"]
    assert [(m.service_name, m.cost, m.usage_quantity, m.usage_unit) for m in second] == [
        ("EC2", Decimal("6.00"), Decimal("24.0000"), "Hrs")
    ]


@pytest.mark.asyncio
async def test_service_usage_is_summed_per_service_and_usage_type(db_session, make_account):
    aws = await make_account("aws")
    staging = await make_account("aws", name="Staging")
    service = CostPersistenceService(db_session)

    await service.save_export_period(
        aws, "2025-06", Decimal("10"), Decimal("0"), [], june_points(),
        today=TODAY,
        usage_metrics=[
            usage("EC2", 1, "BoxUsage:t3.large", "4.00", "16", "Hrs"),
            usage("EC2", 2, "BoxUsage:t3.large", "3.00", "12", "Hrs"),
            usage("EC2", 2, "Usage", "2.00"),
            usage("S3", 3, "TimedStorage-ByteHrs", "0.50", "20", "GB-Mo"),
        ],
    )
    await service.save_export_period(
        staging, "2025-06", Decimal("10"), Decimal("0"), [], june_points(),
        today=TODAY,
        usage_metrics=[usage("S3", 3, "TimedStorage-ByteHrs", "9.00", "300", "GB-Mo")],
    )
    await db_session.commit()

    rows = await service.get_service_usage("user-1", date(2025, 6, 1), date(2025, 6, 2), account_id=aws.id)
    everything = await service.get_service_usage("user-1", date(2025, 6, 1), date(2025, 6, 30))

    assert [(r["service_name"], r["usage_type"], r["total_cost"], r["total_usage"], r["usage_unit"]) for r in rows] == [
        ("EC2", "BoxUsage:t3.large", Decimal("7.00"), Decimal("28"), "Hrs"),
        ("EC2", "Usage", Decimal("2.00"), None, None),
    ]
    assert everything[0]["service_name"] == "S3"
    assert everything[0]["total_cost"] == Decimal("9.50")
    assert await service.get_service_usage("user-1", date(2025, 6, 1), date(2025, 6, 30), provider="gcp") == []
