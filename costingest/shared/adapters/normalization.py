"""
Shared normalization for adapters that receive per-day, per-service rows.

Turns `(day, service, cost)` rows into the canonical ProviderCostData:
current / previous month totals, run-rate forecast, service breakdown with
month-over-month change, and a per-day series.
"""

import calendar
from collections import defaultdict
from collections.abc import Iterable
from datetime import date, timedelta
from decimal import Decimal
from typing import Optional

from costingest.schemas.costs import (
    DailyCostPoint,
    ProviderCostData,
    ServiceCostItem,
    round_money,
)

ZERO = Decimal("0")


def previous_month_start(today: date) -> date:
    return (today.replace(day=1) - timedelta(days=1)).replace(day=1)


def project_month_forecast(current_month_total: Decimal, today: date) -> Decimal:
    """Linear run-rate projection of the month-to-date total over the whole month."""
    if current_month_total <= 0:
        return ZERO
    days_in_month = calendar.monthrange(today.year, today.month)[1]
    return round_money(current_month_total / today.day * days_in_month)


def percent_change(current: Decimal, previous: Decimal) -> Decimal:
    if previous <= 0:
        return ZERO
    return round_money((current - previous) / previous * 100)


def summarize_daily_rows(
    provider: str,
    rows: Iterable[tuple[date, str, Decimal]],
    today: Optional[date] = None,
    credits: Decimal = ZERO,
    currency: str = "USD",
) -> ProviderCostData:
    today = today or date.today()
    month_start = today.replace(day=1)
    last_month_start = previous_month_start(today)

    by_day: dict[date, Decimal] = defaultdict(lambda: ZERO)
    current_by_service: dict[str, Decimal] = defaultdict(lambda: ZERO)
    previous_by_service: dict[str, Decimal] = defaultdict(lambda: ZERO)

    for day, service, cost in rows:
        by_day[day] += cost
        if day >= month_start:
            current_by_service[service] += cost
        elif day >= last_month_start:
            previous_by_service[service] += cost

    current_total = round_money(sum(current_by_service.values(), ZERO))
    last_total = round_money(sum(previous_by_service.values(), ZERO))

    services = [
        ServiceCostItem(
            name=name,
            cost=round_money(cost),
            change_percent=percent_change(cost, previous_by_service.get(name, ZERO)),
        )
        for name, cost in current_by_service.items()
        if round_money(cost) != 0
    ]
    services.sort(key=lambda item: item.cost, reverse=True)

    return ProviderCostData(
        provider=provider,
        current_month_total=current_total,
        last_month_total=last_total,
        forecast=project_month_forecast(current_total, today),
        credits=round_money(credits),
        currency=currency,
        services=services,
        daily_points=[
            DailyCostPoint(date=day, cost=round_money(cost))
            for day, cost in sorted(by_day.items())
        ],
    )
