"""
Daily series synthesis for invoice-only providers.

Providers such as DigitalOcean or Linode only report a month-to-date total.
Charts still need a daily series, so the total is spread evenly over the
elapsed days of the current month. The flat distribution only feeds chart
rendering; finalized months are overwritten by bulk-export data.
"""

from datetime import date, timedelta
from decimal import Decimal
from typing import Optional

import structlog

from costingest.schemas.costs import DailyCostPoint, round_money

logger = structlog.get_logger()


def synthesize_daily_series(
    monthly_total: Decimal,
    start: Optional[date],
    end: Optional[date],
    today: Optional[date] = None,
) -> list[DailyCostPoint]:
    """
    Spread `monthly_total` over the days of the current month up to
    min(end, today), inclusive.

    `start` is accepted for contract symmetry; the series always begins on the
    first day of the current month because that is what the total covers.
    """
    today = today or date.today()
    total = Decimal(str(monthly_total or 0))
    if total <= 0:
        return []

    month_start = today.replace(day=1)
    effective_end = min(end, today) if end is not None else today
    if effective_end < month_start:
        return []

    days_elapsed = (effective_end - month_start).days + 1
    daily_cost = round_money(total / days_elapsed)

    logger.debug(
        "daily_series_synthesized",
        monthly_total=str(total),
        days_elapsed=days_elapsed,
        daily_cost=str(daily_cost),
    )
    return [
        DailyCostPoint(date=month_start + timedelta(days=offset), cost=daily_cost)
        for offset in range(days_elapsed)
    ]
