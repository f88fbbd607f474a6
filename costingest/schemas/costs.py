import datetime as dt
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional

from pydantic import BaseModel, Field

CENT = Decimal("0.01")


def round_money(value: Decimal | float | int | str) -> Decimal:
    """Round to currency minor-unit precision (half up)."""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


class DailyCostPoint(BaseModel):
    """One day's cost in the canonical shape."""

    date: dt.date
    cost: Decimal


class ServiceCostItem(BaseModel):
    name: str
    cost: Decimal
    change_percent: Decimal = Decimal("0")


class ServiceUsageItem(BaseModel):
    """One service's cost and usage quantity for a day and usage type."""

    service_name: str
    date: dt.date
    usage_type: str
    cost: Decimal
    usage_quantity: Optional[Decimal] = None
    usage_unit: Optional[str] = None


class ProviderCostData(BaseModel):
    """
    Normalized output of an adapter's cost fetch.

    `daily_points` is empty when the upstream API only exposes monthly totals;
    the adapter's `synthesize_daily_data` fills the series in that case.
    """

    provider: str
    current_month_total: Decimal = Decimal("0")
    last_month_total: Decimal = Decimal("0")
    forecast: Decimal = Decimal("0")
    credits: Decimal = Decimal("0")
    currency: str = "USD"
    services: list[ServiceCostItem] = Field(default_factory=list)
    daily_points: list[DailyCostPoint] = Field(default_factory=list)


class ServiceDetails(BaseModel):
    provider: str
    service_name: str
    total_cost: Decimal = Decimal("0")
    daily_points: list[DailyCostPoint] = Field(default_factory=list)
    usage_breakdown: list[ServiceCostItem] = Field(default_factory=list)


class Recommendation(BaseModel):
    category: str
    title: str
    description: str
    service_name: Optional[str] = None
    action: Optional[str] = None
    priority: str = "medium"
    confidence: str = "medium"
    estimated_monthly_savings: Decimal = Decimal("0")
    current_cost: Optional[Decimal] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class RecommendationSet(BaseModel):
    source: str
    recommendations: list[Recommendation] = Field(default_factory=list)
    total_potential_savings: Decimal = Decimal("0")

    @property
    def recommendation_count(self) -> int:
        return len(self.recommendations)

    @classmethod
    def empty(cls, source: str) -> "RecommendationSet":
        return cls(source=source)

    @classmethod
    def from_items(cls, source: str, items: list[Recommendation]) -> "RecommendationSet":
        return cls(
            source=source,
            recommendations=items,
            total_potential_savings=round_money(
                sum((r.estimated_monthly_savings for r in items), Decimal("0"))
            ),
        )
