"""
MongoDB Atlas billing adapter.

Atlas exposes invoices only. The pending invoice's line items carry a start
date and SKU, which gives both a service breakdown and per-day points; the
synthesized series is used only when the invoice has no line items yet.
"""

from collections import defaultdict
from collections.abc import Mapping
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Optional

import httpx
import structlog

from costingest.schemas.costs import (
    DailyCostPoint,
    ProviderCostData,
    Recommendation,
    RecommendationSet,
    ServiceCostItem,
    round_money,
)
from costingest.shared.adapters.invoice import RestInvoiceAdapter
from costingest.shared.adapters.normalization import previous_month_start
from costingest.shared.core.credentials import CloudCredentials, MongoDBAtlasCredentials
from costingest.shared.core.exceptions import CostIngestException

logger = structlog.get_logger()

ATLAS_API_BASE = "https://cloud.mongodb.com/api/atlas/v2"
ATLAS_ACCEPT = "application/vnd.atlas.2023-01-01+json"

DATA_TRANSFER = "Data Transfer"
BACKUP = "Backup"
CLUSTERS = "Clusters"

# (service, share of spend that triggers, savings fraction, category, subcategory, priority, confidence)
HEURISTICS = (
    (DATA_TRANSFER, Decimal("0.20"), Decimal("0.30"), "data_transfer", "vpc_peering", "medium", "medium"),
    (BACKUP, Decimal("0.15"), Decimal("0.20"), "storage_optimization", "backup_policy", "low", "low"),
)

RECOMMENDATION_TEXT = {
    DATA_TRANSFER: (
        "High data transfer costs detected",
        "Data transfer accounts for over 20% of your MongoDB Atlas spend. Consider enabling "
        "VPC Peering or Private Endpoints to reduce cross-network data transfer charges.",
        "Enable VPC Peering or AWS PrivateLink / Azure Private Link to reduce data transfer costs.",
    ),
    BACKUP: (
        "Review backup retention policy",
        "Backup costs are a significant portion of your MongoDB Atlas spend. Review your backup "
        "snapshot schedule and retention period to optimize costs.",
        "Reduce backup frequency or retention period if business requirements allow.",
    ),
}


def service_for_sku(sku: str) -> str:
    sku = (sku or "").upper()
    if "DATA_TRANSFER" in sku:
        return DATA_TRANSFER
    if "BACKUP" in sku or "SNAPSHOT" in sku:
        return BACKUP
    if "INSTANCE" in sku:
        return CLUSTERS
    return "Other"


def _cents(value: Any) -> Decimal:
    return Decimal(str(value or 0)) / 100


class MongoDBAtlasAdapter(RestInvoiceAdapter):
    provider_id = "mongodb"
    aliases = ("mongodbatlas", "atlas")
    display_name = "MongoDB Atlas"
    credentials_model = MongoDBAtlasCredentials
    required_fields = ("publicKey", "privateKey", "orgId")

    @staticmethod
    def _auth(creds: MongoDBAtlasCredentials) -> httpx.DigestAuth:
        return httpx.DigestAuth(creds.public_key, creds.private_key.get_secret_value())

    @staticmethod
    def _line_item_day(item: Mapping[str, Any]) -> Optional[date]:
        raw = item.get("startDate")
        if not raw:
            return None
        return datetime.fromisoformat(str(raw).replace("Z", "+00:00")).date()

    def _summarize_pending(
        self, invoice: Mapping[str, Any], start: date, end: date
    ) -> tuple[Decimal, dict[str, Decimal], list[DailyCostPoint]]:
        by_service: dict[str, Decimal] = defaultdict(Decimal)
        by_day: dict[date, Decimal] = defaultdict(Decimal)
        for item in invoice.get("lineItems", []):
            cost = _cents(item.get("totalPriceCents"))
            by_service[service_for_sku(item.get("sku", ""))] += cost
            day = self._line_item_day(item)
            if day is not None and start <= day <= end:
                by_day[day] += cost
        total = round_money(_cents(invoice.get("amountBilledCents")))
        points = [DailyCostPoint(date=d, cost=round_money(c)) for d, c in sorted(by_day.items())]
        return total, by_service, points

    @staticmethod
    def _last_month_total(invoices: list[dict[str, Any]], today: date) -> Decimal:
        usage_month = previous_month_start(today)
        for invoice in invoices:
            raw = invoice.get("startDate")
            if not raw:
                continue
            started = datetime.fromisoformat(str(raw).replace("Z", "+00:00")).date()
            if started.replace(day=1) == usage_month:
                return round_money(_cents(invoice.get("amountBilledCents")))
        return Decimal("0")

    async def fetch_cost_data(
        self, credentials: CloudCredentials, start: date, end: date
    ) -> ProviderCostData:
        creds = self.parse_credentials(credentials)
        kwargs: dict[str, Any] = {"headers": {"Accept": ATLAS_ACCEPT}, "auth": self._auth(creds)}
        today = date.today()
        org_url = f"{ATLAS_API_BASE}/orgs/{creds.org_id}"

        pending = await self._get_json("pending_invoice", f"{org_url}/invoices/pending", **kwargs)
        invoices = await self._get_json("list_invoices", f"{org_url}/invoices", **kwargs)

        current_total, by_service, points = self._summarize_pending(pending, start, end)
        last_month = self._last_month_total(invoices.get("results", []), today)
        services = [
            ServiceCostItem(name=name, cost=round_money(cost))
            for name, cost in sorted(by_service.items(), key=lambda kv: kv[1], reverse=True)
            if round_money(cost) != 0
        ]
        data = self._build_cost_data(current_total, last_month, services=services or None, today=today)
        data.daily_points = points
        logger.info(
            "mongodb_cost_data_fetched",
            org_id=creds.org_id,
            current_month=str(current_total),
            line_item_days=len(points),
        )
        return data

    async def fetch_recommendations(
        self, credentials: CloudCredentials, options: Optional[Mapping[str, Any]] = None
    ) -> RecommendationSet:
        """
        Atlas has no recommendations API; flag services whose share of the
        month's spend suggests a configuration change.
        """
        today = date.today()
        try:
            cost_data = await self.fetch_cost_data(credentials, today - timedelta(days=90), today)
        except CostIngestException as e:
            logger.warning("mongodb_recommendations_unavailable", error=e.message)
            return RecommendationSet.empty(self.provider_id)

        total = sum((s.cost for s in cost_data.services), Decimal("0"))
        if total <= 0:
            return RecommendationSet.empty(self.provider_id)

        items = []
        for service in cost_data.services:
            for name, threshold, fraction, category, subcategory, priority, confidence in HEURISTICS:
                if service.name != name or service.cost / total <= threshold:
                    continue
                title, description, action = RECOMMENDATION_TEXT[name]
                items.append(
                    Recommendation(
                        category=category,
                        title=title,
                        description=description,
                        service_name=name,
                        action=action,
                        priority=priority,
                        confidence=confidence,
                        estimated_monthly_savings=round_money(service.cost * fraction),
                        current_cost=service.cost,
                        metadata={"subcategory": subcategory},
                    )
                )
        return RecommendationSet.from_items(self.provider_id, items)
