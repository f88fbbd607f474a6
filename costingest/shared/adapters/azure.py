from collections.abc import Mapping
from datetime import date, datetime, time, timezone
from decimal import Decimal
from typing import Any, Optional

import httpx
import structlog
from azure.core.exceptions import (
    AzureError,
    ClientAuthenticationError,
    HttpResponseError,
    ServiceRequestError,
    ServiceResponseError,
)
from azure.identity.aio import ClientSecretCredential
from azure.mgmt.costmanagement.aio import CostManagementClient
from azure.mgmt.costmanagement.models import (
    QueryAggregation,
    QueryComparisonExpression,
    QueryDataset,
    QueryDefinition,
    QueryFilter,
    QueryGrouping,
    QueryTimePeriod,
)

from costingest.schemas.costs import (
    DailyCostPoint,
    ProviderCostData,
    Recommendation,
    RecommendationSet,
    ServiceCostItem,
    ServiceDetails,
    round_money,
)
from costingest.shared.adapters.base import BaseAdapter
from costingest.shared.adapters.normalization import previous_month_start, summarize_daily_rows
from costingest.shared.core.credentials import AzureCredentials, CloudCredentials
from costingest.shared.core.exceptions import ExternalAPIError
from costingest.shared.core.retry import ProviderCallExecutor

logger = structlog.get_logger()

MANAGEMENT_SCOPE = "https://management.azure.com/.default"
ADVISOR_URL = (
    "https://management.azure.com/subscriptions/{subscription_id}"
    "/providers/Microsoft.Advisor/recommendations"
)
ADVISOR_API_VERSION = "2020-01-01"


def translate_azure_error(exc: AzureError) -> ExternalAPIError:
    """Map Azure SDK failures onto the shared transient/permanent classification."""
    if isinstance(exc, (ServiceRequestError, ServiceResponseError)):
        return ExternalAPIError(f"Azure request failed: {exc}", retryable=True)
    if isinstance(exc, ClientAuthenticationError):
        return ExternalAPIError(
            f"Azure authentication failed: {exc.message}",
            code="azure_auth_failed",
            upstream_status=401,
            retryable=False,
        )
    if isinstance(exc, HttpResponseError):
        return ExternalAPIError(
            f"Azure Cost Management error: {exc.message}",
            upstream_status=exc.status_code,
        )
    return ExternalAPIError(f"Azure error: {exc}", retryable=False)


def _parse_usage_date(raw: Any) -> date:
    text = str(raw).strip()
    for fmt in ("%Y%m%d", "%Y-%m-%d", "%Y-%m-%dT%H:%M:%S", "%Y-%m-%dT%H:%M:%SZ"):
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return datetime.fromisoformat(text.replace("Z", "+00:00")).date()


class AzureAdapter(BaseAdapter):
    """
    Azure Cost Management adapter using the official Azure SDK.

    The Query API returns daily granularity grouped by service.
    """

    provider_id = "azure"
    aliases = ("microsoft", "msft")
    display_name = "Azure"
    credentials_model = AzureCredentials
    required_fields = ("tenantId", "clientId", "clientSecret", "subscriptionId")

    def __init__(self, executor: ProviderCallExecutor, http_client: httpx.AsyncClient):
        super().__init__(executor)
        self.http_client = http_client

    @staticmethod
    def _credential(creds: AzureCredentials) -> ClientSecretCredential:
        return ClientSecretCredential(
            tenant_id=creds.tenant_id,
            client_id=creds.client_id,
            client_secret=creds.client_secret.get_secret_value(),
        )

    @staticmethod
    def _build_query(
        start: date, end: date, grouping: str, service_name: Optional[str] = None
    ) -> QueryDefinition:
        query_filter = None
        if service_name:
            query_filter = QueryFilter(
                dimensions=QueryComparisonExpression(
                    name="ServiceName", operator="In", values=[service_name]
                )
            )
        return QueryDefinition(
            type="ActualCost",
            timeframe="Custom",
            time_period=QueryTimePeriod(
                from_property=datetime.combine(start, time.min, tzinfo=timezone.utc),
                to=datetime.combine(end, time.max, tzinfo=timezone.utc),
            ),
            dataset=QueryDataset(
                granularity="Daily",
                aggregation={"totalCost": QueryAggregation(name="PreTaxCost", function="Sum")},
                grouping=[QueryGrouping(type="Dimension", name=grouping)],
                filter=query_filter,
            ),
        )

    async def _query_usage(self, creds: AzureCredentials, definition: QueryDefinition) -> Any:
        scope = f"/subscriptions/{creds.subscription_id}"
        try:
            async with self._credential(creds) as credential:
                async with CostManagementClient(credential=credential) as client:
                    return await client.query.usage(scope=scope, parameters=definition)
        except AzureError as e:
            raise translate_azure_error(e) from e

    @staticmethod
    def _rows(result: Any, group_column: str) -> list[tuple[date, str, Decimal]]:
        if result is None or not result.rows:
            return []
        names = [column.name for column in result.columns]
        cost_idx = names.index("PreTaxCost")
        date_idx = names.index("UsageDate")
        group_idx = names.index(group_column)
        return [
            (_parse_usage_date(row[date_idx]), str(row[group_idx] or "Other"), Decimal(str(row[cost_idx])))
            for row in result.rows
        ]

    async def fetch_cost_data(
        self, credentials: CloudCredentials, start: date, end: date
    ) -> ProviderCostData:
        creds = self.parse_credentials(credentials)
        today = date.today()
        window_start = min(start, previous_month_start(today))
        window_end = max(end, today)
        result = await self._call(
            "query_usage",
            self._query_usage,
            creds,
            self._build_query(window_start, window_end, "ServiceName"),
        )
        data = summarize_daily_rows(self.provider_id, self._rows(result, "ServiceName"), today)
        data.daily_points = [p for p in data.daily_points if start <= p.date <= end]
        logger.info(
            "azure_cost_data_fetched",
            subscription_id=creds.subscription_id,
            current_month=str(data.current_month_total),
        )
        return data

    async def fetch_service_details(
        self, credentials: CloudCredentials, service_name: str, start: date, end: date
    ) -> ServiceDetails:
        creds = self.parse_credentials(credentials)
        result = await self._call(
            "query_usage",
            self._query_usage,
            creds,
            self._build_query(start, end, "MeterCategory", service_name=service_name),
        )
        by_day: dict[date, Decimal] = {}
        by_meter: dict[str, Decimal] = {}
        for day, meter, cost in self._rows(result, "MeterCategory"):
            by_day[day] = by_day.get(day, Decimal("0")) + cost
            by_meter[meter] = by_meter.get(meter, Decimal("0")) + cost
        return ServiceDetails(
            provider=self.provider_id,
            service_name=service_name,
            total_cost=round_money(sum(by_day.values(), Decimal("0"))),
            daily_points=[DailyCostPoint(date=d, cost=round_money(c)) for d, c in sorted(by_day.items())],
            usage_breakdown=[
                ServiceCostItem(name=name, cost=round_money(cost))
                for name, cost in sorted(by_meter.items(), key=lambda kv: kv[1], reverse=True)
            ],
        )

    async def _advisor_recommendations(self, creds: AzureCredentials) -> list[dict[str, Any]]:
        try:
            async with self._credential(creds) as credential:
                token = await credential.get_token(MANAGEMENT_SCOPE)
        except AzureError as e:
            raise translate_azure_error(e) from e

        response = await self.http_client.get(
            ADVISOR_URL.format(subscription_id=creds.subscription_id),
            params={"api-version": ADVISOR_API_VERSION, "$filter": "Category eq 'Cost'"},
            headers={"Authorization": f"Bearer {token.token}"},
        )
        response.raise_for_status()
        return response.json().get("value", [])

    async def fetch_recommendations(
        self, credentials: CloudCredentials, options: Optional[Mapping[str, Any]] = None
    ) -> RecommendationSet:
        creds = self.parse_credentials(credentials)
        entries = await self._call("advisor_recommendations", self._advisor_recommendations, creds)
        items = []
        for entry in entries:
            props = entry.get("properties", {})
            extended = props.get("extendedProperties", {}) or {}
            short = props.get("shortDescription", {}) or {}
            savings = extended.get("annualSavingsAmount") or extended.get("savingsAmount") or "0"
            monthly = round_money(Decimal(str(savings)) / 12) if extended.get("annualSavingsAmount") else round_money(savings)
            items.append(
                Recommendation(
                    category="cost",
                    title=short.get("problem") or "Azure Advisor cost recommendation",
                    description=short.get("solution") or "",
                    service_name=props.get("impactedField"),
                    priority=str(props.get("impact", "Medium")).lower(),
                    estimated_monthly_savings=monthly,
                    metadata={"resource_id": props.get("resourceMetadata", {}).get("resourceId")},
                )
            )
        return RecommendationSet.from_items(self.provider_id, items)
