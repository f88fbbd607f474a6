"""
AWS Cost Explorer Adapter (Native Async)

Direct-credential accounts use stored access keys; delegated-role accounts
exchange their role ARN + external ID through the RoleDelegationService.
Cost Explorer returns true daily granularity, so no series is synthesized.
"""

from collections.abc import Mapping
from datetime import date, timedelta
from decimal import Decimal
from typing import Any, Optional

import aioboto3
import structlog
from botocore.config import Config as BotoConfig

from costingest.models.cloud import CloudAccount
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
from costingest.shared.adapters.normalization import (
    previous_month_start,
    summarize_daily_rows,
)
from costingest.shared.adapters.role_delegation import RoleDelegationService
from costingest.shared.core.credentials import (
    AWSCredentials,
    CloudCredentials,
    CredentialResolution,
)
from costingest.shared.core.exceptions import AdapterError, DelegationError
from costingest.shared.core.retry import ProviderCallExecutor

logger = structlog.get_logger()

# Socket timeouts for all AWS API calls; retries are owned by ProviderCallExecutor.
BOTO_CONFIG = BotoConfig(
    read_timeout=30,
    connect_timeout=10,
    retries={"max_attempts": 1},
)

# Cost Explorer is served from us-east-1 only.
COST_EXPLORER_REGION = "us-east-1"

# Safety limit against runaway pagination
MAX_COST_EXPLORER_PAGES = 300

ZERO = Decimal("0")


class AWSAdapter(BaseAdapter):
    provider_id = "aws"
    aliases = ("amazon",)
    display_name = "AWS"
    credentials_model = AWSCredentials
    required_fields = ("accessKeyId", "secretAccessKey")

    def __init__(
        self,
        executor: ProviderCallExecutor,
        delegation: RoleDelegationService,
        session: Optional[aioboto3.Session] = None,
    ):
        super().__init__(executor)
        self.delegation = delegation
        self.session = session or aioboto3.Session()

    async def resolve_credentials(
        self, account: CloudAccount, stored_data: Optional[Mapping[str, Any]] = None
    ) -> CredentialResolution:
        if not account.is_delegated:
            return await super().resolve_credentials(account, stored_data)
        try:
            credentials = await self.delegation.assume_role(
                account.role_arn,
                account.external_id,
                account_id=account.provider_account_id,
            )
        except DelegationError as e:
            return CredentialResolution(error=e.message, error_kind=e.kind)
        return CredentialResolution(credentials=credentials)

    async def _ce_request(self, credentials: AWSCredentials, method: str, **params: Any) -> dict[str, Any]:
        client_kwargs = credentials.client_kwargs()
        client_kwargs["region_name"] = COST_EXPLORER_REGION
        async with self.session.client("ce", config=BOTO_CONFIG, **client_kwargs) as ce:
            return await getattr(ce, method)(**params)

    async def _paginate_cost_and_usage(
        self, credentials: AWSCredentials, params: dict[str, Any]
    ) -> list[dict[str, Any]]:
        results: list[dict[str, Any]] = []
        next_token: Optional[str] = None
        for _ in range(MAX_COST_EXPLORER_PAGES):
            page_params = dict(params)
            if next_token:
                page_params["NextPageToken"] = next_token
            response = await self._call(
                "get_cost_and_usage",
                self._ce_request,
                credentials,
                "get_cost_and_usage",
                **page_params,
            )
            results.extend(response.get("ResultsByTime", []))
            next_token = response.get("NextPageToken")
            if not next_token:
                return results
        logger.warning("aws_cost_explorer_page_limit_reached", pages=MAX_COST_EXPLORER_PAGES)
        return results

    @staticmethod
    def _grouped_rows(results: list[dict[str, Any]]) -> list[tuple[date, str, Decimal]]:
        rows: list[tuple[date, str, Decimal]] = []
        for result in results:
            day = date.fromisoformat(result["TimePeriod"]["Start"])
            for group in result.get("Groups", []):
                amount = Decimal(group["Metrics"]["UnblendedCost"]["Amount"])
                rows.append((day, group["Keys"][0], amount))
        return rows

    async def fetch_cost_data(
        self, credentials: CloudCredentials, start: date, end: date
    ) -> ProviderCostData:
        creds = self.parse_credentials(credentials)
        today = date.today()
        window_start = min(start, previous_month_start(today))
        # Cost Explorer end dates are exclusive.
        window_end = max(end, today) + timedelta(days=1)

        results = await self._paginate_cost_and_usage(
            creds,
            {
                "TimePeriod": {"Start": window_start.isoformat(), "End": window_end.isoformat()},
                "Granularity": "DAILY",
                "Metrics": ["UnblendedCost"],
                "GroupBy": [{"Type": "DIMENSION", "Key": "SERVICE"}],
            },
        )
        credits = await self._fetch_month_credits(creds, today)
        data = summarize_daily_rows(self.provider_id, self._grouped_rows(results), today, credits=credits)
        # Only report the requested window in the daily series.
        data.daily_points = [p for p in data.daily_points if start <= p.date <= end]
        logger.info(
            "aws_cost_data_fetched",
            current_month=str(data.current_month_total),
            services=len(data.services),
            days=len(data.daily_points),
        )
        return data

    async def _fetch_month_credits(self, creds: AWSCredentials, today: date) -> Decimal:
        month_start = today.replace(day=1)
        results = await self._paginate_cost_and_usage(
            creds,
            {
                "TimePeriod": {
                    "Start": month_start.isoformat(),
                    "End": (today + timedelta(days=1)).isoformat(),
                },
                "Granularity": "MONTHLY",
                "Metrics": ["UnblendedCost"],
                "GroupBy": [{"Type": "DIMENSION", "Key": "RECORD_TYPE"}],
            },
        )
        total = ZERO
        for result in results:
            for group in result.get("Groups", []):
                if group["Keys"][0] == "Credit":
                    total += Decimal(group["Metrics"]["UnblendedCost"]["Amount"])
        return abs(total)

    async def fetch_service_details(
        self, credentials: CloudCredentials, service_name: str, start: date, end: date
    ) -> ServiceDetails:
        creds = self.parse_credentials(credentials)
        results = await self._paginate_cost_and_usage(
            creds,
            {
                "TimePeriod": {
                    "Start": start.isoformat(),
                    "End": (end + timedelta(days=1)).isoformat(),
                },
                "Granularity": "DAILY",
                "Metrics": ["UnblendedCost"],
                "Filter": {"Dimensions": {"Key": "SERVICE", "Values": [service_name]}},
                "GroupBy": [{"Type": "DIMENSION", "Key": "USAGE_TYPE"}],
            },
        )
        by_day: dict[date, Decimal] = {}
        by_usage: dict[str, Decimal] = {}
        for day, usage_type, amount in self._grouped_rows(results):
            by_day[day] = by_day.get(day, ZERO) + amount
            by_usage[usage_type] = by_usage.get(usage_type, ZERO) + amount

        breakdown = [
            ServiceCostItem(name=name, cost=round_money(cost))
            for name, cost in sorted(by_usage.items(), key=lambda kv: kv[1], reverse=True)
        ]
        return ServiceDetails(
            provider=self.provider_id,
            service_name=service_name,
            total_cost=round_money(sum(by_day.values(), ZERO)),
            daily_points=[
                DailyCostPoint(date=day, cost=round_money(cost))
                for day, cost in sorted(by_day.items())
            ],
            usage_breakdown=breakdown,
        )

    async def fetch_recommendations(
        self, credentials: CloudCredentials, options: Optional[Mapping[str, Any]] = None
    ) -> RecommendationSet:
        creds = self.parse_credentials(credentials)
        try:
            response = await self._call(
                "get_rightsizing_recommendation",
                self._ce_request,
                creds,
                "get_rightsizing_recommendation",
                Service="AmazonEC2",
                Configuration={
                    "RecommendationTarget": "SAME_INSTANCE_FAMILY",
                    "BenefitsConsidered": True,
                },
            )
        except Exception as e:
            logger.error("aws_rightsizing_fetch_failed", error=str(e))
            raise AdapterError(f"AWS rightsizing recommendations failed: {e}") from e

        items = [
            self._parse_rightsizing(entry)
            for entry in response.get("RightsizingRecommendations", [])
        ]
        return RecommendationSet.from_items(self.provider_id, items)

    @staticmethod
    def _parse_rightsizing(entry: dict[str, Any]) -> Recommendation:
        current = entry.get("CurrentInstance", {})
        resource_id = current.get("ResourceId", "unknown")
        action_type = entry.get("RightsizingType", "Modify")
        if action_type == "Terminate":
            savings = entry.get("TerminateRecommendationDetail", {}).get("EstimatedMonthlySavings", "0")
            title = f"Terminate idle instance {resource_id}"
            action = "Terminate the instance; it shows no meaningful utilization."
        else:
            targets = entry.get("ModifyRecommendationDetail", {}).get("TargetInstances", [])
            savings = targets[0].get("EstimatedMonthlySavings", "0") if targets else "0"
            target_type = (
                targets[0].get("ResourceDetails", {}).get("EC2ResourceDetails", {}).get("InstanceType")
                if targets
                else None
            )
            title = f"Downsize instance {resource_id}"
            action = f"Change the instance type to {target_type}." if target_type else "Move to a smaller instance type."

        monthly_cost = current.get("MonthlyCost")
        return Recommendation(
            category="rightsizing",
            title=title,
            description=f"Cost Explorer rightsizing ({action_type.lower()}) for {resource_id}.",
            service_name="Amazon Elastic Compute Cloud - Compute",
            action=action,
            estimated_monthly_savings=round_money(savings or "0"),
            current_cost=round_money(monthly_cost) if monthly_cost else None,
            metadata={"resource_id": resource_id, "rightsizing_type": action_type},
        )
