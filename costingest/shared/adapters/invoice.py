"""
Shared plumbing for invoice-only providers reached over REST.

DigitalOcean, Linode, Vultr, IBM Cloud and MongoDB Atlas expose a
month-to-date balance plus closed invoices, not a daily cost series.
"""

from abc import ABC
from datetime import date
from decimal import Decimal
from typing import Any, Optional

import httpx
import structlog

from costingest.schemas.costs import ProviderCostData, ServiceCostItem, ServiceDetails
from costingest.shared.adapters.base import InvoiceOnlyAdapter
from costingest.shared.adapters.normalization import percent_change, project_month_forecast
from costingest.shared.core.credentials import CloudCredentials
from costingest.shared.core.exceptions import ExternalAPIError
from costingest.shared.core.retry import ProviderCallExecutor

logger = structlog.get_logger()


class RestInvoiceAdapter(InvoiceOnlyAdapter, ABC):
    def __init__(self, executor: ProviderCallExecutor, http_client: httpx.AsyncClient):
        super().__init__(executor)
        self.http_client = http_client

    async def _request_json(
        self,
        method: str,
        url: str,
        *,
        headers: Optional[dict[str, str]] = None,
        params: Optional[dict[str, Any]] = None,
        data: Optional[dict[str, Any]] = None,
        auth: Optional[httpx.Auth] = None,
    ) -> Any:
        response = await self.http_client.request(
            method, url, headers=headers, params=params, data=data, auth=auth
        )
        if response.status_code >= 400:
            raise ExternalAPIError(
                f"{self.display_name} API error: {response.status_code} {response.reason_phrase}",
                upstream_status=response.status_code,
                details={"url": url},
            )
        return response.json()

    async def _get_json(self, operation: str, url: str, **kwargs: Any) -> Any:
        return await self._call(operation, self._request_json, "GET", url, **kwargs)

    def _build_cost_data(
        self,
        current_month_total: Decimal,
        last_month_total: Decimal,
        services: Optional[list[ServiceCostItem]] = None,
        today: Optional[date] = None,
    ) -> ProviderCostData:
        """Month totals plus a single-line service breakdown when none is itemized."""
        today = today or date.today()
        if services is None:
            services = (
                [
                    ServiceCostItem(
                        name=f"{self.display_name} Services",
                        cost=current_month_total,
                        change_percent=percent_change(current_month_total, last_month_total),
                    )
                ]
                if current_month_total > 0
                else []
            )
        return ProviderCostData(
            provider=self.provider_id,
            current_month_total=current_month_total,
            last_month_total=last_month_total,
            forecast=project_month_forecast(current_month_total, today),
            services=services,
        )

    async def fetch_service_details(
        self, credentials: CloudCredentials, service_name: str, start: date, end: date
    ) -> ServiceDetails:
        """
        Invoice-only providers have no per-service daily data; the detail is the
        service's share of the current month with a synthesized series.
        """
        cost_data = await self.fetch_cost_data(credentials, start, end)
        match = next((s for s in cost_data.services if s.name == service_name), None)
        if match is None:
            return ServiceDetails(provider=self.provider_id, service_name=service_name)
        service_only = ProviderCostData(provider=self.provider_id, current_month_total=match.cost)
        return ServiceDetails(
            provider=self.provider_id,
            service_name=service_name,
            total_cost=match.cost,
            daily_points=self.synthesize_daily_data(service_only, start, end),
        )
