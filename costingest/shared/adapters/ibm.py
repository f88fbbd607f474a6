"""
IBM Cloud billing adapter.

An API key is exchanged for an IAM bearer token, then the account summary
gives the month's billable cost and the usage report gives per-resource costs.
"""

from datetime import date
from decimal import Decimal
from typing import Any

import structlog

from costingest.schemas.costs import ProviderCostData, ServiceCostItem, round_money
from costingest.shared.adapters.invoice import RestInvoiceAdapter
from costingest.shared.adapters.normalization import percent_change, previous_month_start
from costingest.shared.core.credentials import CloudCredentials, IBMCredentials

logger = structlog.get_logger()

IAM_TOKEN_URL = "https://iam.cloud.ibm.com/identity/token"
IAM_APIKEY_GRANT = "urn:ibm:params:oauth:grant-type:apikey"
BILLING_API_BASE = "https://billing.cloud.ibm.com/v4/accounts"


class IBMCloudAdapter(RestInvoiceAdapter):
    provider_id = "ibm"
    aliases = ("ibmcloud", "softlayer")
    display_name = "IBM Cloud"
    credentials_model = IBMCredentials
    required_fields = ("apiKey", "accountId")

    async def _iam_token(self, creds: IBMCredentials) -> str:
        payload = await self._call(
            "iam_token",
            self._request_json,
            "POST",
            IAM_TOKEN_URL,
            headers={"Accept": "application/json"},
            data={"grant_type": IAM_APIKEY_GRANT, "apikey": creds.api_key.get_secret_value()},
        )
        return str(payload["access_token"])

    @staticmethod
    def _billable(summary: dict[str, Any]) -> Decimal:
        return round_money(summary.get("resources", {}).get("billable_cost") or "0")

    @staticmethod
    def _resource_costs(usage: dict[str, Any]) -> dict[str, Decimal]:
        costs: dict[str, Decimal] = {}
        for resource in usage.get("resources", []):
            name = resource.get("resource_name") or resource.get("resource_id") or "Other"
            costs[name] = costs.get(name, Decimal("0")) + Decimal(str(resource.get("billable_cost") or 0))
        return costs

    async def fetch_cost_data(
        self, credentials: CloudCredentials, start: date, end: date
    ) -> ProviderCostData:
        creds = self.parse_credentials(credentials)
        token = await self._iam_token(creds)
        headers = {"Authorization": f"Bearer {token}", "Accept": "application/json"}
        today = date.today()
        month = today.strftime("%Y-%m")
        last_month = previous_month_start(today).strftime("%Y-%m")
        base = f"{BILLING_API_BASE}/{creds.account_id}"

        summary = await self._get_json("get_summary", f"{base}/summary/{month}", headers=headers)
        last_summary = await self._get_json("get_summary", f"{base}/summary/{last_month}", headers=headers)
        usage = await self._get_json("get_usage", f"{base}/usage/{month}", headers=headers)
        last_usage = await self._get_json("get_usage", f"{base}/usage/{last_month}", headers=headers)

        current_total = self._billable(summary)
        previous = self._resource_costs(last_usage)
        services = [
            ServiceCostItem(
                name=name,
                cost=round_money(cost),
                change_percent=percent_change(cost, previous.get(name, Decimal("0"))),
            )
            for name, cost in sorted(self._resource_costs(usage).items(), key=lambda kv: kv[1], reverse=True)
            if round_money(cost) != 0
        ]
        logger.info(
            "ibm_cost_data_fetched",
            account_id=creds.account_id,
            current_month=str(current_total),
            services=len(services),
        )
        return self._build_cost_data(
            current_total, self._billable(last_summary), services=services, today=today
        )
