from datetime import date, datetime
from decimal import Decimal
from typing import Any

import structlog

from costingest.schemas.costs import ProviderCostData, round_money
from costingest.shared.adapters.invoice import RestInvoiceAdapter
from costingest.shared.core.credentials import CloudCredentials, LinodeCredentials

logger = structlog.get_logger()

LINODE_API_BASE = "https://api.linode.com/v4"


class LinodeAdapter(RestInvoiceAdapter):
    provider_id = "linode"
    aliases = ("akamai",)
    display_name = "Linode"
    credentials_model = LinodeCredentials
    required_fields = ("apiToken",)

    @staticmethod
    def _last_month_total(invoices: list[dict[str, Any]], today: date) -> Decimal:
        # Invoices are issued on the first of the month following the usage.
        month_start = today.replace(day=1)
        total = Decimal("0")
        for invoice in invoices:
            raw = invoice.get("date")
            if not raw:
                continue
            issued = datetime.fromisoformat(str(raw).replace("Z", "+00:00")).date()
            if issued.replace(day=1) == month_start:
                total += Decimal(str(invoice.get("total") or 0))
        return round_money(total)

    async def fetch_cost_data(
        self, credentials: CloudCredentials, start: date, end: date
    ) -> ProviderCostData:
        creds = self.parse_credentials(credentials)
        headers = {"Authorization": f"Bearer {creds.api_token.get_secret_value()}"}
        today = date.today()

        account = await self._get_json("get_account", f"{LINODE_API_BASE}/account", headers=headers)
        invoices = await self._get_json(
            "list_invoices", f"{LINODE_API_BASE}/account/invoices", headers=headers
        )

        current = round_money(account.get("balance_uninvoiced") or "0")
        last_month = self._last_month_total(invoices.get("data", []), today)
        logger.info("linode_cost_data_fetched", current_month=str(current))
        return self._build_cost_data(current, last_month, today=today)
