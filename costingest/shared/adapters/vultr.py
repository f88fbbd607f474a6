from datetime import date, datetime
from decimal import Decimal
from typing import Any

import structlog

from costingest.schemas.costs import ProviderCostData, round_money
from costingest.shared.adapters.invoice import RestInvoiceAdapter
from costingest.shared.core.credentials import CloudCredentials, VultrCredentials

logger = structlog.get_logger()

VULTR_API_BASE = "https://api.vultr.com/v2"


class VultrAdapter(RestInvoiceAdapter):
    provider_id = "vultr"
    display_name = "Vultr"
    credentials_model = VultrCredentials
    required_fields = ("apiKey",)

    @staticmethod
    def _last_month_total(invoices: list[dict[str, Any]], today: date) -> Decimal:
        month_start = today.replace(day=1)
        total = Decimal("0")
        for invoice in invoices:
            raw = invoice.get("date")
            if not raw:
                continue
            issued = datetime.fromisoformat(str(raw).replace("Z", "+00:00")).date()
            if issued.replace(day=1) == month_start:
                total += Decimal(str(invoice.get("amount") or 0))
        return round_money(total)

    async def fetch_cost_data(
        self, credentials: CloudCredentials, start: date, end: date
    ) -> ProviderCostData:
        creds = self.parse_credentials(credentials)
        headers = {"Authorization": f"Bearer {creds.api_key.get_secret_value()}"}
        today = date.today()

        account = await self._get_json("get_account", f"{VULTR_API_BASE}/account", headers=headers)
        invoices = await self._get_json(
            "list_invoices", f"{VULTR_API_BASE}/billing/invoices", headers=headers
        )

        current = round_money(account.get("account", {}).get("pending_charges") or "0")
        last_month = self._last_month_total(invoices.get("billing_invoices", []), today)
        logger.info("vultr_cost_data_fetched", current_month=str(current))
        return self._build_cost_data(current, last_month, today=today)
