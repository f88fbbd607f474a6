from datetime import date
from decimal import Decimal
from typing import Any

import structlog

from costingest.schemas.costs import ProviderCostData, round_money
from costingest.shared.adapters.invoice import RestInvoiceAdapter
from costingest.shared.adapters.normalization import previous_month_start
from costingest.shared.core.credentials import CloudCredentials, DigitalOceanCredentials

logger = structlog.get_logger()

DO_API_BASE = "https://api.digitalocean.com/v2"


class DigitalOceanAdapter(RestInvoiceAdapter):
    """DigitalOcean billing: month-to-date usage from the balance, last month from invoices."""

    provider_id = "digitalocean"
    aliases = ("do",)
    display_name = "DigitalOcean"
    credentials_model = DigitalOceanCredentials
    required_fields = ("apiToken",)

    @staticmethod
    def _headers(creds: DigitalOceanCredentials) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {creds.api_token.get_secret_value()}",
            "Content-Type": "application/json",
        }

    @staticmethod
    def _last_month_amount(invoices: list[dict[str, Any]], today: date) -> Decimal:
        period = previous_month_start(today).strftime("%Y-%m")
        for invoice in invoices:
            if invoice.get("invoice_period") == period:
                return round_money(invoice.get("amount") or "0")
        return Decimal("0")

    async def fetch_cost_data(
        self, credentials: CloudCredentials, start: date, end: date
    ) -> ProviderCostData:
        creds = self.parse_credentials(credentials)
        headers = self._headers(creds)
        today = date.today()

        balance = await self._get_json(
            "get_balance", f"{DO_API_BASE}/customers/my/balance", headers=headers
        )
        invoices = await self._get_json(
            "list_invoices", f"{DO_API_BASE}/customers/my/invoices", headers=headers
        )

        current = round_money(balance.get("month_to_date_usage") or "0")
        last_month = self._last_month_amount(invoices.get("invoices", []), today)
        logger.info("digitalocean_cost_data_fetched", current_month=str(current))
        return self._build_cost_data(current, last_month, today=today)
