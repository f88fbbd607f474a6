import asyncio
import json
import re
from datetime import date, datetime, time, timezone
from decimal import Decimal
from typing import Any, Optional, cast

import structlog
from google.api_core.exceptions import (
    DeadlineExceeded,
    GoogleAPICallError,
    ServiceUnavailable,
    TooManyRequests,
)
from google.auth.credentials import Credentials as GoogleCredentials
from google.auth.exceptions import TransportError
from google.cloud import bigquery
from google.oauth2 import service_account

from costingest.schemas.costs import (
    DailyCostPoint,
    ProviderCostData,
    ServiceCostItem,
    ServiceDetails,
    round_money,
)
from costingest.shared.adapters.base import BaseAdapter
from costingest.shared.adapters.normalization import previous_month_start, summarize_daily_rows
from costingest.shared.core.credentials import CloudCredentials, GCPCredentials
from costingest.shared.core.exceptions import ConfigurationError, ExternalAPIError

logger = structlog.get_logger()

PROJECT_ID_PATTERN = re.compile(r"^[a-z][a-z0-9\-]{4,28}[a-z0-9]$")
# BigQuery identifiers interpolated into SQL: alphanumerics, hyphens, underscores, dots
SAFE_IDENTIFIER = re.compile(r"^[a-zA-Z0-9.\-_]+$")


def validate_project_id(project_id: str) -> bool:
    """Validate GCP project ID format."""
    return bool(PROJECT_ID_PATTERN.match(project_id))


def translate_google_error(exc: Exception) -> ExternalAPIError:
    if isinstance(exc, (ServiceUnavailable, DeadlineExceeded, TooManyRequests, TransportError)):
        return ExternalAPIError(f"GCP BigQuery request failed: {exc}", retryable=True)
    if isinstance(exc, GoogleAPICallError):
        return ExternalAPIError(
            f"GCP BigQuery error: {exc.message}",
            upstream_status=cast(Optional[int], exc.code),
        )
    return ExternalAPIError(f"GCP error: {exc}", retryable=False)


class GCPAdapter(BaseAdapter):
    """
    Google Cloud adapter reading the Cloud Billing export in BigQuery.

    Standard practice for GCP FinOps is to export billing data to BigQuery;
    the export is already daily so no series is synthesized.
    """

    provider_id = "gcp"
    aliases = ("google", "googlecloud")
    display_name = "GCP"
    credentials_model = GCPCredentials
    required_fields = ("projectId", "serviceAccountKey")

    def validate_credentials(self, credentials: Any) -> bool:
        if not super().validate_credentials(credentials):
            return False
        creds = self.parse_credentials(credentials)
        return validate_project_id(creds.project_id)

    def _google_credentials(self, creds: GCPCredentials) -> GoogleCredentials:
        try:
            info = json.loads(creds.service_account_json.get_secret_value())
        except ValueError as e:
            raise ConfigurationError("GCP service account key is not valid JSON") from e
        return cast(
            GoogleCredentials,
            service_account.Credentials.from_service_account_info(info),  # type: ignore[no-untyped-call]
        )

    def _table_path(self, creds: GCPCredentials) -> str:
        if not creds.billing_dataset or not creds.billing_table:
            raise ConfigurationError(
                "GCP billing export not configured (requires billingDataset and billingTable)"
            )
        billing_project = creds.billing_project_id or creds.project_id
        parts = [billing_project, creds.billing_dataset, creds.billing_table]
        if not all(SAFE_IDENTIFIER.match(p) for p in parts):
            logger.error("gcp_bq_invalid_table_path", project=billing_project)
            raise ConfigurationError(f"Invalid BigQuery table path: '{'.'.join(parts)}'")
        return ".".join(parts)

    async def _run_query(
        self, creds: GCPCredentials, query: str, parameters: list[bigquery.ScalarQueryParameter]
    ) -> list[Any]:
        client = bigquery.Client(project=creds.project_id, credentials=self._google_credentials(creds))

        def _execute() -> list[Any]:
            try:
                job = client.query(query, job_config=bigquery.QueryJobConfig(query_parameters=parameters))
                return list(job.result())
            finally:
                client.close()

        try:
            return await asyncio.to_thread(_execute)
        except (GoogleAPICallError, TransportError) as e:
            raise translate_google_error(e) from e

    @staticmethod
    def _window_params(start: date, end: date) -> list[bigquery.ScalarQueryParameter]:
        return [
            bigquery.ScalarQueryParameter(
                "start_date", "TIMESTAMP", datetime.combine(start, time.min, tzinfo=timezone.utc)
            ),
            bigquery.ScalarQueryParameter(
                "end_date", "TIMESTAMP", datetime.combine(end, time.max, tzinfo=timezone.utc)
            ),
        ]

    @staticmethod
    def _build_cost_query(table_path: str) -> str:
        return f"""
            SELECT
                service.description AS service,
                DATE(usage_start_time) AS usage_date,
                SUM(cost) AS cost,
                SUM(IFNULL((SELECT SUM(c.amount) FROM UNNEST(credits) AS c), 0)) AS credits
            FROM `{table_path}`
            WHERE usage_start_time >= @start_date
              AND usage_start_time <= @end_date
            GROUP BY service, usage_date
        """  # nosec: B608

    @staticmethod
    def _build_service_query(table_path: str) -> str:
        return f"""
            SELECT
                sku.description AS sku,
                DATE(usage_start_time) AS usage_date,
                SUM(cost) AS cost
            FROM `{table_path}`
            WHERE usage_start_time >= @start_date
              AND usage_start_time <= @end_date
              AND service.description = @service_name
            GROUP BY sku, usage_date
        """  # nosec: B608

    async def fetch_cost_data(
        self, credentials: CloudCredentials, start: date, end: date
    ) -> ProviderCostData:
        creds = self.parse_credentials(credentials)
        table_path = self._table_path(creds)
        today = date.today()
        window_start = min(start, previous_month_start(today))
        rows = await self._call(
            "bigquery_cost_query",
            self._run_query,
            creds,
            self._build_cost_query(table_path),
            self._window_params(window_start, max(end, today)),
        )

        month_start = today.replace(day=1)
        credits = Decimal("0")
        normalized: list[tuple[date, str, Decimal]] = []
        for row in rows:
            normalized.append((row.usage_date, row.service or "Other", Decimal(str(row.cost or 0))))
            if row.usage_date >= month_start:
                credits += Decimal(str(row.credits or 0))

        data = summarize_daily_rows(self.provider_id, normalized, today, credits=abs(credits))
        data.daily_points = [p for p in data.daily_points if start <= p.date <= end]
        return data

    async def fetch_service_details(
        self, credentials: CloudCredentials, service_name: str, start: date, end: date
    ) -> ServiceDetails:
        creds = self.parse_credentials(credentials)
        table_path = self._table_path(creds)
        params = self._window_params(start, end) + [
            bigquery.ScalarQueryParameter("service_name", "STRING", service_name)
        ]
        rows = await self._call(
            "bigquery_service_query", self._run_query, creds, self._build_service_query(table_path), params
        )
        by_day: dict[date, Decimal] = {}
        by_sku: dict[str, Decimal] = {}
        for row in rows:
            cost = Decimal(str(row.cost or 0))
            by_day[row.usage_date] = by_day.get(row.usage_date, Decimal("0")) + cost
            by_sku[row.sku] = by_sku.get(row.sku, Decimal("0")) + cost
        return ServiceDetails(
            provider=self.provider_id,
            service_name=service_name,
            total_cost=round_money(sum(by_day.values(), Decimal("0"))),
            daily_points=[DailyCostPoint(date=d, cost=round_money(c)) for d, c in sorted(by_day.items())],
            usage_breakdown=[
                ServiceCostItem(name=name, cost=round_money(cost))
                for name, cost in sorted(by_sku.items(), key=lambda kv: kv[1], reverse=True)
            ],
        )
