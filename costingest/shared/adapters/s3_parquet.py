"""
CUR 2.0 Parquet decoding.

Exported billing files are read one record batch at a time so memory stays
bounded by the batch size, not the file size. Each batch is normalized with
pandas and yielded as CurLineItem records, which ExportPeriodAccumulator
folds into a billing period's totals and per-(service, day, usage type) usage.
"""

import os
import tempfile
from collections import defaultdict
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

import aioboto3
import pandas as pd
import pyarrow as pa
import pyarrow.parquet as pq
import structlog
from botocore.config import Config as BotoConfig

from costingest.schemas.costs import DailyCostPoint, ServiceCostItem, ServiceUsageItem, round_money
from costingest.shared.core.credentials import AWSCredentials
from costingest.shared.core.retry import ProviderCallExecutor

logger = structlog.get_logger()

ZERO = Decimal("0")

TAX_LINE_ITEM = "Tax"
# Matches the Cost Explorer RECORD_TYPE filter for usage charges.
USAGE_LINE_ITEM_TYPES = frozenset({"Usage", "DiscountedUsage", "SavingsPlanCoveredUsage"})

COLUMN_TYPE = "line_item_line_item_type"
COLUMN_COST = "line_item_unblended_cost"
COLUMN_START = "line_item_usage_start_date"
COLUMN_PRODUCT_NAME = "product_product_name"
COLUMN_PRODUCT_CODE = "line_item_product_code"
COLUMN_USAGE_TYPE = "line_item_usage_type"
COLUMN_USAGE_AMOUNT = "line_item_usage_amount"
COLUMN_PRICING_UNIT = "pricing_unit"
CUR_COLUMNS = (
    COLUMN_TYPE,
    COLUMN_COST,
    COLUMN_START,
    COLUMN_PRODUCT_NAME,
    COLUMN_PRODUCT_CODE,
    COLUMN_USAGE_TYPE,
    COLUMN_USAGE_AMOUNT,
    COLUMN_PRICING_UNIT,
)

DEFAULT_USAGE_TYPE = "Usage"

DEFAULT_BATCH_ROWS = 65_536

S3_CONFIG = BotoConfig(read_timeout=60, connect_timeout=10, retries={"max_attempts": 1})


@dataclass(frozen=True)
class ExportObject:
    key: str
    size: int
    etag: str = ""


@dataclass(frozen=True)
class CurLineItem:
    line_item_type: str
    cost: Decimal
    usage_date: Optional[date]
    service: str
    usage_type: str = DEFAULT_USAGE_TYPE
    usage_amount: Decimal = ZERO
    usage_unit: Optional[str] = None


@dataclass
class UsageTotals:
    cost: Decimal = ZERO
    quantity: Decimal = ZERO
    unit: Optional[str] = None


def _to_decimal(value: Any) -> Decimal:
    if value is None or value == "":
        return ZERO
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        return ZERO
    if amount.is_nan() or amount.is_infinite():
        return ZERO
    return amount


def _text_column(df: pd.DataFrame, column: str) -> pd.Series:
    if column not in df.columns:
        return pd.Series([""] * len(df), index=df.index, dtype="object")
    return df[column].fillna("").astype(str).str.strip()


def _normalize_batch(df: pd.DataFrame) -> pd.DataFrame:
    """Vectorized per-batch normalization: types, service fallback, usage dates and usage types."""
    out = pd.DataFrame(index=df.index)
    out["line_item_type"] = _text_column(df, COLUMN_TYPE)
    out["cost"] = df[COLUMN_COST] if COLUMN_COST in df.columns else None

    name = _text_column(df, COLUMN_PRODUCT_NAME)
    code = _text_column(df, COLUMN_PRODUCT_CODE)
    out["service"] = name.where(name != "", code).replace("", "Other")
    out["usage_type"] = _text_column(df, COLUMN_USAGE_TYPE).replace("", DEFAULT_USAGE_TYPE)
    out["usage_amount"] = df[COLUMN_USAGE_AMOUNT] if COLUMN_USAGE_AMOUNT in df.columns else None
    out["usage_unit"] = _text_column(df, COLUMN_PRICING_UNIT)

    if COLUMN_START in df.columns:
        starts = pd.to_datetime(df[COLUMN_START], errors="coerce", utc=True)
        out["usage_date"] = starts.dt.date
    else:
        out["usage_date"] = None
    return out


def iter_line_items(file_path: str, batch_size: int = DEFAULT_BATCH_ROWS) -> Iterator[CurLineItem]:
    """
    Lazily decode a CUR Parquet file.

    Raises pyarrow.ArrowException (or OSError) when the file is not valid
    Parquet; nothing is yielded past the failing batch.
    """
    parquet_file = pq.ParquetFile(file_path)
    available = set(parquet_file.schema_arrow.names)
    columns = [c for c in CUR_COLUMNS if c in available]
    for batch in parquet_file.iter_batches(batch_size=batch_size, columns=columns):
        df = _normalize_batch(batch.to_pandas())
        for row in df.itertuples(index=False):
            yield CurLineItem(
                line_item_type=row.line_item_type,
                cost=_to_decimal(row.cost),
                usage_date=None if pd.isna(row.usage_date) else row.usage_date,
                service=row.service,
                usage_type=row.usage_type,
                usage_amount=_to_decimal(row.usage_amount),
                usage_unit=row.usage_unit or None,
            )


@dataclass
class ExportPeriodAccumulator:
    """Fold of a billing period's line items into usage, tax, daily, service and usage-type totals."""

    usage_total: Decimal = ZERO
    tax_total: Decimal = ZERO
    rows: int = 0
    daily: dict[date, Decimal] = field(default_factory=lambda: defaultdict(Decimal))
    services: dict[str, Decimal] = field(default_factory=lambda: defaultdict(Decimal))
    usage: dict[tuple[str, date, str], UsageTotals] = field(
        default_factory=lambda: defaultdict(UsageTotals)
    )

    def add(self, item: CurLineItem) -> None:
        self.rows += 1
        if item.line_item_type == TAX_LINE_ITEM:
            self.tax_total += item.cost
            return
        if item.line_item_type not in USAGE_LINE_ITEM_TYPES:
            return
        self.usage_total += item.cost
        if item.usage_date is not None:
            self.daily[item.usage_date] += item.cost
        self.services[item.service] += item.cost
        if item.usage_date is not None and (item.cost > 0 or item.usage_amount > 0):
            totals = self.usage[(item.service, item.usage_date, item.usage_type)]
            totals.cost += item.cost
            totals.quantity += item.usage_amount
            if item.usage_unit:
                totals.unit = item.usage_unit

    def merge(self, other: "ExportPeriodAccumulator") -> None:
        self.usage_total += other.usage_total
        self.tax_total += other.tax_total
        self.rows += other.rows
        for day, cost in other.daily.items():
            self.daily[day] += cost
        for name, cost in other.services.items():
            self.services[name] += cost
        for key, other_totals in other.usage.items():
            totals = self.usage[key]
            totals.cost += other_totals.cost
            totals.quantity += other_totals.quantity
            if other_totals.unit:
                totals.unit = other_totals.unit

    @property
    def total_cost(self) -> Decimal:
        return round_money(self.usage_total)

    @property
    def tax(self) -> Decimal:
        return round_money(self.tax_total)

    def daily_points(self) -> list[DailyCostPoint]:
        return [DailyCostPoint(date=d, cost=round_money(c)) for d, c in sorted(self.daily.items())]

    def service_items(self) -> list[ServiceCostItem]:
        items = [ServiceCostItem(name=n, cost=round_money(c)) for n, c in self.services.items()]
        items.sort(key=lambda item: item.cost, reverse=True)
        return items

    def usage_metrics(self) -> list[ServiceUsageItem]:
        return [
            ServiceUsageItem(
                service_name=service,
                date=day,
                usage_type=usage_type,
                cost=round_money(totals.cost),
                usage_quantity=totals.quantity if totals.quantity > 0 else None,
                usage_unit=totals.unit,
            )
            for (service, day, usage_type), totals in sorted(self.usage.items())
        ]


def accumulate_file(file_path: str) -> Optional[ExportPeriodAccumulator]:
    """
    Decode one file into its own accumulator. Returns None when the file is
    malformed so a partially decoded file never leaks into the period totals.
    """
    acc = ExportPeriodAccumulator()
    try:
        for item in iter_line_items(file_path):
            acc.add(item)
    except (pa.ArrowException, OSError) as e:
        logger.warning("cur_parquet_decode_failed", path=file_path, error=str(e))
        return None
    return acc



class S3ExportReader:
    """
    Lists and downloads exported billing files from the customer's bucket
    using delegated credentials. Listing and downloads run under the AWS
    breaker and retry policy.
    """

    def __init__(
        self,
        executor: ProviderCallExecutor,
        chunk_bytes: int = 16 * 1024 * 1024,
        download_timeout: float = 300.0,
        session: Optional[aioboto3.Session] = None,
    ):
        self.executor = executor
        self.chunk_bytes = chunk_bytes
        self.download_timeout = download_timeout
        self.session = session or aioboto3.Session()

    def _client(self, credentials: AWSCredentials, region: str) -> Any:
        kwargs = credentials.client_kwargs()
        kwargs["region_name"] = region
        return self.session.client("s3", config=S3_CONFIG, **kwargs)

    async def list_objects(
        self, credentials: AWSCredentials, bucket: str, prefix: str, region: str
    ) -> list[ExportObject]:
        async def _list() -> list[ExportObject]:
            objects: list[ExportObject] = []
            async with self._client(credentials, region) as s3:
                paginator = s3.get_paginator("list_objects_v2")
                async for page in paginator.paginate(Bucket=bucket, Prefix=prefix):
                    for obj in page.get("Contents", []):
                        objects.append(
                            ExportObject(
                                key=obj["Key"],
                                size=int(obj.get("Size", 0)),
                                etag=str(obj.get("ETag", "")).strip('"'),
                            )
                        )
            return objects

        return await self.executor.call("aws", _list, operation="list_objects_v2")

    async def download(
        self, credentials: AWSCredentials, bucket: str, key: str, region: str
    ) -> str:
        """Stream an object to a temporary .parquet file; the caller removes it."""

        async def _download() -> str:
            fd, tmp_path = tempfile.mkstemp(suffix=".parquet")
            try:
                with os.fdopen(fd, "wb") as tmp:
                    async with self._client(credentials, region) as s3:
                        obj = await s3.get_object(Bucket=bucket, Key=key)
                        async with obj["Body"] as stream:
                            while True:
                                chunk = await stream.read(self.chunk_bytes)
                                if not chunk:
                                    break
                                tmp.write(chunk)
            except BaseException:
                os.remove(tmp_path)
                raise
            return tmp_path

        return await self.executor.call(
            "aws", _download, operation="get_object", timeout=self.download_timeout
        )
