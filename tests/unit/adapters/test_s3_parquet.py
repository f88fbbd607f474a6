import os
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from costingest.shared.adapters.s3_parquet import (
    CurLineItem,
    ExportPeriodAccumulator,
    S3ExportReader,
    accumulate_file,
    iter_line_items,
)


def ts(day: int) -> datetime:
    return datetime(2025, 6, day, 8, 30, tzinfo=timezone.utc)


ROWS = [
    ("Usage", 10.0, ts(1), "Amazon Elastic Compute Cloud", "AmazonEC2"),
    ("DiscountedUsage", 2.5, ts(1), "Amazon Elastic Compute Cloud", "AmazonEC2"),
    ("SavingsPlanCoveredUsage", 4.0, ts(2), None, "AmazonRDS"),
    ("Usage", 1.25, ts(2), None, None),
    ("Tax", 1.5, ts(1), "Tax", "AmazonEC2"),
    ("Credit", -3.0, ts(2), "Amazon Elastic Compute Cloud", "AmazonEC2"),
    ("SavingsPlanRecurringFee", 7.0, ts(2), "Savings Plans", "ComputeSavingsPlans"),
]


def test_iter_line_items_normalizes_rows_across_batches(write_cur_parquet):
    path = write_cur_parquet(ROWS, row_group_size=2)

    items = list(iter_line_items(path, batch_size=2))

    assert len(items) == len(ROWS)
    assert items[0] == CurLineItem("Usage", Decimal("10.0"), date(2025, 6, 1), "Amazon Elastic Compute Cloud")
    # Missing product names fall back to the product code, then to "Other".
    assert items[2].service == "AmazonRDS"
    assert items[3].service == "Other"
    assert items[4].line_item_type == "Tax"


def test_missing_cost_and_start_date_degrade_safely(write_cur_parquet):
    path = write_cur_parquet([("Usage", None, None, "Amazon S3", "AmazonS3")])

    [item] = list(iter_line_items(path))

    assert item.cost == Decimal("0")
    assert item.usage_date is None


def test_accumulator_separates_usage_and_tax():
    acc = ExportPeriodAccumulator()
    for line_type, cost, day, service in [
        ("Usage", "10.004", date(2025, 6, 1), "EC2"),
        ("SavingsPlanCoveredUsage", "5", date(2025, 6, 2), "RDS"),
        ("Tax", "1.20", date(2025, 6, 1), "Tax"),
        ("Credit", "-4", date(2025, 6, 2), "EC2"),
        ("Usage", "2", None, "EC2"),
    ]:
        acc.add(CurLineItem(line_type, Decimal(cost), day, service))

    assert acc.rows == 5
    assert acc.total_cost == Decimal("17.00")
    assert acc.tax == Decimal("1.20")
    assert [(p.date, p.cost) for p in acc.daily_points()] == [
        (date(2025, 6, 1), Decimal("10.00")),
        (date(2025, 6, 2), Decimal("5.00")),
    ]
    assert [(s.name, s.cost) for s in acc.service_items()] == [
        ("EC2", Decimal("12.00")),
        ("RDS", Decimal("5.00")),
    ]


def test_merge_adds_file_totals():
    first, second = ExportPeriodAccumulator(), ExportPeriodAccumulator()
    first.add(CurLineItem("Usage", Decimal("3"), date(2025, 6, 1), "EC2"))
    second.add(CurLineItem("Usage", Decimal("4"), date(2025, 6, 1), "EC2"))
    second.add(CurLineItem("Tax", Decimal("0.56"), date(2025, 6, 1), "Tax"))

    first.merge(second)

    assert first.rows == 3
    assert first.total_cost == Decimal("7.00")
    assert first.tax == Decimal("0.56")
    assert first.daily[date(2025, 6, 1)] == Decimal("7")


def test_accumulate_file_totals(write_cur_parquet):
    acc = accumulate_file(write_cur_parquet(ROWS))

    assert acc is not None
    assert acc.total_cost == Decimal("17.75")
    assert acc.tax == Decimal("1.50")
    assert {p.date: p.cost for p in acc.daily_points()} == {
        date(2025, 6, 1): Decimal("12.50"),
        date(2025, 6, 2): Decimal("5.25"),
    }


def test_usage_is_tracked_per_service_day_and_usage_type(write_cur_parquet):
    path = write_cur_parquet(
        [
            ("Usage", 3.0, ts(1), "Amazon Elastic Compute Cloud", "AmazonEC2", "BoxUsage:t3.large", 12.0, "Hrs"),
            ("Usage", 1.0, ts(1), "Amazon Elastic Compute Cloud", "AmazonEC2", "BoxUsage:t3.large", 4.0, "Hrs"),
            ("Usage", 0.5, ts(1), "Amazon Simple Storage Service", "AmazonS3", "TimedStorage-ByteHrs", 20.0, "GB-Mo"),
            ("Usage", 0.0, ts(2), "Amazon Simple Storage Service", "AmazonS3", "Requests-Tier1", 0.0, "Requests"),
            ("DiscountedUsage", 2.0, ts(2), "Amazon Elastic Compute Cloud", "AmazonEC2", None, 8.0, None),
            ("Tax", 0.4, ts(1), "Tax", "AmazonEC2", "", 0.0, ""),
        ]
    )

    acc = accumulate_file(path)

    assert acc is not None
    metrics = [
        (m.service_name, m.date, m.usage_type, m.cost, m.usage_quantity, m.usage_unit)
        for m in acc.usage_metrics()
    ]
    assert metrics == [
        ("Amazon Elastic Compute Cloud", date(2025, 6, 1), "BoxUsage:t3.large", Decimal("4.00"), Decimal("16.0"), "Hrs"),
        # A missing usage type falls back to "Usage".
        ("Amazon Elastic Compute Cloud", date(2025, 6, 2), "Usage", Decimal("2.00"), Decimal("8.0"), None),
        ("Amazon Simple Storage Service", date(2025, 6, 1), "TimedStorage-ByteHrs", Decimal("0.50"), Decimal("20.0"), "GB-Mo"),
    ]


def test_merge_combines_usage_from_every_file():
    first, second = ExportPeriodAccumulator(), ExportPeriodAccumulator()
    first.add(CurLineItem("Usage", Decimal("1"), date(2025, 6, 1), "EC2", "BoxUsage", Decimal("2"), None))
    second.add(CurLineItem("Usage", Decimal("3"), date(2025, 6, 1), "EC2", "BoxUsage", Decimal("6"), "Hrs"))

    first.merge(second)

    [metric] = first.usage_metrics()
    assert (metric.cost, metric.usage_quantity, metric.usage_unit) == (Decimal("4.00"), Decimal("8"), "Hrs")


def test_accumulate_file_rejects_malformed_parquet(tmp_path):
    path = tmp_path / "broken.parquet"
    path.write_bytes(b"this is not parquet")

    assert accumulate_file(str(path)) is None


class FakeBody:
    def __init__(self, data: bytes):
        self.data = data
        self.reads: list[int] = []

    async def read(self, size: int) -> bytes:
        self.reads.append(size)
        chunk, self.data = self.data[:size], self.data[size:]
        return chunk

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class FakePaginator:
    def __init__(self, pages):
        self.pages = pages
        self.params: dict = {}

    def paginate(self, **params):
        self.params = params
        return self._iterate()

    async def _iterate(self):
        for page in self.pages:
            yield page


class FakeS3:
    def __init__(self, pages=(), blobs=None):
        self.paginator = FakePaginator(list(pages))
        self.blobs = blobs or {}
        self.bodies: list[FakeBody] = []

    def get_paginator(self, name):
        assert name == "list_objects_v2"
        return self.paginator

    async def get_object(self, Bucket, Key):
        body = FakeBody(self.blobs[Key])
        self.bodies.append(body)
        return {"Body": body}


@pytest.mark.asyncio
async def test_list_objects_walks_every_page(executor, boto_session, aws_credentials):
    s3 = FakeS3(
        pages=[
            {"Contents": [{"Key": "cur-exports/x/data/BILLING_PERIOD=2025-06/a.parquet", "Size": 10, "ETag": '"9b2cf535f27731c974343645a3985328"'}]},
            {},
            {"Contents": [{"Key": "cur-exports/x/data/BILLING_PERIOD=2025-06/b.parquet", "Size": 20}]},
        ]
    )
    session = boto_session({"s3": s3})
    reader = S3ExportReader(executor, session=session)

    objects = await reader.list_objects(aws_credentials, "bucket", "cur-exports/x/data/", "eu-west-1")

    assert [(o.key.rsplit("/", 1)[-1], o.size) for o in objects] == [("a.parquet", 10), ("b.parquet", 20)]
    assert [o.etag for o in objects] == ["9b2cf535f27731c974343645a3985328", ""]
    assert s3.paginator.params == {"Bucket": "bucket", "Prefix": "cur-exports/x/data/"}
    assert session.client_calls[0][1]["region_name"] == "eu-west-1"
    assert session.client_calls[0][1]["aws_session_token"] == "token"


@pytest.mark.asyncio
async def test_download_streams_in_chunks_to_a_temp_file(executor, boto_session, aws_credentials):
    payload = b"0123456789" * 5
    s3 = FakeS3(blobs={"k.parquet": payload})
    reader = S3ExportReader(executor, chunk_bytes=16, session=boto_session({"s3": s3}))

    path = await reader.download(aws_credentials, "bucket", "k.parquet", "us-east-1")
    try:
        with open(path, "rb") as fh:
            assert fh.read() == payload
        assert path.endswith(".parquet")
        assert set(s3.bodies[0].reads) == {16}
    finally:
        os.remove(path)
