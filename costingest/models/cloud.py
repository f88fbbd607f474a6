import json
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid as PG_UUID,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy_utils import StringEncryptedType
from sqlalchemy_utils.types.encrypted.encrypted_type import AesEngine

from costingest.models._encryption import get_encryption_key
from costingest.shared.db.base import Base

if TYPE_CHECKING:
    from costingest.models.export import ExportConfig

CONNECTION_DIRECT = "direct-credentials"
CONNECTION_DELEGATED = "delegated-role"

DATA_SOURCE_API = "api"
DATA_SOURCE_EXPORT = "export"

MONEY = Numeric(14, 2)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CloudAccount(Base):
    """
    A user's connection to one provider.

    Security:
    - `credentials` (JSON blob of provider keys) is encrypted at rest (AES)
    - `external_id` is the shared secret of a delegated-role trust; encrypted too
    """

    __tablename__ = "cloud_accounts"

    id: Mapped[UUID] = mapped_column(PG_UUID(), primary_key=True, default=uuid4)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    provider: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    connection_type: Mapped[str] = mapped_column(
        String(32), nullable=False, default=CONNECTION_DIRECT
    )

    credentials: Mapped[Optional[str]] = mapped_column(
        StringEncryptedType(Text, get_encryption_key, AesEngine, "pkcs5"), nullable=True
    )
    role_arn: Mapped[Optional[str]] = mapped_column(String(2048), nullable=True)
    external_id: Mapped[Optional[str]] = mapped_column(
        StringEncryptedType(String, get_encryption_key, AesEngine, "pkcs5"), nullable=True
    )
    # Provider-side account identifier (12-digit AWS account id for delegated roles)
    provider_account_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    export_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    last_synced_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    export_config: Mapped[Optional["ExportConfig"]] = relationship(
        back_populates="account", uselist=False
    )

    @property
    def credential_data(self) -> dict[str, Any]:
        """Decrypted credential blob as a dict (empty when none stored)."""
        if not self.credentials:
            return {}
        data = json.loads(self.credentials)
        return data if isinstance(data, dict) else {}

    @credential_data.setter
    def credential_data(self, value: dict[str, Any]) -> None:
        self.credentials = json.dumps(value) if value else None

    @property
    def is_delegated(self) -> bool:
        return self.connection_type == CONNECTION_DELEGATED


class CostSummary(Base):
    """Month-level cost bucket per (user, provider, account)."""

    __tablename__ = "cost_summaries"
    __table_args__ = (
        UniqueConstraint(
            "user_id", "provider", "account_id", "period_start",
            name="uq_cost_summary_bucket",
        ),
    )

    id: Mapped[UUID] = mapped_column(PG_UUID(), primary_key=True, default=uuid4)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    account_id: Mapped[Optional[UUID]] = mapped_column(
        ForeignKey("cloud_accounts.id", ondelete="CASCADE"), nullable=True
    )
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)

    total_cost: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"), nullable=False)
    tax_cost: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"), nullable=False)
    credits: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"), nullable=False)
    forecast: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"), nullable=False)
    last_month_total: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"), nullable=False)
    data_source: Mapped[str] = mapped_column(String(16), default=DATA_SOURCE_API, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    services: Mapped[list["ServiceCost"]] = relationship(
        back_populates="summary", cascade="all, delete-orphan"
    )


class ServiceCost(Base):
    """Per-service breakdown of a CostSummary. Replaced wholesale on each write."""

    __tablename__ = "service_costs"

    id: Mapped[UUID] = mapped_column(PG_UUID(), primary_key=True, default=uuid4)
    summary_id: Mapped[UUID] = mapped_column(
        ForeignKey("cost_summaries.id", ondelete="CASCADE"), nullable=False, index=True
    )
    service_name: Mapped[str] = mapped_column(String(255), nullable=False)
    cost: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    change_percent: Mapped[Decimal] = mapped_column(Numeric(9, 2), default=Decimal("0"), nullable=False)

    summary: Mapped[CostSummary] = relationship(back_populates="services")


class DailyCost(Base):
    """
    Normalized daily cost point.

    At most one row per (user, provider, account, date, data_source). When an
    `export` row exists for a date it supersedes the `api` row in queries.
    """

    __tablename__ = "daily_costs"
    __table_args__ = (
        UniqueConstraint(
            "user_id", "provider", "account_id", "cost_date", "data_source",
            name="uq_daily_cost_point",
        ),
        Index("ix_daily_costs_user_date", "user_id", "cost_date"),
    )

    id: Mapped[UUID] = mapped_column(PG_UUID(), primary_key=True, default=uuid4)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    account_id: Mapped[Optional[UUID]] = mapped_column(
        ForeignKey("cloud_accounts.id", ondelete="CASCADE"), nullable=True
    )
    cost_date: Mapped[date] = mapped_column(Date, nullable=False)
    cost: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    data_source: Mapped[str] = mapped_column(String(16), default=DATA_SOURCE_API, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )


class ServiceUsageMetric(Base):
    """
    Per-(service, day, usage type) cost and usage quantity from export data.
    Replaced wholesale for an account's billing period on each export write.
    """

    __tablename__ = "service_usage_metrics"
    __table_args__ = (
        UniqueConstraint(
            "user_id", "provider", "account_id", "service_name", "usage_date", "usage_type",
            name="uq_service_usage_metric",
        ),
        Index("ix_service_usage_user_date", "user_id", "usage_date"),
    )

    id: Mapped[UUID] = mapped_column(PG_UUID(), primary_key=True, default=uuid4)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    account_id: Mapped[Optional[UUID]] = mapped_column(
        ForeignKey("cloud_accounts.id", ondelete="CASCADE"), nullable=True
    )
    service_name: Mapped[str] = mapped_column(String(255), nullable=False)
    usage_date: Mapped[date] = mapped_column(Date, nullable=False)
    usage_type: Mapped[str] = mapped_column(String(255), nullable=False)
    cost: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"), nullable=False)
    usage_quantity: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 4), nullable=True)
    usage_unit: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )
