from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid as PG_UUID,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from costingest.models.cloud import CloudAccount, utcnow
from costingest.shared.db.base import Base

EXPORT_PROVISIONING = "provisioning"
EXPORT_ACTIVE = "active"
EXPORT_ERROR = "error"

INGESTION_PROCESSING = "processing"
INGESTION_COMPLETED = "completed"
INGESTION_ERROR = "error"


class ExportConfig(Base):
    """Bulk cost export attached to one cloud account."""

    __tablename__ = "export_configs"

    id: Mapped[UUID] = mapped_column(PG_UUID(), primary_key=True, default=uuid4)
    account_id: Mapped[UUID] = mapped_column(
        ForeignKey("cloud_accounts.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    export_name: Mapped[str] = mapped_column(String(128), nullable=False)
    export_arn: Mapped[Optional[str]] = mapped_column(String(2048), nullable=True)
    bucket_name: Mapped[str] = mapped_column(String(63), nullable=False)
    s3_prefix: Mapped[str] = mapped_column(String(255), nullable=False)
    region: Mapped[str] = mapped_column(String(32), default="us-east-1", nullable=False)

    status: Mapped[str] = mapped_column(
        String(16), default=EXPORT_PROVISIONING, nullable=False, index=True
    )
    status_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_manifest_key: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    last_successful_run_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    account: Mapped[CloudAccount] = relationship(back_populates="export_config")

    @property
    def data_prefix(self) -> str:
        """Key prefix under which the export writes its period folders."""
        return f"{self.s3_prefix}/{self.export_name}/data/"


class IngestionLog(Base):
    """Idempotency ledger: one row per (config, billing period, manifest key, delivery fingerprint)."""

    __tablename__ = "export_ingestion_logs"
    __table_args__ = (
        UniqueConstraint(
            "config_id", "billing_period", "manifest_key", "fingerprint",
            name="uq_ingestion_log_manifest",
        ),
    )

    id: Mapped[UUID] = mapped_column(PG_UUID(), primary_key=True, default=uuid4)
    config_id: Mapped[UUID] = mapped_column(
        ForeignKey("export_configs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    billing_period: Mapped[str] = mapped_column(String(7), nullable=False)
    manifest_key: Mapped[str] = mapped_column(String(1024), nullable=False)
    fingerprint: Mapped[str] = mapped_column(String(64), default="", nullable=False)
    status: Mapped[str] = mapped_column(String(16), default=INGESTION_PROCESSING, nullable=False)
    rows_processed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_cost: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"), nullable=False)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
