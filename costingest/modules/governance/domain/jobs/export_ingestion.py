"""
Bulk Export Ingestion Job

Polls every connected AWS Data Exports (CUR 2.0) destination, discovers
billing periods delivered to S3, folds their Parquet files into period totals
and persists them as `export`-sourced cost data. Also owns the export
lifecycle for an account: enable (provision), disable (teardown), status and
access repair.

Idempotency: one IngestionLog row per (config, billing period, manifest key,
delivery fingerprint). The fingerprint digests every file's key, ETag and size,
so a period AWS rewrites in place is ingested again. A completed row is never
reprocessed; a `processing` row younger than the lease marks an overlapping
run and is skipped.
"""

import asyncio
import hashlib
import os
import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

import structlog
from botocore.exceptions import ClientError
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from costingest.models.cloud import CloudAccount, utcnow
from costingest.models.export import (
    EXPORT_ACTIVE,
    EXPORT_ERROR,
    EXPORT_PROVISIONING,
    INGESTION_COMPLETED,
    INGESTION_ERROR,
    INGESTION_PROCESSING,
    ExportConfig,
    IngestionLog,
)
from costingest.modules.reporting.domain.persistence import CostPersistenceService, as_utc
from costingest.shared.adapters.aws_export import (
    EXPORTS_REGION,
    ExportNaming,
    TeardownReport,
    is_access_error,
)
from costingest.shared.adapters.s3_parquet import (
    ExportObject,
    ExportPeriodAccumulator,
    accumulate_file,
)
from costingest.shared.core import notifications
from costingest.shared.core.credentials import AWSCredentials
from costingest.shared.core.exceptions import (
    ConfigurationError,
    CostIngestException,
    DelegationError,
    ResourceNotFoundError,
)
from costingest.shared.core.runtime import IngestionRuntime

logger = structlog.get_logger()

PERIOD_KEY_PATTERN = re.compile(r"/data/(?:BILLING_PERIOD=)?(\d{4}-\d{2})/")
POLLED_STATUSES = (EXPORT_PROVISIONING, EXPORT_ACTIVE, EXPORT_ERROR)

LOG_ERROR_MAX_CHARS = 1000
CONFIG_ERROR_MAX_CHARS = 500

DISCONNECTED_MESSAGE = "Export disconnected"
BUCKET_EMPTY_MESSAGE = (
    "S3 bucket is empty. AWS typically delivers the first export within 24-72 hours. "
    "Cost Explorer is used in the meantime."
)
ACCESS_ERROR_MESSAGE = (
    "Unable to read cost export data from S3. Please verify your AWS CloudFormation "
    "stack is intact and the S3 bucket policy is correct, then reconnect the account."
)

PERIOD_COMPLETED = "completed"
PERIOD_ALREADY_INGESTED = "already_ingested"
PERIOD_IN_PROGRESS = "in_progress"
PERIOD_CURRENT_MONTH = "current_month"


@dataclass
class PeriodOutcome:
    billing_period: str
    status: str
    manifest_key: Optional[str] = None
    rows_processed: int = 0
    total_cost: Decimal = Decimal("0")
    tax: Decimal = Decimal("0")
    files_skipped: int = 0


@dataclass
class CycleReport:
    configs_polled: int = 0
    periods_ingested: int = 0
    activated: list[str] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


@dataclass
class ExportStatusReport:
    export_enabled: bool
    status: Optional[str]
    status_message: Optional[str] = None
    bucket_name: Optional[str] = None
    export_name: Optional[str] = None
    last_successful_run_at: Optional[datetime] = None
    billing_periods: list[dict[str, Any]] = field(default_factory=list)
    bucket_empty: bool = False
    bucket_empty_message: Optional[str] = None
    export_status_code: Optional[str] = None
    export_status_reason: Optional[str] = None
    export_status_message: Optional[str] = None


def billing_period_for_key(key: str) -> Optional[str]:
    match = PERIOD_KEY_PATTERN.search(key)
    return match.group(1) if match else None


def group_by_period(objects: Sequence[ExportObject]) -> dict[str, list[ExportObject]]:
    """period -> key-sorted Parquet objects; keys outside a period folder are ignored."""
    periods: dict[str, list[ExportObject]] = {}
    for obj in objects:
        if not obj.key.endswith(".parquet"):
            continue
        period = billing_period_for_key(obj.key)
        if period is None:
            continue
        periods.setdefault(period, []).append(obj)
    return {p: sorted(objs, key=lambda o: o.key) for p, objs in sorted(periods.items())}


def delivery_fingerprint(objects: Sequence[ExportObject]) -> str:
    """Digest of a period's files; changes whenever AWS rewrites the period."""
    digest = hashlib.sha256()
    for obj in sorted(objects, key=lambda o: o.key):
        digest.update(f"{obj.key}\0{obj.etag}\0{obj.size}\n".encode())
    return digest.hexdigest()


def _ledger_row(config_id: UUID, billing_period: str, manifest_key: str, fingerprint: str) -> tuple:
    return (
        IngestionLog.config_id == config_id,
        IngestionLog.billing_period == billing_period,
        IngestionLog.manifest_key == manifest_key,
        IngestionLog.fingerprint == fingerprint,
    )


class ExportIngestionJob:
    def __init__(self, runtime: IngestionRuntime):
        self.runtime = runtime
        self.settings = runtime.settings

    async def _credentials(self, account: CloudAccount) -> AWSCredentials:
        return await self.runtime.delegation.assume_role(
            account.role_arn,
            account.external_id,
            account_id=account.provider_account_id,
            purpose="export",
        )

    def _forget_credentials(self, account: CloudAccount) -> None:
        self.runtime.delegation.invalidate(account.role_arn, account.external_id)

    async def discover_periods(
        self, credentials: AWSCredentials, config: ExportConfig
    ) -> dict[str, list[ExportObject]]:
        objects = await self.runtime.reader.list_objects(
            credentials, config.bucket_name, config.data_prefix, config.region
        )
        periods = group_by_period(objects)
        logger.info(
            "export_periods_discovered",
            config_id=str(config.id),
            bucket=config.bucket_name,
            objects=len(objects),
            periods=list(periods),
        )
        return periods

    async def _claim_period(
        self, config_id: UUID, billing_period: str, manifest_key: str, fingerprint: str
    ) -> Optional[str]:
        """
        Mark the delivery as processing. Returns a skip reason when it is
        already completed or another run holds a live lease.
        """
        lease = timedelta(seconds=self.settings.EXPORT_PROCESSING_LEASE_SECONDS)
        async with self.runtime.session_maker() as session:
            result = await session.execute(
                select(IngestionLog).where(
                    *_ledger_row(config_id, billing_period, manifest_key, fingerprint)
                )
            )
            log = result.scalars().first()
            now = utcnow()
            if log is not None:
                if log.status == INGESTION_COMPLETED:
                    return PERIOD_ALREADY_INGESTED
                started_at = as_utc(log.started_at)
                if log.status == INGESTION_PROCESSING and started_at and now - started_at < lease:
                    return PERIOD_IN_PROGRESS
                if log.status == INGESTION_PROCESSING:
                    logger.warning(
                        "export_ingestion_stale_lease_reclaimed",
                        config_id=str(config_id),
                        billing_period=billing_period,
                        started_at=str(started_at),
                    )
                log.status = INGESTION_PROCESSING
                log.started_at = now
                log.completed_at = None
                log.error_message = None
            else:
                session.add(
                    IngestionLog(
                        config_id=config_id,
                        billing_period=billing_period,
                        manifest_key=manifest_key,
                        fingerprint=fingerprint,
                        status=INGESTION_PROCESSING,
                        started_at=now,
                    )
                )
            try:
                await session.commit()
            except IntegrityError:
                # Another run inserted the same ledger row between our read and commit.
                await session.rollback()
                logger.info(
                    "export_period_claimed_elsewhere",
                    config_id=str(config_id),
                    billing_period=billing_period,
                )
                return PERIOD_IN_PROGRESS
        return None

    async def _fail_period(
        self,
        config_id: UUID,
        billing_period: str,
        manifest_key: str,
        fingerprint: str,
        error: BaseException,
    ) -> None:
        message = (getattr(error, "message", None) or str(error) or type(error).__name__)
        async with self.runtime.session_maker() as session:
            await session.execute(
                update(IngestionLog)
                .where(*_ledger_row(config_id, billing_period, manifest_key, fingerprint))
                .values(
                    status=INGESTION_ERROR,
                    error_message=message[:LOG_ERROR_MAX_CHARS],
                    completed_at=utcnow(),
                )
            )
            await session.commit()

    async def _accumulate(
        self, credentials: AWSCredentials, config: ExportConfig, objects: Sequence[ExportObject]
    ) -> tuple[ExportPeriodAccumulator, int]:
        period_acc = ExportPeriodAccumulator()
        skipped = 0
        for obj in objects:
            if obj.size > self.settings.EXPORT_MAX_FILE_SIZE_BYTES:
                logger.warning(
                    "export_file_too_large_skipped",
                    key=obj.key,
                    size=obj.size,
                    limit=self.settings.EXPORT_MAX_FILE_SIZE_BYTES,
                )
                skipped += 1
                continue

            path = await self.runtime.reader.download(
                credentials, config.bucket_name, obj.key, config.region
            )
            try:
                # Decoding is CPU-bound; keep it off the event loop.
                file_acc = await asyncio.to_thread(accumulate_file, path)
            finally:
                os.remove(path)

            if file_acc is None:
                logger.warning("export_file_malformed_skipped", key=obj.key)
                skipped += 1
                continue
            period_acc.merge(file_acc)
        return period_acc, skipped

    async def ingest_period(
        self,
        config: ExportConfig,
        account: CloudAccount,
        credentials: AWSCredentials,
        billing_period: str,
        objects: Sequence[ExportObject],
        today: Optional[date] = None,
    ) -> PeriodOutcome:
        today = today or date.today()
        if billing_period >= today.strftime("%Y-%m"):
            # The provider API owns the open month; the export is revisited once it closes.
            return PeriodOutcome(billing_period=billing_period, status=PERIOD_CURRENT_MONTH)

        manifest_key = objects[0].key
        fingerprint = delivery_fingerprint(objects)
        skip = await self._claim_period(config.id, billing_period, manifest_key, fingerprint)
        if skip is not None:
            logger.info(
                "export_period_skipped",
                config_id=str(config.id),
                billing_period=billing_period,
                reason=skip,
            )
            return PeriodOutcome(billing_period=billing_period, status=skip, manifest_key=manifest_key)

        logger.info(
            "export_period_ingestion_started",
            config_id=str(config.id),
            billing_period=billing_period,
            files=len(objects),
        )
        try:
            acc, skipped = await self._accumulate(credentials, config, objects)

            async with self.runtime.session_maker() as session:
                persistence = CostPersistenceService(session)
                await persistence.save_export_period(
                    account,
                    billing_period,
                    acc.total_cost,
                    acc.tax,
                    acc.service_items(),
                    acc.daily_points(),
                    today=today,
                    usage_metrics=acc.usage_metrics(),
                )
                now = utcnow()
                await session.execute(
                    update(IngestionLog)
                    .where(*_ledger_row(config.id, billing_period, manifest_key, fingerprint))
                    .values(
                        status=INGESTION_COMPLETED,
                        rows_processed=acc.rows,
                        total_cost=acc.total_cost,
                        error_message=None,
                        completed_at=now,
                    )
                )
                await session.execute(
                    update(ExportConfig)
                    .where(ExportConfig.id == config.id)
                    .values(last_manifest_key=manifest_key, last_successful_run_at=now)
                )
                await session.commit()
        except Exception as e:
            logger.error(
                "export_period_ingestion_failed",
                config_id=str(config.id),
                billing_period=billing_period,
                error=str(e),
            )
            await self._fail_period(config.id, billing_period, manifest_key, fingerprint, e)
            raise

        await self.runtime.cache.invalidate_user(account.user_id)
        logger.info(
            "export_period_ingested",
            config_id=str(config.id),
            billing_period=billing_period,
            rows=acc.rows,
            total=str(acc.total_cost),
            tax=str(acc.tax),
            files_skipped=skipped,
        )
        return PeriodOutcome(
            billing_period=billing_period,
            status=PERIOD_COMPLETED,
            manifest_key=manifest_key,
            rows_processed=acc.rows,
            total_cost=acc.total_cost,
            tax=acc.tax,
            files_skipped=skipped,
        )

    async def _set_config_status(
        self, config_id: UUID, status: str, message: Optional[str] = None
    ) -> None:
        async with self.runtime.session_maker() as session:
            await session.execute(
                update(ExportConfig)
                .where(ExportConfig.id == config_id)
                .values(status=status, status_message=message, updated_at=utcnow())
            )
            await session.commit()

    async def _set_export_enabled(self, account_id: UUID, enabled: bool) -> None:
        async with self.runtime.session_maker() as session:
            await session.execute(
                update(CloudAccount)
                .where(CloudAccount.id == account_id)
                .values(export_enabled=enabled)
            )
            await session.commit()

    async def _poll_config(
        self, config: ExportConfig, account: CloudAccount, report: CycleReport, today: date
    ) -> None:
        credentials = await self._credentials(account)
        periods = await self.discover_periods(credentials, config)

        if not periods:
            # Surface actionable export failures while the bucket is still empty.
            if config.status in (EXPORT_PROVISIONING, EXPORT_ACTIVE):
                health = await self.runtime.provisioner.get_export_health(
                    credentials, config.export_arn
                )
                if health is not None and health.unhealthy:
                    message = health.message or f"Export unhealthy: {health.status_reason}"
                    logger.warning(
                        "export_unhealthy",
                        config_id=str(config.id),
                        status_reason=health.status_reason,
                    )
                    await self._set_config_status(config.id, EXPORT_ERROR, message)
                    await self.runtime.notifier.notify(
                        account.user_id,
                        notifications.EXPORT_UNHEALTHY,
                        message,
                        title="Cost export unhealthy",
                        details={"account_id": str(account.id), "status_reason": health.status_reason},
                    )
            logger.debug("export_no_data_yet", config_id=str(config.id), status=config.status)
            return

        for billing_period, objects in periods.items():
            outcome = await self.ingest_period(
                config, account, credentials, billing_period, objects, today=today
            )
            if outcome.status == PERIOD_COMPLETED:
                report.periods_ingested += 1

        if config.status != EXPORT_ACTIVE:
            recovered = config.status == EXPORT_ERROR
            await self._set_config_status(config.id, EXPORT_ACTIVE)
            report.activated.append(str(config.id))
            label = account.name or "AWS account"
            await self.runtime.notifier.notify(
                account.user_id,
                notifications.EXPORT_ACTIVE,
                (
                    f"Cost export for {label} has recovered and is now active again."
                    if recovered
                    else f"Cost export is now active for {label}. Cost data will appear on your dashboard."
                ),
                title="Cost export recovered" if recovered else "Cost export active",
                details={"account_id": str(account.id)},
            )
            logger.info("export_activated", config_id=str(config.id), recovered=recovered)

    async def run_ingestion_cycle(self, today: Optional[date] = None) -> CycleReport:
        """Poll every enabled export; one config's failure never stops the others."""
        today = today or date.today()
        async with self.runtime.session_maker() as session:
            result = await session.execute(
                select(ExportConfig, CloudAccount)
                .join(CloudAccount, ExportConfig.account_id == CloudAccount.id)
                .where(
                    ExportConfig.status.in_(POLLED_STATUSES),
                    CloudAccount.is_active.is_(True),
                    CloudAccount.export_enabled.is_(True),
                )
                .order_by(ExportConfig.created_at)
            )
            rows = list(result.all())

        report = CycleReport(configs_polled=len(rows))
        for config, account in rows:
            try:
                await self._poll_config(config, account, report, today)
            except Exception as e:
                message = (getattr(e, "message", None) or str(e) or "Unknown error")[:CONFIG_ERROR_MAX_CHARS]
                access_error = is_access_error(e)
                logger.error(
                    "export_poll_failed",
                    config_id=str(config.id),
                    account_id=str(account.id),
                    error=str(e),
                    access_error=access_error,
                )
                report.errors.append(
                    {"config_id": str(config.id), "error": message, "access_error": access_error}
                )
                await self._set_config_status(config.id, EXPORT_ERROR, message)
                if access_error:
                    await self._set_export_enabled(account.id, False)
                    await self.runtime.notifier.notify(
                        account.user_id,
                        notifications.EXPORT_ACCESS_ERROR,
                        ACCESS_ERROR_MESSAGE,
                        title="Cost export access error",
                        details={"account_id": str(account.id), "error": message},
                    )

        logger.info(
            "export_ingestion_cycle_completed",
            configs=report.configs_polled,
            periods_ingested=report.periods_ingested,
            activated=len(report.activated),
            errors=len(report.errors),
        )
        return report

    def _naming(self, account: CloudAccount) -> ExportNaming:
        if account.provider != "aws" or not account.is_delegated:
            raise ConfigurationError(
                "Cost exports require an AWS account connected through a delegated role",
                details={"account_id": str(account.id), "provider": account.provider},
            )
        if not account.provider_account_id:
            raise ConfigurationError(
                "AWS account id is missing for this connection",
                details={"account_id": str(account.id)},
            )
        return ExportNaming.for_account(
            self.settings, account.provider_account_id, account.name, account.id
        )

    async def _get_config(self, account_id: UUID) -> Optional[ExportConfig]:
        async with self.runtime.session_maker() as session:
            result = await session.execute(
                select(ExportConfig).where(ExportConfig.account_id == account_id)
            )
            return result.scalars().first()

    async def enable_export(self, account: CloudAccount) -> ExportConfig:
        """Provision bucket and export, then record the config as `provisioning`."""
        naming = self._naming(account)
        credentials = await self._credentials(account)
        provisioned = await self.runtime.provisioner.provision(
            credentials, naming, account.provider_account_id or ""
        )
        message = None
        if provisioned.health is not None and provisioned.health.unhealthy:
            message = provisioned.health.message

        async with self.runtime.session_maker() as session:
            result = await session.execute(
                select(ExportConfig).where(ExportConfig.account_id == account.id)
            )
            config = result.scalars().first()
            if config is None:
                config = ExportConfig(account_id=account.id, user_id=account.user_id)
                session.add(config)
            config.export_name = provisioned.export_name
            config.export_arn = provisioned.export_arn
            config.bucket_name = provisioned.bucket_name
            config.s3_prefix = naming.s3_prefix
            config.region = EXPORTS_REGION
            config.status = EXPORT_PROVISIONING
            config.status_message = message
            config.updated_at = utcnow()
            await session.execute(
                update(CloudAccount)
                .where(CloudAccount.id == account.id)
                .values(export_enabled=True)
            )
            await session.commit()

        logger.info(
            "export_enabled",
            account_id=str(account.id),
            export_name=provisioned.export_name,
            bucket=provisioned.bucket_name,
            bucket_created=provisioned.bucket_created,
            reused_export=provisioned.reused_export,
        )
        return config

    async def disable_export(self, account: CloudAccount) -> TeardownReport:
        """
        Remove the export and connection stack; bucket data is preserved.
        The account stops being polled even when teardown steps fail.
        """
        naming = self._naming(account)
        try:
            credentials = await self._credentials(account)
        except DelegationError as e:
            report = TeardownReport(errors=[{"step": "assumeRole", "error": e.message}])
        else:
            report = await self.runtime.provisioner.teardown(credentials, naming)
        # The connection role is gone; cached sessions for it are dead.
        self._forget_credentials(account)

        config = await self._get_config(account.id)
        if config is not None:
            await self._set_config_status(config.id, EXPORT_ERROR, DISCONNECTED_MESSAGE)
        await self._set_export_enabled(account.id, False)

        logger.info(
            "export_disabled",
            account_id=str(account.id),
            ok=report.ok,
            errors=len(report.errors),
        )
        return report

    async def repair_export_access(self, account: CloudAccount) -> ExportConfig:
        """Re-apply the delivery bucket policy and put the account back into polling."""
        config = await self._get_config(account.id)
        if config is None:
            raise ResourceNotFoundError(
                "No cost export configured for this account",
                details={"account_id": str(account.id)},
            )
        # Access was just fixed on the AWS side; assume the role afresh.
        self._forget_credentials(account)
        credentials = await self._credentials(account)
        await self.runtime.provisioner.reapply_bucket_policy(
            credentials, config.bucket_name, account.provider_account_id or ""
        )

        status = EXPORT_ACTIVE if config.last_successful_run_at else EXPORT_PROVISIONING
        await self._set_config_status(config.id, status)
        await self._set_export_enabled(account.id, True)
        config.status = status
        config.status_message = None
        logger.info("export_access_repaired", account_id=str(account.id), status=status)
        return config

    async def get_export_status(self, account: CloudAccount, check_aws: bool = True) -> ExportStatusReport:
        """
        Config state plus completed periods. With `check_aws`, also asks AWS for
        export health and whether any data has arrived; those lookups are
        non-fatal.
        """
        config = await self._get_config(account.id)
        if config is None:
            return ExportStatusReport(export_enabled=False, status=None)

        async with self.runtime.session_maker() as session:
            result = await session.execute(
                select(IngestionLog)
                .where(
                    IngestionLog.config_id == config.id,
                    IngestionLog.status == INGESTION_COMPLETED,
                )
                .order_by(IngestionLog.billing_period.desc(), IngestionLog.completed_at.desc())
            )
            # A period refreshed by AWS has one completed row per delivery; show the latest.
            latest: dict[str, IngestionLog] = {}
            for log in result.scalars().all():
                latest.setdefault(log.billing_period, log)
            logs = list(latest.values())

        report = ExportStatusReport(
            export_enabled=account.export_enabled,
            status=config.status,
            status_message=config.status_message,
            bucket_name=config.bucket_name,
            export_name=config.export_name,
            last_successful_run_at=as_utc(config.last_successful_run_at),
            billing_periods=[
                {
                    "period": log.billing_period,
                    "total_cost": Decimal(log.total_cost),
                    "rows_processed": log.rows_processed,
                    "ingested_at": as_utc(log.completed_at),
                }
                for log in logs
            ],
        )
        if not check_aws:
            return report

        try:
            credentials = await self._credentials(account)
        except CostIngestException as e:
            logger.debug("export_status_aws_check_skipped", account_id=str(account.id), error=e.message)
            return report

        health = await self.runtime.provisioner.get_export_health(credentials, config.export_arn)
        if health is not None:
            report.export_status_code = health.status_code
            report.export_status_reason = health.status_reason
            report.export_status_message = health.message

        try:
            periods = await self.discover_periods(credentials, config)
        except (CostIngestException, ClientError) as e:
            logger.debug("export_status_discovery_failed", account_id=str(account.id), error=str(e))
            return report

        if not periods and not report.billing_periods:
            report.bucket_empty = True
            if health is not None and health.unhealthy and health.message:
                report.bucket_empty_message = health.message
            else:
                report.bucket_empty_message = BUCKET_EMPTY_MESSAGE
        return report
