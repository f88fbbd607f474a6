"""
AWS Data Exports (CUR 2.0) provisioning.

Automates the customer-side setup a bulk export needs: a private, encrypted
S3 bucket the Data Exports service may write to, and a daily Parquet export
definition pointing at it. Teardown removes what provisioning created but
keeps the bucket and its history.
"""

import json
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional
from uuid import UUID

import aioboto3
import structlog
from botocore.config import Config as BotoConfig
from botocore.exceptions import ClientError

from costingest.shared.adapters.s3_parquet import CUR_COLUMNS
from costingest.shared.core.config import Settings, get_settings
from costingest.shared.core.credentials import AWSCredentials
from costingest.shared.core.exceptions import (
    DelegationError,
    ExportAccessError,
    ExternalAPIError,
)
from costingest.shared.core.retry import ProviderCallExecutor

logger = structlog.get_logger()

# Data Exports and its delivery conditions are us-east-1 scoped.
EXPORTS_REGION = "us-east-1"
EXPORTS_SERVICE_PRINCIPAL = "bcm-data-exports.amazonaws.com"

AWS_CONFIG = BotoConfig(read_timeout=30, connect_timeout=10, retries={"max_attempts": 1})

# Only the columns the Parquet reader decodes.
CUR_QUERY = f"SELECT {', '.join(CUR_COLUMNS)} FROM COST_AND_USAGE_REPORT"

MANAGED_TAGS = (
    {"Key": "ManagedBy", "Value": "costingest"},
    {"Key": "Purpose", "Value": "CostAndUsageReports"},
)

EXPORT_HEALTHY = "HEALTHY"
EXPORT_UNHEALTHY = "UNHEALTHY"

EXPORT_STATUS_MESSAGES = {
    "INSUFFICIENT_PERMISSION": (
        "Data Exports cannot write to your S3 bucket. Re-apply the bucket policy "
        "so the export can deliver."
    ),
    "BILL_OWNER_CHANGED": (
        "Your AWS account moved organizations or billing groups. Create a new "
        "export and remove the old one."
    ),
    "INTERNAL_FAILURE": (
        "AWS Data Exports reported an internal error. Check the AWS Service Health "
        "Dashboard or try again later."
    ),
}

ACCESS_ERROR_CODES = frozenset(
    {
        "AccessDenied",
        "AccessDeniedException",
        "AllAccessDisabled",
        "NoSuchBucket",
        "InvalidAccessKeyId",
        "ExpiredToken",
        "403",
    }
)
_NOT_FOUND_CODES = frozenset({"404", "NoSuchBucket", "NotFound"})

_SLUG_UNSAFE = re.compile(r"[^a-z0-9-]+")


def is_access_error(exc: BaseException) -> bool:
    """Errors that need the customer to repair access, not a retry."""
    if isinstance(exc, ExportAccessError):
        return True
    if isinstance(exc, DelegationError):
        return exc.kind in ("access_denied", "missing_configuration")
    if isinstance(exc, ClientError):
        return exc.response.get("Error", {}).get("Code", "") in ACCESS_ERROR_CODES
    return False


def connection_slug(name: str, account_id: UUID) -> str:
    """Stable, S3-safe identifier for one connection."""
    base = _SLUG_UNSAFE.sub("-", name.lower()).strip("-")[:20].strip("-") or "account"
    return f"{base}-{account_id.hex[:8]}"


@dataclass(frozen=True)
class ExportNaming:
    bucket_name: str
    export_name: str
    stack_name: str
    s3_prefix: str

    @classmethod
    def for_account(
        cls, settings: Settings, aws_account_id: str, name: str, account_id: UUID
    ) -> "ExportNaming":
        slug = connection_slug(name, account_id)
        return cls(
            bucket_name=f"{settings.EXPORT_BUCKET_PREFIX}-{aws_account_id}-{slug}"[:63].rstrip("-"),
            export_name=f"{settings.EXPORT_NAME_PREFIX}-{slug}",
            stack_name=f"{settings.EXPORT_STACK_NAME_PREFIX}-{slug}",
            s3_prefix=settings.EXPORT_S3_PREFIX,
        )


@dataclass
class ProvisionResult:
    bucket_name: str
    bucket_created: bool
    export_name: str
    export_arn: str
    reused_export: bool
    health: Optional["ExportHealth"] = None


@dataclass(frozen=True)
class ExportHealth:
    status_code: Optional[str]
    status_reason: Optional[str]
    message: Optional[str]
    last_refreshed_at: Optional[datetime] = None

    @property
    def unhealthy(self) -> bool:
        return self.status_code == EXPORT_UNHEALTHY


@dataclass
class TeardownReport:
    results: list[dict[str, Any]] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


def build_bucket_policy(
    bucket_name: str, aws_account_id: str, platform_account_id: Optional[str] = None
) -> dict[str, Any]:
    """
    Data Exports delivery requires both aws:SourceAccount and aws:SourceArn
    conditions. The optional second statement grants the platform account
    cross-account read.
    """
    resources = [f"arn:aws:s3:::{bucket_name}", f"arn:aws:s3:::{bucket_name}/*"]
    statements: list[dict[str, Any]] = [
        {
            "Sid": "AllowDataExportsWrite",
            "Effect": "Allow",
            "Principal": {"Service": EXPORTS_SERVICE_PRINCIPAL},
            "Action": ["s3:PutObject", "s3:GetBucketPolicy"],
            "Resource": resources,
            "Condition": {
                "StringEquals": {"aws:SourceAccount": aws_account_id},
                "ArnLike": {
                    "aws:SourceArn": f"arn:aws:bcm-data-exports:{EXPORTS_REGION}:{aws_account_id}:export/*"
                },
            },
        }
    ]
    if platform_account_id:
        statements.append(
            {
                "Sid": "AllowPlatformRead",
                "Effect": "Allow",
                "Principal": {"AWS": f"arn:aws:iam::{platform_account_id}:root"},
                "Action": ["s3:GetObject", "s3:ListBucket", "s3:GetBucketLocation"],
                "Resource": resources,
            }
        )
    return {"Version": "2012-10-17", "Statement": statements}


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


class ExportProvisioner:
    """Customer-side export setup, health checks and teardown."""

    def __init__(
        self,
        executor: ProviderCallExecutor,
        settings: Optional[Settings] = None,
        session: Optional[aioboto3.Session] = None,
    ):
        self.executor = executor
        self.settings = settings or get_settings()
        self.session = session or aioboto3.Session()

    def _client(self, service: str, credentials: AWSCredentials) -> Any:
        kwargs = credentials.client_kwargs()
        kwargs["region_name"] = EXPORTS_REGION
        return self.session.client(service, config=AWS_CONFIG, **kwargs)

    async def _call(self, operation: str, method: Any, **params: Any) -> Any:
        return await self.executor.call("aws", method, operation=operation, **params)

    async def _ensure_bucket(self, s3: Any, bucket_name: str) -> bool:
        """Returns True when the bucket had to be created."""

        async def _exists() -> bool:
            try:
                await s3.head_bucket(Bucket=bucket_name)
            except ClientError as e:
                if _error_code(e) in _NOT_FOUND_CODES:
                    return False
                raise
            return True

        if await self._call("head_bucket", _exists):
            logger.info("export_bucket_exists", bucket=bucket_name)
            return False
        await self._call("create_bucket", s3.create_bucket, Bucket=bucket_name)
        logger.info("export_bucket_created", bucket=bucket_name)
        return True

    async def _merge_tags(self, s3: Any, bucket_name: str) -> None:
        desired_keys = {tag["Key"] for tag in MANAGED_TAGS}

        async def _existing_tags() -> list[dict[str, str]]:
            try:
                response = await s3.get_bucket_tagging(Bucket=bucket_name)
            except ClientError as e:
                if _error_code(e) == "NoSuchTagSet":
                    return []
                raise
            return list(response.get("TagSet", []))

        try:
            existing = await self._call("get_bucket_tagging", _existing_tags)
            merged = [t for t in existing if t["Key"] not in desired_keys] + list(MANAGED_TAGS)
            await self._call(
                "put_bucket_tagging", s3.put_bucket_tagging, Bucket=bucket_name, Tagging={"TagSet": merged}
            )
        except (ClientError, ExternalAPIError) as e:
            # Stack-managed buckets may deny tagging; the export works without tags.
            logger.warning("export_bucket_tagging_failed", bucket=bucket_name, error=str(e))

    async def _configure_bucket(self, s3: Any, bucket_name: str, aws_account_id: str) -> None:
        await self._call(
            "put_public_access_block",
            s3.put_public_access_block,
            Bucket=bucket_name,
            PublicAccessBlockConfiguration={
                "BlockPublicAcls": True,
                "BlockPublicPolicy": True,
                "IgnorePublicAcls": True,
                "RestrictPublicBuckets": True,
            },
        )
        await self._call(
            "put_bucket_encryption",
            s3.put_bucket_encryption,
            Bucket=bucket_name,
            ServerSideEncryptionConfiguration={
                "Rules": [{"ApplyServerSideEncryptionByDefault": {"SSEAlgorithm": "AES256"}}]
            },
        )
        await self._call(
            "put_bucket_lifecycle_configuration",
            s3.put_bucket_lifecycle_configuration,
            Bucket=bucket_name,
            LifecycleConfiguration={
                "Rules": [
                    {
                        "ID": "ExpireOldReports",
                        "Status": "Enabled",
                        "Expiration": {"Days": self.settings.EXPORT_LIFECYCLE_EXPIRATION_DAYS},
                        "Filter": {"Prefix": ""},
                    }
                ]
            },
        )
        await self._merge_tags(s3, bucket_name)
        await self._put_policy(s3, bucket_name, aws_account_id)

    async def _put_policy(self, s3: Any, bucket_name: str, aws_account_id: str) -> None:
        policy = build_bucket_policy(bucket_name, aws_account_id, self.settings.PLATFORM_AWS_ACCOUNT_ID)
        await self._call("put_bucket_policy", s3.put_bucket_policy, Bucket=bucket_name, Policy=json.dumps(policy))

    async def _find_export_arn(self, bcm: Any, export_name: str) -> Optional[str]:
        next_token: Optional[str] = None
        while True:
            params: dict[str, Any] = {"NextToken": next_token} if next_token else {}
            response = await self._call("list_exports", bcm.list_exports, **params)
            for export in response.get("Exports", []):
                if export.get("ExportName") == export_name:
                    return str(export["ExportArn"])
            next_token = response.get("NextToken")
            if not next_token:
                return None

    def _export_definition(self, naming: ExportNaming) -> dict[str, Any]:
        return {
            "Name": naming.export_name,
            "DataQuery": {
                "QueryStatement": CUR_QUERY,
                "TableConfigurations": {
                    "COST_AND_USAGE_REPORT": {
                        "TIME_GRANULARITY": "DAILY",
                        "INCLUDE_RESOURCES": "FALSE",
                        "INCLUDE_MANUAL_DISCOUNT_COMPATIBILITY": "FALSE",
                        "INCLUDE_SPLIT_COST_ALLOCATION_DATA": "FALSE",
                    }
                },
            },
            "DestinationConfigurations": {
                "S3Destination": {
                    "S3Bucket": naming.bucket_name,
                    "S3Prefix": naming.s3_prefix,
                    "S3Region": EXPORTS_REGION,
                    "S3OutputConfigurations": {
                        "OutputType": "CUSTOM",
                        "Format": "PARQUET",
                        "Compression": "PARQUET",
                        "Overwrite": "OVERWRITE_REPORT",
                    },
                }
            },
            "RefreshCadence": {"Frequency": "SYNCHRONOUS"},
        }

    async def provision(
        self, credentials: AWSCredentials, naming: ExportNaming, aws_account_id: str
    ) -> ProvisionResult:
        """
        Idempotent: an existing bucket is reconfigured and an existing export
        with the same name is reused (and health-checked) instead of recreated.
        """
        async with self._client("s3", credentials) as s3:
            created = await self._ensure_bucket(s3, naming.bucket_name)
            await self._configure_bucket(s3, naming.bucket_name, aws_account_id)

        async with self._client("bcm-data-exports", credentials) as bcm:
            existing_arn = await self._find_export_arn(bcm, naming.export_name)
            if existing_arn:
                health = await self._read_health(bcm, existing_arn)
                if health and health.unhealthy:
                    logger.warning(
                        "export_reused_unhealthy",
                        export_name=naming.export_name,
                        status_reason=health.status_reason,
                    )
                return ProvisionResult(
                    bucket_name=naming.bucket_name,
                    bucket_created=created,
                    export_name=naming.export_name,
                    export_arn=existing_arn,
                    reused_export=True,
                    health=health,
                )

            try:
                response = await self._call(
                    "create_export", bcm.create_export, Export=self._export_definition(naming)
                )
            except ClientError as e:
                logger.error(
                    "export_create_failed",
                    export_name=naming.export_name,
                    error_code=_error_code(e),
                    error=str(e),
                )
                raise

        export_arn = str(response["ExportArn"])
        logger.info("export_created", export_name=naming.export_name, export_arn=export_arn)
        return ProvisionResult(
            bucket_name=naming.bucket_name,
            bucket_created=created,
            export_name=naming.export_name,
            export_arn=export_arn,
            reused_export=False,
        )

    async def _read_health(self, bcm: Any, export_arn: str) -> Optional[ExportHealth]:
        response = await self._call("get_export", bcm.get_export, ExportArn=export_arn)
        status = response.get("ExportStatus")
        if not status:
            return None
        reason = status.get("StatusReason")
        message = None
        if reason:
            message = EXPORT_STATUS_MESSAGES.get(reason, f"Export status: {reason}")
        return ExportHealth(
            status_code=status.get("StatusCode"),
            status_reason=reason,
            message=message,
            last_refreshed_at=status.get("LastRefreshedAt"),
        )

    async def get_export_health(
        self, credentials: AWSCredentials, export_arn: Optional[str]
    ) -> Optional[ExportHealth]:
        """Export health from GetExport; None when unknown or unavailable."""
        if not export_arn:
            return None
        try:
            async with self._client("bcm-data-exports", credentials) as bcm:
                return await self._read_health(bcm, export_arn)
        except (ClientError, ExternalAPIError) as e:
            logger.warning("export_health_check_failed", export_arn=export_arn, error=str(e))
            return None

    async def reapply_bucket_policy(
        self, credentials: AWSCredentials, bucket_name: str, aws_account_id: str
    ) -> None:
        """Restore delivery access after the policy was edited or removed."""
        async with self._client("s3", credentials) as s3:
            await self._put_policy(s3, bucket_name, aws_account_id)
        logger.info("export_bucket_policy_reapplied", bucket=bucket_name)

    async def teardown(self, credentials: AWSCredentials, naming: ExportNaming) -> TeardownReport:
        """Every step runs regardless of earlier failures; failures are reported, not raised."""
        report = TeardownReport()

        try:
            async with self._client("bcm-data-exports", credentials) as bcm:
                export_arn = await self._find_export_arn(bcm, naming.export_name)
                if export_arn:
                    await self._call("delete_export", bcm.delete_export, ExportArn=export_arn)
                    report.results.append(
                        {"step": "deleteExport", "export_name": naming.export_name, "status": "deleted"}
                    )
                else:
                    report.results.append(
                        {"step": "deleteExport", "export_name": naming.export_name, "status": "not_found"}
                    )
        except Exception as e:
            logger.error("export_teardown_delete_failed", export_name=naming.export_name, error=str(e))
            report.errors.append({"step": "deleteExport", "error": str(e)})

        # Bucket data is kept and reused on reconnect.
        report.results.append(
            {"step": "preserveBucket", "bucket_name": naming.bucket_name, "status": "preserved"}
        )

        try:
            async with self._client("cloudformation", credentials) as cfn:
                await self._call("delete_stack", cfn.delete_stack, StackName=naming.stack_name)
            report.results.append(
                {"step": "deleteStack", "stack_name": naming.stack_name, "status": "deleting"}
            )
        except Exception as e:
            logger.error("export_teardown_stack_failed", stack_name=naming.stack_name, error=str(e))
            report.errors.append({"step": "deleteStack", "error": str(e)})

        logger.info(
            "export_teardown_completed",
            export_name=naming.export_name,
            steps=len(report.results),
            errors=len(report.errors),
        )
        return report
