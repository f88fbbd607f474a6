"""
Credential Delegation (STS AssumeRole)

Exchanges a delegated trust (role ARN + external ID) for short-lived scoped
credentials. Used by the AWS adapter for delegated-role accounts and by the
bulk export engine for every S3 / Data Exports / CloudFormation call.
"""

import asyncio
import re
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Optional

import aioboto3
import structlog
from botocore.config import Config as BotoConfig
from botocore.exceptions import ClientError, NoCredentialsError, PartialCredentialsError

from costingest.shared.core.config import Settings, get_settings
from costingest.shared.core.credentials import AWSCredentials
from costingest.shared.core.exceptions import (
    CircuitOpenError,
    DelegationError,
    RetriesExhaustedError,
)
from costingest.shared.core.retry import ProviderCallExecutor

logger = structlog.get_logger()

STS_BREAKER_NAME = "aws-sts"

STS_CONFIG = BotoConfig(
    read_timeout=10,
    connect_timeout=5,
    retries={"max_attempts": 1},
)

KIND_MISSING_CONFIGURATION = "missing_configuration"
KIND_ACCESS_DENIED = "access_denied"
KIND_INVALID_CALLER_IDENTITY = "invalid_caller_identity"
KIND_UNKNOWN = "unknown"

MISSING_ROLE_MESSAGE = "Automated connection missing role ARN or external ID"
MISSING_SERVER_CREDENTIALS_MESSAGE = (
    "Server AWS credentials are not configured, so the delegated role cannot be "
    "assumed. Contact support; no action is needed on your AWS account."
)
ACCESS_DENIED_MESSAGE = (
    "Access denied when assuming the connection role. Verify that the "
    "CloudFormation stack is still deployed, that the role ARN is correct and "
    "that the external ID matches, then reconnect the account."
)
INVALID_CALLER_MESSAGE = (
    "The server's AWS credentials were rejected (invalid client token). "
    "Contact support; the connection will work again once they are rotated."
)
TEMPORARY_FAILURE_MESSAGE = (
    "AWS STS is temporarily unavailable. The connection will be retried automatically."
)

_SESSION_NAME_UNSAFE = re.compile(r"[^\w+=,.@-]")
_MAX_SESSION_NAME_LENGTH = 64

_INVALID_CALLER_CODES = frozenset(
    {"InvalidClientTokenId", "SignatureDoesNotMatch", "UnrecognizedClientException"}
)


def classify_delegation_error(exc: BaseException) -> tuple[str, str]:
    """Map an STS failure to (kind, user-actionable message)."""
    if isinstance(exc, (NoCredentialsError, PartialCredentialsError)):
        return KIND_MISSING_CONFIGURATION, MISSING_SERVER_CREDENTIALS_MESSAGE
    if isinstance(exc, ClientError):
        code = exc.response.get("Error", {}).get("Code", "")
        if code == "AccessDenied":
            return KIND_ACCESS_DENIED, ACCESS_DENIED_MESSAGE
        if code in _INVALID_CALLER_CODES:
            return KIND_INVALID_CALLER_IDENTITY, INVALID_CALLER_MESSAGE
        message = exc.response.get("Error", {}).get("Message") or str(exc)
        return KIND_UNKNOWN, f"Failed to assume the connection role: {message}"
    if isinstance(exc, (RetriesExhaustedError, CircuitOpenError)):
        return KIND_UNKNOWN, TEMPORARY_FAILURE_MESSAGE
    return KIND_UNKNOWN, f"Failed to assume the connection role: {exc}"


def build_session_name(prefix: str, purpose: str, account_id: Optional[str], now: datetime) -> str:
    """RoleSessionName: `{prefix}-{purpose}-{account}-{epoch}`, STS-safe and <= 64 chars."""
    parts = [prefix, purpose]
    if account_id:
        parts.append(account_id)
    parts.append(str(int(now.timestamp())))
    name = _SESSION_NAME_UNSAFE.sub("-", "-".join(parts))
    return name[-_MAX_SESSION_NAME_LENGTH:]


class RoleDelegationService:
    """
    Assumes delegated roles and caches the resulting credentials per
    (role ARN, external ID) until shortly before they expire.
    """

    def __init__(
        self,
        executor: ProviderCallExecutor,
        settings: Optional[Settings] = None,
        session: Optional[aioboto3.Session] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.executor = executor
        self.settings = settings or get_settings()
        self.session = session or aioboto3.Session()
        self._clock = clock
        self._cache: dict[tuple[str, str], AWSCredentials] = {}
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}

    def _cached(self, key: tuple[str, str]) -> Optional[AWSCredentials]:
        creds = self._cache.get(key)
        if creds is None or creds.expiration is None:
            return None
        margin = timedelta(seconds=self.settings.STS_CREDENTIAL_REFRESH_MARGIN_SECONDS)
        if self._clock() + margin >= creds.expiration:
            self._cache.pop(key, None)
            return None
        return creds

    async def assume_role(
        self,
        role_arn: Optional[str],
        external_id: Optional[str],
        *,
        account_id: Optional[str] = None,
        purpose: str = "costfetch",
    ) -> AWSCredentials:
        """Return temporary credentials for the role, raising DelegationError on failure."""
        if not role_arn or not external_id:
            raise DelegationError(MISSING_ROLE_MESSAGE, kind=KIND_MISSING_CONFIGURATION)

        key = (role_arn, external_id)
        cached = self._cached(key)
        if cached is not None:
            return cached

        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            cached = self._cached(key)
            if cached is not None:
                return cached

            session_name = build_session_name(
                self.settings.STS_SESSION_NAME_PREFIX, purpose, account_id, self._clock()
            )
            try:
                response = await self.executor.call(
                    STS_BREAKER_NAME,
                    self._call_assume_role,
                    role_arn,
                    external_id,
                    session_name,
                    operation="assume_role",
                )
            except Exception as e:
                kind, message = classify_delegation_error(e)
                logger.error(
                    "sts_assume_role_failed",
                    role_arn=role_arn,
                    account_id=account_id,
                    kind=kind,
                    error=str(e),
                )
                raise DelegationError(message, kind=kind, details={"role_arn": role_arn}) from e

            raw = response["Credentials"]
            credentials = AWSCredentials(
                access_key_id=raw["AccessKeyId"],
                secret_access_key=raw["SecretAccessKey"],
                session_token=raw["SessionToken"],
                region=self.settings.AWS_DEFAULT_REGION,
                expiration=raw["Expiration"],
            )
            self._cache[key] = credentials
            logger.info(
                "sts_assume_role_success",
                role_arn=role_arn,
                account_id=account_id,
                expires_at=str(credentials.expiration),
            )
            return credentials

    async def _call_assume_role(self, role_arn: str, external_id: str, session_name: str) -> dict:
        async with self.session.client(
            "sts", region_name=self.settings.AWS_DEFAULT_REGION, config=STS_CONFIG
        ) as sts:
            return await sts.assume_role(
                RoleArn=role_arn,
                RoleSessionName=session_name,
                ExternalId=external_id,
                DurationSeconds=self.settings.STS_SESSION_DURATION_SECONDS,
            )

    def invalidate(self, role_arn: Optional[str], external_id: Optional[str]) -> None:
        """Drop cached credentials after the role was repaired or torn down."""
        self._cache.pop((role_arn, external_id), None)
