from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Mapping
from datetime import date
from typing import Any, ClassVar, Optional, TypeVar

import structlog
from pydantic import ValidationError

from costingest.models.cloud import CloudAccount
from costingest.schemas.costs import (
    DailyCostPoint,
    ProviderCostData,
    RecommendationSet,
    ServiceDetails,
)
from costingest.shared.adapters.synthesis import synthesize_daily_series
from costingest.shared.core.credentials import CloudCredentials, CredentialResolution
from costingest.shared.core.exceptions import ConfigurationError
from costingest.shared.core.retry import ProviderCallExecutor

logger = structlog.get_logger()
T = TypeVar("T")

CREDENTIALS_NOT_FOUND = "Credentials not found"


class BaseAdapter(ABC):
    """
    Abstract Base Class for provider cost adapters.

    One instance per provider, shared by every account of that provider.
    Credentials are passed per call; adapters hold no account state.

    Standardizes the interface for:
    - Credential validation and resolution
    - Cost ingestion (month totals, service breakdown, daily series)
    - Service drill-down and cost recommendations
    """

    provider_id: ClassVar[str]
    aliases: ClassVar[tuple[str, ...]] = ()
    display_name: ClassVar[str]
    credentials_model: ClassVar[type[CloudCredentials]]
    required_fields: ClassVar[tuple[str, ...]] = ()

    def __init__(self, executor: ProviderCallExecutor):
        self.executor = executor

    async def _call(
        self, operation: str, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any
    ) -> T:
        """Run an upstream call under this provider's breaker and retry policy."""
        return await self.executor.call(
            self.provider_id, func, *args, operation=operation, **kwargs
        )

    def parse_credentials(self, credentials: Mapping[str, Any] | CloudCredentials) -> CloudCredentials:
        if isinstance(credentials, self.credentials_model):
            return credentials
        if isinstance(credentials, CloudCredentials):
            raise ConfigurationError(
                f"{self.display_name} adapter received {type(credentials).__name__}"
            )
        return self.credentials_model.model_validate(dict(credentials))

    def validate_credentials(self, credentials: Optional[Mapping[str, Any] | CloudCredentials]) -> bool:
        """True when every field the provider requires is present."""
        if not credentials:
            return False
        try:
            self.parse_credentials(credentials)
        except (ValidationError, ConfigurationError):
            return False
        return True

    def incomplete_credentials_message(self) -> str:
        return (
            f"{self.display_name} credentials incomplete "
            f"(requires {', '.join(self.required_fields)})"
        )

    async def resolve_credentials(
        self, account: CloudAccount, stored_data: Optional[Mapping[str, Any]] = None
    ) -> CredentialResolution:
        """
        Turn a stored account into usable credentials.

        Direct-credential providers read the decrypted blob; `stored_data`
        overrides it when the caller already holds decrypted values.
        """
        data = stored_data if stored_data is not None else account.credential_data
        if not data:
            return CredentialResolution(error=CREDENTIALS_NOT_FOUND, error_kind="missing_configuration")
        if not self.validate_credentials(data):
            return CredentialResolution(
                error=self.incomplete_credentials_message(), error_kind="missing_configuration"
            )
        return CredentialResolution(credentials=self.parse_credentials(data))

    @abstractmethod
    async def fetch_cost_data(
        self, credentials: CloudCredentials, start: date, end: date
    ) -> ProviderCostData:
        """Month totals, forecast, credits, service breakdown and daily series."""
        raise NotImplementedError()

    def synthesize_daily_data(
        self,
        cost_data: ProviderCostData,
        start: Optional[date],
        end: Optional[date],
        today: Optional[date] = None,
    ) -> Optional[list[DailyCostPoint]]:
        """None: the upstream API already returns true daily granularity."""
        return None

    @abstractmethod
    async def fetch_service_details(
        self, credentials: CloudCredentials, service_name: str, start: date, end: date
    ) -> ServiceDetails:
        raise NotImplementedError()

    async def fetch_recommendations(
        self, credentials: CloudCredentials, options: Optional[Mapping[str, Any]] = None
    ) -> RecommendationSet:
        return RecommendationSet.empty(self.provider_id)


class InvoiceOnlyAdapter(BaseAdapter, ABC):
    """
    Adapter for providers whose billing API only reports invoice / month-to-date
    totals. The daily series is synthesized from the current month total unless
    the upstream response already carried daily points.
    """

    def synthesize_daily_data(
        self,
        cost_data: ProviderCostData,
        start: Optional[date],
        end: Optional[date],
        today: Optional[date] = None,
    ) -> list[DailyCostPoint]:
        if cost_data.daily_points:
            return list(cost_data.daily_points)
        return synthesize_daily_series(cost_data.current_month_total, start, end, today=today)
