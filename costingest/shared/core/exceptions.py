from typing import Any, Dict, Optional


class CostIngestException(Exception):
    """Base exception for all costingest errors."""

    def __init__(
        self,
        message: str,
        code: str = "internal_error",
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}


class AdapterError(CostIngestException):
    """Raised when an external cloud adapter fails."""

    def __init__(
        self,
        message: str,
        code: str = "adapter_error",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, code=code, status_code=502, details=details)


class ExternalAPIError(CostIngestException):
    """
    Raised when an upstream provider API call fails.

    `upstream_status` carries the HTTP status returned by the provider, when
    one exists. `retryable` lets adapters that translate SDK-specific errors
    state the transient/permanent classification explicitly.
    """

    def __init__(
        self,
        message: str,
        code: str = "external_api_error",
        upstream_status: Optional[int] = None,
        retryable: Optional[bool] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, code=code, status_code=502, details=details)
        self.upstream_status = upstream_status
        self.retryable = retryable


class CircuitOpenError(ExternalAPIError):
    """Raised when a call is rejected because the provider circuit is open."""

    def __init__(self, service: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            f"Service {service} is temporarily unavailable (circuit breaker open)",
            code="circuit_breaker_open",
            retryable=False,
            details=details,
        )
        self.status_code = 503
        self.service = service


class RetriesExhaustedError(ExternalAPIError):
    """Raised when a retryable failure persists through every attempt."""

    def __init__(self, attempts: int, last_error: BaseException):
        super().__init__(
            f"Failed after {attempts} attempts: {last_error}",
            code="retries_exhausted",
            retryable=False,
            details={"attempts": attempts, "error_type": type(last_error).__name__},
        )
        self.attempts = attempts
        self.last_error = last_error


class ConfigurationError(CostIngestException):
    """Raised when configuration or a call contract is invalid or missing."""

    def __init__(
        self,
        message: str,
        code: str = "config_error",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, code=code, status_code=500, details=details)


class UnsupportedProviderError(CostIngestException):
    """Raised when no adapter is registered for a provider identifier."""

    def __init__(self, provider: Optional[str]):
        super().__init__(
            f"Provider '{provider}' is not supported",
            code="unsupported_provider",
            status_code=400,
            details={"provider": provider},
        )
        self.provider = provider


class DelegationError(CostIngestException):
    """Raised when a delegated-role credential exchange fails."""

    def __init__(
        self,
        message: str,
        kind: str = "unknown",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, code=f"delegation_{kind}", status_code=401, details=details)
        self.kind = kind


class ExportAccessError(CostIngestException):
    """Raised when the export bucket or definition is not reachable with the granted access."""

    def __init__(
        self,
        message: str,
        code: str = "export_access_denied",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, code=code, status_code=403, details=details)


class ResourceNotFoundError(CostIngestException):
    """Raised when a requested resource is not found."""

    def __init__(
        self,
        message: str,
        code: str = "not_found",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, code=code, status_code=404, details=details)
