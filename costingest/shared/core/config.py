from functools import lru_cache
from typing import Optional

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Environment Constants
ENV_PRODUCTION = "production"
ENV_STAGING = "staging"
ENV_DEVELOPMENT = "development"
ENV_LOCAL = "local"

MIB = 1024 * 1024


@lru_cache
def get_settings() -> "Settings":
    """Returns a singleton instance of the application settings."""
    return Settings()


class Settings(BaseSettings):
    """
    Main configuration for the ingestion core.
    Uses Pydantic-Settings for environment variable parsing from .env.
    """

    APP_NAME: str = "costingest"
    VERSION: str = "0.1.0"
    DEBUG: bool = False
    ENVIRONMENT: str = ENV_DEVELOPMENT
    TESTING: bool = False

    # Database
    DATABASE_URL: str = "postgresql+asyncpg://localhost:5432/costingest"
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20
    DB_ECHO: bool = False

    # Encryption for stored provider credentials
    ENCRYPTION_KEY: Optional[str] = None

    # Cost query cache (Upstash Redis; disabled when unset)
    UPSTASH_REDIS_URL: Optional[str] = None
    UPSTASH_REDIS_TOKEN: Optional[str] = None

    # Circuit breaker (per provider)
    CIRCUIT_BREAKER_FAILURE_THRESHOLD: int = 5
    CIRCUIT_BREAKER_RECOVERY_TIMEOUT_SECONDS: float = 60.0
    CIRCUIT_BREAKER_HALF_OPEN_MAX_CALLS: int = 3
    CIRCUIT_BREAKER_SUCCESS_THRESHOLD: int = 2

    # Retry / timeout for outbound provider calls
    PROVIDER_CALL_TIMEOUT_SECONDS: float = 30.0
    PROVIDER_RETRY_MAX_ATTEMPTS: int = 3
    PROVIDER_RETRY_INITIAL_DELAY_SECONDS: float = 1.0
    PROVIDER_RETRY_BACKOFF_FACTOR: float = 2.0
    PROVIDER_RETRY_MAX_DELAY_SECONDS: float = 30.0

    # Outbound HTTP (REST billing APIs)
    HTTP_TIMEOUT_SECONDS: float = 20.0
    HTTP_CONNECT_TIMEOUT_SECONDS: float = 10.0

    # AWS credential delegation
    AWS_DEFAULT_REGION: str = "us-east-1"
    STS_SESSION_DURATION_SECONDS: int = 3600
    STS_SESSION_NAME_PREFIX: str = "costingest"
    STS_CREDENTIAL_REFRESH_MARGIN_SECONDS: int = 300

    # Bulk cost export (AWS Data Exports / CUR 2.0)
    EXPORT_BUCKET_PREFIX: str = "costingest-cur"
    EXPORT_NAME_PREFIX: str = "costingest-cur"
    EXPORT_S3_PREFIX: str = "cur-exports"
    EXPORT_STACK_NAME_PREFIX: str = "costingest-connection"
    EXPORT_MAX_FILE_SIZE_BYTES: int = 200 * MIB
    EXPORT_DOWNLOAD_CHUNK_BYTES: int = 16 * MIB
    EXPORT_LIFECYCLE_EXPIRATION_DAYS: int = 400
    EXPORT_PROCESSING_LEASE_SECONDS: int = 3600
    PLATFORM_AWS_ACCOUNT_ID: Optional[str] = None

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    @model_validator(mode="after")
    def validate_resilience_settings(self) -> "Settings":
        if self.CIRCUIT_BREAKER_FAILURE_THRESHOLD < 1:
            raise ValueError("CIRCUIT_BREAKER_FAILURE_THRESHOLD must be at least 1")
        if self.CIRCUIT_BREAKER_HALF_OPEN_MAX_CALLS < self.CIRCUIT_BREAKER_SUCCESS_THRESHOLD:
            raise ValueError(
                "CIRCUIT_BREAKER_HALF_OPEN_MAX_CALLS must allow enough trial calls "
                "to reach CIRCUIT_BREAKER_SUCCESS_THRESHOLD"
            )
        if self.PROVIDER_RETRY_MAX_ATTEMPTS < 1:
            raise ValueError("PROVIDER_RETRY_MAX_ATTEMPTS must be at least 1")
        if self.PROVIDER_RETRY_BACKOFF_FACTOR <= 1:
            raise ValueError("PROVIDER_RETRY_BACKOFF_FACTOR must be greater than 1")
        if self.STS_SESSION_DURATION_SECONDS > 3600:
            raise ValueError("STS_SESSION_DURATION_SECONDS cannot exceed one hour")
        return self

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == ENV_PRODUCTION
