"""
Typed Credential Classes
Standardizes provider credentials into Pydantic models.
This decouples adapters from SQLAlchemy models and keeps secrets wrapped in SecretStr.
"""
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, SecretStr, model_validator


class CloudCredentials(BaseModel):
    """Base class for all provider credentials."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    @model_validator(mode="after")
    def reject_blank_secrets(self) -> "CloudCredentials":
        for name in type(self).model_fields:
            value = getattr(self, name)
            if isinstance(value, SecretStr) and not value.get_secret_value().strip():
                raise ValueError(f"{name} must not be blank")
        return self


class AWSCredentials(CloudCredentials):
    """Static or temporary AWS access keys."""

    access_key_id: str = Field(..., min_length=1, alias="accessKeyId")
    secret_access_key: SecretStr = Field(..., alias="secretAccessKey")
    session_token: Optional[SecretStr] = Field(default=None, alias="sessionToken")
    region: str = "us-east-1"
    expiration: Optional[datetime] = None

    def client_kwargs(self) -> dict[str, Optional[str]]:
        """Keyword arguments for aioboto3 `session.client(...)`."""
        return {
            "aws_access_key_id": self.access_key_id,
            "aws_secret_access_key": self.secret_access_key.get_secret_value(),
            "aws_session_token": (
                self.session_token.get_secret_value() if self.session_token else None
            ),
            "region_name": self.region,
        }


class AzureCredentials(CloudCredentials):
    """Azure Service Principal Credentials."""

    tenant_id: str = Field(..., min_length=1, alias="tenantId")
    client_id: str = Field(..., min_length=1, alias="clientId")
    client_secret: SecretStr = Field(..., alias="clientSecret")
    subscription_id: str = Field(..., min_length=1, alias="subscriptionId")


class GCPCredentials(CloudCredentials):
    """GCP Service Account with the BigQuery billing export location."""

    project_id: str = Field(..., min_length=1, alias="projectId")
    service_account_json: SecretStr = Field(..., alias="serviceAccountKey")

    # BigQuery Billing Export
    billing_project_id: Optional[str] = Field(default=None, alias="billingProjectId")
    billing_dataset: Optional[str] = Field(default=None, alias="billingDataset")
    billing_table: Optional[str] = Field(default=None, alias="billingTable")


class DigitalOceanCredentials(CloudCredentials):
    api_token: SecretStr = Field(..., alias="apiToken")


class LinodeCredentials(CloudCredentials):
    api_token: SecretStr = Field(..., alias="apiToken")


class VultrCredentials(CloudCredentials):
    api_key: SecretStr = Field(..., alias="apiKey")


class IBMCredentials(CloudCredentials):
    api_key: SecretStr = Field(..., alias="apiKey")
    account_id: str = Field(..., min_length=1, alias="accountId")


class MongoDBAtlasCredentials(CloudCredentials):
    public_key: str = Field(..., min_length=1, alias="publicKey")
    private_key: SecretStr = Field(..., alias="privateKey")
    org_id: str = Field(..., min_length=1, alias="orgId")


class CredentialResolution(BaseModel):
    """Outcome of resolving an account's credentials: exactly one side is set."""

    credentials: Optional[CloudCredentials] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.credentials is not None and self.error is None
