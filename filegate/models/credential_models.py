"""
Credential Models
Provider-typed secret bundles, accepted in snake_case or the camelCase the
credential store persists
"""

from pydantic import BaseModel, Field, AliasChoices, ValidationError
from typing import Optional, Dict, Any, Union

from filegate.exceptions import StorageAuthError
from filegate.models.storage_models import ProviderType


def _alias(*names: str) -> AliasChoices:
    return AliasChoices(*names)


class _CredentialBase(BaseModel):
    class Config:
        populate_by_name = True
        extra = "ignore"


class S3Credentials(_CredentialBase):
    """Static keys for AWS S3, vault and generic S3-compatible endpoints"""
    access_key_id: str = Field(..., min_length=1, validation_alias=_alias("access_key_id", "accessKeyId", "accessKey"))
    secret_access_key: str = Field(..., min_length=1, validation_alias=_alias("secret_access_key", "secretAccessKey", "secretKey"))
    bucket: str = Field(..., min_length=1)
    region: Optional[str] = None
    endpoint: Optional[str] = None
    force_path_style: Optional[bool] = Field(None, validation_alias=_alias("force_path_style", "forcePathStyle"))
    quota_bytes: Optional[int] = Field(None, ge=0, validation_alias=_alias("quota_bytes", "quotaBytes"))


class AzureBlobCredentials(_CredentialBase):
    account_name: Optional[str] = Field(None, validation_alias=_alias("account_name", "accountName"))
    account_key: Optional[str] = Field(None, validation_alias=_alias("account_key", "accountKey"))
    container_name: str = Field(..., min_length=1, validation_alias=_alias("container_name", "containerName"))
    connection_string: Optional[str] = Field(None, validation_alias=_alias("connection_string", "connectionString"))
    quota_bytes: Optional[int] = Field(None, ge=0, validation_alias=_alias("quota_bytes", "quotaBytes"))


class GcpStorageCredentials(_CredentialBase):
    project_id: Optional[str] = Field(None, validation_alias=_alias("project_id", "projectId"))
    bucket: str = Field(..., min_length=1)
    key_filename: Optional[str] = Field(None, validation_alias=_alias("key_filename", "keyFilename"))
    service_account_info: Optional[Dict[str, Any]] = Field(
        None,
        validation_alias=_alias("service_account_info", "credentials")
    )
    quota_bytes: Optional[int] = Field(None, ge=0, validation_alias=_alias("quota_bytes", "quotaBytes"))


class GoogleDriveCredentials(_CredentialBase):
    client_id: str = Field(..., min_length=1, validation_alias=_alias("client_id", "clientId"))
    client_secret: str = Field(..., min_length=1, validation_alias=_alias("client_secret", "clientSecret"))
    refresh_token: str = Field(..., min_length=1, validation_alias=_alias("refresh_token", "refreshToken"))
    access_token: Optional[str] = Field(None, validation_alias=_alias("access_token", "accessToken"))
    expiry_date: Optional[int] = Field(
        None,
        validation_alias=_alias("expiry_date", "expiryDate"),
        description="Access token expiry, epoch milliseconds"
    )


class DropboxCredentials(_CredentialBase):
    access_token: str = Field(..., min_length=1, validation_alias=_alias("access_token", "accessToken"))
    refresh_token: Optional[str] = Field(None, validation_alias=_alias("refresh_token", "refreshToken"))
    app_key: Optional[str] = Field(None, validation_alias=_alias("app_key", "appKey"))
    app_secret: Optional[str] = Field(None, validation_alias=_alias("app_secret", "appSecret"))
    expiry_date: Optional[int] = Field(None, validation_alias=_alias("expiry_date", "expiryDate"))


ProviderCredentials = Union[
    S3Credentials,
    AzureBlobCredentials,
    GcpStorageCredentials,
    GoogleDriveCredentials,
    DropboxCredentials,
]

CREDENTIAL_MODELS = {
    ProviderType.VAULT: S3Credentials,
    ProviderType.S3: S3Credentials,
    ProviderType.S3_COMPATIBLE: S3Credentials,
    ProviderType.AZURE_BLOB: AzureBlobCredentials,
    ProviderType.GCP_STORAGE: GcpStorageCredentials,
    ProviderType.GOOGLE_DRIVE: GoogleDriveCredentials,
    ProviderType.DROPBOX: DropboxCredentials,
}


def parse_credentials(provider_type: ProviderType, raw: Union[Dict[str, Any], BaseModel]) -> ProviderCredentials:
    """
    Validate a raw credential record for a provider type

    Raises:
        StorageAuthError: If the record is structurally invalid
    """
    model = CREDENTIAL_MODELS[ProviderType(provider_type)]
    if isinstance(raw, model):
        return raw
    if isinstance(raw, BaseModel):
        raw = raw.model_dump()

    try:
        return model.model_validate(raw or {})
    except ValidationError as e:
        fields = sorted({".".join(str(p) for p in err["loc"]) for err in e.errors()})
        raise StorageAuthError(
            ProviderType(provider_type).value,
            f"invalid credentials ({', '.join(fields)})",
            {"fields": fields}
        ) from e
