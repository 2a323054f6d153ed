"""
Configuration Settings
Environment variables and gateway tuning knobs
"""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    # Environment
    ENVIRONMENT: str = "development"

    # MongoDB (account repository and credential store)
    MONGODB_URL: Optional[str] = None
    DATABASE_NAME: str = "filegate"

    # Credential encryption at rest
    CREDENTIALS_MASTER_KEY: Optional[str] = None

    # Stats cache / quota
    STATS_CACHE_TTL_SECONDS: int = 15 * 60  # 15 minutes
    STATS_ENUMERATION_LIMIT: int = 10000  # objects
    QUOTA_WARNING_THRESHOLD_PERCENT: float = 90.0

    # Retry
    RETRY_MAX_RETRIES: int = 3
    RETRY_BASE_DELAY_SECONDS: float = 0.5

    # Signed URLs
    DEFAULT_SIGNED_URL_EXPIRY_SECONDS: int = 3600
    PART_URL_EXPIRY_SECONDS: int = 3600

    # Session-based uploads
    SESSION_PART_WAIT_SECONDS: float = 300.0

    # Outbound HTTP (Drive, Dropbox, OAuth, resumable sessions)
    HTTP_TIMEOUT_SECONDS: float = 30.0

    # Vault (internal S3-compatible storage)
    VAULT_ENDPOINT: str = "https://s3.wasabisys.com"
    VAULT_REGION: str = "us-east-1"

    class Config:
        env_file = ".env"
        extra = "ignore"


settings = Settings()
