# src/storage_jobs/settings.py
from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Single source of truth for all process settings.

    Configuration precedence:
    1. Environment variables (highest priority)
    2. .env file (if exists)
    3. Default values in this class (lowest priority)

    Usage:
        from storage_jobs.settings import get_settings
        settings = get_settings()
        bucket_name = settings.storage_s3_bucket
    """

    app_name: str = Field(
        default="storage-jobs",
        description="Application name, also used as the queue application name"
    )

    # Deployment Mode
    deployment_mode: str = Field(
        default="local-dev",
        description="Deployment mode: local-dev, aws-mock, or aws-prod"
    )

    # Explicit backend overrides (otherwise derived from deployment_mode)
    storage_backend: Optional[str] = Field(
        default=None,
        description="Storage backend override: file or s3"
    )

    queue_backend: Optional[str] = Field(
        default=None,
        description="Queue backend override: local or sqs"
    )

    # AWS Core Settings
    aws_region: str = Field(
        default="us-east-1",
        alias="AWS_DEFAULT_REGION"
    )

    aws_access_key_id: Optional[str] = Field(
        default=None,
        alias="AWS_ACCESS_KEY_ID"
    )

    aws_secret_access_key: Optional[str] = Field(
        default=None,
        alias="AWS_SECRET_ACCESS_KEY"
    )

    aws_endpoint_url: Optional[str] = Field(
        default=None,
        alias="AWS_ENDPOINT_URL"
    )

    # S3 storage
    storage_s3_bucket: str = Field(
        default="storage",
        description="Master bucket every tenant bucket is stored under"
    )

    storage_s3_force_path_style: bool = Field(
        default=False,
        description="Use path-style addressing (needed by most S3-compatible stores)"
    )

    storage_s3_max_sockets: int = Field(
        default=200,
        ge=1,
        description="Max concurrent keep-alive connections to the object store"
    )

    storage_s3_role_arn: Optional[str] = Field(
        default=None,
        description="Role to assume when no static credentials are configured"
    )

    storage_key_prefix: Optional[str] = Field(
        default=None,
        description="Prefix prepended to every storage key"
    )

    # Local file storage
    storage_dir: str = Field(
        default="storage",
        description="Local storage directory"
    )

    storage_signing_key: str = Field(
        default="local-signing-key",
        description="Secret key for signed URLs of the file backend"
    )

    # Queue connection
    database_url: Optional[str] = Field(
        default=None,
        description="Default queue connection target"
    )

    is_multitenant: bool = Field(
        default=False,
        description="Running as a multi-tenant deployment"
    )

    multitenant_database_url: Optional[str] = Field(
        default=None,
        description="Queue connection target for multi-tenant deployments"
    )

    queue_connection_url: Optional[str] = Field(
        default=None,
        description="Explicit queue connection target, wins over everything else"
    )

    # Queue operational windows
    queue_delete_after_days: int = Field(
        default=2,
        description="Days archived jobs are kept before deletion"
    )

    queue_archive_completed_after_seconds: int = Field(
        default=7200,
        description="Seconds a completed job stays in the active table"
    )

    queue_retention_days: int = Field(
        default=2,
        description="Days a never-started job is kept"
    )

    queue_enable_workers: bool = Field(
        default=True,
        description="Run the caller-supplied worker registration hook"
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level"
    )

    @field_validator("deployment_mode", mode="before")
    @classmethod
    def normalize_deployment_mode(cls, v):
        """Map legacy deployment mode names to the current ones."""
        if v:
            mode_mapping = {
                "local": "local-dev",
                "local-mock": "local-dev",
                "cloud": "aws-prod",
            }
            return mode_mapping.get(v, v)
        return v

    @field_validator("deployment_mode")
    @classmethod
    def validate_deployment_mode(cls, v):
        valid_modes = ["local-dev", "aws-mock", "aws-prod"]
        if v not in valid_modes:
            raise ValueError(f"Invalid deployment_mode: {v}. Must be one of {valid_modes}")
        return v

    @field_validator("storage_backend")
    @classmethod
    def validate_storage_backend(cls, v):
        if v is not None and v not in ("file", "s3"):
            raise ValueError(f"Invalid storage_backend: {v}. Must be one of ['file', 's3']")
        return v

    @field_validator("queue_backend")
    @classmethod
    def validate_queue_backend(cls, v):
        if v is not None and v not in ("local", "sqs"):
            raise ValueError(f"Invalid queue_backend: {v}. Must be one of ['local', 'sqs']")
        return v

    @property
    def resolved_storage_backend(self) -> str:
        if self.storage_backend:
            return self.storage_backend
        return "file" if self.deployment_mode == "local-dev" else "s3"

    @property
    def resolved_queue_backend(self) -> str:
        if self.queue_backend:
            return self.queue_backend
        return "local" if self.deployment_mode == "local-dev" else "sqs"

    model_config = SettingsConfigDict(
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    This ensures we only create one Settings instance per process.
    """
    return Settings()
