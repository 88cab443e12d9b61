"""Configuration for the upload engine and its API clients."""

import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from .exceptions import ConfigurationError
from .models import ServiceId

MB = 1024 * 1024

MULTIPART_THRESHOLD = 100 * MB
DEFAULT_CHUNK_SIZE = 128 * MB
CONCURRENCY = 4
MAX_PART_RETRIES = 3
RETRY_BASE_DELAY = 1.0
MAX_METADATA_BYTES = 1 * MB

DEFAULT_STATE_DIR = Path.home() / ".geoint_upload" / "resume"


class S3Config(BaseModel):
    """S3 configuration for the direct-to-bucket backend."""

    bucket: str = Field(..., min_length=1, description="Target bucket")
    access_key: Optional[str] = Field(None, description="S3 access key")
    secret_key: Optional[str] = Field(None, description="S3 secret key")
    region: str = Field("us-east-1", description="S3 region")
    endpoint_url: Optional[str] = Field(None, description="S3 endpoint URL")
    prefix: str = Field("", description="Key prefix for uploaded objects")
    url_expires_in: int = Field(
        3600, ge=60, le=7 * 24 * 3600, description="Presigned URL lifetime"
    )
    max_retries: int = Field(5, ge=1, le=20, description="botocore retry attempts")

    @classmethod
    def from_env(cls, **overrides) -> "S3Config":
        values = {
            "bucket": os.getenv("GEOINT_S3_BUCKET"),
            "access_key": os.getenv("GEOINT_S3_ACCESS_KEY"),
            "secret_key": os.getenv("GEOINT_S3_SECRET_KEY"),
            "region": os.getenv("GEOINT_S3_REGION", "us-east-1"),
            "endpoint_url": os.getenv("GEOINT_S3_ENDPOINT_URL"),
            "prefix": os.getenv("GEOINT_S3_PREFIX", ""),
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        if not values.get("bucket"):
            raise ConfigurationError(
                "S3 bucket required. Set GEOINT_S3_BUCKET or pass --bucket."
            )
        return cls(**values)


class UploaderConfig(BaseModel):
    """Settings of one uploader instance."""

    api_url: Optional[str] = Field(None, description="Entity API base URL")
    upload_api_url: Optional[str] = Field(None, description="Upload API base URL")
    api_key: Optional[str] = Field(None, description="Value of the x-api-key header")
    timeout: int = Field(30, ge=1, le=300, description="API request timeout in seconds")

    owner_id: str = Field("anonymous", min_length=1, description="Uploading user id")
    organization_id: str = Field("", description="Organization of the uploader")
    service: ServiceId = Field(ServiceId.OPTICAL, description="Destination category")

    multipart_threshold: int = Field(MULTIPART_THRESHOLD, ge=1)
    chunk_size: int = Field(DEFAULT_CHUNK_SIZE, ge=1)
    concurrency: int = Field(CONCURRENCY, ge=1, le=64)
    max_part_retries: int = Field(MAX_PART_RETRIES, ge=0, le=10)
    retry_base_delay: float = Field(RETRY_BASE_DELAY, ge=0)
    max_metadata_bytes: int = Field(MAX_METADATA_BYTES, ge=1)

    state_dir: Path = Field(DEFAULT_STATE_DIR, description="Resume state directory")
    monotonic_progress: bool = Field(
        False, description="Never report a lower percentage than already shown"
    )

    @field_validator("service", mode="before")
    @classmethod
    def parse_service(cls, v):
        return ServiceId.parse(v)

    @classmethod
    def from_env(cls, **overrides) -> "UploaderConfig":
        """Build a config from GEOINT_* environment variables.

        Keyword arguments that are not None take precedence over the
        environment.
        """
        env_map = {
            "api_url": "GEOINT_API_URL",
            "upload_api_url": "GEOINT_UPLOAD_API_URL",
            "api_key": "GEOINT_API_KEY",
            "owner_id": "GEOINT_OWNER_ID",
            "organization_id": "GEOINT_ORG_ID",
            "service": "GEOINT_SERVICE",
            "state_dir": "GEOINT_UPLOAD_STATE_DIR",
            "chunk_size": "GEOINT_CHUNK_SIZE",
            "concurrency": "GEOINT_CONCURRENCY",
            "max_part_retries": "GEOINT_MAX_PART_RETRIES",
            "multipart_threshold": "GEOINT_MULTIPART_THRESHOLD",
        }
        values = {}
        for field, var in env_map.items():
            value = os.getenv(var)
            if value:
                values[field] = value
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    def require_api_urls(self) -> None:
        """Raise unless both REST base URLs are configured."""
        missing = [
            var
            for var, value in (
                ("GEOINT_API_URL", self.api_url),
                ("GEOINT_UPLOAD_API_URL", self.upload_api_url),
            )
            if not value
        ]
        if missing:
            raise ConfigurationError(
                f"API base URL required. Set {' and '.join(missing)} "
                "environment variables or pass them as parameters."
            )
