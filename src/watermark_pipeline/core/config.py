"""
Worker configuration.

Every tunable is read from ``WATERMARK_*`` environment variables (or a
``.env`` file) so deployments can adjust concurrency and limits without
code changes.
"""

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import ConfigurationError

MAX_STAGED_UPLOAD_BATCH = 25
MAX_MEDIA_CREATE_BATCH = 10


class WorkerConfig(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="WATERMARK_",
        env_file=".env",
        extra="ignore",
        case_sensitive=False,
    )

    # Storage
    database_url: str = "sqlite+aiosqlite:///./watermark.db"

    # Platform API
    api_version: str = "2024-10"
    request_timeout: float = 30.0

    # Concurrency
    product_concurrency: int = Field(2, ge=1)
    queue_concurrency: int = Field(1, ge=1)

    # Image limits
    max_file_size: int = Field(20 * 1024 * 1024, gt=0)
    min_dimension: int = Field(100, gt=0)
    max_dimension: int = Field(10000, gt=0)
    header_bytes: int = Field(65536, gt=0)
    download_timeout: float = Field(30.0, gt=0)
    upload_timeout: float = Field(120.0, gt=0)

    # Platform batch limits
    staged_upload_batch_size: int = Field(MAX_STAGED_UPLOAD_BATCH, ge=1)
    media_create_batch_size: int = Field(MAX_MEDIA_CREATE_BATCH, ge=1)

    # Scope
    max_products_per_job: int = Field(5000, ge=1)

    # Readiness polling
    verify_attempts: int = Field(10, ge=1)
    verify_delay: float = Field(2.0, ge=0)

    # Queue
    queue_max_attempts: int = Field(3, ge=1)
    queue_backoff_delay: float = Field(5.0, ge=0)
    queue_poll_interval: float = Field(1.0, gt=0)
    queue_visibility_timeout: float = Field(900.0, gt=0)

    # Archive
    archive_backend: Literal["platform", "s3"] = "platform"
    s3_bucket: Optional[str] = None
    s3_prefix: str = "watermark-originals"
    s3_public_base_url: Optional[str] = None
    s3_endpoint_url: Optional[str] = None

    # Logging
    log_level: str = "INFO"
    log_format: str = "structured"

    @field_validator("staged_upload_batch_size")
    @classmethod
    def validate_staged_batch(cls, v: int) -> int:
        if v > MAX_STAGED_UPLOAD_BATCH:
            raise ValueError(f"staged_upload_batch_size must be <= {MAX_STAGED_UPLOAD_BATCH}")
        return v

    @field_validator("media_create_batch_size")
    @classmethod
    def validate_media_batch(cls, v: int) -> int:
        if v > MAX_MEDIA_CREATE_BATCH:
            raise ValueError(f"media_create_batch_size must be <= {MAX_MEDIA_CREATE_BATCH}")
        return v

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        if v.lower() not in {"structured", "simple"}:
            raise ValueError("log_format must be one of structured|simple")
        return v.lower()

    @model_validator(mode="after")
    def validate_ranges(self) -> "WorkerConfig":
        if self.min_dimension > self.max_dimension:
            raise ValueError("min_dimension must not exceed max_dimension")
        if self.archive_backend == "s3" and not (self.s3_bucket and self.s3_public_base_url):
            raise ValueError("archive_backend=s3 requires s3_bucket and s3_public_base_url")
        return self


def load_config(**overrides) -> WorkerConfig:
    """Build a config from the environment, converting validation failures."""
    try:
        return WorkerConfig(**overrides)
    except ValidationError as exc:
        raise ConfigurationError(str(exc)) from exc


@lru_cache
def get_config() -> WorkerConfig:
    return load_config()
