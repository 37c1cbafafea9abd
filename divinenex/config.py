"""
Configuration and settings for the DivineNex backend.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Literal, Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

MIB = 1024 * 1024
HOUR_MS = 3_600_000
DRIVER_TIMEOUT_SHARE = 0.8


class Settings(BaseSettings):
    """Environment-backed settings for the FastAPI service."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
        populate_by_name=True,
    )

    api_prefix: str = Field(default="/api")
    port: int = Field(default=3000)

    # Post lifecycle
    ttl_hours: int = Field(
        default=24, ge=1, validation_alias=AliasChoices("TTL_HOURS", "CLEANUP_HOURS")
    )
    max_attachment_bytes: int = Field(default=20 * MIB, gt=0)
    max_text_words: int = Field(default=500, gt=0)
    allowed_mime_types: list[str] = Field(default_factory=list)
    post_id_scheme: Literal["store", "derived"] = Field(default="store")
    listing_limit: int = Field(default=100, ge=1, le=100)
    call_timeout_seconds: float = Field(default=10.0, gt=0)

    # Sweep / reconciliation
    enable_background_sweep: bool = Field(default=True)
    sweep_interval_ms: int = Field(default=HOUR_MS, gt=0)
    initial_sweep_delay_ms: int = Field(default=2 * 60 * 1000, ge=0)
    sweep_concurrency: int = Field(default=8, ge=1)
    max_delete_attempts: int = Field(default=3, ge=1)
    reconcile_interval_ms: int = Field(default=24 * HOUR_MS, gt=0)
    reconcile_grace_ms: int = Field(default=HOUR_MS, ge=0)

    # Database (any SQLAlchemy URL; Postgres expected in production)
    database_url: Optional[str] = Field(default=None)

    # S3-compatible blob storage
    s3_endpoint: Optional[str] = Field(default=None)
    s3_region: Optional[str] = Field(default=None)
    s3_bucket: Optional[str] = Field(default=None)
    aws_access_key_id: Optional[str] = Field(default=None)
    aws_secret_access_key: Optional[str] = Field(default=None)
    blob_folder: str = Field(
        default="attachments",
        validation_alias=AliasChoices("BLOB_FOLDER", "DRIVE_FOLDER_ID"),
    )
    blob_public_url_template: str = Field(
        default="https://example.test/blobs/{blob_id}"
    )

    # Sweep lock (Redis)
    redis_url: Optional[str] = Field(default=None)
    redis_lock_prefix: str = Field(default="divinenex:lock:")

    # Live news proxy
    news_feed_url: str = Field(
        default=(
            "https://api.gdeltproject.org/api/v2/doc/doc"
            "?query=India&mode=ArtList&format=json"
        )
    )

    # Development toggles
    use_in_memory_backends: bool = Field(
        default=False,
        validation_alias=AliasChoices(
            "USE_IN_MEMORY_BACKENDS", "DIVINENEX_USE_IN_MEMORY_BACKENDS"
        ),
    )

    @property
    def driver_timeout_seconds(self) -> float:
        """Budget handed to store drivers; below the call timeout so they give up first."""
        return self.call_timeout_seconds * DRIVER_TIMEOUT_SHARE


@dataclass(frozen=True)
class LifecycleConfig:
    """Immutable slice of settings handed to the lifecycle manager."""

    ttl_hours: int = 24
    max_attachment_bytes: int = 20 * MIB
    max_text_words: int = 500
    allowed_mime_types: tuple[str, ...] = ()
    post_id_scheme: str = "store"
    listing_limit: int = 100
    call_timeout_seconds: float = 10.0
    sweep_concurrency: int = 8
    max_delete_attempts: int = 3
    reconcile_grace_ms: int = HOUR_MS

    @property
    def ttl_ms(self) -> int:
        return self.ttl_hours * HOUR_MS

    @classmethod
    def from_settings(cls, settings: Settings) -> "LifecycleConfig":
        return cls(
            ttl_hours=settings.ttl_hours,
            max_attachment_bytes=settings.max_attachment_bytes,
            max_text_words=settings.max_text_words,
            allowed_mime_types=tuple(settings.allowed_mime_types),
            post_id_scheme=settings.post_id_scheme,
            listing_limit=settings.listing_limit,
            call_timeout_seconds=settings.call_timeout_seconds,
            sweep_concurrency=settings.sweep_concurrency,
            max_delete_attempts=settings.max_delete_attempts,
            reconcile_grace_ms=settings.reconcile_grace_ms,
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
