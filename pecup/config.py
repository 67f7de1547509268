"""
Configuration and settings for the academic resources API.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_ALLOWED_MIME_TYPES = "application/pdf,image/png,image/jpeg,image/webp"
DEFAULT_ALLOWED_EXTENSIONS = "pdf,png,jpg,jpeg,webp"


class Settings(BaseSettings):
    """Environment-backed settings for the FastAPI service."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    api_prefix: str = Field(default="/api")
    app_env: str = Field(default="production", env="APP_ENV")

    # Database (hosted Postgres expected)
    database_url: Optional[str] = Field(default=None, env="DATABASE_URL")

    # Development toggles
    use_in_memory_backends: bool = Field(
        default=False, env="USE_IN_MEMORY_BACKENDS"
    )

    # Cache (Redis)
    redis_url: Optional[str] = Field(default=None, env="REDIS_URL")
    cache_key_prefix: str = Field(default="pecup:", env="CACHE_KEY_PREFIX")
    static_cache_ttl_seconds: int = Field(default=30 * 24 * 60 * 60)
    dynamic_cache_ttl_seconds: int = Field(default=10 * 60)
    subjects_cache_ttl_seconds: int = Field(default=7 * 24 * 60 * 60)
    profile_cache_ttl_seconds: int = Field(default=60 * 60)
    academic_config_ttl_seconds: int = Field(default=5 * 60)

    # S3-compatible storage (Supabase Storage)
    storage_endpoint: Optional[str] = Field(default=None, env="STORAGE_ENDPOINT")
    storage_region: Optional[str] = Field(default=None, env="STORAGE_REGION")
    storage_bucket: Optional[str] = Field(default=None, env="STORAGE_BUCKET")
    storage_access_key_id: Optional[str] = Field(
        default=None, env="STORAGE_ACCESS_KEY_ID"
    )
    storage_secret_access_key: Optional[str] = Field(
        default=None, env="STORAGE_SECRET_ACCESS_KEY"
    )
    storage_public_base_url: Optional[str] = Field(
        default=None, env="STORAGE_PUBLIC_BASE_URL"
    )

    # Identity forwarded by the upstream sign-in provider
    auth_secret: Optional[str] = Field(default=None, env="AUTH_SECRET")
    auth_algorithm: str = Field(default="HS256")
    trust_email_header: bool = Field(default=False, env="TRUST_EMAIL_HEADER")
    authorized_emails: str = Field(default="", env="AUTHORIZED_EMAILS")

    # Uploads and file delivery
    max_upload_bytes: int = Field(default=25 * 1024 * 1024)
    allowed_upload_mime_types: str = Field(
        default=DEFAULT_ALLOWED_MIME_TYPES, env="ALLOWED_UPLOAD_MIME_TYPES"
    )
    allowed_upload_extensions: str = Field(
        default=DEFAULT_ALLOWED_EXTENSIONS, env="ALLOWED_UPLOAD_EXTENSIONS"
    )
    secure_url_ttl_seconds: int = Field(default=60 * 60)
    secure_url_rate_limit: int = Field(default=30)
    secure_url_rate_window_seconds: int = Field(default=60)

    # Widget windows
    bulk_exam_window_days: int = Field(default=5)
    prime_exam_window_days: int = Field(default=4)

    @property
    def is_development(self) -> bool:
        return self.app_env.lower() == "development"

    def authorized_email_list(self) -> list[str]:
        return [
            email.strip().lower()
            for email in self.authorized_emails.split(",")
            if email.strip()
        ]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
