"""Application configuration using pydantic-settings."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ProviderQuota(BaseModel):
    """Request quota for a single storage provider."""

    requests_per_hour: int = Field(ge=1)
    requests_per_day: int = Field(ge=1)


DEFAULT_PROVIDER_QUOTAS: dict[str, ProviderQuota] = {
    "google-drive": ProviderQuota(requests_per_hour=1000, requests_per_day=10000),
    "dropbox": ProviderQuota(requests_per_hour=500, requests_per_day=5000),
}


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="STORAGESYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Application
    app_name: str = "StorageSync"
    version: str = "0.1.0"
    debug: bool = False
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # Server
    host: str = "0.0.0.0"
    port: int = 3333

    # Database
    database_url: str = Field(
        default="sqlite+aiosqlite:///./config/storagesync.db",
        description="Database connection URL",
    )

    # CORS
    cors_origins: list[str] = Field(
        default=["*"],
        description="Allowed CORS origins",
    )

    # Credential encryption (Fernet key, urlsafe base64)
    encryption_key: str | None = Field(
        default=None,
        description="Fernet key used to encrypt stored OAuth tokens",
    )

    # Google Drive OAuth
    google_client_id: str | None = None
    google_client_secret: str | None = None
    google_redirect_uri: str | None = None
    google_token_uri: str = "https://oauth2.googleapis.com/token"

    # Dropbox OAuth
    dropbox_app_key: str | None = None
    dropbox_app_secret: str | None = None
    dropbox_token_url: str = "https://api.dropboxapi.com/oauth2/token"

    # Provider quotas
    provider_quotas: dict[str, ProviderQuota] = Field(
        default_factory=lambda: dict(DEFAULT_PROVIDER_QUOTAS),
        description="Per-provider hourly and daily request quotas",
    )
    default_quota: ProviderQuota = Field(
        default_factory=lambda: ProviderQuota(requests_per_hour=100, requests_per_day=1000),
        description="Quota applied to providers without an explicit entry",
    )
    backoff_default_seconds: int = Field(
        default=60,
        ge=1,
        description="Backoff duration when a provider gives no retry hint",
    )

    # Retry policy for provider calls
    retry_max_attempts: int = Field(default=3, ge=1)
    retry_initial_delay: float = Field(default=1.0, ge=0)
    retry_max_delay: float = Field(default=30.0, ge=0)
    retry_backoff_multiplier: float = Field(default=2.0, ge=1)

    # Tokens
    token_refresh_buffer_seconds: int = Field(
        default=300,
        ge=0,
        description="Refresh access tokens expiring within this many seconds",
    )

    # Folders
    root_folder_name: str = Field(
        default="RawBox",
        description="Name of the per-user root folder created in each provider",
    )

    # Sync
    sync_enabled: bool = Field(
        default=True,
        description="Run the scheduled sync sweep",
    )
    sync_schedule: str = Field(
        default="0 * * * *",
        description="Cron expression for the sync sweep (default hourly)",
    )

    # Cache
    cache_default_ttl: int = Field(default=3600, ge=1)

    @property
    def google_oauth_configured(self) -> bool:
        """Check if Google OAuth client credentials are configured."""
        return self.google_client_id is not None and self.google_client_secret is not None

    @property
    def dropbox_oauth_configured(self) -> bool:
        """Check if Dropbox app credentials are configured."""
        return self.dropbox_app_key is not None and self.dropbox_app_secret is not None


# Global settings instance
settings = Settings()
