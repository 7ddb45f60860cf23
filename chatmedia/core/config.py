"""Application configuration using pydantic-settings."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_SCOPES = [
    "https://www.googleapis.com/auth/chat.messages.readonly",
    "https://www.googleapis.com/auth/chat.spaces.readonly",
    "https://www.googleapis.com/auth/drive.readonly",
]

ALL_SOURCE_KINDS = [
    "direct-url",
    "chat-resource-ref",
    "drive-file-ref",
    "thumbnail-url",
]


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="CHATMEDIA_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Application
    app_name: str = "chatmedia"
    version: str = "0.3.0"
    debug: bool = False
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # Paths
    config_path: Path = Field(
        default=Path("./config"),
        description="Path for the database file",
    )
    media_path: Path = Field(
        default=Path("./media"),
        description="Root directory for downloaded attachment files",
    )
    database_url: str | None = Field(
        default=None,
        description="Database connection URL (defaults to SQLite under config_path)",
    )

    # Throttling
    download_delay: float = Field(
        default=2.0,
        ge=0.0,
        le=30.0,
        description="Fixed delay in seconds between attachment downloads",
    )
    host_min_delay: float = Field(
        default=1.0,
        ge=0.0,
        description="Minimum seconds between requests to the same upstream host",
    )
    concurrency: int = Field(
        default=1,
        ge=1,
        le=16,
        description="Owning records processed concurrently",
    )

    # Fetching
    request_timeout: float = Field(
        default=120.0,
        gt=0,
        description="Wall-clock limit in seconds for one URL fetch, redirects included; socket timeout for API downloads",
    )
    connect_timeout: float = Field(default=30.0, gt=0)
    max_redirects: int = Field(default=5, ge=0, le=20)
    max_download_bytes: int = Field(
        default=50 * 1024 * 1024,
        description="Payloads larger than this are rejected",
    )
    probe_bytes: int = Field(
        default=200,
        ge=16,
        description="Leading bytes inspected for HTML error pages",
    )
    try_unauthenticated: bool = Field(
        default=True,
        description="Retry auth-requiring URLs without a token when the authenticated attempt fails",
    )
    enabled_source_kinds: list[str] = Field(
        default_factory=lambda: list(ALL_SOURCE_KINDS),
        description="Candidate source kinds the resolution chain may use",
    )
    user_agent: str = "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 chatmedia"

    # Google authentication
    service_account_file: Path | None = Field(
        default=None,
        description="Service account JSON key file",
    )
    impersonate_subject: str | None = Field(
        default=None,
        description="User to impersonate through domain-wide delegation",
    )
    google_scopes: list[str] = Field(default_factory=lambda: list(DEFAULT_SCOPES))
    access_token: str | None = Field(
        default=None,
        description="Pre-issued OAuth access token, used when no service account is set",
    )
    allow_anonymous: bool = Field(
        default=False,
        description="Run without any access token instead of aborting",
    )

    @property
    def db_path(self) -> Path:
        """Get the SQLite database file path."""
        return self.config_path / "chatmedia.db"

    @property
    def resolved_database_url(self) -> str:
        """Get the configured database URL or the SQLite default."""
        if self.database_url:
            return self.database_url
        return f"sqlite+aiosqlite:///{self.db_path}"

    @property
    def google_configured(self) -> bool:
        """Check if any Google credential source is configured."""
        return self.service_account_file is not None or self.access_token is not None


# Global settings instance
settings = Settings()
