"""Configuration management for Festive Postcards.

This module provides centralized configuration management using Pydantic Settings.
All configuration is loaded from environment variables with the POSTCARD_ prefix,
allowing provider keys and tuning values to change without code changes.

Environment Variable Loading
-----------------------------
Configuration values are loaded in the following priority order:
1. Environment variables (POSTCARD_* prefix)
2. .env file in the project root
3. Default values defined in PostcardConfig

Example .env file:
    POSTCARD_ENVIRONMENT=production
    POSTCARD_FAL_KEY=fal-xxxxxxxx
    POSTCARD_CLOUDINARY_CLOUD_NAME=my-cloud
    POSTCARD_CLOUDINARY_API_KEY=123456789
    POSTCARD_CLOUDINARY_API_SECRET=shhh
    POSTCARD_BREVO_API_KEY=xkeysib-xxxxxxxx
    POSTCARD_ADMIN_API_KEY=change-me

Global Configuration Instance
------------------------------
A global `config` instance is created automatically at module import time.
Route handlers never read it directly; the FastAPI lifespan hands it to the
core services so tests can substitute their own instance.

Usage Example
-------------
    from postcards.core.config import config

    print(config.database_path)
    print(config.cloudinary_configured)

Provider Credentials
--------------------
Every provider credential defaults to ``None``.  Missing credentials do not
stop the application from starting; the affected stage reports a
configuration error (generation) or is skipped (optional background removal).
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class PostcardConfig(BaseSettings):
    """Main configuration for Festive Postcards.

    Values are loaded from environment variables with the POSTCARD_ prefix,
    with fallback to defaults defined here.  The parent directory of
    ``database_path`` is created on initialisation.

    Attributes
    ----------
    General:
        environment : Literal["development", "production"]
            Development mode echoes OTP codes in API responses and logs.
        public_base_url : str
            Base URL used to turn relative dish paths (``/dish/...``) into
            absolute URLs the generation provider can fetch.

    Storage:
        database_path : Path
            SQLite file holding users, OTPs and generated cards.

    OTP:
        otp_ttl_minutes : int
            Lifetime of an issued code.
        otp_length : int
            Number of digits in a code.

    Providers:
        fal_key, clipdrop_api_key, cloudinary_*, brevo_* : credentials and
            sender identity for the third-party services.

    Generation:
        remove_person_background : bool
            Cut the person out of the uploaded photo before composition.
        composition_timeout, style_timeout, background_timeout : float
            Per-stage HTTP timeouts in seconds.
        fal_poll_interval, fal_poll_timeout : float
            Polling cadence for queued FAL requests.
        min_image_bytes, max_image_bytes : int
            Accepted size range for uploaded person photos.

    Dashboard:
        admin_api_key : str | None
            Required ``X-Admin-Key`` header value for admin endpoints.
        cloudinary_count_limit : int
            Maximum number of resources walked when counting generations.

    Server:
        server_host, server_port, cors_origins
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="POSTCARD_",
        case_sensitive=False,
    )

    environment: Literal["development", "production"] = Field(
        default="development",
        description="Deployment environment",
    )
    public_base_url: str = Field(
        default="http://localhost:8080",
        description="Base URL prepended to relative dish image paths",
    )

    # Storage
    database_path: Path = Field(
        default=Path("data/postcards.db"),
        description="SQLite database file",
    )

    # OTP settings
    otp_ttl_minutes: int = Field(default=10, ge=1, le=60)
    otp_length: int = Field(default=6, ge=4, le=10)

    # FAL AI
    fal_key: str | None = Field(default=None, description="FAL AI API key")

    # Clipdrop
    clipdrop_api_key: str | None = Field(default=None, description="Clipdrop API key")

    # Cloudinary
    cloudinary_cloud_name: str | None = Field(default=None)
    cloudinary_api_key: str | None = Field(default=None)
    cloudinary_api_secret: str | None = Field(default=None)
    cloudinary_upload_preset: str = Field(default="ml_default")
    cloudinary_root_folder: str = Field(
        default="festive-postcards",
        description="Folder that holds uploads, cut-outs and videos",
    )

    # Brevo transactional email
    brevo_api_key: str | None = Field(default=None)
    brevo_sender_email: str = Field(default="noreply@festivepostcards.com")
    brevo_sender_name: str = Field(default="Festive Postcard Creator")

    # Generation pipeline
    remove_person_background: bool = Field(
        default=True,
        description="Cut the person out of the uploaded photo before composition",
    )
    composition_timeout: float = Field(default=120.0, gt=0)
    style_timeout: float = Field(default=60.0, gt=0)
    background_timeout: float = Field(default=30.0, gt=0)
    fal_poll_interval: float = Field(default=1.5, gt=0)
    fal_poll_timeout: float = Field(default=60.0, gt=0)
    min_image_bytes: int = Field(default=1000, ge=0)
    max_image_bytes: int = Field(default=10 * 1024 * 1024, ge=1)

    # Dashboard
    admin_api_key: str | None = Field(
        default=None,
        description="Shared secret for dashboard endpoints (open when unset)",
    )
    cloudinary_count_limit: int = Field(default=6000, ge=1)

    # Server settings
    server_host: str = Field(default="0.0.0.0")
    server_port: int = Field(default=8080, ge=1024, le=65535)
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])

    def __init__(self, **kwargs):
        """Initialize configuration and create the database directory.

        Args:
            **kwargs: Configuration overrides (typically from environment variables)
        """
        super().__init__(**kwargs)

        self.database_path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def is_development(self) -> bool:
        """Whether the service runs in development mode."""
        return self.environment == "development"

    @property
    def cloudinary_configured(self) -> bool:
        """Whether all three Cloudinary credentials are present."""
        return bool(
            self.cloudinary_cloud_name and self.cloudinary_api_key and self.cloudinary_api_secret
        )

    @property
    def uploads_folder(self) -> str:
        return f"{self.cloudinary_root_folder}/uploads"

    @property
    def cutouts_folder(self) -> str:
        return f"{self.cloudinary_root_folder}/cutouts"

    @property
    def background_removed_folder(self) -> str:
        return f"{self.cloudinary_root_folder}/background-removed"

    @property
    def videos_folder(self) -> str:
        return f"{self.cloudinary_root_folder}/videos"


# Global configuration instance
# Loaded from environment variables (POSTCARD_* prefix) and the .env file.
config = PostcardConfig()
