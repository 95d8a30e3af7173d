"""
Application Configuration

Centralized settings management using Pydantic Settings.
Supports environment variables and .env files.
"""

from pydantic_settings import BaseSettings
from pathlib import Path
from typing import Optional


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    # ==========================================================================
    # App Settings
    # ==========================================================================
    APP_NAME: str = "Imagery Transform & Tile Service"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"  # development, staging, PROD
    DEBUG: bool = True

    # ==========================================================================
    # Infrastructure
    # ==========================================================================
    REDIS_URL: str = "redis://localhost:6379/1"

    # ==========================================================================
    # Storage Providers
    # ==========================================================================
    # Primary Azure account (static credential)
    AZURE_STORAGE_CONNECTION_STRING: Optional[str] = None
    AZURE_ACCOUNT_NAME: Optional[str] = None
    AZURE_ACCOUNT_KEY: Optional[str] = None
    AZURE_BLOB_ENDPOINT_SUFFIX: str = "blob.core.windows.net"

    # S3-compatible bucket store
    S3_DEFAULT_REGION: str = "us-east-1"
    S3_ENDPOINT_URL: Optional[str] = None  # MinIO / Ceph, None for AWS

    # ==========================================================================
    # Transform Settings
    # ==========================================================================
    MAX_IMAGE_SIZE_BYTES: int = 52428800  # 50MB

    # ==========================================================================
    # Tile Pyramid Settings
    # ==========================================================================
    TILE_STAGING_DIR: Optional[str] = None  # None -> system temp dir
    TILE_TOOL_BINARY: str = "vips"
    TILE_UPLOAD_CONCURRENCY: int = 16

    # ==========================================================================
    # Celery Settings
    # ==========================================================================
    CELERY_BROKER_URL: Optional[str] = None  # Falls back to REDIS_URL
    CELERY_RESULT_BACKEND: Optional[str] = None  # Falls back to REDIS_URL
    CELERY_TASK_ALWAYS_EAGER: bool = False

    # ==========================================================================
    # Logging Settings
    # ==========================================================================
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT_JSON: bool = True  # JSON for production, console for development

    # ==========================================================================
    # CORS Settings
    # ==========================================================================
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173,http://localhost:8000"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


# Global settings instance
settings = Settings()

if settings.TILE_STAGING_DIR:
    Path(settings.TILE_STAGING_DIR).mkdir(parents=True, exist_ok=True)
