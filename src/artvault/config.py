"""
Configuration management for ArtVault application.

This module handles loading and validation of configuration settings
from environment variables and provides type-safe configuration objects.
"""

from pathlib import Path
from typing import Any, Dict, List, Literal

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application configuration settings."""

    # Storage settings
    database_path: Path = Field(
        default=Path("./data/artwork.db"), description="SQLite database path"
    )

    # File server settings
    file_server_base_url: str = Field(
        default="http://localhost:9001", description="File server base URL"
    )
    file_server_app_id: str = Field(default="", description="File server app ID")
    file_server_space_id: str = Field(
        default="", description="File server space ID"
    )
    file_server_api_key: str = Field(default="", description="File server API key")
    remote_timeout_seconds: float = Field(
        default=30.0, description="Timeout for each file server request"
    )

    # Thumbnail options forwarded with every upload
    thumbnail_enabled: bool = Field(default=True, description="Generate thumbnail")
    thumbnail_width: int = Field(default=400, description="Thumbnail width")
    thumbnail_height: int = Field(default=400, description="Thumbnail height")
    thumbnail_mode: Literal["fit", "fill", "stretch"] = Field(
        default="fit", description="Thumbnail resize mode"
    )
    thumbnail_quality: int = Field(default=85, description="Thumbnail quality")

    # Upload job polling
    poll_max_retries: int = Field(
        default=20, description="Maximum number of job status polls"
    )
    poll_interval_seconds: float = Field(
        default=1.0, description="Sleep between job status polls"
    )
    job_success_status: str = Field(
        default="task.completed", description="Remote status marking job success"
    )
    job_failure_status: str = Field(
        default="task.failed", description="Remote status marking job failure"
    )
    job_staleness_seconds: int = Field(
        default=300,
        description="Age after which an unfinished upload job is failed at startup",
    )

    # Deduplication
    similarity_threshold: int = Field(
        default=5, description="Maximum perceptual hash distance for a duplicate"
    )

    # Upload validation
    max_image_size: int = Field(
        default=10485760, description="Maximum image size in bytes (10MB)"
    )
    allowed_image_types: List[str] = Field(
        default=["jpg", "jpeg", "png", "gif", "webp"],
        description="Allowed image file types",
    )

    # Authentication
    api_keys: List[str] = Field(
        default_factory=list, description="Accepted X-API-Key values"
    )
    api_key_file: Path = Field(
        default=Path("./data/apikey.txt"),
        description="File holding the generated admin API key",
    )

    # Server settings
    server_host: str = Field(default="0.0.0.0", description="Server host")
    server_port: int = Field(default=9000, description="Server port")
    log_level: str = Field(default="INFO", description="Log level")
    debug: bool = Field(default=False, description="Debug mode")

    class Config:
        """Pydantic configuration."""

        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"

    def thumbnail_options(self) -> Dict[str, Any]:
        """Upload options understood by the file server."""
        return {
            "thumbnail": {
                "enabled": self.thumbnail_enabled,
                "width": self.thumbnail_width,
                "height": self.thumbnail_height,
                "mode": self.thumbnail_mode,
                "quality": self.thumbnail_quality,
            }
        }


def get_settings() -> Settings:
    """Get application settings instance."""
    return Settings()
