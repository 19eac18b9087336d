"""
Configuration Management for fsproxy

Uses Pydantic Settings for environment-based configuration. Values are
read from FSPROXY_-prefixed environment variables and an optional .env
file in the working directory.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application configuration loaded from environment variables.

    Environment variables should be prefixed with FSPROXY_.
    Example: FSPROXY_SANDBOX_ROOT=/data
    """

    model_config = SettingsConfigDict(
        env_prefix="FSPROXY_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # =========================================================================
    # General Settings
    # =========================================================================

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging level for the application"
    )

    log_json: bool = Field(
        default=False,
        description="Render log lines as JSON instead of console output"
    )

    # =========================================================================
    # API Server Settings
    # =========================================================================

    api_host: str = Field(
        default="127.0.0.1",
        description="Host to bind the API server"
    )

    api_port: int = Field(
        default=8000,
        description="Port for the API server"
    )

    enable_shutdown_endpoint: bool = Field(
        default=False,
        description="Expose POST /shutdown for remote graceful shutdown"
    )

    pid_file: Path = Field(
        default=Path("./fsproxy.pid"),
        description="File the serve command records its process id in"
    )

    # =========================================================================
    # Sandbox Settings
    # =========================================================================

    sandbox_root: Path = Field(
        default=Path("./data"),
        description="Directory all file operations are confined to"
    )

    io_workers: int = Field(
        default=8,
        ge=1,
        description="Worker threads for blocking filesystem calls"
    )

    chunk_size: int = Field(
        default=64 * 1024,
        ge=1024,
        description="Streaming chunk size in bytes"
    )

    lock_timeout_seconds: float | None = Field(
        default=None,
        gt=0,
        description="Seconds to wait for a path lock before failing with Conflict"
    )

    max_upload_bytes: int | None = Field(
        default=None,
        ge=0,
        description="Largest accepted upload in bytes (unlimited when unset)"
    )

    # =========================================================================
    # Metadata Store Settings
    # =========================================================================

    metadata_url: str | None = Field(
        default=None,
        description="Audit store location (sqlite:///path.db or a file path)"
    )

    recorder_queue_size: int = Field(
        default=10000,
        ge=1,
        description="Pending audit records held before new ones are dropped"
    )


# Global settings instance - lazy loaded
_settings: Settings | None = None


def get_settings() -> Settings:
    """
    Get the application settings instance.

    Uses lazy loading to defer configuration parsing until first use.
    This allows environment variables and .env files to be set up
    before the settings are accessed.

    Returns:
        Settings: The application configuration.
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """
    Reset the settings instance.

    Useful for testing or when environment variables change.
    """
    global _settings
    _settings = None
