"""
dbmanager Configuration

Single source of truth for all configuration.
Uses Pydantic Settings for environment variable parsing.
"""
from __future__ import annotations

import logging
import tempfile
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

CACHE_SUBDIR = "dbmanager/cache"


class Settings(BaseSettings):
    """dbmanager configuration from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="DBMANAGER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Environment
    env: str = Field(default="local", description="Environment: local, staging, production")
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")

    # Filesystem
    temp_root: str = Field(
        default_factory=tempfile.gettempdir,
        description="Root under which dbmanager/cache/<operation> is created",
    )

    # Dump utility
    dump_command: str = Field(default="mysqldump")
    default_port: int = Field(default=3306)
    stderr_tail_lines: int = Field(default=1000, ge=1)
    copy_chunk_size: int = Field(default=64 * 1024, ge=1024)

    # Inline streaming
    inline_queue_chunks: int = Field(default=16, ge=1)
    disconnect_poll_seconds: float = Field(default=0.5, gt=0)

    # Background results
    download_url: str = Field(default="/download/file?path=dbmanager/cache/export")

    # Observability
    metrics_enabled: bool = Field(default=True)

    @model_validator(mode="after")
    def check_temp_root(self) -> "Settings":
        if not self.temp_root:
            self.temp_root = tempfile.gettempdir()
        return self


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def cache_dir(operation: str, settings: Optional[Settings] = None) -> Path:
    """
    Return ``<temp_root>/dbmanager/cache/<operation>``, creating it on demand.

    Failures are logged, not raised; the caller hits the real error when it
    tries to create a file inside the directory.
    """
    settings = settings or get_settings()
    path = Path(settings.temp_root) / CACHE_SUBDIR / operation
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.error(f"Failed to create cache directory {path}: {e}")
    return path
