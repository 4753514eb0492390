"""
Runtime configuration helpers for the sync layer.

Loads DATABASE_URL, gateway timeouts and subscription retry tuning from the
environment, falling back to a .env file located in the project root.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Resolve the project root
BASE_DIR = Path(__file__).resolve().parents[1]

# Absolute path to .env
ENV_PATH = BASE_DIR / ".env"

# Load .env defaults without overriding environment variables provided by the platform
load_dotenv(dotenv_path=ENV_PATH, override=False)


class Settings(BaseSettings):
    database_url: str = Field(default="sqlite+pysqlite:///:memory:", alias="DATABASE_URL")

    # Gateway calls that neither succeed nor fail within this window count as failures
    gateway_timeout_seconds: float = Field(default=10.0, alias="GATEWAY_TIMEOUT_SECONDS")
    feed_page_size: int = Field(default=50, alias="FEED_PAGE_SIZE")
    echo_marker_ttl_seconds: float = Field(default=30.0, alias="ECHO_MARKER_TTL_SECONDS")

    subscription_max_retries: int = Field(default=5, alias="SUBSCRIPTION_MAX_RETRIES")
    subscription_backoff_seconds: float = Field(default=0.5, alias="SUBSCRIPTION_BACKOFF_SECONDS")
    subscription_backoff_max_seconds: float = Field(default=30.0, alias="SUBSCRIPTION_BACKOFF_MAX_SECONDS")

    # Asset uploads (DigitalOcean Spaces / any S3-compatible bucket)
    spaces_key: str | None = Field(default=None, alias="DO_SPACES_KEY")
    spaces_secret: str | None = Field(default=None, alias="DO_SPACES_SECRET")
    spaces_region: str | None = Field(default=None, alias="DO_SPACES_REGION")
    spaces_bucket: str | None = Field(default=None, alias="DO_SPACES_NAME")
    spaces_endpoint: str | None = Field(default=None, alias="DO_SPACES_ENDPOINT")
    spaces_folder: str = Field(default="posts", alias="DO_SPACES_FOLDER")

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore"
    )


@lru_cache()
def get_settings() -> Settings:
    return Settings()


__all__ = ["Settings", "get_settings"]
