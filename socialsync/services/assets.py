"""Image uploads to DigitalOcean Spaces (or any S3-compatible bucket)."""
from __future__ import annotations

import asyncio
import logging
import mimetypes
import uuid
from dataclasses import dataclass
from io import BytesIO
from urllib.parse import urlparse

from boto3.session import Session
from botocore.client import BaseClient
from botocore.exceptions import BotoCoreError, ClientError

from ..config import Settings, get_settings
from ..errors import UploadError, ValidationError

logger = logging.getLogger(__name__)

_PLACEHOLDER_VALUES = {"changeme", "change-me", "placeholder", "example", "sample", "your-key-here"}


class SpacesConfigurationError(RuntimeError):
    """Raised when required DigitalOcean Spaces settings are missing or invalid."""


@dataclass(frozen=True)
class SpacesConfig:
    """Runtime configuration extracted from settings."""

    key: str
    secret: str
    region: str
    bucket: str
    api_endpoint: str
    public_endpoint: str
    folder: str = "posts"


def _is_placeholder(value: str | None) -> bool:
    if not value:
        return True
    normalized = value.strip().lower()
    return not normalized or normalized in _PLACEHOLDER_VALUES


def load_spaces_config(settings: Settings | None = None) -> SpacesConfig:
    """Validate the ``DO_SPACES_*`` settings and build a :class:`SpacesConfig`."""

    settings = settings or get_settings()
    required: dict[str, str | None] = {
        "DO_SPACES_KEY": settings.spaces_key,
        "DO_SPACES_SECRET": settings.spaces_secret,
        "DO_SPACES_REGION": settings.spaces_region,
        "DO_SPACES_NAME": settings.spaces_bucket,
        "DO_SPACES_ENDPOINT": settings.spaces_endpoint,
    }
    missing = [name for name, value in required.items() if _is_placeholder(value)]
    if missing:
        raise SpacesConfigurationError(
            "Missing required DigitalOcean Spaces configuration: " + ", ".join(sorted(missing))
        )

    region = str(settings.spaces_region).strip()
    bucket = str(settings.spaces_bucket).strip()
    public_endpoint = str(settings.spaces_endpoint).strip().rstrip("/")
    parsed = urlparse(public_endpoint)
    if not parsed.scheme:
        public_endpoint = f"https://{public_endpoint.lstrip(':/')}"
        parsed = urlparse(public_endpoint)
    if not (parsed.netloc or parsed.path):
        raise SpacesConfigurationError("DO_SPACES_ENDPOINT must include a hostname.")

    return SpacesConfig(
        key=str(settings.spaces_key).strip(),
        secret=str(settings.spaces_secret).strip(),
        region=region,
        bucket=bucket,
        api_endpoint=f"https://{bucket}.{region}.digitaloceanspaces.com",
        public_endpoint=parsed.geturl().rstrip("/"),
        folder=settings.spaces_folder.strip("/") or "posts",
    )


def build_spaces_client(config: SpacesConfig) -> BaseClient:
    session = Session()
    return session.client(
        "s3",
        region_name=config.region,
        endpoint_url=config.api_endpoint,
        aws_access_key_id=config.key,
        aws_secret_access_key=config.secret,
    )


def _object_key(mime_type: str, folder: str) -> str:
    extension = mimetypes.guess_extension(mime_type) or ""
    return f"{folder}/{uuid.uuid4().hex}{extension}".lstrip("/")


class SpacesAssetService:
    """Implements :class:`AssetService` by writing public-read objects to a bucket."""

    def __init__(self, config: SpacesConfig, client: BaseClient | None = None) -> None:
        self._config = config
        self._client = client or build_spaces_client(config)

    def public_url(self, key: str) -> str:
        normalized_key = key.lstrip("/")
        return f"{self._config.public_endpoint}/{normalized_key}" if normalized_key else self._config.public_endpoint

    async def upload(self, data: bytes, mime_type: str) -> str:
        content_type = (mime_type or "").strip().lower()
        if not data:
            raise ValidationError("Image upload is empty")
        if not content_type.startswith("image/"):
            raise ValidationError(f"Unsupported upload type '{mime_type}'")

        key = _object_key(content_type, self._config.folder)

        def _upload() -> None:
            try:
                self._client.upload_fileobj(
                    BytesIO(data),
                    self._config.bucket,
                    key,
                    ExtraArgs={"ACL": "public-read", "ContentType": content_type},
                )
            except (ClientError, BotoCoreError) as exc:
                logger.error("Upload to DigitalOcean Spaces failed: %s", exc)
                raise UploadError("Upload to DigitalOcean Spaces failed") from exc

        await asyncio.to_thread(_upload)
        return self.public_url(key)


__all__ = [
    "SpacesConfig",
    "SpacesConfigurationError",
    "SpacesAssetService",
    "load_spaces_config",
    "build_spaces_client",
]
