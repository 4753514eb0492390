"""Realtime synchronization and aggregation layer for a social-networking client."""
from .client import SyncClient, build_local_client
from .errors import ConflictError, NotFoundError, SyncError, TransportError, UploadError, ValidationError

__all__ = [
    "SyncClient",
    "build_local_client",
    "SyncError",
    "ValidationError",
    "NotFoundError",
    "TransportError",
    "UploadError",
    "ConflictError",
]
