"""Error kinds raised by the sync engines and their collaborators."""
from __future__ import annotations

__all__ = [
    "SyncError",
    "ValidationError",
    "NotFoundError",
    "TransportError",
    "UploadError",
    "ConflictError",
]


class SyncError(RuntimeError):
    """Base class for every error surfaced by the sync layer."""


class ValidationError(SyncError):
    """Raised before any network call when a request is malformed."""


class NotFoundError(SyncError):
    """Raised when a referenced user, post or chat does not exist."""


class TransportError(SyncError):
    """Raised when a gateway call fails or does not finish in time."""


class UploadError(TransportError):
    """Raised when the asset service rejects or fails an upload."""


class ConflictError(SyncError):
    """Raised by gateways when a write collides with an existing row.

    Engines treat this as success (e.g. a duplicate like already collapsed).
    """
