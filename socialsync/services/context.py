"""Explicit dependency bundle handed to every engine at construction."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Awaitable, TypeVar

from ..config import Settings, get_settings
from .gateway import AssetService, RemoteGateway, call_gateway
from .identity import IdentityContext

T = TypeVar("T")


@dataclass
class SyncContext:
    gateway: RemoteGateway
    identity: IdentityContext
    assets: AssetService | None = None
    settings: Settings = field(default_factory=get_settings)

    async def call(self, awaitable: Awaitable[T]) -> T:
        """Run a gateway or asset call under the configured timeout."""

        return await call_gateway(awaitable, self.settings.gateway_timeout_seconds)


__all__ = ["SyncContext"]
