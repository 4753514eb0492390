"""Capability surfaces the sync engines consume from the hosted backend."""
from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Mapping, Protocol, TypeVar, runtime_checkable

from ..errors import TransportError
from ..schemas import ChangeEvent

T = TypeVar("T")

Record = dict[str, Any]
Filters = Mapping[str, Any]
EventCallback = Callable[[ChangeEvent], None]
ErrorCallback = Callable[[Exception], None]


class SubscriptionHandle(Protocol):
    """Opaque token returned by :meth:`RemoteGateway.subscribe`."""

    table: str


@runtime_checkable
class RemoteGateway(Protocol):
    """Point reads, point writes, aggregate counts and change-event subscriptions.

    Filter values that are lists or tuples match any of their members; every other
    value is compared for equality. Implementations raise :class:`TransportError`
    for transport failures and :class:`ConflictError` for unique-key collisions.
    """

    async def read(
        self,
        entity: str,
        filters: Filters | None = None,
        *,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[Record]: ...

    async def write(
        self,
        entity: str,
        payload: Mapping[str, Any] | None = None,
        *,
        operation: str = "insert",
        match: Filters | None = None,
    ) -> list[Record]: ...

    async def count(self, entity: str, filters: Filters | None = None) -> int: ...

    async def subscribe(
        self,
        table: str,
        filters: Filters | None,
        on_event: EventCallback,
        on_error: ErrorCallback | None = None,
    ) -> SubscriptionHandle: ...

    async def unsubscribe(self, handle: SubscriptionHandle) -> None: ...


@runtime_checkable
class AssetService(Protocol):
    async def upload(self, data: bytes, mime_type: str) -> str:
        """Store ``data`` and return its public URL."""
        ...


async def call_gateway(call: Awaitable[T], timeout: float) -> T:
    """Await a gateway call, treating a timeout as a transport failure."""

    try:
        return await asyncio.wait_for(call, timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise TransportError(f"Gateway call timed out after {timeout:g}s") from exc


def matches_filters(record: Mapping[str, Any], filters: Filters | None) -> bool:
    """Return True when ``record`` satisfies every filter entry."""

    if not filters:
        return True
    for key, expected in filters.items():
        value = record.get(key)
        if isinstance(expected, (list, tuple, set, frozenset)):
            if value not in expected:
                return False
        elif value != expected:
            return False
    return True


__all__ = [
    "Record",
    "Filters",
    "EventCallback",
    "ErrorCallback",
    "SubscriptionHandle",
    "RemoteGateway",
    "AssetService",
    "call_gateway",
    "matches_filters",
]
