"""Lifecycle of change-stream subscriptions and routing of their events to engines."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import StrEnum
from functools import partial
from typing import Any, Awaitable, Callable, Mapping

from pydantic import ValidationError as PayloadValidationError

from ..errors import SyncError, TransportError, ValidationError
from ..schemas import ChangeEvent, Identity
from .context import SyncContext
from .gateway import SubscriptionHandle
from .topics import TopicKey

logger = logging.getLogger(__name__)

EventHandler = Callable[[ChangeEvent], None]
FailureCallback = Callable[[TopicKey, Exception], None]


class SubscriptionState(StrEnum):
    CLOSED = "closed"
    OPENING = "opening"
    OPEN = "open"
    ERROR = "error"


@dataclass(eq=False)
class TopicSubscription:
    key: TopicKey
    state: SubscriptionState = SubscriptionState.CLOSED
    refs: int = 0
    handle: SubscriptionHandle | None = None
    failure: TransportError | None = None
    # Set whenever no connect attempt is in flight; joiners wait on it.
    settled: asyncio.Event = field(default_factory=asyncio.Event)


class SubscriptionLease:
    """One caller's share of a topic subscription.

    Every :meth:`SubscriptionSupervisor.open` returns its own lease; the
    underlying gateway subscription stays live until all leases are closed.
    """

    def __init__(self, supervisor: SubscriptionSupervisor, subscription: TopicSubscription) -> None:
        self._supervisor = supervisor
        self._subscription = subscription
        self._released = False

    @property
    def key(self) -> TopicKey:
        return self._subscription.key

    @property
    def state(self) -> SubscriptionState:
        return self._subscription.state

    @property
    def released(self) -> bool:
        return self._released

    async def close(self) -> None:
        if self._released:
            return
        self._released = True
        await self._supervisor._release(self._subscription)

    async def __aenter__(self) -> SubscriptionLease:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()


class SubscriptionSupervisor:
    """Guarantees at most one opening/open gateway subscription per topic key."""

    def __init__(
        self,
        context: SyncContext,
        *,
        on_failure: FailureCallback | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._ctx = context
        self._on_failure = on_failure
        self._sleep = sleep
        self._routes: dict[str, EventHandler] = {}
        self._topics: dict[TopicKey, TopicSubscription] = {}
        self._reopen_tasks: set[asyncio.Task[None]] = set()
        context.identity.on_change(self._on_identity_change)

    def route(self, table: str, handler: EventHandler) -> None:
        """Send every event from ``table`` to ``handler``; one handler per table."""

        if table in self._routes and self._routes[table] is not handler:
            raise ValueError(f"Events from '{table}' are already routed")
        self._routes[table] = handler

    def state(self, key: TopicKey) -> SubscriptionState:
        subscription = self._topics.get(key)
        return subscription.state if subscription else SubscriptionState.CLOSED

    def refcount(self, key: TopicKey) -> int:
        subscription = self._topics.get(key)
        return subscription.refs if subscription else 0

    @property
    def topics(self) -> list[TopicKey]:
        return list(self._topics)

    # -- opening ---------------------------------------------------------------

    async def open(self, key: TopicKey) -> SubscriptionLease:
        """Open ``key`` or join its existing subscription.

        Raises :class:`TransportError` once when every retry failed.
        """

        existing = self._topics.get(key)
        if existing is not None:
            existing.refs += 1
            lease = SubscriptionLease(self, existing)
            await existing.settled.wait()
            if existing.failure is not None:
                lease._released = True
                raise TransportError(f"Could not subscribe to {key}") from existing.failure
            return lease

        if key.owner_id is not None and key.owner_id != self._ctx.identity.user_id:
            raise ValidationError(f"Topic {key} belongs to an identity that is not signed in")

        subscription = TopicSubscription(key=key, state=SubscriptionState.OPENING, refs=1)
        self._topics[key] = subscription
        lease = SubscriptionLease(self, subscription)
        await self._connect(subscription)
        return lease

    async def _connect(self, subscription: TopicSubscription) -> None:
        subscription.settled.clear()
        subscription.failure = None
        try:
            await self._connect_with_retries(subscription)
        except TransportError as exc:
            subscription.failure = exc
            raise
        finally:
            subscription.settled.set()

    async def _connect_with_retries(self, subscription: TopicSubscription) -> None:
        settings = self._ctx.settings
        key = subscription.key
        attempt = 0
        while self._is_current(subscription):
            subscription.state = SubscriptionState.OPENING
            try:
                handle = await self._ctx.call(
                    self._ctx.gateway.subscribe(
                        key.table,
                        key.filter_dict,
                        partial(self._dispatch, subscription),
                        partial(self._on_transport_error, subscription),
                    )
                )
            except TransportError as exc:
                attempt += 1
                if attempt > settings.subscription_max_retries:
                    self._forget(subscription)
                    logger.error("Giving up on %s after %d attempts", key, attempt)
                    raise TransportError(f"Could not subscribe to {key} after {attempt} attempts") from exc
                delay = min(
                    settings.subscription_backoff_seconds * (2 ** (attempt - 1)),
                    settings.subscription_backoff_max_seconds,
                )
                logger.warning("Subscribing to %s failed (attempt %d); retrying in %.2fs", key, attempt, delay)
                await self._sleep(delay)
                continue

            if not self._is_current(subscription):
                # Released while the gateway call was in flight.
                await self._unsubscribe(handle)
                return
            subscription.handle = handle
            subscription.state = SubscriptionState.OPEN
            logger.debug("Subscribed to %s", key)
            return

    def _on_transport_error(self, subscription: TopicSubscription, exc: Exception) -> None:
        if not self._is_current(subscription):
            return
        logger.warning("Change feed for %s failed: %s; reopening", subscription.key, exc)
        subscription.state = SubscriptionState.ERROR
        subscription.handle = None
        subscription.settled.clear()
        task = asyncio.get_running_loop().create_task(self._reopen(subscription))
        self._reopen_tasks.add(task)
        task.add_done_callback(self._reopen_tasks.discard)

    async def _reopen(self, subscription: TopicSubscription) -> None:
        try:
            await self._connect(subscription)
        except TransportError as exc:
            if self._on_failure is not None:
                self._on_failure(subscription.key, exc)

    # -- dispatch --------------------------------------------------------------

    def _dispatch(self, subscription: TopicSubscription, event: ChangeEvent | Mapping[str, Any]) -> None:
        if not self._is_current(subscription) or subscription.state is not SubscriptionState.OPEN:
            logger.debug("Dropping event for inactive topic %s", subscription.key)
            return
        try:
            change = event if isinstance(event, ChangeEvent) else ChangeEvent.model_validate(event)
        except PayloadValidationError:
            logger.warning("Dropping malformed change event on %s", subscription.key)
            return

        handler = self._routes.get(change.table)
        if handler is None:
            logger.warning("Dropping event from unrecognised table '%s'", change.table)
            return
        try:
            handler(change)
        except Exception:
            logger.exception("Dropping %s %s event that could not be applied", change.table, change.operation)

    # -- closing ---------------------------------------------------------------

    async def _release(self, subscription: TopicSubscription) -> None:
        subscription.refs = max(0, subscription.refs - 1)
        if subscription.refs > 0:
            return
        handle = self._forget(subscription)
        if handle is not None:
            await self._unsubscribe(handle)

    async def teardown(self, owner_id: str) -> None:
        """Close every topic scoped to ``owner_id`` regardless of outstanding leases."""

        await self._close_many([sub for sub in self._topics.values() if sub.key.owner_id == owner_id])

    async def close_all(self) -> None:
        await self._close_many(list(self._topics.values()))
        for task in list(self._reopen_tasks):
            task.cancel()

    async def _close_many(self, subscriptions: list[TopicSubscription]) -> None:
        # Stop delivery for all of them before awaiting any unsubscribe call.
        handles = [self._forget(subscription) for subscription in subscriptions]
        for handle in handles:
            if handle is not None:
                await self._unsubscribe(handle)

    def _forget(self, subscription: TopicSubscription) -> SubscriptionHandle | None:
        if self._topics.get(subscription.key) is subscription:
            del self._topics[subscription.key]
        handle = subscription.handle
        subscription.handle = None
        subscription.state = SubscriptionState.CLOSED
        return handle

    async def _unsubscribe(self, handle: SubscriptionHandle) -> None:
        try:
            await self._ctx.call(self._ctx.gateway.unsubscribe(handle))
        except SyncError as exc:
            logger.warning("Unsubscribing from %s failed: %s", getattr(handle, "table", "?"), exc)

    def _is_current(self, subscription: TopicSubscription) -> bool:
        return self._topics.get(subscription.key) is subscription

    async def _on_identity_change(self, previous: Identity | None, current: Identity | None) -> None:
        if previous is not None:
            await self.teardown(previous.id)


__all__ = [
    "SubscriptionSupervisor",
    "SubscriptionLease",
    "SubscriptionState",
    "TopicSubscription",
]
