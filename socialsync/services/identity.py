"""Holds the signed-in identity and notifies listeners when it changes."""
from __future__ import annotations

import inspect
import logging
from typing import Awaitable, Callable, Union

from ..schemas import Identity

logger = logging.getLogger(__name__)

IdentityListener = Callable[[Identity | None, Identity | None], Union[None, Awaitable[None]]]


class IdentityContext:
    """Explicit sign-in/sign-out lifecycle shared by every engine.

    Listeners run in registration order and are awaited one after another, so a
    listener registered early (the subscription supervisor) finishes tearing down
    state for the outgoing identity before later listeners run and before
    :meth:`sign_in` / :meth:`sign_out` return.
    """

    def __init__(self, identity: Identity | None = None) -> None:
        self._current = identity
        self._listeners: list[IdentityListener] = []

    def current(self) -> Identity | None:
        return self._current

    @property
    def user_id(self) -> str | None:
        return self._current.id if self._current else None

    def on_change(self, listener: IdentityListener) -> Callable[[], None]:
        """Register ``listener(previous, current)``; returns an unregister callable."""

        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    async def sign_in(self, identity: Identity) -> None:
        if self._current is not None and self._current.id == identity.id:
            self._current = identity
            return
        await self._switch(identity)

    async def sign_out(self) -> None:
        if self._current is None:
            return
        await self._switch(None)

    async def _switch(self, identity: Identity | None) -> None:
        previous = self._current
        self._current = identity
        logger.info(
            "Identity changed from %s to %s",
            previous.id if previous else None,
            identity.id if identity else None,
        )
        for listener in list(self._listeners):
            result = listener(previous, identity)
            if inspect.isawaitable(result):
                await result


__all__ = ["IdentityContext", "IdentityListener"]
