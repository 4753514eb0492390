"""Helpers shared by the test modules."""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from socialsync.errors import TransportError
from socialsync.services import SqlGateway

BASE_TIME = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def at(seconds: float) -> datetime:
    """Deterministic timestamps relative to a fixed base."""

    return BASE_TIME + timedelta(seconds=seconds)


async def drain(rounds: int = 5) -> None:
    """Let scheduled change-feed deliveries run."""

    for _ in range(rounds):
        await asyncio.sleep(0)


async def seed(gateway: SqlGateway, table: str, **payload: Any) -> dict[str, Any]:
    rows = await gateway.write(table, payload)
    return rows[0]


async def seed_users(gateway: SqlGateway, *usernames: str) -> None:
    for username in usernames:
        await seed(gateway, "profiles", id=username, username=username)


def fail_writes(
    monkeypatch: pytest.MonkeyPatch,
    gateway: SqlGateway,
    entity: str,
    exc: Exception | None = None,
) -> list[str]:
    """Make writes to ``entity`` raise; returns a log of attempted entities."""

    original = gateway.write
    attempts: list[str] = []

    async def _write(target: str, payload: Any = None, **kwargs: Any) -> Any:
        attempts.append(target)
        if target == entity:
            await asyncio.sleep(0)
            raise exc or TransportError(f"{target} write failed")
        return await original(target, payload, **kwargs)

    monkeypatch.setattr(gateway, "write", _write)
    return attempts
