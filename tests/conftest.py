"""Shared fixtures: an in-memory sqlite gateway wrapped in a fully wired client."""
from __future__ import annotations

import pytest

from socialsync import SyncClient, build_local_client
from socialsync.config import Settings, get_settings
from socialsync.schemas import Identity
from socialsync.services import SqlGateway


@pytest.fixture
def settings() -> Settings:
    return get_settings().model_copy(
        update={
            "gateway_timeout_seconds": 2.0,
            "echo_marker_ttl_seconds": 30.0,
            "subscription_max_retries": 2,
            "subscription_backoff_seconds": 0.0,
            "subscription_backoff_max_seconds": 0.0,
        }
    )


@pytest.fixture
def client(settings: Settings) -> SyncClient:
    return build_local_client("sqlite+pysqlite:///:memory:", settings=settings)


@pytest.fixture
def gateway(client: SyncClient) -> SqlGateway:
    return client.context.gateway


@pytest.fixture
def viewer() -> Identity:
    return Identity(id="viewer", username="viewer")
