"""Subscription supervisor: sharing, retries, recovery, routing and teardown."""
from __future__ import annotations

import asyncio
import logging

import pytest

from socialsync.constants import FEED_TABLES
from socialsync.errors import TransportError, ValidationError
from socialsync.schemas import ChangeEvent, PostRecord
from socialsync.services import SubscriptionState, SubscriptionSupervisor, TopicKey, notifications_topic
from support import at, drain, seed, seed_users

POSTS = TopicKey.build("posts")


def _flaky_subscribe(monkeypatch, gateway, failures: int | None) -> list[str]:
    """Fail the first ``failures`` subscribe calls (all of them when None)."""

    original = gateway.subscribe
    calls: list[str] = []

    async def _subscribe(table, *args, **kwargs):
        calls.append(table)
        if failures is None or len(calls) <= failures:
            raise TransportError("change feed unavailable")
        return await original(table, *args, **kwargs)

    monkeypatch.setattr(gateway, "subscribe", _subscribe)
    return calls


def test_second_open_shares_the_subscription(client, gateway):
    async def scenario() -> None:
        supervisor = client.supervisor
        first = await supervisor.open(POSTS)
        second = await supervisor.open(POSTS)

        assert supervisor.refcount(POSTS) == 2
        assert len(gateway.live_subscriptions) == 1
        assert first.state is SubscriptionState.OPEN

        await first.close()
        await first.close()
        assert supervisor.refcount(POSTS) == 1
        assert supervisor.state(POSTS) is SubscriptionState.OPEN

        await second.close()
        assert supervisor.state(POSTS) is SubscriptionState.CLOSED
        assert gateway.live_subscriptions == []

    asyncio.run(scenario())


def test_lease_closes_on_context_exit(client, gateway):
    async def scenario() -> None:
        async with await client.supervisor.open(POSTS) as lease:
            assert lease.state is SubscriptionState.OPEN
        assert lease.released
        assert gateway.live_subscriptions == []

    asyncio.run(scenario())


def test_subscribe_retries_with_backoff(client, gateway, settings, monkeypatch):
    async def scenario() -> None:
        client.context.settings = settings.model_copy(
            update={
                "subscription_max_retries": 3,
                "subscription_backoff_seconds": 0.5,
                "subscription_backoff_max_seconds": 1.0,
            }
        )
        delays: list[float] = []

        async def _sleep(delay: float) -> None:
            delays.append(delay)

        supervisor = SubscriptionSupervisor(client.context, sleep=_sleep)
        calls = _flaky_subscribe(monkeypatch, gateway, failures=2)

        lease = await supervisor.open(POSTS)

        assert len(calls) == 3
        assert delays == [0.5, 1.0]
        assert lease.state is SubscriptionState.OPEN

    asyncio.run(scenario())


def test_subscribe_gives_up_after_max_retries(client, gateway, monkeypatch):
    async def scenario() -> None:
        calls = _flaky_subscribe(monkeypatch, gateway, failures=None)

        with pytest.raises(TransportError):
            await client.supervisor.open(POSTS)

        assert len(calls) == 3
        assert client.supervisor.state(POSTS) is SubscriptionState.CLOSED
        assert client.supervisor.topics == []

    asyncio.run(scenario())


def test_joiner_of_failing_topic_sees_the_failure(client, gateway, monkeypatch):
    async def scenario() -> None:
        calls = _flaky_subscribe(monkeypatch, gateway, failures=None)
        first = asyncio.create_task(client.supervisor.open(POSTS))
        await asyncio.sleep(0)
        assert client.supervisor.state(POSTS) is SubscriptionState.OPENING

        with pytest.raises(TransportError):
            await client.supervisor.open(POSTS)
        with pytest.raises(TransportError):
            await first

        assert len(calls) == 3
        assert client.supervisor.topics == []
        assert gateway.live_subscriptions == []

    asyncio.run(scenario())


def test_joiner_of_opening_topic_gets_a_live_lease(client, gateway, monkeypatch):
    async def scenario() -> None:
        calls = _flaky_subscribe(monkeypatch, gateway, failures=1)
        first = asyncio.create_task(client.supervisor.open(POSTS))
        await asyncio.sleep(0)

        second = await client.supervisor.open(POSTS)
        lease = await first

        assert second.state is SubscriptionState.OPEN
        assert lease.state is SubscriptionState.OPEN
        assert len(calls) == 2
        assert client.supervisor.refcount(POSTS) == 2
        assert len(gateway.live_subscriptions) == 1
        await client.close()

    asyncio.run(scenario())


def test_dropped_channel_is_reopened(client, gateway):
    async def scenario() -> None:
        await seed_users(gateway, "author")
        await client.feed.load_feed()
        await client.supervisor.open(POSTS)
        handle = gateway.live_subscriptions[0]

        gateway.drop_subscription(handle)
        assert client.supervisor.state(POSTS) is SubscriptionState.ERROR
        await drain(20)

        assert client.supervisor.state(POSTS) is SubscriptionState.OPEN
        assert [sub.id for sub in gateway.live_subscriptions] != [handle.id]

        await gateway.write("posts", {"id": "p1", "user_id": "author", "content": "back online"})
        await drain()
        assert [post.id for post in client.feed.posts] == ["p1"]
        await client.close()

    asyncio.run(scenario())


def test_failed_recovery_reports_to_caller(client, gateway, monkeypatch):
    async def scenario() -> None:
        failures: list[tuple[TopicKey, Exception]] = []
        supervisor = SubscriptionSupervisor(client.context, on_failure=lambda key, exc: failures.append((key, exc)))
        await supervisor.open(POSTS)
        handle = gateway.live_subscriptions[0]
        _flaky_subscribe(monkeypatch, gateway, failures=None)

        gateway.drop_subscription(handle)
        await drain(50)

        assert [key for key, _ in failures] == [POSTS]
        assert isinstance(failures[0][1], TransportError)
        assert supervisor.state(POSTS) is SubscriptionState.CLOSED

    asyncio.run(scenario())


def test_event_from_unrouted_table_is_dropped_with_warning(client, gateway, caplog):
    async def scenario() -> None:
        await seed_users(gateway, "author")
        supervisor = SubscriptionSupervisor(client.context)
        await supervisor.open(POSTS)
        await gateway.write("posts", {"id": "p1", "user_id": "author", "content": "hello"})
        await drain()
        await supervisor.close_all()

    with caplog.at_level(logging.WARNING, logger="socialsync.services.supervisor"):
        asyncio.run(scenario())
    assert "unrecognised table 'posts'" in caplog.text


def test_malformed_events_do_not_stop_delivery(client, gateway, caplog):
    async def scenario() -> list[PostRecord]:
        await seed_users(gateway, "author")
        received: list[PostRecord] = []
        supervisor = SubscriptionSupervisor(client.context)
        supervisor.route("posts", lambda event: received.append(PostRecord.model_validate(event.record)))
        await supervisor.open(POSTS)
        handle = gateway.live_subscriptions[0]

        handle.on_event({"table": "posts", "operation": "explode", "record": {}})
        handle.on_event(ChangeEvent(table="posts", operation="insert", record={"id": "broken"}))
        await gateway.write("posts", {"id": "p1", "user_id": "author", "content": "fine"})
        await drain()
        await supervisor.close_all()
        return received

    with caplog.at_level(logging.WARNING, logger="socialsync.services.supervisor"):
        received = asyncio.run(scenario())
    assert [post.id for post in received] == ["p1"]
    assert "malformed change event" in caplog.text
    assert "could not be applied" in caplog.text


def test_failing_handler_does_not_stop_delivery(client, gateway, caplog):
    async def scenario() -> list[str]:
        await seed_users(gateway, "author")
        received: list[str] = []

        def _handle(event: ChangeEvent) -> None:
            if event.record["id"] == "p1":
                raise AttributeError("handler bug")
            received.append(event.record["id"])

        supervisor = SubscriptionSupervisor(client.context)
        supervisor.route("posts", _handle)
        await supervisor.open(POSTS)
        await gateway.write("posts", {"id": "p1", "user_id": "author", "content": "first"})
        await gateway.write("posts", {"id": "p2", "user_id": "author", "content": "second"})
        await drain()
        await supervisor.close_all()
        return received

    with caplog.at_level(logging.ERROR, logger="socialsync.services.supervisor"):
        received = asyncio.run(scenario())
    assert received == ["p2"]
    assert "could not be applied" in caplog.text
    assert "AttributeError" in caplog.text


def test_malformed_like_event_leaves_feed_intact(client, gateway):
    async def scenario() -> None:
        await seed_users(gateway, "author", "fan")
        await seed(gateway, "posts", id="p1", user_id="author", content="hi", created_at=at(0))
        await client.feed.load_feed()
        await client.watch_feed()
        likes = next(sub for sub in gateway.live_subscriptions if sub.table == "likes")

        likes.on_event(ChangeEvent(table="likes", operation="insert", record={"user_id": "fan"}))
        # like rows always name their user; a delete without one cannot be attributed
        likes.on_event(ChangeEvent(table="likes", operation="delete", record={"post_id": "p1"}))
        await gateway.write("likes", {"post_id": "p1", "user_id": "fan"})
        await drain()

        assert client.feed.get("p1").like_count == 1
        await client.close()

    asyncio.run(scenario())


def test_sign_out_tears_down_personal_topics(client, gateway, viewer):
    async def scenario() -> None:
        await seed_users(gateway, "viewer")
        await client.identity.sign_in(viewer)
        await client.watch_feed()
        lease = await client.watch_notifications()
        assert len(gateway.live_subscriptions) == 4

        await client.identity.sign_out()

        assert lease.state is SubscriptionState.CLOSED
        assert client.supervisor.state(notifications_topic("viewer")) is SubscriptionState.CLOSED
        assert sorted(sub.table for sub in gateway.live_subscriptions) == ["comments", "likes", "posts"]

        # nothing for the old identity reaches the engine after sign-out
        await gateway.write("notifications", {"user_id": "viewer", "type": "like", "data": {}})
        await drain()
        assert client.notifications.notifications == []
        await lease.close()
        await client.close()
        assert gateway.live_subscriptions == []

    asyncio.run(scenario())


def test_topic_owned_by_someone_else_is_refused(client, viewer):
    async def scenario() -> None:
        await client.identity.sign_in(viewer)
        with pytest.raises(ValidationError):
            await client.supervisor.open(notifications_topic("someone-else"))
        assert client.supervisor.topics == []

    asyncio.run(scenario())


def test_personal_topic_requires_sign_in(client):
    async def scenario() -> None:
        with pytest.raises(ValidationError):
            await client.watch_notifications()
        with pytest.raises(ValidationError):
            await client.supervisor.open(TopicKey.build("messages", owner_id="viewer"))

    asyncio.run(scenario())


def test_route_conflict(client):
    with pytest.raises(ValueError):
        client.supervisor.route("posts", lambda event: None)


@pytest.mark.parametrize("table", FEED_TABLES)
def test_every_feed_table_is_routed_to_the_feed(client, table):
    with pytest.raises(ValueError):
        client.supervisor.route(table, lambda event: None)
