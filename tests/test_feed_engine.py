"""Feed aggregation: optimistic likes, echo suppression and pushed counter deltas."""
from __future__ import annotations

import asyncio

import pytest

from socialsync.errors import NotFoundError, TransportError, ValidationError
from socialsync.schemas import FeedFilter, Identity
from socialsync.services import CountKind, EchoMarkers, MutationState
from support import at, drain, fail_writes, seed, seed_users


async def _post_with_likes(gateway, *, likes: int = 3, post_id: str = "post-p", **extra) -> str:
    await seed_users(gateway, "viewer", "author", *(f"fan-{n}" for n in range(likes)))
    await seed(gateway, "posts", id=post_id, user_id="author", content="hello", created_at=at(0), **extra)
    for n in range(likes):
        await seed(gateway, "likes", post_id=post_id, user_id=f"fan-{n}")
    return post_id


def test_own_like_echo_is_not_counted_twice(client, gateway, viewer):
    async def scenario() -> None:
        post_id = await _post_with_likes(gateway)
        await client.identity.sign_in(viewer)
        await client.watch_feed()
        await client.feed.load_feed()

        post = client.feed.get(post_id)
        assert post.like_count == 3
        assert post.viewer_has_liked is False

        task = asyncio.create_task(client.feed.apply_like_toggle(post_id))
        await asyncio.sleep(0)
        # optimistic state is visible before the gateway acknowledges
        assert post.like_count == 4
        assert post.viewer_has_liked is True

        mutation = await task
        await drain()

        assert mutation.state is MutationState.CONFIRMED
        assert post.like_count == 4
        assert post.viewer_has_liked is True
        assert client.feed.pending_echoes(post_id, "viewer", CountKind.LIKE) == 0
        assert await gateway.count("likes", {"post_id": post_id}) == 4
        await client.close()

    asyncio.run(scenario())


def test_like_toggle_parity_matches_call_count(client, gateway, viewer):
    async def scenario() -> None:
        post_id = await _post_with_likes(gateway, likes=2)
        await client.identity.sign_in(viewer)
        await client.watch_feed()
        await client.feed.load_feed()

        for _ in range(5):
            await client.feed.apply_like_toggle(post_id)
        await drain()

        post = client.feed.get(post_id)
        assert post.viewer_has_liked is True
        assert post.like_count == 3
        assert await gateway.count("likes", {"post_id": post_id}) == 3

        await client.feed.apply_like_toggle(post_id)
        await drain()
        assert post.viewer_has_liked is False
        assert post.like_count == 2
        await client.close()

    asyncio.run(scenario())


def test_duplicate_push_of_viewer_like_is_ignored(client, gateway, viewer):
    async def scenario() -> None:
        post_id = await _post_with_likes(gateway)
        await client.identity.sign_in(viewer)
        await client.feed.load_feed()

        await client.feed.apply_like_toggle(post_id)
        # the echo and then a redelivered copy of it
        assert client.feed.apply_count_delta(post_id, "like", 1, actor_id="viewer") is False
        assert client.feed.apply_count_delta(post_id, "like", 1, actor_id="viewer") is False
        assert client.feed.get(post_id).like_count == 4

    asyncio.run(scenario())


def test_like_toggle_rolls_back_on_transport_error(client, gateway, viewer, monkeypatch):
    async def scenario() -> None:
        post_id = await _post_with_likes(gateway)
        await client.identity.sign_in(viewer)
        await client.feed.load_feed()
        fail_writes(monkeypatch, gateway, "likes")

        with pytest.raises(TransportError):
            await client.feed.apply_like_toggle(post_id)

        post = client.feed.get(post_id)
        assert post.like_count == 3
        assert post.viewer_has_liked is False
        assert client.feed.pending_echoes(post_id, "viewer", CountKind.LIKE) == 0

    asyncio.run(scenario())


def test_like_toggle_rolls_back_when_gateway_hangs(client, gateway, viewer, monkeypatch, settings):
    async def scenario() -> None:
        post_id = await _post_with_likes(gateway)
        await client.identity.sign_in(viewer)
        await client.feed.load_feed()
        client.context.settings = settings.model_copy(update={"gateway_timeout_seconds": 0.05})

        async def _hang(*_args, **_kwargs):
            await asyncio.sleep(10)

        monkeypatch.setattr(gateway, "write", _hang)

        with pytest.raises(TransportError):
            await client.feed.apply_like_toggle(post_id)

        post = client.feed.get(post_id)
        assert post.like_count == 3
        assert post.viewer_has_liked is False

    asyncio.run(scenario())


@pytest.mark.parametrize("watched", [False, True])
def test_like_made_on_another_device_counts_once(client, gateway, viewer, watched):
    async def scenario() -> None:
        post_id = await _post_with_likes(gateway)
        await client.identity.sign_in(viewer)
        if watched:
            await client.watch_feed()
        await client.feed.load_feed()
        # the same account likes the post elsewhere; its push (if any) is still in flight
        await gateway.write("likes", {"post_id": post_id, "user_id": "viewer"})

        mutation = await client.feed.apply_like_toggle(post_id)
        await drain()

        post = client.feed.get(post_id)
        assert mutation.state is MutationState.CONFIRMED
        assert post.viewer_has_liked is True
        assert post.like_count == await gateway.count("likes", {"post_id": post_id}) == 4
        assert await gateway.count("likes", {"post_id": post_id, "user_id": "viewer"}) == 1
        await client.close()

    asyncio.run(scenario())


@pytest.mark.parametrize("watched", [False, True])
def test_unlike_made_on_another_device_counts_once(client, gateway, viewer, watched):
    async def scenario() -> None:
        post_id = await _post_with_likes(gateway)
        await seed(gateway, "likes", post_id=post_id, user_id="viewer")
        await client.identity.sign_in(viewer)
        if watched:
            await client.watch_feed()
        await client.feed.load_feed()
        assert client.feed.get(post_id).like_count == 4
        await gateway.write("likes", operation="delete", match={"post_id": post_id, "user_id": "viewer"})

        await client.feed.apply_like_toggle(post_id)
        await drain()

        post = client.feed.get(post_id)
        assert post.viewer_has_liked is False
        assert post.like_count == await gateway.count("likes", {"post_id": post_id}) == 3
        await client.close()

    asyncio.run(scenario())


def test_pushes_from_other_users_adjust_counts(client, gateway, viewer):
    async def scenario() -> None:
        post_id = await _post_with_likes(gateway, likes=1)
        await seed_users(gateway, "friend")
        await client.identity.sign_in(viewer)
        await client.watch_feed()
        await client.feed.load_feed()

        await gateway.write("likes", {"post_id": post_id, "user_id": "friend"})
        await gateway.write("comments", {"post_id": post_id, "user_id": "friend", "content": "nice"})
        await drain()

        post = client.feed.get(post_id)
        assert post.like_count == 2
        assert post.comment_count == 1
        assert post.viewer_has_liked is False

        await gateway.write("likes", operation="delete", match={"post_id": post_id, "user_id": "friend"})
        await drain()
        assert post.like_count == 1
        await client.close()

    asyncio.run(scenario())


def test_count_delta_is_noop_for_posts_not_displayed(client, gateway, viewer):
    async def scenario() -> None:
        await client.identity.sign_in(viewer)
        await client.feed.load_feed()
        assert client.feed.apply_count_delta("missing", CountKind.LIKE, 1) is False
        assert client.feed.posts == []

    asyncio.run(scenario())


def test_counts_never_go_negative(client, gateway, viewer):
    async def scenario() -> None:
        await seed_users(gateway, "author")
        await seed(gateway, "posts", id="p1", user_id="author", content="quiet", created_at=at(0))
        await client.feed.load_feed()

        client.feed.apply_count_delta("p1", CountKind.LIKE, -1, actor_id="someone")
        client.feed.apply_count_delta("p1", CountKind.COMMENT, -2)

        post = client.feed.get("p1")
        assert post.like_count == 0
        assert post.comment_count == 0

    asyncio.run(scenario())


def test_filter_naming_two_scopes_is_rejected_before_any_call(client, gateway, viewer, monkeypatch):
    async def scenario() -> None:
        await client.identity.sign_in(viewer)

        async def _unexpected(*_args, **_kwargs):
            raise AssertionError("gateway should not be called")

        monkeypatch.setattr(gateway, "read", _unexpected)
        with pytest.raises(ValidationError):
            await client.feed.load_feed(FeedFilter(following=True, group_id="g1"))
        with pytest.raises(ValidationError):
            await client.feed.load_feed(FeedFilter(group_id="g1", author_id="author"))

    asyncio.run(scenario())


def test_following_feed(client, gateway, viewer):
    async def scenario() -> None:
        await seed_users(gateway, "viewer", "followed", "stranger")
        await seed(gateway, "posts", id="p-followed", user_id="followed", content="a", created_at=at(1))
        await seed(gateway, "posts", id="p-stranger", user_id="stranger", content="b", created_at=at(2))

        with pytest.raises(ValidationError):
            await client.feed.load_feed(FeedFilter(following=True))

        await client.identity.sign_in(viewer)
        assert await client.feed.load_feed(FeedFilter(following=True)) == []

        await seed(gateway, "followers", follower_id="viewer", following_id="followed")
        posts = await client.feed.load_feed(FeedFilter(following=True))
        assert [post.id for post in posts] == ["p-followed"]

    asyncio.run(scenario())


def test_group_feed_only_takes_matching_post_pushes(client, gateway, viewer):
    async def scenario() -> None:
        await seed_users(gateway, "viewer", "author")
        await seed(gateway, "groups", id="g1", title="Climbers")
        await seed(gateway, "posts", id="p-old", user_id="author", content="old", group_id="g1", created_at=at(0))
        await client.identity.sign_in(viewer)
        await client.watch_feed()
        await client.feed.load_feed(FeedFilter(group_id="g1"))

        await gateway.write("posts", {"id": "p-new", "user_id": "author", "content": "new", "group_id": "g1"})
        await gateway.write("posts", {"id": "p-elsewhere", "user_id": "author", "content": "other"})
        await drain()

        assert [post.id for post in client.feed.posts] == ["p-new", "p-old"]

        await gateway.write("posts", operation="delete", match={"id": "p-old"})
        await drain()
        assert [post.id for post in client.feed.posts] == ["p-new"]
        await client.close()

    asyncio.run(scenario())


def test_viewer_has_liked_is_false_without_identity(client, gateway, viewer):
    async def scenario() -> None:
        post_id = await _post_with_likes(gateway)
        await seed(gateway, "likes", post_id=post_id, user_id="viewer")

        posts = await client.feed.load_feed()
        assert posts[0].like_count == 4
        assert posts[0].viewer_has_liked is False

        with pytest.raises(ValidationError):
            await client.feed.apply_like_toggle(post_id)

        await client.identity.sign_in(viewer)
        assert client.feed.posts == []
        posts = await client.feed.load_feed()
        assert posts[0].viewer_has_liked is True

    asyncio.run(scenario())


def test_like_toggle_on_unknown_post(client, viewer):
    async def scenario() -> None:
        await client.identity.sign_in(viewer)
        with pytest.raises(NotFoundError):
            await client.feed.apply_like_toggle("nope")

    asyncio.run(scenario())


class _FakeAssets:
    def __init__(self) -> None:
        self.uploads: list[tuple[bytes, str]] = []

    async def upload(self, data: bytes, mime_type: str) -> str:
        self.uploads.append((data, mime_type))
        return "https://cdn.example.test/posts/abc.png"


def test_create_post_with_image_appears_once(client, gateway, viewer):
    async def scenario() -> None:
        assets = _FakeAssets()
        client.context.assets = assets
        await seed_users(gateway, "viewer")
        await client.identity.sign_in(viewer)
        await client.watch_feed()
        await client.feed.load_feed()

        with pytest.raises(ValidationError):
            await client.feed.create_post("   ")

        post = await client.feed.create_post("  first light  ", image=b"\x89PNG", mime_type="image/png")
        await drain()

        assert assets.uploads == [(b"\x89PNG", "image/png")]
        assert post.content == "first light"
        assert post.image_url == "https://cdn.example.test/posts/abc.png"
        assert [item.id for item in client.feed.posts] == [post.id]
        await client.close()

    asyncio.run(scenario())


def test_add_comment_counts_once(client, gateway, viewer, monkeypatch):
    async def scenario() -> None:
        post_id = await _post_with_likes(gateway, likes=0)
        await client.identity.sign_in(viewer)
        await client.watch_feed()
        await client.feed.load_feed()

        comment = await client.feed.add_comment(post_id, " great shot ")
        await drain()
        assert comment.content == "great shot"
        assert client.feed.get(post_id).comment_count == 1

        fail_writes(monkeypatch, gateway, "comments")
        with pytest.raises(TransportError):
            await client.feed.add_comment(post_id, "again")
        assert client.feed.get(post_id).comment_count == 1
        await client.close()

    asyncio.run(scenario())


def test_load_post_and_groups(client, gateway, viewer):
    async def scenario() -> None:
        post_id = await _post_with_likes(gateway, likes=2)
        await seed(gateway, "groups", id="g1", title="Climbers")
        await seed(gateway, "group_members", group_id="g1", user_id="viewer")
        await seed(gateway, "group_members", group_id="g1", user_id="author")
        await client.identity.sign_in(viewer)

        detail = await client.feed.load_post(post_id)
        assert detail.like_count == 2
        with pytest.raises(NotFoundError):
            await client.feed.load_post("missing")

        groups = await client.feed.list_groups()
        assert [(group.id, group.member_count) for group in groups] == [("g1", 2)]

        await client.identity.sign_out()
        assert await client.feed.list_groups() == []

    asyncio.run(scenario())


def test_sign_out_discards_snapshot(client, gateway):
    async def scenario() -> None:
        post_id = await _post_with_likes(gateway, likes=0)
        await client.identity.sign_in(Identity(id="viewer"))
        await client.feed.load_feed()
        assert client.feed.get(post_id) is not None

        await client.identity.sign_out()
        assert client.feed.posts == []

    asyncio.run(scenario())


def test_echo_markers_expire_and_are_consumed_once():
    now = [100.0]
    markers = EchoMarkers(ttl=5.0, clock=lambda: now[0])
    key = ("p1", "viewer", CountKind.LIKE)

    markers.add(key)
    markers.add(key)
    assert markers.pending(key) == 2
    assert markers.consume(key) is True
    assert markers.pending(key) == 1

    now[0] += 6
    assert markers.pending(key) == 0
    assert markers.consume(key) is False


def test_echo_marker_only_matches_its_own_direction():
    markers = EchoMarkers(ttl=5.0)
    key = ("p1", "viewer", CountKind.LIKE)

    markers.add(key, 1)
    assert markers.consume(key, -1) is False
    assert markers.pending(key) == 1
    assert markers.consume(key, 1) is True
    assert markers.pending(key) == 0
