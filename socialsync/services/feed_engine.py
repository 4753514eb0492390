"""Feed aggregation: like/comment counters kept consistent under local and pushed changes."""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from enum import StrEnum
from typing import Callable

from ..constants import COMMENTS_TABLE, LIKES_TABLE, POSTS_TABLE
from ..errors import ConflictError, NotFoundError, SyncError, ValidationError
from ..schemas import (
    ChangeEvent,
    CommentRecord,
    EngagementRef,
    FeedFilter,
    GroupRecord,
    Identity,
    LikeRecord,
    Operation,
    PostRecord,
    PostView,
)
from .context import SyncContext
from .gateway import Record

logger = logging.getLogger(__name__)


class CountKind(StrEnum):
    LIKE = "like"
    COMMENT = "comment"


class MutationState(StrEnum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    ROLLED_BACK = "rolled_back"


MarkerKey = tuple[str, str, CountKind]


@dataclass
class PendingMutation:
    """One optimistic change and the correlation token matching its push echo."""

    token: str
    post_id: str
    actor_id: str
    kind: CountKind
    delta: int
    state: MutationState = MutationState.PENDING


class EchoMarkers:
    """Short-lived markers that swallow the push echo of a local mutation exactly once.

    Each marker remembers the direction of its delta, so a push in the opposite
    direction (e.g. another device unliking while our like is in flight) is never
    taken for our echo.
    """

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl = ttl
        self._clock = clock
        self._markers: dict[MarkerKey, list[tuple[str, int, float]]] = {}

    def add(self, key: MarkerKey, delta: int = 1) -> str:
        token = uuid.uuid4().hex
        self._markers.setdefault(key, []).append((token, _sign(delta), self._clock() + self._ttl))
        return token

    def discard(self, key: MarkerKey, token: str) -> None:
        self._replace(key, [entry for entry in self._markers.get(key, ()) if entry[0] != token])

    def consume(self, key: MarkerKey, delta: int = 1) -> bool:
        now = self._clock()
        live = [entry for entry in self._markers.get(key, ()) if entry[2] > now]
        direction = _sign(delta)
        for index, (_, marked, _) in enumerate(live):
            if marked == direction:
                del live[index]
                self._replace(key, live)
                return True
        self._replace(key, live)
        return False

    def pending(self, key: MarkerKey) -> int:
        now = self._clock()
        return sum(1 for _, _, expires in self._markers.get(key, ()) if expires > now)

    def clear(self) -> None:
        self._markers.clear()

    def _replace(self, key: MarkerKey, entries: list[tuple[str, int, float]]) -> None:
        if entries:
            self._markers[key] = entries
        else:
            self._markers.pop(key, None)


def _sign(delta: int) -> int:
    return 1 if delta > 0 else -1


class FeedEngine:
    """Owns the feed snapshot: posts keyed by id with derived counters."""

    def __init__(self, context: SyncContext, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._ctx = context
        self._posts: dict[str, PostView] = {}
        self._filter = FeedFilter()
        self._following_ids: frozenset[str] = frozenset()
        self._generation = 0
        self._markers = EchoMarkers(context.settings.echo_marker_ttl_seconds, clock)
        self._locks: dict[str, asyncio.Lock] = {}
        context.identity.on_change(self._on_identity_change)

    @property
    def posts(self) -> list[PostView]:
        return list(self._posts.values())

    @property
    def filter(self) -> FeedFilter:
        return self._filter

    def get(self, post_id: str) -> PostView | None:
        return self._posts.get(post_id)

    def pending_echoes(self, post_id: str, actor_id: str, kind: CountKind) -> int:
        return self._markers.pending((post_id, actor_id, kind))

    # -- loading ---------------------------------------------------------------

    async def load_feed(self, feed_filter: FeedFilter | None = None, *, limit: int | None = None) -> list[PostView]:
        """Fetch a page of posts for ``feed_filter`` and replace the snapshot."""

        feed_filter = feed_filter or FeedFilter()
        if feed_filter.scope_count > 1:
            raise ValidationError("A feed filter may name only one of following, group or author")
        viewer_id = self._ctx.identity.user_id
        if feed_filter.following and viewer_id is None:
            raise ValidationError("The following feed requires a signed-in viewer")

        self._generation += 1
        generation = self._generation
        page_size = limit or self._ctx.settings.feed_page_size

        following_ids: frozenset[str] = frozenset()
        filters: dict[str, object] = {}
        if feed_filter.group_id is not None:
            filters["group_id"] = feed_filter.group_id
        elif feed_filter.author_id is not None:
            filters["user_id"] = feed_filter.author_id
        elif feed_filter.following:
            rows = await self._ctx.call(self._ctx.gateway.read("followers", {"follower_id": viewer_id}))
            following_ids = frozenset(row["following_id"] for row in rows)
            filters["user_id"] = sorted(following_ids)

        if feed_filter.following and not following_ids:
            views: list[PostView] = []
        else:
            records = await self._ctx.call(
                self._ctx.gateway.read(POSTS_TABLE, filters, order_by="created_at", descending=True, limit=page_size)
            )
            views = await self._hydrate(records, viewer_id)

        if generation != self._generation:
            logger.info("Discarding stale feed page for %s", feed_filter)
            return self.posts

        self._posts = {view.id: view for view in views}
        self._filter = feed_filter
        self._following_ids = following_ids
        return self.posts

    async def load_post(self, post_id: str) -> PostView:
        """Return a single post with fresh counters (post detail page)."""

        records = await self._ctx.call(self._ctx.gateway.read(POSTS_TABLE, {"id": post_id}, limit=1))
        if not records:
            raise NotFoundError(f"Post {post_id} not found")
        views = await self._hydrate(records, self._ctx.identity.user_id)
        return views[0]

    async def list_groups(self) -> list[GroupRecord]:
        """Return the viewer's groups with member counts, used to pick a group feed."""

        viewer_id = self._ctx.identity.user_id
        if viewer_id is None:
            return []
        gateway = self._ctx.gateway
        memberships = await self._ctx.call(gateway.read("group_members", {"user_id": viewer_id}))
        group_ids = [row["group_id"] for row in memberships]
        if not group_ids:
            return []
        rows = await self._ctx.call(gateway.read("groups", {"id": group_ids}, order_by="title"))
        counts = await asyncio.gather(
            *(self._ctx.call(gateway.count("group_members", {"group_id": row["id"]})) for row in rows)
        )
        return [GroupRecord(**row, member_count=count) for row, count in zip(rows, counts)]

    async def _hydrate(self, records: list[Record], viewer_id: str | None) -> list[PostView]:
        if not records:
            return []
        gateway = self._ctx.gateway
        posts = [PostRecord.model_validate(record) for record in records]
        ids = [post.id for post in posts]

        like_counts, comment_counts = await asyncio.gather(
            asyncio.gather(*(self._ctx.call(gateway.count(LIKES_TABLE, {"post_id": pid})) for pid in ids)),
            asyncio.gather(*(self._ctx.call(gateway.count(COMMENTS_TABLE, {"post_id": pid})) for pid in ids)),
        )
        liked: set[str] = set()
        if viewer_id is not None:
            rows = await self._ctx.call(gateway.read(LIKES_TABLE, {"post_id": ids, "user_id": viewer_id}))
            liked = {row["post_id"] for row in rows}

        return [
            PostView(
                **post.model_dump(),
                like_count=max(0, likes),
                comment_count=max(0, comments),
                viewer_has_liked=post.id in liked,
            )
            for post, likes, comments in zip(posts, like_counts, comment_counts)
        ]

    # -- local actions ---------------------------------------------------------

    async def apply_like_toggle(self, post_id: str) -> PendingMutation:
        """Optimistically flip the viewer's like on ``post_id`` and persist it.

        Toggles on one post are serialized, so each runs as its own
        pending -> confirmed / rolled-back transition. Raises
        :class:`TransportError` after restoring the previous state.
        """

        viewer_id = self._require_viewer("like posts")
        if post_id not in self._posts:
            raise NotFoundError(f"Post {post_id} is not in the current feed")

        lock = self._locks.setdefault(post_id, asyncio.Lock())
        async with lock:
            post = self._posts.get(post_id)
            if post is None:
                raise NotFoundError(f"Post {post_id} is not in the current feed")

            generation = self._generation
            liking = not post.viewer_has_liked
            key: MarkerKey = (post_id, viewer_id, CountKind.LIKE)
            delta = 1 if liking else -1
            mutation = PendingMutation(
                token=self._markers.add(key, delta),
                post_id=post_id,
                actor_id=viewer_id,
                kind=CountKind.LIKE,
                delta=delta,
            )
            applied = self._shift(post, CountKind.LIKE, mutation.delta)
            post.viewer_has_liked = liking

            gateway = self._ctx.gateway
            match = {"post_id": post_id, "user_id": viewer_id}
            try:
                if liking:
                    rows = await self._ctx.call(gateway.write(LIKES_TABLE, match))
                else:
                    rows = await self._ctx.call(gateway.write(LIKES_TABLE, operation="delete", match=match))
            except ConflictError:
                # Liked elsewhere first; that device's push may or may not have been counted.
                self._markers.discard(key, mutation.token)
                await self._adopt_like_count(post_id, generation, liked=True)
                mutation.state = MutationState.CONFIRMED
                return mutation
            except SyncError:
                self._markers.discard(key, mutation.token)
                mutation.state = MutationState.ROLLED_BACK
                current = self._posts.get(post_id)
                if generation == self._generation and current is not None:
                    self._shift(current, CountKind.LIKE, -applied)
                    current.viewer_has_liked = not liking
                logger.warning("Like toggle on post %s rolled back", post_id)
                raise

            if not rows:
                # Unliked elsewhere first; no echo of ours will follow.
                self._markers.discard(key, mutation.token)
                await self._adopt_like_count(post_id, generation, liked=liking)
            mutation.state = MutationState.CONFIRMED
            return mutation

    async def _adopt_like_count(self, post_id: str, generation: int, *, liked: bool) -> None:
        """Take the store's like count when our write found the row already in place."""

        try:
            total = await self._ctx.call(self._ctx.gateway.count(LIKES_TABLE, {"post_id": post_id}))
        except SyncError as exc:
            logger.warning("Could not re-read like count for post %s: %s", post_id, exc)
            return
        current = self._posts.get(post_id)
        if generation == self._generation and current is not None:
            current.like_count = max(0, total)
            current.viewer_has_liked = liked

    async def add_comment(self, post_id: str, content: str) -> CommentRecord:
        viewer_id = self._require_viewer("comment")
        text = (content or "").strip()
        if not text:
            raise ValidationError("Comment content cannot be empty")

        generation = self._generation
        key: MarkerKey = (post_id, viewer_id, CountKind.COMMENT)
        token: str | None = None
        applied = 0
        post = self._posts.get(post_id)
        if post is not None:
            token = self._markers.add(key)
            applied = self._shift(post, CountKind.COMMENT, 1)

        try:
            rows = await self._ctx.call(
                self._ctx.gateway.write(COMMENTS_TABLE, {"post_id": post_id, "user_id": viewer_id, "content": text})
            )
        except SyncError:
            if token is not None:
                self._markers.discard(key, token)
                current = self._posts.get(post_id)
                if generation == self._generation and current is not None:
                    self._shift(current, CountKind.COMMENT, -applied)
            raise
        return CommentRecord.model_validate(rows[0])

    async def create_post(
        self,
        content: str,
        *,
        image: bytes | None = None,
        mime_type: str | None = None,
        group_id: str | None = None,
    ) -> PostView:
        """Upload the optional image, persist the post and show it if it fits the feed."""

        viewer_id = self._require_viewer("create posts")
        text = (content or "").strip()
        if not text:
            raise ValidationError("Post content cannot be empty")

        image_url: str | None = None
        if image is not None:
            if self._ctx.assets is None:
                raise ValidationError("Image uploads are not configured")
            image_url = await self._ctx.call(self._ctx.assets.upload(image, mime_type or "application/octet-stream"))

        generation = self._generation
        rows = await self._ctx.call(
            self._ctx.gateway.write(
                POSTS_TABLE,
                {"user_id": viewer_id, "content": text, "image_url": image_url, "group_id": group_id},
            )
        )
        view = PostView.model_validate(rows[0])
        if generation == self._generation:
            self._insert_post(view)
        return self._posts.get(view.id, view)

    # -- pushes ----------------------------------------------------------------

    def apply_count_delta(self, post_id: str, kind: CountKind | str, delta: int, actor_id: str | None = None) -> bool:
        """Add ``delta`` to a counter of a displayed post; returns False when ignored."""

        post = self._posts.get(post_id)
        if post is None:
            return False
        kind = CountKind(kind)
        if actor_id is not None and self._markers.consume((post_id, actor_id, kind), delta):
            logger.debug("Suppressed echo of local %s on post %s", kind, post_id)
            return False
        own_like = kind is CountKind.LIKE and actor_id is not None and actor_id == self._ctx.identity.user_id
        if own_like and (delta > 0) == post.viewer_has_liked:
            # Redelivered push; the flag already reflects it.
            return False
        self._shift(post, kind, delta)
        if own_like:
            post.viewer_has_liked = delta > 0
        return True

    def handle_event(self, event: ChangeEvent) -> None:
        if event.table == POSTS_TABLE:
            self._handle_post_event(event)
            return
        if event.table == LIKES_TABLE:
            kind = CountKind.LIKE
        elif event.table == COMMENTS_TABLE:
            kind = CountKind.COMMENT
        else:
            raise ValueError(f"Feed engine does not handle table '{event.table}'")

        if event.operation is Operation.UPDATE:
            return
        # A like row is (post, user) and carries both keys; comment deletes may carry only the post.
        model = LikeRecord if kind is CountKind.LIKE else EngagementRef
        ref = model.model_validate(event.record)
        delta = 1 if event.operation is Operation.INSERT else -1
        self.apply_count_delta(ref.post_id, kind, delta, actor_id=ref.user_id)

    def _handle_post_event(self, event: ChangeEvent) -> None:
        if event.operation is Operation.DELETE:
            self._posts.pop(str(event.record["id"]), None)
            return
        record = PostRecord.model_validate(event.record)
        existing = self._posts.get(record.id)
        if existing is not None:
            existing.content = record.content
            existing.image_url = record.image_url
            return
        if event.operation is Operation.INSERT:
            self._insert_post(PostView(**record.model_dump()))

    # -- helpers ---------------------------------------------------------------

    def _insert_post(self, view: PostView) -> None:
        if view.id in self._posts or not self._matches_filter(view):
            return
        ordered = sorted([*self._posts.values(), view], key=lambda item: (item.created_at, item.id), reverse=True)
        self._posts = {item.id: item for item in ordered}

    def _matches_filter(self, post: PostRecord) -> bool:
        current = self._filter
        if current.group_id is not None:
            return post.group_id == current.group_id
        if current.author_id is not None:
            return post.user_id == current.author_id
        if current.following:
            return post.user_id in self._following_ids
        return True

    @staticmethod
    def _shift(post: PostView, kind: CountKind, delta: int) -> int:
        """Apply a signed increment clamped at zero; returns the change actually made."""

        if kind is CountKind.LIKE:
            before = post.like_count
            post.like_count = max(0, before + delta)
            return post.like_count - before
        before = post.comment_count
        post.comment_count = max(0, before + delta)
        return post.comment_count - before

    def _require_viewer(self, action: str) -> str:
        viewer_id = self._ctx.identity.user_id
        if viewer_id is None:
            raise ValidationError(f"Sign in to {action}")
        return viewer_id

    def _on_identity_change(self, previous: Identity | None, current: Identity | None) -> None:
        self._generation += 1
        self._posts = {}
        self._filter = FeedFilter()
        self._following_ids = frozenset()
        self._markers.clear()
        self._locks.clear()


__all__ = ["FeedEngine", "CountKind", "MutationState", "PendingMutation", "EchoMarkers"]
