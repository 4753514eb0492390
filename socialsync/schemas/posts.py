"""Pydantic schemas for posts, likes, comments and feed filters."""
from __future__ import annotations

from pydantic import BaseModel, ConfigDict

from .common import UtcDatetime


class FeedFilter(BaseModel):
    """Selects the posts a feed page holds; at most one scope may be set."""

    model_config = ConfigDict(frozen=True)

    following: bool = False
    group_id: str | None = None
    author_id: str | None = None

    @property
    def scope_count(self) -> int:
        return sum((bool(self.following), self.group_id is not None, self.author_id is not None))


class PostRecord(BaseModel):
    """Row shape of a persisted post."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    content: str
    image_url: str | None = None
    group_id: str | None = None
    created_at: UtcDatetime


class PostView(PostRecord):
    """Post plus the counters derived for the current viewer."""

    like_count: int = 0
    comment_count: int = 0
    viewer_has_liked: bool = False


class LikeRecord(BaseModel):
    id: str | None = None
    post_id: str
    user_id: str
    created_at: UtcDatetime | None = None


class CommentRecord(BaseModel):
    id: str
    post_id: str
    user_id: str
    content: str
    created_at: UtcDatetime


class EngagementRef(BaseModel):
    """Minimal shape of a like/comment change event; deletes may carry only these keys."""

    post_id: str
    user_id: str | None = None


__all__ = [
    "FeedFilter",
    "PostRecord",
    "PostView",
    "LikeRecord",
    "CommentRecord",
    "EngagementRef",
]
