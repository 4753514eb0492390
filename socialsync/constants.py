"""Project-wide constant values."""
from __future__ import annotations

from typing import Final

POSTS_TABLE: Final = "posts"
LIKES_TABLE: Final = "likes"
COMMENTS_TABLE: Final = "comments"
MESSAGES_TABLE: Final = "messages"
NOTIFICATIONS_TABLE: Final = "notifications"

FEED_TABLES: Final = (POSTS_TABLE, LIKES_TABLE, COMMENTS_TABLE)

PENDING_ID_PREFIX: Final = "pending:"  # local ids for optimistic messages

__all__ = [
    "POSTS_TABLE",
    "LIKES_TABLE",
    "COMMENTS_TABLE",
    "MESSAGES_TABLE",
    "NOTIFICATIONS_TABLE",
    "FEED_TABLES",
    "PENDING_ID_PREFIX",
]
