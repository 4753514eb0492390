"""Convenience exports for schema layer."""
from .events import ChangeEvent, Operation
from .groups import GroupRecord
from .identity import Identity
from .messages import ChatSummary, LastMessage, MessageRecord, MessageView, Participant
from .notifications import (
    GENERIC_SUMMARY,
    NotificationRecord,
    NotificationSummary,
    describe_notification,
    parse_payload,
)
from .posts import CommentRecord, EngagementRef, FeedFilter, LikeRecord, PostRecord, PostView

__all__ = [
    "ChangeEvent",
    "Operation",
    "GroupRecord",
    "Identity",
    "ChatSummary",
    "LastMessage",
    "MessageRecord",
    "MessageView",
    "Participant",
    "GENERIC_SUMMARY",
    "NotificationRecord",
    "NotificationSummary",
    "describe_notification",
    "parse_payload",
    "CommentRecord",
    "EngagementRef",
    "FeedFilter",
    "LikeRecord",
    "PostRecord",
    "PostView",
]
