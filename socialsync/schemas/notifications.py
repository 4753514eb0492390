"""Schemas for notifications and their type-specific payloads."""
from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter
from pydantic import ValidationError as PayloadValidationError

from .common import UtcDatetime


class NotificationRecord(BaseModel):
    id: str
    user_id: str
    type: str
    data: dict[str, Any] | None = None
    is_read: bool = False
    created_at: UtcDatetime


class NotificationSummary(BaseModel):
    """Display title, body and navigation target derived from a notification."""

    title: str
    body: str
    target: str


GENERIC_SUMMARY = NotificationSummary(title="Notification", body="", target="#")


class LikePayload(BaseModel):
    type: Literal["like"]
    username: str
    post_id: str

    def describe(self) -> NotificationSummary:
        return NotificationSummary(
            title="New Like",
            body=f"{self.username} liked your post",
            target=f"/post/{self.post_id}",
        )


class CommentPayload(BaseModel):
    type: Literal["comment"]
    username: str
    post_id: str

    def describe(self) -> NotificationSummary:
        return NotificationSummary(
            title="New Comment",
            body=f"{self.username} commented on your post",
            target=f"/post/{self.post_id}",
        )


class FollowPayload(BaseModel):
    type: Literal["follow"]
    username: str
    user_id: str

    def describe(self) -> NotificationSummary:
        return NotificationSummary(
            title="New Follower",
            body=f"{self.username} started following you",
            target=f"/profile/{self.user_id}",
        )


class MentionPayload(BaseModel):
    type: Literal["mention"]
    username: str
    post_id: str | None = None

    def describe(self) -> NotificationSummary:
        return NotificationSummary(
            title="New Mention",
            body=f"{self.username} mentioned you in a post",
            target=f"/post/{self.post_id}" if self.post_id else "#",
        )


class GroupInvitePayload(BaseModel):
    type: Literal["group_invite"]
    group_name: str
    group_id: str | None = None

    def describe(self) -> NotificationSummary:
        return NotificationSummary(
            title="Group Invitation",
            body=f"You've been invited to join {self.group_name}",
            target="/groups",
        )


NotificationPayload = Annotated[
    Union[LikePayload, CommentPayload, FollowPayload, MentionPayload, GroupInvitePayload],
    Field(discriminator="type"),
]

_payload_adapter: TypeAdapter[NotificationPayload] = TypeAdapter(NotificationPayload)


def parse_payload(record: NotificationRecord) -> NotificationPayload | None:
    """Return the typed payload for ``record`` or ``None`` when it is unrecognised."""

    data = dict(record.data or {})
    data["type"] = record.type
    try:
        return _payload_adapter.validate_python(data)
    except PayloadValidationError:
        return None


def describe_notification(record: NotificationRecord) -> NotificationSummary:
    """Map any notification to a summary; unknown or malformed ones get the generic card."""

    payload = parse_payload(record)
    if payload is None:
        return GENERIC_SUMMARY
    return payload.describe()


__all__ = [
    "NotificationRecord",
    "NotificationSummary",
    "NotificationPayload",
    "LikePayload",
    "CommentPayload",
    "FollowPayload",
    "MentionPayload",
    "GroupInvitePayload",
    "GENERIC_SUMMARY",
    "parse_payload",
    "describe_notification",
]
