"""Schemas used by the conversation engine."""
from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from .common import UtcDatetime


class MessageRecord(BaseModel):
    id: str
    chat_id: str
    user_id: str
    content: str
    created_at: UtcDatetime

    @property
    def sort_key(self) -> tuple[datetime, str]:
        # id breaks ties so ordering stays total when timestamps collide
        return (self.created_at, self.id)


class MessageView(MessageRecord):
    pending: bool = False
    local_token: str | None = None  # correlates a pending send with its acknowledgement


class LastMessage(BaseModel):
    content: str
    created_at: UtcDatetime


class Participant(BaseModel):
    user_id: str
    username: str | None = None
    avatar_url: str | None = None


class ChatSummary(BaseModel):
    id: str
    participants: list[Participant] = Field(default_factory=list)
    last_message: LastMessage | None = None


__all__ = [
    "MessageRecord",
    "MessageView",
    "LastMessage",
    "Participant",
    "ChatSummary",
]
