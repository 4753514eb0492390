"""Topic keys identify change-stream subscriptions (table + filter + owning identity)."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from ..constants import FEED_TABLES, MESSAGES_TABLE, NOTIFICATIONS_TABLE


@dataclass(frozen=True)
class TopicKey:
    table: str
    filters: tuple[tuple[str, Any], ...] = ()
    owner_id: str | None = None  # identity whose sign-out must close this topic

    @classmethod
    def build(cls, table: str, *, owner_id: str | None = None, **filters: Any) -> TopicKey:
        return cls(table=table, filters=tuple(sorted(filters.items())), owner_id=owner_id)

    @property
    def filter_dict(self) -> dict[str, Any]:
        return dict(self.filters)

    def __str__(self) -> str:
        if not self.filters:
            return self.table
        rendered = ",".join(f"{key}={value}" for key, value in self.filters)
        return f"{self.table}[{rendered}]"


def chat_messages_topic(chat_id: str, owner_id: str) -> TopicKey:
    return TopicKey.build(MESSAGES_TABLE, owner_id=owner_id, chat_id=chat_id)


def chat_list_topic(owner_id: str) -> TopicKey:
    return TopicKey.build(MESSAGES_TABLE, owner_id=owner_id)


def notifications_topic(user_id: str) -> TopicKey:
    return TopicKey.build(NOTIFICATIONS_TABLE, owner_id=user_id, user_id=user_id)


def feed_topics(owner_id: str | None = None) -> list[TopicKey]:
    return [TopicKey.build(table, owner_id=owner_id) for table in FEED_TABLES]


__all__ = [
    "TopicKey",
    "chat_messages_topic",
    "chat_list_topic",
    "notifications_topic",
    "feed_topics",
]
