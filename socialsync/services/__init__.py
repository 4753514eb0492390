"""Convenience exports for service layer."""
from .context import SyncContext
from .conversation_engine import ConversationEngine
from .feed_engine import CountKind, EchoMarkers, FeedEngine, MutationState, PendingMutation
from .gateway import AssetService, RemoteGateway, call_gateway, matches_filters
from .identity import IdentityContext
from .notification_engine import NotificationEngine
from .sql_gateway import SqlGateway, SqlSubscription
from .supervisor import SubscriptionLease, SubscriptionState, SubscriptionSupervisor
from .topics import TopicKey, chat_list_topic, chat_messages_topic, feed_topics, notifications_topic

__all__ = [
    "SyncContext",
    "ConversationEngine",
    "CountKind",
    "EchoMarkers",
    "FeedEngine",
    "MutationState",
    "PendingMutation",
    "AssetService",
    "RemoteGateway",
    "call_gateway",
    "matches_filters",
    "IdentityContext",
    "NotificationEngine",
    "SqlGateway",
    "SqlSubscription",
    "SubscriptionLease",
    "SubscriptionState",
    "SubscriptionSupervisor",
    "TopicKey",
    "chat_list_topic",
    "chat_messages_topic",
    "feed_topics",
    "notifications_topic",
]
