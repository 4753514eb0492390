"""Wires the identity context, gateway and engines into one client object."""
from __future__ import annotations

from .config import Settings, get_settings
from .constants import FEED_TABLES, MESSAGES_TABLE, NOTIFICATIONS_TABLE
from .database import build_engine, build_session_factory, init_db
from .errors import ValidationError
from .services import (
    AssetService,
    ConversationEngine,
    FeedEngine,
    IdentityContext,
    NotificationEngine,
    RemoteGateway,
    SqlGateway,
    SubscriptionLease,
    SubscriptionSupervisor,
    SyncContext,
    chat_list_topic,
    chat_messages_topic,
    feed_topics,
    notifications_topic,
)
from .services.supervisor import FailureCallback


class SyncClient:
    """Owns one engine of each kind plus the supervisor feeding them pushed events."""

    def __init__(
        self,
        gateway: RemoteGateway,
        *,
        identity: IdentityContext | None = None,
        assets: AssetService | None = None,
        settings: Settings | None = None,
        on_subscription_failure: FailureCallback | None = None,
    ) -> None:
        self.identity = identity or IdentityContext()
        self.context = SyncContext(
            gateway=gateway,
            identity=self.identity,
            assets=assets,
            settings=settings or get_settings(),
        )
        # Registered on the identity context first so teardown precedes engine resets.
        self.supervisor = SubscriptionSupervisor(self.context, on_failure=on_subscription_failure)
        self.feed = FeedEngine(self.context)
        self.conversations = ConversationEngine(self.context)
        self.notifications = NotificationEngine(self.context)

        for table in FEED_TABLES:
            self.supervisor.route(table, self.feed.handle_event)
        self.supervisor.route(MESSAGES_TABLE, self.conversations.handle_event)
        self.supervisor.route(NOTIFICATIONS_TABLE, self.notifications.handle_event)

    async def watch_feed(self) -> list[SubscriptionLease]:
        return [await self.supervisor.open(key) for key in feed_topics()]

    async def watch_chat(self, chat_id: str) -> SubscriptionLease:
        return await self.supervisor.open(chat_messages_topic(chat_id, self._viewer_id()))

    async def watch_chat_list(self) -> SubscriptionLease:
        return await self.supervisor.open(chat_list_topic(self._viewer_id()))

    async def watch_notifications(self) -> SubscriptionLease:
        return await self.supervisor.open(notifications_topic(self._viewer_id()))

    async def close(self) -> None:
        await self.supervisor.close_all()

    def _viewer_id(self) -> str:
        viewer_id = self.identity.user_id
        if viewer_id is None:
            raise ValidationError("Sign in before subscribing to personal topics")
        return viewer_id


def build_local_client(
    database_url: str | None = None,
    *,
    settings: Settings | None = None,
    assets: AssetService | None = None,
    latency: float = 0.0,
) -> SyncClient:
    """Return a client backed by :class:`SqlGateway` (in-memory sqlite by default)."""

    settings = settings or get_settings()
    engine = build_engine(database_url or settings.database_url)
    init_db(engine)
    gateway = SqlGateway(build_session_factory(engine), latency=latency)
    return SyncClient(gateway, assets=assets, settings=settings)


__all__ = ["SyncClient", "build_local_client"]
