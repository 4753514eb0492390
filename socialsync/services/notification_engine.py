"""Notification list and unread counter for the signed-in recipient."""
from __future__ import annotations

import logging
from typing import Any

from ..constants import NOTIFICATIONS_TABLE
from ..errors import NotFoundError, SyncError, ValidationError
from ..schemas import (
    ChangeEvent,
    Identity,
    NotificationRecord,
    NotificationSummary,
    Operation,
    describe_notification,
)
from .context import SyncContext

logger = logging.getLogger(__name__)


class NotificationEngine:
    """Newest-first, id-deduplicated notifications plus an incrementally kept unread count."""

    def __init__(self, context: SyncContext) -> None:
        self._ctx = context
        self._items: list[NotificationRecord] = []
        self._by_id: dict[str, NotificationRecord] = {}
        self._unread = 0
        self._session = 0
        context.identity.on_change(self._on_identity_change)

    @property
    def notifications(self) -> list[NotificationRecord]:
        return list(self._items)

    @property
    def unread_count(self) -> int:
        return self._unread

    def summaries(self) -> list[tuple[NotificationRecord, NotificationSummary]]:
        return [(item, describe_notification(item)) for item in self._items]

    async def load_notifications(self) -> list[NotificationRecord]:
        """Fetch the recipient's notifications newest-first and recount unread ones."""

        user_id = self._require_viewer()
        session = self._session
        rows = await self._ctx.call(
            self._ctx.gateway.read(NOTIFICATIONS_TABLE, {"user_id": user_id}, order_by="created_at", descending=True)
        )
        if session != self._session:
            logger.info("Discarding notifications loaded for a previous identity")
            return self.notifications

        items: list[NotificationRecord] = []
        seen: set[str] = set()
        for row in rows:
            record = NotificationRecord.model_validate(row)
            if record.id in seen:
                continue
            seen.add(record.id)
            items.append(record)
        self._items = items
        self._by_id = {item.id: item for item in items}
        self._unread = sum(1 for item in items if not item.is_read)
        return self.notifications

    def on_inbound_notification(self, notification: NotificationRecord | dict[str, Any]) -> bool:
        """Prepend a pushed notification; duplicates are ignored."""

        record = (
            notification
            if isinstance(notification, NotificationRecord)
            else NotificationRecord.model_validate(notification)
        )
        recipient = self._ctx.identity.user_id
        if recipient is not None and record.user_id != recipient:
            logger.warning("Dropping notification %s addressed to another recipient", record.id)
            return False
        if record.id in self._by_id:
            return False
        self._items.insert(0, record)
        self._by_id[record.id] = record
        if not record.is_read:
            self._unread += 1
        return True

    def on_notification_updated(self, notification: NotificationRecord | dict[str, Any]) -> None:
        """Sync the read flag when the row changed elsewhere (e.g. another device)."""

        record = (
            notification
            if isinstance(notification, NotificationRecord)
            else NotificationRecord.model_validate(notification)
        )
        existing = self._by_id.get(record.id)
        if existing is None or existing.is_read == record.is_read:
            return
        self._set_read(existing, record.is_read)

    async def mark_read(self, notification_id: str) -> NotificationRecord:
        """Mark one notification read; already-read ones succeed without any change."""

        self._require_viewer()
        record = self._by_id.get(notification_id)
        if record is None:
            raise NotFoundError(f"Notification {notification_id} not found")
        if record.is_read:
            return record

        session = self._session
        self._set_read(record, True)
        try:
            await self._ctx.call(
                self._ctx.gateway.write(
                    NOTIFICATIONS_TABLE,
                    {"is_read": True},
                    operation="update",
                    match={"id": notification_id},
                )
            )
        except SyncError:
            if session == self._session and record.is_read:
                self._set_read(record, False)
            logger.warning("Marking notification %s read failed; restored unread state", notification_id)
            raise
        return record

    async def mark_all_read(self) -> int:
        """Mark every unread notification read; returns how many were flipped."""

        user_id = self._require_viewer()
        flipped = [item for item in self._items if not item.is_read]
        if not flipped:
            return 0

        session = self._session
        for item in flipped:
            self._set_read(item, True)
        try:
            await self._ctx.call(
                self._ctx.gateway.write(
                    NOTIFICATIONS_TABLE,
                    {"is_read": True},
                    operation="update",
                    match={"user_id": user_id, "is_read": False},
                )
            )
        except SyncError:
            if session == self._session:
                for item in flipped:
                    if item.is_read:
                        self._set_read(item, False)
            raise
        return len(flipped)

    def handle_event(self, event: ChangeEvent) -> None:
        if event.table != NOTIFICATIONS_TABLE:
            raise ValueError(f"Notification engine does not handle table '{event.table}'")
        if event.operation is Operation.INSERT:
            self.on_inbound_notification(event.record)
        elif event.operation is Operation.UPDATE:
            self.on_notification_updated(event.record)
        else:
            logger.debug("Ignoring notification delete for %s", event.record.get("id"))

    def _set_read(self, record: NotificationRecord, is_read: bool) -> None:
        if record.is_read == is_read:
            return
        record.is_read = is_read
        if is_read:
            self._unread = max(0, self._unread - 1)
        else:
            self._unread += 1

    def _require_viewer(self) -> str:
        user_id = self._ctx.identity.user_id
        if user_id is None:
            raise ValidationError("Sign in to view notifications")
        return user_id

    def _on_identity_change(self, previous: Identity | None, current: Identity | None) -> None:
        self._session += 1
        self._items = []
        self._by_id = {}
        self._unread = 0


__all__ = ["NotificationEngine"]
