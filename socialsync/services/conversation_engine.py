"""Chat transcripts and the chat list, merged from local sends and pushed inserts."""
from __future__ import annotations

import asyncio
import bisect
import logging
import uuid
from datetime import datetime, timezone
from typing import Any

from ..constants import MESSAGES_TABLE, PENDING_ID_PREFIX
from ..errors import NotFoundError, SyncError, ValidationError
from ..schemas import (
    ChangeEvent,
    ChatSummary,
    Identity,
    LastMessage,
    MessageRecord,
    MessageView,
    Operation,
    Participant,
)
from .context import SyncContext
from .gateway import Record

logger = logging.getLogger(__name__)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _chat_sort_key(chat: ChatSummary) -> tuple[int, datetime, str]:
    if chat.last_message is None:
        return (0, _EPOCH, chat.id)
    return (1, chat.last_message.created_at, chat.id)


class ConversationEngine:
    """Owns the chat list and the transcript of the single active chat."""

    def __init__(self, context: SyncContext) -> None:
        self._ctx = context
        self._chats: dict[str, ChatSummary] = {}
        self._active_chat_id: str | None = None
        self._participants: list[Participant] = []
        self._confirmed: list[MessageView] = []
        self._confirmed_ids: set[str] = set()
        self._pending: dict[str, MessageView] = {}
        self._context_token = 0
        self._session = 0
        context.identity.on_change(self._on_identity_change)

    @property
    def active_chat_id(self) -> str | None:
        return self._active_chat_id

    @property
    def participants(self) -> list[Participant]:
        return list(self._participants)

    @property
    def transcript(self) -> list[MessageView]:
        """Confirmed messages by (created_at, id), then pending sends in send order."""

        return [*self._confirmed, *self._pending.values()]

    @property
    def chats(self) -> list[ChatSummary]:
        """Chats ordered by last message, newest first; chats without messages last."""

        return sorted(self._chats.values(), key=_chat_sort_key, reverse=True)

    # -- loading ---------------------------------------------------------------

    async def load_chats(self) -> list[ChatSummary]:
        viewer_id = self._require_viewer()
        session = self._session
        gateway = self._ctx.gateway

        memberships = await self._ctx.call(gateway.read("chat_participants", {"user_id": viewer_id}))
        chat_ids = [row["chat_id"] for row in memberships]
        summaries: dict[str, ChatSummary] = {}
        if chat_ids:
            participants_by_chat = await self._load_participants(chat_ids)
            latest = await asyncio.gather(
                *(
                    self._ctx.call(
                        gateway.read(MESSAGES_TABLE, {"chat_id": chat_id}, order_by="created_at", descending=True, limit=1)
                    )
                    for chat_id in chat_ids
                )
            )
            for chat_id, rows in zip(chat_ids, latest):
                last = LastMessage(content=rows[0]["content"], created_at=rows[0]["created_at"]) if rows else None
                summaries[chat_id] = ChatSummary(
                    id=chat_id,
                    participants=participants_by_chat.get(chat_id, []),
                    last_message=last,
                )

        if session != self._session:
            logger.info("Discarding chat list loaded for a previous identity")
            return self.chats
        self._chats = summaries
        return self.chats

    async def open_chat(self, chat_id: str) -> list[MessageView]:
        """Load ``chat_id`` and make it the active chat, replacing any previous one."""

        self._require_viewer()
        self._context_token += 1
        token = self._context_token
        self._active_chat_id = chat_id
        self._reset_transcript()

        participants_by_chat = await self._load_participants([chat_id])
        participants = participants_by_chat.get(chat_id, [])
        if not participants:
            if token == self._context_token:
                self._active_chat_id = None
            raise NotFoundError(f"Chat {chat_id} not found")
        rows = await self._ctx.call(
            self._ctx.gateway.read(MESSAGES_TABLE, {"chat_id": chat_id}, order_by="created_at")
        )

        if token != self._context_token:
            logger.info("Discarding history for chat %s; another chat became active", chat_id)
            return self.transcript

        self._participants = participants
        # Pushes that landed while history was loading are already in the transcript.
        for row in rows:
            self._insert_confirmed(MessageView.model_validate(row))
        summary = self._chats.get(chat_id)
        if summary is None:
            self._chats[chat_id] = ChatSummary(id=chat_id, participants=participants)
        else:
            summary.participants = participants
        if self._confirmed:
            self._touch_chat(self._confirmed[-1])
        return self.transcript

    def close_chat(self) -> None:
        self._context_token += 1
        self._active_chat_id = None
        self._reset_transcript()

    async def _load_participants(self, chat_ids: list[str]) -> dict[str, list[Participant]]:
        gateway = self._ctx.gateway
        rows = await self._ctx.call(gateway.read("chat_participants", {"chat_id": chat_ids}, order_by="created_at"))
        if not rows:
            return {}
        profiles = await self._ctx.call(gateway.read("profiles", {"id": sorted({row["user_id"] for row in rows})}))
        by_id = {profile["id"]: profile for profile in profiles}
        result: dict[str, list[Participant]] = {}
        for row in rows:
            profile = by_id.get(row["user_id"], {})
            result.setdefault(row["chat_id"], []).append(
                Participant(
                    user_id=row["user_id"],
                    username=profile.get("username"),
                    avatar_url=profile.get("avatar_url"),
                )
            )
        return result

    # -- local actions ---------------------------------------------------------

    async def send_message(self, chat_id: str, content: str) -> MessageView:
        """Append a pending message, persist it and swap in the confirmed record.

        On failure the pending entry is removed and the error re-raised, so the
        transcript reads exactly as before the send.
        """

        text = (content or "").strip()
        if not text:
            raise ValidationError("Message content cannot be empty")
        viewer_id = self._require_viewer()

        token = self._context_token
        local_id = uuid.uuid4().hex
        if chat_id == self._active_chat_id:
            self._pending[local_id] = MessageView(
                id=f"{PENDING_ID_PREFIX}{local_id}",
                chat_id=chat_id,
                user_id=viewer_id,
                content=text,
                created_at=datetime.now(timezone.utc),
                pending=True,
                local_token=local_id,
            )

        try:
            rows = await self._ctx.call(
                self._ctx.gateway.write(MESSAGES_TABLE, {"chat_id": chat_id, "user_id": viewer_id, "content": text})
            )
        except SyncError:
            self._pending.pop(local_id, None)
            logger.warning("Message send to chat %s failed; pending entry removed", chat_id)
            raise

        confirmed = MessageView.model_validate(rows[0])
        self._pending.pop(local_id, None)
        if token == self._context_token and chat_id == self._active_chat_id:
            self._insert_confirmed(confirmed)
        self._touch_chat(confirmed)
        return confirmed

    async def create_chat(self, peer_username: str) -> ChatSummary:
        """Start a two-person chat with ``peer_username`` and make it active."""

        viewer_id = self._require_viewer()
        username = (peer_username or "").strip()
        if not username:
            raise ValidationError("A username is required to start a chat")

        gateway = self._ctx.gateway
        matches = await self._ctx.call(gateway.read("profiles", {"username": username}, limit=1))
        if not matches:
            raise NotFoundError(f"User '{username}' not found")
        peer = matches[0]
        if peer["id"] == viewer_id:
            raise ValidationError("You cannot start a chat with yourself")

        chat = (await self._ctx.call(gateway.write("chats", {})))[0]
        chat_id = chat["id"]
        try:
            for member_id in (viewer_id, peer["id"]):
                await self._ctx.call(gateway.write("chat_participants", {"chat_id": chat_id, "user_id": member_id}))
        except SyncError:
            await self._discard_chat(chat_id)
            raise

        viewer = self._ctx.identity.current()
        summary = ChatSummary(
            id=chat_id,
            participants=[
                Participant(user_id=viewer_id, username=viewer.username if viewer else None),
                Participant(user_id=peer["id"], username=peer.get("username"), avatar_url=peer.get("avatar_url")),
            ],
        )
        self._chats[chat_id] = summary
        await self.open_chat(chat_id)
        return self._chats.get(chat_id, summary)

    async def _discard_chat(self, chat_id: str) -> None:
        gateway = self._ctx.gateway
        for entity, match in (("chat_participants", {"chat_id": chat_id}), ("chats", {"id": chat_id})):
            try:
                await self._ctx.call(gateway.write(entity, operation="delete", match=match))
            except SyncError:
                logger.error("Could not remove %s rows of partially created chat %s", entity, chat_id)

    # -- pushes ----------------------------------------------------------------

    def on_inbound_message(self, message: MessageRecord | Record | dict[str, Any]) -> bool:
        """Merge a pushed message; returns False when it was a duplicate or not displayed."""

        if isinstance(message, MessageRecord):
            view = MessageView.model_validate(message.model_dump())
        else:
            view = MessageView.model_validate(message)
        self._touch_chat(view)
        if view.chat_id != self._active_chat_id:
            return False
        return self._insert_confirmed(view)

    def handle_event(self, event: ChangeEvent) -> None:
        if event.table != MESSAGES_TABLE:
            raise ValueError(f"Conversation engine does not handle table '{event.table}'")
        if event.operation is not Operation.INSERT:
            logger.debug("Ignoring %s on immutable message %s", event.operation, event.record.get("id"))
            return
        self.on_inbound_message(event.record)

    # -- helpers ---------------------------------------------------------------

    def _insert_confirmed(self, message: MessageView) -> bool:
        if message.id in self._confirmed_ids:
            return False
        bisect.insort(self._confirmed, message, key=lambda item: item.sort_key)
        self._confirmed_ids.add(message.id)
        return True

    def _touch_chat(self, message: MessageRecord) -> None:
        summary = self._chats.get(message.chat_id)
        if summary is None:
            return
        last = summary.last_message
        if last is None or message.created_at >= last.created_at:
            summary.last_message = LastMessage(content=message.content, created_at=message.created_at)

    def _reset_transcript(self) -> None:
        self._participants = []
        self._confirmed = []
        self._confirmed_ids = set()
        self._pending = {}

    def _require_viewer(self) -> str:
        viewer_id = self._ctx.identity.user_id
        if viewer_id is None:
            raise ValidationError("Sign in to use chats")
        return viewer_id

    def _on_identity_change(self, previous: Identity | None, current: Identity | None) -> None:
        self._session += 1
        self._chats = {}
        self.close_chat()


__all__ = ["ConversationEngine"]
