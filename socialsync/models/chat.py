"""SQLAlchemy ORM models for chats, participants and messages."""
from __future__ import annotations

from sqlalchemy import Column, ForeignKey, String, Text

from socialsync.database import Base

from .base import created_at_column, id_column


class Chat(Base):
    __tablename__ = "chats"

    id = id_column()
    created_at = created_at_column()


class ChatParticipant(Base):
    __tablename__ = "chat_participants"

    chat_id = Column(String(36), ForeignKey("chats.id", ondelete="CASCADE"), primary_key=True)
    user_id = Column(String(36), ForeignKey("profiles.id", ondelete="CASCADE"), primary_key=True)
    created_at = created_at_column()


class Message(Base):
    __tablename__ = "messages"

    id = id_column()
    chat_id = Column(String(36), ForeignKey("chats.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True)
    content = Column(Text, nullable=False)
    created_at = created_at_column()


__all__ = ["Chat", "ChatParticipant", "Message"]
