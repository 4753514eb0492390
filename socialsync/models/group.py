"""SQLAlchemy ORM models for groups and their membership."""
from __future__ import annotations

from sqlalchemy import Boolean, Column, ForeignKey, String, Text
from sqlalchemy.sql import expression

from socialsync.database import Base

from .base import created_at_column, id_column


class Group(Base):
    __tablename__ = "groups"

    id = id_column()
    title = Column(String(120), nullable=False)
    description = Column(Text, nullable=True)
    is_private = Column(Boolean, nullable=False, server_default=expression.false(), default=False)
    created_at = created_at_column()


class GroupMember(Base):
    __tablename__ = "group_members"

    group_id = Column(String(36), ForeignKey("groups.id", ondelete="CASCADE"), primary_key=True)
    user_id = Column(String(36), ForeignKey("profiles.id", ondelete="CASCADE"), primary_key=True)
    created_at = created_at_column()


__all__ = ["Group", "GroupMember"]
