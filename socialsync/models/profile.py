"""SQLAlchemy ORM models for profiles and follower relationships."""
from __future__ import annotations

from sqlalchemy import Column, ForeignKey, String

from socialsync.database import Base

from .base import created_at_column, id_column


class Profile(Base):
    __tablename__ = "profiles"

    id = id_column()
    username = Column(String(64), nullable=False, unique=True, index=True)
    display_name = Column(String(128), nullable=True)
    avatar_url = Column(String(1024), nullable=True)
    created_at = created_at_column()


class Follower(Base):
    __tablename__ = "followers"

    follower_id = Column(String(36), ForeignKey("profiles.id", ondelete="CASCADE"), primary_key=True)
    following_id = Column(String(36), ForeignKey("profiles.id", ondelete="CASCADE"), primary_key=True)
    created_at = created_at_column()


__all__ = ["Profile", "Follower"]
