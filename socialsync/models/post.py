"""SQLAlchemy ORM models for posts, likes and comments."""
from __future__ import annotations

from sqlalchemy import Column, ForeignKey, String, Text, UniqueConstraint

from socialsync.database import Base

from .base import created_at_column, id_column


class Post(Base):
    __tablename__ = "posts"

    id = id_column()
    user_id = Column(String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True)
    content = Column(Text, nullable=False)
    image_url = Column(String(1024), nullable=True)
    group_id = Column(String(36), ForeignKey("groups.id", ondelete="SET NULL"), nullable=True, index=True)
    created_at = created_at_column()


class Like(Base):
    __tablename__ = "likes"

    id = id_column()
    post_id = Column(String(36), ForeignKey("posts.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True)
    created_at = created_at_column()

    __table_args__ = (UniqueConstraint("post_id", "user_id", name="uq_likes_post_user"),)


class Comment(Base):
    __tablename__ = "comments"

    id = id_column()
    post_id = Column(String(36), ForeignKey("posts.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True)
    content = Column(Text, nullable=False)
    created_at = created_at_column()


__all__ = ["Post", "Like", "Comment"]
