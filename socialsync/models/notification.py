"""SQLAlchemy ORM model for notifications."""
from __future__ import annotations

from sqlalchemy import JSON, Boolean, Column, ForeignKey, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import expression

from socialsync.database import Base

from .base import created_at_column, id_column


class Notification(Base):
    __tablename__ = "notifications"

    id = id_column()
    user_id = Column(String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True)
    type = Column(String(32), nullable=False)
    data = Column(JSON().with_variant(JSONB, "postgresql"), nullable=True)
    is_read = Column(Boolean, nullable=False, server_default=expression.false(), default=False)
    created_at = created_at_column()


__all__ = ["Notification"]
