"""Column helpers shared across ORM models."""
from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, String


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def id_column() -> Column:
    return Column(String(36), primary_key=True, default=new_id)


def created_at_column() -> Column:
    return Column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)


__all__ = ["new_id", "utcnow", "id_column", "created_at_column"]
