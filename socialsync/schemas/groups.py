"""Schemas for groups as seen by the feed."""
from __future__ import annotations

from pydantic import BaseModel

from .common import UtcDatetime


class GroupRecord(BaseModel):
    id: str
    title: str
    description: str | None = None
    is_private: bool = False
    created_at: UtcDatetime | None = None
    member_count: int = 0


__all__ = ["GroupRecord"]
