"""Schemas for change events pushed by the gateway."""
from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class Operation(StrEnum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class ChangeEvent(BaseModel):
    """A single row change; ``record`` holds the new row (the old row for deletes)."""

    table: str
    operation: Operation
    record: dict[str, Any] = Field(default_factory=dict)


__all__ = ["Operation", "ChangeEvent"]
