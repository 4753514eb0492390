"""Schema describing the signed-in viewer."""
from __future__ import annotations

from pydantic import BaseModel, ConfigDict


class Identity(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    username: str | None = None
    display_name: str | None = None
    avatar_url: str | None = None


__all__ = ["Identity"]
