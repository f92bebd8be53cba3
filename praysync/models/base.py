"""Shared Pydantic base models and utilities."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict, Field

ModelT = TypeVar("ModelT", bound="PraySyncBase")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class PraySyncBase(BaseModel):
    """Base model with shared config for all resource schemas.

    Unknown columns returned by the backend are kept (``extra="allow"``) so a
    realtime record carrying new fields survives a merge and a later persist.
    """

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        str_strip_whitespace=True,
        extra="allow",
    )

    def merged(self: ModelT, changes: dict[str, Any]) -> ModelT:
        """Return a re-validated copy with ``changes`` applied on top."""
        return type(self).model_validate({**self.model_dump(), **changes})


class TimestampMixin(BaseModel):
    created_at: datetime | None = Field(default_factory=utc_now)
