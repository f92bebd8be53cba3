"""Inbound remote change notifications."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ChangeAction(str, Enum):
    created = "created"
    updated = "updated"
    deleted = "deleted"


@dataclass(frozen=True)
class RemoteChangeEvent:
    """One authoritative row change pushed by the realtime channel.

    Attributes:
        table:  Resource name ('prayers', 'people', 'intentions').
        action: What happened to the row.
        record: Row columns; always carries ``id`` and ``user_id``.
    """

    table: str
    action: ChangeAction
    record: dict[str, Any] = field(default_factory=dict)

    @property
    def owner_id(self) -> str | None:
        owner = self.record.get("user_id")
        return str(owner) if owner is not None else None

    @property
    def record_id(self) -> str | None:
        rid = self.record.get("id")
        return str(rid) if rid is not None else None
