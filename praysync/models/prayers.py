"""Pydantic models for generated prayers and the server-side prayer state."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import Field

from praysync.models.base import PraySyncBase


class Period(str, Enum):
    morning = "morning"
    evening = "evening"


class Prayer(PraySyncBase):
    id: str
    user_id: str
    content: str | None = None
    slot: str | None = None
    verse_ref: str | None = None
    liked: bool = False
    generated_at: datetime | None = None
    completed_at: datetime | None = None
    input_snapshot: dict[str, Any] | None = None

    @property
    def period(self) -> Period:
        """Which daily window the prayer belongs to, derived from its slot name."""
        slot = (self.slot or "").lower()
        if "evening" in slot or "pm" in slot:
            return Period.evening
        return Period.morning


class TodaysPrayers(PraySyncBase):
    morning: Prayer | None = None
    evening: Prayer | None = None


class PrayerPage(PraySyncBase):
    prayers: list[Prayer] = Field(default_factory=list)
    total_count: int = 0
    has_more: bool = False
    next_cursor: str | None = None


class PrayerState(PraySyncBase):
    """Result of the ``get_current_prayer_state`` RPC.

    ``server_now_epoch_ms`` and ``user_timezone`` anchor the logical clock.
    """

    server_now_epoch_ms: int | None = None
    user_timezone: str | None = None
    current_period: Period = Period.morning
    current_window_available: bool = True
    prayers: TodaysPrayers = Field(default_factory=TodaysPrayers)
    morning_available: bool | None = None
    evening_available: bool | None = None
    effective_streak: int | None = None


class UserStats(PraySyncBase):
    current_streak: int = 0
    longest_streak: int = 0
    total_prayers_completed: int = 0
    streak_start_date: str | None = None
    last_prayer_date: str | None = None
