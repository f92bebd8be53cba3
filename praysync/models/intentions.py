"""Pydantic models for prayer intentions."""

from __future__ import annotations

from pydantic import Field

from praysync.models.base import PraySyncBase, TimestampMixin


class PersonSummary(PraySyncBase):
    """The ``prayer_focus_people`` columns embedded in an intention row."""

    name: str
    relationship: str | None = None
    gender: str | None = None
    image_uri: str | None = None


class IntentionFields(PraySyncBase):
    person_id: str | None = None
    category: str = Field(min_length=1, max_length=100)
    details: str | None = None
    is_active: bool = True


class PrayerIntention(IntentionFields, TimestampMixin):
    id: str
    user_id: str
    prayer_focus_people: PersonSummary | None = None


class IntentionCreate(IntentionFields):
    pass


class IntentionUpdate(PraySyncBase):
    category: str | None = Field(default=None, min_length=1, max_length=100)
    details: str | None = None
    is_active: bool | None = None
