"""Pydantic models for the people a user prays for."""

from __future__ import annotations

from pydantic import Field

from praysync.models.base import PraySyncBase, TimestampMixin


class PersonFields(PraySyncBase):
    name: str = Field(min_length=1, max_length=200)
    relationship: str | None = None
    gender: str | None = None
    image_uri: str | None = None


class PrayerPerson(PersonFields, TimestampMixin):
    id: str
    user_id: str
    device_contact_id: str | None = None
    phone_number_hash: str | None = None


class PersonCreate(PersonFields):
    # When set, an intention is created alongside the person
    intention_category: str | None = None
    intention_details: str | None = None


class PersonUpdate(PraySyncBase):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    relationship: str | None = None
    gender: str | None = None
    image_uri: str | None = None
