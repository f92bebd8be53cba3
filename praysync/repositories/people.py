"""Repository for the people a user prays for (``prayer_focus_people``)."""

from __future__ import annotations

import logging

from praysync.errors import PraySyncError, ValidationError
from praysync.models.people import PersonCreate, PersonUpdate, PrayerPerson
from praysync.repositories.base import BaseRepository, eq

logger = logging.getLogger("praysync.repositories.people")

_COLUMNS = "id,user_id,name,relationship,gender,image_uri,phone_number_hash,device_contact_id,created_at"


class PeopleRepository(BaseRepository):
    """CRUD over ``prayer_focus_people``.

    "Active" people are those with at least one active intention; the backend
    decides membership with an inner join, so the active list is never derived
    client-side.
    """

    RESOURCE = "people"
    TABLE = "prayer_focus_people"

    async def list_people(self, user_id: str, active_only: bool = True, limit: int | None = None) -> list[PrayerPerson]:
        """Fetch a user's people ordered by name.

        Args:
            user_id:     Owner of the rows.
            active_only: Restrict to people with an active intention.
            limit:       Optional maximum number of rows.
        """
        params: dict[str, str] = {"user_id": eq(user_id), "order": "name.asc,created_at.desc,id.asc"}
        if active_only:
            params["select"] = f"{_COLUMNS},prayer_intentions!inner(id,is_active)"
            params["prayer_intentions.is_active"] = eq(True)
        else:
            params["select"] = _COLUMNS
        if limit is not None:
            params["limit"] = str(limit)

        rows = await self._select(params, "list people")
        for row in rows:
            # join columns only drive the filter
            row.pop("prayer_intentions", None)
        return self._decode_list(PrayerPerson, rows)

    async def get_person(self, person_id: str) -> PrayerPerson | None:
        row = await self._select_one({"select": _COLUMNS, "id": eq(person_id)}, "get person")
        return self._decode(PrayerPerson, row) if row is not None else None

    async def create_person(self, user_id: str, payload: PersonCreate) -> PrayerPerson:
        """Insert a person, and an intention for them when one is supplied.

        If the intention insert fails the person row is deleted again so the
        pair is created all-or-nothing.
        """
        row = payload.model_dump(exclude={"intention_category", "intention_details"}, exclude_none=True)
        created = self._decode(PrayerPerson, await self._insert({**row, "user_id": user_id}, "create person"))

        if payload.intention_category:
            intention = {
                "user_id": user_id,
                "person_id": created.id,
                "category": payload.intention_category,
                "details": payload.intention_details,
                "is_active": True,
            }
            try:
                await self._request(
                    "POST",
                    "prayer_intentions",
                    "create person intention",
                    json=intention,
                    headers={"Prefer": "return=minimal"},
                )
            except PraySyncError:
                logger.warning("Intention insert failed, removing person %s", created.id)
                await self._delete({"id": eq(created.id)}, "undo create person")
                raise
        return created

    async def update_person(self, person_id: str, user_id: str, changes: PersonUpdate) -> PrayerPerson:
        body = changes.model_dump(exclude_unset=True)
        if not body:
            raise ValidationError("No changes supplied for person update")
        row = await self._update(
            {"id": eq(person_id), "user_id": eq(user_id)}, body, "update person", select=_COLUMNS
        )
        if row is None:
            raise ValidationError("Item not found", code="PGRST116")
        return self._decode(PrayerPerson, row)

    async def delete_person(self, person_id: str, user_id: str) -> None:
        await self._delete({"id": eq(person_id), "user_id": eq(user_id)}, "delete person")
