"""Repository for prayer intentions (``prayer_intentions``)."""

from __future__ import annotations

from praysync.errors import ValidationError
from praysync.models.intentions import IntentionCreate, IntentionUpdate, PrayerIntention
from praysync.repositories.base import BaseRepository, eq

# Intentions embed the name/avatar of the person they are for
INTENTION_SELECT = "*,prayer_focus_people(name,relationship,gender,image_uri)"

_NEWEST_FIRST = "created_at.desc"


class IntentionsRepository(BaseRepository):
    RESOURCE = "intentions"
    TABLE = "prayer_intentions"

    async def list_intentions(self, user_id: str) -> list[PrayerIntention]:
        rows = await self._select(
            {"select": INTENTION_SELECT, "user_id": eq(user_id), "order": _NEWEST_FIRST},
            "list intentions",
        )
        return self._decode_list(PrayerIntention, rows)

    async def list_active(self, user_id: str) -> list[PrayerIntention]:
        rows = await self._select(
            {
                "select": INTENTION_SELECT,
                "user_id": eq(user_id),
                "is_active": eq(True),
                "order": _NEWEST_FIRST,
            },
            "list active intentions",
        )
        return self._decode_list(PrayerIntention, rows)

    async def list_by_person(self, user_id: str, person_id: str | None) -> list[PrayerIntention]:
        """Intentions for one person; ``person_id=None`` selects the user's own."""
        params = {
            "select": INTENTION_SELECT,
            "user_id": eq(user_id),
            "person_id": "is.null" if person_id is None else eq(person_id),
            "order": _NEWEST_FIRST,
        }
        rows = await self._select(params, "list intentions by person")
        return self._decode_list(PrayerIntention, rows)

    async def get_intention(self, intention_id: str) -> PrayerIntention | None:
        row = await self._select_one({"select": INTENTION_SELECT, "id": eq(intention_id)}, "get intention")
        return self._decode(PrayerIntention, row) if row is not None else None

    async def create_intention(self, user_id: str, payload: IntentionCreate) -> PrayerIntention:
        row = {**payload.model_dump(), "user_id": user_id}
        created = await self._insert(row, "create intention", select=INTENTION_SELECT)
        return self._decode(PrayerIntention, created)

    async def update_intention(self, intention_id: str, changes: IntentionUpdate) -> PrayerIntention:
        body = changes.model_dump(exclude_unset=True)
        if not body:
            raise ValidationError("No changes supplied for intention update")
        row = await self._update({"id": eq(intention_id)}, body, "update intention", select=INTENTION_SELECT)
        if row is None:
            raise ValidationError("Item not found", code="PGRST116")
        return self._decode(PrayerIntention, row)

    async def set_active(self, intention_id: str, is_active: bool) -> PrayerIntention:
        return await self.update_intention(intention_id, IntentionUpdate(is_active=is_active))

    async def toggle_active(self, intention_id: str) -> PrayerIntention:
        """Flip ``is_active`` based on the server's current value."""
        current = await self.get_intention(intention_id)
        if current is None:
            raise ValidationError("Item not found", code="PGRST116")
        return await self.set_active(intention_id, not current.is_active)

    async def delete_intention(self, intention_id: str) -> None:
        await self._delete({"id": eq(intention_id)}, "delete intention")

    async def delete_for_person(self, user_id: str, person_id: str) -> None:
        await self._delete({"user_id": eq(user_id), "person_id": eq(person_id)}, "delete intentions for person")
