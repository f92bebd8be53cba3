"""Repository for generated prayers, the prayer-state RPC and streak stats."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Literal

from praysync.errors import ValidationError
from praysync.models.prayers import Prayer, PrayerPage, PrayerState, TodaysPrayers, UserStats
from praysync.repositories.base import BaseRepository, eq

logger = logging.getLogger("praysync.repositories.prayers")

PrayerFilter = Literal["all", "morning", "evening", "liked"]

_COLUMNS = "id,user_id,content,generated_at,slot,verse_ref,liked,completed_at,input_snapshot"
_STATS_COLUMNS = "current_streak,longest_streak,total_prayers_completed,streak_start_date,last_prayer_date"

_FILTERS: dict[str, dict[str, str]] = {
    "all": {},
    "morning": {"or": "(slot.ilike.*am*,slot.eq.morning)"},
    "evening": {"or": "(slot.ilike.*pm*,slot.eq.evening)"},
    "liked": {"liked": "eq.true"},
}


def _total_from_content_range(value: str | None) -> int:
    """Parse the total out of a PostgREST ``Content-Range`` header (``0-19/57``)."""
    if not value or "/" not in value:
        return 0
    total = value.rsplit("/", 1)[1]
    return int(total) if total.isdigit() else 0


class PrayersRepository(BaseRepository):
    RESOURCE = "prayers"
    TABLE = "prayers"

    #: Server function returning the current period, today's prayers and the server clock.
    STATE_RPC = "get_current_prayer_state"

    async def list_prayers(
        self,
        user_id: str,
        limit: int = 20,
        cursor: str | None = None,
        filter: PrayerFilter = "all",
    ) -> PrayerPage:
        """Fetch one page of prayers, newest first.

        Args:
            user_id: Owner of the rows.
            limit:   Page size.
            cursor:  ``generated_at`` of the last prayer on the previous page.
            filter:  all / morning / evening / liked.

        Returns:
            PrayerPage with the exact total count from the server.
        """
        if filter not in _FILTERS:
            raise ValidationError(f"Unknown prayer filter {filter!r}")
        params: dict[str, str] = {
            "select": _COLUMNS,
            "user_id": eq(user_id),
            "order": "generated_at.desc",
            "limit": str(limit),
            **_FILTERS[filter],
        }
        if cursor:
            params["generated_at"] = f"lt.{cursor}"

        response = await self._send("GET", self.TABLE, params=params, headers={"Prefer": "count=exact"})
        if not response.is_success:
            raise self._error_for(response, "list prayers")
        rows = self._body(response)
        if not isinstance(rows, list):
            raise ValidationError("prayers list prayers: expected a list of rows")

        prayers = self._decode_list(Prayer, rows)
        has_more = len(prayers) == limit
        return PrayerPage(
            prayers=prayers,
            total_count=_total_from_content_range(response.headers.get("content-range")),
            has_more=has_more,
            next_cursor=rows[-1].get("generated_at") if has_more and rows else None,
        )

    async def get_prayer(self, prayer_id: str, user_id: str) -> Prayer | None:
        row = await self._select_one(
            {"select": _COLUMNS, "id": eq(prayer_id), "user_id": eq(user_id)}, "get prayer"
        )
        return self._decode(Prayer, row) if row is not None else None

    async def get_prayer_state(self, user_id: str) -> PrayerState:
        """Call the prayer-state RPC; its timestamps anchor the logical clock."""
        payload = await self._rpc(self.STATE_RPC, {"user_id_param": user_id}, "get prayer state")
        if isinstance(payload, list):
            # set-returning variant of the function
            payload = payload[0] if payload else None
        if payload is None:
            raise ValidationError("prayer state RPC returned nothing")
        return self._decode(PrayerState, payload)

    async def get_todays_prayers(self, user_id: str) -> TodaysPrayers:
        state = await self.get_prayer_state(user_id)
        return state.prayers

    async def set_liked(self, prayer_id: str, user_id: str, liked: bool) -> Prayer:
        return await self._patch_prayer(prayer_id, user_id, {"liked": liked}, "set liked")

    async def complete_prayer(self, prayer_id: str, user_id: str, completed_at: datetime | None = None) -> Prayer:
        when = completed_at or datetime.now(timezone.utc)
        return await self._patch_prayer(prayer_id, user_id, {"completed_at": when.isoformat()}, "complete prayer")

    async def _patch_prayer(self, prayer_id: str, user_id: str, changes: dict, operation: str) -> Prayer:
        row = await self._update(
            {"id": eq(prayer_id), "user_id": eq(user_id)}, changes, operation, select=_COLUMNS
        )
        if row is None:
            raise ValidationError("Item not found", code="PGRST116")
        return self._decode(Prayer, row)

    async def get_user_stats(self, user_id: str) -> UserStats:
        """Streak counters; a user with no stats row yet gets zeroed stats."""
        row = await self._request(
            "GET",
            "user_stats",
            "get user stats",
            params={"select": _STATS_COLUMNS, "user_id": eq(user_id)},
            single=True,
        )
        if row is None:
            logger.debug("No user_stats row yet for %s", user_id)
            return UserStats()
        return self._decode(UserStats, row)
