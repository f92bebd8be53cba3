"""Apply pushed row changes directly to cached data.

Realtime events are authoritative: they bypass the optimistic mutation
machinery and are written straight into the CacheStore.  Every cached entry
under ``(resource, owner_id)`` is patched with the shared transforms; when an
entry has an unexpected shape (or the record does not decode) the whole
resource is invalidated instead so the next read refetches it.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Literal, Mapping, Protocol

from pydantic import BaseModel

from praysync.cache.keys import CacheKey, QueryKeys
from praysync.cache.store import CacheStore
from praysync.errors import ValidationError
from praysync.models.intentions import PrayerIntention
from praysync.models.people import PrayerPerson
from praysync.models.prayers import Prayer
from praysync.models.realtime import ChangeAction, RemoteChangeEvent
from praysync.sync.transforms import ShapeMismatch, apply_change, item_id

logger = logging.getLogger("praysync.sync.realtime")

PatchStrategy = Literal["patched", "invalidated", "ignored"]

# Backend table → cache resource name
TABLE_RESOURCES: dict[str, str] = {
    "prayer_focus_people": "people",
    "prayer_intentions": "intentions",
    "prayers": "prayers",
    "people": "people",
    "intentions": "intentions",
}

EVENT_ACTIONS: dict[str, ChangeAction] = {
    "INSERT": ChangeAction.created,
    "UPDATE": ChangeAction.updated,
    "DELETE": ChangeAction.deleted,
}

RESOURCE_MODELS: dict[str, type[BaseModel]] = {
    "people": PrayerPerson,
    "intentions": PrayerIntention,
    "prayers": Prayer,
}


class RealtimeChannel(Protocol):
    """Push channel delivering raw change payloads for one user.

    Connectivity, reconnects and authentication belong to the implementation.
    """

    def subscribe(self, user_id: str, callback: Callable[[Mapping[str, Any]], None]) -> Callable[[], None]:
        ...


def decode_postgres_change(payload: Mapping[str, Any]) -> RemoteChangeEvent:
    """Convert a ``{eventType, new, old, table}`` push payload into a RemoteChangeEvent.

    Raises:
        ValidationError: The payload is not a recognizable row change.
    """
    if not isinstance(payload, Mapping):
        raise ValidationError(f"Realtime payload must be a mapping, got {type(payload).__name__}")

    event_type = str(payload.get("eventType") or payload.get("type") or "").upper()
    action = EVENT_ACTIONS.get(event_type)
    if action is None:
        raise ValidationError(f"Unknown realtime event type {event_type!r}")

    table = payload.get("table")
    if not isinstance(table, str) or not table:
        raise ValidationError("Realtime payload has no table")

    if action is ChangeAction.deleted:
        record = payload.get("old") or payload.get("new")
    else:
        record = payload.get("new")
    if not isinstance(record, Mapping) or record.get("id") is None:
        raise ValidationError(f"Realtime {event_type} on {table} carries no row id")

    return RemoteChangeEvent(
        table=TABLE_RESOURCES.get(table, table),
        action=action,
        record=dict(record),
    )


def _field(item: Any, name: str) -> Any:
    if isinstance(item, Mapping):
        return item.get(name)
    return getattr(item, name, None)


class RealtimePatcher:
    """Reconcile cached entries with authoritative pushed changes.

    Usage::

        patcher = RealtimePatcher(store, user_id=uid)
        patcher.apply(decode_postgres_change(payload))   # "patched"
    """

    def __init__(
        self,
        store: CacheStore,
        *,
        user_id: str | None = None,
        current_day: Callable[[], str] | None = None,
    ) -> None:
        self._store = store
        self._user_id = user_id
        self._current_day = current_day

    def set_user(self, user_id: str | None) -> None:
        self._user_id = user_id

    def handle_payload(self, payload: Mapping[str, Any]) -> PatchStrategy:
        """Decode and apply a raw channel payload; malformed payloads are logged and ignored."""
        try:
            event = decode_postgres_change(payload)
        except ValidationError as exc:
            logger.warning("Dropping malformed realtime payload: %s", exc)
            return "ignored"
        return self.apply(event)

    def apply(self, event: RemoteChangeEvent) -> PatchStrategy:
        """Patch every cached view of the changed row.

        Returns:
            'patched' when all entries were edited in place, 'invalidated' when
            the resource had to be refetched, 'ignored' for foreign or unknown events.
        """
        model = RESOURCE_MODELS.get(event.table)
        if model is None:
            logger.debug("Ignoring realtime event for untracked table %s", event.table)
            return "ignored"

        # DELETE payloads may carry only the primary key
        owner = event.owner_id or self._user_id
        if owner is None:
            return "ignored"
        if self._user_id is not None and owner != self._user_id:
            logger.debug("Ignoring realtime event for another user")
            return "ignored"

        scope: CacheKey = (event.table, owner)
        entries = [entry for entry in self._store.find(scope) if entry.has_data]
        if not entries:
            return self._fallback(scope, "no cached entry")

        updates: list[tuple[CacheKey, Any]] = []
        invalidate_after: list[CacheKey] = []
        try:
            for entry in entries:
                if self._is_other_day(entry.key, event):
                    continue
                if self._is_derived_aggregate(entry.key):
                    invalidate_after.append(entry.key)
                    continue
                keep = self._key_filter(entry.key)
                if keep is not None and self._may_enter_view(entry.data, event):
                    invalidate_after.append(entry.key)
                    continue
                new = apply_change(entry.data, event.action, event.record, model)
                if keep is not None and isinstance(new, list):
                    new = [item for item in new if keep(item)]
                if new is not entry.data:
                    updates.append((entry.key, new))
        except ShapeMismatch as exc:
            return self._fallback(scope, str(exc))

        for key, value in updates:
            self._store.set(key, value)
        for key in invalidate_after:
            self._store.invalidate(key, exact=True)
        active_people = QueryKeys.people(owner, active_only=True)
        if event.table == "people" and active_people not in invalidate_after:
            # activity depends on intentions, so the server decides who is active
            self._store.invalidate(active_people, exact=True)

        logger.debug(
            "Realtime %s on %s/%s patched %d entries", event.action.value, event.table, event.record_id, len(updates)
        )
        return "patched"

    def _fallback(self, scope: CacheKey, why: str) -> PatchStrategy:
        logger.info("Realtime patch fell back to invalidation of %s: %s", scope, why)
        self._store.invalidate(scope)
        return "invalidated"

    def _is_other_day(self, key: CacheKey, event: RemoteChangeEvent) -> bool:
        """New prayers only ever land in the current prayer day's entry."""
        if event.action is not ChangeAction.created or self._current_day is None:
            return False
        return len(key) == 4 and key[2] == "today" and key[3] != self._current_day()

    @staticmethod
    def _is_derived_aggregate(key: CacheKey) -> bool:
        return key[0] == "people" and key[-1] == "active"

    @staticmethod
    def _may_enter_view(data: Any, event: RemoteChangeEvent) -> bool:
        """An update to a row outside a filtered view may move it into the view."""
        if event.action is not ChangeAction.updated or not isinstance(data, list):
            return False
        return all(item_id(item) != event.record_id for item in data)

    @staticmethod
    def _key_filter(key: CacheKey) -> Callable[[Any], bool] | None:
        """Membership rule for filtered list views."""
        if key[0] != "intentions" or len(key) < 3:
            return None
        if key[2] == "active":
            return lambda item: bool(_field(item, "is_active"))
        if key[2] == "person" and len(key) >= 4:
            person_id = None if key[3] == "self" else key[3]
            return lambda item: _field(item, "person_id") == person_id
        return None
