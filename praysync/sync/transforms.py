"""Shape-aware created / updated / deleted transforms for cached data.

Shared by the realtime patcher and by mutation reconcile functions, so an
optimistic write, its server reconciliation and a pushed change all edit
cached values the same way.

Supported shapes:
    list[item]                      — people, intentions (prepend / merge / filter)
    TodaysPrayers                   — {morning, evening}, slot chosen by Prayer.period
    PrayerPage                      — one page of prayers
    {"pages": [PrayerPage, ...]}    — paged prayer history

Anything else raises ``ShapeMismatch`` so the caller can fall back to
invalidation.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from praysync.models.base import PraySyncBase
from praysync.models.prayers import Prayer, PrayerPage, TodaysPrayers
from praysync.models.realtime import ChangeAction


class ShapeMismatch(LookupError):
    """Cached value has no shape the transform knows how to edit."""


def item_id(item: Any) -> str | None:
    if isinstance(item, dict):
        value = item.get("id")
    else:
        value = getattr(item, "id", None)
    return str(value) if value is not None else None


def merge_item(item: Any, changes: dict[str, Any]) -> Any:
    try:
        if isinstance(item, PraySyncBase):
            return item.merged(changes)
        if isinstance(item, BaseModel):
            return type(item).model_validate({**item.model_dump(), **changes})
    except PydanticValidationError as exc:
        raise ShapeMismatch(f"Merged {type(item).__name__} is invalid: {exc}") from exc
    if isinstance(item, dict):
        return {**item, **changes}
    raise ShapeMismatch(f"Cannot merge into {type(item).__name__}")


def coerce_record(record: Any, model: type[BaseModel] | None) -> Any:
    if model is None or isinstance(record, model):
        return record
    try:
        return model.model_validate(record)
    except PydanticValidationError as exc:
        raise ShapeMismatch(f"Record does not fit {model.__name__}: {exc}") from exc


def _as_changes(record: Any) -> dict[str, Any]:
    if isinstance(record, BaseModel):
        return record.model_dump(exclude_unset=True)
    return dict(record)


# ---------------------------------------------------------------------------
# Lists
# ---------------------------------------------------------------------------


def list_created(items: list[Any], record: Any, model: type[BaseModel] | None = None) -> list[Any]:
    """Prepend ``record``; an item with the same id is replaced in place instead."""
    new_item = coerce_record(record, model)
    rid = item_id(new_item)
    if rid is not None and any(item_id(i) == rid for i in items):
        return [new_item if item_id(i) == rid else i for i in items]
    return [new_item, *items]


def list_updated(items: list[Any], record: Any) -> list[Any]:
    rid = item_id(record)
    changes = _as_changes(record)
    return [merge_item(i, changes) if item_id(i) == rid else i for i in items]


def list_deleted(items: list[Any], record_id: str | None) -> list[Any]:
    return [i for i in items if item_id(i) != record_id]


def list_replaced(items: list[Any], old_id: str, replacement: Any) -> list[Any]:
    """Swap a temporary item for its server version (prepend if it is gone)."""
    if any(item_id(i) == old_id for i in items):
        return [replacement if item_id(i) == old_id else i for i in items]
    return list_created(items, replacement)


# ---------------------------------------------------------------------------
# Prayers
# ---------------------------------------------------------------------------


def today_changed(today: TodaysPrayers, action: ChangeAction, record: Any) -> TodaysPrayers:
    if action is ChangeAction.created:
        prayer = coerce_record(record, Prayer)
        return today.model_copy(update={prayer.period.value: prayer})

    rid = item_id(record)
    updates: dict[str, Any] = {}
    for slot in ("morning", "evening"):
        current = getattr(today, slot)
        if current is None or item_id(current) != rid:
            continue
        if action is ChangeAction.updated:
            updates[slot] = merge_item(current, _as_changes(record))
        else:
            updates[slot] = None
    if not updates:
        return today
    return today.model_copy(update=updates)


def page_changed(page: PrayerPage, action: ChangeAction, record: Any) -> PrayerPage:
    if action is ChangeAction.created:
        prayers = list_created(page.prayers, record, Prayer)
        added = len(prayers) - len(page.prayers)
        return page.model_copy(update={"prayers": prayers, "total_count": page.total_count + added})
    if action is ChangeAction.updated:
        return page.model_copy(update={"prayers": list_updated(page.prayers, record)})
    prayers = list_deleted(page.prayers, item_id(record))
    removed = len(page.prayers) - len(prayers)
    return page.model_copy(
        update={"prayers": prayers, "total_count": max(0, page.total_count - removed)}
    )


def _pages_changed(data: dict[str, Any], action: ChangeAction, record: Any) -> dict[str, Any]:
    pages = list(data["pages"])
    if not pages:
        raise ShapeMismatch("Paged data has no pages")
    if action is ChangeAction.created:
        pages[0] = page_changed(_as_page(pages[0]), action, record)
    else:
        pages = [page_changed(_as_page(p), action, record) for p in pages]
    return {**data, "pages": pages}


def _as_page(page: Any) -> PrayerPage:
    if isinstance(page, PrayerPage):
        return page
    try:
        return PrayerPage.model_validate(page)
    except PydanticValidationError as exc:
        raise ShapeMismatch(f"Not a prayer page: {exc}") from exc


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


def apply_change(
    data: Any,
    action: ChangeAction,
    record: Any,
    model: type[BaseModel] | None = None,
) -> Any:
    """Apply one change to a cached value of any supported shape.

    Raises:
        ShapeMismatch: ``data`` is not a supported shape or the record does not fit.
    """
    if isinstance(data, list):
        if action is ChangeAction.created:
            return list_created(data, record, model)
        if action is ChangeAction.updated:
            return list_updated(data, record)
        return list_deleted(data, item_id(record))
    if isinstance(data, TodaysPrayers):
        return today_changed(data, action, record)
    if isinstance(data, PrayerPage):
        return page_changed(data, action, record)
    if isinstance(data, dict) and isinstance(data.get("pages"), list):
        return _pages_changed(data, action, record)
    raise ShapeMismatch(f"Unsupported cached shape: {type(data).__name__}")
