"""Registry of the mutations consumers can run through ``SyncSession.mutate``.

Each MutationSpec turns a payload into a MutationPlan: which key to write
optimistically, how, which server call confirms it, how the server's answer
is folded back into the cache, and which other keys go stale once it
commits.

Registered types:
    intentions.create / update / toggle_active / delete
    people.create / update / delete
    prayers.complete
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Mapping
from uuid import uuid4

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from praysync.cache.keys import CacheKey, QueryKeys
from praysync.clock import ClockService
from praysync.errors import UnknownMutationError, ValidationError
from praysync.models.intentions import IntentionCreate, IntentionUpdate, PrayerIntention
from praysync.models.people import PersonCreate, PersonUpdate, PrayerPerson
from praysync.models.prayers import TodaysPrayers
from praysync.models.realtime import ChangeAction
from praysync.repositories import IntentionsRepository, PeopleRepository, PrayersRepository
from praysync.sync.mutations import Reconcile
from praysync.sync.transforms import item_id, list_deleted, list_replaced, list_updated, today_changed

logger = logging.getLogger("praysync.mutation_types")

TEMP_ID_PREFIX = "temp-"


@dataclass
class MutationContext:
    """What a mutation builder may use: the user, the clock and the repositories."""

    user_id: str
    clock: ClockService
    people: PeopleRepository
    intentions: IntentionsRepository
    prayers: PrayersRepository


@dataclass(frozen=True)
class MutationPlan:
    """Arguments for ``MutationCoordinator.run``.

    Attributes:
        target_key:     Key written optimistically.
        optimistic:     ``callable(current) -> new`` applied at begin.
        server_call:    Coroutine factory confirming the write.
        reconcile:      ``(current, server_value) -> new`` applied at commit.
        dependent_keys: Key prefixes invalidated after commit.
    """

    target_key: CacheKey
    optimistic: Callable[[Any], Any]
    server_call: Callable[[], Awaitable[Any]]
    reconcile: Reconcile
    dependent_keys: tuple[CacheKey, ...] = ()


Builder = Callable[[MutationContext, Mapping[str, Any]], MutationPlan]


@dataclass(frozen=True)
class MutationSpec:
    name: str
    build: Builder
    description: str = ""


MUTATION_REGISTRY: dict[str, MutationSpec] = {}


def register_mutation(name: str, description: str = "") -> Callable[[Builder], Builder]:
    def decorator(build: Builder) -> Builder:
        MUTATION_REGISTRY[name] = MutationSpec(name=name, build=build, description=description)
        return build

    return decorator


def get_mutation_spec(name: str) -> MutationSpec:
    """Return the registered spec for ``name``.

    Raises:
        UnknownMutationError: If no mutation is registered under that name.
    """
    spec = MUTATION_REGISTRY.get(name)
    if spec is None:
        raise UnknownMutationError(
            f"No mutation registered for type '{name}'. Available: {sorted(MUTATION_REGISTRY)}"
        )
    return spec


# ---------------------------------------------------------------------------
# Payload helpers
# ---------------------------------------------------------------------------


def temp_id(clock: ClockService) -> str:
    """Placeholder id for an optimistically created row, replaced on commit."""
    return f"{TEMP_ID_PREFIX}{clock.now()}-{uuid4().hex[:6]}"


def _require_id(payload: Mapping[str, Any], mutation: str) -> str:
    value = payload.get("id")
    if not value:
        raise ValidationError(f"{mutation} requires an 'id'")
    return str(value)


def _validated(model: type[BaseModel], data: Mapping[str, Any], mutation: str) -> Any:
    try:
        return model.model_validate(dict(data))
    except PydanticValidationError as exc:
        raise ValidationError(
            f"Invalid payload for {mutation}", details=exc.errors(include_url=False)
        ) from exc


def _changes(payload: Mapping[str, Any]) -> dict[str, Any]:
    if isinstance(payload.get("changes"), Mapping):
        return dict(payload["changes"])
    return {k: v for k, v in payload.items() if k != "id"}


def _replace_by_id(old_id: str) -> Reconcile:
    def reconcile(current: Any, server: Any) -> Any:
        return list_replaced(current or [], old_id, server)

    return reconcile


def _keep_current(current: Any, server: Any) -> Any:
    return current


def _find(items: Any, target: str) -> Any:
    for item in items or ():
        if item_id(item) == target:
            return item
    return None


def _now_iso(clock: ClockService) -> str:
    return datetime.fromtimestamp(clock.now() / 1000.0, tz=timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Intentions
# ---------------------------------------------------------------------------


def _intention_views(user_id: str) -> tuple[CacheKey, ...]:
    return (
        QueryKeys.active_intentions(user_id),
        ("intentions", user_id, "person"),
        ("people", user_id),
    )


@register_mutation("intentions.create", "Add an intention; shows immediately under a temporary id")
def _create_intention(ctx: MutationContext, payload: Mapping[str, Any]) -> MutationPlan:
    create: IntentionCreate = _validated(IntentionCreate, payload, "intentions.create")
    placeholder_id = temp_id(ctx.clock)
    placeholder = PrayerIntention(id=placeholder_id, user_id=ctx.user_id, **create.model_dump())

    return MutationPlan(
        target_key=QueryKeys.intentions(ctx.user_id),
        optimistic=lambda current: [placeholder, *(current or [])],
        server_call=lambda: ctx.intentions.create_intention(ctx.user_id, create),
        reconcile=_replace_by_id(placeholder_id),
        dependent_keys=_intention_views(ctx.user_id),
    )


@register_mutation("intentions.update", "Edit an intention's category or details")
def _update_intention(ctx: MutationContext, payload: Mapping[str, Any]) -> MutationPlan:
    intention_id = _require_id(payload, "intentions.update")
    update: IntentionUpdate = _validated(IntentionUpdate, _changes(payload), "intentions.update")
    changes = update.model_dump(exclude_unset=True)

    return MutationPlan(
        target_key=QueryKeys.intentions(ctx.user_id),
        optimistic=lambda current: list_updated(current or [], {"id": intention_id, **changes}),
        server_call=lambda: ctx.intentions.update_intention(intention_id, update),
        reconcile=_replace_by_id(intention_id),
        dependent_keys=(*_intention_views(ctx.user_id), QueryKeys.intention(intention_id)),
    )


@register_mutation("intentions.toggle_active", "Flip whether an intention is prayed for")
def _toggle_intention(ctx: MutationContext, payload: Mapping[str, Any]) -> MutationPlan:
    intention_id = _require_id(payload, "intentions.toggle_active")
    explicit = payload.get("is_active")
    state: dict[str, bool] = {}

    def optimistic(current: Any) -> Any:
        if explicit is not None:
            state["is_active"] = bool(explicit)
        else:
            cached = _find(current, intention_id)
            if cached is None:
                raise ValidationError(
                    "intentions.toggle_active needs 'is_active' when the intention is not cached"
                )
            state["is_active"] = not getattr(cached, "is_active", True)
        return list_updated(current or [], {"id": intention_id, "is_active": state["is_active"]})

    return MutationPlan(
        target_key=QueryKeys.intentions(ctx.user_id),
        optimistic=optimistic,
        server_call=lambda: ctx.intentions.set_active(intention_id, state["is_active"]),
        reconcile=_replace_by_id(intention_id),
        # active people depend on active intentions
        dependent_keys=(*_intention_views(ctx.user_id), QueryKeys.intention(intention_id)),
    )


@register_mutation("intentions.delete", "Remove an intention")
def _delete_intention(ctx: MutationContext, payload: Mapping[str, Any]) -> MutationPlan:
    intention_id = _require_id(payload, "intentions.delete")
    return MutationPlan(
        target_key=QueryKeys.intentions(ctx.user_id),
        optimistic=lambda current: list_deleted(current or [], intention_id),
        server_call=lambda: ctx.intentions.delete_intention(intention_id),
        reconcile=_keep_current,
        dependent_keys=(*_intention_views(ctx.user_id), QueryKeys.intention(intention_id)),
    )


# ---------------------------------------------------------------------------
# People
# ---------------------------------------------------------------------------


@register_mutation("people.create", "Add a person, optionally with a first intention")
def _create_person(ctx: MutationContext, payload: Mapping[str, Any]) -> MutationPlan:
    create: PersonCreate = _validated(PersonCreate, payload, "people.create")
    placeholder_id = temp_id(ctx.clock)
    placeholder = PrayerPerson(
        id=placeholder_id,
        user_id=ctx.user_id,
        **create.model_dump(exclude={"intention_category", "intention_details"}),
    )
    dependents: tuple[CacheKey, ...] = (QueryKeys.people(ctx.user_id, active_only=True),)
    if create.intention_category:
        dependents += (QueryKeys.intentions(ctx.user_id),)

    return MutationPlan(
        target_key=QueryKeys.people(ctx.user_id, active_only=False),
        optimistic=lambda current: [placeholder, *(current or [])],
        server_call=lambda: ctx.people.create_person(ctx.user_id, create),
        reconcile=_replace_by_id(placeholder_id),
        dependent_keys=dependents,
    )


@register_mutation("people.update", "Edit a person's name, relationship or photo")
def _update_person(ctx: MutationContext, payload: Mapping[str, Any]) -> MutationPlan:
    person_id = _require_id(payload, "people.update")
    update: PersonUpdate = _validated(PersonUpdate, _changes(payload), "people.update")
    changes = update.model_dump(exclude_unset=True)

    return MutationPlan(
        target_key=QueryKeys.people(ctx.user_id, active_only=False),
        optimistic=lambda current: list_updated(current or [], {"id": person_id, **changes}),
        server_call=lambda: ctx.people.update_person(person_id, ctx.user_id, update),
        reconcile=_replace_by_id(person_id),
        # intentions embed the person's name and photo
        dependent_keys=(
            QueryKeys.people(ctx.user_id, active_only=True),
            QueryKeys.person(person_id),
            QueryKeys.intentions(ctx.user_id),
        ),
    )


@register_mutation("people.delete", "Remove a person and, server-side, their intentions")
def _delete_person(ctx: MutationContext, payload: Mapping[str, Any]) -> MutationPlan:
    person_id = _require_id(payload, "people.delete")
    return MutationPlan(
        target_key=QueryKeys.people(ctx.user_id, active_only=False),
        optimistic=lambda current: list_deleted(current or [], person_id),
        server_call=lambda: ctx.people.delete_person(person_id, ctx.user_id),
        reconcile=_keep_current,
        dependent_keys=(
            QueryKeys.people(ctx.user_id, active_only=True),
            QueryKeys.person(person_id),
            QueryKeys.intentions(ctx.user_id),
        ),
    )


# ---------------------------------------------------------------------------
# Prayers
# ---------------------------------------------------------------------------


@register_mutation("prayers.complete", "Mark one of today's prayers as prayed")
def _complete_prayer(ctx: MutationContext, payload: Mapping[str, Any]) -> MutationPlan:
    prayer_id = _require_id(payload, "prayers.complete")
    completed_iso = _now_iso(ctx.clock)
    completed_at = datetime.fromisoformat(completed_iso)

    def optimistic(current: Any) -> Any:
        if not isinstance(current, TodaysPrayers):
            return current
        return today_changed(current, ChangeAction.updated, {"id": prayer_id, "completed_at": completed_iso})

    def reconcile(current: Any, server: Any) -> Any:
        if isinstance(current, TodaysPrayers):
            return today_changed(current, ChangeAction.updated, server)
        return today_changed(TodaysPrayers(), ChangeAction.created, server)

    return MutationPlan(
        target_key=QueryKeys.prayers_today(ctx.user_id, ctx.clock.get_prayer_day_start()),
        optimistic=optimistic,
        server_call=lambda: ctx.prayers.complete_prayer(prayer_id, ctx.user_id, completed_at),
        reconcile=reconcile,
        # streaks and the server's window state move when a prayer is completed
        dependent_keys=(
            QueryKeys.user_stats(ctx.user_id),
            QueryKeys.prayer_state(ctx.user_id),
            QueryKeys.home_data(ctx.user_id),
            ("prayers", ctx.user_id, "paged"),
        ),
    )
