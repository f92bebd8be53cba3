"""Tests for the mutation catalog and the query catalog."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from praysync.cache.keys import QueryKeys
from praysync.cache.policy import NeverStale, TimeBoxed
from praysync.cache.store import CacheStore
from praysync.clock import ClockService
from praysync.errors import TransientNetworkError, UnknownMutationError, ValidationError
from praysync.models.intentions import PrayerIntention
from praysync.models.people import PrayerPerson
from praysync.models.prayers import Prayer, TodaysPrayers
from praysync.mutation_types import (
    MUTATION_REGISTRY,
    TEMP_ID_PREFIX,
    MutationContext,
    get_mutation_spec,
)
from praysync.queries import Queries
from praysync.sync.mutations import MutationCoordinator
from praysync.sync.policy_loader import load_sync_policy
from praysync.tests.conftest import TEST_USER_ID, FakeMonotonic


@pytest.fixture
def store(mono: FakeMonotonic) -> CacheStore:
    return CacheStore(now_ms=mono.ms, sleep=AsyncMock(return_value=None))


@pytest.fixture
def coordinator(store: CacheStore) -> MutationCoordinator:
    return MutationCoordinator(store)


@pytest.fixture
def context(clock: ClockService, repos: dict) -> MutationContext:
    return MutationContext(user_id=TEST_USER_ID, clock=clock, **repos)


def intention(iid: str, is_active: bool = True, person_id: str | None = "p1") -> PrayerIntention:
    return PrayerIntention(id=iid, user_id=TEST_USER_ID, person_id=person_id, category="health", is_active=is_active)


async def run(coordinator: MutationCoordinator, context: MutationContext, name: str, payload: dict):
    plan = get_mutation_spec(name).build(context, payload)
    return await coordinator.run(
        plan.target_key,
        plan.optimistic,
        plan.server_call,
        mutation_type=name,
        reconcile=plan.reconcile,
        dependent_keys=plan.dependent_keys,
    )


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class TestMutationRegistry:
    def test_catalog_names(self) -> None:
        assert set(MUTATION_REGISTRY) == {
            "intentions.create",
            "intentions.update",
            "intentions.toggle_active",
            "intentions.delete",
            "people.create",
            "people.update",
            "people.delete",
            "prayers.complete",
        }

    def test_unknown_type_lists_available(self) -> None:
        with pytest.raises(UnknownMutationError, match="Available"):
            get_mutation_spec("intentions.archive")

    def test_missing_id_rejected_before_any_write(self, context: MutationContext) -> None:
        with pytest.raises(ValidationError):
            get_mutation_spec("intentions.delete").build(context, {})

    def test_invalid_payload_rejected(self, context: MutationContext) -> None:
        with pytest.raises(ValidationError):
            get_mutation_spec("intentions.create").build(context, {"category": ""})


# ---------------------------------------------------------------------------
# Intentions
# ---------------------------------------------------------------------------


class TestIntentionMutations:
    @pytest.mark.asyncio
    async def test_create_shows_temp_item_then_server_item(
        self, store: CacheStore, coordinator: MutationCoordinator, context: MutationContext, repos: dict
    ) -> None:
        key = QueryKeys.intentions(TEST_USER_ID)
        store.set(key, [intention("i1")])
        seen: list[list] = []

        async def create(user_id, payload):
            seen.append(store.get_data(key))
            return intention("i9")

        repos["intentions"].create_intention.side_effect = create

        result = await run(coordinator, context, "intentions.create", {"category": "health", "person_id": "p1"})

        assert result.committed
        optimistic = seen[0]
        assert optimistic[0].id.startswith(TEMP_ID_PREFIX)
        assert [i.id for i in store.get_data(key)] == ["i9", "i1"]

    @pytest.mark.asyncio
    async def test_toggle_flips_cached_flag_and_invalidates_views(
        self, store: CacheStore, coordinator: MutationCoordinator, context: MutationContext, repos: dict
    ) -> None:
        key = QueryKeys.intentions(TEST_USER_ID)
        active_people = QueryKeys.people(TEST_USER_ID, active_only=True)
        store.set(key, [intention("i1", is_active=True)])
        store.set(active_people, [])
        repos["intentions"].set_active.return_value = intention("i1", is_active=False)

        result = await run(coordinator, context, "intentions.toggle_active", {"id": "i1"})

        assert result.committed
        repos["intentions"].set_active.assert_awaited_once_with("i1", False)
        assert store.get_data(key)[0].is_active is False
        assert store.get(active_people).invalidated

    @pytest.mark.asyncio
    async def test_toggle_failure_restores_previous_list(
        self, store: CacheStore, coordinator: MutationCoordinator, context: MutationContext, repos: dict
    ) -> None:
        key = QueryKeys.intentions(TEST_USER_ID)
        original = [intention("i1", is_active=True)]
        store.set(key, original)
        repos["intentions"].set_active.side_effect = TransientNetworkError("offline")

        result = await run(coordinator, context, "intentions.toggle_active", {"id": "i1"})

        assert result.rolled_back
        assert isinstance(result.error, TransientNetworkError)
        assert store.get_data(key) is original

    @pytest.mark.asyncio
    async def test_toggle_uncached_without_target_state_rejected(
        self, store: CacheStore, coordinator: MutationCoordinator, context: MutationContext
    ) -> None:
        with pytest.raises(ValidationError):
            await run(coordinator, context, "intentions.toggle_active", {"id": "i404"})
        assert coordinator.pending() == []

    @pytest.mark.asyncio
    async def test_delete_keeps_list_without_item(
        self, store: CacheStore, coordinator: MutationCoordinator, context: MutationContext, repos: dict
    ) -> None:
        key = QueryKeys.intentions(TEST_USER_ID)
        store.set(key, [intention("i1"), intention("i2")])
        repos["intentions"].delete_intention.return_value = None

        result = await run(coordinator, context, "intentions.delete", {"id": "i1"})

        assert result.committed
        assert [i.id for i in store.get_data(key)] == ["i2"]


# ---------------------------------------------------------------------------
# People and prayers
# ---------------------------------------------------------------------------


class TestPeopleAndPrayerMutations:
    @pytest.mark.asyncio
    async def test_update_person_merges_changes(
        self, store: CacheStore, coordinator: MutationCoordinator, context: MutationContext, repos: dict
    ) -> None:
        key = QueryKeys.people(TEST_USER_ID, active_only=False)
        store.set(key, [PrayerPerson(id="p1", user_id=TEST_USER_ID, name="Anna")])
        repos["people"].update_person.return_value = PrayerPerson(id="p1", user_id=TEST_USER_ID, name="Annie")

        result = await run(coordinator, context, "people.update", {"id": "p1", "changes": {"name": "Annie"}})

        assert result.committed
        assert store.get_data(key)[0].name == "Annie"
        _, _, update = repos["people"].update_person.await_args.args
        assert update.model_dump(exclude_unset=True) == {"name": "Annie"}

    @pytest.mark.asyncio
    async def test_complete_prayer_marks_slot(
        self,
        store: CacheStore,
        coordinator: MutationCoordinator,
        context: MutationContext,
        clock: ClockService,
        repos: dict,
    ) -> None:
        key = QueryKeys.prayers_today(TEST_USER_ID, clock.get_prayer_day_start())
        morning = Prayer(id="pr1", user_id=TEST_USER_ID, slot="morning")
        store.set(key, TodaysPrayers(morning=morning))
        stats = QueryKeys.user_stats(TEST_USER_ID)
        store.set(stats, {"current_streak": 3})

        async def complete(prayer_id, user_id, completed_at):
            assert store.get_data(key).morning.completed_at is not None
            return morning.model_copy(update={"completed_at": completed_at})

        repos["prayers"].complete_prayer.side_effect = complete

        result = await run(coordinator, context, "prayers.complete", {"id": "pr1"})

        assert result.committed
        assert store.get_data(key).morning.completed_at is not None
        assert store.get(stats).invalidated


# ---------------------------------------------------------------------------
# Query catalog
# ---------------------------------------------------------------------------


class TestQueries:
    @pytest.fixture
    def queries(self, clock: ClockService, repos: dict) -> Queries:
        return Queries(policy=load_sync_policy(), clock=clock, **repos)

    def test_prayer_state_is_silent_and_short_lived(self, queries: Queries) -> None:
        spec = queries.prayer_state(TEST_USER_ID)
        assert spec.silent is True
        assert spec.key == QueryKeys.prayer_state(TEST_USER_ID)
        assert isinstance(spec.policy, TimeBoxed)
        assert spec.policy.stale_ms == 0

    def test_user_lists_are_user_controlled(self, queries: Queries) -> None:
        assert isinstance(queries.people(TEST_USER_ID).policy, NeverStale)
        assert isinstance(queries.intentions(TEST_USER_ID).policy, NeverStale)

    def test_todays_prayers_keyed_by_current_day(self, queries: Queries, clock: ClockService) -> None:
        spec = queries.todays_prayers(TEST_USER_ID)
        assert spec.key == QueryKeys.prayers_today(TEST_USER_ID, clock.get_prayer_day_start())

    @pytest.mark.asyncio
    async def test_fetchers_call_repositories(self, queries: Queries, repos: dict) -> None:
        repos["intentions"].list_by_person.return_value = []
        spec = queries.intentions_by_person(TEST_USER_ID, None)
        assert await spec.fetcher() == []
        repos["intentions"].list_by_person.assert_awaited_once_with(TEST_USER_ID, None)
