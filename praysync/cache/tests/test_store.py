"""Tests for CacheStore reads, writes, invalidation, fetch policy and subscriptions."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from praysync.cache.keys import KeyPattern, QueryKeys
from praysync.cache.policy import NeverStale, TimeBoxed, user_controlled
from praysync.cache.store import CacheStore
from praysync.errors import AuthorizationError, TransientNetworkError, ValidationError
from praysync.cache.tests.conftest import TEST_USER_ID, FakeWallClock

PEOPLE_KEY = QueryKeys.people(TEST_USER_ID)


# ---------------------------------------------------------------------------
# Reads and writes
# ---------------------------------------------------------------------------


class TestReadAfterWrite:
    def test_every_write_is_visible_immediately(self, store: CacheStore) -> None:
        sequence = [
            (PEOPLE_KEY, ["a"]),
            (QueryKeys.intentions(TEST_USER_ID), []),
            (PEOPLE_KEY, ["a", "b"]),
            (QueryKeys.prayer_state(TEST_USER_ID), {"current_period": "evening"}),
            (PEOPLE_KEY, []),
        ]
        for key, value in sequence:
            store.set(key, value)
            assert store.get_data(key) == value
        assert store.get_data(PEOPLE_KEY) == []

    def test_get_missing_returns_none(self, store: CacheStore) -> None:
        assert store.get(PEOPLE_KEY) is None
        assert store.get_data(PEOPLE_KEY, default="x") == "x"

    def test_set_clears_invalidated_and_error(self, store: CacheStore) -> None:
        entry = store.set(PEOPLE_KEY, [1])
        entry.invalidated = True
        entry.error = RuntimeError("boom")
        store.set(PEOPLE_KEY, [2])
        assert not entry.invalidated
        assert entry.error is None

    def test_update_applies_function(self, store: CacheStore) -> None:
        store.set(PEOPLE_KEY, [1])
        store.update(PEOPLE_KEY, lambda current: [*current, 2])
        assert store.get_data(PEOPLE_KEY) == [1, 2]

    def test_update_returning_same_object_is_noop(self, store: CacheStore, wall: FakeWallClock) -> None:
        entry = store.set(PEOPLE_KEY, [1])
        fetched_at = entry.fetched_at
        wall.advance(10)
        store.update(PEOPLE_KEY, lambda current: current)
        assert entry.fetched_at == fetched_at

    def test_contains_and_len(self, store: CacheStore) -> None:
        store.set(PEOPLE_KEY, [])
        assert PEOPLE_KEY in store
        assert len(store) == 1
        assert store.keys() == [PEOPLE_KEY]


class TestInvalidateAndRemove:
    def test_invalidate_marks_prefix_matches_stale(self, store: CacheStore) -> None:
        store.set(QueryKeys.intentions(TEST_USER_ID), [])
        store.set(QueryKeys.active_intentions(TEST_USER_ID), [])
        store.set(PEOPLE_KEY, [])

        keys = store.invalidate(QueryKeys.intentions(TEST_USER_ID), refetch="none")

        assert set(keys) == {QueryKeys.intentions(TEST_USER_ID), QueryKeys.active_intentions(TEST_USER_ID)}
        assert store.get(QueryKeys.intentions(TEST_USER_ID)).invalidated
        assert not store.get(PEOPLE_KEY).invalidated

    def test_invalidate_exact(self, store: CacheStore) -> None:
        store.set(QueryKeys.intentions(TEST_USER_ID), [])
        store.set(QueryKeys.active_intentions(TEST_USER_ID), [])
        keys = store.invalidate(QueryKeys.intentions(TEST_USER_ID), exact=True)
        assert keys == [QueryKeys.intentions(TEST_USER_ID)]

    def test_invalidated_data_still_readable(self, store: CacheStore) -> None:
        store.set(PEOPLE_KEY, ["a"])
        store.invalidate(PEOPLE_KEY)
        assert store.get_data(PEOPLE_KEY) == ["a"]
        assert store.get(PEOPLE_KEY).is_stale(0)

    @pytest.mark.asyncio
    async def test_invalidate_refetches_active_subscribers(self, store: CacheStore) -> None:
        fetcher = AsyncMock(side_effect=[["first"], ["second"]])
        with store.subscribe(PEOPLE_KEY, fetcher, user_controlled()):
            await store.wait_idle()
            assert store.get_data(PEOPLE_KEY) == ["first"]

            store.invalidate(PEOPLE_KEY)
            await store.wait_idle()

        assert store.get_data(PEOPLE_KEY) == ["second"]
        assert fetcher.await_count == 2

    @pytest.mark.asyncio
    async def test_invalidate_without_subscribers_defers(self, store: CacheStore) -> None:
        fetcher = AsyncMock(return_value=["fresh"])
        await store.fetch(PEOPLE_KEY, fetcher)
        store.invalidate(PEOPLE_KEY)
        await store.wait_idle()
        assert fetcher.await_count == 1

    @pytest.mark.asyncio
    async def test_invalidate_refetch_all(self, store: CacheStore) -> None:
        fetcher = AsyncMock(return_value=["fresh"])
        await store.fetch(PEOPLE_KEY, fetcher)
        store.invalidate(PEOPLE_KEY, refetch="all")
        await store.wait_idle()
        assert fetcher.await_count == 2

    def test_remove_evicts(self, store: CacheStore) -> None:
        store.set(QueryKeys.prayers_today(TEST_USER_ID, "2026-02-22"), {})
        store.set(QueryKeys.prayers_today(TEST_USER_ID, "2026-02-23"), {})
        removed = store.remove(QueryKeys.prayers_today(TEST_USER_ID, "2026-02-22"))
        assert removed == 1
        assert store.get(QueryKeys.prayers_today(TEST_USER_ID, "2026-02-22")) is None
        assert store.get(QueryKeys.prayers_today(TEST_USER_ID, "2026-02-23")) is not None

    @pytest.mark.asyncio
    async def test_remove_cancels_inflight_fetch(self, store: CacheStore) -> None:
        gate = asyncio.Event()

        async def slow() -> list[str]:
            await gate.wait()
            return ["late"]

        task = asyncio.create_task(store.fetch(PEOPLE_KEY, slow))
        await asyncio.sleep(0)
        assert store.is_fetching(PEOPLE_KEY)

        store.remove(PEOPLE_KEY)
        gate.set()
        assert await task is None
        assert store.get(PEOPLE_KEY) is None

    def test_clear_drops_everything(self, store: CacheStore) -> None:
        store.set(PEOPLE_KEY, [])
        store.set(QueryKeys.intentions(TEST_USER_ID), [])
        store.clear()
        assert len(store) == 0
        assert store.get(PEOPLE_KEY) is None


# ---------------------------------------------------------------------------
# Fetch policy
# ---------------------------------------------------------------------------


class TestFetch:
    @pytest.mark.asyncio
    async def test_fetch_writes_result(self, store: CacheStore) -> None:
        result = await store.fetch(PEOPLE_KEY, AsyncMock(return_value=["a"]))
        assert result == ["a"]
        assert store.get_data(PEOPLE_KEY) == ["a"]

    @pytest.mark.asyncio
    async def test_fetch_without_fetcher_raises(self, store: CacheStore) -> None:
        with pytest.raises(LookupError):
            await store.fetch(PEOPLE_KEY)

    @pytest.mark.asyncio
    async def test_transient_errors_retry_with_backoff(self, store: CacheStore, no_sleep: AsyncMock) -> None:
        fetcher = AsyncMock(
            side_effect=[TransientNetworkError("down"), TransientNetworkError("down"), ["ok"]]
        )
        assert await store.fetch(PEOPLE_KEY, fetcher) == ["ok"]
        assert fetcher.await_count == 3
        assert [c.args[0] for c in no_sleep.await_args_list] == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_backoff_is_capped(self, wall: FakeWallClock, no_sleep: AsyncMock) -> None:
        store = CacheStore(retry_count=4, retry_base_delay_ms=10_000, retry_max_delay_ms=30_000, now_ms=wall, sleep=no_sleep)
        fetcher = AsyncMock(side_effect=[TransientNetworkError("x")] * 4 + [["ok"]])
        await store.fetch(PEOPLE_KEY, fetcher)
        assert [c.args[0] for c in no_sleep.await_args_list] == [10.0, 20.0, 30.0, 30.0]

    @pytest.mark.asyncio
    async def test_retries_exhausted_records_error(self, store: CacheStore) -> None:
        fetcher = AsyncMock(side_effect=TransientNetworkError("down"))
        with pytest.raises(TransientNetworkError):
            await store.fetch(PEOPLE_KEY, fetcher)
        assert fetcher.await_count == 3
        assert isinstance(store.get(PEOPLE_KEY).error, TransientNetworkError)

    @pytest.mark.asyncio
    async def test_validation_error_never_retried(self, store: CacheStore, no_sleep: AsyncMock) -> None:
        fetcher = AsyncMock(side_effect=ValidationError("bad", code="23502"))
        with pytest.raises(ValidationError):
            await store.fetch(PEOPLE_KEY, fetcher)
        assert fetcher.await_count == 1
        no_sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_authorization_refreshes_session_once(self, wall: FakeWallClock, no_sleep: AsyncMock) -> None:
        refresh = AsyncMock(return_value=True)
        store = CacheStore(on_auth_error=refresh, now_ms=wall, sleep=no_sleep)
        fetcher = AsyncMock(side_effect=[AuthorizationError("expired"), ["ok"]])

        assert await store.fetch(PEOPLE_KEY, fetcher) == ["ok"]
        refresh.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_authorization_surfaces_after_one_refresh(self, wall: FakeWallClock, no_sleep: AsyncMock) -> None:
        refresh = AsyncMock(return_value=True)
        store = CacheStore(on_auth_error=refresh, now_ms=wall, sleep=no_sleep)
        fetcher = AsyncMock(side_effect=AuthorizationError("denied"))

        with pytest.raises(AuthorizationError):
            await store.fetch(PEOPLE_KEY, fetcher)
        assert fetcher.await_count == 2
        refresh.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_authorization_without_hook_is_not_retried(self, store: CacheStore) -> None:
        fetcher = AsyncMock(side_effect=AuthorizationError("denied"))
        with pytest.raises(AuthorizationError):
            await store.fetch(PEOPLE_KEY, fetcher)
        assert fetcher.await_count == 1

    @pytest.mark.asyncio
    async def test_silent_entry_serves_last_good_value(self, store: CacheStore) -> None:
        key = QueryKeys.prayer_state(TEST_USER_ID)
        await store.fetch(key, AsyncMock(return_value={"v": 1}), silent=True)

        result = await store.fetch(key, AsyncMock(side_effect=TransientNetworkError("offline")))

        assert result == {"v": 1}
        assert store.get(key).error is None

    @pytest.mark.asyncio
    async def test_silent_entry_without_data_still_raises(self, store: CacheStore) -> None:
        key = QueryKeys.prayer_state(TEST_USER_ID)
        with pytest.raises(TransientNetworkError):
            await store.fetch(key, AsyncMock(side_effect=TransientNetworkError("offline")), silent=True)

    @pytest.mark.asyncio
    async def test_identical_key_fetch_cancels_previous(self, store: CacheStore) -> None:
        gate = asyncio.Event()

        async def slow() -> list[str]:
            await gate.wait()
            return ["stale"]

        first = asyncio.create_task(store.fetch(PEOPLE_KEY, slow))
        await asyncio.sleep(0)

        assert await store.fetch(PEOPLE_KEY, AsyncMock(return_value=["fresh"])) == ["fresh"]
        gate.set()

        assert await first == ["fresh"]
        assert store.get_data(PEOPLE_KEY) == ["fresh"]

    @pytest.mark.asyncio
    async def test_cancel(self, store: CacheStore) -> None:
        gate = asyncio.Event()

        async def slow() -> list[str]:
            await gate.wait()
            return ["late"]

        store.set(PEOPLE_KEY, ["current"])
        task = asyncio.create_task(store.fetch(PEOPLE_KEY, slow))
        await asyncio.sleep(0)

        assert store.cancel(PEOPLE_KEY)
        assert not store.cancel(PEOPLE_KEY)
        gate.set()
        assert await task == ["current"]
        assert store.get_data(PEOPLE_KEY) == ["current"]


# ---------------------------------------------------------------------------
# Eviction
# ---------------------------------------------------------------------------


class TestGarbageCollection:
    def test_time_boxed_evicted_after_horizon(self, store: CacheStore, wall: FakeWallClock) -> None:
        store.set(PEOPLE_KEY, [], TimeBoxed(stale_ms=1000))
        wall.advance(1.9)
        assert store.gc() == 0
        wall.advance(0.2)
        assert store.gc() == 1
        assert store.get(PEOPLE_KEY) is None

    def test_never_stale_retained(self, store: CacheStore, wall: FakeWallClock) -> None:
        store.set(PEOPLE_KEY, [], NeverStale())
        wall.advance(10**7)
        assert store.gc() == 0

    def test_subscribed_entries_retained(self, store: CacheStore, wall: FakeWallClock) -> None:
        store.set(PEOPLE_KEY, [], TimeBoxed(stale_ms=1000))
        sub = store.subscribe(PEOPLE_KEY)
        wall.advance(60)
        assert store.gc() == 0

        sub.dispose()
        wall.advance(1.0)
        assert store.gc() == 0
        wall.advance(1.5)
        assert store.gc() == 1

    def test_prune_orphans(self, store: CacheStore) -> None:
        store.subscribe(PEOPLE_KEY).dispose()
        store.set(QueryKeys.intentions(TEST_USER_ID), [])
        assert store.prune_orphans() == 1
        assert store.get(PEOPLE_KEY) is None
        assert store.get(QueryKeys.intentions(TEST_USER_ID)) is not None


# ---------------------------------------------------------------------------
# Subscriptions and listeners
# ---------------------------------------------------------------------------


class TestSubscription:
    @pytest.mark.asyncio
    async def test_subscribe_missing_entry_fetches(self, store: CacheStore) -> None:
        fetcher = AsyncMock(return_value=["a"])
        async with store.subscribe(PEOPLE_KEY, fetcher) as sub:
            assert sub.status == "pending"
            await store.wait_idle()
            assert sub.value == ["a"]
            assert sub.status == "success"
            assert not sub.is_stale
            assert store.get(PEOPLE_KEY).subscriber_count == 1
        assert sub.disposed
        assert store.get(PEOPLE_KEY).subscriber_count == 0

    @pytest.mark.asyncio
    async def test_fresh_entry_not_refetched(self, store: CacheStore) -> None:
        store.set(PEOPLE_KEY, ["cached"], user_controlled())
        fetcher = AsyncMock(return_value=["network"])
        with store.subscribe(PEOPLE_KEY, fetcher) as sub:
            await store.wait_idle()
            assert sub.value == ["cached"]
        fetcher.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_fallback_until_first_fetch(self, store: CacheStore) -> None:
        gate = asyncio.Event()

        async def fetcher() -> list[str]:
            await gate.wait()
            return ["fetched"]

        with store.subscribe(PEOPLE_KEY, fetcher, fallback=lambda: ["prefetched"]) as sub:
            await asyncio.sleep(0)
            assert sub.value == ["prefetched"]
            assert sub.is_fallback
            assert sub.status == "success"
            gate.set()
            await store.wait_idle()
            assert sub.value == ["fetched"]
            assert not sub.is_fallback

    @pytest.mark.asyncio
    async def test_failed_read_without_fallback_is_error(self, store: CacheStore) -> None:
        fetcher = AsyncMock(side_effect=ValidationError("bad row"))
        with store.subscribe(PEOPLE_KEY, fetcher) as sub:
            await store.wait_idle()
            assert sub.status == "error"
            assert isinstance(sub.error, ValidationError)
            assert sub.value is None

    @pytest.mark.asyncio
    async def test_refetch(self, store: CacheStore) -> None:
        fetcher = AsyncMock(side_effect=[["a"], ["b"]])
        with store.subscribe(PEOPLE_KEY, fetcher) as sub:
            await store.wait_idle()
            assert await sub.refetch() == ["b"]
            assert sub.value == ["b"]

    def test_dispose_is_idempotent(self, store: CacheStore) -> None:
        first = store.subscribe(PEOPLE_KEY)
        second = store.subscribe(PEOPLE_KEY)
        first.dispose()
        first.dispose()
        assert store.get(PEOPLE_KEY).subscriber_count == 1
        second.dispose()

    def test_listeners_receive_events(self, store: CacheStore) -> None:
        listener = MagicMock()
        dispose = store.add_listener(listener)
        store.set(PEOPLE_KEY, [])
        store.invalidate(PEOPLE_KEY, refetch="none")
        store.remove(KeyPattern(PEOPLE_KEY, exact=True))
        dispose()
        store.set(PEOPLE_KEY, [])

        events = [c.args for c in listener.call_args_list]
        assert events == [("set", PEOPLE_KEY), ("invalidate", PEOPLE_KEY), ("remove", PEOPLE_KEY)]

    def test_failing_listener_does_not_break_writes(self, store: CacheStore) -> None:
        store.add_listener(MagicMock(side_effect=RuntimeError("listener bug")))
        store.set(PEOPLE_KEY, ["a"])
        assert store.get_data(PEOPLE_KEY) == ["a"]
