"""Catalog of the queries consumers subscribe to.

A QuerySpec bundles everything the cache needs to serve one resource: the
key, the repository call that fills it, its freshness policy, whether
transient failures are served silently from the last good value, and the
prefetch slot used as a cold-start fallback.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from praysync.cache.keys import CacheKey, QueryKeys
from praysync.cache.policy import DEFAULT_POLICY, FreshnessPolicy
from praysync.clock import ClockService
from praysync.repositories import IntentionsRepository, PeopleRepository, PrayersRepository
from praysync.sync.policy_loader import SyncPolicy


@dataclass(frozen=True)
class QuerySpec:
    """Everything needed to subscribe to one resource.

    Attributes:
        name:     Catalog name ('people', 'prayer_state', ...).
        key:      Cache key the data lives under.
        fetcher:  Coroutine factory returning fresh data.
        policy:   Freshness policy recorded on the entry.
        silent:   Serve the last good value on transient failure.
        prefetch: PrefetchRegistry resource slot used before the first fetch.
    """

    name: str
    key: CacheKey
    fetcher: Callable[[], Awaitable[Any]]
    policy: FreshnessPolicy
    silent: bool = False
    prefetch: str | None = None


class Queries:
    """Build QuerySpecs against the session's repositories and policy."""

    def __init__(
        self,
        *,
        people: PeopleRepository,
        intentions: IntentionsRepository,
        prayers: PrayersRepository,
        policy: SyncPolicy,
        clock: ClockService,
    ) -> None:
        self._people = people
        self._intentions = intentions
        self._prayers = prayers
        self._policy = policy
        self._clock = clock

    def _freshness(self, name: str) -> FreshnessPolicy:
        return self._policy.freshness_for(name, DEFAULT_POLICY)

    def todays_prayers(self, user_id: str, day_key: str | None = None) -> QuerySpec:
        """Today's morning/evening prayers, keyed by the current prayer day."""
        day = day_key or self._clock.get_prayer_day_start()
        return QuerySpec(
            name="todays_prayers",
            key=QueryKeys.prayers_today(user_id, day),
            fetcher=lambda: self._prayers.get_todays_prayers(user_id),
            policy=self._freshness("todays_prayers"),
            prefetch=f"todays_prayers:{day}",
        )

    def prayer_state(self, user_id: str) -> QuerySpec:
        # polled around period changes; a failed poll keeps the last state on screen
        return QuerySpec(
            name="prayer_state",
            key=QueryKeys.prayer_state(user_id),
            fetcher=lambda: self._prayers.get_prayer_state(user_id),
            policy=self._freshness("prayer_state"),
            silent=True,
            prefetch="prayer_state",
        )

    def people(self, user_id: str, active_only: bool = True) -> QuerySpec:
        return QuerySpec(
            name="people",
            key=QueryKeys.people(user_id, active_only),
            fetcher=lambda: self._people.list_people(user_id, active_only=active_only),
            policy=self._freshness("people"),
            prefetch="active_people" if active_only else "people",
        )

    def intentions(self, user_id: str) -> QuerySpec:
        return QuerySpec(
            name="intentions",
            key=QueryKeys.intentions(user_id),
            fetcher=lambda: self._intentions.list_intentions(user_id),
            policy=self._freshness("intentions"),
            prefetch="intentions",
        )

    def active_intentions(self, user_id: str) -> QuerySpec:
        return QuerySpec(
            name="active_intentions",
            key=QueryKeys.active_intentions(user_id),
            fetcher=lambda: self._intentions.list_active(user_id),
            policy=self._freshness("intentions"),
            prefetch="active_intentions",
        )

    def intentions_by_person(self, user_id: str, person_id: str | None) -> QuerySpec:
        return QuerySpec(
            name="intentions_by_person",
            key=QueryKeys.intentions_by_person(user_id, person_id),
            fetcher=lambda: self._intentions.list_by_person(user_id, person_id),
            policy=self._freshness("intentions"),
        )

    def user_stats(self, user_id: str) -> QuerySpec:
        return QuerySpec(
            name="user_stats",
            key=QueryKeys.user_stats(user_id),
            fetcher=lambda: self._prayers.get_user_stats(user_id),
            policy=self._freshness("user_stats"),
            prefetch="user_stats",
        )

    def critical(self, user_id: str) -> list[QuerySpec]:
        """Queries warmed before the home screen renders."""
        return [
            self.prayer_state(user_id),
            self.todays_prayers(user_id),
            self.people(user_id, active_only=True),
            self.user_stats(user_id),
        ]
