"""Composition root for one signed-in session.

SyncSession wires the clock, cache, prefetch registry, mutation coordinator,
refresh scheduler and realtime patcher together and exposes the consumer API:

    async with SyncSession.for_user(uid, access_token=jwt) as session:
        await session.warm_up()
        with session.subscribe(session.queries.people(uid)) as people:
            render(people.value)
        result = await session.mutate("intentions.toggle_active", {"id": iid})

There is no module-level cache: every consumer receives the session it works
against, and ``sign_out()`` wipes everything the session holds before a new
user can sign in.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import Any, Awaitable, Callable, Mapping

import httpx

from praysync.cache.persistence import CachePersister
from praysync.cache.prefetch import ImageLoader, PrefetchRegistry
from praysync.cache.store import CacheStore, Subscription
from praysync.clock import ClockService
from praysync.config import Settings, get_settings
from praysync.errors import PraySyncError
from praysync.logging_config import configure_logging
from praysync.models.prayers import PrayerState
from praysync.mutation_types import MutationContext, get_mutation_spec
from praysync.queries import Queries, QuerySpec
from praysync.repositories import IntentionsRepository, PeopleRepository, PrayersRepository
from praysync.sync.mutations import MutationCoordinator, MutationResult
from praysync.sync.policy_loader import SyncPolicy, get_sync_policy
from praysync.sync.realtime import PatchStrategy, RealtimeChannel, RealtimePatcher
from praysync.sync.scheduler import APP_BACKGROUND_STATES, RefreshOutcome, RefreshScheduler

logger = logging.getLogger("praysync.session")

AuthRefresher = Callable[[], Awaitable[bool]]


class SyncSession:
    """Everything one signed-in user's client state needs, with an explicit lifecycle."""

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        policy: SyncPolicy | None = None,
        clock: ClockService | None = None,
        store: CacheStore | None = None,
        prefetch: PrefetchRegistry | None = None,
        persister: CachePersister | None = None,
        people: PeopleRepository | None = None,
        intentions: IntentionsRepository | None = None,
        prayers: PrayersRepository | None = None,
        http_client: httpx.AsyncClient | None = None,
        realtime: RealtimeChannel | None = None,
        auth_refresher: AuthRefresher | None = None,
        image_loader: ImageLoader | None = None,
        persist: bool = True,
        monotonic: Callable[[], float] | None = None,
        setup_logging: bool = False,
    ) -> None:
        """Initialize the session components (nothing starts until ``init``).

        Args:
            settings:       Runtime settings; defaults to ``get_settings()``.
            policy:         Refresh policy; defaults to the bundled sync policy.
            clock:          Logical clock; built from settings when omitted.
            store:          Cache; built from settings when omitted.
            prefetch:       Cold-start registry.
            persister:      Snapshot writer; one file per user is used when omitted.
            people:         Repositories; built over ``http_client`` when omitted.
            intentions:
            prayers:
            http_client:    Shared httpx client for the default repositories.
            realtime:       Push channel to subscribe once a user is set.
            auth_refresher: Coroutine refreshing the session token; True on success.
            image_loader:   Coroutine warming one avatar URL during ``warm_up``.
            persist:        Restore and write the on-disk snapshot.
            monotonic:      Injectable monotonic seconds for the scheduler (tests).
            setup_logging:  Configure process logging from ``settings.log_level``.
        """
        self.settings = settings or get_settings()
        if setup_logging:
            configure_logging(self.settings.log_level)
        self.policy = policy or get_sync_policy()

        self.clock = clock or ClockService(
            default_timezone=self.settings.default_timezone,
            resync_epsilon_ms=self.settings.resync_epsilon_ms,
            tick_seconds=self.settings.minute_tick_seconds,
            morning_start_hour=self.policy.day.morning_start_hour,
            evening_start_hour=self.policy.day.evening_start_hour,
        )
        self.store = store or CacheStore.from_settings(self.settings)
        self.prefetch = prefetch or PrefetchRegistry()
        self.coordinator = MutationCoordinator(self.store, now_ms=self.clock.now)
        self.scheduler = RefreshScheduler(self.clock, self.store, policy=self.policy, monotonic=monotonic)
        self.patcher = RealtimePatcher(self.store, current_day=self.clock.get_prayer_day_start)

        repo_kwargs = {
            "base_url": self.settings.supabase_url,
            "anon_key": self.settings.supabase_anon_key,
            "http_client": http_client,
        }
        self.people = people or PeopleRepository(**repo_kwargs)
        self.intentions = intentions or IntentionsRepository(**repo_kwargs)
        self.prayers = prayers or PrayersRepository(**repo_kwargs)
        self.queries = Queries(
            people=self.people,
            intentions=self.intentions,
            prayers=self.prayers,
            policy=self.policy,
            clock=self.clock,
        )

        self._persister = persister
        self._per_user_persister = persister is None
        self._persist_enabled = persist
        self._realtime = realtime
        self._image_loader = image_loader
        self._auth_refresher = auth_refresher
        self.store.set_auth_refresher(self._refresh_auth if auth_refresher else None)

        self._user_id: str | None = None
        self._pending_user: tuple[str, str | None] | None = None
        self._initialized = False
        self._disposers: list[Callable[[], None]] = []
        self._tasks: set[asyncio.Task[Any]] = set()

    @classmethod
    def for_user(cls, user_id: str, access_token: str | None = None, **kwargs: Any) -> "SyncSession":
        """Build a session that ``async with`` initializes for ``user_id``."""
        session = cls(**kwargs)
        session._pending_user = (user_id, access_token)
        return session

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def user_id(self) -> str | None:
        return self._user_id

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def persister(self) -> CachePersister | None:
        return self._persister

    async def init(self, user_id: str, access_token: str | None = None) -> None:
        """Start the session for ``user_id``.

        Restores the persisted snapshot, starts the refresh scheduler and the
        realtime subscription.  Calling it again for another user signs the
        previous user out first.
        """
        if self._initialized and user_id == self._user_id:
            return
        if self._initialized:
            await self.sign_out()

        self._user_id = user_id
        self._set_access_token(access_token)
        if self._persist_enabled and self._per_user_persister:
            self._persister = CachePersister(
                self.settings.storage_dir,
                f"{self.settings.storage_key}_{user_id}",
                self.settings.persist_version,
            )
        if self._persist_enabled and self._persister is not None:
            restored = await self._persister.restore(self.store)
            self.store.prune_orphans()
            logger.debug("Session for %s restored %d cached entries", user_id, restored)

        self.scheduler.set_user(user_id)
        self.patcher.set_user(user_id)
        self.scheduler.start()
        self._disposers.append(self.scheduler.add_day_change_listener(self._on_day_change))
        self._disposers.append(self.clock.on_minute_tick(self._collect_garbage))
        if self._realtime is not None:
            self._disposers.append(self._realtime.subscribe(user_id, self.handle_realtime))

        self._initialized = True
        logger.info(
            "Sync session started for %s (%s v%s [%s])",
            user_id,
            self.settings.app_name,
            self.settings.app_version,
            self.settings.environment,
        )

    async def dispose(self) -> None:
        """Stop background work and write the snapshot.  Cached data is kept on disk."""
        if not self._initialized:
            return
        try:
            self._stop_background()
            await self.persist()
        finally:
            self._initialized = False
        logger.info("Sync session for %s disposed", self._user_id)

    async def __aenter__(self) -> "SyncSession":
        if self._pending_user is not None:
            await self.init(*self._pending_user)
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.dispose()

    def _stop_background(self) -> None:
        for dispose in self._disposers:
            dispose()
        self._disposers.clear()
        self.scheduler.stop()
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()

    async def sign_out(self) -> None:
        """Wipe every trace of the user: cache, prefetch slots, pending mutations and the snapshot."""
        user_id = self._user_id
        self._stop_background()
        self.coordinator.clear()
        self.store.clear()
        self.prefetch.clear()
        self.scheduler.set_user(None)
        self.patcher.set_user(None)
        self._set_access_token(None)
        if self._persister is not None:
            await self._persister.remove()
            if self._per_user_persister:
                self._persister = None
        self._user_id = None
        self._initialized = False
        logger.info("Signed out %s; session state cleared", user_id)

    def _set_access_token(self, token: str | None) -> None:
        for repo in (self.people, self.intentions, self.prayers):
            repo.set_access_token(token)

    async def _refresh_auth(self) -> bool:
        assert self._auth_refresher is not None
        return await self._auth_refresher()

    def _require_user(self) -> str:
        if self._user_id is None:
            raise PraySyncError("No signed-in user; call init() first")
        return self._user_id

    def _spawn(self, coro: Awaitable[Any], name: str) -> asyncio.Task[Any] | None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop; %s skipped", name)
            return None
        task = loop.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _bind(self, spec: QuerySpec) -> QuerySpec:
        """Attach session side effects to a query's fetcher."""
        if spec.name != "prayer_state":
            return spec
        fetch_state = spec.fetcher

        async def fetch_and_sync_clock() -> Any:
            state = await fetch_state()
            self.apply_server_clock(state)
            return state

        return replace(spec, fetcher=fetch_and_sync_clock)

    def subscribe(self, spec: QuerySpec) -> Subscription:
        """Open a live view on a catalog query, falling back to prefetched data until the first fetch."""
        spec = self._bind(spec)
        user_id = self._user_id
        fallback = None
        if spec.prefetch is not None:
            slot = spec.prefetch
            fallback = lambda: self.prefetch.get(user_id, slot)  # noqa: E731
        return self.store.subscribe(spec.key, spec.fetcher, spec.policy, silent=spec.silent, fallback=fallback)

    async def fetch(self, spec: QuerySpec) -> Any:
        spec = self._bind(spec)
        return await self.store.fetch(spec.key, spec.fetcher, spec.policy, silent=spec.silent)

    async def warm_up(self) -> dict[str, bool]:
        """Fetch the critical home-screen queries into the prefetch registry.

        Failures are logged and reported per query; they never raise.  Avatar
        images of the fetched people are warmed in the background when an
        image loader is configured.

        Returns:
            Query name → whether the fetch succeeded.
        """
        user_id = self._require_user()
        specs = [self._bind(spec) for spec in self.queries.critical(user_id)]
        results = await asyncio.gather(*(spec.fetcher() for spec in specs), return_exceptions=True)

        report: dict[str, bool] = {}
        for spec, result in zip(specs, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.warning("Prefetch of %s failed: %s", spec.name, result)
                report[spec.name] = False
                continue
            if spec.prefetch is not None:
                self.prefetch.put(user_id, spec.prefetch, result)
            report[spec.name] = True
            if spec.prefetch == "active_people" and self._image_loader is not None:
                self.prefetch.prefetch_images((getattr(p, "image_uri", None) for p in result), self._image_loader)
        logger.info("Warm-up for %s: %s", user_id, report)
        return report

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def mutate(self, mutation_type: str, payload: Mapping[str, Any] | None = None) -> MutationResult:
        """Run a registered mutation optimistically.

        Raises:
            UnknownMutationError: ``mutation_type`` is not registered.
            ValidationError:      The payload is invalid; nothing was written.
        """
        spec = get_mutation_spec(mutation_type)
        context = MutationContext(
            user_id=self._require_user(),
            clock=self.clock,
            people=self.people,
            intentions=self.intentions,
            prayers=self.prayers,
        )
        plan = spec.build(context, payload or {})
        return await self.coordinator.run(
            plan.target_key,
            plan.optimistic,
            plan.server_call,
            mutation_type=mutation_type,
            reconcile=plan.reconcile,
            dependent_keys=plan.dependent_keys,
        )

    def handle_realtime(self, payload: Mapping[str, Any]) -> PatchStrategy:
        return self.patcher.handle_payload(payload)

    # ------------------------------------------------------------------
    # Time and refresh
    # ------------------------------------------------------------------

    def apply_server_clock(self, state: PrayerState) -> bool:
        """Re-anchor the clock from a prayer-state response.

        Returns:
            True if the anchor (or canonical timezone) moved.
        """
        moved = False
        if state.server_now_epoch_ms is not None:
            anchor = self.clock.anchor_at(state.server_now_epoch_ms, state.user_timezone)
            if self.clock.initialized:
                moved = self.clock.resync(anchor)
            else:
                self.clock.init(anchor)
                moved = True
        elif state.user_timezone and state.user_timezone != self.clock.canonical_timezone:
            self.clock.set_canonical_timezone(state.user_timezone)
            moved = True
        if moved:
            self.scheduler.on_clock_resync()
        return moved

    def refresh(self, reason: str = "manual") -> RefreshOutcome | None:
        return self.scheduler.refresh_now(reason)

    def on_app_state_change(self, state: str) -> RefreshOutcome | None:
        """Forward lifecycle changes; going to the background also writes the snapshot."""
        outcome = self.scheduler.on_app_state_change(state)
        if state in APP_BACKGROUND_STATES and self._initialized:
            self._spawn(self.persist(), "praysync-persist")
        return outcome

    def _on_day_change(self, new_day: str, previous_day: str) -> None:
        user_id = self._user_id
        if user_id is None:
            return
        logger.info("Prayer day rolled over %s → %s", previous_day, new_day)
        self.prefetch.discard(user_id, self.queries.todays_prayers(user_id, previous_day).prefetch)
        self._spawn(self._fetch_quietly(self.queries.todays_prayers(user_id, new_day)), "praysync-new-day")

    async def _fetch_quietly(self, spec: QuerySpec) -> None:
        try:
            await self.fetch(spec)
        except PraySyncError as exc:
            logger.warning("Fetch of %s for the new day failed: %s", spec.name, exc)

    def _collect_garbage(self) -> None:
        evicted = self.store.gc()
        if evicted:
            logger.debug("Evicted %d expired cache entries", evicted)

    async def persist(self) -> bool:
        if not self._persist_enabled or self._persister is None or self._user_id is None:
            return False
        return await self._persister.persist(self.store)
