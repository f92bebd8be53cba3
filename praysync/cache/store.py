"""Keyed in-memory cache with freshness policies, retrying fetches and subscriptions.

The store is the only place fetched data lives.  Every write is visible to
the next ``get()`` synchronously; fetches are asyncio tasks tracked per key so
that a newer fetch (or an optimistic mutation) can cancel an older one before
its stale response lands.

Fetch policy:
    TransientNetworkError  → retried ``retry_count`` times, delay min(base·2^n, max);
                             silent entries then serve the last good value.
    AuthorizationError     → the session-refresh hook is called once, then one retry.
    ValidationError        → surfaced immediately.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterator, Literal

from praysync.cache.keys import CacheKey, PatternLike, as_pattern
from praysync.cache.policy import DEFAULT_POLICY, FreshnessPolicy, TimeBoxed
from praysync.errors import AuthorizationError, TransientNetworkError, ValidationError

logger = logging.getLogger("praysync.cache")

Fetcher = Callable[[], Awaitable[Any]]
AuthRefresher = Callable[[], Awaitable[bool]]
Listener = Callable[[str, "CacheKey | None"], Any]
RefetchMode = Literal["active", "all", "none"]


def _wall_ms() -> float:
    return time.time() * 1000.0


@dataclass
class CacheEntry:
    """One cached resource.

    Attributes:
        key:              Unique cache key.
        data:             Last value written (None until first populated).
        fetched_at:       Epoch ms of the last write; None = never populated.
        policy:           Freshness policy governing staleness and eviction.
        subscriber_count: Live subscriptions on this key.
        invalidated:      Explicitly marked stale; cleared by the next write.
        error:            Last fetch error, cleared by the next write.
        fetcher:          Coroutine factory used for background refetches.
        silent:           Serve cached data on transient failures instead of erroring.
        last_released_at: Epoch ms when the last subscriber left.
        created_at:       Epoch ms when the entry was first registered.
    """

    key: CacheKey
    data: Any = None
    fetched_at: float | None = None
    policy: FreshnessPolicy = DEFAULT_POLICY
    subscriber_count: int = 0
    invalidated: bool = False
    error: BaseException | None = None
    fetcher: Fetcher | None = None
    silent: bool = False
    last_released_at: float | None = None
    created_at: float = 0.0

    @property
    def has_data(self) -> bool:
        return self.fetched_at is not None

    def is_stale(self, now_ms: float) -> bool:
        if self.invalidated or self.fetched_at is None:
            return True
        return self.policy.is_expired(self.fetched_at, now_ms)

    def eviction_horizon(self) -> float | None:
        retention = self.policy.retention_ms
        if retention is None:
            return None
        base = self.last_released_at or self.fetched_at or self.created_at
        return base + retention


class CacheStore:
    """Keyed cache of fetched resources for the signed-in user.

    Usage::

        store = CacheStore()
        people = await store.fetch(QueryKeys.people(uid), lambda: repo.list(uid))
        with store.subscribe(key, fetcher, user_controlled()) as sub:
            render(sub.value)
    """

    def __init__(
        self,
        *,
        retry_count: int = 2,
        retry_base_delay_ms: int = 1000,
        retry_max_delay_ms: int = 30_000,
        default_policy: FreshnessPolicy = DEFAULT_POLICY,
        on_auth_error: AuthRefresher | None = None,
        now_ms: Callable[[], float] | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ) -> None:
        self._entries: dict[CacheKey, CacheEntry] = {}
        self._inflight: dict[CacheKey, asyncio.Task[Any]] = {}
        self._background: set[asyncio.Task[Any]] = set()
        self._listeners: dict[int, Listener] = {}
        self._next_listener_id = 0

        self._retry_count = retry_count
        self._retry_base_delay_ms = retry_base_delay_ms
        self._retry_max_delay_ms = retry_max_delay_ms
        self._default_policy = default_policy
        self._on_auth_error = on_auth_error
        self._now_ms = now_ms or _wall_ms
        self._sleep = sleep or asyncio.sleep

    @classmethod
    def from_settings(cls, settings: Any, **kwargs: Any) -> "CacheStore":
        return cls(
            retry_count=settings.retry_count,
            retry_base_delay_ms=settings.retry_base_delay_ms,
            retry_max_delay_ms=settings.retry_max_delay_ms,
            default_policy=TimeBoxed(stale_ms=settings.default_stale_ms, gc_ms=settings.default_gc_ms),
            **kwargs,
        )

    def set_auth_refresher(self, hook: AuthRefresher | None) -> None:
        self._on_auth_error = hook

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get(self, key: CacheKey) -> CacheEntry | None:
        return self._entries.get(tuple(key))

    def get_data(self, key: CacheKey, default: Any = None) -> Any:
        entry = self._entries.get(tuple(key))
        if entry is None or not entry.has_data:
            return default
        return entry.data

    def entries(self) -> list[CacheEntry]:
        return list(self._entries.values())

    def keys(self) -> list[CacheKey]:
        return list(self._entries.keys())

    def find(self, pattern: PatternLike, *, exact: bool = False) -> list[CacheEntry]:
        matcher = as_pattern(pattern, exact)
        return [entry for key, entry in self._entries.items() if matcher.matches(key)]

    def is_fetching(self, key: CacheKey) -> bool:
        task = self._inflight.get(tuple(key))
        return task is not None and not task.done()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, tuple) and key in self._entries

    def __iter__(self) -> Iterator[CacheKey]:
        return iter(list(self._entries))

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def add_listener(self, callback: Listener) -> Callable[[], None]:
        """Register ``callback(event, key)``; returns a disposer."""
        listener_id = self._next_listener_id
        self._next_listener_id += 1
        self._listeners[listener_id] = callback

        def dispose() -> None:
            self._listeners.pop(listener_id, None)

        return dispose

    def _notify(self, event: str, key: CacheKey | None) -> None:
        for callback in list(self._listeners.values()):
            try:
                callback(event, key)
            except Exception:
                logger.exception("Cache listener failed on %s %s", event, key)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _ensure_entry(
        self,
        key: CacheKey,
        policy: FreshnessPolicy | None = None,
        fetcher: Fetcher | None = None,
        silent: bool | None = None,
    ) -> CacheEntry:
        entry = self._entries.get(key)
        if entry is None:
            entry = CacheEntry(
                key=key,
                policy=policy or self._default_policy,
                created_at=self._now_ms(),
            )
            self._entries[key] = entry
        elif policy is not None:
            entry.policy = policy
        if fetcher is not None:
            entry.fetcher = fetcher
        if silent is not None:
            entry.silent = silent
        return entry

    def set(self, key: CacheKey, data: Any, policy: FreshnessPolicy | None = None) -> CacheEntry:
        """Create or replace the value for ``key``; readable immediately."""
        key = tuple(key)
        entry = self._ensure_entry(key, policy)
        entry.data = data
        entry.fetched_at = self._now_ms()
        entry.invalidated = False
        entry.error = None
        self._notify("set", key)
        return entry

    def update(self, key: CacheKey, updater: Callable[[Any], Any]) -> CacheEntry | None:
        """Functional write: ``updater(current)``; returning ``current`` is a no-op."""
        key = tuple(key)
        current = self.get_data(key)
        new = updater(current)
        if new is current:
            return self._entries.get(key)
        return self.set(key, new)

    def hydrate(
        self,
        key: CacheKey,
        data: Any,
        *,
        fetched_at: float,
        policy: FreshnessPolicy | None = None,
    ) -> bool:
        """Load a persisted value without clobbering anything fetched this session."""
        key = tuple(key)
        existing = self._entries.get(key)
        if existing is not None and existing.has_data:
            return False
        entry = self._ensure_entry(key, policy)
        entry.data = data
        entry.fetched_at = fetched_at
        return True

    def invalidate(
        self,
        pattern: PatternLike,
        *,
        exact: bool = False,
        refetch: RefetchMode = "active",
    ) -> list[CacheKey]:
        """Mark matching entries stale.

        Args:
            pattern: Key prefix (or KeyPattern) to match.
            exact:   Match the key exactly instead of by prefix.
            refetch: ``"active"`` refetches entries with subscribers in the
                     background, ``"all"`` refetches every match with a
                     fetcher, ``"none"`` defers to the next read.

        Returns:
            Keys that were marked stale.
        """
        matched = self.find(pattern, exact=exact)
        for entry in matched:
            entry.invalidated = True
            self._notify("invalidate", entry.key)
            should_refetch = refetch == "all" or (refetch == "active" and entry.subscriber_count > 0)
            if should_refetch and entry.fetcher is not None:
                self._spawn_background_fetch(entry.key)
        if matched:
            logger.debug("Invalidated %d entries matching %s", len(matched), pattern)
        return [entry.key for entry in matched]

    def remove(self, pattern: PatternLike, *, exact: bool = False) -> int:
        """Hard-evict matching entries, cancelling their in-flight fetches."""
        matched = self.find(pattern, exact=exact)
        for entry in matched:
            self.cancel(entry.key)
            self._entries.pop(entry.key, None)
            self._notify("remove", entry.key)
        return len(matched)

    def gc(self) -> int:
        """Evict unsubscribed entries past their retention horizon."""
        now = self._now_ms()
        evicted = 0
        for key, entry in list(self._entries.items()):
            if entry.subscriber_count > 0 or self.is_fetching(key):
                continue
            horizon = entry.eviction_horizon()
            if horizon is not None and now >= horizon:
                del self._entries[key]
                self._notify("remove", key)
                evicted += 1
        if evicted:
            logger.debug("Cache gc evicted %d entries", evicted)
        return evicted

    def prune_orphans(self) -> int:
        """Drop entries that hold neither data nor a fetcher (failed hydration leftovers)."""
        orphans = [
            key
            for key, entry in self._entries.items()
            if not entry.has_data and entry.fetcher is None and entry.subscriber_count == 0
        ]
        for key in orphans:
            del self._entries[key]
        if orphans:
            logger.info("Pruned %d orphaned cache entries", len(orphans))
        return len(orphans)

    def clear(self) -> None:
        """Drop every entry and cancel every fetch.  Used on sign-out."""
        for task in list(self._inflight.values()):
            task.cancel()
        for task in list(self._background):
            task.cancel()
        self._inflight.clear()
        self._background.clear()
        count = len(self._entries)
        self._entries.clear()
        self._notify("clear", None)
        logger.info("Cache cleared (%d entries)", count)

    # ------------------------------------------------------------------
    # Fetching
    # ------------------------------------------------------------------

    def cancel(self, key: CacheKey) -> bool:
        """Cancel the in-flight fetch for ``key``.  Returns True if one was running."""
        task = self._inflight.pop(tuple(key), None)
        if task is None or task.done():
            return False
        task.cancel()
        logger.debug("Cancelled in-flight fetch for %s", key)
        return True

    async def fetch(
        self,
        key: CacheKey,
        fetcher: Fetcher | None = None,
        policy: FreshnessPolicy | None = None,
        *,
        silent: bool | None = None,
    ) -> Any:
        """Fetch ``key`` now, replacing any in-flight fetch for the same key.

        Args:
            key:     Cache key to populate.
            fetcher: Coroutine factory; defaults to the one registered on the entry.
            policy:  Freshness policy to record on the entry.
            silent:  Serve the cached value on transient failure.

        Returns:
            The fetched (or silently served) value.

        Raises:
            LookupError: No fetcher is known for the key.
            PraySyncError: The fetch failed and no fallback applies.
        """
        key = tuple(key)
        existing = self._entries.get(key)
        if fetcher is None and (existing is None or existing.fetcher is None):
            raise LookupError(f"No fetcher registered for {key}")
        entry = self._ensure_entry(key, policy, fetcher, silent)
        run_fetcher = entry.fetcher
        assert run_fetcher is not None

        self.cancel(key)
        task = asyncio.ensure_future(self._run_fetch(key, run_fetcher))
        self._inflight[key] = task
        try:
            while True:
                try:
                    return await task
                except asyncio.CancelledError:
                    current = asyncio.current_task()
                    if current is not None and current.cancelling():
                        raise
                    # Superseded by a newer fetch of the same key, or the key was removed.
                    newer = self._inflight.get(key)
                    if newer is None or newer is task:
                        return self.get_data(key)
                    task = newer
        finally:
            if self._inflight.get(key) is task and task.done():
                del self._inflight[key]

    def _backoff_delay_ms(self, attempt: int) -> float:
        return min(self._retry_base_delay_ms * (2**attempt), self._retry_max_delay_ms)

    async def _run_fetch(self, key: CacheKey, fetcher: Fetcher) -> Any:
        attempt = 0
        auth_retried = False
        while True:
            try:
                data = await fetcher()
            except AuthorizationError as exc:
                if not auth_retried and self._on_auth_error is not None:
                    auth_retried = True
                    logger.info("Authorization failed for %s, refreshing session", key)
                    try:
                        refreshed = await self._on_auth_error()
                    except Exception:
                        logger.exception("Session refresh failed")
                        refreshed = False
                    if refreshed:
                        continue
                self._record_error(key, exc)
                raise
            except ValidationError as exc:
                self._record_error(key, exc)
                raise
            except TransientNetworkError as exc:
                if attempt < self._retry_count:
                    delay_ms = self._backoff_delay_ms(attempt)
                    attempt += 1
                    logger.debug(
                        "Fetch %s failed (%s), retry %d/%d in %dms",
                        key, exc, attempt, self._retry_count, delay_ms,
                    )
                    await self._sleep(delay_ms / 1000.0)
                    continue
                entry = self._entries.get(key)
                if entry is not None and entry.silent and entry.has_data:
                    logger.info("Fetch %s failed, serving cached value: %s", key, exc)
                    return entry.data
                self._record_error(key, exc)
                raise
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("Unexpected fetch failure for %s", key)
                self._record_error(key, exc)
                raise
            else:
                if key in self._entries:
                    self.set(key, data)
                return data

    def _record_error(self, key: CacheKey, exc: BaseException) -> None:
        entry = self._entries.get(key)
        if entry is None:
            return
        entry.error = exc
        self._notify("error", key)

    def _spawn_background_fetch(self, key: CacheKey) -> None:
        if self.is_fetching(key):
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop; refetch of %s deferred to next read", key)
            return
        task = loop.create_task(self._background_fetch(key))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _background_fetch(self, key: CacheKey) -> None:
        try:
            await self.fetch(key)
        except LookupError:
            logger.debug("Background refetch of %s skipped: entry gone", key)
        except Exception as exc:
            # recorded on the entry; subscribers read it from there
            logger.warning("Background refetch of %s failed: %s", key, exc)

    async def wait_idle(self) -> None:
        """Wait for all background refetches to settle."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(
        self,
        key: CacheKey,
        fetcher: Fetcher | None = None,
        policy: FreshnessPolicy | None = None,
        *,
        silent: bool = False,
        fallback: Callable[[], Any] | None = None,
    ) -> "Subscription":
        """Open a live view on ``key``; a missing or stale entry is fetched in the background."""
        key = tuple(key)
        entry = self._ensure_entry(key, policy, fetcher, silent)
        entry.subscriber_count += 1
        if entry.is_stale(self._now_ms()) and entry.fetcher is not None:
            self._spawn_background_fetch(key)
        return Subscription(self, key, fallback)

    def _release(self, key: CacheKey) -> None:
        entry = self._entries.get(key)
        if entry is None:
            return
        entry.subscriber_count = max(0, entry.subscriber_count - 1)
        if entry.subscriber_count == 0:
            entry.last_released_at = self._now_ms()


class Subscription:
    """Live read handle on one cache key.

    Use as a context manager (``with`` / ``async with``) or call ``dispose()``.
    """

    def __init__(self, store: CacheStore, key: CacheKey, fallback: Callable[[], Any] | None = None) -> None:
        self._store = store
        self.key = key
        self._fallback = fallback
        self._disposed = False

    @property
    def entry(self) -> CacheEntry | None:
        return self._store.get(self.key)

    @property
    def is_fallback(self) -> bool:
        """True while the value comes from the fallback instead of a fetch."""
        entry = self.entry
        return (entry is None or not entry.has_data) and self._fallback is not None

    @property
    def value(self) -> Any:
        entry = self.entry
        if entry is not None and entry.has_data:
            return entry.data
        if self._fallback is not None:
            return self._fallback()
        return None

    @property
    def is_stale(self) -> bool:
        entry = self.entry
        return entry is None or entry.is_stale(self._store._now_ms())

    @property
    def error(self) -> BaseException | None:
        entry = self.entry
        return entry.error if entry is not None else None

    @property
    def status(self) -> str:
        entry = self.entry
        if entry is not None and entry.has_data:
            return "success"
        if self.value is not None:
            return "success"
        if entry is not None and entry.error is not None:
            return "error"
        return "pending"

    @property
    def disposed(self) -> bool:
        return self._disposed

    async def refetch(self) -> Any:
        return await self._store.fetch(self.key)

    def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        self._store._release(self.key)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.dispose()

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.dispose()

    def __repr__(self) -> str:
        return f"Subscription(key={self.key!r}, status={self.status!r})"
