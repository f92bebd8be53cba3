"""Trigger-driven refresh scheduling for day-scoped cache entries.

Decides *when* cached data must be refetched because time moved on:

1. Minute ticks detect a period change (morning → evening) or a prayer-day
   rollover and schedule a debounced refresh.
2. Returning to the foreground re-evaluates the day and, after a long enough
   absence, invalidates the critical home-screen resources.
3. A clock resync re-evaluates the day immediately.
4. A manual pull refreshes immediately.

Throttle and debounce:
    Non-priority triggers force at most one refresh per resource per
    ``throttle_interval_s`` (600 s).  Day-boundary and manual triggers are
    high priority and always run.  Only one refresh is ever scheduled: a new
    trigger cancels and replaces it, inheriting the high-priority flag and
    the oldest previous day key so a rollover is never lost.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field, replace
from typing import Callable, Union

from praysync.cache.keys import CacheKey, QueryKeys
from praysync.cache.store import CacheStore
from praysync.clock import ClockService
from praysync.models.prayers import Period
from praysync.sync.policy_loader import SyncPolicy, get_sync_policy

logger = logging.getLogger("praysync.sync.scheduler")

TimezoneSource = Union[str, Callable[[], "str | None"], None]

APP_ACTIVE = "active"
APP_BACKGROUND_STATES = frozenset({"background", "inactive"})


def resource_key(resource: str, user_id: str, day_key: str | None = None) -> CacheKey:
    """Map a policy resource name onto the cache key it refreshes."""
    if resource == "prayers_today":
        return QueryKeys.prayers_today(user_id, day_key)
    if resource == "prayer_state":
        return QueryKeys.prayer_state(user_id)
    if resource == "home_data":
        return QueryKeys.home_data(user_id)
    if resource == "active_people":
        return QueryKeys.people(user_id, active_only=True)
    if resource == "people":
        return QueryKeys.people(user_id)
    if resource == "intentions":
        return QueryKeys.intentions(user_id)
    if resource == "user_stats":
        return QueryKeys.user_stats(user_id)
    raise KeyError(f"Unknown refresh resource '{resource}'")


@dataclass
class RefreshTrigger:
    """Why a refresh was requested.

    Attributes:
        reason:           'day_boundary', 'period_change', 'foreground', 'manual', ...
        high_priority:    Bypasses the throttle.
        previous_day_key: Day key whose today-entry should be dropped, if it differs.
        extra_resources:  Resources refreshed in addition to the tracked ones.
        requested_at:     Monotonic seconds when the trigger was raised.
    """

    reason: str
    high_priority: bool = False
    previous_day_key: str | None = None
    extra_resources: tuple[str, ...] = ()
    requested_at: float = 0.0

    def superseding(self, earlier: "RefreshTrigger") -> "RefreshTrigger":
        """Return this trigger merged over an earlier, cancelled one."""
        high = self.high_priority or earlier.high_priority
        reason = self.reason
        if earlier.high_priority and not self.high_priority:
            reason = earlier.reason
        extras = tuple(dict.fromkeys(earlier.extra_resources + self.extra_resources))
        return replace(
            self,
            reason=reason,
            high_priority=high,
            previous_day_key=earlier.previous_day_key or self.previous_day_key,
            extra_resources=extras,
        )


@dataclass
class RefreshOutcome:
    """Result of one refresh pass.

    Attributes:
        reason:           Trigger reason.
        day_key:          Prayer day the refresh was computed for.
        removed_keys:     Keys evicted for the previous day.
        invalidated_keys: Keys marked stale (and refetched if observed).
        throttled:        Resources skipped because of the throttle window.
        high_priority:    Whether the throttle was bypassed.
    """

    reason: str
    day_key: str
    removed_keys: list[CacheKey] = field(default_factory=list)
    invalidated_keys: list[CacheKey] = field(default_factory=list)
    throttled: list[str] = field(default_factory=list)
    high_priority: bool = False

    @property
    def skipped(self) -> bool:
        return not self.invalidated_keys and not self.removed_keys


class RefreshScheduler:
    """Schedule debounced, throttled refreshes of day-scoped cache entries.

    Usage::

        scheduler = RefreshScheduler(clock, store, user_id=uid)
        scheduler.start()                      # subscribes to minute ticks
        scheduler.on_app_state_change("active")
        scheduler.refresh_now("pull-to-refresh")
        scheduler.stop()
    """

    def __init__(
        self,
        clock: ClockService,
        store: CacheStore,
        *,
        user_id: str | None = None,
        policy: SyncPolicy | None = None,
        timezone: TimezoneSource = None,
        monotonic: Callable[[], float] | None = None,
        history_size: int = 50,
    ) -> None:
        """Initialize the scheduler.

        Args:
            clock:        Source of prayer day / period.
            store:        Cache whose entries are removed and invalidated.
            user_id:      Signed-in user; nothing is refreshed without one.
            policy:       Refresh policy; defaults to the global sync policy.
            timezone:     Fixed timezone or a callable returning the current one.
                          Defaults to the clock's canonical timezone.
            monotonic:    Injectable monotonic clock in seconds (tests).
            history_size: Number of RefreshOutcome records kept for diagnostics.
        """
        self._clock = clock
        self._store = store
        self._user_id = user_id
        self._policy = policy or get_sync_policy()
        self._timezone = timezone
        self._monotonic = monotonic or time.monotonic

        self._day_key: str | None = None
        self._period: Period | None = None
        self._last_forced: dict[str, float] = {}

        self._pending_handle: asyncio.TimerHandle | None = None
        self._pending_trigger: RefreshTrigger | None = None

        self._app_state = APP_ACTIVE
        self._backgrounded_at: float | None = None
        self._last_foreground_refresh: float | None = None

        self._dispose_tick: Callable[[], None] | None = None
        self._day_listeners: list[Callable[[str, str], None]] = []
        self.history: deque[RefreshOutcome] = deque(maxlen=history_size)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def user_id(self) -> str | None:
        return self._user_id

    @property
    def day_key(self) -> str | None:
        return self._day_key

    @property
    def period(self) -> Period | None:
        return self._period

    @property
    def pending_trigger(self) -> RefreshTrigger | None:
        return self._pending_trigger

    @property
    def running(self) -> bool:
        return self._dispose_tick is not None

    def _tz(self) -> str:
        tz = self._timezone() if callable(self._timezone) else self._timezone
        return tz or self._clock.canonical_timezone

    def _observe(self) -> tuple[str, Period]:
        tz = self._tz()
        return self._clock.get_prayer_day_start(tz), self._clock.get_current_period(tz)

    def set_user(self, user_id: str | None) -> None:
        """Switch the signed-in user; pending work for the old user is dropped."""
        self.cancel_pending()
        self._user_id = user_id
        self._last_forced.clear()
        self._last_foreground_refresh = None
        if user_id is not None:
            self._day_key, self._period = self._observe()
        else:
            self._day_key = self._period = None

    def add_day_change_listener(self, callback: Callable[[str, str], None]) -> Callable[[], None]:
        """Call ``callback(new_day_key, previous_day_key)`` after each rollover refresh."""
        self._day_listeners.append(callback)

        def dispose() -> None:
            if callback in self._day_listeners:
                self._day_listeners.remove(callback)

        return dispose

    def start(self) -> None:
        if self.running:
            return
        self._day_key, self._period = self._observe()
        self._dispose_tick = self._clock.on_minute_tick(self.on_minute_tick)
        logger.debug("Refresh scheduler started (day=%s, period=%s)", self._day_key, self._period)

    def stop(self) -> None:
        self.cancel_pending()
        if self._dispose_tick is not None:
            self._dispose_tick()
            self._dispose_tick = None

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------

    def on_minute_tick(self) -> None:
        """Detect period / day transitions and schedule a debounced refresh."""
        if self._user_id is None:
            return
        day_key, period = self._observe()
        previous_day, previous_period = self._day_key, self._period
        self._day_key, self._period = day_key, period
        if previous_day is None:
            return

        boundary_changed = day_key != previous_day
        period_changed = period != previous_period
        if not (boundary_changed or period_changed):
            return

        refresh = self._policy.refresh
        delay = refresh.day_boundary_debounce_s if boundary_changed else refresh.period_change_debounce_s
        self.schedule(
            RefreshTrigger(
                reason="day_boundary" if boundary_changed else "period_change",
                high_priority=boundary_changed,
                previous_day_key=previous_day,
                requested_at=self._monotonic(),
            ),
            delay,
        )

    def on_app_state_change(self, state: str) -> RefreshOutcome | None:
        """Handle app lifecycle transitions ('active', 'background', 'inactive')."""
        now = self._monotonic()
        self._app_state = state
        if state in APP_BACKGROUND_STATES:
            if self._backgrounded_at is None:
                self._backgrounded_at = now
            return None
        if state != APP_ACTIVE:
            return None

        backgrounded_at, self._backgrounded_at = self._backgrounded_at, None
        if self._user_id is None:
            return None

        day_key, period = self._observe()
        previous_day = self._day_key
        day_changed = previous_day is not None and day_key != previous_day
        period_changed = self._period is not None and period != self._period

        refresh = self._policy.refresh
        away = now - backgrounded_at if backgrounded_at is not None else 0.0
        extras: tuple[str, ...] = ()
        if away > refresh.stale_threshold_s or period_changed or day_changed:
            cooled = (
                self._last_foreground_refresh is None
                or now - self._last_foreground_refresh >= refresh.foreground_cooldown_s
            )
            # a period change bypasses the cooldown
            if cooled or period_changed or day_changed:
                extras = tuple(self._policy.critical_resources)
                self._last_foreground_refresh = now
            else:
                logger.debug("Foreground refresh skipped: cooldown active")

        reason = "foreground_boundary" if (day_changed or period_changed) else "foreground_stale"
        return self.dispatch(
            RefreshTrigger(
                reason=reason,
                high_priority=day_changed,
                previous_day_key=previous_day,
                extra_resources=extras,
                requested_at=now,
            )
        )

    def on_clock_resync(self) -> RefreshOutcome | None:
        """Re-evaluate period and day after the clock anchor moved."""
        if self._user_id is None:
            return None
        day_key, period = self._observe()
        previous_day = self._day_key
        day_changed = previous_day is not None and day_key != previous_day
        period_changed = self._period is not None and period != self._period
        if not (day_changed or period_changed):
            self._day_key, self._period = day_key, period
            return None
        return self.dispatch(
            RefreshTrigger(
                reason="clock_resync_day_boundary" if day_changed else "clock_resync_period_change",
                high_priority=day_changed,
                previous_day_key=previous_day,
                requested_at=self._monotonic(),
            )
        )

    def refresh_now(self, reason: str = "manual") -> RefreshOutcome | None:
        """Manual pull: high priority, no debounce, critical resources included."""
        return self.dispatch(
            RefreshTrigger(
                reason=reason,
                high_priority=True,
                previous_day_key=self._day_key,
                extra_resources=tuple(self._policy.critical_resources),
                requested_at=self._monotonic(),
            )
        )

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def schedule(self, trigger: RefreshTrigger, delay_s: float) -> None:
        """Schedule ``trigger`` after ``delay_s``, replacing any pending refresh."""
        if self._pending_trigger is not None:
            trigger = trigger.superseding(self._pending_trigger)
        self.cancel_pending()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop; running %s refresh immediately", trigger.reason)
            self.trigger_refresh(trigger)
            return
        self._pending_trigger = trigger
        self._pending_handle = loop.call_later(delay_s, self._fire_pending)
        logger.debug(
            "Scheduled %s refresh in %.1fs (high_priority=%s)", trigger.reason, delay_s, trigger.high_priority
        )

    def dispatch(self, trigger: RefreshTrigger) -> RefreshOutcome | None:
        """Run ``trigger`` now, absorbing any pending scheduled refresh."""
        if self._pending_trigger is not None:
            trigger = trigger.superseding(self._pending_trigger)
        self.cancel_pending()
        return self.trigger_refresh(trigger)

    def cancel_pending(self) -> None:
        if self._pending_handle is not None:
            self._pending_handle.cancel()
        self._pending_handle = None
        self._pending_trigger = None

    def _fire_pending(self) -> None:
        trigger = self._pending_trigger
        self._pending_handle = None
        self._pending_trigger = None
        if trigger is None:
            return
        try:
            self.trigger_refresh(trigger)
        except Exception:
            logger.exception("Scheduled %s refresh failed", trigger.reason)

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    def _is_throttled(self, resource: str, now: float) -> bool:
        last = self._last_forced.get(resource)
        return last is not None and now - last < self._policy.refresh.throttle_interval_s

    def trigger_refresh(self, trigger: RefreshTrigger) -> RefreshOutcome | None:
        """Drop the previous day's entry and invalidate tracked resources.

        Returns:
            The outcome, or None when no user is signed in.
        """
        if self._user_id is None:
            return None
        user_id = self._user_id
        now = self._monotonic()
        day_key, period = self._observe()
        self._day_key, self._period = day_key, period

        outcome = RefreshOutcome(reason=trigger.reason, day_key=day_key, high_priority=trigger.high_priority)

        previous = trigger.previous_day_key
        if previous and previous != day_key:
            stale_key = QueryKeys.prayers_today(user_id, previous)
            if self._store.remove(stale_key, exact=True):
                outcome.removed_keys.append(stale_key)

        resources = list(dict.fromkeys([*self._policy.tracked_resources, *trigger.extra_resources]))
        for resource in resources:
            if not trigger.high_priority and self._is_throttled(resource, now):
                outcome.throttled.append(resource)
                continue
            key = resource_key(resource, user_id, day_key)
            outcome.invalidated_keys.extend(self._store.invalidate(key, exact=True))
            self._last_forced[resource] = now

        if outcome.throttled and not outcome.invalidated_keys:
            logger.debug("Refresh %s throttled for %s", trigger.reason, outcome.throttled)
        else:
            logger.info(
                "Refresh %s: day=%s removed=%d invalidated=%d",
                trigger.reason, day_key, len(outcome.removed_keys), len(outcome.invalidated_keys),
            )
        self.history.append(outcome)
        if previous and previous != day_key:
            for callback in list(self._day_listeners):
                try:
                    callback(day_key, previous)
                except Exception:
                    logger.exception("Day change listener failed")
        return outcome
