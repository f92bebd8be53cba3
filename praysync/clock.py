"""Server-anchored logical clock and prayer-day / period derivation.

The device wall clock is never trusted directly.  The clock is anchored to a
server timestamp and advanced with the monotonic device clock, so skewed or
manually changed device time cannot move the prayer day.

Prayer day:
    A 24-hour accounting period starting at 04:00 local wall-clock time.  An
    instant whose local hour is < 4 belongs to the previous calendar date.

Periods:
    morning — local hour in [4, 16)
    evening — everything else

All wall-clock projections go through ``zoneinfo`` so they stay correct
across daylight-saving transitions.

Usage::

    clock = ClockService(default_timezone="America/New_York")
    clock.init(clock.anchor_at(state.server_now_epoch_ms, state.user_timezone))
    clock.get_prayer_day_start()          # "2026-02-23"
    dispose = clock.on_minute_tick(scheduler.on_minute_tick)
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass, replace
from datetime import date, datetime, time as dt_time, timedelta, timezone as dt_timezone
from functools import lru_cache
from typing import Any, Callable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from praysync.models.prayers import Period

logger = logging.getLogger("praysync.clock")

DEFAULT_TIMEZONE = "UTC"
MORNING_START_HOUR = 4
EVENING_START_HOUR = 16
DRIFT_THRESHOLD_MS = 120_000


@dataclass(frozen=True)
class LogicalClockAnchor:
    """Immutable pairing of a server timestamp with the local monotonic reading.

    Attributes:
        server_epoch_ms:        Server "now" in epoch milliseconds at sync time.
        local_epoch_ms_at_sync: Monotonic device clock (ms) captured at sync time.
        timezone:               Canonical IANA timezone for the user, if known.
    """

    server_epoch_ms: int
    local_epoch_ms_at_sync: float
    timezone: str | None = None


def _monotonic_ms() -> float:
    return time.monotonic() * 1000.0


def _wall_ms() -> float:
    return time.time() * 1000.0


@lru_cache(maxsize=64)
def _zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r, falling back to UTC", name)
        return ZoneInfo(DEFAULT_TIMEZONE)


def period_for_hour(
    hour: int,
    morning_start_hour: int = MORNING_START_HOUR,
    evening_start_hour: int = EVENING_START_HOUR,
) -> Period:
    """Map a local wall-clock hour to its daily window."""
    if morning_start_hour <= hour < evening_start_hour:
        return Period.morning
    return Period.evening


def prayer_day_for(local: datetime, cutoff_hour: int = MORNING_START_HOUR) -> date:
    """Return the prayer day a local wall-clock datetime belongs to."""
    if local.hour < cutoff_hour:
        return local.date() - timedelta(days=1)
    return local.date()


class ClockService:
    """Drift-corrected time source with prayer-day and period derivation.

    One instance per session.  ``on_minute_tick`` subscribers share a single
    asyncio ticker task which starts with the first subscriber and stops when
    the last one disposes.
    """

    def __init__(
        self,
        *,
        default_timezone: str = DEFAULT_TIMEZONE,
        resync_epsilon_ms: int = 1000,
        tick_seconds: float = 60.0,
        morning_start_hour: int = MORNING_START_HOUR,
        evening_start_hour: int = EVENING_START_HOUR,
        monotonic_ms: Callable[[], float] | None = None,
        wall_ms: Callable[[], float] | None = None,
    ) -> None:
        """Initialize the clock.

        Until ``init()`` is called the clock is anchored on device wall time,
        matching what a fresh process would show before the first server sync.

        Args:
            default_timezone:   Timezone used when the anchor carries none.
            resync_epsilon_ms:  Anchors implying the same server time within this
                                window are treated as equivalent (no replacement).
            tick_seconds:       Interval of the shared minute ticker.
            morning_start_hour: Local hour where the morning window (and prayer day) starts.
            evening_start_hour: Local hour where the evening window starts.
            monotonic_ms:       Injectable monotonic clock in ms (tests).
            wall_ms:            Injectable wall clock in epoch ms (tests).
        """
        self._monotonic_ms = monotonic_ms or _monotonic_ms
        self._wall_ms = wall_ms or _wall_ms
        self._default_timezone = default_timezone or DEFAULT_TIMEZONE
        self._epsilon_ms = resync_epsilon_ms
        self._tick_seconds = tick_seconds
        self._morning_start = morning_start_hour
        self._evening_start = evening_start_hour

        self._anchor = LogicalClockAnchor(
            server_epoch_ms=int(self._wall_ms()),
            local_epoch_ms_at_sync=self._monotonic_ms(),
            timezone=None,
        )
        self._last_sync_at = self._wall_ms()
        self._initialized = False

        self._tick_listeners: dict[int, Callable[[], Any]] = {}
        self._next_listener_id = 0
        self._ticker: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------
    # Anchoring
    # ------------------------------------------------------------------

    @property
    def anchor(self) -> LogicalClockAnchor:
        return self._anchor

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def last_sync_at(self) -> float:
        """Device wall time (epoch ms) of the last accepted resync."""
        return self._last_sync_at

    def anchor_at(self, server_now_epoch_ms: float, timezone: str | None = None) -> LogicalClockAnchor:
        """Build an anchor for a server timestamp observed *now*."""
        return LogicalClockAnchor(
            server_epoch_ms=int(server_now_epoch_ms),
            local_epoch_ms_at_sync=self._monotonic_ms(),
            timezone=timezone or None,
        )

    def init(self, anchor: LogicalClockAnchor) -> bool:
        """Install the first server anchor and start the ticker if anyone listens.

        Returns:
            True if the anchor was replaced.
        """
        replaced = self.resync(anchor)
        self._initialized = True
        if self._tick_listeners:
            self._ensure_ticker()
        return replaced

    def resync(self, anchor: LogicalClockAnchor) -> bool:
        """Replace the anchor atomically.

        An anchor implying the same server time (within the epsilon) and the
        same timezone as the current one is ignored.  An anchor without a
        timezone keeps the current canonical timezone.

        Returns:
            True if the anchor was replaced.
        """
        server_ms = anchor.server_epoch_ms
        if not isinstance(server_ms, (int, float)) or math.isnan(server_ms):
            logger.warning("Ignoring clock anchor with invalid server time: %r", server_ms)
            return False

        candidate = anchor
        if not candidate.timezone:
            candidate = replace(candidate, timezone=self._anchor.timezone)

        if self._is_equivalent(candidate):
            logger.debug("Clock resync skipped: anchor within %dms of current", self._epsilon_ms)
            return False

        self._anchor = candidate
        self._last_sync_at = self._wall_ms()
        logger.debug(
            "Clock resynced to %d (tz=%s)", candidate.server_epoch_ms, candidate.timezone
        )
        return True

    def _implied_now(self, anchor: LogicalClockAnchor, mono_now: float) -> float:
        return anchor.server_epoch_ms + (mono_now - anchor.local_epoch_ms_at_sync)

    def _is_equivalent(self, candidate: LogicalClockAnchor) -> bool:
        if candidate.timezone != self._anchor.timezone:
            return False
        mono_now = self._monotonic_ms()
        drift = abs(
            self._implied_now(candidate, mono_now) - self._implied_now(self._anchor, mono_now)
        )
        return drift <= self._epsilon_ms

    @property
    def canonical_timezone(self) -> str:
        return self._anchor.timezone or self._default_timezone or DEFAULT_TIMEZONE

    def set_canonical_timezone(self, timezone: str | None) -> None:
        """Adopt the user's profile timezone without touching the time anchor."""
        if timezone and timezone != self._anchor.timezone:
            self._anchor = replace(self._anchor, timezone=timezone)

    # ------------------------------------------------------------------
    # Time
    # ------------------------------------------------------------------

    def now(self) -> int:
        """Server-trusted epoch milliseconds."""
        return int(round(self._implied_now(self._anchor, self._monotonic_ms())))

    def now_in_timezone(self, timezone: str | None = None) -> datetime:
        """Timezone-aware datetime for ``now()`` projected into ``timezone``."""
        zone = _zone(timezone or self.canonical_timezone)
        return datetime.fromtimestamp(self.now() / 1000.0, tz=dt_timezone.utc).astimezone(zone)

    def get_current_period(self, timezone: str | None = None) -> Period:
        local = self.now_in_timezone(timezone)
        return period_for_hour(local.hour, self._morning_start, self._evening_start)

    def get_prayer_day_start(self, timezone: str | None = None) -> str:
        """Canonical ``YYYY-MM-DD`` key of the current prayer day."""
        local = self.now_in_timezone(timezone)
        return prayer_day_for(local, self._morning_start).isoformat()

    def get_prayer_day_start_at(self, timezone: str | None = None) -> datetime:
        """Aware datetime of the current prayer day's 04:00 local start."""
        zone = _zone(timezone or self.canonical_timezone)
        local = self.now_in_timezone(timezone)
        day = prayer_day_for(local, self._morning_start)
        return datetime.combine(day, dt_time(self._morning_start), tzinfo=zone)

    def get_next_boundary(self, timezone: str | None = None) -> tuple[Period, datetime]:
        """Return the next period that starts and when it starts (local time)."""
        zone = _zone(timezone or self.canonical_timezone)
        local = self.now_in_timezone(timezone)
        if local.hour < self._morning_start:
            at = datetime.combine(local.date(), dt_time(self._morning_start), tzinfo=zone)
            return Period.morning, at
        if local.hour < self._evening_start:
            at = datetime.combine(local.date(), dt_time(self._evening_start), tzinfo=zone)
            return Period.evening, at
        at = datetime.combine(
            local.date() + timedelta(days=1), dt_time(self._morning_start), tzinfo=zone
        )
        return Period.morning, at

    def detect_significant_drift(self, threshold_ms: int = DRIFT_THRESHOLD_MS) -> bool:
        """True if the device wall clock disagrees with server time by more than the threshold."""
        return abs(self.now() - self._wall_ms()) > threshold_ms

    def snapshot(self, timezone: str | None = None) -> dict[str, Any]:
        tz = timezone or self.canonical_timezone
        return {
            "timezone": tz,
            "iso": self.now_in_timezone(tz).isoformat(),
            "period": self.get_current_period(tz).value,
            "prayerDay": self.get_prayer_day_start(tz),
            "serverEpochMs": self._anchor.server_epoch_ms,
            "lastSyncAt": self._last_sync_at,
        }

    # ------------------------------------------------------------------
    # Minute ticker
    # ------------------------------------------------------------------

    @property
    def ticker_running(self) -> bool:
        return self._ticker is not None and not self._ticker.done()

    def on_minute_tick(self, callback: Callable[[], Any]) -> Callable[[], None]:
        """Register a once-per-interval callback.

        Returns:
            A disposer; calling it more than once is harmless.
        """
        listener_id = self._next_listener_id
        self._next_listener_id += 1
        self._tick_listeners[listener_id] = callback
        self._ensure_ticker()

        def dispose() -> None:
            self._tick_listeners.pop(listener_id, None)
            if not self._tick_listeners:
                self._stop_ticker()

        return dispose

    def _ensure_ticker(self) -> None:
        if self.ticker_running:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop; minute ticker deferred")
            return
        self._ticker = loop.create_task(self._tick_loop(), name="praysync-minute-tick")

    def _stop_ticker(self) -> None:
        if self._ticker is not None:
            self._ticker.cancel()
            self._ticker = None

    async def _tick_loop(self) -> None:
        while True:
            await asyncio.sleep(self._tick_seconds)
            self.emit_tick()

    def emit_tick(self) -> None:
        """Notify every tick listener once.  Listener errors are logged, never raised."""
        for callback in list(self._tick_listeners.values()):
            try:
                callback()
            except Exception:
                logger.exception("Minute tick listener failed")

    def dispose(self) -> None:
        """Stop the ticker and drop all listeners."""
        self._tick_listeners.clear()
        self._stop_ticker()
