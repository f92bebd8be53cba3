"""Shared fixtures for sync-layer tests."""

from __future__ import annotations

from datetime import datetime
from unittest.mock import AsyncMock
from zoneinfo import ZoneInfo

import pytest

from praysync.cache.store import CacheStore
from praysync.clock import ClockService
from praysync.models.intentions import PrayerIntention
from praysync.models.people import PrayerPerson
from praysync.sync.policy_loader import RefreshConfig, SyncPolicy, load_sync_policy

TEST_USER_ID = "11111111-2222-3333-4444-555555555555"
OTHER_USER_ID = "99999999-8888-7777-6666-555555555555"
TEST_TZ = "America/New_York"


def local_epoch_ms(iso: str, tz: str = TEST_TZ) -> int:
    """Epoch ms of a naive local wall-clock time in ``tz``."""
    return int(datetime.fromisoformat(iso).replace(tzinfo=ZoneInfo(tz)).timestamp() * 1000)


class FakeTime:
    """Manually advanced monotonic time shared by the clock, cache and scheduler."""

    def __init__(self) -> None:
        self.seconds = 1000.0

    def monotonic(self) -> float:
        return self.seconds

    def monotonic_ms(self) -> float:
        return self.seconds * 1000.0

    def advance(self, seconds: float) -> None:
        self.seconds += seconds


@pytest.fixture
def fake_time() -> FakeTime:
    return FakeTime()


@pytest.fixture
def store(fake_time: FakeTime) -> CacheStore:
    return CacheStore(now_ms=fake_time.monotonic_ms, sleep=AsyncMock(return_value=None))


def make_clock(fake_time: FakeTime, local_iso: str, tz: str = TEST_TZ) -> ClockService:
    clock = ClockService(
        default_timezone=tz,
        monotonic_ms=fake_time.monotonic_ms,
        wall_ms=lambda: 0.0,
    )
    clock.init(clock.anchor_at(local_epoch_ms(local_iso, tz), tz))
    return clock


@pytest.fixture
def fast_policy() -> SyncPolicy:
    """Default policy with debounce shortened so timers fire within a test."""
    return SyncPolicy(
        refresh=RefreshConfig(
            throttle_interval_s=600,
            day_boundary_debounce_s=0.01,
            period_change_debounce_s=0.02,
            stale_threshold_s=300,
            foreground_cooldown_s=600,
        )
    )


@pytest.fixture
def bundled_policy() -> SyncPolicy:
    return load_sync_policy()


@pytest.fixture
def people() -> list[PrayerPerson]:
    return [
        PrayerPerson(id="p1", user_id=TEST_USER_ID, name="Anna", relationship="Sister"),
        PrayerPerson(id="p2", user_id=TEST_USER_ID, name="Ben", relationship="Friend"),
    ]


@pytest.fixture
def intentions() -> list[PrayerIntention]:
    return [
        PrayerIntention(id="i1", user_id=TEST_USER_ID, person_id="p1", category="health", is_active=True),
        PrayerIntention(id="i2", user_id=TEST_USER_ID, person_id=None, category="gratitude", is_active=False),
    ]
