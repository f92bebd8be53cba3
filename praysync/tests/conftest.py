"""Shared fixtures for clock, catalog and session tests."""

from __future__ import annotations

from datetime import datetime
from unittest.mock import MagicMock
from zoneinfo import ZoneInfo

import pytest

from praysync.cache.persistence import CachePersister
from praysync.cache.store import CacheStore
from praysync.clock import ClockService
from praysync.config import Settings
from praysync.repositories import IntentionsRepository, PeopleRepository, PrayersRepository
from praysync.session import SyncSession
from praysync.sync.policy_loader import RefreshConfig, SyncPolicy

TEST_USER_ID = "11111111-2222-3333-4444-555555555555"
OTHER_USER_ID = "99999999-8888-7777-6666-555555555555"
TEST_TZ = "America/New_York"
# 2026-02-23 10:00 in New York
T_ANCHOR_MS = 1_771_858_800_000


def local_epoch_ms(iso: str, tz: str = TEST_TZ) -> int:
    """Epoch ms of a naive local wall-clock time in ``tz``."""
    return int(datetime.fromisoformat(iso).replace(tzinfo=ZoneInfo(tz)).timestamp() * 1000)


class FakeMonotonic:
    """Monotonic device clock advanced by hand."""

    def __init__(self) -> None:
        self.seconds = 5_000.0

    def __call__(self) -> float:
        return self.seconds

    def ms(self) -> float:
        return self.seconds * 1000.0

    def advance(self, seconds: float) -> None:
        self.seconds += seconds


@pytest.fixture
def mono() -> FakeMonotonic:
    return FakeMonotonic()


def anchored_clock(mono: FakeMonotonic, epoch_ms: int, tz: str = TEST_TZ, **kwargs) -> ClockService:
    clock = ClockService(default_timezone=tz, monotonic_ms=mono.ms, wall_ms=lambda: 0.0, **kwargs)
    clock.init(clock.anchor_at(epoch_ms, tz))
    return clock


@pytest.fixture
def clock(mono: FakeMonotonic) -> ClockService:
    return anchored_clock(mono, T_ANCHOR_MS)


@pytest.fixture
def policy() -> SyncPolicy:
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
def repos() -> dict:
    """Repository doubles; ``spec`` turns every async method into an AsyncMock."""
    return {
        "people": MagicMock(spec=PeopleRepository),
        "intentions": MagicMock(spec=IntentionsRepository),
        "prayers": MagicMock(spec=PrayersRepository),
    }


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(storage_dir=str(tmp_path), supabase_url="https://project.supabase.test")


@pytest.fixture
def make_session(settings: Settings, policy: SyncPolicy, repos: dict, mono: FakeMonotonic, clock: ClockService):
    """Factory for sessions sharing the fake clock and repository doubles."""

    def factory(user: tuple[str, str | None] | None = None, **overrides) -> SyncSession:
        kwargs = {
            "settings": settings,
            "policy": policy,
            "clock": clock,
            "store": CacheStore(now_ms=mono.ms, sleep=_no_sleep),
            "monotonic": mono,
            **repos,
        }
        kwargs.update(overrides)
        if user is not None:
            return SyncSession.for_user(*user, **kwargs)
        return SyncSession(**kwargs)

    return factory


async def _no_sleep(seconds: float) -> None:
    return None


@pytest.fixture
def persister(tmp_path) -> CachePersister:
    return CachePersister(tmp_path, "TEST_CACHE", version=1)
