"""Shared fixtures for cache tests."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from praysync.cache.store import CacheStore
from praysync.models.people import PrayerPerson

TEST_USER_ID = "11111111-2222-3333-4444-555555555555"
START_MS = 1_771_840_800_000.0  # 2026-02-23T10:00:00Z


class FakeWallClock:
    """Manually advanced epoch-ms clock."""

    def __init__(self, start_ms: float = START_MS) -> None:
        self.ms = start_ms

    def __call__(self) -> float:
        return self.ms

    def advance(self, seconds: float) -> None:
        self.ms += seconds * 1000.0


@pytest.fixture
def wall() -> FakeWallClock:
    return FakeWallClock()


@pytest.fixture
def no_sleep() -> AsyncMock:
    return AsyncMock(return_value=None)


@pytest.fixture
def store(wall: FakeWallClock, no_sleep: AsyncMock) -> CacheStore:
    return CacheStore(now_ms=wall, sleep=no_sleep)


@pytest.fixture
def people() -> list[PrayerPerson]:
    return [
        PrayerPerson(id="p1", user_id=TEST_USER_ID, name="Anna", relationship="Sister"),
        PrayerPerson(id="p2", user_id=TEST_USER_ID, name="Ben", relationship="Friend"),
    ]
