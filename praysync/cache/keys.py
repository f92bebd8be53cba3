"""Cache keys and key patterns.

A cache key is a tuple of strings, most general segment first::

    ("prayers", user_id, "today", "2026-02-23")
    ("people", user_id, "active")

Patterns match by prefix unless ``exact`` is set, so invalidating
``("intentions", user_id)`` also hits ``("intentions", user_id, "active")``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union

CacheKey = tuple[str, ...]


@dataclass(frozen=True)
class KeyPattern:
    """Prefix (default) or exact match over cache keys."""

    prefix: CacheKey
    exact: bool = False

    def matches(self, key: CacheKey) -> bool:
        if self.exact:
            return key == self.prefix
        return key[: len(self.prefix)] == self.prefix


PatternLike = Union[KeyPattern, CacheKey]


def as_pattern(pattern: PatternLike, exact: bool = False) -> KeyPattern:
    if isinstance(pattern, KeyPattern):
        return pattern
    return KeyPattern(tuple(str(part) for part in pattern), exact=exact)


class QueryKeys:
    """Factory for every key the app reads, so producers and invalidators agree."""

    @staticmethod
    def session() -> CacheKey:
        return ("session",)

    @staticmethod
    def profile(user_id: str) -> CacheKey:
        return ("profile", user_id)

    # Prayers
    @staticmethod
    def prayers(user_id: str) -> CacheKey:
        return ("prayers", user_id)

    @staticmethod
    def prayers_paged(user_id: str, filter_: str = "all") -> CacheKey:
        return ("prayers", user_id, "paged", filter_)

    @staticmethod
    def prayers_today(user_id: str, day_key: str | None = None) -> CacheKey:
        if day_key:
            return ("prayers", user_id, "today", day_key)
        return ("prayers", user_id, "today")

    @staticmethod
    def prayer(user_id: str, prayer_id: str) -> CacheKey:
        return ("prayer", user_id, prayer_id)

    # People
    @staticmethod
    def people(user_id: str, active_only: bool = False) -> CacheKey:
        return ("people", user_id, "active" if active_only else "all")

    @staticmethod
    def person(person_id: str) -> CacheKey:
        return ("person", person_id)

    # Intentions
    @staticmethod
    def intentions(user_id: str) -> CacheKey:
        return ("intentions", user_id)

    @staticmethod
    def active_intentions(user_id: str) -> CacheKey:
        return ("intentions", user_id, "active")

    @staticmethod
    def intentions_by_person(user_id: str, person_id: str | None) -> CacheKey:
        return ("intentions", user_id, "person", person_id or "self")

    @staticmethod
    def intention(intention_id: str) -> CacheKey:
        return ("intention", intention_id)

    # Aggregates
    @staticmethod
    def home_data(user_id: str) -> CacheKey:
        return ("homeData", user_id)

    @staticmethod
    def user_stats(user_id: str) -> CacheKey:
        return ("userStats", user_id)

    @staticmethod
    def prayer_state(user_id: str) -> CacheKey:
        return ("prayerState", user_id)
