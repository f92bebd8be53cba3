"""Per-entry freshness policies.

NeverStale entries are user-controlled data that never changes externally:
they only refetch after an explicit invalidation and are retained until
sign-out.  TimeBoxed entries go stale ``stale_ms`` after their last fetch and
become evictable ``gc_ms`` (default 2 × stale_ms) after their last subscriber
leaves.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any


class FreshnessPolicy(ABC):
    """Decides when cached data is eligible for refetch and eviction."""

    @abstractmethod
    def is_expired(self, fetched_at_ms: float, now_ms: float) -> bool:
        """True once data fetched at ``fetched_at_ms`` should be refetched."""

    @property
    @abstractmethod
    def retention_ms(self) -> float | None:
        """Eviction horizon after release; None means keep until cleared."""

    @abstractmethod
    def to_dict(self) -> dict[str, Any]:
        """JSON form used by the persisted snapshot."""


@dataclass(frozen=True)
class NeverStale(FreshnessPolicy):
    def is_expired(self, fetched_at_ms: float, now_ms: float) -> bool:
        return False

    @property
    def retention_ms(self) -> float | None:
        return None

    def to_dict(self) -> dict[str, Any]:
        return {"kind": "never-stale"}


@dataclass(frozen=True)
class TimeBoxed(FreshnessPolicy):
    stale_ms: int
    gc_ms: int | None = None

    def __post_init__(self) -> None:
        if self.stale_ms < 0:
            raise ValueError(f"stale_ms must be >= 0, got {self.stale_ms}")
        if self.gc_ms is not None and self.gc_ms < 0:
            raise ValueError(f"gc_ms must be >= 0, got {self.gc_ms}")

    def is_expired(self, fetched_at_ms: float, now_ms: float) -> bool:
        return now_ms - fetched_at_ms >= self.stale_ms

    @property
    def retention_ms(self) -> float | None:
        return self.gc_ms if self.gc_ms is not None else self.stale_ms * 2

    def to_dict(self) -> dict[str, Any]:
        return {"kind": "time-boxed", "stale_ms": self.stale_ms, "gc_ms": self.gc_ms}


DEFAULT_POLICY = TimeBoxed(stale_ms=5 * 60 * 1000, gc_ms=30 * 60 * 1000)


def user_controlled() -> FreshnessPolicy:
    """Data only the user changes: never stale, never collected before sign-out."""
    return NeverStale()


def time_sensitive(minutes: float) -> FreshnessPolicy:
    """External data: stale after ``minutes``, kept twice as long."""
    stale_ms = int(minutes * 60 * 1000)
    return TimeBoxed(stale_ms=stale_ms, gc_ms=stale_ms * 2)


def policy_from_dict(raw: dict[str, Any]) -> FreshnessPolicy:
    """Inverse of ``FreshnessPolicy.to_dict``.

    Raises:
        ValueError: If the kind is unknown or fields are malformed.
    """
    if not isinstance(raw, dict):
        raise ValueError(f"Freshness policy must be a mapping, got {type(raw).__name__}")
    kind = raw.get("kind")
    if kind == "never-stale":
        return NeverStale()
    if kind == "time-boxed":
        gc_ms = raw.get("gc_ms")
        return TimeBoxed(stale_ms=int(raw["stale_ms"]), gc_ms=int(gc_ms) if gc_ms is not None else None)
    raise ValueError(f"Unknown freshness policy kind: {kind!r}")
