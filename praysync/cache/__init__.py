"""Client-side cache for fetched resources.

Modules:
    keys        — CacheKey tuples, KeyPattern matching, QueryKeys factory
    policy      — FreshnessPolicy (NeverStale / TimeBoxed) and presets
    store       — CacheStore, CacheEntry, Subscription
    prefetch    — PrefetchRegistry (cold-start snapshots + image URL registry)
    persistence — CachePersister (versioned JSON snapshot on disk)
"""

from praysync.cache.keys import CacheKey, KeyPattern, QueryKeys
from praysync.cache.policy import (
    DEFAULT_POLICY,
    FreshnessPolicy,
    NeverStale,
    TimeBoxed,
    time_sensitive,
    user_controlled,
)
from praysync.cache.prefetch import PrefetchRegistry
from praysync.cache.store import CacheEntry, CacheStore, Subscription

__all__ = [
    "CacheKey",
    "KeyPattern",
    "QueryKeys",
    "FreshnessPolicy",
    "NeverStale",
    "TimeBoxed",
    "DEFAULT_POLICY",
    "user_controlled",
    "time_sensitive",
    "PrefetchRegistry",
    "CacheEntry",
    "CacheStore",
    "Subscription",
]
