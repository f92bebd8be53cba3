"""Consistency machinery on top of the cache.

Modules:
    transforms    — shared created / updated / deleted edits for cached shapes
    mutations     — optimistic writes with compare-and-restore rollback
    scheduler     — throttled, debounced refreshes on time transitions
    realtime      — decoding and applying pushed row changes
    policy_loader — sync_policy.yaml loading and hot reload
"""

from praysync.sync.mutations import (
    MutationCoordinator,
    MutationResult,
    MutationStatus,
    OptimisticMutation,
    OptimisticWrite,
    ReversibleCommand,
)
from praysync.sync.realtime import RealtimeChannel, RealtimePatcher, decode_postgres_change
from praysync.sync.scheduler import RefreshOutcome, RefreshScheduler, RefreshTrigger

__all__ = [
    "MutationCoordinator",
    "MutationResult",
    "MutationStatus",
    "OptimisticMutation",
    "OptimisticWrite",
    "ReversibleCommand",
    "RealtimeChannel",
    "RealtimePatcher",
    "decode_postgres_change",
    "RefreshOutcome",
    "RefreshScheduler",
    "RefreshTrigger",
]
