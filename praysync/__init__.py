"""praysync — client-side sync and consistency layer for the prayer-day app.

Packages:
    cache        — keyed cache, freshness policies, prefetch registry, persistence
    sync         — optimistic mutations, refresh scheduler, realtime patcher
    repositories — Supabase PostgREST repositories
    models       — pydantic resource models

The entry point for applications is ``praysync.session.SyncSession``.
"""

__version__ = "0.1.0"
