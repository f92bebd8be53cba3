"""Optimistic mutations with compare-and-restore rollback.

Each mutation is a small state machine::

    pending ──commit──▶ committed
       └────rollback──▶ rolled_back

Several mutations may be pending on the same key at once (e.g. two quick
toggles).  They are kept in begin order per key:

* rollback of the most recent mutation restores its snapshot only if its
  optimistic value is still what the cache holds;
* rollback of an older mutation leaves the visible value alone and hands its
  snapshot down to the next pending mutation, so a late failure never
  clobbers a newer optimistic value;
* commit of an older mutation re-bases the next pending mutation's snapshot
  onto the reconciled server value.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable
from uuid import uuid4

from praysync.cache.keys import CacheKey
from praysync.cache.store import CacheStore
from praysync.errors import MutationStateError, user_friendly_message

logger = logging.getLogger("praysync.sync.mutations")

Reconcile = Callable[[Any, Any], Any]


class MutationStatus(str, Enum):
    pending = "pending"
    committed = "committed"
    rolled_back = "rolled_back"


# ---------------------------------------------------------------------------
# Reversible commands
# ---------------------------------------------------------------------------


class ReversibleCommand(ABC):
    """A cache edit that can be undone."""

    @abstractmethod
    def apply(self, store: CacheStore) -> Any:
        """Perform the edit and return the value written."""

    @abstractmethod
    def undo(self, store: CacheStore) -> bool:
        """Revert the edit.  Returns False when nothing was restored."""


class OptimisticWrite(ReversibleCommand):
    """Write an optimistic value, remembering what it replaced.

    ``optimistic`` is either the new value or ``callable(current) -> new``.
    """

    def __init__(self, key: CacheKey, optimistic: Any) -> None:
        self.key = key
        self.optimistic = optimistic
        self.previous: Any = None
        self.had_previous = False
        self.applied: Any = None

    def apply(self, store: CacheStore) -> Any:
        entry = store.get(self.key)
        self.had_previous = entry is not None and entry.has_data
        self.previous = store.get_data(self.key)
        value = self.optimistic(self.previous) if callable(self.optimistic) else self.optimistic
        store.set(self.key, value)
        self.applied = value
        return value

    def is_current(self, store: CacheStore) -> bool:
        entry = store.get(self.key)
        return entry is not None and entry.has_data and entry.data is self.applied

    def rebase(self, previous: Any, had_previous: bool = True) -> None:
        self.previous = previous
        self.had_previous = had_previous

    def undo(self, store: CacheStore) -> bool:
        if not self.is_current(store):
            return False
        if self.had_previous:
            store.set(self.key, self.previous)
        else:
            store.remove(self.key, exact=True)
        return True


# ---------------------------------------------------------------------------
# Mutation records
# ---------------------------------------------------------------------------


@dataclass
class OptimisticMutation:
    """One in-flight optimistic write.

    Attributes:
        id:             Unique mutation id.
        target_key:     Cache key written optimistically.
        command:        The reversible write holding the snapshot.
        mutation_type:  Catalog name ('intentions.toggle_active', ...), if any.
        reconcile:      ``(current, server_value) -> new`` applied on commit.
        dependent_keys: Keys invalidated after a successful commit.
        applied_at:     Epoch ms when the optimistic value was written.
        status:         pending / committed / rolled_back.
        error:          Failure that caused the rollback.
    """

    id: str
    target_key: CacheKey
    command: OptimisticWrite
    mutation_type: str | None = None
    reconcile: Reconcile | None = None
    dependent_keys: tuple[CacheKey, ...] = ()
    applied_at: float = 0.0
    status: MutationStatus = MutationStatus.pending
    error: BaseException | None = None

    @property
    def previous_snapshot(self) -> Any:
        return self.command.previous

    @property
    def optimistic_value(self) -> Any:
        return self.command.applied


@dataclass
class MutationResult:
    """Outcome handed back to the caller of ``mutate``.

    Attributes:
        mutation_id: Id of the underlying OptimisticMutation.
        status:      committed or rolled_back.
        value:       Server value on commit.
        error:       Failure on rollback.
    """

    mutation_id: str
    status: MutationStatus
    value: Any = None
    error: BaseException | None = None
    mutation_type: str | None = field(default=None, repr=False)

    @property
    def committed(self) -> bool:
        return self.status is MutationStatus.committed

    @property
    def rolled_back(self) -> bool:
        return self.status is MutationStatus.rolled_back

    @property
    def message(self) -> str | None:
        """Display text for a rolled-back mutation; None on commit."""
        if self.error is None:
            return None
        return user_friendly_message(self.error)

    def unwrap(self) -> Any:
        """Return the server value or raise the rollback error."""
        if self.error is not None:
            raise self.error
        return self.value


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------


class MutationCoordinator:
    """Applies optimistic writes to a CacheStore and settles them.

    Usage::

        result = await coordinator.run(
            QueryKeys.intentions(uid),
            lambda items: list_updated(items, {"id": iid, "is_active": False}),
            lambda: repo.update(iid, {"is_active": False}),
            dependent_keys=[QueryKeys.people(uid, active_only=True)],
        )
    """

    def __init__(self, store: CacheStore, *, now_ms: Callable[[], float] | None = None) -> None:
        self._store = store
        self._now_ms = now_ms or (lambda: time.time() * 1000.0)
        self._pending: dict[CacheKey, list[OptimisticMutation]] = {}

    def pending(self, key: CacheKey | None = None) -> list[OptimisticMutation]:
        if key is not None:
            return list(self._pending.get(tuple(key), ()))
        return [m for queue in self._pending.values() for m in queue]

    def begin(
        self,
        target_key: CacheKey,
        optimistic: Any,
        *,
        mutation_type: str | None = None,
        reconcile: Reconcile | None = None,
        dependent_keys: Iterable[CacheKey] = (),
    ) -> OptimisticMutation:
        """Cancel fetches for the key, snapshot it and write the optimistic value."""
        key = tuple(target_key)
        # A fetch started before this write would land a pre-mutation value.
        self._store.cancel(key)

        command = OptimisticWrite(key, optimistic)
        command.apply(self._store)
        mutation = OptimisticMutation(
            id=uuid4().hex,
            target_key=key,
            command=command,
            mutation_type=mutation_type,
            reconcile=reconcile,
            dependent_keys=tuple(tuple(k) for k in dependent_keys),
            applied_at=self._now_ms(),
        )
        self._pending.setdefault(key, []).append(mutation)
        logger.debug("Mutation %s (%s) began on %s", mutation.id, mutation_type, key)
        return mutation

    def _ensure_pending(self, mutation: OptimisticMutation) -> list[OptimisticMutation]:
        if mutation.status is not MutationStatus.pending:
            raise MutationStateError(
                f"Mutation {mutation.id} is already {mutation.status.value}"
            )
        queue = self._pending.get(mutation.target_key, [])
        if mutation not in queue:
            raise MutationStateError(f"Mutation {mutation.id} is not tracked by this coordinator")
        return queue

    def _forget(self, mutation: OptimisticMutation, queue: list[OptimisticMutation]) -> None:
        queue.remove(mutation)
        if not queue:
            self._pending.pop(mutation.target_key, None)

    def commit(self, mutation: OptimisticMutation, server_value: Any = None) -> MutationResult:
        """Settle a mutation with the authoritative server value.

        Raises:
            MutationStateError: The mutation is not pending.
        """
        queue = self._ensure_pending(mutation)
        key = mutation.target_key
        reconcile = mutation.reconcile or (lambda current, server: server)
        index = queue.index(mutation)
        later = queue[index + 1 :]

        if not later:
            self._store.set(key, reconcile(self._store.get_data(key), server_value))
        else:
            later[0].command.rebase(reconcile(mutation.command.previous, server_value))
            latest = later[-1]
            if mutation.reconcile is not None and latest.command.is_current(self._store):
                # Shape-aware reconcile can fold the server value under newer optimistic edits.
                value = reconcile(self._store.get_data(key), server_value)
                self._store.set(key, value)
                latest.command.applied = value

        mutation.status = MutationStatus.committed
        self._forget(mutation, queue)
        for dependent in mutation.dependent_keys:
            self._store.invalidate(dependent)
        logger.debug("Mutation %s committed on %s", mutation.id, key)
        return MutationResult(
            mutation_id=mutation.id,
            status=MutationStatus.committed,
            value=server_value,
            mutation_type=mutation.mutation_type,
        )

    def rollback(self, mutation: OptimisticMutation, error: BaseException | None = None) -> MutationResult:
        """Undo a failed mutation without clobbering newer optimistic values.

        Raises:
            MutationStateError: The mutation is not pending.
        """
        queue = self._ensure_pending(mutation)
        key = mutation.target_key
        index = queue.index(mutation)
        later = queue[index + 1 :]

        if later:
            later[0].command.rebase(mutation.command.previous, mutation.command.had_previous)
        elif not mutation.command.undo(self._store):
            logger.debug("Mutation %s: %s changed since begin, leaving current value", mutation.id, key)

        mutation.status = MutationStatus.rolled_back
        mutation.error = error
        self._forget(mutation, queue)
        logger.warning(
            "Mutation %s (%s) rolled back on %s: %s", mutation.id, mutation.mutation_type, key, error
        )
        return MutationResult(
            mutation_id=mutation.id,
            status=MutationStatus.rolled_back,
            error=error,
            mutation_type=mutation.mutation_type,
        )

    async def run(
        self,
        target_key: CacheKey,
        optimistic: Any,
        server_call: Callable[[], Awaitable[Any]],
        *,
        mutation_type: str | None = None,
        reconcile: Reconcile | None = None,
        dependent_keys: Iterable[CacheKey] = (),
    ) -> MutationResult:
        """begin → await ``server_call()`` → commit or rollback."""
        mutation = self.begin(
            target_key,
            optimistic,
            mutation_type=mutation_type,
            reconcile=reconcile,
            dependent_keys=dependent_keys,
        )
        try:
            server_value = await server_call()
        except asyncio.CancelledError as exc:
            self.rollback(mutation, exc)
            raise
        except Exception as exc:
            if mutation.status is not MutationStatus.pending:
                return self._discarded(mutation, exc)
            return self.rollback(mutation, exc)
        if mutation.status is not MutationStatus.pending:
            return self._discarded(mutation, None)
        return self.commit(mutation, server_value)

    def _discarded(self, mutation: OptimisticMutation, error: BaseException | None) -> MutationResult:
        logger.info("Mutation %s settled after its session was cleared; result dropped", mutation.id)
        return MutationResult(
            mutation_id=mutation.id,
            status=mutation.status,
            error=error or mutation.error,
            mutation_type=mutation.mutation_type,
        )

    def clear(self) -> None:
        """Drop all pending mutations (sign-out) without touching the cache."""
        for mutation in self.pending():
            mutation.status = MutationStatus.rolled_back
            mutation.error = MutationStateError("Session cleared before the mutation settled")
        self._pending.clear()
