"""
deferq — deferred mutations with a fast-store queue, lock and cache.

Deletes and updates of work records are accepted instantly and applied to the
durable store later by one or more workers. The fast store (Redis) carries
three things:

  - the job queues: source → processing → (ack | retry | dead-letter)
  - per-actor upload locks (Redlock-style leases)
  - a read-through cache, invalidated when a mutation is accepted

Callers only ever see "accepted" or "rejected" for a mutation; they never see
its eventual durable outcome.

Quick start
-----------
    import asyncio
    from deferq import (
        Actor, ActorRole, InMemoryFastStore, InMemoryWorkStore,
        MutationAdmission, MutationWorker, ReadThroughCache,
    )

    async def main():
        store, durable = InMemoryFastStore(), InMemoryWorkStore()
        cache = ReadThroughCache(store)

        admission = MutationAdmission(store, cache)
        actor = Actor(id="admin-1", role=ActorRole.ADMIN)
        receipt = await admission.submit_delete(actor, "work-1")   # status "accepted"

        worker = MutationWorker(store, durable, cache)
        outcome = await worker.process_one()   # APPLIED or DEAD_LETTERED

    asyncio.run(main())

Architecture
------------
Follows the Ports & Adapters pattern:
  domain/   — pure value types (MutationJob, Work, LockLease, DeadLetter)
  ports/    — Protocol interfaces (FastStorePort, DurableStorePort, ObjectUploaderPort)
  core/     — business logic (admission, worker, reaper, lock, cache, queries)
  adapters/ — concrete stores (in-memory, Redis, MongoDB)
"""
from __future__ import annotations

from deferq.adapters.durable.memory import InMemoryWorkStore
from deferq.adapters.fast_store.memory import InMemoryFastStore
from deferq.core.admission import MutationAdmission
from deferq.core.cache import CacheResult, ReadThroughCache
from deferq.core.creation import WorkCreation
from deferq.core.heartbeat import HeartbeatManager
from deferq.core.keys import QueueLayout
from deferq.core.lock import LockManager
from deferq.core.queries import WorkQueries
from deferq.core.reaper import Reaper
from deferq.core.worker import DEFAULT_MAX_ATTEMPTS, MutationWorker
from deferq.domain.errors import (
    AuthorizationError,
    DeferqError,
    EnqueueError,
    EntityNotFoundError,
    InvalidMutationError,
    LockError,
    LockNotAcquiredError,
    LockOwnershipError,
    MalformedJobError,
    StoreUnavailableError,
)
from deferq.domain.models import (
    Accepted,
    Actor,
    ActorRole,
    DeadLetter,
    DeadLetterReason,
    JobOutcome,
    JobState,
    LockLease,
    MutationJob,
    MutationKind,
    Work,
    WorkDraft,
)
from deferq.ports.durable_store import DurableStorePort
from deferq.ports.fast_store import FastStorePort
from deferq.ports.uploader import ObjectUploaderPort

__all__ = [
    # Domain models
    "Accepted",
    "Actor",
    "ActorRole",
    "DeadLetter",
    "DeadLetterReason",
    "JobOutcome",
    "JobState",
    "LockLease",
    "MutationJob",
    "MutationKind",
    "Work",
    "WorkDraft",
    # Errors
    "DeferqError",
    "AuthorizationError",
    "EnqueueError",
    "EntityNotFoundError",
    "InvalidMutationError",
    "LockError",
    "LockNotAcquiredError",
    "LockOwnershipError",
    "MalformedJobError",
    "StoreUnavailableError",
    # Ports (for typing custom adapters)
    "DurableStorePort",
    "FastStorePort",
    "ObjectUploaderPort",
    # Core
    "CacheResult",
    "DEFAULT_MAX_ATTEMPTS",
    "HeartbeatManager",
    "LockManager",
    "MutationAdmission",
    "MutationWorker",
    "QueueLayout",
    "ReadThroughCache",
    "Reaper",
    "WorkCreation",
    "WorkQueries",
    # Built-in in-memory adapters
    "InMemoryFastStore",
    "InMemoryWorkStore",
]
