"""
Exception hierarchy for deferq.

DeferqError
├── StoreUnavailableError — transient I/O failure of either store (wraps cause)
├── EnqueueError          — admission could not push the job (hard failure)
├── MalformedJobError     — bytes on a queue do not decode to a MutationJob
├── EntityNotFoundError   — entity_id is not present in the durable store
├── AuthorizationError    — actor may not mutate the entity
├── InvalidMutationError  — request rejected before anything was touched
└── LockError
    ├── LockNotAcquiredError — lease held elsewhere; caller should retry later
    └── LockOwnershipError   — lease expired or was taken over by another holder

The worker treats StoreUnavailableError as transient (retry with backoff) and
every other DeferqError as logical (dead-letter, never retry).
"""

from __future__ import annotations


class DeferqError(Exception):
    """Base class for all deferq exceptions."""


class StoreUnavailableError(DeferqError):
    """
    Wraps a connectivity failure from a fast-store or durable-store adapter.

    Attributes
    ----------
    cause : Exception
        The original exception from the backend client.
    """

    def __init__(self, message: str, cause: Exception) -> None:
        self.cause = cause
        super().__init__(f"{message}: {cause}")


class EnqueueError(DeferqError):
    """Raised by the admission point when a job could not be queued."""

    def __init__(self, job_id: str, cause: Exception) -> None:
        self.job_id = job_id
        self.cause = cause
        super().__init__(f"Failed to enqueue job {job_id!r}: {cause}")


class MalformedJobError(DeferqError):
    """Raised when queue bytes cannot be decoded into a MutationJob."""


class EntityNotFoundError(DeferqError):
    """Raised when entity_id is not present in the durable store."""

    def __init__(self, entity_id: str) -> None:
        self.entity_id = entity_id
        super().__init__(f"Work {entity_id!r} not found")


class AuthorizationError(DeferqError):
    """Raised when an actor is not allowed to act on an entity."""

    def __init__(self, actor_id: str, entity_id: str | None = None) -> None:
        self.actor_id = actor_id
        self.entity_id = entity_id
        target = f"work {entity_id!r}" if entity_id is not None else "this operation"
        super().__init__(f"Actor {actor_id!r} is not authorized for {target}")


class InvalidMutationError(DeferqError):
    """Raised when a mutation request is rejected before it is queued."""


class LockError(DeferqError):
    """Base class for distributed lock failures."""

    def __init__(self, resource: str, message: str) -> None:
        self.resource = resource
        super().__init__(message)


class LockNotAcquiredError(LockError):
    """
    Raised when a lease could not be acquired within the bounded attempt budget.

    This is a retryable rejection ("too many requests"), not a crash.
    """

    def __init__(self, resource: str) -> None:
        super().__init__(resource, f"Lock {resource!r} is held by another owner")


class LockOwnershipError(LockError):
    """Raised when a lease is extended by a caller that no longer owns it."""

    def __init__(self, resource: str) -> None:
        super().__init__(resource, f"Lease on {resource!r} is no longer owned")
