"""
DurableStorePort — the authoritative record of work entities.

Only point operations are required. Ownership scoping is expressed by the
optional `owner_id` argument: when given, the operation only matches a record
owned by that id; when None, it matches any record.

Connectivity failures are raised as StoreUnavailableError so the worker can
tell a transient failure from a logical one.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from deferq.domain.models import Work, WorkDraft


@runtime_checkable
class DurableStorePort(Protocol):
    """
    Implementing adapters (built-in):
      - InMemoryWorkStore — dict-backed, for testing
      - MongoWorkStore    — pymongo AsyncMongoClient
    """

    async def get(self, entity_id: str) -> Work | None:
        """Return the work with `entity_id`, or None."""
        ...

    async def delete(self, entity_id: str, owner_id: str | None = None) -> bool:
        """Delete a work. Returns False when no matching record existed."""
        ...

    async def update(
        self,
        entity_id: str,
        fields: dict[str, Any],
        owner_id: str | None = None,
    ) -> Work | None:
        """Apply a validated partial field-set. Returns the new state or None."""
        ...

    async def insert(self, draft: WorkDraft, owner_id: str) -> Work:
        """Create a work owned by `owner_id`."""
        ...

    async def list_by_owner(
        self, owner_id: str, skip: int = 0, limit: int = 100
    ) -> list[Work]:
        """Works owned by `owner_id`, newest first."""
        ...
