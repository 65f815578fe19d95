"""
InMemoryWorkStore — dict-backed durable store for tests and examples.

Set `available = False` to simulate an unreachable database: every call then
raises StoreUnavailableError, which the worker treats as transient.
"""

from __future__ import annotations

import asyncio
import dataclasses
import uuid
from typing import Any

from deferq.domain.errors import StoreUnavailableError
from deferq.domain.models import Work, WorkDraft


@dataclasses.dataclass
class InMemoryWorkStore:
    """
    In-process work store.

    Parameters
    ----------
    works : optional pre-populated records (useful for test setup)
    """

    works: dict[str, Work] = dataclasses.field(default_factory=dict)

    def __post_init__(self) -> None:
        self._lock: asyncio.Lock = asyncio.Lock()
        self.available: bool = True
        self.calls: list[str] = []

    def add(self, work: Work) -> Work:
        """Synchronous seeding helper."""
        self.works[work.id] = work
        return work

    async def get(self, entity_id: str) -> Work | None:
        async with self._lock:
            self._record("get")
            return self.works.get(entity_id)

    async def delete(self, entity_id: str, owner_id: str | None = None) -> bool:
        async with self._lock:
            self._record("delete")
            work = self._match(entity_id, owner_id)
            if work is None:
                return False
            del self.works[entity_id]
            return True

    async def update(
        self,
        entity_id: str,
        fields: dict[str, Any],
        owner_id: str | None = None,
    ) -> Work | None:
        async with self._lock:
            self._record("update")
            work = self._match(entity_id, owner_id)
            if work is None:
                return None
            updated = work.with_fields(fields)
            self.works[entity_id] = updated
            return updated

    async def insert(self, draft: WorkDraft, owner_id: str) -> Work:
        async with self._lock:
            self._record("insert")
            work = Work(id=uuid.uuid4().hex, owner_id=owner_id, **draft.model_dump())
            self.works[work.id] = work
            return work

    async def list_by_owner(
        self, owner_id: str, skip: int = 0, limit: int = 100
    ) -> list[Work]:
        async with self._lock:
            self._record("list_by_owner")
            owned = sorted(
                (w for w in self.works.values() if w.owner_id == owner_id),
                key=lambda w: w.created_at,
                reverse=True,
            )
            return owned[skip : skip + limit]

    def _record(self, op: str) -> None:
        if not self.available:
            raise StoreUnavailableError(
                f"In-memory work store {op} failed", ConnectionError("offline")
            )
        self.calls.append(op)

    def _match(self, entity_id: str, owner_id: str | None) -> Work | None:
        work = self.works.get(entity_id)
        if work is None or (owner_id is not None and work.owner_id != owner_id):
            return None
        return work
