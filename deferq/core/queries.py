"""
WorkQueries — cached read paths over the durable store.

Snapshots are cached unscoped under work:{id}; ownership is checked after the
cache, so one actor's cached read can never leak a record to another actor.
An admin asking for someone else's work gets EntityNotFoundError, exactly
like a missing record.
"""

from __future__ import annotations

import dataclasses
from typing import Any

import structlog

from deferq.core.cache import CacheResult, ReadThroughCache
from deferq.core.keys import listing_namespace, work_key
from deferq.domain.errors import (
    AuthorizationError,
    EntityNotFoundError,
    StoreUnavailableError,
)
from deferq.domain.models import Actor, ActorRole, Work
from deferq.ports.durable_store import DurableStorePort

logger = structlog.get_logger(__name__)


@dataclasses.dataclass
class WorkQueries:
    durable: DurableStorePort
    cache: ReadThroughCache
    page_size: int = 100

    async def fetch_work(self, actor: Actor, entity_id: str) -> CacheResult[Work]:
        async def load() -> dict[str, Any] | None:
            work = await self.durable.get(entity_id)
            return work.model_dump(mode="json") if work is not None else None

        result = await self.cache.get_or_load(work_key(entity_id), load)
        if result.value is None:
            raise EntityNotFoundError(entity_id)
        work = Work.model_validate(result.value)
        if not actor.can_mutate(work.owner_id):
            raise EntityNotFoundError(entity_id)
        return CacheResult(work, hit=result.hit)

    async def list_owner_works(
        self, actor: Actor, page: int = 1
    ) -> CacheResult[list[Work]]:
        """One page of the admin's own works, newest first."""
        if actor.role is not ActorRole.ADMIN:
            raise AuthorizationError(actor.id)
        page = max(page, 1)

        async def load() -> list[dict[str, Any]]:
            works = await self.durable.list_by_owner(
                actor.id, skip=(page - 1) * self.page_size, limit=self.page_size
            )
            return [w.model_dump(mode="json") for w in works]

        namespace = listing_namespace(actor.id)
        try:
            generation = await self.cache.generation(namespace)
        except StoreUnavailableError as exc:
            logger.warning("cache_read_failed", key=namespace, error=str(exc))
            return CacheResult([Work.model_validate(d) for d in await load()], hit=False)

        key = self.cache.page_key(namespace, generation, page)
        result = await self.cache.get_or_load(key, load)
        return CacheResult(
            [Work.model_validate(d) for d in result.value or []], hit=result.hit
        )
