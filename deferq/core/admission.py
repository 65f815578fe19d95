"""
MutationAdmission — accept a delete/update now, apply it later.

Admission never touches the durable store. Per request, in order:

  1. invalidate cache entries that could serve a stale view
     (work:{id} and the actor's listing generation)   — failure logged only
  2. push the encoded job onto the entity's source queue  — failure raised
  3. return Accepted (HTTP 202 equivalent)

Step 1 happens-before step 2, so no reader can observe a cache entry that
postdates a mutation which was never queued. There is no retry on enqueue:
the caller retries the whole request.
"""

from __future__ import annotations

import dataclasses
from typing import Any

import structlog

from deferq.core import codec
from deferq.core.cache import ReadThroughCache
from deferq.core.keys import QueueLayout, listing_namespace, work_key
from deferq.domain.errors import (
    EnqueueError,
    InvalidMutationError,
    StoreUnavailableError,
)
from deferq.domain.models import Accepted, Actor, MutationJob
from deferq.ports.fast_store import FastStorePort

logger = structlog.get_logger(__name__)


@dataclasses.dataclass
class MutationAdmission:
    """
    Parameters
    ----------
    store  : fast store holding the queues
    cache  : read-through cache to invalidate
    layout : queue key layout (partitioning)
    """

    store: FastStorePort
    cache: ReadThroughCache
    layout: QueueLayout = dataclasses.field(default_factory=QueueLayout)

    async def submit_delete(self, actor: Actor, entity_id: str) -> Accepted:
        """Queue deletion of a work record."""
        _require_id(entity_id)
        return await self._admit(actor, MutationJob.delete(actor, entity_id))

    async def submit_update(
        self, actor: Actor, entity_id: str, fields: dict[str, Any]
    ) -> Accepted:
        """Queue a partial update; None and empty-string values are not sent."""
        _require_id(entity_id)
        supplied = {k: v for k, v in fields.items() if v is not None and v != ""}
        if not supplied:
            raise InvalidMutationError("update requires at least one field")
        return await self._admit(actor, MutationJob.update(actor, entity_id, supplied))

    async def _admit(self, actor: Actor, job: MutationJob) -> Accepted:
        log = logger.bind(job_id=job.id, entity_id=job.entity_id, kind=job.kind.value)

        try:
            await self.cache.invalidate(
                work_key(job.entity_id), namespaces=[listing_namespace(actor.id)]
            )
        except StoreUnavailableError as exc:
            log.warning("cache_invalidation_failed", error=str(exc))

        queue = self.layout.source(self.layout.partition_for(job.entity_id))
        try:
            await self.store.push(queue, codec.encode(job))
        except StoreUnavailableError as exc:
            log.error("enqueue_failed", queue=queue, error=str(exc))
            raise EnqueueError(job.id, exc) from exc

        log.info("mutation_accepted", queue=queue, actor_id=actor.id)
        return Accepted(job_id=job.id, entity_id=job.entity_id, kind=job.kind)


def _require_id(entity_id: str) -> None:
    if not entity_id or not entity_id.strip():
        raise InvalidMutationError("entity id must not be blank")
