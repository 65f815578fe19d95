"""
WorkCreation — create a work record under a per-actor upload lock.

The whole create (image upload + insert) runs while holding
upload-lock:{actor_id}. A second create from the same actor while the first
is in flight is rejected with LockNotAcquiredError, which callers surface as
"too many requests, try again later". The lease TTL bounds how long a crashed
holder can block the actor.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Sequence
from typing import TYPE_CHECKING

import structlog

from deferq.core.cache import ReadThroughCache
from deferq.core.keys import listing_namespace, upload_lock
from deferq.core.lock import LockManager
from deferq.domain.errors import (
    AuthorizationError,
    InvalidMutationError,
    StoreUnavailableError,
)
from deferq.domain.models import Actor, ActorRole, Work, WorkDraft
from deferq.ports.durable_store import DurableStorePort
from deferq.ports.fast_store import FastStorePort
from deferq.ports.uploader import ObjectUploaderPort

if TYPE_CHECKING:
    from deferq.config import Settings

logger = structlog.get_logger(__name__)

UPLOAD_FOLDER: str = "Image-prompt works"


@dataclasses.dataclass
class WorkCreation:
    durable: DurableStorePort
    uploader: ObjectUploaderPort
    locks: LockManager
    cache: ReadThroughCache
    lock_ttl: float = 30.0
    folder: str = UPLOAD_FOLDER

    @classmethod
    def from_settings(
        cls,
        durable: DurableStorePort,
        uploader: ObjectUploaderPort,
        lock_stores: Sequence[FastStorePort],
        cache: ReadThroughCache,
        settings: Settings,
    ) -> WorkCreation:
        return cls(
            durable,
            uploader,
            LockManager.from_settings(lock_stores, settings),
            cache,
            lock_ttl=settings.lock_ttl,
        )

    async def create(
        self, actor: Actor, image: bytes, prompt: str, category_id: str
    ) -> Work:
        if actor.role is not ActorRole.ADMIN:
            raise AuthorizationError(actor.id)
        if not image:
            raise InvalidMutationError("image is required")
        if not prompt or not prompt.strip():
            raise InvalidMutationError("prompt is required")
        if not category_id or not category_id.strip():
            raise InvalidMutationError("category is required")

        async with self.locks.hold(upload_lock(actor.id), self.lock_ttl):
            url = await self.uploader.upload(image, self.folder)
            work = await self.durable.insert(
                WorkDraft(prompt=prompt, image_url=url, category_id=category_id),
                owner_id=actor.id,
            )

        try:
            await self.cache.bump(listing_namespace(actor.id))
        except StoreUnavailableError as exc:
            logger.warning("cache_invalidation_failed", work_id=work.id, error=str(exc))
        logger.info("work_created", work_id=work.id, owner_id=actor.id)
        return work
