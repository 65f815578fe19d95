"""
ReadThroughCache — TTL-bounded read-through cache over the fast store.

Population is lazy and first-writer-wins:

  get(key) ── hit ──> cached value
      │
      └─ miss ─> loader() ─> add(key, value)   (SET NX: late arrivals lose)

Using set-if-absent instead of an unconditional set means a slow loader that
started before a faster one can never overwrite the fresher value; its result
is simply discarded. No separate stampede lock is needed.

Invalidation is an unconditional delete. Listings span many page keys, so
they are grouped under a generation token: pages are stored at
"{namespace}:{generation}:page:{n}" and invalidating the namespace deletes the
generation key, orphaning every page at once (they expire by TTL).

The cache is never the source of truth: fast-store failures on the read path
are logged and the loader result is returned uncached.
"""

from __future__ import annotations

import dataclasses
import uuid
from collections.abc import Awaitable, Callable, Iterable
from typing import Any, Generic, TypeVar

import structlog
from pydantic_core import from_json, to_json

from deferq.domain.errors import StoreUnavailableError
from deferq.ports.fast_store import FastStorePort

logger = structlog.get_logger(__name__)

T = TypeVar("T")

GENERATION_TTL: float = 24 * 60 * 60


@dataclasses.dataclass(frozen=True)
class CacheResult(Generic[T]):
    """A loaded value plus whether it came from the cache (X-Cache: HIT)."""

    value: T
    hit: bool


@dataclasses.dataclass
class ReadThroughCache:
    """
    Parameters
    ----------
    store : any FastStorePort implementation
    ttl   : seconds a populated entry stays valid (default 30)
    """

    store: FastStorePort
    ttl: float = 30.0

    async def get(self, key: str) -> Any | None:
        """Return the decoded entry, or None on miss."""
        raw = await self.store.get(key)
        return None if raw is None else from_json(raw)

    async def add(self, key: str, value: Any) -> bool:
        """Store `value` only if no entry exists. Returns True when stored."""
        return await self.store.set_if_absent(key, to_json(value).decode(), self.ttl)

    async def invalidate(self, *keys: str, namespaces: Iterable[str] = ()) -> int:
        """
        Unconditionally delete entries and bump `namespaces`, in one store call.
        """
        generations = [_generation_key(ns) for ns in namespaces]
        return await self.store.delete(*keys, *generations)

    async def get_or_load(
        self,
        key: str,
        loader: Callable[[], Awaitable[Any | None]],
    ) -> CacheResult[Any | None]:
        """
        Read-through lookup.

        The loader must return JSON-compatible data so that a hit and a miss
        yield the same shape. A loader result of None is returned but never
        cached.
        """
        try:
            cached = await self.get(key)
        except StoreUnavailableError as exc:
            logger.warning("cache_read_failed", key=key, error=str(exc))
            cached = None
        if cached is not None:
            return CacheResult(cached, hit=True)

        value = await loader()
        if value is None:
            return CacheResult(None, hit=False)
        try:
            stored = await self.add(key, value)
        except StoreUnavailableError as exc:
            logger.warning("cache_write_failed", key=key, error=str(exc))
        else:
            if not stored:
                logger.debug("cache_write_lost_race", key=key)
        return CacheResult(value, hit=False)

    # ------------------------------------------------------------------ #
    # Generations (multi-key invalidation)                                #
    # ------------------------------------------------------------------ #

    async def generation(self, namespace: str) -> str:
        """Current generation token of `namespace`, creating one if absent."""
        key = _generation_key(namespace)
        while True:
            current = await self.store.get(key)
            if current is not None:
                return current
            token = uuid.uuid4().hex
            if await self.store.set_if_absent(key, token, GENERATION_TTL):
                return token
            # Lost to another reader, whose token may itself be bumped already.

    async def bump(self, namespace: str) -> None:
        """Invalidate every entry stored under the current generation."""
        await self.store.delete(_generation_key(namespace))

    @staticmethod
    def page_key(namespace: str, generation: str, page: int) -> str:
        return f"{namespace}:{generation}:page:{page}"


def _generation_key(namespace: str) -> str:
    return f"{namespace}:gen"
