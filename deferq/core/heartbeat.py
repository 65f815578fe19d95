"""
HeartbeatManager — async context manager keeping a claim alive.

A worker wraps the application of a claimed job in HeartbeatManager. The
heartbeat is a fast-store key with a short TTL, refreshed every `interval`.
If the worker dies, the key expires and the Reaper returns the job from the
processing list to the source queue.

Usage
-----
    raw = await store.claim(source, processing)
    async with HeartbeatManager(store, layout.claim(raw), ttl=30, interval=10):
        await apply(raw)

If the body raises, the heartbeat task is still cancelled and the key is
removed; the caller decides what happens to the job.
"""

from __future__ import annotations

import asyncio
import dataclasses
from types import TracebackType

import structlog

from deferq.domain.errors import StoreUnavailableError
from deferq.ports.fast_store import FastStorePort

logger = structlog.get_logger(__name__)


@dataclasses.dataclass
class HeartbeatManager:
    """
    Sends periodic heartbeats for a single claimed entry.

    Parameters
    ----------
    store    : fast store holding the heartbeat key
    key      : heartbeat key for the claimed entry
    ttl      : seconds a heartbeat stays valid without refresh (default 30)
    interval : seconds between refreshes (default 10, must be < ttl)
    """

    store: FastStorePort
    key: str
    ttl: float = 30.0
    interval: float = 10.0

    _task: asyncio.Task[None] | None = dataclasses.field(
        default=None, init=False, repr=False
    )

    async def __aenter__(self) -> HeartbeatManager:
        await self._touch()
        self._task = asyncio.create_task(self._beat(), name=f"deferq-heartbeat-{self.key}")
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        try:
            await self.store.delete(self.key)
        except StoreUnavailableError as exc:
            # The key expires on its own.
            logger.warning("heartbeat_clear_failed", key=self.key, error=str(exc))

    async def _touch(self) -> None:
        await self.store.set(self.key, "1", self.ttl)

    async def _beat(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self._touch()
            except StoreUnavailableError as exc:
                logger.warning("heartbeat_failed", key=self.key, error=str(exc))
