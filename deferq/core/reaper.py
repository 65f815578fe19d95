"""
Reaper — return abandoned claims to the source queue.

A claimed entry sits on the processing list while a worker applies it, and
the worker keeps a heartbeat key alive for it (see heartbeat.py). An entry
whose heartbeat is missing belongs to a worker that crashed or was killed.

An entry must be seen without a heartbeat on `grace_sweeps` consecutive
sweeps before it is requeued. That covers the short window between a
worker's claim and its first heartbeat write.

Requeueing uses the store's atomic move, so two reapers racing over the same
entry requeue it once, and an entry acked in the meantime is left alone.
Requeued jobs may be applied twice; job application is idempotent.
"""

from __future__ import annotations

import asyncio
import dataclasses

import structlog

from deferq.core.keys import QueueLayout
from deferq.domain.errors import StoreUnavailableError
from deferq.ports.fast_store import FastStorePort

logger = structlog.get_logger(__name__)


@dataclasses.dataclass
class Reaper:
    """
    Parameters
    ----------
    store        : fast store holding the queues
    layout       : queue key layout
    partition    : which source/processing pair to sweep
    grace_sweeps : consecutive heartbeat-less sightings before requeue
    """

    store: FastStorePort
    layout: QueueLayout = dataclasses.field(default_factory=QueueLayout)
    partition: int = 0
    grace_sweeps: int = 2

    _suspects: dict[str, int] = dataclasses.field(
        default_factory=dict, init=False, repr=False
    )
    _stopped: asyncio.Event = dataclasses.field(
        default_factory=asyncio.Event, init=False, repr=False
    )

    async def sweep(self) -> int:
        """Run one pass. Returns the number of entries requeued."""
        processing = self.layout.processing(self.partition)
        source = self.layout.source(self.partition)
        entries = await self.store.range(processing)

        requeued = 0
        for raw in entries:
            if await self.store.get(self.layout.claim(raw)) is not None:
                self._suspects.pop(raw, None)
                continue
            sightings = self._suspects.get(raw, 0) + 1
            if sightings < self.grace_sweeps:
                self._suspects[raw] = sightings
                continue
            self._suspects.pop(raw, None)
            if await self.store.move(processing, source, raw):
                requeued += 1
                logger.warning("claim_requeued", queue=source, claim=self.layout.claim(raw))

        live = set(entries)
        for raw in list(self._suspects):
            if raw not in live:
                del self._suspects[raw]
        return requeued

    async def run(self, interval: float = 30.0) -> None:
        """Sweep every `interval` seconds until stop() is called."""
        self._stopped.clear()
        logger.info("reaper_started", partition=self.partition, interval=interval)
        while not self._stopped.is_set():
            try:
                await self.sweep()
            except StoreUnavailableError as exc:
                logger.warning(
                    "reaper_sweep_failed", partition=self.partition, error=str(exc)
                )
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=interval)
            except TimeoutError:
                pass
        logger.info("reaper_stopped", partition=self.partition)

    def stop(self) -> None:
        self._stopped.set()
