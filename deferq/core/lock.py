"""
LockManager — time-bounded, token-owned exclusive leases (Redlock style).

Acquire
-------
    token = random
    for each store: SET resource token NX PX ttl
    validity = ttl - elapsed - (ttl * drift_factor + 2ms)
    acquired  iff  votes >= N // 2 + 1  and  validity > 0

A failed attempt releases whatever it did set, then retries up to
`retry_count` more times, sleeping `retry_delay` plus jitter. With the default
retry_count=0 a held lock is rejected immediately: acquisition is always
bounded and never waits for the current holder.

Release / extend
----------------
Both are compare-on-token, so a holder whose lease expired can never release
or extend a lease that has since been granted to someone else. Releasing an
expired lease is logged as an ownership conflict, not raised.

With a single store this is a plain SET NX lock; passing N independent stores
tolerates the loss of a minority of them without losing mutual exclusion.
"""

from __future__ import annotations

import asyncio
import dataclasses
import random
import secrets
import time
from collections.abc import AsyncIterator, Callable, Sequence
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

import structlog

from deferq.domain.errors import (
    LockNotAcquiredError,
    LockOwnershipError,
    StoreUnavailableError,
)
from deferq.domain.models import LockLease
from deferq.ports.fast_store import FastStorePort

if TYPE_CHECKING:
    from deferq.config import Settings

logger = structlog.get_logger(__name__)

_CLOCK_DRIFT_FLOOR: float = 0.002


@dataclasses.dataclass
class LockManager:
    """
    Parameters
    ----------
    stores       : one or more independent fast stores (quorum = N // 2 + 1)
    retry_count  : extra attempts after the first (default 0 = fail fast)
    retry_delay  : seconds between attempts
    retry_jitter : maximum random seconds added to retry_delay
    drift_factor : clock drift allowance as a fraction of the ttl
    clock        : monotonic time source in seconds
    """

    stores: Sequence[FastStorePort]
    retry_count: int = 0
    retry_delay: float = 0.2
    retry_jitter: float = 0.1
    drift_factor: float = 0.01
    clock: Callable[[], float] = time.monotonic

    def __post_init__(self) -> None:
        if not self.stores:
            raise ValueError("LockManager needs at least one store")
        if self.retry_count < 0:
            raise ValueError("retry_count must be >= 0")

    @classmethod
    def from_settings(
        cls, stores: Sequence[FastStorePort], settings: Settings
    ) -> LockManager:
        """Build a manager using the DEFERQ_LOCK_* retry and drift settings."""
        return cls(
            stores,
            retry_count=settings.lock_retry_count,
            retry_delay=settings.lock_retry_delay,
            drift_factor=settings.lock_drift_factor,
        )

    @property
    def quorum(self) -> int:
        return len(self.stores) // 2 + 1

    async def acquire(self, resource: str, ttl: float) -> LockLease:
        """
        Acquire an exclusive lease on `resource` for `ttl` seconds.

        Raises LockNotAcquiredError once every attempt has failed.
        """
        for attempt in range(self.retry_count + 1):
            token = secrets.token_hex(16)
            start = self.clock()
            votes = await asyncio.gather(
                *(self._set(store, resource, token, ttl) for store in self.stores)
            )
            validity = self._validity(ttl, start)
            if sum(votes) >= self.quorum and validity > 0:
                logger.debug("lock_acquired", resource=resource, validity=validity)
                return LockLease(resource=resource, token=token, validity=validity)

            await self._release_all(resource, token)
            if attempt < self.retry_count:
                await asyncio.sleep(
                    self.retry_delay + random.uniform(0, self.retry_jitter)
                )

        logger.info(
            "lock_not_acquired", resource=resource, attempts=self.retry_count + 1
        )
        raise LockNotAcquiredError(resource)

    async def release(self, lease: LockLease) -> bool:
        """
        Release a lease. Returns False (and logs) if no store still held it.
        """
        released = await self._release_all(lease.resource, lease.token)
        if not released:
            logger.warning("lock_release_conflict", resource=lease.resource)
            return False
        return True

    async def extend(self, lease: LockLease, ttl: float) -> LockLease:
        """
        Reset the lease expiry to `ttl` seconds from now.

        Raises LockOwnershipError if the lease is no longer held on a quorum.
        """
        start = self.clock()
        votes = await asyncio.gather(
            *(self._expire(store, lease, ttl) for store in self.stores)
        )
        validity = self._validity(ttl, start)
        if sum(votes) < self.quorum or validity <= 0:
            logger.warning("lock_extend_conflict", resource=lease.resource)
            raise LockOwnershipError(lease.resource)
        return lease.model_copy(update={"validity": validity})

    @asynccontextmanager
    async def hold(self, resource: str, ttl: float) -> AsyncIterator[LockLease]:
        """Acquire `resource` for the duration of the block; always release."""
        lease = await self.acquire(resource, ttl)
        try:
            yield lease
        finally:
            await self.release(lease)

    # ------------------------------------------------------------------ #
    # Internals                                                            #
    # ------------------------------------------------------------------ #

    def _validity(self, ttl: float, start: float) -> float:
        drift = ttl * self.drift_factor + _CLOCK_DRIFT_FLOOR
        return ttl - (self.clock() - start) - drift

    async def _release_all(self, resource: str, token: str) -> int:
        results = await asyncio.gather(
            *(self._delete(store, resource, token) for store in self.stores)
        )
        return sum(results)

    @staticmethod
    async def _set(store: FastStorePort, resource: str, token: str, ttl: float) -> bool:
        try:
            return await store.set_if_absent(resource, token, ttl)
        except StoreUnavailableError as exc:
            logger.warning("lock_store_unavailable", resource=resource, error=str(exc))
            return False

    @staticmethod
    async def _delete(store: FastStorePort, resource: str, token: str) -> bool:
        try:
            return await store.delete_if_equals(resource, token)
        except StoreUnavailableError as exc:
            logger.warning("lock_store_unavailable", resource=resource, error=str(exc))
            return False

    @staticmethod
    async def _expire(
        store: FastStorePort, lease: LockLease, ttl: float
    ) -> bool:
        try:
            return await store.expire_if_equals(lease.resource, lease.token, ttl)
        except StoreUnavailableError as exc:
            logger.warning(
                "lock_store_unavailable", resource=lease.resource, error=str(exc)
            )
            return False
