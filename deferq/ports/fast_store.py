"""
FastStorePort — the shared key-value / list store behind queues, locks and cache.

Any object satisfying this structural Protocol can act as the fast store.
No base class or registration is required.

Atomicity contract
------------------
Every method is a single atomic operation on the backing store. Callers never
combine two round trips into a read-modify-write; where an operation needs
more than one step (move, delete_if_equals, expire_if_equals) the adapter
executes it atomically (a Lua script on Redis, a lock in memory).

List orientation
----------------
push() adds to the head; claim() takes from the tail. A list is therefore a
FIFO queue when written with push() and drained with claim().

Failures
--------
Connectivity failures (refused connection, timeout) are raised as
StoreUnavailableError. All other exceptions propagate unchanged.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable


@runtime_checkable
class FastStorePort(Protocol):
    """
    Minimal interface required by deferq core.

    Implementing adapters (built-in):
      - InMemoryFastStore — asyncio.Condition-based, for testing
      - RedisFastStore    — redis.asyncio client
    """

    async def get(self, key: str) -> str | None:
        """Return the string value of `key`, or None when absent or expired."""
        ...

    async def set(self, key: str, value: str, ttl: float) -> None:
        """Unconditionally set `key` with an expiry of `ttl` seconds."""
        ...

    async def set_if_absent(self, key: str, value: str, ttl: float) -> bool:
        """Set `key` only when absent. Returns True when this call set it."""
        ...

    async def delete(self, *keys: str) -> int:
        """Delete keys unconditionally. Returns the number removed."""
        ...

    async def delete_if_equals(self, key: str, value: str) -> bool:
        """Delete `key` only while it still holds `value`."""
        ...

    async def expire_if_equals(self, key: str, value: str, ttl: float) -> bool:
        """Reset the expiry of `key` only while it still holds `value`."""
        ...

    async def incr(self, key: str, ttl: float) -> int:
        """Atomically increment a counter and (re)set its expiry."""
        ...

    async def push(self, key: str, value: str) -> int:
        """Push `value` onto the head of list `key`. Returns the new length."""
        ...

    async def claim(
        self, source: str, destination: str, timeout: float | None = None
    ) -> str | None:
        """
        Atomically pop the tail of `source` and push it onto `destination`.

        Blocks until an element is available. `timeout` None or 0 blocks
        indefinitely; otherwise returns None once `timeout` seconds pass.
        """
        ...

    async def remove(self, key: str, value: str) -> int:
        """Remove one occurrence of `value` from list `key`."""
        ...

    async def move(
        self,
        source: str,
        destination: str,
        value: str,
        replacement: str | None = None,
    ) -> bool:
        """
        Remove one occurrence of `value` from `source` and, only if one was
        removed, push `replacement` (default: `value`) onto `destination`.

        Returns True when the move happened.
        """
        ...

    async def range(self, key: str, start: int = 0, stop: int = -1) -> list[str]:
        """Return list elements head-first, inclusive of `stop`."""
        ...

    async def length(self, key: str) -> int:
        """Return the length of list `key` (0 when absent)."""
        ...
