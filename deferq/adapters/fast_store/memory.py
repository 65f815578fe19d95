"""
InMemoryFastStore — asyncio.Condition-based fast store for testing and development.

Keeps string keys (with optional expiry) and lists in plain dicts. A single
asyncio.Condition serializes every operation, which gives each method the same
atomicity the Redis adapter gets from single commands and Lua scripts, and
lets claim() block without polling until a push() notifies it.

Expiry uses an injectable monotonic clock so tests can advance time without
sleeping.

Zero external dependencies. Safe for multiple concurrent coroutines in a
single event loop. NOT safe across processes or threads.
"""

from __future__ import annotations

import asyncio
import dataclasses
import time
from collections.abc import Callable

from deferq.domain.errors import StoreUnavailableError


@dataclasses.dataclass
class InMemoryFastStore:
    """
    In-process fast store.

    Parameters
    ----------
    clock : monotonic time source in seconds (default time.monotonic)
    """

    clock: Callable[[], float] = time.monotonic

    def __post_init__(self) -> None:
        self._values: dict[str, tuple[str, float | None]] = {}
        self._lists: dict[str, list[str]] = {}
        self._cond: asyncio.Condition = asyncio.Condition()
        self.available: bool = True

    # ------------------------------------------------------------------ #
    # Keys                                                                 #
    # ------------------------------------------------------------------ #

    async def get(self, key: str) -> str | None:
        async with self._cond:
            self._check()
            return self._live(key)

    async def set(self, key: str, value: str, ttl: float) -> None:
        async with self._cond:
            self._check()
            self._values[key] = (value, self.clock() + ttl)

    async def set_if_absent(self, key: str, value: str, ttl: float) -> bool:
        async with self._cond:
            self._check()
            if self._live(key) is not None:
                return False
            self._values[key] = (value, self.clock() + ttl)
            return True

    async def delete(self, *keys: str) -> int:
        async with self._cond:
            self._check()
            removed = 0
            for key in keys:
                if self._live(key) is not None:
                    removed += 1
                self._values.pop(key, None)
                if self._lists.pop(key, None):
                    removed += 1
            return removed

    async def delete_if_equals(self, key: str, value: str) -> bool:
        async with self._cond:
            self._check()
            if self._live(key) != value:
                return False
            del self._values[key]
            return True

    async def expire_if_equals(self, key: str, value: str, ttl: float) -> bool:
        async with self._cond:
            self._check()
            if self._live(key) != value:
                return False
            self._values[key] = (value, self.clock() + ttl)
            return True

    async def incr(self, key: str, ttl: float) -> int:
        async with self._cond:
            self._check()
            count = int(self._live(key) or 0) + 1
            self._values[key] = (str(count), self.clock() + ttl)
            return count

    # ------------------------------------------------------------------ #
    # Lists                                                                #
    # ------------------------------------------------------------------ #

    async def push(self, key: str, value: str) -> int:
        async with self._cond:
            self._check()
            items = self._lists.setdefault(key, [])
            items.insert(0, value)
            self._cond.notify_all()
            return len(items)

    async def claim(
        self, source: str, destination: str, timeout: float | None = None
    ) -> str | None:
        async with self._cond:
            self._check()
            try:
                async with asyncio.timeout(timeout or None):
                    await self._cond.wait_for(lambda: bool(self._lists.get(source)))
            except TimeoutError:
                return None
            self._check()
            value = self._lists[source].pop()
            self._lists.setdefault(destination, []).insert(0, value)
            return value

    async def remove(self, key: str, value: str) -> int:
        async with self._cond:
            self._check()
            return 1 if self._remove_one(key, value) else 0

    async def move(
        self,
        source: str,
        destination: str,
        value: str,
        replacement: str | None = None,
    ) -> bool:
        async with self._cond:
            self._check()
            if not self._remove_one(source, value):
                return False
            self._lists.setdefault(destination, []).insert(
                0, value if replacement is None else replacement
            )
            self._cond.notify_all()
            return True

    async def range(self, key: str, start: int = 0, stop: int = -1) -> list[str]:
        async with self._cond:
            self._check()
            items = self._lists.get(key, [])
            end = None if stop == -1 else stop + 1
            return list(items[start:end])

    async def length(self, key: str) -> int:
        async with self._cond:
            self._check()
            return len(self._lists.get(key, []))

    # ------------------------------------------------------------------ #
    # Internals                                                            #
    # ------------------------------------------------------------------ #

    def _check(self) -> None:
        if not self.available:
            raise StoreUnavailableError(
                "In-memory fast store unavailable", ConnectionError("offline")
            )

    def _live(self, key: str) -> str | None:
        entry = self._values.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self.clock():
            del self._values[key]
            return None
        return value

    def _remove_one(self, key: str, value: str) -> bool:
        items = self._lists.get(key)
        if not items or value not in items:
            return False
        items.remove(value)
        if not items:
            del self._lists[key]
        return True
