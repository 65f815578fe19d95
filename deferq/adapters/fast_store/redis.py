"""
RedisFastStore — redis-py asyncio adapter.

Install: pip install redis

Atomicity
---------
Single-command operations map directly onto Redis commands:

  set_if_absent → SET key value NX PX ttl
  claim         → BLMOVE source destination RIGHT LEFT timeout
  remove        → LREM key 1 value

Multi-step operations run as Lua scripts via EVAL, which Redis executes
atomically:

  delete_if_equals → GET + DEL        (lock release)
  expire_if_equals → GET + PEXPIRE    (lock extension)
  incr             → INCR + PEXPIRE   (attempt counters)
  move             → LREM + LPUSH     (retry / dead-letter / reaper requeue)

Blocking claims
---------------
BLMOVE holds the connection for up to `timeout` seconds; the client's
socket_timeout must be larger than the claim timeout (or None).
"""

from __future__ import annotations

import dataclasses
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from redis import exceptions as redis_exceptions

from deferq.domain.errors import StoreUnavailableError

if TYPE_CHECKING:
    from redis.asyncio import Redis

_DELETE_IF_EQUALS = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
    return redis.call("DEL", KEYS[1])
end
return 0
"""

_EXPIRE_IF_EQUALS = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
    return redis.call("PEXPIRE", KEYS[1], ARGV[2])
end
return 0
"""

_INCR_WITH_TTL = """
local count = redis.call("INCR", KEYS[1])
redis.call("PEXPIRE", KEYS[1], ARGV[1])
return count
"""

_MOVE = """
if redis.call("LREM", KEYS[1], 1, ARGV[1]) == 1 then
    redis.call("LPUSH", KEYS[2], ARGV[2])
    return 1
end
return 0
"""

_TRANSIENT = (
    redis_exceptions.ConnectionError,
    redis_exceptions.TimeoutError,
    redis_exceptions.BusyLoadingError,
)


def _ms(seconds: float) -> int:
    return max(1, int(seconds * 1000))


@asynccontextmanager
async def _translate(operation: str) -> AsyncIterator[None]:
    """Re-raise Redis connectivity errors as StoreUnavailableError."""
    try:
        yield
    except _TRANSIENT as exc:
        raise StoreUnavailableError(f"Redis {operation} failed", exc) from exc


@dataclasses.dataclass
class RedisFastStore:
    """
    Redis fast-store adapter.

    Parameters
    ----------
    client : redis.asyncio.Redis created with decode_responses=True
    """

    client: Redis

    @classmethod
    def from_url(cls, url: str, **kwargs: object) -> "RedisFastStore":
        """Build a store from a redis:// URL (decode_responses is forced on)."""
        from redis.asyncio import Redis

        return cls(client=Redis.from_url(url, decode_responses=True, **kwargs))

    async def close(self) -> None:
        await self.client.aclose()

    # ------------------------------------------------------------------ #
    # Keys                                                                 #
    # ------------------------------------------------------------------ #

    async def get(self, key: str) -> str | None:
        async with _translate("GET"):
            return await self.client.get(key)

    async def set(self, key: str, value: str, ttl: float) -> None:
        async with _translate("SET"):
            await self.client.set(key, value, px=_ms(ttl))

    async def set_if_absent(self, key: str, value: str, ttl: float) -> bool:
        async with _translate("SET NX"):
            return bool(await self.client.set(key, value, nx=True, px=_ms(ttl)))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        async with _translate("DEL"):
            return int(await self.client.delete(*keys))

    async def delete_if_equals(self, key: str, value: str) -> bool:
        async with _translate("compare-and-delete"):
            return bool(await self.client.eval(_DELETE_IF_EQUALS, 1, key, value))

    async def expire_if_equals(self, key: str, value: str, ttl: float) -> bool:
        async with _translate("compare-and-expire"):
            result = await self.client.eval(_EXPIRE_IF_EQUALS, 1, key, value, _ms(ttl))
            return bool(result)

    async def incr(self, key: str, ttl: float) -> int:
        async with _translate("INCR"):
            return int(await self.client.eval(_INCR_WITH_TTL, 1, key, _ms(ttl)))

    # ------------------------------------------------------------------ #
    # Lists                                                                #
    # ------------------------------------------------------------------ #

    async def push(self, key: str, value: str) -> int:
        async with _translate("LPUSH"):
            return int(await self.client.lpush(key, value))

    async def claim(
        self, source: str, destination: str, timeout: float | None = None
    ) -> str | None:
        async with _translate("BLMOVE"):
            return await self.client.blmove(
                source, destination, timeout or 0, src="RIGHT", dest="LEFT"
            )

    async def remove(self, key: str, value: str) -> int:
        async with _translate("LREM"):
            return int(await self.client.lrem(key, 1, value))

    async def move(
        self,
        source: str,
        destination: str,
        value: str,
        replacement: str | None = None,
    ) -> bool:
        pushed = value if replacement is None else replacement
        async with _translate("move"):
            result = await self.client.eval(
                _MOVE, 2, source, destination, value, pushed
            )
            return bool(result)

    async def range(self, key: str, start: int = 0, stop: int = -1) -> list[str]:
        async with _translate("LRANGE"):
            return list(await self.client.lrange(key, start, stop))

    async def length(self, key: str) -> int:
        async with _translate("LLEN"):
            return int(await self.client.llen(key))
