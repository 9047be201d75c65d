"""
Key/value storage with atomic primitives.

The only shared mutable state in the engine (authorization codes, revoked
refresh-token ids, CSRF tokens, consent grants) lives behind the KVStore
protocol. Correctness under concurrency rests on two primitives:

    set_if_absent(key, value, ttl)       -> True iff this call created the key
    compare_and_swap(key, expected, new) -> True iff the stored value was `expected`

Two concurrent requests racing on the same code or the same refresh token
both call one of these, and the store guarantees exactly one of them gets
True. Every entry carries a TTL so the store bounds its own size.

Backends:
- InMemoryKVStore: single process, for development and tests
- RedisKVStore: shared across workers; SET NX PX and a Lua CAS script

Values are strings. Callers serialize their own records.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Protocol

import redis.asyncio as redis_async
from redis.exceptions import RedisError

from mcp_oauth.errors import StorageUnavailableError

logger = logging.getLogger(__name__)


class KVStore(Protocol):
    """Protocol for string key/value storage with TTLs and atomic updates."""

    async def get(self, key: str) -> str | None:
        """Return the value, or None if absent or expired."""
        ...

    async def set_if_absent(self, key: str, value: str, ttl: float) -> bool:
        """Create the key with a TTL in seconds. False if it already exists."""
        ...

    async def compare_and_swap(self, key: str, expected: str, new: str) -> bool:
        """Replace the value iff it currently equals `expected`. Keeps the TTL."""
        ...

    async def set(self, key: str, value: str, ttl: float) -> None:
        """Unconditionally write the key with a fresh TTL."""
        ...

    async def delete(self, key: str) -> None:
        ...

    async def ping(self) -> bool:
        ...


class InMemoryKVStore:
    """
    Dict-backed KVStore for a single process.

    Expired entries are dropped lazily on access. The clock is injectable so
    tests can move time forward without sleeping.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._data: dict[str, tuple[str, float]] = {}
        self._lock = asyncio.Lock()
        self._clock = clock

    def _live(self, key: str) -> str | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            del self._data[key]
            return None
        return value

    async def get(self, key: str) -> str | None:
        async with self._lock:
            return self._live(key)

    async def set_if_absent(self, key: str, value: str, ttl: float) -> bool:
        async with self._lock:
            if self._live(key) is not None:
                return False
            self._data[key] = (value, self._clock() + ttl)
            return True

    async def compare_and_swap(self, key: str, expected: str, new: str) -> bool:
        async with self._lock:
            if self._live(key) != expected:
                return False
            _, expires_at = self._data[key]
            self._data[key] = (new, expires_at)
            return True

    async def set(self, key: str, value: str, ttl: float) -> None:
        async with self._lock:
            self._data[key] = (value, self._clock() + ttl)

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._data.pop(key, None)

    async def ping(self) -> bool:
        return True

    def __len__(self) -> int:
        return sum(1 for key in list(self._data) if self._live(key) is not None)


# Replace only if the current value matches; KEEPTTL (Redis >= 6) leaves the
# original expiry in place so a consumed code still disappears on schedule.
_CAS_SCRIPT = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
    redis.call("SET", KEYS[1], ARGV[2], "KEEPTTL")
    return 1
end
return 0
"""


class RedisKVStore:
    """
    KVStore backed by Redis.

    Every call is bounded by `timeout` seconds. Timeouts and connection
    errors raise StorageUnavailableError; they are never mapped to an
    "absent" answer.
    """

    def __init__(self, client: redis_async.Redis, timeout: float = 2.0):
        self._client = client
        self._timeout = timeout

    @classmethod
    def from_url(cls, url: str, timeout: float = 2.0) -> RedisKVStore:
        client = redis_async.from_url(
            url,
            decode_responses=True,
            socket_timeout=timeout,
            socket_connect_timeout=timeout,
        )
        return cls(client, timeout=timeout)

    async def _call(self, operation: str, awaitable):
        try:
            return await asyncio.wait_for(awaitable, timeout=self._timeout)
        except asyncio.TimeoutError as e:
            logger.error("Redis %s timed out after %.1fs", operation, self._timeout)
            raise StorageUnavailableError(f"Store timeout during {operation}") from e
        except RedisError as e:
            logger.error("Redis %s failed: %s", operation, e)
            raise StorageUnavailableError(f"Store unavailable during {operation}") from e

    @staticmethod
    def _ttl_ms(ttl: float) -> int:
        return max(1, int(ttl * 1000))

    async def get(self, key: str) -> str | None:
        return await self._call("get", self._client.get(key))

    async def set_if_absent(self, key: str, value: str, ttl: float) -> bool:
        created = await self._call(
            "set_if_absent",
            self._client.set(key, value, px=self._ttl_ms(ttl), nx=True),
        )
        return bool(created)

    async def compare_and_swap(self, key: str, expected: str, new: str) -> bool:
        swapped = await self._call(
            "compare_and_swap",
            self._client.eval(_CAS_SCRIPT, 1, key, expected, new),
        )
        return swapped == 1

    async def set(self, key: str, value: str, ttl: float) -> None:
        await self._call("set", self._client.set(key, value, px=self._ttl_ms(ttl)))

    async def delete(self, key: str) -> None:
        await self._call("delete", self._client.delete(key))

    async def ping(self) -> bool:
        try:
            return bool(await self._call("ping", self._client.ping()))
        except StorageUnavailableError:
            return False

    async def aclose(self) -> None:
        await self._client.aclose()


class KeySpace:
    """Namespaced key builder, one namespace per kind of record."""

    def __init__(self, prefix: str = ""):
        self.prefix = prefix

    def code(self, code: str) -> str:
        return f"{self.prefix}oauth:code:{code}"

    def revoked_refresh(self, jti: str) -> str:
        return f"{self.prefix}oauth:revoked-refresh:{jti}"

    def refresh_family(self, family_id: str) -> str:
        return f"{self.prefix}oauth:refresh-family:{family_id}"

    def csrf(self, token_hash: str) -> str:
        return f"{self.prefix}oauth:csrf:{token_hash}"

    def consent(self, subject: str, client_id: str) -> str:
        return f"{self.prefix}oauth:consent:{subject}:{client_id}"
