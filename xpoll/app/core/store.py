"""State store abstraction for the request guards.

Rate buckets, CSRF token records and session activity all live behind this
interface, so the process-local dictionary can be swapped for a shared Redis
instance without touching the guards.
"""

import asyncio
import json
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable

from xpoll.app.core.logging import get_logger

logger = get_logger(__name__)

ExpiryPredicate = Callable[[dict[str, Any]], bool]


@dataclass
class _StoreEntry:
    """Internal entry with optional hard TTL."""

    value: dict[str, Any]
    expires_at: float | None = None

    def is_expired(self, now: float) -> bool:
        if self.expires_at is None:
            return False
        return now > self.expires_at


class StateStore(ABC):
    """Abstract base class for guard state stores.

    Values are plain JSON-compatible dictionaries. ``ttl`` is a hard upper
    bound after which the store may drop the entry on its own; the guards
    still apply their own expiry rules on read.
    """

    @abstractmethod
    async def get(self, key: str) -> dict[str, Any] | None:
        """Return the value for ``key`` or None if absent."""

    @abstractmethod
    async def set(self, key: str, value: dict[str, Any], ttl: float | None = None) -> None:
        """Store ``value`` under ``key``, replacing any previous value."""

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Remove ``key``. Returns True if something was removed."""

    @abstractmethod
    async def sweep(self, is_expired: ExpiryPredicate) -> int:
        """Delete every entry whose value satisfies ``is_expired``.

        Returns:
            Number of entries removed.
        """

    @abstractmethod
    async def size(self) -> int:
        """Number of live entries."""

    @abstractmethod
    async def clear(self) -> None:
        """Remove all entries."""

    async def ping(self) -> bool:
        """Check the store is reachable."""
        return True


class InMemoryStore(StateStore):
    """Process-local dictionary store.

    Not shared between workers and lost on restart. Each operation completes
    without awaiting, so it is atomic with respect to other coroutines on the
    same event loop.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._data: dict[str, _StoreEntry] = {}
        self._clock = clock

    async def get(self, key: str) -> dict[str, Any] | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            del self._data[key]
            return None
        return dict(entry.value)

    async def set(self, key: str, value: dict[str, Any], ttl: float | None = None) -> None:
        expires_at = self._clock() + ttl if ttl and ttl > 0 else None
        self._data[key] = _StoreEntry(value=dict(value), expires_at=expires_at)

    async def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    async def sweep(self, is_expired: ExpiryPredicate) -> int:
        now = self._clock()
        expired_keys = [
            key for key, entry in self._data.items()
            if entry.is_expired(now) or is_expired(entry.value)
        ]
        for key in expired_keys:
            del self._data[key]
        return len(expired_keys)

    async def size(self) -> int:
        return len(self._data)

    async def clear(self) -> None:
        self._data.clear()


class RedisStore(StateStore):
    """Redis-backed store shared between processes.

    Values are JSON encoded under ``xpoll:<namespace>:<key>``. Expiry is
    delegated to Redis key TTLs, so ``sweep`` has nothing to do.

    Read-check-write sequences in the guards are serialised per process
    only; cross-process races on the same key remain possible.
    """

    def __init__(self, redis_url: str, namespace: str, redis_client: Any | None = None) -> None:
        self._redis_url = redis_url
        self._prefix = f"xpoll:{namespace}:"
        self._redis = redis_client

    async def _get_client(self) -> Any:
        if self._redis is None:
            import redis.asyncio as aioredis
            self._redis = aioredis.from_url(self._redis_url)
        return self._redis

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def get(self, key: str) -> dict[str, Any] | None:
        client = await self._get_client()
        raw = await client.get(self._key(key))
        if raw is None:
            return None
        return json.loads(raw)

    async def set(self, key: str, value: dict[str, Any], ttl: float | None = None) -> None:
        client = await self._get_client()
        payload = json.dumps(value)
        if ttl and ttl > 0:
            # Redis TTLs are whole seconds; round up so entries never vanish early.
            await client.set(self._key(key), payload, ex=max(1, int(ttl + 0.999)))
        else:
            await client.set(self._key(key), payload)

    async def delete(self, key: str) -> bool:
        client = await self._get_client()
        return await client.delete(self._key(key)) > 0

    async def sweep(self, is_expired: ExpiryPredicate) -> int:
        return 0

    async def size(self) -> int:
        client = await self._get_client()
        count = 0
        async for _ in client.scan_iter(match=f"{self._prefix}*"):
            count += 1
        return count

    async def clear(self) -> None:
        client = await self._get_client()
        keys = [key async for key in client.scan_iter(match=f"{self._prefix}*")]
        if keys:
            await client.delete(*keys)

    async def ping(self) -> bool:
        client = await self._get_client()
        return bool(await client.ping())

    async def close(self) -> None:
        """Close the Redis connection."""
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


def get_store(
    namespace: str,
    backend: str | None = None,
    redis_url: str | None = None,
) -> StateStore:
    """Create a store for one guard.

    Args:
        namespace: Key namespace, e.g. "ratelimit", "csrf", "session".
        backend: 'memory', 'redis', or None to follow settings.redis_enabled.
        redis_url: Redis connection URL. Defaults to settings.redis_url.

    Returns:
        An InMemoryStore or RedisStore instance.
    """
    from xpoll.app.core.config import settings

    if backend == "redis":
        use_redis = True
    elif backend == "memory":
        use_redis = False
    else:
        use_redis = settings.redis_enabled

    if use_redis:
        logger.info(f"Using Redis state store for '{namespace}'")
        return RedisStore(redis_url or settings.redis_url, namespace)

    logger.debug(f"Using in-memory state store for '{namespace}'")
    return InMemoryStore()


class KeyedLock:
    """One asyncio.Lock per key, created on demand.

    Guards hold the lock for the duration of a read-check-write sequence so
    two requests for the same key cannot interleave between the read and the
    write. Locks for idle keys are dropped once released.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}

    def __call__(self, key: str) -> "_KeyedLockContext":
        return _KeyedLockContext(self, key)

    def __len__(self) -> int:
        return len(self._locks)


class _KeyedLockContext:
    def __init__(self, owner: KeyedLock, key: str) -> None:
        self._owner = owner
        self._key = key

    async def __aenter__(self) -> None:
        owner = self._owner
        lock = owner._locks.setdefault(self._key, asyncio.Lock())
        owner._waiters[self._key] = owner._waiters.get(self._key, 0) + 1
        try:
            await lock.acquire()
        except BaseException:
            self._forget()
            raise

    async def __aexit__(self, *exc_info: Any) -> None:
        self._owner._locks[self._key].release()
        self._forget()

    def _forget(self) -> None:
        owner = self._owner
        owner._waiters[self._key] -= 1
        if owner._waiters[self._key] == 0:
            del owner._waiters[self._key]
            del owner._locks[self._key]
