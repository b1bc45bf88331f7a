"""
Key-value store client used for sessions, refresh records, the access-token
denylist, reset tokens and rate-limit counters.

Redis in every shared deployment. The in-memory backend exists for local
development and tests and is chosen only when REDIS_URL is unset; Redis
errors always propagate so an outage can never degrade into "allow all".
"""

import asyncio
import fnmatch
import json
import logging
import time
from typing import Any, Callable, Iterable, Optional, Set

from blog_cms.core.config import settings

logger = logging.getLogger("blog_cms.kv_store")


class KeyValueStore:
    """Base class for key-value backends."""

    async def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        raise NotImplementedError

    async def getdel(self, key: str) -> Optional[str]:
        """Read and remove a key in one step. Only one caller ever sees the value."""
        raise NotImplementedError

    async def delete(self, *keys: str) -> int:
        raise NotImplementedError

    async def exists(self, key: str) -> bool:
        raise NotImplementedError

    async def expire(self, key: str, ttl: int) -> bool:
        """Set a key's TTL. Returns False when the key does not exist."""
        raise NotImplementedError

    async def ttl(self, key: str) -> int:
        """Seconds left on a key; -1 when it has no expiry, -2 when it is missing."""
        raise NotImplementedError

    async def incr(self, key: str, ttl: int, reset_ttl: bool = False) -> int:
        """
        Increment a counter and return the new value.

        The TTL is applied when the key has none yet (first increment, or a
        key left without expiry by an interrupted write). With reset_ttl it is
        re-applied on every increment.
        """
        raise NotImplementedError

    async def sadd(self, key: str, *members: str) -> int:
        raise NotImplementedError

    async def srem(self, key: str, *members: str) -> int:
        raise NotImplementedError

    async def smembers(self, key: str) -> Set[str]:
        raise NotImplementedError

    async def scan_keys(self, pattern: str) -> list[str]:
        raise NotImplementedError

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        pass

    async def delete_pattern(self, pattern: str) -> int:
        """Delete every key matching a glob-style pattern."""
        keys = await self.scan_keys(pattern)
        if not keys:
            return 0
        return await self.delete(*keys)

    async def get_json(self, key: str) -> Any:
        raw = await self.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"Discarding non-JSON value stored at {key}")
            return None

    async def set_json(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        await self.set(key, json.dumps(value, default=str), ttl)


class InMemoryKeyValueStore(KeyValueStore):
    """
    Process-local store with Redis-like TTL semantics.
    Not suitable for more than one worker process.

    `clock` returns seconds and can be replaced in tests to move time forward.
    """

    def __init__(self, clock: Optional[Callable[[], float]] = None):
        self._data: dict[str, Any] = {}
        self._expiry: dict[str, float] = {}
        self._clock = clock or time.monotonic
        self._lock = asyncio.Lock()

    def _purge_if_expired(self, key: str) -> None:
        expiry = self._expiry.get(key)
        if expiry is not None and expiry <= self._clock():
            self._data.pop(key, None)
            self._expiry.pop(key, None)

    def _live_keys(self) -> Iterable[str]:
        for key in list(self._data):
            self._purge_if_expired(key)
        return list(self._data)

    def _apply_ttl(self, key: str, ttl: Optional[int]) -> None:
        if ttl:
            self._expiry[key] = self._clock() + ttl
        else:
            self._expiry.pop(key, None)

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            self._purge_if_expired(key)
            value = self._data.get(key)
            if isinstance(value, set):
                raise TypeError(f"WRONGTYPE value at {key} is a set")
            return value

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        async with self._lock:
            self._data[key] = str(value)
            self._apply_ttl(key, ttl)

    async def getdel(self, key: str) -> Optional[str]:
        async with self._lock:
            self._purge_if_expired(key)
            if isinstance(self._data.get(key), set):
                raise TypeError(f"WRONGTYPE value at {key} is a set")
            self._expiry.pop(key, None)
            return self._data.pop(key, None)

    async def delete(self, *keys: str) -> int:
        async with self._lock:
            removed = 0
            for key in keys:
                self._purge_if_expired(key)
                if key in self._data:
                    del self._data[key]
                    self._expiry.pop(key, None)
                    removed += 1
            return removed

    async def exists(self, key: str) -> bool:
        async with self._lock:
            self._purge_if_expired(key)
            return key in self._data

    async def expire(self, key: str, ttl: int) -> bool:
        async with self._lock:
            self._purge_if_expired(key)
            if key not in self._data:
                return False
            if ttl <= 0:
                del self._data[key]
                self._expiry.pop(key, None)
                return True
            self._expiry[key] = self._clock() + ttl
            return True

    async def ttl(self, key: str) -> int:
        async with self._lock:
            self._purge_if_expired(key)
            if key not in self._data:
                return -2
            expiry = self._expiry.get(key)
            if expiry is None:
                return -1
            return max(0, round(expiry - self._clock()))

    async def incr(self, key: str, ttl: int, reset_ttl: bool = False) -> int:
        async with self._lock:
            self._purge_if_expired(key)
            current = int(self._data.get(key, 0))
            self._data[key] = str(current + 1)
            if reset_ttl or key not in self._expiry:
                self._apply_ttl(key, ttl)
            return current + 1

    async def sadd(self, key: str, *members: str) -> int:
        async with self._lock:
            self._purge_if_expired(key)
            bucket = self._data.setdefault(key, set())
            before = len(bucket)
            bucket.update(members)
            return len(bucket) - before

    async def srem(self, key: str, *members: str) -> int:
        async with self._lock:
            self._purge_if_expired(key)
            bucket = self._data.get(key)
            if not bucket:
                return 0
            removed = len(bucket.intersection(members))
            bucket.difference_update(members)
            if not bucket:
                del self._data[key]
                self._expiry.pop(key, None)
            return removed

    async def smembers(self, key: str) -> Set[str]:
        async with self._lock:
            self._purge_if_expired(key)
            return set(self._data.get(key) or ())

    async def scan_keys(self, pattern: str) -> list[str]:
        async with self._lock:
            return [key for key in self._live_keys() if fnmatch.fnmatchcase(key, pattern)]

    async def flush(self) -> None:
        async with self._lock:
            self._data.clear()
            self._expiry.clear()


class RedisKeyValueStore(KeyValueStore):
    """Redis-backed store for every shared deployment."""

    def __init__(self, url: str, client=None):
        self._url = url
        self._redis = client

    def _client(self):
        if self._redis is None:
            import redis.asyncio as redis

            self._redis = redis.from_url(
                self._url,
                encoding="utf-8",
                decode_responses=True,
                socket_timeout=5.0,
                socket_connect_timeout=5.0,
            )
            logger.info(f"Redis key-value store configured: {self._url.split('@')[-1]}")
        return self._redis

    async def get(self, key: str) -> Optional[str]:
        return await self._client().get(key)

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        if ttl:
            await self._client().set(key, value, ex=ttl)
        else:
            await self._client().set(key, value)

    async def getdel(self, key: str) -> Optional[str]:
        return await self._client().getdel(key)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return await self._client().delete(*keys)

    async def exists(self, key: str) -> bool:
        return await self._client().exists(key) > 0

    async def expire(self, key: str, ttl: int) -> bool:
        return bool(await self._client().expire(key, ttl))

    async def ttl(self, key: str) -> int:
        return await self._client().ttl(key)

    async def incr(self, key: str, ttl: int, reset_ttl: bool = False) -> int:
        pipe = self._client().pipeline()
        pipe.incr(key)
        pipe.ttl(key)
        count, remaining = await pipe.execute()
        if reset_ttl or remaining < 0:
            await self._client().expire(key, ttl)
        return count

    async def sadd(self, key: str, *members: str) -> int:
        return await self._client().sadd(key, *members)

    async def srem(self, key: str, *members: str) -> int:
        return await self._client().srem(key, *members)

    async def smembers(self, key: str) -> Set[str]:
        return set(await self._client().smembers(key))

    async def scan_keys(self, pattern: str) -> list[str]:
        return [key async for key in self._client().scan_iter(match=pattern, count=100)]

    async def ping(self) -> bool:
        return bool(await self._client().ping())

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


_store: Optional[KeyValueStore] = None


def get_kv_store() -> KeyValueStore:
    """Get the process-wide store, creating it from settings on first use."""
    global _store
    if _store is None:
        if settings.REDIS_URL:
            _store = RedisKeyValueStore(settings.REDIS_URL)
        else:
            logger.warning(
                "No REDIS_URL configured, using in-memory key-value store. "
                "Sessions and rate limits will not be shared across processes."
            )
            _store = InMemoryKeyValueStore()
    return _store


async def close_kv_store() -> None:
    global _store
    if _store is not None:
        await _store.close()
        _store = None
