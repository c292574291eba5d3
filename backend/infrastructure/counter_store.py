"""
Counter / Quota Store for Soulforge
Shared key-value store with TTLs and an atomic decrement primitive

Backs the try-once quota and the session-pass credit counters.
- RedisCounterStore: cross-instance, DECR is atomic server-side
- MemoryCounterStore: single process (dev/tests), atomic within one event loop
"""

import logging
import time
from typing import Callable, Dict, Iterable, Optional, Tuple

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from .config import CacheConfig, Environment
from .errors import CounterStoreError, retry

logger = logging.getLogger("CounterStore")

# DECR that never resurrects an expired key as a TTL-less -1
DECR_IF_EXISTS_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 1 then
    return redis.call('DECR', KEYS[1])
end
return false
"""


class CounterStore:
    """Interface shared by the Redis and in-memory stores"""

    async def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    async def setex(self, key: str, ttl_seconds: int, value: str):
        raise NotImplementedError

    async def setex_many(self, items: Iterable[Tuple[str, int, str]]):
        """Write several (key, ttl, value) entries in one round-trip"""
        for key, ttl_seconds, value in items:
            await self.setex(key, ttl_seconds, value)

    async def decr(self, key: str) -> int:
        raise NotImplementedError

    async def decr_existing(self, key: str) -> Optional[int]:
        """DECR only if the key is live; None when it is missing or expired"""
        raise NotImplementedError

    async def ttl(self, key: str) -> int:
        """Seconds to live; -2 if missing, -1 if no expiry (Redis semantics)"""
        raise NotImplementedError

    async def delete(self, *keys: str):
        raise NotImplementedError

    async def ping(self) -> bool:
        return True

    async def close(self):
        pass


# ============================================
# REDIS
# ============================================

class RedisCounterStore(CounterStore):
    """Redis-backed store via redis.asyncio"""

    def __init__(self, redis_url: str, client=None):
        self.redis_url = redis_url
        self._redis = client or aioredis.from_url(redis_url, encoding="utf-8", decode_responses=True)

    async def get(self, key: str) -> Optional[str]:
        try:
            return await self._redis.get(key)
        except RedisError as e:
            raise CounterStoreError("get", e) from e

    async def setex(self, key: str, ttl_seconds: int, value: str):
        try:
            await self._redis.setex(key, ttl_seconds, value)
        except RedisError as e:
            raise CounterStoreError("setex", e) from e

    async def setex_many(self, items: Iterable[Tuple[str, int, str]]):
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                for key, ttl_seconds, value in items:
                    pipe.setex(key, ttl_seconds, value)
                await pipe.execute()
        except RedisError as e:
            raise CounterStoreError("setex_many", e) from e

    async def decr(self, key: str) -> int:
        try:
            return int(await self._redis.decr(key))
        except RedisError as e:
            raise CounterStoreError("decr", e) from e

    async def decr_existing(self, key: str) -> Optional[int]:
        try:
            result = await self._redis.eval(DECR_IF_EXISTS_SCRIPT, 1, key)
        except RedisError as e:
            raise CounterStoreError("decr_existing", e) from e
        return None if result is None else int(result)

    async def ttl(self, key: str) -> int:
        try:
            return int(await self._redis.ttl(key))
        except RedisError as e:
            raise CounterStoreError("ttl", e) from e

    async def delete(self, *keys: str):
        if not keys:
            return
        try:
            await self._redis.delete(*keys)
        except RedisError as e:
            raise CounterStoreError("delete", e) from e

    async def ping(self) -> bool:
        return bool(await self._redis.ping())

    async def close(self):
        await self._redis.aclose()


# ============================================
# IN-MEMORY
# ============================================

class MemoryCounterStore(CounterStore):
    """
    In-process store with expiry checked on read.
    No awaits happen between read and write, so decr is atomic per event loop.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}

    def _live(self, key: str) -> Optional[Tuple[str, Optional[float]]]:
        entry = self._data.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._data[key]
            return None
        return entry

    async def get(self, key: str) -> Optional[str]:
        entry = self._live(key)
        return entry[0] if entry else None

    async def setex(self, key: str, ttl_seconds: int, value: str):
        self._data[key] = (str(value), self._clock() + ttl_seconds)

    async def decr(self, key: str) -> int:
        entry = self._live(key)
        if entry is None:
            # Redis DECR on a missing key starts from 0 with no expiry
            self._data[key] = ("-1", None)
            return -1
        value, expires_at = entry
        new_value = int(value) - 1
        self._data[key] = (str(new_value), expires_at)
        return new_value

    async def decr_existing(self, key: str) -> Optional[int]:
        if self._live(key) is None:
            return None
        return await self.decr(key)

    async def ttl(self, key: str) -> int:
        entry = self._live(key)
        if entry is None:
            return -2
        _, expires_at = entry
        if expires_at is None:
            return -1
        return max(0, int(expires_at - self._clock()))

    async def delete(self, *keys: str):
        for key in keys:
            self._data.pop(key, None)


# ============================================
# FACTORY
# ============================================

@retry(max_attempts=3, delay=0.5, exceptions=(RedisError, OSError))
async def _ping(store: RedisCounterStore) -> bool:
    return await store.ping()


async def create_counter_store(
    cache_config: CacheConfig,
    environment: Environment = Environment.DEVELOPMENT
) -> CounterStore:
    """
    Build the configured store. Outside production an unreachable Redis
    degrades to the in-memory store; in production it is fatal.
    """
    if cache_config.backend == "memory":
        logger.info("Using in-memory counter store")
        return MemoryCounterStore()

    store = RedisCounterStore(cache_config.redis_url)
    try:
        await _ping(store)
        logger.info("Redis counter store connected")
        return store
    except (RedisError, OSError) as e:
        await store.close()
        if environment == Environment.PRODUCTION:
            raise CounterStoreError("connect", e) from e
        logger.warning(f"Redis unavailable, using memory counter store: {e}")
        return MemoryCounterStore()
