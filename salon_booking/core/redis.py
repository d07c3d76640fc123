import hashlib
import json
from datetime import date
from typing import Any, Optional

import redis.asyncio as redis
import structlog

logger = structlog.get_logger(__name__)


class RedisClient:
    """Redis client for caching; constructed once at application startup."""

    def __init__(self, url: str):
        self.url = url
        self.redis_pool = None

    async def init_redis(self):
        """Initialize Redis connection pool."""
        try:
            self.redis_pool = redis.ConnectionPool.from_url(
                self.url,
                decode_responses=True,
                retry_on_timeout=True,
                socket_keepalive=True,
                socket_keepalive_options={},
            )

            # Test connection
            async with redis.Redis(connection_pool=self.redis_pool) as r:
                await r.ping()
                logger.info("Redis connection established")

        except Exception as e:
            logger.error("Failed to connect to Redis", exc_info=e)
            raise

    async def close(self):
        if self.redis_pool is not None:
            await self.redis_pool.disconnect()
            self.redis_pool = None

    async def get_redis(self) -> redis.Redis:
        """Get Redis client instance."""
        if not self.redis_pool:
            await self.init_redis()
        return redis.Redis(connection_pool=self.redis_pool)

    async def set(self, key: str, value: Any, expire: Optional[int] = None) -> bool:
        """Set a key-value pair in Redis."""
        try:
            client = await self.get_redis()
            serialized_value = json.dumps(value) if not isinstance(value, str) else value

            if expire:
                return await client.setex(key, expire, serialized_value)
            else:
                return await client.set(key, serialized_value)

        except Exception as e:
            logger.error("Redis SET error", key=key, exc_info=e)
            return False

    async def get(self, key: str) -> Optional[Any]:
        """Get a value from Redis."""
        try:
            client = await self.get_redis()
            value = await client.get(key)

            if value is None:
                return None

            # Try to deserialize JSON, fallback to string
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                return value

        except Exception as e:
            logger.error("Redis GET error", key=key, exc_info=e)
            return None

    async def incr(self, key: str) -> Optional[int]:
        """Atomically increment a counter key."""
        try:
            client = await self.get_redis()
            return await client.incr(key)
        except Exception as e:
            logger.error("Redis INCR error", key=key, exc_info=e)
            return None


class SlotCache:
    """Caches slot query results per (branch, date) generation.

    Every ledger write bumps the generation for the affected branch and date, so
    stale entries are never read again and simply expire.
    """

    def __init__(self, client: RedisClient, ttl_seconds: int = 60):
        self.client = client
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def _version_key(branch_id: int, day: date) -> str:
        return f"slots_version:{branch_id}:{day.isoformat()}"

    async def _version(self, branch_id: int, day: date) -> int:
        value = await self.client.get(self._version_key(branch_id, day))
        return int(value) if value is not None else 0

    async def _key(self, branch_id: int, day: date, query: dict) -> str:
        version = await self._version(branch_id, day)
        digest = hashlib.sha1(
            json.dumps(query, sort_keys=True, default=str).encode()
        ).hexdigest()
        return f"slots:{branch_id}:{day.isoformat()}:v{version}:{digest}"

    async def get(self, branch_id: int, day: date, query: dict) -> Optional[list]:
        if self.ttl_seconds <= 0:
            return None
        return await self.client.get(await self._key(branch_id, day, query))

    async def set(self, branch_id: int, day: date, query: dict, slots: list) -> None:
        if self.ttl_seconds <= 0:
            return
        key = await self._key(branch_id, day, query)
        await self.client.set(key, slots, expire=self.ttl_seconds)

    async def invalidate(self, branch_id: int, day: date) -> None:
        await self.client.incr(self._version_key(branch_id, day))
        logger.debug("Slot cache invalidated", branch_id=branch_id, date=day.isoformat())
