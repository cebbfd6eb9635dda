import logging
from typing import List, Mapping, Optional, Sequence

from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from ..settings import Settings, get_settings

logger = logging.getLogger(__name__)


class RedisSessionBackend:
    """Persisted-session backend on Redis.

    A session is a handful of keys read and written together, so the backend
    only exposes batch operations: one MGET to load a session and one
    MULTI/EXEC pipeline to checkpoint it.
    """

    def __init__(self, url: str) -> None:
        """Create a backend for the given URL (e.g. redis://localhost:6379/0)."""
        self._url = url
        self._client: Redis | None = None

    async def connect(self) -> None:
        """Establish connection to Redis. Idempotent."""
        if self._client is not None:
            return
        self._client = Redis.from_url(self._url, decode_responses=True)
        try:
            await self._client.ping()
            logger.info("Redis connection established: %s", self._url.split("@")[-1])
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis ping failed: %s", e)
            await self._client.aclose()
            self._client = None
            raise

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.debug("Redis connection closed")

    @property
    def client(self) -> Redis | None:
        return self._client

    async def get_many(self, keys: Sequence[str]) -> List[Optional[str]]:
        """Values for `keys` in order; missing keys, and every key on error, read as None."""
        if self._client is None or not keys:
            return [None] * len(keys)
        try:
            values = await self._client.mget(list(keys))
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis read of %d session keys failed: %s", len(keys), e)
            return [None] * len(keys)
        return [value if value is None else str(value) for value in values]

    async def set_many(self, values: Mapping[str, Optional[str]], ttl_seconds: int | None = None) -> bool:
        """Write all `values` in one transaction. A None value deletes its key."""
        if self._client is None or not values:
            return False
        try:
            async with self._client.pipeline(transaction=True) as pipe:
                for key, value in values.items():
                    if value is None:
                        pipe.delete(key)
                    elif ttl_seconds is not None and ttl_seconds > 0:
                        pipe.setex(key, ttl_seconds, value)
                    else:
                        pipe.set(key, value)
                await pipe.execute()
            return True
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis write of %s failed: %s", ", ".join(values), e)
            return False


def get_redis_backend(settings: Settings | None = None) -> RedisSessionBackend | None:
    """Return a Redis backend if redis_url is configured, else None."""
    settings = settings or get_settings()
    if not settings.redis_url or not settings.redis_url.strip():
        return None
    return RedisSessionBackend(settings.redis_url.strip())
