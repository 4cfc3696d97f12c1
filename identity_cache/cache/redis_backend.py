"""
Redis backend for the identity cache.
"""

from typing import Any, Dict, Iterable, List, Optional

import redis.asyncio as redis
from shared.config import IdentityCacheSettings
from shared.logging import get_logger
from shared.errors import BackendError


class RedisBackend:
    """Redis-backed cache store.

    Values are stored as raw bytes (``decode_responses`` stays off because
    cached records are pickled). Transport errors from reads, writes and
    deletes propagate unchanged to the caller.
    """

    def __init__(self, redis_url: str, namespace: str = "IDC",
                 default_ttl: Optional[int] = None, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.namespace = namespace
        self.default_ttl = default_ttl
        self.socket_timeout = socket_timeout
        self.logger = get_logger("identity_cache.backend.redis")
        self.redis: Optional[redis.Redis] = None

    @classmethod
    def from_settings(cls, settings: IdentityCacheSettings) -> "RedisBackend":
        """Build an unstarted backend from cache settings."""
        return cls(
            settings.redis_url,
            namespace=settings.namespace,
            default_ttl=settings.default_ttl,
            socket_timeout=settings.socket_timeout
        )

    async def start(self):
        """Start the Redis backend."""
        try:
            self.redis = redis.from_url(
                self.redis_url,
                decode_responses=False,
                socket_connect_timeout=self.socket_timeout,
                socket_timeout=self.socket_timeout,
                health_check_interval=30
            )

            # Test connection
            await self.redis.ping()

            self.logger.info("Redis backend started", namespace=self.namespace)

        except Exception as e:
            self.logger.error("Failed to start Redis backend", error=str(e))
            raise BackendError("redis", str(e)) from e

    async def stop(self):
        """Stop the Redis backend."""
        if self.redis:
            await self.redis.aclose()
            self.redis = None
            self.logger.info("Redis backend stopped")

    def _client(self) -> redis.Redis:
        if self.redis is None:
            raise BackendError("redis", "backend used before start()")
        return self.redis

    async def read(self, key: str) -> Optional[Any]:
        return await self._client().get(key)

    async def read_multi(self, keys: Iterable[str]) -> Dict[str, Any]:
        keys = list(keys)
        if not keys:
            return {}

        values = await self._client().mget(keys)
        return {key: value for key, value in zip(keys, values) if value is not None}

    async def write(self, key: str, value: Any) -> None:
        await self._client().set(key, value, ex=self.default_ttl)

    async def delete(self, key: str) -> None:
        await self._client().delete(key)

    async def clear(self) -> None:
        """Remove every key in this backend's namespace."""
        client = self._client()
        pattern = f"{self.namespace}:*"
        batch: List[bytes] = []
        cleared = 0

        async for key in client.scan_iter(match=pattern, count=500):
            batch.append(key)
            if len(batch) >= 500:
                cleared += await client.delete(*batch)
                batch = []

        if batch:
            cleared += await client.delete(*batch)

        self.logger.info("Cache cleared", pattern=pattern, keys_count=cleared)

    async def health_check(self) -> bool:
        """Check Redis health."""
        try:
            await self._client().ping()
            return True
        except Exception:
            return False
