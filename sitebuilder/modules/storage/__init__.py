"""
Storage Module - Black Box Interface

Purpose: Abstract the Redis connection shared by the queue and deployment stores
Interface: StorageModule.connect(), StorageModule.disconnect(), StorageModule.ping()
Hidden: Redis specifics, connection pooling, serialization

Can be replaced with any storage backend without affecting other modules.
"""

import logging
import os
from typing import Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

logger = logging.getLogger("sitebuilder.storage")


class StorageModule:
    """Black box storage abstraction."""

    def __init__(self, connection_url: str = None, password: Optional[str] = None):
        """Initialize storage with connection URL."""
        self.url = connection_url or os.getenv("REDIS_URL", "redis://localhost:6379/0")
        self.password = password
        self._client = None

    @classmethod
    def from_config(cls, config) -> "StorageModule":
        """Build from ConfigModule values (password passed separately)."""
        url = f"redis://{config.get('redis_host')}:{config.get('redis_port')}/{config.get('redis_db')}"
        return cls(url, password=config.get("redis_password"))

    async def connect(self) -> redis.Redis:
        """Get storage connection."""
        if not self._client:
            self._client = redis.from_url(
                self.url,
                password=self.password,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._client

    async def ping(self) -> bool:
        """Check that Redis answers."""
        try:
            client = await self.connect()
            return bool(await client.ping())
        except RedisError as e:
            logger.warning(f"Redis ping failed: {e}")
            return False

    async def disconnect(self):
        """Close storage connection."""
        if self._client:
            await self._client.aclose()
            self._client = None


__all__ = ["StorageModule"]
