# Author: AgentRange Inc.
# Donated to IAB Tech Lab

"""Redis storage backend implementation."""

import json
from typing import Any, Optional

from key_activator.storage.base import StorageBackend

try:
    import redis.asyncio as redis
    REDIS_AVAILABLE = True
except ImportError:
    REDIS_AVAILABLE = False


class RedisBackend(StorageBackend):
    """Redis-based storage backend.

    Lets several activator processes share one identity token and one set
    of proxy credentials. Expiry is delegated to Redis key TTLs.

    Requires the redis extra: pip install key-activator[redis]
    """

    def __init__(self, redis_url: str, key_prefix: str = "key_activator:"):
        """Initialize Redis backend.

        Args:
            redis_url: Redis connection URL (e.g., redis://localhost:6379/0)
            key_prefix: Prefix for all keys to namespace the data
        """
        if not REDIS_AVAILABLE:
            raise ImportError(
                "Redis package not installed. Install with: pip install key-activator[redis]"
            )

        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self._client: Optional["redis.Redis"] = None

    def _prefixed(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    def _strip_prefix(self, key: str) -> str:
        if key.startswith(self.key_prefix):
            return key[len(self.key_prefix):]
        return key

    def _require_client(self) -> "redis.Redis":
        if not self._client:
            raise RuntimeError("Storage not connected. Call connect() first.")
        return self._client

    async def connect(self) -> None:
        """Establish connection to Redis."""
        self._client = redis.from_url(
            self.redis_url,
            encoding="utf-8",
            decode_responses=True,
        )
        await self._client.ping()

    async def disconnect(self) -> None:
        """Close the Redis connection."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def get(self, key: str) -> Optional[Any]:
        """Retrieve a value by key."""
        value = await self._require_client().get(self._prefixed(key))
        if value is None:
            return None
        return json.loads(value)

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        """Store a value with optional TTL (seconds)."""
        await self._require_client().set(
            self._prefixed(key),
            json.dumps(value),
            ex=ttl if ttl else None,
        )

    async def delete(self, key: str) -> bool:
        """Delete a key. Returns True if key existed."""
        return await self._require_client().delete(self._prefixed(key)) > 0

    async def exists(self, key: str) -> bool:
        """Check if key exists."""
        return await self._require_client().exists(self._prefixed(key)) > 0

    async def keys(self, pattern: str = "*") -> list[str]:
        """List keys matching pattern without blocking the server."""
        client = self._require_client()
        return [
            self._strip_prefix(key)
            async for key in client.scan_iter(match=self._prefixed(pattern))
        ]
