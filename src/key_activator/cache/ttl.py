"""TTL cache over a storage backend.

Entries are stored as `{"value": ..., "expires_at": <epoch seconds>}` so
expiry is decided by the cache's own clock regardless of the backend.
Concurrent `get_or_fetch` calls for the same key share one fetch.
"""

import asyncio
import logging
import math
import time
from typing import Any, Awaitable, Callable, Optional

from ..storage.base import StorageBackend

logger = logging.getLogger(__name__)


class TTLCache:
    """Namespaced key/value cache with explicit expiry and single-flight fetch.

    Usage:
        cache = TTLCache(storage, namespace="tokens")
        await cache.set("device-1", token, ttl_seconds=3600)
        value = await cache.get_or_fetch("device-1", fetch_token)
    """

    def __init__(
        self,
        storage: StorageBackend,
        namespace: str,
        clock: Callable[[], float] = time.time,
    ):
        self.storage = storage
        self.namespace = namespace
        self._clock = clock
        self._inflight: dict[str, asyncio.Task] = {}

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    async def get(self, key: str) -> Optional[Any]:
        """Return the cached value, or None when missing or expired."""
        entry = await self.storage.get(self._key(key))
        if not entry:
            return None
        expires_at = entry.get("expires_at")
        if expires_at is not None and expires_at <= self._clock():
            await self.storage.delete(self._key(key))
            return None
        return entry.get("value")

    async def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        """Store a value that expires ttl_seconds from now."""
        if ttl_seconds <= 0:
            await self.invalidate(key)
            return
        entry = {"value": value, "expires_at": self._clock() + ttl_seconds}
        await self.storage.set(self._key(key), entry, ttl=math.ceil(ttl_seconds))

    async def invalidate(self, key: str) -> None:
        await self.storage.delete(self._key(key))

    async def clear(self) -> int:
        return await self.storage.delete_matching(f"{self.namespace}:*")

    async def get_or_fetch(
        self,
        key: str,
        fetch: Callable[[], Awaitable[tuple[Any, float]]],
    ) -> Any:
        """Return the cached value or fetch, store and return a fresh one.

        `fetch` returns `(value, ttl_seconds)`. While a fetch for a key is in
        flight every caller awaits the same task and sees the same result or
        the same exception.
        """
        cached = await self.get(key)
        if cached is not None:
            return cached

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._fetch_and_store(key, fetch))
            self._inflight[key] = task
            task.add_done_callback(lambda _: self._inflight.pop(key, None))
        else:
            logger.debug("Joining in-flight fetch for %s:%s", self.namespace, key)

        return await asyncio.shield(task)

    async def _fetch_and_store(
        self,
        key: str,
        fetch: Callable[[], Awaitable[tuple[Any, float]]],
    ) -> Any:
        value, ttl_seconds = await fetch()
        await self.set(key, value, ttl_seconds)
        return value
