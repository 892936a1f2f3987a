"""In-process storage backend implementation."""

import copy
import fnmatch
import time
from typing import Any, Callable, Optional

from key_activator.storage.base import StorageBackend


class MemoryBackend(StorageBackend):
    """Dictionary-based storage backend.

    Default for a single long-lived process; nothing survives a restart.
    Values are deep-copied in and out so callers never share mutable state
    with the store, matching the serialize/deserialize behaviour of the
    SQLite and Redis backends.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        """Initialize memory backend.

        Args:
            clock: Source of the current time in epoch seconds
        """
        self._clock = clock
        self._data: dict[str, tuple[Any, Optional[float]]] = {}
        self._connected = False

    async def connect(self) -> None:
        """Mark the backend ready for use."""
        self._connected = True

    async def disconnect(self) -> None:
        """Drop all stored values."""
        self._data.clear()
        self._connected = False

    def _check_connected(self) -> None:
        if not self._connected:
            raise RuntimeError("Storage not connected. Call connect() first.")

    def _live(self, key: str) -> bool:
        entry = self._data.get(key)
        if entry is None:
            return False
        _, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return False
        return True

    async def get(self, key: str) -> Optional[Any]:
        """Retrieve a value by key."""
        self._check_connected()
        if not self._live(key):
            return None
        return copy.deepcopy(self._data[key][0])

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        """Store a value with optional TTL (seconds)."""
        self._check_connected()
        expires_at = self._clock() + ttl if ttl else None
        self._data[key] = (copy.deepcopy(value), expires_at)

    async def delete(self, key: str) -> bool:
        """Delete a key. Returns True if key existed."""
        self._check_connected()
        existed = self._live(key)
        self._data.pop(key, None)
        return existed

    async def exists(self, key: str) -> bool:
        """Check if key exists."""
        self._check_connected()
        return self._live(key)

    async def keys(self, pattern: str = "*") -> list[str]:
        """List keys matching a glob pattern."""
        self._check_connected()
        return [
            key
            for key in list(self._data)
            if self._live(key) and fnmatch.fnmatchcase(key, pattern)
        ]
