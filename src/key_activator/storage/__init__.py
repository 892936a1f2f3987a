"""Storage backends for the Key Activator's TTL caches.

Supports in-process memory (default), SQLite and Redis.
"""

from key_activator.storage.base import StorageBackend
from key_activator.storage.factory import get_storage_backend
from key_activator.storage.memory_backend import MemoryBackend

__all__ = ["MemoryBackend", "StorageBackend", "get_storage_backend"]
