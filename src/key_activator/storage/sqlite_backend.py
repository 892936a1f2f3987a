# Author: AgentRange Inc.
# Donated to IAB Tech Lab

"""SQLite storage backend implementation."""

import json
import time
from pathlib import Path
from typing import Any, Callable, Optional

import aiosqlite

from key_activator.storage.base import StorageBackend


class SQLiteBackend(StorageBackend):
    """SQLite-based storage backend.

    Keeps cache entries on disk so a captured identity token and proxy
    credentials survive a process restart until they expire.
    """

    def __init__(self, database_url: str, clock: Callable[[], float] = time.time):
        """Initialize SQLite backend.

        Args:
            database_url: SQLite connection string (e.g., sqlite:///./key_activator.db)
            clock: Source of the current time in epoch seconds
        """
        if database_url.startswith("sqlite:///"):
            self.db_path = database_url[len("sqlite:///"):]
        else:
            self.db_path = database_url

        self._clock = clock
        self._connection: Optional[aiosqlite.Connection] = None

    async def connect(self) -> None:
        """Open the database and create the cache table."""
        if self.db_path != ":memory:":
            db_dir = Path(self.db_path).parent
            if db_dir and not db_dir.exists():
                db_dir.mkdir(parents=True, exist_ok=True)

        self._connection = await aiosqlite.connect(self.db_path)

        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS cache_entries (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                expires_at REAL
            )
        """)
        await self._connection.execute("""
            CREATE INDEX IF NOT EXISTS idx_cache_expires_at ON cache_entries(expires_at)
        """)
        await self._connection.commit()

    async def disconnect(self) -> None:
        """Close the database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    def _require_connection(self) -> aiosqlite.Connection:
        if not self._connection:
            raise RuntimeError("Storage not connected. Call connect() first.")
        return self._connection

    async def _purge_expired(self) -> None:
        connection = self._require_connection()
        await connection.execute(
            "DELETE FROM cache_entries WHERE expires_at IS NOT NULL AND expires_at <= ?",
            (self._clock(),),
        )
        await connection.commit()

    async def get(self, key: str) -> Optional[Any]:
        """Retrieve a value by key."""
        connection = self._require_connection()
        async with connection.execute(
            "SELECT value FROM cache_entries WHERE key = ? "
            "AND (expires_at IS NULL OR expires_at > ?)",
            (key, self._clock()),
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        return json.loads(row[0])

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        """Store a value with optional TTL (seconds)."""
        connection = self._require_connection()
        expires_at = self._clock() + ttl if ttl else None
        await connection.execute(
            """
            INSERT INTO cache_entries (key, value, expires_at) VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value, expires_at = excluded.expires_at
            """,
            (key, json.dumps(value), expires_at),
        )
        await connection.commit()
        await self._purge_expired()

    async def delete(self, key: str) -> bool:
        """Delete a key. Returns True if key existed."""
        connection = self._require_connection()
        async with connection.execute(
            "DELETE FROM cache_entries WHERE key = ?", (key,)
        ) as cursor:
            deleted = cursor.rowcount > 0
        await connection.commit()
        return deleted

    async def exists(self, key: str) -> bool:
        """Check if key exists."""
        connection = self._require_connection()
        async with connection.execute(
            "SELECT 1 FROM cache_entries WHERE key = ? "
            "AND (expires_at IS NULL OR expires_at > ?)",
            (key, self._clock()),
        ) as cursor:
            return await cursor.fetchone() is not None

    async def keys(self, pattern: str = "*") -> list[str]:
        """List keys matching a glob pattern (`*` and `?` wildcards)."""
        connection = self._require_connection()
        async with connection.execute(
            "SELECT key FROM cache_entries WHERE key GLOB ? "
            "AND (expires_at IS NULL OR expires_at > ?)",
            (pattern, self._clock()),
        ) as cursor:
            rows = await cursor.fetchall()
        return [row[0] for row in rows]

    async def delete_matching(self, pattern: str) -> int:
        """Delete every key matching a glob pattern in one statement."""
        connection = self._require_connection()
        async with connection.execute(
            "DELETE FROM cache_entries WHERE key GLOB ?", (pattern,)
        ) as cursor:
            deleted = cursor.rowcount
        await connection.commit()
        return deleted
