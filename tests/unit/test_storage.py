"""Unit tests for Key Activator storage backends."""

import os
import tempfile

import pytest

from key_activator.storage import MemoryBackend, get_storage_backend
from key_activator.storage.sqlite_backend import SQLiteBackend


class TestSQLiteBackend:
    """Tests for SQLiteBackend."""

    @pytest.fixture
    async def sqlite_backend(self, clock):
        """Create a SQLite backend with temp database."""
        with tempfile.TemporaryDirectory() as tmpdir:
            db_path = os.path.join(tmpdir, "test.db")
            backend = SQLiteBackend(f"sqlite:///{db_path}", clock=clock)
            await backend.connect()
            yield backend
            await backend.disconnect()

    @pytest.mark.asyncio
    async def test_set_and_get(self, sqlite_backend):
        """Test basic set and get operations."""
        await sqlite_backend.set("proxy", {"user": "u", "password": "p"})
        result = await sqlite_backend.get("proxy")

        assert result == {"user": "u", "password": "p"}

    @pytest.mark.asyncio
    async def test_get_nonexistent_key(self, sqlite_backend):
        """Test getting a key that doesn't exist."""
        assert await sqlite_backend.get("missing") is None

    @pytest.mark.asyncio
    async def test_overwrite(self, sqlite_backend):
        """Test that set replaces an existing value."""
        await sqlite_backend.set("token", "first")
        await sqlite_backend.set("token", "second")

        assert await sqlite_backend.get("token") == "second"

    @pytest.mark.asyncio
    async def test_delete(self, sqlite_backend):
        """Test delete operation."""
        await sqlite_backend.set("delete_me", {"data": "test"})
        assert await sqlite_backend.exists("delete_me") is True

        assert await sqlite_backend.delete("delete_me") is True
        assert await sqlite_backend.exists("delete_me") is False
        assert await sqlite_backend.delete("delete_me") is False

    @pytest.mark.asyncio
    async def test_keys_pattern(self, sqlite_backend):
        """Test keys pattern matching."""
        await sqlite_backend.set("identity_tokens:device-1", {"value": "a"})
        await sqlite_backend.set("identity_tokens:device-2", {"value": "b"})
        await sqlite_backend.set("proxy_credentials:proxy", {"value": "c"})

        token_keys = await sqlite_backend.keys("identity_tokens:*")
        assert sorted(token_keys) == ["identity_tokens:device-1", "identity_tokens:device-2"]
        assert len(await sqlite_backend.keys("*")) == 3

    @pytest.mark.asyncio
    async def test_ttl_expiration(self, sqlite_backend, clock):
        """Test that TTL causes expiration."""
        await sqlite_backend.set("expiring_key", "value", ttl=10)
        assert await sqlite_backend.get("expiring_key") == "value"

        clock.advance(11)

        assert await sqlite_backend.get("expiring_key") is None
        assert await sqlite_backend.exists("expiring_key") is False

    @pytest.mark.asyncio
    async def test_delete_matching(self, sqlite_backend):
        """Test deleting a namespace."""
        await sqlite_backend.set("ns:a", 1)
        await sqlite_backend.set("ns:b", 2)
        await sqlite_backend.set("other:c", 3)

        assert await sqlite_backend.delete_matching("ns:*") == 2
        assert await sqlite_backend.keys("*") == ["other:c"]

    @pytest.mark.asyncio
    async def test_not_connected_raises(self):
        """Test that using an unconnected backend raises."""
        backend = SQLiteBackend("sqlite:///:memory:")
        with pytest.raises(RuntimeError):
            await backend.get("anything")


class TestMemoryBackend:
    """Tests for MemoryBackend."""

    @pytest.mark.asyncio
    async def test_values_are_copied(self):
        """Test that stored values are isolated from caller mutation."""
        backend = MemoryBackend()
        await backend.connect()
        value = {"keys": ["A"]}
        await backend.set("k", value)
        value["keys"].append("B")

        stored = await backend.get("k")
        assert stored == {"keys": ["A"]}
        stored["keys"].append("C")
        assert await backend.get("k") == {"keys": ["A"]}

    @pytest.mark.asyncio
    async def test_ttl_expiration(self, clock):
        """Test that entries expire on the injected clock."""
        backend = MemoryBackend(clock=clock)
        await backend.connect()
        await backend.set("k", "v", ttl=5)

        clock.advance(4)
        assert await backend.get("k") == "v"
        clock.advance(2)
        assert await backend.get("k") is None
        assert await backend.keys() == []

    @pytest.mark.asyncio
    async def test_disconnect_clears(self):
        """Test that disconnect drops stored values."""
        backend = MemoryBackend()
        await backend.connect()
        await backend.set("k", "v")
        await backend.disconnect()

        with pytest.raises(RuntimeError):
            await backend.get("k")


class TestStorageFactory:
    """Tests for get_storage_backend."""

    def test_memory_backend(self):
        """Test memory storage selection."""
        assert isinstance(get_storage_backend("memory"), MemoryBackend)

    def test_sqlite_backend(self):
        """Test sqlite storage selection."""
        backend = get_storage_backend("sqlite", database_url="sqlite:///./cache.db")
        assert isinstance(backend, SQLiteBackend)
        assert backend.db_path == "./cache.db"

    def test_redis_requires_url(self, monkeypatch):
        """Test that redis storage without a URL is rejected."""
        monkeypatch.delenv("REDIS_URL", raising=False)
        with pytest.raises(ValueError, match="Redis URL required"):
            get_storage_backend("redis", redis_url="")

    def test_unknown_type(self):
        """Test that unknown storage types are rejected."""
        with pytest.raises(ValueError, match="Unknown storage type"):
            get_storage_backend("postgres")
