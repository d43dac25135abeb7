"""Test fixtures for py-session-store package."""

from __future__ import annotations

import math
import time
from collections.abc import Generator
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock

import pytest

from session_store import RequestContext, SessionConfig, set_current_session
from session_store.drivers import MemcachedServer

# A valid 40-char hex session ID for the default configuration
SESSION_ID = "0123456789abcdef0123456789abcdef01234567"
OTHER_SESSION_ID = "fedcba9876543210fedcba9876543210fedcba98"


class InMemoryRedis:
    """Minimal asyncio Redis double with key expiry, for locking scenarios."""

    def __init__(self) -> None:
        self.values: dict[str, bytes] = {}
        self.expires_at: dict[str, float] = {}
        self.calls: list[tuple[str, str]] = []
        self.closed = False

    def _purge(self, key: str) -> None:
        deadline = self.expires_at.get(key)
        if deadline is not None and deadline <= time.monotonic():
            self.values.pop(key, None)
            self.expires_at.pop(key, None)

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> bytes | None:
        self._purge(key)
        self.calls.append(("get", key))
        return self.values.get(key)

    async def set(
        self, key: str, value: Any, ex: int | None = None, nx: bool = False
    ) -> bool | None:
        self._purge(key)
        self.calls.append(("set", key))
        if nx and key in self.values:
            return None
        self.values[key] = value if isinstance(value, bytes) else str(value).encode()
        if ex is None:
            self.expires_at.pop(key, None)
        else:
            self.expires_at[key] = time.monotonic() + ex
        return True

    async def expire(self, key: str, seconds: int) -> bool:
        self._purge(key)
        self.calls.append(("expire", key))
        if key not in self.values:
            return False
        self.expires_at[key] = time.monotonic() + seconds
        return True

    async def ttl(self, key: str) -> int:
        self._purge(key)
        self.calls.append(("ttl", key))
        if key not in self.values:
            return -2
        if key not in self.expires_at:
            return -1
        return math.ceil(self.expires_at[key] - time.monotonic())

    async def delete(self, *keys: str) -> int:
        deleted = 0
        for key in keys:
            self._purge(key)
            self.calls.append(("delete", key))
            if self.values.pop(key, None) is not None:
                deleted += 1
            self.expires_at.pop(key, None)
        return deleted

    def register_script(self, script: str) -> Any:
        async def release(keys: list[str], args: list[str]) -> int:
            self.calls.append(("release", keys[0]))
            if self.values.get(keys[0]) == args[0].encode():
                return await self.delete(keys[0])
            return 0

        return release

    async def aclose(self) -> None:
        self.closed = True

    def count(self, command: str, key: str | None = None) -> int:
        return sum(1 for c, k in self.calls if c == command and (key is None or k == key))


class InMemoryMemcache:
    """Minimal double of MemcachedPool with key expiry."""

    def __init__(self) -> None:
        self.values: dict[str, bytes] = {}
        self.expires_at: dict[str, float] = {}
        self.calls: list[tuple[str, str]] = []
        self.added_servers: list[MemcachedServer] = []
        self.closed = False

    @property
    def servers(self) -> list[MemcachedServer]:
        return list(self.added_servers)

    def add_server(self, server: MemcachedServer) -> None:
        self.added_servers.append(server)

    def _purge(self, key: str) -> None:
        deadline = self.expires_at.get(key)
        if deadline is not None and deadline <= time.monotonic():
            self.values.pop(key, None)
            self.expires_at.pop(key, None)

    def _store(self, key: str, value: bytes, exptime: int) -> None:
        self.values[key] = value
        if exptime:
            self.expires_at[key] = time.monotonic() + exptime
        else:
            self.expires_at.pop(key, None)

    async def get(self, key: str) -> bytes | None:
        self._purge(key)
        self.calls.append(("get", key))
        return self.values.get(key)

    async def set(self, key: str, value: bytes, exptime: int = 0) -> bool:
        self.calls.append(("set", key))
        self._store(key, value, exptime)
        return True

    async def add(self, key: str, value: bytes, exptime: int = 0) -> bool:
        self._purge(key)
        self.calls.append(("add", key))
        if key in self.values:
            return False
        self._store(key, value, exptime)
        return True

    async def touch(self, key: str, exptime: int) -> bool:
        self._purge(key)
        self.calls.append(("touch", key))
        if key not in self.values:
            return False
        self._store(key, self.values[key], exptime)
        return True

    async def delete(self, key: str) -> bool:
        self._purge(key)
        self.calls.append(("delete", key))
        self.expires_at.pop(key, None)
        return self.values.pop(key, None) is not None

    async def close(self) -> None:
        self.closed = True

    def count(self, command: str, key: str | None = None) -> int:
        return sum(1 for c, k in self.calls if c == command and (key is None or k == key))


@pytest.fixture
def context() -> RequestContext:
    """Create a request context with a client IP."""
    return RequestContext(client_ip="10.0.0.1")


@pytest.fixture
def save_path(tmp_path: Path) -> Path:
    """Directory for file-backed sessions."""
    return tmp_path / "sessions"


@pytest.fixture
def files_config(save_path: Path) -> SessionConfig:
    """Create a files driver config for testing."""
    return SessionConfig(
        driver="files",
        save_path=str(save_path),
        cookie_name="sessid",
        regenerate_time=0,
        gc_probability=0,
    )


@pytest.fixture
def redis_config() -> SessionConfig:
    """Create a Redis driver config with a fast lock back-off."""
    return SessionConfig(
        driver="redis",
        save_path="host=localhost,port=6379,timeout=5",
        cookie_name="sessid",
        expiration=3600,
        lock_attempts=3,
        lock_retry_interval=0.01,
    )


@pytest.fixture
def memcached_config() -> SessionConfig:
    """Create a Memcached driver config with a fast lock back-off."""
    return SessionConfig(
        driver="memcached",
        save_path="localhost:11211",
        cookie_name="sessid",
        expiration=3600,
        lock_attempts=3,
        lock_retry_interval=0.01,
    )


@pytest.fixture
def fake_redis() -> InMemoryRedis:
    return InMemoryRedis()


@pytest.fixture
def fake_memcache() -> InMemoryMemcache:
    return InMemoryMemcache()


@pytest.fixture
def mock_redis() -> AsyncMock:
    """Create a mock Redis client for testing."""
    redis = AsyncMock()
    redis.ping = AsyncMock(return_value=True)
    redis.get = AsyncMock(return_value=None)
    redis.set = AsyncMock(return_value=True)
    redis.ttl = AsyncMock(return_value=-2)
    redis.expire = AsyncMock(return_value=True)
    redis.delete = AsyncMock(return_value=1)
    # Mock the register_script method to return a callable
    mock_script = AsyncMock(return_value=1)
    redis.register_script = lambda script: mock_script
    return redis


@pytest.fixture(autouse=True)
def reset_session_context() -> Generator[None, None, None]:
    """Clean up the current-session context variable after each test."""
    yield
    set_current_session(None)
