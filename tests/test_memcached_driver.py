"""Tests for MemcachedDriver and MemcachedPool."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from aiomcache.exceptions import ClientException

from conftest import OTHER_SESSION_ID, SESSION_ID, InMemoryMemcache
from session_store import ConfigurationError, MemcachedDriver, RequestContext, SessionConfig
from session_store.drivers import MemcachedPool, MemcachedServer
from session_store.drivers.memcached import parse_server_list

LOCK = f"sessid:{SESSION_ID}:lock"
KEY = f"sessid:{SESSION_ID}"


async def open_driver(
    config: SessionConfig, pool: InMemoryMemcache, context: RequestContext | None = None
) -> MemcachedDriver:
    driver = MemcachedDriver(config, context, pool=pool)  # type: ignore[arg-type]
    assert await driver.open(config.save_path, config.cookie_name)
    return driver


def mock_client() -> MagicMock:
    client = MagicMock()
    for method in ("get", "set", "add", "touch", "delete", "close"):
        setattr(client, method, AsyncMock())
    return client


class TestServerList:
    """Tests for parse_server_list()."""

    def test_parses_hosts_ports_and_weights(self) -> None:
        """Test host:port[:weight] entries are parsed in order."""
        servers = parse_server_list("10.0.0.1:11211:2, 10.0.0.2:11212")

        assert servers == [
            MemcachedServer("10.0.0.1", 11211, 2),
            MemcachedServer("10.0.0.2", 11212, 0),
        ]

    @pytest.mark.parametrize("save_path", ["localhost", ":11211", "localhost:port", "a:1:heavy"])
    def test_invalid_entries_raise(self, save_path: str) -> None:
        """Test malformed entries are rejected."""
        with pytest.raises(ValueError, match="Invalid server"):
            parse_server_list(save_path)

    def test_driver_rejects_missing_save_path(self) -> None:
        """Test construction fails fast without a server list."""
        with pytest.raises(ConfigurationError, match="save_path"):
            MemcachedDriver(SessionConfig(driver="memcached"))

    def test_driver_rejects_malformed_save_path(self) -> None:
        """Test a malformed server list is a configuration error."""
        with pytest.raises(ConfigurationError, match="Invalid server"):
            MemcachedDriver(SessionConfig(driver="memcached", save_path="localhost"))

    def test_key_prefix_includes_ip_with_match_ip(
        self, memcached_config: SessionConfig, context: RequestContext
    ) -> None:
        """Test the client IP is part of the key prefix when match_ip is on."""
        config = replace(memcached_config, match_ip=True)

        assert MemcachedDriver(config, context).key_prefix == "sessid:10.0.0.1:"


class TestMemcachedPool:
    """Tests for MemcachedPool routing."""

    def test_one_client_per_server(self) -> None:
        """Test a client is created per host:port and duplicates reuse it."""
        factory = MagicMock(side_effect=lambda host, port: mock_client())
        pool = MemcachedPool(
            [MemcachedServer("a", 1), MemcachedServer("b", 2), MemcachedServer("a", 1, 5)],
            client_factory=factory,
        )

        assert factory.call_count == 2
        assert pool.servers == [MemcachedServer("a", 1, 5), MemcachedServer("b", 2)]

    @pytest.mark.asyncio
    async def test_key_routing_is_stable(self) -> None:
        """Test the same key always goes to the same server."""
        clients = {"a": mock_client(), "b": mock_client(), "c": mock_client()}
        pool = MemcachedPool(
            [MemcachedServer(host, 11211) for host in clients],
            client_factory=lambda host, port: clients[host],
        )

        for _ in range(5):
            await pool.get("sessid:key")

        used = [c for c in clients.values() if c.get.await_count]
        assert len(used) == 1
        used[0].get.assert_awaited_with(b"sessid:key")

    @pytest.mark.asyncio
    async def test_keys_spread_over_servers(self) -> None:
        """Test many keys are distributed over more than one server."""
        clients = {"a": mock_client(), "b": mock_client()}
        pool = MemcachedPool(
            [MemcachedServer(host, 11211) for host in clients],
            client_factory=lambda host, port: clients[host],
        )

        for i in range(50):
            await pool.set(f"key-{i}", b"v", exptime=10)

        assert all(c.set.await_count > 0 for c in clients.values())

    @pytest.mark.asyncio
    async def test_empty_pool_raises(self) -> None:
        """Test commands on a pool without servers raise a client error."""
        with pytest.raises(ClientException):
            await MemcachedPool().get("key")

    @pytest.mark.asyncio
    async def test_close_closes_every_client(self) -> None:
        """Test close() closes all per-server clients."""
        clients = {"a": mock_client(), "b": mock_client()}
        pool = MemcachedPool(
            [MemcachedServer(host, 11211) for host in clients],
            client_factory=lambda host, port: clients[host],
        )

        await pool.close()

        assert all(c.close.await_count == 1 for c in clients.values())


class TestMemcachedDriverOpen:
    """Tests for MemcachedDriver.open()."""

    @pytest.mark.asyncio
    async def test_open_merges_servers_into_shared_pool(
        self, memcached_config: SessionConfig, fake_memcache: InMemoryMemcache
    ) -> None:
        """Test configured servers are added to an injected pool."""
        await open_driver(memcached_config, fake_memcache)

        assert fake_memcache.added_servers == [MemcachedServer("localhost", 11211)]

    @pytest.mark.asyncio
    async def test_open_builds_private_pool(self, memcached_config: SessionConfig) -> None:
        """Test a pool is built from the server list when none is shared."""
        fake = InMemoryMemcache()
        fake.add_server(MemcachedServer("localhost", 11211))
        with patch("session_store.drivers.memcached.MemcachedPool", return_value=fake) as pool_cls:
            driver = MemcachedDriver(memcached_config)
            assert await driver.open(memcached_config.save_path, "sessid")

        pool_cls.assert_called_once_with([MemcachedServer("localhost", 11211)])
        await driver.close()
        assert fake.closed is True

    @pytest.mark.asyncio
    async def test_shared_pool_is_not_closed(
        self, memcached_config: SessionConfig, fake_memcache: InMemoryMemcache
    ) -> None:
        """Test close() leaves an injected pool open."""
        driver = await open_driver(memcached_config, fake_memcache)

        await driver.close()

        assert fake_memcache.closed is False

    @pytest.mark.asyncio
    async def test_read_without_open_fails(self, memcached_config: SessionConfig) -> None:
        """Test read() before open() is reported as a failure."""
        driver = MemcachedDriver(memcached_config)

        assert not await driver.read(SESSION_ID)


class TestMemcachedDriverReadWrite:
    """Tests for MemcachedDriver read/write."""

    @pytest.mark.asyncio
    async def test_end_to_end_new_session(
        self, memcached_config: SessionConfig, fake_memcache: InMemoryMemcache
    ) -> None:
        """Test open -> read new -> write -> read with a new driver."""
        driver = await open_driver(memcached_config, fake_memcache)
        result = await driver.read("1234")
        assert result
        assert result.data == ""
        assert await driver.write("1234", "SESSION-DATA")
        assert await driver.close()

        second = await open_driver(memcached_config, fake_memcache)
        result = await second.read("1234")
        await second.close()

        assert result.data == "SESSION-DATA"

    @pytest.mark.asyncio
    async def test_unchanged_write_touches_entry(
        self, memcached_config: SessionConfig, fake_memcache: InMemoryMemcache
    ) -> None:
        """Test writing the payload just read only refreshes its TTL."""
        await fake_memcache.set(KEY, b"DATA", exptime=10)
        driver = await open_driver(memcached_config, fake_memcache)
        await driver.read(SESSION_ID)

        assert await driver.write(SESSION_ID, "DATA")

        assert fake_memcache.count("set", KEY) == 1
        assert fake_memcache.count("touch", KEY) == 1

    @pytest.mark.asyncio
    async def test_unchanged_write_restores_evicted_entry(
        self, memcached_config: SessionConfig, fake_memcache: InMemoryMemcache
    ) -> None:
        """Test the payload is stored again when touch() finds no entry."""
        await fake_memcache.set(KEY, b"DATA")
        driver = await open_driver(memcached_config, fake_memcache)
        await driver.read(SESSION_ID)
        await fake_memcache.delete(KEY)

        assert await driver.write(SESSION_ID, "DATA")

        assert fake_memcache.values[KEY] == b"DATA"

    @pytest.mark.asyncio
    async def test_write_renews_lock(
        self, memcached_config: SessionConfig, fake_memcache: InMemoryMemcache
    ) -> None:
        """Test every write touches the lock entry."""
        driver = await open_driver(memcached_config, fake_memcache)
        await driver.read(SESSION_ID)

        await driver.write(SESSION_ID, "DATA")

        assert fake_memcache.count("touch", LOCK) == 1

    @pytest.mark.asyncio
    async def test_write_without_lock_fails(
        self, memcached_config: SessionConfig, fake_memcache: InMemoryMemcache
    ) -> None:
        """Test write() before read() fails."""
        driver = await open_driver(memcached_config, fake_memcache)

        assert not await driver.write(SESSION_ID, "DATA")

    @pytest.mark.asyncio
    async def test_regeneration_moves_lock(
        self, memcached_config: SessionConfig, fake_memcache: InMemoryMemcache
    ) -> None:
        """Test write(B) after read(A) frees A's lock and writes B."""
        await fake_memcache.set(KEY, b"X")
        driver = await open_driver(memcached_config, fake_memcache)
        await driver.read(SESSION_ID)

        assert await driver.write(OTHER_SESSION_ID, "X")

        assert LOCK not in fake_memcache.values
        assert f"sessid:{OTHER_SESSION_ID}:lock" in fake_memcache.values
        assert fake_memcache.values[f"sessid:{OTHER_SESSION_ID}"] == b"X"

    @pytest.mark.asyncio
    async def test_client_error_fails_write(
        self, memcached_config: SessionConfig, fake_memcache: InMemoryMemcache
    ) -> None:
        """Test a memcached error during write() is a failure, not an exception."""
        driver = await open_driver(memcached_config, fake_memcache)
        await driver.read(SESSION_ID)
        fake_memcache.set = AsyncMock(side_effect=ClientException("boom"))  # type: ignore[method-assign]

        assert not await driver.write(SESSION_ID, "DATA")
    @pytest.mark.asyncio
    async def test_undecodable_payload_fails_read(
        self, memcached_config: SessionConfig, fake_memcache: InMemoryMemcache
    ) -> None:
        """Test a non UTF-8 payload is a failed read and the lock is still released."""
        await fake_memcache.set(KEY, b"\xff\xfe")
        driver = await open_driver(memcached_config, fake_memcache)

        result = await driver.read(SESSION_ID)

        assert not result
        assert "Unable to decode session" in (result.error or "")
        assert await driver.close()
        assert LOCK not in fake_memcache.values


class TestMemcachedDriverLocking:
    """Tests for MemcachedDriver lock acquisition."""

    @pytest.mark.asyncio
    async def test_lock_created_with_ttl(
        self, memcached_config: SessionConfig, fake_memcache: InMemoryMemcache
    ) -> None:
        """Test read() adds the lock entry with an expiry."""
        driver = await open_driver(memcached_config, fake_memcache)

        await driver.read(SESSION_ID)

        assert LOCK in fake_memcache.values
        assert LOCK in fake_memcache.expires_at

    @pytest.mark.asyncio
    async def test_second_reader_fails_after_attempts(
        self, memcached_config: SessionConfig, fake_memcache: InMemoryMemcache
    ) -> None:
        """Test a concurrent reader gives up after lock_attempts tries."""
        holder = await open_driver(memcached_config, fake_memcache)
        contender = await open_driver(memcached_config, fake_memcache)
        await holder.read(SESSION_ID)

        assert not await contender.read(SESSION_ID)
        assert fake_memcache.count("get", LOCK) == 1 + memcached_config.lock_attempts

    @pytest.mark.asyncio
    async def test_second_reader_waits_for_release(
        self, memcached_config: SessionConfig, fake_memcache: InMemoryMemcache
    ) -> None:
        """Test a waiting reader proceeds once the holder closes."""
        config = replace(memcached_config, lock_attempts=50)
        holder = await open_driver(config, fake_memcache)
        contender = await open_driver(config, fake_memcache)
        await holder.read(SESSION_ID)
        await holder.write(SESSION_ID, "from holder")

        waiting = asyncio.create_task(contender.read(SESSION_ID))
        await asyncio.sleep(0.05)
        assert not waiting.done()

        await holder.close()
        result = await waiting

        assert result.data == "from holder"

    @pytest.mark.asyncio
    async def test_concurrent_readers_never_both_hold_lock(
        self, memcached_config: SessionConfig, fake_memcache: InMemoryMemcache
    ) -> None:
        """Test two simultaneous reads never both succeed."""
        first = await open_driver(memcached_config, fake_memcache)
        second = await open_driver(memcached_config, fake_memcache)

        results = await asyncio.gather(first.read(SESSION_ID), second.read(SESSION_ID))

        assert sum(bool(r) for r in results) == 1

    @pytest.mark.asyncio
    async def test_reacquire_same_session_touches_lock(
        self, memcached_config: SessionConfig, fake_memcache: InMemoryMemcache
    ) -> None:
        """Test re-reading the held session renews the lock."""
        driver = await open_driver(memcached_config, fake_memcache)
        await driver.read(SESSION_ID)

        assert await driver.read(SESSION_ID)
        assert fake_memcache.count("add", LOCK) == 1
        assert fake_memcache.count("touch", LOCK) == 1


class TestMemcachedDriverCloseDestroy:
    """Tests for MemcachedDriver close/destroy/gc."""

    @pytest.mark.asyncio
    async def test_close_releases_lock_once(
        self, memcached_config: SessionConfig, fake_memcache: InMemoryMemcache
    ) -> None:
        """Test close() frees the lock and a second close() is a no-op."""
        driver = await open_driver(memcached_config, fake_memcache)
        await driver.read(SESSION_ID)

        assert await driver.close()
        assert await driver.close()

        assert LOCK not in fake_memcache.values
        assert fake_memcache.count("delete", LOCK) == 1

    @pytest.mark.asyncio
    async def test_destroy_deletes_entry_and_clears_cookie(
        self, memcached_config: SessionConfig, fake_memcache: InMemoryMemcache
    ) -> None:
        """Test destroy() removes the entry and expires the cookie."""
        context = RequestContext()
        await fake_memcache.set(KEY, b"DATA")
        driver = await open_driver(memcached_config, fake_memcache, context)
        await driver.read(SESSION_ID)

        assert await driver.destroy(SESSION_ID)

        assert KEY not in fake_memcache.values
        assert context.cookies["sessid"].is_deletion

    @pytest.mark.asyncio
    async def test_destroy_requires_lock(
        self, memcached_config: SessionConfig, fake_memcache: InMemoryMemcache
    ) -> None:
        """Test destroy() without a held lock fails."""
        driver = await open_driver(memcached_config, fake_memcache)

        assert not await driver.destroy(SESSION_ID)

    @pytest.mark.asyncio
    async def test_close_leaves_lock_taken_over_by_another_request(
        self,
        memcached_config: SessionConfig,
        fake_memcache: InMemoryMemcache,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        """Test close() does not delete a lock that now holds another token."""
        driver = await open_driver(memcached_config, fake_memcache)
        await driver.read(SESSION_ID)
        fake_memcache.values[LOCK] = b"someone-else"

        with caplog.at_level(logging.WARNING):
            assert await driver.close()

        assert fake_memcache.values[LOCK] == b"someone-else"
        assert fake_memcache.count("delete", LOCK) == 0
        assert "taken over" in caplog.text

    @pytest.mark.asyncio
    async def test_destroy_missing_entry_succeeds_with_warning(
        self,
        memcached_config: SessionConfig,
        fake_memcache: InMemoryMemcache,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        """Test destroying an absent entry still succeeds and is logged."""
        context = RequestContext()
        driver = await open_driver(memcached_config, fake_memcache, context)
        await driver.read(SESSION_ID)

        with caplog.at_level(logging.WARNING):
            assert await driver.destroy(SESSION_ID)
            assert await driver.destroy(SESSION_ID)

        assert "found no entry" in caplog.text
        assert context.cookies["sessid"].is_deletion

    @pytest.mark.asyncio
    async def test_gc_is_noop(
        self, memcached_config: SessionConfig, fake_memcache: InMemoryMemcache
    ) -> None:
        """Test gc() succeeds without any memcached command."""
        driver = await open_driver(memcached_config, fake_memcache)

        assert await driver.gc(1440)
        assert fake_memcache.calls == []
