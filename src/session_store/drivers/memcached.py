"""Memcached session driver.

Session data lives at ``{cookie_name}:{session_id}``; the lock is the
sibling entry ``{cookie_name}:{session_id}:lock`` created with ``add``
(atomic create-if-absent) and a TTL, renewed with ``touch``.

The save path is a comma-separated ``host:port[:weight]`` list. Keys are
spread over the servers by weighted rendezvous hashing, so a key keeps
its server as long as that server stays in the list.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import math
import secrets
from collections.abc import Callable, Iterable
from dataclasses import dataclass

import aiomcache
from aiomcache.exceptions import ClientException

from ..config import SessionConfig
from ..constants import LOCK_SUFFIX
from ..context import RequestContext
from ..exceptions import ConfigurationError
from ..result import DriverResult
from .base import BaseSessionDriver

MEMCACHED_ERRORS = (ClientException, OSError, asyncio.TimeoutError)


@dataclass(frozen=True)
class MemcachedServer:
    host: str
    port: int
    weight: int = 0


def parse_server_list(save_path: str) -> list[MemcachedServer]:
    """Parse ``host:port[:weight]`` entries.

    Raises:
        ValueError: On an entry without host and port, or with a
            non-numeric port or weight.

    Example:
        >>> parse_server_list("10.0.0.1:11211:2,10.0.0.2:11211")
        [MemcachedServer(host='10.0.0.1', port=11211, weight=2), MemcachedServer(host='10.0.0.2', port=11211, weight=0)]
    """
    servers = []
    for entry in save_path.split(","):
        parts = entry.strip().split(":")
        if len(parts) < 2 or not parts[0] or not parts[1]:
            raise ValueError(f"Invalid server: {entry!r}")
        try:
            port = int(parts[1])
            weight = int(parts[2]) if len(parts) > 2 and parts[2] else 0
        except ValueError:
            raise ValueError(f"Invalid server: {entry!r}") from None
        servers.append(MemcachedServer(parts[0], port, weight))
    return servers


class MemcachedPool:
    """A set of memcached servers addressed through one client-like API.

    Each server gets its own :class:`aiomcache.Client`; every key is
    routed to the server with the highest weighted rendezvous score.
    String keys are encoded to bytes here.
    """

    def __init__(
        self,
        servers: Iterable[MemcachedServer] = (),
        client_factory: Callable[[str, int], aiomcache.Client] | None = None,
    ) -> None:
        self._client_factory = client_factory or aiomcache.Client
        self._nodes: dict[tuple[str, int], tuple[MemcachedServer, aiomcache.Client]] = {}
        for server in servers:
            self.add_server(server)

    @property
    def servers(self) -> list[MemcachedServer]:
        return [server for server, _ in self._nodes.values()]

    def add_server(self, server: MemcachedServer) -> None:
        """Add a server; re-adding a known host:port only updates its weight."""
        address = (server.host, server.port)
        if address in self._nodes:
            self._nodes[address] = (server, self._nodes[address][1])
            return
        self._nodes[address] = (server, self._client_factory(server.host, server.port))

    def _client_for(self, key: bytes) -> aiomcache.Client:
        if not self._nodes:
            raise ClientException("There is no server in the pool")

        def score(node: tuple[MemcachedServer, aiomcache.Client]) -> float:
            server = node[0]
            digest = hashlib.md5(f"{server.host}:{server.port}".encode() + b"\x00" + key).digest()
            unit = (int.from_bytes(digest[:8], "big") + 1) / (2**64 + 1)
            return -(server.weight or 1) / math.log(unit)

        return max(self._nodes.values(), key=score)[1]

    async def get(self, key: str) -> bytes | None:
        k = key.encode()
        return await self._client_for(k).get(k)

    async def set(self, key: str, value: bytes, exptime: int = 0) -> bool:
        k = key.encode()
        return await self._client_for(k).set(k, value, exptime=exptime)

    async def add(self, key: str, value: bytes, exptime: int = 0) -> bool:
        k = key.encode()
        return await self._client_for(k).add(k, value, exptime=exptime)

    async def touch(self, key: str, exptime: int) -> bool:
        k = key.encode()
        return await self._client_for(k).touch(k, exptime)

    async def delete(self, key: str) -> bool:
        k = key.encode()
        return await self._client_for(k).delete(k)

    async def close(self) -> None:
        for _, client in self._nodes.values():
            await client.close()


class MemcachedDriver(BaseSessionDriver):
    """Session driver backed by one or more memcached servers."""

    def __init__(
        self,
        config: SessionConfig,
        context: RequestContext | None = None,
        logger: logging.Logger | None = None,
        pool: MemcachedPool | None = None,
    ) -> None:
        """Initialize the driver and parse the server list.

        Args:
            pool: Shared pool. With ``fetch_pool_servers`` enabled the
                configured servers are merged into it and it is used
                instead of a private pool; it is never closed by us.

        Raises:
            ConfigurationError: If the save path is missing or malformed.
        """
        super().__init__(config, context, logger)
        name = type(self).__name__

        if not config.save_path:
            raise ConfigurationError(name, 'No or invalid "save_path" setting provided.')

        try:
            self._servers = parse_server_list(config.save_path)
        except ValueError as exc:
            raise ConfigurationError(name, str(exc)) from exc

        key_prefix = f"{config.cookie_name}:"
        if config.match_ip:
            key_prefix += f"{self._client_ip()}:"
        self._key_prefix = key_prefix

        self._shared_pool = pool
        self._memcached: MemcachedPool | None = None
        self._owns_pool = False

        self._lock_key: str | None = None
        self._lock_token = b""
        self._lock_acquired = False
        self._has_key = False

    @property
    def key_prefix(self) -> str:
        return self._key_prefix

    @property
    def servers(self) -> list[MemcachedServer]:
        return list(self._servers)

    def _session_key(self, session_id: str) -> str:
        return f"{self._key_prefix}{session_id}"

    async def open(self, save_path: str | None, name: str) -> DriverResult:
        if self._shared_pool is not None and self._config.fetch_pool_servers:
            pool = self._shared_pool
            for server in self._servers:
                pool.add_server(server)
            self._owns_pool = False
        else:
            pool = MemcachedPool(self._servers)
            self._owns_pool = True

        if not pool.servers:
            return self._fail("There is no server in the pool.")

        self._memcached = pool
        return DriverResult.success()

    async def read(self, session_id: str) -> DriverResult:
        if self._memcached is None:
            return self._fail("read() called without a memcached pool")

        if not await self._acquire_lock(session_id):
            return self._fail("Unable to acquire the lock for %s", self._short(session_id))

        # write() detects regenerations against this
        self._initial_session_id = session_id

        try:
            raw = await self._memcached.get(self._session_key(session_id))
        except MEMCACHED_ERRORS as exc:
            return self._fail("Unable to read session %s: %s", self._short(session_id), exc)

        self._has_key = raw is not None
        try:
            data = raw.decode("utf-8") if raw is not None else ""
        except UnicodeDecodeError as exc:
            return self._fail("Unable to decode session %s: %s", self._short(session_id), exc)
        self._fingerprint = self._checksum(data)
        return DriverResult.success(data)

    async def write(self, session_id: str, data: str) -> DriverResult:
        if self._memcached is None or self._lock_key is None:
            return self._fail("write() called without a pool or a held lock")

        # Was the ID regenerated?
        if session_id != self._initial_session_id:
            if not await self._release_lock() or not await self._acquire_lock(session_id):
                return self._fail(
                    "Unable to move the lock to regenerated session %s", self._short(session_id)
                )
            self._has_key = False
            self._initial_session_id = session_id

        key = self._session_key(session_id)
        payload = data.encode("utf-8")
        checksum = self._checksum(data)
        expiration = self._config.expiration

        try:
            await self._memcached.touch(self._lock_key, self._config.lock_ttl)

            if checksum != self._fingerprint or not self._has_key:
                if not await self._memcached.set(key, payload, exptime=expiration):
                    return self._fail("Unable to store session %s", self._short(session_id))
                self._fingerprint = checksum
                self._has_key = True
                return DriverResult.success()

            # The entry may have been evicted since read(); store it again then
            if await self._memcached.touch(key, expiration) or await self._memcached.set(
                key, payload, exptime=expiration
            ):
                return DriverResult.success()
        except MEMCACHED_ERRORS as exc:
            return self._fail("Unable to write session %s: %s", self._short(session_id), exc)

        return self._fail("Unable to refresh session %s", self._short(session_id))

    async def close(self) -> DriverResult:
        if self._memcached is None:
            return DriverResult.success()

        result = DriverResult.success()
        if not await self._release_lock():
            result = DriverResult.failure("Unable to release the session lock")

        if self._owns_pool:
            try:
                await self._memcached.close()
            except MEMCACHED_ERRORS as exc:
                self._logger.warning("%s: error while closing: %s", type(self).__name__, exc)

        self._memcached = None
        return result

    async def destroy(self, session_id: str) -> DriverResult:
        if self._memcached is None or self._lock_key is None:
            return self._fail("destroy() called without a pool or a held lock")

        try:
            deleted = await self._memcached.delete(self._session_key(session_id))
        except MEMCACHED_ERRORS as exc:
            return self._fail("Unable to delete session %s: %s", self._short(session_id), exc)

        if not deleted:
            self._logger.warning(
                "%s: delete() found no entry for %s", type(self).__name__, self._short(session_id)
            )

        self._destroy_cookie()
        return DriverResult.success()

    async def gc(self, max_lifetime: int) -> DriverResult:
        # Entries expire natively
        return DriverResult.success()

    async def _acquire_lock(self, session_id: str) -> bool:
        assert self._memcached is not None
        lock_key = f"{self._session_key(session_id)}{LOCK_SUFFIX}"
        lock_ttl = self._config.lock_ttl

        try:
            # The same driver may be reused after a regeneration within one request
            if self._lock_acquired and self._lock_key == lock_key:
                if await self._memcached.touch(lock_key, lock_ttl):
                    return True
                return await self._memcached.set(lock_key, self._lock_token, exptime=lock_ttl)

            token = secrets.token_hex(16).encode()
            attempts = self._config.lock_attempts
            for attempt in range(1, attempts + 1):
                if await self._memcached.get(lock_key) is not None:
                    await asyncio.sleep(self._config.lock_retry_interval)
                    continue

                if await self._memcached.add(lock_key, token, exptime=lock_ttl):
                    self._lock_key = lock_key
                    self._lock_token = token
                    self._lock_acquired = True
                    self._logger.debug(
                        "Session lock acquired: %s (attempt %d)", self._short(session_id), attempt
                    )
                    return True

                # Lost the race for a free lock
                await asyncio.sleep(self._config.lock_retry_interval)
        except MEMCACHED_ERRORS as exc:
            self._logger.error("Cannot acquire the lock %s: %s", lock_key, exc)
            return False

        self._logger.error("Cannot acquire the lock %s after %d attempts.", lock_key, attempts)
        return False

    async def _release_lock(self) -> bool:
        if self._memcached is None or self._lock_key is None or not self._lock_acquired:
            return True

        try:
            # memcached has no compare-and-delete; check the token first
            current = await self._memcached.get(self._lock_key)
            if current is None:
                self._logger.warning("Lock %s had already expired", self._lock_key)
            elif current != self._lock_token:
                self._logger.warning("Lock %s was taken over by another request", self._lock_key)
            else:
                await self._memcached.delete(self._lock_key)
        except MEMCACHED_ERRORS as exc:
            self._logger.error("Cannot free the lock %s: %s", self._lock_key, exc)
            return False

        self._lock_key = None
        self._lock_token = b""
        self._lock_acquired = False
        return True
