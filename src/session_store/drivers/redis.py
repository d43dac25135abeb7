"""Redis session driver.

Session data lives at ``{prefix}{session_id}`` with the configured
expiration; the lock is a sibling key ``{prefix}{session_id}:lock``
holding a random token with a TTL:

    - Lock acquire: SET key token NX EX ttl, retried a bounded number of times
    - Lock renew: EXPIRE key ttl on every write
    - Lock release: Lua script checking the token, so a lock that expired
      and was taken over by another request is never deleted by us
"""

from __future__ import annotations

import asyncio
import logging
import secrets
from typing import Any

from redis.asyncio import Redis
from redis.exceptions import RedisError

from ..config import SessionConfig
from ..constants import LOCK_SUFFIX, RELEASE_LOCK_SCRIPT
from ..context import RequestContext
from ..exceptions import ConfigurationError
from ..result import DriverResult
from .base import BaseSessionDriver

_SAVE_PATH_KEYS = frozenset({"host", "port", "password", "database", "timeout", "prefix"})


def parse_save_path(save_path: str) -> dict[str, str | None]:
    """Parse ``host=...,port=...`` settings into a dict.

    Example:
        >>> parse_save_path("host=localhost,port=6379,database=2")
        {'host': 'localhost', 'port': '6379', 'database': '2'}
    """
    settings: dict[str, str | None] = {}
    for item in save_path.split(","):
        if not item.strip():
            continue
        name, sep, value = item.partition("=")
        settings[name.strip()] = value.strip() if sep else None
    return settings


class RedisDriver(BaseSessionDriver):
    """Session driver backed by a Redis server.

    Usage:
        config = SessionConfig(driver="redis", save_path="host=localhost,port=6379")
        driver = RedisDriver(config, RequestContext(client_ip="10.0.0.1"))

        # Or share one client across requests (it won't be closed by close())
        driver = RedisDriver(config, context, redis=Redis.from_url("redis://localhost"))
    """

    def __init__(
        self,
        config: SessionConfig,
        context: RequestContext | None = None,
        logger: logging.Logger | None = None,
        redis: Redis[bytes] | None = None,
    ) -> None:
        """Initialize the driver and validate the save path.

        Raises:
            ConfigurationError: If the save path or its host is missing,
                or a numeric setting is malformed.
        """
        super().__init__(config, context, logger)
        name = type(self).__name__

        if not config.save_path:
            raise ConfigurationError(name, 'No or invalid "save_path" setting found.')

        settings = parse_save_path(config.save_path)
        if not settings.get("host"):
            raise ConfigurationError(
                name, 'No or invalid "host" setting in the "save_path" config.'
            )
        unknown = set(settings) - _SAVE_PATH_KEYS
        if unknown:
            self._logger.warning("Ignoring unknown Redis save_path settings: %s", sorted(unknown))

        try:
            self._connection_kwargs: dict[str, Any] = {
                "host": settings["host"],
                "port": int(settings.get("port") or 6379),
                "password": settings.get("password") or None,
                "db": int(settings.get("database") or 0),
                "socket_timeout": float(settings["timeout"]) if settings.get("timeout") else None,
            }
        except ValueError as exc:
            raise ConfigurationError(name, f"Invalid numeric save_path setting: {exc}") from exc

        key_prefix = settings.get("prefix") or f"{config.cookie_name}:"
        if config.match_ip:
            key_prefix += f"{self._client_ip()}:"
        self._key_prefix = key_prefix

        self._client = redis
        self._redis: Redis[bytes] | None = None
        self._owns_client = redis is None
        self._release_lock_script: Any = None

        self._lock_key: str | None = None
        self._lock_token: str | None = None
        self._lock_acquired = False
        self._has_key = False

    @property
    def key_prefix(self) -> str:
        return self._key_prefix

    def _session_key(self, session_id: str) -> str:
        return f"{self._key_prefix}{session_id}"

    def _lock_key_for(self, session_id: str) -> str:
        return f"{self._session_key(session_id)}{LOCK_SUFFIX}"

    async def open(self, save_path: str | None, name: str) -> DriverResult:
        """Connect (or reuse the injected client) and check the server answers."""
        client = self._client
        if client is None:
            client = Redis(**self._connection_kwargs)

        try:
            await client.ping()
        except RedisError as exc:
            if self._owns_client:
                await client.aclose()
            return self._fail(
                "Unable to establish a Redis connection with provided settings: %s", exc
            )

        self._redis = client
        self._release_lock_script = client.register_script(RELEASE_LOCK_SCRIPT)
        return DriverResult.success()

    async def read(self, session_id: str) -> DriverResult:
        if self._redis is None:
            return self._fail("read() called without a Redis connection")

        if not await self._acquire_lock(session_id):
            return self._fail("Unable to acquire the lock for %s", self._short(session_id))

        # write() detects regenerations against this
        self._initial_session_id = session_id

        try:
            raw = await self._redis.get(self._session_key(session_id))
        except RedisError as exc:
            return self._fail("Unable to read session %s: %s", self._short(session_id), exc)

        if raw is None:
            self._has_key = False
            data = ""
        else:
            self._has_key = True
            try:
                data = raw.decode("utf-8") if isinstance(raw, bytes) else str(raw)
            except UnicodeDecodeError as exc:
                return self._fail("Unable to decode session %s: %s", self._short(session_id), exc)

        self._fingerprint = self._checksum(data)
        return DriverResult.success(data)

    async def write(self, session_id: str, data: str) -> DriverResult:
        if self._redis is None or self._lock_key is None:
            return self._fail("write() called without a connection or a held lock")

        # Was the ID regenerated?
        if session_id != self._initial_session_id:
            if not await self._release_lock() or not await self._acquire_lock(session_id):
                return self._fail(
                    "Unable to move the lock to regenerated session %s", self._short(session_id)
                )
            self._has_key = False
            self._initial_session_id = session_id

        key = self._session_key(session_id)
        checksum = self._checksum(data)
        expiration = self._config.expiration

        try:
            await self._redis.expire(self._lock_key, self._config.lock_ttl)

            if checksum != self._fingerprint or not self._has_key:
                if not await self._redis.set(key, data, ex=expiration):
                    return self._fail("Unable to store session %s", self._short(session_id))
                self._fingerprint = checksum
                self._has_key = True
                return DriverResult.success()

            # Unchanged: only extend the TTL; the key may have expired meanwhile
            if await self._redis.expire(key, expiration) or await self._redis.set(
                key, data, ex=expiration
            ):
                return DriverResult.success()
        except RedisError as exc:
            return self._fail("Unable to write session %s: %s", self._short(session_id), exc)

        return self._fail("Unable to refresh session %s", self._short(session_id))

    async def close(self) -> DriverResult:
        if self._redis is None:
            return DriverResult.success()

        result = DriverResult.success()
        try:
            await self._redis.ping()
            if not await self._release_lock():
                result = DriverResult.failure("Unable to release the session lock")
        except RedisError as exc:
            self._logger.warning("%s: Redis error while closing: %s", type(self).__name__, exc)
        finally:
            if self._owns_client:
                await self._redis.aclose()

        self._redis = None
        return result

    async def destroy(self, session_id: str) -> DriverResult:
        if self._redis is None or self._lock_key is None:
            return self._fail("destroy() called without a connection or a held lock")

        try:
            deleted = await self._redis.delete(self._session_key(session_id))
        except RedisError as exc:
            return self._fail("Unable to delete session %s: %s", self._short(session_id), exc)

        if deleted != 1:
            self._logger.warning(
                "%s: delete() returned %r instead of 1 for %s",
                type(self).__name__,
                deleted,
                self._short(session_id),
            )

        self._destroy_cookie()
        return DriverResult.success()

    async def gc(self, max_lifetime: int) -> DriverResult:
        # Keys expire natively
        return DriverResult.success()

    async def _acquire_lock(self, session_id: str) -> bool:
        assert self._redis is not None
        lock_key = self._lock_key_for(session_id)
        lock_ttl = self._config.lock_ttl

        # The same driver may be reused after a regeneration within one request
        if self._lock_acquired and self._lock_key == lock_key:
            try:
                if await self._redis.expire(lock_key, lock_ttl):
                    return True
                return bool(await self._redis.set(lock_key, self._lock_token, ex=lock_ttl, nx=True))
            except RedisError as exc:
                self._logger.error("Cannot renew the lock %s: %s", lock_key, exc)
                return False

        token = secrets.token_hex(16)
        attempts = self._config.lock_attempts
        for attempt in range(1, attempts + 1):
            try:
                remaining = await self._redis.ttl(lock_key)
                if remaining > 0:
                    await asyncio.sleep(self._config.lock_retry_interval)
                    continue

                if remaining == -1:
                    self._logger.warning("No TTL for %s lock. Overriding...", lock_key)
                    acquired = await self._redis.set(lock_key, token, ex=lock_ttl)
                else:
                    acquired = await self._redis.set(lock_key, token, ex=lock_ttl, nx=True)
            except RedisError as exc:
                self._logger.error("Cannot acquire the lock %s: %s", lock_key, exc)
                return False

            if acquired:
                self._lock_key = lock_key
                self._lock_token = token
                self._lock_acquired = True
                self._logger.debug(
                    "Session lock acquired: %s (attempt %d)", self._short(session_id), attempt
                )
                return True

            # Lost the race for a free lock
            await asyncio.sleep(self._config.lock_retry_interval)

        self._logger.error("Cannot acquire the lock %s after %d attempts.", lock_key, attempts)
        return False

    async def _release_lock(self) -> bool:
        if self._redis is None or self._lock_key is None or not self._lock_acquired:
            return True

        try:
            released = await self._release_lock_script(
                keys=[self._lock_key], args=[self._lock_token]
            )
        except RedisError as exc:
            self._logger.error("Could not release the lock %s: %s", self._lock_key, exc)
            return False

        if not released:
            self._logger.warning("Lock %s had already expired or changed owner", self._lock_key)
        else:
            self._logger.debug("Session lock released: %s", self._lock_key)

        self._lock_key = None
        self._lock_token = None
        self._lock_acquired = False
        return True
