"""Session manager and per-request session object.

This module layers the data lifetimes on top of a driver's flat payload:

    - userdata: plain keys, kept until removed
    - flashdata: available on the next request only (unless kept again)
    - tempdata: kept until a per-key deadline

Driver failures never propagate to the caller: a session that cannot be
opened, locked or read behaves as an empty one for the request
(``session.available`` is False) and the failure is logged.
"""

from __future__ import annotations

import logging
import random
import time
from collections.abc import AsyncGenerator, Iterable, Mapping
from contextlib import asynccontextmanager
from typing import Any

from .config import SessionConfig
from .constants import (
    DEFAULT_TEMPDATA_TTL,
    FLASH_BAG_KEY,
    LAST_REGENERATE_KEY,
    RESERVED_SESSION_KEYS,
    TEMP_BAG_KEY,
)
from .context import RequestContext
from .drivers import BaseSessionDriver
from .factory import DriversFactory
from .serializer import decode_session, encode_session
from .sid import generate_session_id, sanitize_session_id

# Flash statuses: 1 just set, 0 readable this request, -1 to be removed
_FLASH_NEW = 1


def _keys(index: str | Iterable[str]) -> list[str]:
    if isinstance(index, str):
        return [index]
    return list(index)


class Session:
    """One request's view of a session.

    Usage:
        async with manager.session(context, cookie_value) as session:
            session.set_userdata("user_id", 42)
            session.set_flashdata("notice", "Saved!")
            session.set_tempdata("otp", "123456", ttl=60)
            if session.has_flashdata("notice"):
                ...
    """

    def __init__(
        self,
        driver: BaseSessionDriver,
        config: SessionConfig,
        context: RequestContext,
        logger: logging.Logger | None = None,
    ) -> None:
        self._driver = driver
        self._config = config
        self._context = context
        self._logger = logger
        self._id: str | None = None
        self._data: dict[str, Any] = {}
        self._available = False
        self._destroyed = False
        self._closed = False

    @property
    def id(self) -> str | None:
        return self._id

    @property
    def data(self) -> dict[str, Any]:
        """The raw working copy, reserved keys included."""
        return self._data

    @property
    def available(self) -> bool:
        """False when storage failed and the session is a throwaway."""
        return self._available

    @property
    def driver(self) -> BaseSessionDriver:
        return self._driver

    @property
    def context(self) -> RequestContext:
        return self._context

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def __setitem__(self, key: str, value: Any) -> None:
        self._data[key] = value

    def __delitem__(self, key: str) -> None:
        del self._data[key]

    def __contains__(self, key: object) -> bool:
        return key in self._data

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    async def start(self, session_id: str | None = None) -> None:
        """Open the driver and load the session.

        Args:
            session_id: Raw ID from the client cookie. Missing or invalid
                IDs are replaced by a freshly generated one.
        """
        cookie_name = self._config.cookie_name
        session_id = sanitize_session_id(session_id, self._config.sid_pattern, self._logger)
        self._id = session_id or generate_session_id(self._config)

        opened = await self._driver.open(self._config.save_path, cookie_name)
        if not opened:
            self._warn_unavailable("open", opened.error)
            return

        result = await self._driver.read(self._id)
        if not result:
            self._warn_unavailable("read", result.error)
            return

        self._available = True
        self._data = decode_session(result.data, self._logger)

        if not self._context.is_ajax and self._config.regenerate_time > 0:
            now = int(time.time())
            try:
                last = int(self._data[LAST_REGENERATE_KEY])
            except (KeyError, TypeError, ValueError):
                last = None
            if last is None:
                self._data[LAST_REGENERATE_KEY] = now
            elif last < now - self._config.regenerate_time:
                await self.regenerate(self._config.destroy_on_regenerate)

        self._send_cookie()
        self._prepare_internal_vars()

        probability = self._config.gc_probability / self._config.gc_divisor
        if probability > 0 and random.random() < probability:
            await self._driver.gc(self._config.expiration)

    def _warn_unavailable(self, operation: str, error: str | None) -> None:
        self._available = False
        self._data = {}
        if self._logger:
            self._logger.warning(
                "Session storage %s failed, continuing with an empty session: %s",
                operation,
                error,
            )

    def _send_cookie(self) -> None:
        assert self._id is not None
        self._context.set_cookie(
            self._config.cookie_name,
            self._id,
            max_age=self._config.cookie_lifetime,
            path=self._config.cookie_path,
            domain=self._config.cookie_domain,
            secure=self._config.cookie_secure,
        )

    def _prepare_internal_vars(self) -> None:
        """Age flashdata and drop expired tempdata."""
        flashes = self._data.get(FLASH_BAG_KEY)
        if flashes:
            for key, status in list(flashes.items()):
                status -= 1
                if status < 0:
                    del flashes[key]
                    self._data.pop(key, None)
                else:
                    flashes[key] = status
        self._drop_empty_bag(FLASH_BAG_KEY)

        temps = self._data.get(TEMP_BAG_KEY)
        if temps:
            now = time.time()
            for key, deadline in list(temps.items()):
                if deadline < now:
                    del temps[key]
                    self._data.pop(key, None)
        self._drop_empty_bag(TEMP_BAG_KEY)

    def _drop_empty_bag(self, bag: str) -> None:
        if bag in self._data and not self._data[bag]:
            del self._data[bag]

    def _is_flashdata(self, key: str) -> bool:
        return key in self._data.get(FLASH_BAG_KEY, {})

    def _is_tempdata(self, key: str) -> bool:
        return key in self._data.get(TEMP_BAG_KEY, {})

    # userdata

    def userdata(self, key: str | None = None) -> Any:
        """Return one userdata value, or all of them when ``key`` is None."""
        if key is not None:
            if key in RESERVED_SESSION_KEYS:
                return None
            return self._data.get(key)

        hidden = RESERVED_SESSION_KEYS.union(
            self._data.get(TEMP_BAG_KEY, {}), self._data.get(FLASH_BAG_KEY, {})
        )
        return {k: v for k, v in self._data.items() if k not in hidden}

    def set_userdata(self, index: str | Mapping[str, Any], value: Any = None) -> None:
        if isinstance(index, Mapping):
            self._data.update(index)
        else:
            self._data[index] = value

    def has_userdata(self, key: str) -> bool:
        return (
            key in self._data
            and key not in RESERVED_SESSION_KEYS
            and not self._is_flashdata(key)
            and not self._is_tempdata(key)
        )

    def unset_userdata(self, index: str | Iterable[str]) -> None:
        """Remove userdata; flash and temp keys are left alone."""
        for key in _keys(index):
            if self.has_userdata(key):
                del self._data[key]

    # flashdata

    def flashdata(self, key: str | None = None) -> Any:
        flashes = self._data.get(FLASH_BAG_KEY, {})
        if key is not None:
            return self._data.get(key) if key in flashes else None
        return {k: self._data.get(k) for k in flashes}

    def set_flashdata(self, index: str | Mapping[str, Any], value: Any = None) -> None:
        self.set_userdata(index, value)
        self._mark_as_flash(_keys(index))

    def has_flashdata(self, key: str) -> bool:
        return self._is_flashdata(key)

    def keep_flashdata(self, index: str | Iterable[str]) -> None:
        """Keep flashdata for one more request."""
        self._mark_as_flash(_keys(index))

    def unset_flashdata(self, index: str | Iterable[str]) -> None:
        for key in _keys(index):
            if self._is_flashdata(key):
                del self._data[FLASH_BAG_KEY][key]
                self._data.pop(key, None)
        self._drop_empty_bag(FLASH_BAG_KEY)

    def _mark_as_flash(self, keys: list[str]) -> None:
        flashes = self._data.setdefault(FLASH_BAG_KEY, {})
        for key in keys:
            if key in self._data:
                flashes[key] = _FLASH_NEW
        self._drop_empty_bag(FLASH_BAG_KEY)

    # tempdata

    def tempdata(self, key: str | None = None) -> Any:
        temps = self._data.get(TEMP_BAG_KEY, {})
        if key is not None:
            return self._data.get(key) if key in temps else None
        return {k: self._data.get(k) for k in temps}

    def set_tempdata(
        self,
        index: str | Mapping[str, Any],
        value: Any = None,
        ttl: int | Mapping[str, int] = DEFAULT_TEMPDATA_TTL,
    ) -> None:
        """Set tempdata expiring after ``ttl`` seconds.

        ``ttl`` may be a mapping of per-key TTLs when ``index`` is a mapping.
        """
        self.set_userdata(index, value)
        self._mark_as_temp(_keys(index), ttl)

    def has_tempdata(self, key: str) -> bool:
        return self._is_tempdata(key)

    def renew_tempdata(
        self, index: str | Iterable[str], ttl: int | Mapping[str, int]
    ) -> None:
        self._mark_as_temp(_keys(index), ttl)

    def unset_tempdata(self, index: str | Iterable[str]) -> None:
        for key in _keys(index):
            if self._is_tempdata(key):
                del self._data[TEMP_BAG_KEY][key]
                self._data.pop(key, None)
        self._drop_empty_bag(TEMP_BAG_KEY)

    def _mark_as_temp(self, keys: list[str], ttl: int | Mapping[str, int]) -> None:
        temps = self._data.setdefault(TEMP_BAG_KEY, {})
        now = int(time.time())
        for key in keys:
            if key not in self._data:
                continue
            seconds = ttl[key] if isinstance(ttl, Mapping) else ttl
            temps[key] = now + seconds
        self._drop_empty_bag(TEMP_BAG_KEY)

    # lifecycle

    async def regenerate(self, destroy: bool = False) -> None:
        """Move the session to a new ID.

        Args:
            destroy: Delete the data stored under the old ID.
        """
        self._data[LAST_REGENERATE_KEY] = int(time.time())
        old_id = self._id
        if destroy and old_id is not None and self._available:
            result = await self._driver.destroy(old_id)
            if not result and self._logger:
                self._logger.warning("Could not destroy regenerated session: %s", result.error)
        self._id = generate_session_id(self._config)
        self._send_cookie()
        if self._logger:
            self._logger.debug(
                "Session regenerated: %s -> %s", (old_id or "")[:8] + "...", self._id[:8] + "..."
            )

    async def destroy(self) -> None:
        """Delete the stored session and clear the cookie."""
        if self._id is not None and self._available:
            result = await self._driver.destroy(self._id)
            if not result and self._logger:
                self._logger.warning("Session destroy failed: %s", result.error)
        else:
            self._context.expire_cookie(
                self._config.cookie_name,
                path=self._config.cookie_path,
                domain=self._config.cookie_domain,
                secure=self._config.cookie_secure,
            )
        self._data = {}
        self._destroyed = True

    async def close(self) -> None:
        """Persist the session (unless destroyed or unavailable) and close the driver."""
        if self._closed:
            return
        self._closed = True

        if self._available and not self._destroyed and self._id is not None:
            result = await self._driver.write(self._id, encode_session(self._data))
            if not result and self._logger:
                self._logger.warning("Session write failed: %s", result.error)

        result = await self._driver.close()
        if not result and self._logger:
            self._logger.warning("Session close failed: %s", result.error)


class SessionManager:
    """Builds a driver per request and manages the session around it.

    Usage:
        config = SessionConfig(driver="redis", save_path="host=localhost")
        manager = SessionManager(config)

        async with manager.session(RequestContext(client_ip=ip), cookie) as session:
            session["cart_count"] = 5
            # saved and unlocked when exiting
    """

    def __init__(
        self,
        config: SessionConfig | None = None,
        factory: DriversFactory | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        """Initialize the session manager.

        Args:
            config: Session configuration. Uses defaults if None.
            factory: Driver factory; custom drivers are registered on it.
            logger: Optional logger for debugging.
        """
        self._config = config or SessionConfig()
        self._factory = factory or DriversFactory()
        self._logger = logger

    @property
    def config(self) -> SessionConfig:
        return self._config

    @property
    def factory(self) -> DriversFactory:
        return self._factory

    def build_driver(self, context: RequestContext) -> BaseSessionDriver:
        """Build the configured driver for one request.

        Raises:
            DriverNotFoundError: If the configured driver isn't registered.
            ConfigurationError: If the driver rejects the configuration.
        """
        return self._factory.build(self._config.driver, self._config, context, self._logger)

    @asynccontextmanager
    async def session(
        self,
        context: RequestContext | None = None,
        session_id: str | None = None,
    ) -> AsyncGenerator[Session, None]:
        """Start a session, yield it, then save and unlock it.

        The session is written and the driver closed even if the body
        raises.

        Args:
            context: Request context; a blank one is used if None.
            session_id: Raw session ID from the request cookie.

        Yields:
            The started :class:`Session`.
        """
        context = context or RequestContext()
        session = Session(self.build_driver(context), self._config, context, self._logger)
        try:
            await session.start(session_id)
            yield session
        finally:
            await session.close()
