"""Base class every session storage driver implements.

Lifecycle per request::

    driver = FilesDriver(config, context)
    await driver.open(save_path, cookie_name)
    result = await driver.read(session_id)      # acquires the lock
    ...                                         # caller mutates its copy
    await driver.write(session_id, payload)     # may follow a regeneration
    await driver.close()                        # releases the lock

``destroy`` and ``gc`` are independent entry points. Failures are
returned as falsy :class:`DriverResult` values and logged where they
happen; no storage exception propagates out of these methods.
"""

from __future__ import annotations

import abc
import hashlib
import logging

from ..config import SessionConfig
from ..context import RequestContext
from ..exceptions import ConfigurationError
from ..result import DriverResult


class BaseSessionDriver(abc.ABC):
    """Abstract session driver.

    Subclasses keep the fingerprint of the last read/written payload in
    ``_fingerprint`` and the session ID passed to the last ``read`` in
    ``_initial_session_id``; a ``write`` for a different ID is a
    regeneration.
    """

    def __init__(
        self,
        config: SessionConfig,
        context: RequestContext | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        """Initialize the driver.

        Args:
            config: Resolved session configuration.
            context: Request context (client IP, cookie instructions).
            logger: Logger for diagnostics; defaults to the module logger.

        Raises:
            ConfigurationError: If IP matching is enabled without a client IP.
        """
        self._config = config
        self._context = context or RequestContext()
        self._logger = logger or logging.getLogger(type(self).__module__)
        self._fingerprint: str | None = None
        self._initial_session_id: str | None = None

        if config.match_ip and not self._context.client_ip:
            raise ConfigurationError(
                type(self).__name__, "match_ip is enabled but the client IP is unknown"
            )

    @property
    def config(self) -> SessionConfig:
        return self._config

    @property
    def context(self) -> RequestContext:
        return self._context

    @abc.abstractmethod
    async def open(self, save_path: str | None, name: str) -> DriverResult:
        """Prepare the storage target. No session is assumed to exist."""

    @abc.abstractmethod
    async def read(self, session_id: str) -> DriverResult:
        """Lock and return the payload for ``session_id`` ('' if new)."""

    @abc.abstractmethod
    async def write(self, session_id: str, data: str) -> DriverResult:
        """Persist ``data``; only refresh the expiry if it is unchanged."""

    @abc.abstractmethod
    async def close(self) -> DriverResult:
        """Release the lock and any handle or connection. Idempotent."""

    @abc.abstractmethod
    async def destroy(self, session_id: str) -> DriverResult:
        """Delete the stored session and clear the cookie. Idempotent."""

    @abc.abstractmethod
    async def gc(self, max_lifetime: int) -> DriverResult:
        """Remove sessions inactive for more than ``max_lifetime`` seconds."""

    @abc.abstractmethod
    async def _acquire_lock(self, session_id: str) -> bool:
        """Obtain the exclusive lock for ``session_id``."""

    @abc.abstractmethod
    async def _release_lock(self) -> bool:
        """Release the lock obtained by :meth:`_acquire_lock`."""

    def _destroy_cookie(self) -> None:
        """Instruct the response to clear the session cookie."""
        self._context.expire_cookie(
            self._config.cookie_name,
            path=self._config.cookie_path,
            domain=self._config.cookie_domain,
            secure=self._config.cookie_secure,
        )

    def _client_ip(self) -> str:
        return self._context.client_ip or ""

    @staticmethod
    def _checksum(data: str) -> str:
        """Fingerprint of a payload, used to skip unchanged writes."""
        return hashlib.md5(data.encode("utf-8")).hexdigest()

    @staticmethod
    def _short(session_id: str) -> str:
        return session_id[:8] + "..." if len(session_id) > 8 else session_id

    def _fail(self, message: str, *args: object) -> DriverResult:
        """Log an operation failure and return it as a result."""
        self._logger.error("%s: " + message, type(self).__name__, *args)
        return DriverResult.failure(message % args if args else message)
