"""Pluggable server-side session storage.

Sessions live in files, Redis or Memcached behind one async driver
contract, with a single writer per session enforced by locking
(``flock`` for files, a TTL-bound lock key for Redis and Memcached).

Basic usage:
    from session_store import RequestContext, SessionConfig, SessionManager

    config = SessionConfig(driver="redis", save_path="host=localhost,port=6379")
    manager = SessionManager(config)

    async with manager.session(RequestContext(client_ip=ip), cookie_value) as session:
        session.set_userdata("user_id", 42)
        session.set_flashdata("notice", "Profile saved")

Using a driver directly:
    driver = FilesDriver(SessionConfig(save_path="/var/lib/sessions"))
    await driver.open("/var/lib/sessions", "sessid")
    result = await driver.read(session_id)
    await driver.write(session_id, result.data + "...")
    await driver.close()

With FastAPI/Starlette:
    from session_store.contrib.starlette import SessionMiddleware

    app = FastAPI()
    app.add_middleware(SessionMiddleware, manager=manager)
"""

from __future__ import annotations

from .config import SessionConfig
from .constants import (
    DEFAULT_EXPIRATION,
    DEFAULT_LOCK_ATTEMPTS,
    DEFAULT_LOCK_RETRY_INTERVAL,
    DEFAULT_LOCK_TTL,
    FILES_DRIVER,
    LOCK_SUFFIX,
    MEMCACHED_DRIVER,
    REDIS_DRIVER,
    RELEASE_LOCK_SCRIPT,
    RESERVED_SESSION_KEYS,
)
from .context import (
    CookieInstruction,
    RequestContext,
    get_current_session,
    set_current_session,
)
from .drivers import (
    BaseSessionDriver,
    FilesDriver,
    MemcachedDriver,
    MemcachedPool,
    MemcachedServer,
    RedisDriver,
)
from .exceptions import (
    ConfigurationError,
    DriverNotFoundError,
    InvalidDriverError,
    SessionContextError,
    SessionError,
)
from .factory import DriversFactory
from .manager import Session, SessionManager
from .result import DriverResult
from .serializer import decode_session, encode_session
from .sid import generate_session_id, sanitize_session_id

__version__ = "0.1.0"

__all__ = [
    # Main classes
    "SessionManager",
    "Session",
    "SessionConfig",
    "RequestContext",
    "CookieInstruction",
    "DriversFactory",
    "DriverResult",
    # Drivers
    "BaseSessionDriver",
    "FilesDriver",
    "RedisDriver",
    "MemcachedDriver",
    "MemcachedPool",
    "MemcachedServer",
    # Exceptions
    "SessionError",
    "ConfigurationError",
    "DriverNotFoundError",
    "InvalidDriverError",
    "SessionContextError",
    # Context helpers
    "set_current_session",
    "get_current_session",
    # Utility functions
    "generate_session_id",
    "sanitize_session_id",
    "encode_session",
    "decode_session",
    # Constants
    "FILES_DRIVER",
    "REDIS_DRIVER",
    "MEMCACHED_DRIVER",
    "LOCK_SUFFIX",
    "RELEASE_LOCK_SCRIPT",
    "RESERVED_SESSION_KEYS",
    "DEFAULT_EXPIRATION",
    "DEFAULT_LOCK_TTL",
    "DEFAULT_LOCK_ATTEMPTS",
    "DEFAULT_LOCK_RETRY_INTERVAL",
]
