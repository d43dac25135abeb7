"""Session storage drivers.

Every driver implements :class:`BaseSessionDriver`; pick one by name
through :class:`session_store.factory.DriversFactory`.
"""

from __future__ import annotations

from .base import BaseSessionDriver
from .files import FilesDriver
from .memcached import MemcachedDriver, MemcachedPool, MemcachedServer
from .redis import RedisDriver

__all__ = [
    "BaseSessionDriver",
    "FilesDriver",
    "MemcachedDriver",
    "MemcachedPool",
    "MemcachedServer",
    "RedisDriver",
]
