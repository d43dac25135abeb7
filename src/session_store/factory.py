"""Driver registry and factory."""

from __future__ import annotations

import logging
from typing import Union

from .config import SessionConfig
from .constants import FILES_DRIVER, MEMCACHED_DRIVER, REDIS_DRIVER
from .context import RequestContext
from .drivers import BaseSessionDriver, FilesDriver, MemcachedDriver, RedisDriver
from .exceptions import DriverNotFoundError, InvalidDriverError

DriverSpec = Union[type[BaseSessionDriver], BaseSessionDriver]


class DriversFactory:
    """Maps driver names to driver classes or pre-built instances.

    Classes are instantiated on every :meth:`build` call with the
    resolved configuration and request context; instances are returned
    as they are. Names are case-insensitive.

    Usage:
        factory = DriversFactory()
        factory.register_driver("dynamo", DynamoSessionDriver)
        driver = factory.build("dynamo", config, context)
    """

    def __init__(self) -> None:
        self._drivers: dict[str, DriverSpec] = {
            FILES_DRIVER: FilesDriver,
            REDIS_DRIVER: RedisDriver,
            MEMCACHED_DRIVER: MemcachedDriver,
        }

    def build(
        self,
        driver: str,
        config: SessionConfig,
        context: RequestContext | None = None,
        logger: logging.Logger | None = None,
    ) -> BaseSessionDriver:
        """Return a driver for ``driver``.

        Raises:
            DriverNotFoundError: If no driver is registered under that name.
            ConfigurationError: If the driver rejects the configuration.
        """
        try:
            spec = self._drivers[driver.lower()]
        except KeyError:
            raise DriverNotFoundError(driver, list(self._drivers)) from None

        if isinstance(spec, BaseSessionDriver):
            return spec
        return spec(config, context, logger)

    def register_driver(self, name: str, driver: DriverSpec) -> None:
        """Register (or replace) a driver class or instance under ``name``.

        Raises:
            InvalidDriverError: If ``driver`` doesn't implement the driver contract.
        """
        is_class = isinstance(driver, type) and issubclass(driver, BaseSessionDriver)
        if not is_class and not isinstance(driver, BaseSessionDriver):
            raise InvalidDriverError(name, driver)
        self._drivers[name.lower()] = driver

    def unregister_driver(self, name: str) -> None:
        self._drivers.pop(name.lower(), None)

    def available_drivers(self) -> list[str]:
        return sorted(self._drivers)
