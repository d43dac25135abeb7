"""Custom exceptions for session storage.

Storage, lock and filesystem failures never raise across the driver
contract; they are reported as failed :class:`DriverResult` values.
The exceptions below cover misconfiguration and wiring mistakes only.
"""

from __future__ import annotations


class SessionError(Exception):
    """Base exception for session-related errors.

    All session-specific exceptions inherit from this class,
    allowing callers to catch all session errors with a single except clause.
    """


class ConfigurationError(SessionError):
    """Raised when a driver cannot be built from the given configuration.

    This typically occurs when:
    - ``save_path`` is missing or malformed
    - A Redis save path has no ``host`` setting
    - A Memcached server entry is not ``host:port[:weight]``
    - IP matching is enabled but the request has no client IP

    Attributes:
        driver: Name of the driver class that rejected the configuration.
    """

    def __init__(self, driver: str, message: str) -> None:
        self.driver = driver
        super().__init__(f"{driver}: {message}")


class DriverNotFoundError(SessionError):
    """Raised when the factory is asked for a driver name it doesn't know.

    Attributes:
        name: The requested driver name.
        available: Names registered at the time of the lookup.
    """

    def __init__(self, name: str, available: list[str] | None = None) -> None:
        self.name = name
        self.available = sorted(available or [])
        message = f"Unknown session driver: {name!r}"
        if self.available:
            message += f" (available: {', '.join(self.available)})"
        super().__init__(message)


class InvalidDriverError(SessionError):
    """Raised when registering something that isn't a session driver."""

    def __init__(self, name: str, driver: object) -> None:
        self.name = name
        self.driver = driver
        super().__init__(
            f"Cannot register {driver!r} as {name!r}: "
            "not a BaseSessionDriver subclass or instance"
        )


class SessionContextError(SessionError):
    """Raised when no session is available in the current request context.

    This occurs when session access is attempted without the session
    middleware having set up a session for the request.
    """

    def __init__(self, message: str | None = None) -> None:
        if message is None:
            message = "No session in context - middleware not set up"
        super().__init__(message)
