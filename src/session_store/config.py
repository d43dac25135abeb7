"""Configuration dataclass for session storage.

Provides a single immutable configuration object handed to drivers at
construction, instead of reading process-wide settings.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, fields
from functools import cached_property
from typing import Any

from .constants import (
    DEFAULT_COOKIE_NAME,
    DEFAULT_EXPIRATION,
    DEFAULT_GC_DIVISOR,
    DEFAULT_GC_MAXLIFETIME,
    DEFAULT_GC_PROBABILITY,
    DEFAULT_LOCK_ATTEMPTS,
    DEFAULT_LOCK_RETRY_INTERVAL,
    DEFAULT_LOCK_TTL,
    DEFAULT_REGENERATE_TIME,
    DEFAULT_SID_BITS_PER_CHARACTER,
    DEFAULT_SID_LENGTH,
    FILES_DRIVER,
)
from .sid import build_sid_regexp, compute_sid_length

_TRUE_STRINGS = frozenset({"1", "true", "yes", "on"})


@dataclass(frozen=True)
class SessionConfig:
    """Configuration for session storage.

    Attributes:
        driver: Name of the storage driver (files, redis, memcached or a
            registered custom driver).
        save_path: Storage target. A directory for the files driver,
            ``host=...,port=...`` pairs for Redis, ``host:port[:weight]``
            entries for Memcached.
        cookie_name: Session cookie name, also used as storage key prefix.
        cookie_path: Cookie path attribute.
        cookie_domain: Cookie domain attribute.
        cookie_secure: Whether the cookie is HTTPS-only.
        expiration: Session lifetime in seconds (0 = gc max lifetime).
        match_ip: Bind sessions to the client IP address.
        sid_length: Session ID length; raised to reach 160 bits.
        sid_bits_per_character: 4, 5 or 6.
        regenerate_time: Seconds between automatic ID regenerations (0 = off).
        destroy_on_regenerate: Delete old session data on auto-regeneration.
        fetch_pool_servers: Memcached - keep servers already in the pool.
        gc_probability: Numerator of the per-start gc probability.
        gc_divisor: Denominator of the per-start gc probability.
        lock_ttl: Lock key time-to-live in seconds.
        lock_attempts: Lock acquisition attempts before giving up.
        lock_retry_interval: Seconds to wait between lock attempts.

    Example:
        >>> config = SessionConfig(
        ...     driver="redis",
        ...     save_path="host=localhost,port=6379,database=2",
        ...     expiration=3600,
        ... )
        >>> config.sid_regexp
        '[0-9a-f]{40}'
    """

    driver: str = FILES_DRIVER
    save_path: str | None = None
    cookie_name: str = DEFAULT_COOKIE_NAME
    cookie_path: str = "/"
    cookie_domain: str = ""
    cookie_secure: bool = False
    expiration: int = DEFAULT_EXPIRATION
    match_ip: bool = False
    sid_length: int = DEFAULT_SID_LENGTH
    sid_bits_per_character: int = DEFAULT_SID_BITS_PER_CHARACTER
    regenerate_time: int = DEFAULT_REGENERATE_TIME
    destroy_on_regenerate: bool = False
    fetch_pool_servers: bool = True
    gc_probability: int = DEFAULT_GC_PROBABILITY
    gc_divisor: int = DEFAULT_GC_DIVISOR
    lock_ttl: int = DEFAULT_LOCK_TTL
    lock_attempts: int = DEFAULT_LOCK_ATTEMPTS
    lock_retry_interval: float = DEFAULT_LOCK_RETRY_INTERVAL

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if not self.cookie_name:
            raise ValueError("cookie_name cannot be empty")
        if self.expiration < 0:
            raise ValueError("expiration cannot be negative")
        if self.expiration == 0:
            object.__setattr__(self, "expiration", DEFAULT_GC_MAXLIFETIME)
        if self.regenerate_time < 0:
            raise ValueError("regenerate_time cannot be negative")
        if self.gc_probability < 0 or self.gc_divisor <= 0:
            raise ValueError("gc_probability must be >= 0 and gc_divisor positive")
        if self.lock_ttl <= 0:
            raise ValueError("lock_ttl must be positive")
        if self.lock_attempts <= 0:
            raise ValueError("lock_attempts must be positive")
        if self.lock_retry_interval < 0:
            raise ValueError("lock_retry_interval cannot be negative")
        if self.sid_length <= 0:
            raise ValueError("sid_length must be positive")
        object.__setattr__(
            self,
            "sid_length",
            compute_sid_length(self.sid_length, self.sid_bits_per_character),
        )

    @property
    def cookie_lifetime(self) -> int:
        """Cookie max-age in seconds; follows the session expiration."""
        return self.expiration

    @property
    def sid_regexp(self) -> str:
        return build_sid_regexp(self.sid_length, self.sid_bits_per_character)

    @cached_property
    def sid_pattern(self) -> re.Pattern[str]:
        return re.compile(self.sid_regexp)

    @classmethod
    def from_mapping(cls, settings: Mapping[str, Any]) -> SessionConfig:
        """Build a config from loosely typed settings (env, ini, JSON).

        Unknown keys are ignored; values are coerced to the field types,
        so ``{"expiration": "3600", "match_ip": "true"}`` is accepted.
        """
        values: dict[str, Any] = {}
        for f in fields(cls):
            if f.name not in settings or settings[f.name] is None:
                continue
            raw = settings[f.name]
            default = f.default
            if isinstance(default, bool):
                values[f.name] = _coerce_bool(raw)
            elif isinstance(default, int):
                values[f.name] = int(raw)
            elif isinstance(default, float):
                values[f.name] = float(raw)
            else:
                values[f.name] = str(raw)
        if "driver" in values:
            values["driver"] = values["driver"].lower()
        return cls(**values)


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in _TRUE_STRINGS
    return bool(value)
