"""Constants for session storage drivers.

Defaults mirror the classic server-side session handlers (PHP-style
``session.*`` settings) so sessions stay interchangeable with them.
"""

from __future__ import annotations

from typing import Final

# Driver names understood by the default factory
FILES_DRIVER: Final[str] = "files"
REDIS_DRIVER: Final[str] = "redis"
MEMCACHED_DRIVER: Final[str] = "memcached"

DEFAULT_COOKIE_NAME: Final[str] = "sessid"

# Session lifetime in seconds (2 hours)
DEFAULT_EXPIRATION: Final[int] = 7200

# Used when expiration is configured as 0 (session.gc_maxlifetime default)
DEFAULT_GC_MAXLIFETIME: Final[int] = 1440

DEFAULT_REGENERATE_TIME: Final[int] = 300
DEFAULT_TEMPDATA_TTL: Final[int] = 300

DEFAULT_GC_PROBABILITY: Final[int] = 1
DEFAULT_GC_DIVISOR: Final[int] = 100

# Session ID shape: 32 hex chars, extended until at least MIN_SID_BITS of entropy
DEFAULT_SID_LENGTH: Final[int] = 32
DEFAULT_SID_BITS_PER_CHARACTER: Final[int] = 4
MIN_SID_BITS: Final[int] = 160

SID_ALPHABETS: Final[dict[int, str]] = {
    4: "0123456789abcdef",
    5: "0123456789abcdefghijklmnopqrstuv",
    6: "0123456789abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ,-",
}

SID_CHARACTER_CLASSES: Final[dict[int, str]] = {
    4: "[0-9a-f]",
    5: "[0-9a-v]",
    6: "[0-9a-zA-Z,-]",
}

# Lock key: {prefix}{session_id}:lock
LOCK_SUFFIX: Final[str] = ":lock"

# Lock TTL in seconds; acts as a dead-man's switch if the holder crashes
DEFAULT_LOCK_TTL: Final[int] = 300

# Bounded lock acquisition for the Redis and Memcached drivers
DEFAULT_LOCK_ATTEMPTS: Final[int] = 30
DEFAULT_LOCK_RETRY_INTERVAL: Final[float] = 1.0

# Lua script for safe lock release:
# - Only releases if token matches (prevents releasing other process's lock)
# - Uses atomic EVAL to prevent race conditions
RELEASE_LOCK_SCRIPT: Final[str] = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""

# Internal session variables, never exposed as userdata
TEMP_BAG_KEY: Final[str] = "_temp_bag"
FLASH_BAG_KEY: Final[str] = "_flashes_bag"
LAST_REGENERATE_KEY: Final[str] = "_last_regenerate"

RESERVED_SESSION_KEYS: Final[frozenset[str]] = frozenset(
    {TEMP_BAG_KEY, FLASH_BAG_KEY, LAST_REGENERATE_KEY}
)
