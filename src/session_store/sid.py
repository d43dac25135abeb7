"""Session ID generation, shape and validation.

A session ID is a string over one of three alphabets (4, 5 or 6 bits per
character) whose length is chosen so that it carries at least
:data:`~session_store.constants.MIN_SID_BITS` bits of entropy.
"""

from __future__ import annotations

import logging
import math
import re
import secrets
from typing import TYPE_CHECKING

from .constants import MIN_SID_BITS, SID_ALPHABETS, SID_CHARACTER_CLASSES

if TYPE_CHECKING:
    from .config import SessionConfig


def compute_sid_length(length: int, bits_per_character: int) -> int:
    """Return ``length`` raised as needed to reach the minimum entropy.

    Example:
        >>> compute_sid_length(32, 4)
        40
        >>> compute_sid_length(48, 5)
        48
    """
    if bits_per_character not in SID_ALPHABETS:
        raise ValueError("sid_bits_per_character must be 4, 5 or 6")
    return max(length, math.ceil(MIN_SID_BITS / bits_per_character))


def build_sid_regexp(length: int, bits_per_character: int) -> str:
    """Build the (unanchored) regular expression matching a session ID.

    Example:
        >>> build_sid_regexp(40, 4)
        '[0-9a-f]{40}'
    """
    return f"{SID_CHARACTER_CLASSES[bits_per_character]}{{{length}}}"


def generate_session_id(config: SessionConfig) -> str:
    """Generate a new random session ID matching ``config.sid_pattern``."""
    alphabet = SID_ALPHABETS[config.sid_bits_per_character]
    return "".join(secrets.choice(alphabet) for _ in range(config.sid_length))


def sanitize_session_id(
    session_id: str | None,
    pattern: re.Pattern[str],
    logger: logging.Logger | None = None,
) -> str | None:
    """Sanitize and validate a session ID taken from a cookie.

    Args:
        session_id: Raw session ID from cookie or other source.
        pattern: Compiled session ID pattern (``SessionConfig.sid_pattern``).
        logger: Optional logger for security warnings.

    Returns:
        Validated session ID or None if invalid.

    Security considerations:
        - Prevents path/key injection by validating format
        - Rejects values of the wrong length (DoS via large cookies)
        - Rejects empty strings, whitespace, and null bytes
    """
    if not session_id:
        return None

    session_id = session_id.strip()

    if "\x00" in session_id:
        if logger:
            logger.warning("Session ID with null byte rejected")
        return None

    if not pattern.fullmatch(session_id):
        if logger:
            logger.warning(
                "Invalid session ID format rejected: prefix=%s, length=%d",
                session_id[:8],
                len(session_id),
            )
        return None

    return session_id
