"""Session payload encoding.

Payloads use PHP's ``php_serialize`` format (a serialized array), so the
same session can be read by PHP applications sharing the storage.
"""

from __future__ import annotations

import logging
from typing import Any

import phpserialize


def encode_session(data: dict[str, Any]) -> str:
    """Serialize session data to a payload string.

    Example:
        >>> encode_session({"cart_count": 5})
        'a:1:{s:10:"cart_count";i:5;}'
    """
    if not data:
        return ""
    return phpserialize.dumps(data).decode("utf-8")


def decode_session(
    payload: str,
    logger: logging.Logger | None = None,
) -> dict[str, Any]:
    """Deserialize a payload string; empty or corrupt payloads yield ``{}``.

    Args:
        payload: Raw payload returned by a driver's ``read``.
        logger: Optional logger for decoding warnings.

    Returns:
        Session data dictionary. PHP objects are decoded as plain dicts.
    """
    if not payload:
        return {}

    try:
        data = phpserialize.loads(
            payload.encode("utf-8"),
            decode_strings=True,
            object_hook=lambda _name, d: dict(d),
        )
    except (ValueError, TypeError, RecursionError) as exc:
        if logger:
            logger.warning("Discarding undecodable session payload: %s", exc)
        return {}

    if not isinstance(data, dict):
        if logger:
            logger.warning("Discarding session payload of type %s", type(data).__name__)
        return {}

    return data
