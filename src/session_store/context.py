"""Per-request context handed to session drivers.

Drivers never look up request state on their own: the client IP and the
cookie instructions they produce travel through an explicit
:class:`RequestContext`. The current request's session is additionally
kept in a context variable so web handlers can reach it without
explicit parameter passing.
"""

from __future__ import annotations

from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .manager import Session


@dataclass(frozen=True)
class CookieInstruction:
    """A cookie the response should carry.

    ``max_age`` of 0 together with an empty value clears the cookie.
    """

    name: str
    value: str
    max_age: int
    path: str = "/"
    domain: str | None = None
    secure: bool = False
    httponly: bool = True

    @property
    def is_deletion(self) -> bool:
        return self.max_age == 0 and self.value == ""


@dataclass
class RequestContext:
    """Request-scoped facts the session layer needs.

    Attributes:
        client_ip: Remote address, required when ``match_ip`` is enabled.
        is_ajax: Whether the request was made via XMLHttpRequest.
        cookies: Pending cookie instructions keyed by cookie name; a later
            instruction for the same name replaces the earlier one.
    """

    client_ip: str | None = None
    is_ajax: bool = False
    cookies: dict[str, CookieInstruction] = field(default_factory=dict)

    def set_cookie(
        self,
        name: str,
        value: str,
        max_age: int,
        path: str = "/",
        domain: str | None = None,
        secure: bool = False,
    ) -> CookieInstruction:
        """Queue a cookie for the response (always http-only)."""
        cookie = CookieInstruction(
            name=name,
            value=value,
            max_age=max_age,
            path=path,
            domain=domain or None,
            secure=secure,
        )
        self.cookies[name] = cookie
        return cookie

    def expire_cookie(
        self,
        name: str,
        path: str = "/",
        domain: str | None = None,
        secure: bool = False,
    ) -> CookieInstruction:
        """Queue an instruction clearing the cookie on the client."""
        return self.set_cookie(name, "", 0, path=path, domain=domain, secure=secure)


# ContextVar for current request's session (DI pattern)
_current_session: ContextVar[Session | None] = ContextVar("session", default=None)


def set_current_session(session: Session | None) -> None:
    """Set the session for the current request (called by middleware).

    Args:
        session: The started session, or None to clear.
    """
    _current_session.set(session)


def get_current_session() -> Session | None:
    """Get the session for the current request.

    Returns:
        The current session, or None if not set.
    """
    return _current_session.get()
