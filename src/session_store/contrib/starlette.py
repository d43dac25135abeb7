"""Starlette/FastAPI middleware for session management.

Runs each request inside ``SessionManager.session()``: the session is
loaded and locked before the endpoint runs, saved and unlocked after it
returns, and the cookie instructions collected on the request context
(new or regenerated ID, cleared cookie on destroy) are applied to the
response.

Install with: pip install py-session-store[starlette]
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

from ..context import RequestContext, set_current_session
from ..exceptions import SessionContextError
from ..manager import Session, SessionManager


class SessionMiddleware(BaseHTTPMiddleware):
    """Middleware providing a locked session to every request.

    Sets the session in:
    - request.state.session (for direct access in routes)
    - contextvars (for ``get_current_session()``)

    Usage:
        from fastapi import FastAPI
        from session_store import SessionConfig, SessionManager
        from session_store.contrib.starlette import SessionMiddleware

        manager = SessionManager(SessionConfig(driver="redis", save_path="host=localhost"))
        app = FastAPI()
        app.add_middleware(SessionMiddleware, manager=manager)
    """

    def __init__(
        self,
        app: ASGIApp,
        manager: SessionManager,
        logger: logging.Logger | None = None,
    ) -> None:
        """Initialize the middleware.

        Args:
            app: The ASGI application.
            manager: Session manager used for every request.
            logger: Optional logger for debugging.
        """
        super().__init__(app)
        self._manager = manager
        self._logger = logger

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        """Process the request inside a session."""
        context = RequestContext(
            client_ip=request.client.host if request.client else None,
            is_ajax=request.headers.get("x-requested-with", "").lower() == "xmlhttprequest",
        )
        cookie = request.cookies.get(self._manager.config.cookie_name)

        async with self._manager.session(context, cookie) as session:
            request.state.session = session
            set_current_session(session)
            if self._logger:
                self._logger.debug("Session context set: %s", (session.id or "")[:8] + "...")
            try:
                response = await call_next(request)
            finally:
                # Clean up contextvars
                set_current_session(None)

        for instruction in context.cookies.values():
            response.set_cookie(
                instruction.name,
                instruction.value,
                max_age=instruction.max_age,
                expires=0 if instruction.is_deletion else None,
                path=instruction.path,
                domain=instruction.domain,
                secure=instruction.secure,
                httponly=instruction.httponly,
            )
        return response


def get_session(request: Request) -> Session:
    """Return the request's session (usable as a FastAPI dependency).

    Raises:
        SessionContextError: If SessionMiddleware isn't installed.
    """
    session = getattr(request.state, "session", None)
    if session is None:
        raise SessionContextError()
    return session
