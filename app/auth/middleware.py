# app/auth/middleware.py
from typing import Awaitable, Callable, Optional

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from .credential_resolver import CredentialResolver


class CredentialMiddleware(BaseHTTPMiddleware):
    """
    Attaches the resolved Identity (or None) to ``request.state.identity``.

    The resolver is read from ``app.state.credential_resolver``, which the
    lifespan sets up; register RequestLoggingMiddleware after this one.
    """

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        resolver: Optional[CredentialResolver] = getattr(
            request.app.state, "credential_resolver", None
        )
        if resolver is None:
            raise RuntimeError(
                "CredentialResolver not found in app.state. Ensure lifespan is configured."
            )

        identity = await resolver.resolve(
            request.headers,
            request.cookies,
            existing=getattr(request.state, "identity", None),
        )
        request.state.identity = identity
        if identity is not None:
            structlog.contextvars.bind_contextvars(user_id=identity.id)

        return await call_next(request)


__all__ = ["CredentialMiddleware"]
