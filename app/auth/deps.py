# app/auth/deps.py
from typing import Awaitable, Callable, Optional

from fastapi import Depends, Request

from common import ForbiddenError, UnauthorizedError
from app.db.models import UserRole
from .identity import Identity


async def get_identity(request: Request) -> Optional[Identity]:
    return getattr(request.state, "identity", None)


async def require_identity(
    identity: Optional[Identity] = Depends(get_identity),
) -> Identity:
    if identity is None:
        raise UnauthorizedError()
    return identity


def require_roles(*roles: UserRole) -> Callable[..., Awaitable[Identity]]:
    """
    Dependency factory restricting a route to ``roles``.

    Usage:
        @router.post("/x", dependencies=[Depends(require_roles(UserRole.ADMIN))])
    """
    allowed = frozenset(roles)

    async def _check(identity: Identity = Depends(require_identity)) -> Identity:
        if identity.role not in allowed:
            raise ForbiddenError(
                f"Requires one of: {', '.join(sorted(r.value for r in allowed))}"
            )
        return identity

    return _check


__all__ = ["get_identity", "require_identity", "require_roles"]
