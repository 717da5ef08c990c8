# app/auth/tokens.py
"""
Signed identity tokens (JWT).

Claims: userId, email, role, fullName, username, exp, iat.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import jwt
from pydantic import ValidationError as PydanticValidationError

from common import AuthConfig, get_app_logger
from .identity import Identity

logger = get_app_logger(__name__)


def issue_token(
    identity: Identity,
    config: AuthConfig,
    *,
    ttl: Optional[timedelta] = None,
    now: Optional[datetime] = None,
) -> str:
    """
    Encode ``identity`` as a signed token.

    Args:
        identity: Principal to encode
        config: Secret and algorithm
        ttl: Lifetime, defaults to ``config.token_ttl_days``
        now: Issue time (tests pass a fixed instant)
    """
    issued_at = now or datetime.now(tz=timezone.utc)
    expires_at = issued_at + (ttl if ttl is not None else timedelta(days=config.token_ttl_days))

    payload: dict[str, Any] = {
        "userId": identity.id,
        "email": identity.email,
        "role": identity.role.value,
        "fullName": identity.full_name,
        "username": identity.username,
        "iat": issued_at,
        "exp": expires_at,
    }
    return jwt.encode(
        payload,
        config.jwt_secret.get_secret_value(),
        algorithm=config.jwt_algorithm,
    )


def verify_token(token: str, config: AuthConfig) -> Optional[Identity]:
    """Decode and validate ``token``. Any failure yields None, never an exception."""
    try:
        claims = jwt.decode(
            token,
            config.jwt_secret.get_secret_value(),
            algorithms=[config.jwt_algorithm],
            options={"require": ["exp"]},
        )
    except jwt.ExpiredSignatureError:
        logger.debug("Rejected expired token")
        return None
    except jwt.InvalidTokenError as e:
        logger.debug("Rejected invalid token", reason=type(e).__name__)
        return None

    user_id = claims.get("userId")
    if isinstance(user_id, bool) or not isinstance(user_id, int):
        logger.debug("Rejected token without numeric userId")
        return None

    try:
        return Identity(
            id=user_id,
            email=claims.get("email") or "",
            role=claims.get("role"),
            full_name=claims.get("fullName") or "",
            username=claims.get("username"),
        )
    except PydanticValidationError:
        logger.debug("Rejected token with malformed claims", user_id=user_id)
        return None


__all__ = ["issue_token", "verify_token"]
