# app/auth/session_lookup.py
from typing import Awaitable, Callable, Optional

from sqlalchemy import select

from app.db import DbManager
from app.db.models import User, UserSession, utcnow
from .identity import Identity

# session id -> identity, or None when unknown/expired
SessionLookup = Callable[[str], Awaitable[Optional[Identity]]]


class DbSessionLookup:
    """Resolves X-Session-ID values against the user_sessions table."""

    def __init__(self, db_manager: DbManager):
        self._db_manager = db_manager

    async def __call__(self, session_id: str) -> Optional[Identity]:
        query = (
            select(User)
            .join(UserSession, UserSession.user_id == User.id)
            .where(
                UserSession.session_id == session_id,
                UserSession.expires_at > utcnow(),
            )
            .execution_options(logging_token="DbSessionLookup.lookup")
        )

        async with self._db_manager.session() as session:
            user = (await session.execute(query)).scalar_one_or_none()

        if user is None:
            return None

        return Identity(
            id=user.id,
            email=user.email,
            role=user.role,
            full_name=user.full_name,
            username=user.username,
        )


__all__ = ["SessionLookup", "DbSessionLookup"]
