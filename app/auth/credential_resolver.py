# app/auth/credential_resolver.py
"""
Resolves at most one Identity per request.

Carriers, first success wins:
    1. identity already attached upstream, or X-Session-ID session
    2. X-Auth-Token header, then Authorization: Bearer <token>
    3. auth cookie (name from AuthConfig, default ``auth_token``)

Resolution never raises. A present but invalid, expired or tampered
credential is treated exactly like an absent one; enforcement belongs to
``require_identity``. X-User-ID and query-string tokens are not carriers.
"""

from typing import Iterator, Mapping, Optional

from common import AuthConfig, get_app_logger
from .identity import Identity
from .session_lookup import SessionLookup
from .tokens import verify_token

logger = get_app_logger(__name__)

SESSION_HEADER = "x-session-id"
TOKEN_HEADER = "x-auth-token"


def _bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, credentials = authorization.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    return credentials.strip() or None


class CredentialResolver:
    def __init__(
        self,
        config: AuthConfig,
        session_lookup: Optional[SessionLookup] = None,
    ):
        self._config = config
        self._session_lookup = session_lookup

    def _candidate_tokens(
        self,
        headers: Mapping[str, str],
        cookies: Mapping[str, str],
    ) -> Iterator[tuple[str, str]]:
        header_token = headers.get(TOKEN_HEADER)
        if header_token:
            yield "x-auth-token", header_token.strip()

        bearer = _bearer(headers.get("authorization"))
        if bearer:
            yield "bearer", bearer

        cookie_token = cookies.get(self._config.cookie_name)
        if cookie_token:
            yield "cookie", cookie_token

    async def _from_session(self, session_id: str) -> Optional[Identity]:
        if self._session_lookup is None:
            return None
        try:
            return await self._session_lookup(session_id)
        except Exception as e:
            # Lookup outages degrade to token carriers
            logger.warning("Session lookup failed", error=str(e), exc_info=True)
            return None

    async def resolve(
        self,
        headers: Mapping[str, str],
        cookies: Mapping[str, str],
        existing: Optional[Identity] = None,
    ) -> Optional[Identity]:
        if existing is not None:
            return existing

        lowered = {key.lower(): value for key, value in headers.items()}

        session_id = lowered.get(SESSION_HEADER)
        if session_id:
            identity = await self._from_session(session_id.strip())
            if identity is not None:
                logger.debug("Identity resolved", carrier="session", user_id=identity.id)
                return identity

        for carrier, token in self._candidate_tokens(lowered, cookies):
            identity = verify_token(token, self._config)
            if identity is not None:
                logger.debug("Identity resolved", carrier=carrier, user_id=identity.id)
                return identity

        return None


__all__ = ["CredentialResolver"]
