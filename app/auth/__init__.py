from .identity import Identity
from .tokens import issue_token, verify_token
from .session_lookup import SessionLookup, DbSessionLookup
from .credential_resolver import CredentialResolver
from .middleware import CredentialMiddleware
from .deps import get_identity, require_identity, require_roles

__all__ = [
    "Identity",
    "issue_token",
    "verify_token",
    "SessionLookup",
    "DbSessionLookup",
    "CredentialResolver",
    "CredentialMiddleware",
    "get_identity",
    "require_identity",
    "require_roles",
]
