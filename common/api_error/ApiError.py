# common/api_error/ApiError.py
from typing import Any, Optional


class AppError(Exception):
    """Base error for all application-specific issues."""

    def __init__(
        self,
        message: str,
        status_code: int = 400,
        code: str = "INTERNAL_ERROR",
        details: Optional[Any] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.code = code
        self.details = details
        super().__init__(self.message)


class ValidationError(AppError):
    """Malformed or missing input."""

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message, status_code=400, code="VALIDATION_ERROR", details=details)


class UnauthorizedError(AppError):
    """No identity could be resolved for the request."""

    def __init__(self, message: str = "Authentication required"):
        super().__init__(message, status_code=401, code="UNAUTHORIZED")


class ForbiddenError(AppError):
    """The resolved identity lacks permission."""

    def __init__(self, message: str = "Access denied"):
        super().__init__(message, status_code=403, code="FORBIDDEN")


class NotFoundError(AppError):
    def __init__(self, message: str = "Resource not found"):
        super().__init__(message, status_code=404, code="NOT_FOUND")


class ConflictError(AppError):
    """A state precondition was violated (e.g. cancelling a captured payment)."""

    def __init__(self, message: str):
        super().__init__(message, status_code=409, code="CONFLICT")


class ProviderUnavailable(AppError):
    """
    An external provider (video, payment) failed or timed out.

    Only the room provisioner retries; everything above it propagates.
    """

    def __init__(self, provider: str, message: str):
        self.provider = provider
        super().__init__(
            f"{provider} unavailable: {message}",
            status_code=502,
            code="PROVIDER_UNAVAILABLE",
        )


__all__ = [
    "AppError",
    "ValidationError",
    "UnauthorizedError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "ProviderUnavailable",
]
