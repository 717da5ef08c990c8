from .appointment_router import appointment_router
from .auth_router import auth_router

__all__ = ["appointment_router", "auth_router"]
