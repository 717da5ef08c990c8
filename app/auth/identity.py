# app/auth/identity.py
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field
from app.db.models import UserRole


class Identity(BaseModel):
    """
    Authenticated principal for one request.

    Rebuilt per request from a session or a signed token; never persisted.
    """

    model_config = ConfigDict(frozen=True)

    id: int = Field(..., gt=0)
    email: str = Field(..., min_length=1)
    role: UserRole
    full_name: str = ""
    username: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.full_name or self.username or self.email

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    @property
    def is_doctor(self) -> bool:
        return self.role == UserRole.DOCTOR


__all__ = ["Identity"]
