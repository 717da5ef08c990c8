# app/db/schemas/identity_schemas.py
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from typing import Optional
from ..models import UserRole


class IdentityResponse(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, from_attributes=True
    )

    id: int
    email: str
    role: UserRole
    full_name: str
    username: Optional[str] = None


__all__ = ["IdentityResponse"]
