# app/db/schemas/room_schemas.py
from enum import Enum
from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class ProvisioningState(str, Enum):
    """Progress of one ensure-room attempt. Terminal: EXISTS, CONFIRMED_VISIBLE, ASSUMED_VISIBLE."""

    NOT_CHECKED = "not_checked"
    CHECKING = "checking"
    EXISTS = "exists"
    CREATING = "creating"
    CREATED = "created"
    CONFIRMED_VISIBLE = "confirmed_visible"
    ASSUMED_VISIBLE = "assumed_visible"  # propagation budget ran out


class RoomDescriptor(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, frozen=True
    )

    name: str = Field(..., pattern=r"^[a-z0-9-]+$")
    url: str
    expires_at: Optional[datetime] = None
    state: ProvisioningState


class AccessToken(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, frozen=True
    )

    token: str = Field(..., min_length=1)
    expires_at: datetime
    is_owner: bool
    room_name: str


__all__ = ["ProvisioningState", "RoomDescriptor", "AccessToken"]
