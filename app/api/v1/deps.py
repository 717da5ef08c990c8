# app/api/v1/deps.py
from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.db import get_db
from app.services.v1 import AppointmentService


def _from_state(request: Request, name: str):
    service = getattr(request.app.state, name, None)
    if service is None:
        raise RuntimeError(f"{name} not found in app.state. Ensure lifespan is configured.")
    return service


async def get_appointment_service(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> AppointmentService:
    return AppointmentService(
        db,
        _from_state(request, "room_provisioner"),
        _from_state(request, "payment_client"),
        clock=_from_state(request, "clock"),
    )


__all__ = ["get_appointment_service"]
