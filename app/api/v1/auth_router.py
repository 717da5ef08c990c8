# app/api/v1/auth_router.py
from fastapi import APIRouter, Depends

from app.auth import Identity, require_identity
from app.db.schemas import IdentityResponse

auth_router = APIRouter(prefix="/api/auth", tags=["Auth"])


@auth_router.get(
    "/me",
    response_model=IdentityResponse,
    summary="Current identity",
    responses={401: {"description": "No valid session or token"}},
)
async def me(identity: Identity = Depends(require_identity)):
    return IdentityResponse.model_validate(identity)


__all__ = ["auth_router"]
