from __future__ import annotations

from fastapi import APIRouter, Depends

from ..schemas.account import UserOut
from ...services.auth import UserIdentity, require_user


router = APIRouter()


@router.get("/api/auth/me", response_model=UserOut)
async def me(user: UserIdentity = Depends(require_user)):
    """The identity the configured authenticator resolved for this request."""
    return user.to_dict()
