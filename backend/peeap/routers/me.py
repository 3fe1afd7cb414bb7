from __future__ import annotations

from fastapi import APIRouter, Request

from ..modules.identity.access import current_user
from ..modules.wallets import wallet_service
from ..repositories import users_repo

router = APIRouter(tags=["me"])


@router.get("")
def get_me(request: Request):
    user = current_user(request)
    profile = users_repo.ensure_user(
        user_id=user.sub,
        email=user.email,
        full_name=user.claims.get("name"),
        phone=user.claims.get("phone_number"),
        roles=user.roles,
    )
    return {"user": profile, "wallets": wallet_service.list_user_wallets(user.sub)}
