from __future__ import annotations

from typing import Any

from fastapi import HTTPException

from ..auth.cognito import VerifiedUser
from ..modules.businesses import business_service
from ..modules.identity.access import caller_is_admin
from ..modules.wallets import wallet_service


def owned_business(business_id: str, user: VerifiedUser) -> dict[str, Any]:
    business = business_service.get_business(business_id)
    if business.get("merchantId") != user.sub and not caller_is_admin(user):
        raise HTTPException(status_code=403, detail="Not your business")
    return business


def owned_wallet(wallet_id: str, user: VerifiedUser) -> dict[str, Any]:
    wallet = wallet_service.get_wallet(wallet_id)
    if wallet.get("userId") != user.sub and not caller_is_admin(user):
        raise HTTPException(status_code=403, detail="Not your wallet")
    return wallet


def ensure_owner(record: dict[str, Any], user: VerifiedUser, field: str = "userId") -> dict[str, Any]:
    if record.get(field) != user.sub and not caller_is_admin(user):
        raise HTTPException(status_code=403, detail="Forbidden")
    return record
