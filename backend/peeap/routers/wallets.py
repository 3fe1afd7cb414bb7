from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from ..modules.identity.access import current_user
from ..modules.wallets import transaction_service, wallet_service
from ._guards import ensure_owner, owned_wallet

router = APIRouter(tags=["wallets"])


class CreateWalletRequest(BaseModel):
    currency: str | None = Field(default=None, min_length=3, max_length=3)


class TransferRequest(BaseModel):
    toWalletId: str = Field(..., min_length=1)
    amount: float = Field(..., gt=0)
    description: str | None = Field(default=None, max_length=500)


@router.get("/wallets")
def list_wallets(request: Request):
    user = current_user(request)
    return {"data": wallet_service.list_user_wallets(user.sub)}


@router.post("/wallets")
def create_wallet(request: Request, body: CreateWalletRequest):
    user = current_user(request)
    return wallet_service.get_or_create_wallet(user.sub, currency=(body.currency or "").upper() or None)


@router.get("/wallets/{walletId}")
def get_wallet(walletId: str, request: Request):
    return owned_wallet(walletId, current_user(request))


@router.post("/wallets/{walletId}/transfer")
def transfer(walletId: str, request: Request, body: TransferRequest):
    user = current_user(request)
    owned_wallet(walletId, user)
    return wallet_service.transfer(
        walletId,
        body.toWalletId,
        body.amount,
        description=body.description,
        metadata={"initiatedBy": user.sub},
    )


@router.get("/transactions")
def list_transactions(request: Request, limit: int = 50, nextToken: str | None = None):
    user = current_user(request)
    return transaction_service.list_user_transactions(user.sub, limit=limit, next_token=nextToken)


@router.get("/transactions/{transactionId}")
def get_transaction(transactionId: str, request: Request):
    return ensure_owner(transaction_service.get_transaction(transactionId), current_user(request))
