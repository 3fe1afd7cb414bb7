from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from ..modules.identity.access import current_user
from ..modules.mobile_money import mobile_money_service
from ._guards import ensure_owner

router = APIRouter(tags=["mobile-money"])


class DepositRequest(BaseModel):
    walletId: str = Field(..., min_length=1)
    amount: float = Field(..., gt=0)
    successUrl: str | None = None
    cancelUrl: str | None = None


class WithdrawRequest(BaseModel):
    walletId: str = Field(..., min_length=1)
    amount: float = Field(..., gt=0)
    phoneNumber: str = Field(..., min_length=6, max_length=20)
    providerId: str = Field(..., min_length=1)
    description: str | None = Field(default=None, max_length=200)


@router.get("/providers")
def list_providers(request: Request, country: str = "SL"):
    current_user(request)
    return {"data": mobile_money_service.list_providers(country)}


@router.post("/deposits")
def start_deposit(request: Request, body: DepositRequest):
    user = current_user(request)
    return mobile_money_service.start_deposit(
        user.sub, body.walletId, body.amount, success_url=body.successUrl, cancel_url=body.cancelUrl
    )


@router.get("/deposits/{txnId}")
def get_deposit(txnId: str, request: Request):
    return ensure_owner(mobile_money_service.get_deposit(txnId), current_user(request))


@router.post("/deposits/{txnId}/verify")
def verify_deposit(txnId: str, request: Request):
    return mobile_money_service.verify_deposit(current_user(request).sub, txnId)


@router.post("/withdrawals")
def withdraw(request: Request, body: WithdrawRequest):
    user = current_user(request)
    return mobile_money_service.withdraw_to_mobile_money(
        user.sub,
        body.walletId,
        body.amount,
        phone_number=body.phoneNumber,
        provider_id=body.providerId,
        description=body.description,
    )


@router.get("/withdrawals")
def list_withdrawals(request: Request):
    return {"data": mobile_money_service.list_user_payouts(current_user(request).sub)}


@router.post("/withdrawals/{payoutId}/refresh")
def refresh_withdrawal(payoutId: str, request: Request):
    return mobile_money_service.refresh_payout(current_user(request).sub, payoutId)
