from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from ..modules.checkout import checkout_service
from ..modules.identity.access import current_user
from ._guards import owned_business

router = APIRouter(tags=["checkout"])


class CreateSessionRequest(BaseModel):
    businessId: str = Field(..., min_length=1)
    amount: float = Field(..., gt=0)
    currency: str | None = None
    description: str | None = Field(default=None, max_length=500)
    successUrl: str | None = None
    cancelUrl: str | None = None
    idempotencyKey: str | None = Field(default=None, max_length=128)
    customerEmail: str | None = None
    customerPhone: str | None = None
    paymentMethod: str | None = None
    reference: str | None = None


class OfflinePaymentRequest(BaseModel):
    paymentMethod: str | None = None


@router.post("/sessions")
def create_session(request: Request, body: CreateSessionRequest):
    business = owned_business(body.businessId, current_user(request))
    return checkout_service.create_checkout_session(
        business,
        amount=body.amount,
        currency=body.currency,
        description=body.description,
        success_url=body.successUrl,
        cancel_url=body.cancelUrl,
        idempotency_key=body.idempotencyKey,
        customer_email=body.customerEmail,
        customer_phone=body.customerPhone,
        payment_method=body.paymentMethod,
        reference=body.reference,
    )


def _owned_session(session_id: str, request: Request) -> dict:
    session = checkout_service.get_checkout_session(session_id)
    owned_business(str(session.get("businessId")), current_user(request))
    return session


@router.get("/sessions/{sessionId}")
def get_session(sessionId: str, request: Request):
    return _owned_session(sessionId, request)


@router.post("/sessions/{sessionId}/complete")
def complete_session(sessionId: str, request: Request, body: OfflinePaymentRequest):
    # Cash taken at the counter; the merchant wallet is not credited.
    _owned_session(sessionId, request)
    return checkout_service.record_offline_payment(sessionId, payment_method=body.paymentMethod)


@router.post("/sessions/{sessionId}/cancel")
def cancel_session(sessionId: str, request: Request):
    _owned_session(sessionId, request)
    return checkout_service.cancel_checkout_session(sessionId)


@router.post("/sessions/{sessionId}/expire")
def expire_session(sessionId: str, request: Request):
    _owned_session(sessionId, request)
    return checkout_service.expire_checkout_session(sessionId)
