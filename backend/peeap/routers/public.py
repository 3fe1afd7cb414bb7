from __future__ import annotations

from fastapi import APIRouter, Header
from pydantic import BaseModel, Field

from ..errors import Forbidden
from ..modules.checkout import checkout_service
from ..modules.invoices import invoice_service

router = APIRouter(tags=["public"])

_PUBLIC_INVOICE_FIELDS = (
    "invoiceId",
    "invoiceNumber",
    "title",
    "description",
    "customerName",
    "currency",
    "items",
    "subtotal",
    "taxRate",
    "taxAmount",
    "discountAmount",
    "totalAmount",
    "amountPaid",
    "paymentStatus",
    "status",
    "issueDate",
    "dueDate",
    "notes",
    "terms",
)


class PublicSessionRequest(BaseModel):
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


class TestPaymentRequest(BaseModel):
    paymentMethod: str = "test"


@router.post("/checkout/sessions")
def create_session(body: PublicSessionRequest, x_public_key: str = Header(..., alias="X-Public-Key")):
    session = checkout_service.create_checkout_session_with_public_key(x_public_key, body.model_dump())
    return checkout_service.public_view(session)


@router.get("/checkout/{sessionId}")
def get_session(sessionId: str):
    return checkout_service.public_view(checkout_service.get_checkout_session(sessionId))


@router.post("/checkout/{sessionId}/test-payment")
def complete_test_payment(sessionId: str, body: TestPaymentRequest):
    session = checkout_service.get_checkout_session(sessionId)
    if not session.get("isTestMode"):
        raise Forbidden("Live sessions are paid through Monime", code="live_session")
    done = checkout_service.complete_checkout_session(sessionId, payment_method=body.paymentMethod)
    return checkout_service.public_view(done)


@router.get("/invoices/{invoiceId}")
def view_invoice(invoiceId: str):
    invoice = invoice_service.mark_viewed(invoiceId)
    return {k: invoice.get(k) for k in _PUBLIC_INVOICE_FIELDS}
