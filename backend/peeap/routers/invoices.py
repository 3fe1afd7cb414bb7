from __future__ import annotations

from datetime import date
from typing import Any

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from ..modules.identity.access import caller_is_admin, current_user, require_roles
from ..modules.identity.roles import ROLE_MERCHANT
from ..modules.invoices import invoice_service, recurring_service
from ..modules.invoices.mentions import parse_mentions
from ._guards import owned_business

router = APIRouter(tags=["invoices"])


class InvoiceItem(BaseModel):
    description: str = Field(..., min_length=1, max_length=500)
    quantity: float = Field(..., gt=0)
    unitPrice: float = Field(..., ge=0)


class CreateInvoiceRequest(BaseModel):
    businessId: str = Field(..., min_length=1)
    invoiceType: str = "standard"
    title: str | None = Field(default=None, max_length=200)
    description: str | None = None
    customerId: str | None = None
    customerName: str | None = None
    customerEmail: str | None = None
    customerPhone: str | None = None
    conversationId: str | None = None
    currency: str | None = None
    items: list[InvoiceItem] = Field(..., min_length=1)
    taxRate: float = 0
    discountAmount: float = 0
    dueDate: date | None = None
    notes: str | None = None
    terms: str | None = None
    isRecurring: bool = False
    recurringFrequency: str | None = None
    recurringStartDate: date | None = None
    recurringEndDate: date | None = None
    recurringMaxCount: int | None = None


class RecordPaymentRequest(BaseModel):
    amount: float | None = Field(default=None, gt=0)


class PayFromWalletRequest(BaseModel):
    walletId: str = Field(..., min_length=1)
    amount: float | None = Field(default=None, gt=0)


class MentionsRequest(BaseModel):
    content: str = Field(..., max_length=10000)


class CreateRecurringRequest(BaseModel):
    businessId: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1, max_length=200)
    description: str | None = None
    customerId: str | None = None
    customerName: str | None = None
    customerEmail: str | None = None
    customerPhone: str | None = None
    invoiceType: str = "standard"
    title: str | None = None
    currency: str | None = None
    items: list[InvoiceItem] = Field(..., min_length=1)
    taxRate: float = 0
    discountAmount: float = 0
    notes: str | None = None
    terms: str | None = None
    frequency: str
    startDate: date
    endDate: date | None = None
    dueDays: int | None = Field(default=None, ge=0)
    maxOccurrences: int | None = Field(default=None, gt=0)
    autoSend: bool | None = None
    sendDaysBefore: int | None = Field(default=None, ge=0)


class TemplateStatusRequest(BaseModel):
    status: str


def _dump(model: BaseModel) -> dict[str, Any]:
    return model.model_dump(mode="json", exclude_none=True)


def _merchant_invoice(invoice_id: str, request: Request) -> dict[str, Any]:
    invoice = invoice_service.get_invoice(invoice_id)
    owned_business(str(invoice.get("businessId")), current_user(request))
    return invoice


# -----------------------------
# Invoices
# -----------------------------


@router.post("/invoices")
def create_invoice(request: Request, body: CreateInvoiceRequest):
    user = require_roles(request, ROLE_MERCHANT)
    owned_business(body.businessId, user)
    return invoice_service.create_invoice(user.sub, _dump(body))


@router.get("/invoices")
def list_invoices(request: Request, businessId: str, status: str | None = None, type: str | None = None):
    owned_business(businessId, current_user(request))
    if type:
        rows = invoice_service.get_business_invoices_by_type(businessId, type)
        if status:
            rows = [i for i in rows if i.get("status") == status]
        return {"data": rows}
    return {"data": invoice_service.get_business_invoices(businessId, status)}


@router.get("/invoices/received")
def list_received_invoices(request: Request):
    return {"data": invoice_service.get_customer_invoices(current_user(request).sub)}


@router.get("/invoices/stats")
def invoice_stats(request: Request, businessId: str):
    owned_business(businessId, current_user(request))
    return invoice_service.get_invoice_stats(businessId)


@router.post("/invoices/overdue")
def mark_overdue(request: Request, businessId: str):
    owned_business(businessId, current_user(request))
    return {"updated": invoice_service.mark_overdue_invoices(businessId)}


@router.post("/invoices/mentions/parse")
def parse_message_mentions(request: Request, body: MentionsRequest):
    current_user(request)
    return {"mentions": [m.to_dict() for m in parse_mentions(body.content)]}


@router.get("/invoices/{invoiceId}")
def get_invoice(invoiceId: str, request: Request):
    user = current_user(request)
    invoice = invoice_service.get_invoice(invoiceId)
    if invoice.get("customerId") == user.sub:
        return invoice_service.mark_viewed(invoiceId)
    if invoice.get("merchantId") == user.sub or caller_is_admin(user):
        return invoice
    raise HTTPException(status_code=403, detail="Forbidden")


@router.post("/invoices/{invoiceId}/send")
def send_invoice(invoiceId: str, request: Request):
    _merchant_invoice(invoiceId, request)
    return invoice_service.send_invoice(invoiceId)


@router.post("/invoices/{invoiceId}/payments")
def record_payment(invoiceId: str, request: Request, body: RecordPaymentRequest):
    _merchant_invoice(invoiceId, request)
    return invoice_service.mark_as_paid(invoiceId, body.amount)


@router.post("/invoices/{invoiceId}/pay")
def pay_invoice(invoiceId: str, request: Request, body: PayFromWalletRequest):
    user = current_user(request)
    return invoice_service.pay_from_wallet(
        invoiceId, payer_user_id=user.sub, wallet_id=body.walletId, amount=body.amount
    )


@router.post("/invoices/{invoiceId}/payment-link")
def payment_link(invoiceId: str, request: Request):
    _merchant_invoice(invoiceId, request)
    return {"url": invoice_service.generate_payment_link(invoiceId)}


@router.post("/invoices/{invoiceId}/cancel")
def cancel_invoice(invoiceId: str, request: Request):
    _merchant_invoice(invoiceId, request)
    return invoice_service.cancel_invoice(invoiceId)


@router.post("/invoices/{invoiceId}/duplicate")
def duplicate_invoice(invoiceId: str, request: Request):
    _merchant_invoice(invoiceId, request)
    return invoice_service.duplicate_invoice(invoiceId)


@router.post("/invoices/{invoiceId}/convert")
def convert_invoice(invoiceId: str, request: Request):
    _merchant_invoice(invoiceId, request)
    return invoice_service.convert_to_invoice(invoiceId)


@router.delete("/invoices/{invoiceId}")
def delete_invoice(invoiceId: str, request: Request):
    _merchant_invoice(invoiceId, request)
    invoice_service.delete_invoice(invoiceId)
    return {"ok": True}


# -----------------------------
# Recurring templates
# -----------------------------


@router.post("/recurring-invoices")
def create_template(request: Request, body: CreateRecurringRequest):
    user = require_roles(request, ROLE_MERCHANT)
    owned_business(body.businessId, user)
    return recurring_service.create_template(user.sub, _dump(body))


@router.get("/recurring-invoices")
def list_templates(request: Request, businessId: str, status: str | None = None):
    owned_business(businessId, current_user(request))
    return {"data": recurring_service.list_templates(businessId, status)}


@router.get("/recurring-invoices/{templateId}")
def get_template(templateId: str, request: Request):
    template = recurring_service.get_template(templateId)
    owned_business(str(template.get("businessId")), current_user(request))
    return template


@router.put("/recurring-invoices/{templateId}/status")
def set_template_status(templateId: str, request: Request, body: TemplateStatusRequest):
    get_template(templateId, request)
    return recurring_service.update_template_status(templateId, body.status)


@router.delete("/recurring-invoices/{templateId}")
def delete_template(templateId: str, request: Request):
    get_template(templateId, request)
    recurring_service.delete_template(templateId)
    return {"ok": True}
