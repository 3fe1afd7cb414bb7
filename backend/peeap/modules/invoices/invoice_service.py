from __future__ import annotations

import secrets
import string
from datetime import date, datetime, timezone
from typing import Any

from ...db.dynamodb.errors import DdbConflict
from ...errors import Forbidden, InvalidState, NotFound, ValidationFailed
from ...money import to_money
from ...observability.logging import get_logger
from ...repositories import invoices_repo, recurring_invoices_repo
from ...repositories.common import new_id, now_iso
from ...settings import settings
from ..notifications import notification_service
from ..wallets import wallet_service

log = get_logger("invoice_service")

CONVERTIBLE_TYPES = ("quote", "proforma")

_MAX_PAYMENT_RETRIES = 3

_NUMBER_ALPHABET = string.ascii_uppercase + string.digits


def _money(value: float) -> float:
    return to_money(float(value))


def _number(value: Any, field: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise ValidationFailed(f"{field} must be a number") from e


def invoice_number(now: datetime | None = None) -> str:
    now = now or datetime.now(timezone.utc)
    suffix = "".join(secrets.choice(_NUMBER_ALPHABET) for _ in range(6))
    return f"INV-{now:%Y%m}-{suffix}"


def compute_totals(
    items: list[dict[str, Any]], *, tax_rate: Any = 0, discount_amount: Any = 0
) -> dict[str, Any]:
    """
    Line totals plus subtotal/tax/total, each rounded to 2 places.

    total = subtotal + subtotal * tax_rate / 100 - discount
    """
    if not items:
        raise ValidationFailed("At least one line item is required")
    rate = _number(tax_rate or 0, "taxRate")
    if rate < 0 or rate > 100:
        raise ValidationFailed("taxRate must be between 0 and 100")
    discount = _number(discount_amount or 0, "discountAmount")
    if discount < 0:
        raise ValidationFailed("discountAmount cannot be negative")

    lines: list[dict[str, Any]] = []
    subtotal = 0.0
    for i, raw in enumerate(items):
        qty = _number(raw.get("quantity"), f"items[{i}].quantity")
        price = _number(raw.get("unitPrice"), f"items[{i}].unitPrice")
        if qty <= 0:
            raise ValidationFailed(f"items[{i}].quantity must be greater than 0")
        if price < 0:
            raise ValidationFailed(f"items[{i}].unitPrice cannot be negative")
        line_total = _money(qty * price)
        subtotal += qty * price
        lines.append({**raw, "quantity": qty, "unitPrice": price, "total": line_total})

    subtotal = _money(subtotal)
    tax = _money(subtotal * rate / 100)
    if discount > subtotal + tax:
        raise ValidationFailed("discountAmount cannot exceed the invoice amount")
    return {
        "items": lines,
        "subtotal": subtotal,
        "taxRate": rate,
        "taxAmount": tax,
        "discountAmount": _money(discount),
        "totalAmount": _money(subtotal + tax - discount),
    }


def create_invoice(merchant_id: str, data: dict[str, Any]) -> dict[str, Any]:
    business_id = str(data.get("businessId") or "").strip()
    if not business_id:
        raise ValidationFailed("businessId is required")
    invoice_type = data.get("invoiceType") or "standard"
    if invoice_type not in invoices_repo.INVOICE_TYPES:
        raise ValidationFailed(f"invalid invoice type: {invoice_type}")

    totals = compute_totals(
        list(data.get("items") or []),
        tax_rate=data.get("taxRate"),
        discount_amount=data.get("discountAmount"),
    )
    iid = new_id("inv")
    now = now_iso()
    is_recurring = bool(data.get("isRecurring"))
    customer_id = data.get("customerId")
    item: dict[str, Any] = {
        **invoices_repo.invoice_key(iid),
        **invoices_repo.index_fields(
            business_id=business_id, customer_id=customer_id, created_at=now, invoice_id=iid
        ),
        "entityType": "Invoice",
        "invoiceId": iid,
        "invoiceNumber": invoice_number(),
        "businessId": business_id,
        "merchantId": merchant_id,
        "customerId": customer_id,
        "customerName": data.get("customerName"),
        "customerEmail": data.get("customerEmail"),
        "customerPhone": data.get("customerPhone"),
        "conversationId": data.get("conversationId"),
        "title": data.get("title"),
        "description": data.get("description"),
        "currency": str(data.get("currency") or settings.default_currency).upper(),
        **totals,
        "amountPaid": 0,
        "paymentStatus": "unpaid",
        "status": "draft",
        "invoiceType": invoice_type,
        "issueDate": now[:10],
        "dueDate": data.get("dueDate"),
        "notes": data.get("notes"),
        "terms": data.get("terms"),
        "isRecurring": is_recurring,
        "recurringFrequency": data.get("recurringFrequency"),
        "recurringStartDate": data.get("recurringStartDate"),
        "recurringEndDate": data.get("recurringEndDate"),
        "recurringMaxCount": data.get("recurringMaxCount"),
        "recurringNextDate": data.get("recurringStartDate") if is_recurring else None,
        "recurringTemplateId": data.get("recurringTemplateId"),
        "metadata": dict(data.get("metadata") or {}),
        "createdAt": now,
        "updatedAt": now,
    }
    created = invoices_repo.put_invoice(item)
    log.info("invoice_created", invoice_id=iid, business_id=business_id, total=totals["totalAmount"])
    return created


def get_invoice(invoice_id: str) -> dict[str, Any]:
    inv = invoices_repo.get_invoice(invoice_id)
    if not inv:
        raise NotFound("Invoice not found", code="invoice_not_found")
    return inv


def get_business_invoices(business_id: str, status: str | None = None) -> list[dict[str, Any]]:
    out = invoices_repo.list_business_invoices(business_id)
    if status:
        out = [i for i in out if i.get("status") == status]
    return out


def get_business_invoices_by_type(business_id: str, invoice_type: str) -> list[dict[str, Any]]:
    return [i for i in invoices_repo.list_business_invoices(business_id) if i.get("invoiceType") == invoice_type]


def get_customer_invoices(customer_id: str) -> list[dict[str, Any]]:
    return invoices_repo.list_customer_invoices(customer_id)


def send_invoice(invoice_id: str) -> dict[str, Any]:
    invoice = get_invoice(invoice_id)
    if invoice.get("status") in ("paid", "cancelled"):
        raise InvalidState(f"Cannot send a {invoice.get('status')} invoice", code="invoice_not_sendable")
    updated = invoices_repo.update_invoice(invoice_id, {"status": "sent", "sentAt": now_iso()}) or invoice

    customer_id = updated.get("customerId")
    if customer_id:
        notification_service.notify(
            str(customer_id),
            "payment_received",
            "New Invoice",
            f"You have a new invoice for {updated.get('currency')} {float(updated.get('totalAmount') or 0):,.2f}",
            {"invoiceId": invoice_id, "actionUrl": f"/invoices/{invoice_id}"},
        )
    log.info("invoice_sent", invoice_id=invoice_id, customer_id=customer_id)
    return updated


def mark_viewed(invoice_id: str) -> dict[str, Any]:
    invoice = get_invoice(invoice_id)
    if invoice.get("status") != "sent":
        return invoice
    try:
        return invoices_repo.update_invoice(
            invoice_id, {"status": "viewed", "viewedAt": now_iso()}, expected={"status": "sent"}
        ) or invoice
    except DdbConflict:
        return get_invoice(invoice_id)


def _ensure_payable(invoice: dict[str, Any]) -> None:
    if invoice.get("status") == "cancelled":
        raise InvalidState("Cannot pay a cancelled invoice", code="invoice_cancelled")
    if invoice.get("paymentStatus") == "paid":
        raise InvalidState("Invoice is already paid", code="invoice_already_paid")


def _outstanding(invoice: dict[str, Any]) -> float:
    return _money(float(invoice.get("totalAmount") or 0) - float(invoice.get("amountPaid") or 0))


def _payment_patch(invoice: dict[str, Any], payment: float) -> tuple[dict[str, Any], bool]:
    total = float(invoice.get("totalAmount") or 0)
    paid_total = _money(float(invoice.get("amountPaid") or 0) + payment)
    is_paid = paid_total >= total
    return (
        {
            "amountPaid": paid_total,
            "paymentStatus": "paid" if is_paid else "partial",
            "status": "paid" if is_paid else "sent",
            "paidAt": now_iso() if is_paid else None,
        },
        is_paid,
    )


def mark_as_paid(invoice_id: str, amount: Any = None) -> dict[str, Any]:
    """
    Record a payment. Payments accumulate; without `amount` the outstanding
    balance is settled in full.
    """
    for _ in range(_MAX_PAYMENT_RETRIES):
        invoice = get_invoice(invoice_id)
        _ensure_payable(invoice)
        payment = _outstanding(invoice) if amount is None else _money(_number(amount, "amount"))
        if payment <= 0:
            raise ValidationFailed("amount must be greater than 0")

        patch, is_paid = _payment_patch(invoice, payment)
        try:
            updated = invoices_repo.update_invoice(
                invoice_id, patch, expected={"amountPaid": invoice.get("amountPaid") or 0}
            )
        except DdbConflict:
            continue
        log.info("invoice_payment_recorded", invoice_id=invoice_id, amount=payment, paid=is_paid)
        return updated or get_invoice(invoice_id)
    raise InvalidState("Invoice is being updated, retry the payment", code="invoice_contention")


def pay_from_wallet(
    invoice_id: str, *, payer_user_id: str, wallet_id: str, amount: Any = None
) -> dict[str, Any]:
    """
    Pay an invoice from the customer's wallet into the merchant wallet.

    The invoice payment is written in the same transaction as the transfer,
    guarded by the `amountPaid` that was read, so a payer is never debited
    for an invoice that did not record the payment.
    """
    invoice = get_invoice(invoice_id)
    _ensure_payable(invoice)
    payment = _outstanding(invoice) if amount is None else _money(_number(amount, "amount"))
    if payment <= 0:
        raise ValidationFailed("amount must be greater than 0")
    if payment > _outstanding(invoice):
        raise ValidationFailed("amount exceeds the outstanding balance")

    payer = wallet_service.get_wallet(wallet_id)
    if payer.get("userId") != payer_user_id:
        raise Forbidden("Wallet does not belong to you", code="wallet_not_owned")
    merchant_wallet = wallet_service.get_or_create_wallet(
        str(invoice.get("merchantId")), currency=invoice.get("currency"), wallet_type="merchant"
    )

    def record_payment() -> list[dict[str, Any]]:
        # Re-read on every attempt: a concurrent payer may have settled it.
        current = get_invoice(invoice_id)
        _ensure_payable(current)
        if payment > _outstanding(current):
            raise ValidationFailed("amount exceeds the outstanding balance")
        patch, _ = _payment_patch(current, payment)
        return [
            invoices_repo.tx_update_invoice(
                invoice_id, patch, expected={"amountPaid": current.get("amountPaid") or 0}
            )
        ]

    moved = wallet_service.transfer(
        wallet_id,
        merchant_wallet["walletId"],
        payment,
        description=f"Invoice {invoice.get('invoiceNumber')}",
        metadata={"type": "invoice_payment", "invoiceId": invoice_id},
        extra_updates=record_payment,
    )
    updated = get_invoice(invoice_id)
    log.info(
        "invoice_payment_recorded",
        invoice_id=invoice_id,
        amount=payment,
        paid=updated.get("paymentStatus") == "paid",
        reference=moved["reference"],
    )
    notification_service.notify(
        str(invoice.get("merchantId")),
        "payment_received",
        "Invoice payment",
        f"{invoice.get('invoiceNumber')}: {invoice.get('currency')} {payment:,.2f} received",
        {"invoiceId": invoice_id},
    )
    return {"invoice": updated, "reference": moved["reference"]}


def generate_payment_link(invoice_id: str) -> str:
    get_invoice(invoice_id)
    url = f"{settings.public_app_url.rstrip('/')}/pay/invoice/{invoice_id}"
    invoices_repo.update_invoice(invoice_id, {"paymentUrl": url})
    return url


def cancel_invoice(invoice_id: str) -> dict[str, Any]:
    invoice = get_invoice(invoice_id)
    if invoice.get("status") == "paid":
        raise InvalidState("Paid invoices cannot be cancelled", code="invoice_paid")
    updated = invoices_repo.update_invoice(invoice_id, {"status": "cancelled", "paymentStatus": "cancelled"})
    log.info("invoice_cancelled", invoice_id=invoice_id)
    return updated or get_invoice(invoice_id)


def delete_invoice(invoice_id: str) -> None:
    invoice = get_invoice(invoice_id)
    if invoice.get("status") != "draft":
        raise InvalidState("Only draft invoices can be deleted", code="invoice_not_draft")
    try:
        invoices_repo.delete_draft_invoice(invoice_id)
    except DdbConflict as e:
        raise InvalidState("Only draft invoices can be deleted", code="invoice_not_draft") from e
    log.info("invoice_deleted", invoice_id=invoice_id)


def _copy_fields(original: dict[str, Any]) -> dict[str, Any]:
    return {
        "businessId": original.get("businessId"),
        "customerId": original.get("customerId"),
        "customerName": original.get("customerName"),
        "customerEmail": original.get("customerEmail"),
        "customerPhone": original.get("customerPhone"),
        "description": original.get("description"),
        "currency": original.get("currency"),
        "items": [
            {k: v for k, v in it.items() if k != "total"} for it in (original.get("items") or [])
        ],
        "taxRate": original.get("taxRate"),
        "discountAmount": original.get("discountAmount"),
        "notes": original.get("notes"),
        "terms": original.get("terms"),
    }


def duplicate_invoice(invoice_id: str) -> dict[str, Any]:
    original = get_invoice(invoice_id)
    title = original.get("title")
    return create_invoice(
        str(original.get("merchantId") or ""),
        {
            **_copy_fields(original),
            "title": f"Copy of {title}" if title else "Copy of Invoice",
            "invoiceType": original.get("invoiceType") or "standard",
        },
    )


def convert_to_invoice(invoice_id: str) -> dict[str, Any]:
    original = get_invoice(invoice_id)
    if original.get("invoiceType") not in CONVERTIBLE_TYPES:
        raise InvalidState(
            "Only quotes and proforma invoices can be converted", code="invoice_not_convertible"
        )
    created = create_invoice(
        str(original.get("merchantId") or ""),
        {
            **_copy_fields(original),
            "title": original.get("title"),
            "dueDate": original.get("dueDate"),
            "invoiceType": "standard",
            "metadata": {"convertedFrom": invoice_id},
        },
    )
    log.info("invoice_converted", source_id=invoice_id, invoice_id=created.get("invoiceId"))
    return created


def mark_overdue_invoices(business_id: str, today: date | None = None) -> int:
    """Sent/viewed invoices whose due date has passed become overdue."""
    cutoff = (today or datetime.now(timezone.utc).date()).isoformat()
    count = 0
    for inv in invoices_repo.list_business_invoices(business_id):
        due = str(inv.get("dueDate") or "")[:10]
        if not due or due >= cutoff or inv.get("status") not in ("sent", "viewed"):
            continue
        try:
            invoices_repo.update_invoice(
                str(inv["invoiceId"]),
                {"status": "overdue", "paymentStatus": "overdue"},
                expected={"status": inv.get("status")},
            )
        except DdbConflict:
            continue
        count += 1
    if count:
        log.info("invoices_marked_overdue", business_id=business_id, count=count)
    return count


def get_invoice_stats(business_id: str) -> dict[str, Any]:
    stats: dict[str, Any] = {
        "total": 0,
        "draft": 0,
        "sent": 0,
        "paid": 0,
        "overdue": 0,
        "cancelled": 0,
        "totalAmount": 0.0,
        "paidAmount": 0.0,
        "pendingAmount": 0.0,
        "overdueAmount": 0.0,
        "byType": {t: 0 for t in invoices_repo.INVOICE_TYPES},
        "recurringActive": sum(
            1 for t in recurring_invoices_repo.list_business_recurring(business_id) if t.get("status") == "active"
        ),
    }
    for inv in invoices_repo.list_business_invoices(business_id):
        total = float(inv.get("totalAmount") or 0)
        paid = float(inv.get("amountPaid") or 0)
        status = inv.get("status")
        stats["total"] += 1
        stats["totalAmount"] += total
        stats["paidAmount"] += paid

        if status == "draft":
            stats["draft"] += 1
        elif status in ("sent", "viewed"):
            stats["sent"] += 1
        elif status == "paid":
            stats["paid"] += 1
        elif status == "overdue":
            stats["overdue"] += 1
            stats["overdueAmount"] += total - paid
        elif status == "cancelled":
            stats["cancelled"] += 1

        if inv.get("paymentStatus") != "paid" and status != "cancelled":
            stats["pendingAmount"] += total - paid

        inv_type = inv.get("invoiceType") or "standard"
        if inv_type in stats["byType"]:
            stats["byType"][inv_type] += 1

    for k in ("totalAmount", "paidAmount", "pendingAmount", "overdueAmount"):
        stats[k] = _money(stats[k])
    return stats
