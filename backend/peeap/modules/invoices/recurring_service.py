from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import Any

from ...db.dynamodb.errors import DdbConflict
from ...errors import InvalidState, NotFound, ValidationFailed
from ...money import to_money
from ...observability.logging import get_logger
from ...repositories import recurring_invoices_repo
from ...repositories.common import new_id, now_iso
from ...settings import settings
from . import invoice_service

log = get_logger("recurring_service")

FREQUENCY_DAYS = {
    "weekly": 7,
    "biweekly": 14,
    "monthly": 30,
    "quarterly": 90,
    "yearly": 365,
}

DEFAULT_DUE_DAYS = 14

# Owners may only move templates between these; "completed" is set by the generator.
_SETTABLE_STATUSES = ("active", "paused", "cancelled")


def _parse_date(value: Any, field: str) -> date:
    try:
        return date.fromisoformat(str(value or "")[:10])
    except ValueError as e:
        raise ValidationFailed(f"{field} must be a YYYY-MM-DD date") from e


def create_template(merchant_id: str, data: dict[str, Any]) -> dict[str, Any]:
    business_id = str(data.get("businessId") or "").strip()
    if not business_id:
        raise ValidationFailed("businessId is required")
    name = str(data.get("name") or "").strip()
    if not name:
        raise ValidationFailed("name is required")
    frequency = data.get("frequency")
    if frequency not in FREQUENCY_DAYS:
        raise ValidationFailed(f"invalid frequency: {frequency}")
    start = _parse_date(data.get("startDate"), "startDate")
    end = _parse_date(data["endDate"], "endDate") if data.get("endDate") else None
    if end and end < start:
        raise ValidationFailed("endDate must be on or after startDate")
    max_occurrences = data.get("maxOccurrences")
    if max_occurrences is not None and int(max_occurrences) <= 0:
        raise ValidationFailed("maxOccurrences must be greater than 0")

    # Validates the line items up front; stored without computed totals.
    invoice_service.compute_totals(
        list(data.get("items") or []), tax_rate=data.get("taxRate"), discount_amount=data.get("discountAmount")
    )

    tid = new_id("rec")
    now = now_iso()
    item: dict[str, Any] = {
        **recurring_invoices_repo.recurring_key(tid),
        **recurring_invoices_repo.due_index("active", start.isoformat(), tid),
        "entityType": "RecurringInvoiceTemplate",
        "templateId": tid,
        "businessId": business_id,
        "merchantId": merchant_id,
        "name": name,
        "description": data.get("description"),
        "customerId": data.get("customerId"),
        "customerName": data.get("customerName"),
        "customerEmail": data.get("customerEmail"),
        "customerPhone": data.get("customerPhone"),
        "invoiceType": data.get("invoiceType") or "standard",
        "title": data.get("title"),
        "currency": str(data.get("currency") or settings.default_currency).upper(),
        "items": list(data.get("items") or []),
        "taxRate": data.get("taxRate") or 0,
        "discountAmount": data.get("discountAmount") or 0,
        "notes": data.get("notes"),
        "terms": data.get("terms"),
        "frequency": frequency,
        "startDate": start.isoformat(),
        "endDate": end.isoformat() if end else None,
        "dueDays": int(data.get("dueDays") or DEFAULT_DUE_DAYS),
        "maxOccurrences": int(max_occurrences) if max_occurrences is not None else None,
        "nextGenerationDate": start.isoformat(),
        "lastGeneratedAt": None,
        "totalGenerated": 0,
        "totalAmountBilled": 0,
        "autoSend": True if data.get("autoSend") is None else bool(data.get("autoSend")),
        "sendDaysBefore": int(data.get("sendDaysBefore") or 0),
        "status": "active",
        "metadata": {},
        "createdAt": now,
        "updatedAt": now,
        "gsi1pk": f"BUSINESS_RECURRING#{business_id}",
        "gsi1sk": f"{now}#{tid}",
    }
    created = recurring_invoices_repo.put_recurring(item)
    log.info("recurring_template_created", template_id=tid, business_id=business_id, frequency=frequency)
    return created


def get_template(template_id: str) -> dict[str, Any]:
    t = recurring_invoices_repo.get_recurring(template_id)
    if not t:
        raise NotFound("Recurring template not found", code="recurring_template_not_found")
    return t


def list_templates(business_id: str, status: str | None = None) -> list[dict[str, Any]]:
    out = recurring_invoices_repo.list_business_recurring(business_id)
    if status:
        out = [t for t in out if t.get("status") == status]
    return out


def update_template_status(template_id: str, status: str) -> dict[str, Any]:
    if status not in _SETTABLE_STATUSES:
        raise ValidationFailed(f"invalid template status: {status}")
    current = get_template(template_id)
    if current.get("status") in ("cancelled", "completed") and status != current.get("status"):
        raise InvalidState(f"Template is {current.get('status')}", code="recurring_template_closed")
    updated = recurring_invoices_repo.update_recurring(template_id, {"status": status})
    log.info("recurring_template_status_changed", template_id=template_id, status=status)
    return updated or get_template(template_id)


def delete_template(template_id: str) -> None:
    get_template(template_id)
    recurring_invoices_repo.delete_recurring(template_id)


def _generate_one(template: dict[str, Any], today: date) -> dict[str, Any]:
    tid = str(template["templateId"])
    run_date = _parse_date(template.get("nextGenerationDate"), "nextGenerationDate")
    due_date = today + timedelta(days=int(template.get("dueDays") or DEFAULT_DUE_DAYS))
    totals = invoice_service.compute_totals(
        list(template.get("items") or []),
        tax_rate=template.get("taxRate"),
        discount_amount=template.get("discountAmount"),
    )

    generated = int(template.get("totalGenerated") or 0) + 1
    next_date = run_date + timedelta(days=FREQUENCY_DAYS[str(template.get("frequency"))])
    end = template.get("endDate")
    max_occurrences = template.get("maxOccurrences")
    done = (max_occurrences is not None and generated >= int(max_occurrences)) or (
        bool(end) and next_date > _parse_date(end, "endDate")
    )

    # Advance the template first; a concurrent run loses the guard and creates nothing.
    recurring_invoices_repo.update_recurring(
        tid,
        {
            "totalGenerated": generated,
            "totalAmountBilled": to_money(float(template.get("totalAmountBilled") or 0) + totals["totalAmount"]),
            "lastGeneratedAt": now_iso(),
            "nextGenerationDate": next_date.isoformat(),
            "status": "completed" if done else "active",
        },
        expected={"nextGenerationDate": template.get("nextGenerationDate"), "status": "active"},
    )

    invoice = invoice_service.create_invoice(
        str(template.get("merchantId") or ""),
        {
            "businessId": template.get("businessId"),
            "customerId": template.get("customerId"),
            "customerName": template.get("customerName"),
            "customerEmail": template.get("customerEmail"),
            "customerPhone": template.get("customerPhone"),
            "title": template.get("title") or template.get("name"),
            "description": template.get("description"),
            "currency": template.get("currency"),
            "items": template.get("items") or [],
            "taxRate": template.get("taxRate"),
            "discountAmount": template.get("discountAmount"),
            "dueDate": due_date.isoformat(),
            "notes": template.get("notes"),
            "terms": template.get("terms"),
            "invoiceType": template.get("invoiceType") or "standard",
            "recurringTemplateId": tid,
        },
    )
    if template.get("autoSend"):
        invoice = invoice_service.send_invoice(str(invoice["invoiceId"]))
    return invoice


def generate_due_invoices(today: date | None = None) -> dict[str, int]:
    """
    One invoice per active template whose nextGenerationDate <= today.

    A template that fell behind produces one invoice per run; the worker
    catches up on later runs.
    """
    day = today or datetime.now(timezone.utc).date()
    generated = 0
    failed = 0
    for template in recurring_invoices_repo.list_due_templates(day.isoformat()):
        try:
            _generate_one(template, day)
            generated += 1
        except DdbConflict:
            # Another run advanced this template already.
            log.info("recurring_template_skipped", template_id=template.get("templateId"))
        except Exception as e:
            failed += 1
            log.exception("recurring_invoice_generation_failed", template_id=template.get("templateId"), error=str(e))
    if generated or failed:
        log.info("recurring_invoices_generated", generated=generated, failed=failed, day=day.isoformat())
    return {"generated": generated, "failed": failed}
