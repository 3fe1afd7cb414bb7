from __future__ import annotations

from typing import Any

from boto3.dynamodb.conditions import Key

from ..db.dynamodb.table import get_main_table
from .common import apply_update, require_id, strip_keys, tx_apply_update

INVOICE_STATUSES = ("draft", "sent", "viewed", "paid", "overdue", "cancelled")
PAYMENT_STATUSES = ("unpaid", "partial", "paid", "overdue", "cancelled")
INVOICE_TYPES = ("standard", "proforma", "quote", "credit_note", "debit_note", "receipt")


def invoice_key(invoice_id: str) -> dict[str, str]:
    iid = require_id(invoice_id, "invoice_id")
    return {"pk": f"INVOICE#{iid}", "sk": "PROFILE"}


def normalize_invoice(item: dict[str, Any] | None) -> dict[str, Any] | None:
    obj = strip_keys(item)
    if obj is None:
        return None
    obj["_id"] = obj.get("invoiceId")
    return obj


def index_fields(*, business_id: str, customer_id: str | None, created_at: str, invoice_id: str) -> dict[str, Any]:
    out: dict[str, Any] = {
        "gsi1pk": f"BUSINESS_INVOICES#{business_id}",
        "gsi1sk": f"{created_at}#{invoice_id}",
    }
    if customer_id:
        out["gsi2pk"] = f"CUSTOMER_INVOICES#{customer_id}"
        out["gsi2sk"] = f"{created_at}#{invoice_id}"
    return out


def put_invoice(item: dict[str, Any]) -> dict[str, Any]:
    get_main_table().put_item(item=item, condition_expression="attribute_not_exists(pk)")
    return normalize_invoice(item) or {}


def get_invoice(invoice_id: str) -> dict[str, Any] | None:
    return normalize_invoice(get_main_table().get_item(key=invoice_key(invoice_id)))


def list_business_invoices(business_id: str) -> list[dict[str, Any]]:
    bid = require_id(business_id, "business_id")
    items = get_main_table().query_all(
        index_name="GSI1",
        key_condition_expression=Key("gsi1pk").eq(f"BUSINESS_INVOICES#{bid}"),
        scan_index_forward=False,
    )
    return [i for i in (normalize_invoice(it) for it in items) if i]


def list_customer_invoices(customer_id: str) -> list[dict[str, Any]]:
    cid = require_id(customer_id, "customer_id")
    items = get_main_table().query_all(
        index_name="GSI2",
        key_condition_expression=Key("gsi2pk").eq(f"CUSTOMER_INVOICES#{cid}"),
        scan_index_forward=False,
    )
    return [i for i in (normalize_invoice(it) for it in items) if i]


def update_invoice(
    invoice_id: str, patch: dict[str, Any], *, expected: dict[str, Any] | None = None
) -> dict[str, Any] | None:
    return normalize_invoice(apply_update(invoice_key(invoice_id), patch, expected=expected))


def tx_update_invoice(invoice_id: str, patch: dict[str, Any], *, expected: dict[str, Any]) -> dict[str, Any]:
    """TransactWriteItems entry for an invoice patch guarded by `expected`."""
    return tx_apply_update(invoice_key(invoice_id), patch, expected=expected, prefix="i")


def delete_draft_invoice(invoice_id: str) -> None:
    get_main_table().delete_item(
        key=invoice_key(invoice_id),
        condition_expression="attribute_exists(pk) AND #s = :draft",
        expression_attribute_names={"#s": "status"},
        expression_attribute_values={":draft": "draft"},
    )
