from __future__ import annotations

from typing import Any

from boto3.dynamodb.conditions import Key

from ..db.dynamodb.table import get_main_table
from ..money import to_money
from .common import apply_update, require_id, strip_keys

MONIME_TXN_TYPES = ("DEPOSIT", "WITHDRAWAL")
MONIME_TXN_STATUSES = ("PENDING", "COMPLETED", "FAILED")


def monime_txn_key(txn_id: str) -> dict[str, str]:
    tid = require_id(txn_id, "txn_id")
    return {"pk": f"MONIME_TXN#{tid}", "sk": "PROFILE"}


def normalize_monime_txn(item: dict[str, Any] | None) -> dict[str, Any] | None:
    obj = strip_keys(item)
    if obj is None:
        return None
    obj["_id"] = obj.get("monimeTxnId")
    return obj


def build_monime_txn_item(
    *,
    txn_id: str,
    type: str,
    user_id: str,
    wallet_id: str,
    amount: float,
    currency_code: str,
    created_at: str,
    status: str = "PENDING",
    monime_reference: str | None = None,
    phone_number: str | None = None,
    provider: str | None = None,
    fee: float = 0.0,
) -> dict[str, Any]:
    if type not in MONIME_TXN_TYPES:
        raise ValueError(f"invalid monime transaction type: {type}")
    return {
        **monime_txn_key(txn_id),
        "entityType": "MonimeTransaction",
        "monimeTxnId": txn_id,
        "type": type,
        "status": status,
        "userId": user_id,
        "walletId": wallet_id,
        "amount": to_money(float(amount)),
        "fee": to_money(float(fee)),
        "currencyCode": str(currency_code or "").upper(),
        "monimeReference": monime_reference,
        "phoneNumber": phone_number,
        "provider": provider,
        "createdAt": created_at,
        "updatedAt": created_at,
        "gsi1pk": f"WALLET_MONIME#{wallet_id}",
        "gsi1sk": f"{created_at}#{txn_id}",
        "gsi2pk": "TYPE#MONIME_TXN",
        "gsi2sk": f"{created_at}#{txn_id}",
    }


def put_monime_txn(item: dict[str, Any]) -> dict[str, Any]:
    get_main_table().put_item(item=item, condition_expression="attribute_not_exists(pk)")
    return normalize_monime_txn(item) or {}


def get_monime_txn(txn_id: str) -> dict[str, Any] | None:
    return normalize_monime_txn(get_main_table().get_item(key=monime_txn_key(txn_id)))


def list_monime_txns_between(
    start_iso: str | None = None, end_iso: str | None = None, *, max_items: int | None = None
) -> list[dict[str, Any]]:
    cond = Key("gsi2pk").eq("TYPE#MONIME_TXN")
    if start_iso or end_iso:
        cond = cond & Key("gsi2sk").between(start_iso or "0", f"{end_iso or '9999'}~")
    items = get_main_table().query_all(
        index_name="GSI2",
        key_condition_expression=cond,
        scan_index_forward=False,
        max_items=max_items,
    )
    return [t for t in (normalize_monime_txn(it) for it in items) if t]


def update_monime_txn(
    txn_id: str, patch: dict[str, Any], *, expected: dict[str, Any] | None = None
) -> dict[str, Any] | None:
    return normalize_monime_txn(apply_update(monime_txn_key(txn_id), patch, expected=expected))
