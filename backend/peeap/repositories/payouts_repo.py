from __future__ import annotations

from typing import Any

from boto3.dynamodb.conditions import Key

from ..db.dynamodb.table import get_main_table
from ..money import to_money
from .common import apply_update, require_id, strip_keys

PAYOUT_STATUSES = ("pending", "processing", "completed", "failed")


def payout_key(payout_id: str) -> dict[str, str]:
    pid = require_id(payout_id, "payout_id")
    return {"pk": f"PAYOUT#{pid}", "sk": "PROFILE"}


def normalize_payout(item: dict[str, Any] | None) -> dict[str, Any] | None:
    obj = strip_keys(item)
    if obj is None:
        return None
    obj["_id"] = obj.get("payoutId")
    return obj


def build_payout_item(
    *,
    payout_id: str,
    user_id: str,
    wallet_id: str,
    amount: float,
    currency: str,
    destination: dict[str, Any],
    created_at: str,
    monime_txn_id: str | None = None,
    business_id: str | None = None,
) -> dict[str, Any]:
    return {
        **payout_key(payout_id),
        "entityType": "Payout",
        "payoutId": payout_id,
        "userId": user_id,
        "walletId": wallet_id,
        "businessId": business_id,
        "amount": to_money(float(amount)),
        "currency": str(currency or "").upper(),
        "destination": dict(destination or {}),
        "status": "pending",
        "monimeTxnId": monime_txn_id,
        "createdAt": created_at,
        "updatedAt": created_at,
        "gsi1pk": f"USER_PAYOUTS#{user_id}",
        "gsi1sk": f"{created_at}#{payout_id}",
        "gsi2pk": "TYPE#PAYOUT",
        "gsi2sk": f"{created_at}#{payout_id}",
    }


def put_payout(item: dict[str, Any]) -> dict[str, Any]:
    get_main_table().put_item(item=item, condition_expression="attribute_not_exists(pk)")
    return normalize_payout(item) or {}


def get_payout(payout_id: str) -> dict[str, Any] | None:
    return normalize_payout(get_main_table().get_item(key=payout_key(payout_id)))


def list_user_payouts(user_id: str) -> list[dict[str, Any]]:
    uid = require_id(user_id, "user_id")
    items = get_main_table().query_all(
        index_name="GSI1",
        key_condition_expression=Key("gsi1pk").eq(f"USER_PAYOUTS#{uid}"),
        scan_index_forward=False,
    )
    return [p for p in (normalize_payout(it) for it in items) if p]


def list_payouts_between(
    start_iso: str | None = None, end_iso: str | None = None, *, max_items: int | None = None
) -> list[dict[str, Any]]:
    cond = Key("gsi2pk").eq("TYPE#PAYOUT")
    if start_iso or end_iso:
        cond = cond & Key("gsi2sk").between(start_iso or "0", f"{end_iso or '9999'}~")
    items = get_main_table().query_all(
        index_name="GSI2",
        key_condition_expression=cond,
        scan_index_forward=False,
        max_items=max_items,
    )
    return [p for p in (normalize_payout(it) for it in items) if p]


def update_payout(
    payout_id: str, patch: dict[str, Any], *, expected: dict[str, Any] | None = None
) -> dict[str, Any] | None:
    return normalize_payout(apply_update(payout_key(payout_id), patch, expected=expected))
