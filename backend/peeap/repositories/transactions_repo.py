from __future__ import annotations

from typing import Any

from boto3.dynamodb.conditions import Key

from ..db.dynamodb.table import get_main_table
from ..money import to_money
from .common import new_id, now_iso, require_id, strip_keys

TRANSACTION_TYPES = (
    "send",
    "receive",
    "deposit",
    "withdrawal",
    "payment",
    "credit",
    "cashout",
    "payout",
    "refund",
    "fee",
)
TRANSACTION_STATUSES = ("pending", "completed", "failed", "reversed")


def transaction_key(transaction_id: str) -> dict[str, str]:
    tid = require_id(transaction_id, "transaction_id")
    return {"pk": f"TXN#{tid}", "sk": "PROFILE"}


def normalize_transaction(item: dict[str, Any] | None) -> dict[str, Any] | None:
    obj = strip_keys(item)
    if obj is None:
        return None
    obj["_id"] = obj.get("transactionId")
    return obj


def build_transaction_item(
    *,
    user_id: str,
    wallet_id: str,
    type: str,
    amount: float,
    currency: str,
    status: str = "completed",
    reference: str | None = None,
    description: str | None = None,
    metadata: dict[str, Any] | None = None,
    counterparty_wallet_id: str | None = None,
    transaction_id: str | None = None,
    created_at: str | None = None,
) -> dict[str, Any]:
    if type not in TRANSACTION_TYPES:
        raise ValueError(f"invalid transaction type: {type}")
    if status not in TRANSACTION_STATUSES:
        raise ValueError(f"invalid transaction status: {status}")
    tid = transaction_id or new_id("txn")
    now = created_at or now_iso()
    uid = require_id(user_id, "user_id")
    return {
        **transaction_key(tid),
        "entityType": "Transaction",
        "transactionId": tid,
        "userId": uid,
        "walletId": wallet_id,
        "type": type,
        "amount": to_money(float(amount)),
        "currency": str(currency or "").upper(),
        "status": status,
        "reference": reference or tid.upper(),
        "description": description,
        "metadata": dict(metadata or {}),
        "counterpartyWalletId": counterparty_wallet_id,
        "createdAt": now,
        "updatedAt": now,
        "gsi1pk": f"USER_TXNS#{uid}",
        "gsi1sk": f"{now}#{tid}",
        "gsi2pk": "TYPE#TRANSACTION",
        "gsi2sk": f"{now}#{tid}",
    }


def get_transaction(transaction_id: str) -> dict[str, Any] | None:
    return normalize_transaction(get_main_table().get_item(key=transaction_key(transaction_id)))


def list_user_transactions(
    user_id: str, *, limit: int = 50, next_token: str | None = None
) -> dict[str, Any]:
    uid = require_id(user_id, "user_id")
    pg = get_main_table().query_page(
        index_name="GSI1",
        key_condition_expression=Key("gsi1pk").eq(f"USER_TXNS#{uid}"),
        scan_index_forward=False,
        limit=max(1, min(200, int(limit or 50))),
        next_token=next_token,
    )
    items = [t for t in (normalize_transaction(it) for it in pg.items) if t]
    return {"data": items, "nextToken": pg.next_token}


def list_transactions_between(
    start_iso: str | None = None, end_iso: str | None = None, *, max_items: int | None = None
) -> list[dict[str, Any]]:
    """Platform-wide transactions created in [start, end] (ISO strings); newest first."""
    cond = Key("gsi2pk").eq("TYPE#TRANSACTION")
    if start_iso or end_iso:
        # "~" sorts after every id character, so the end bound is inclusive.
        cond = cond & Key("gsi2sk").between(start_iso or "0", f"{end_iso or '9999'}~")
    items = get_main_table().query_all(
        index_name="GSI2",
        key_condition_expression=cond,
        scan_index_forward=False,
        max_items=max_items,
    )
    return [t for t in (normalize_transaction(it) for it in items) if t]
