from __future__ import annotations

import hashlib
from typing import Any

from boto3.dynamodb.conditions import Key

from ..db.dynamodb.errors import DdbConflict
from ..db.dynamodb.table import get_main_table
from ..money import to_money
from .common import apply_update, now_iso, require_id, strip_keys

WALLET_TYPES = ("personal", "merchant", "school")
WALLET_STATUSES = ("ACTIVE", "FROZEN")


def wallet_key(wallet_id: str) -> dict[str, str]:
    wid = require_id(wallet_id, "wallet_id")
    return {"pk": f"WALLET#{wid}", "sk": "PROFILE"}


def owned_wallet_id(*, owner_id: str, wallet_type: str, currency: str) -> str:
    """One wallet per (owner, type, currency): the id is derived, so creation is idempotent."""
    raw = f"{owner_id}|{wallet_type}|{currency}".encode("utf-8")
    return "wal_" + hashlib.sha256(raw).hexdigest()[:20]


def normalize_wallet(item: dict[str, Any] | None) -> dict[str, Any] | None:
    obj = strip_keys(item)
    if obj is None:
        return None
    obj["_id"] = obj.get("walletId")
    obj["balance"] = to_money(float(obj.get("balance") or 0))
    return obj


def get_wallet(wallet_id: str) -> dict[str, Any] | None:
    return normalize_wallet(get_main_table().get_item(key=wallet_key(wallet_id)))


def create_wallet(
    *,
    owner_id: str,
    wallet_type: str,
    currency: str,
    name: str | None = None,
    external_id: str | None = None,
) -> tuple[dict[str, Any], bool]:
    """Returns (wallet, created)."""
    oid = require_id(owner_id, "owner_id")
    wtype = wallet_type if wallet_type in WALLET_TYPES else "personal"
    cur = str(currency or "").strip().upper()
    wid = owned_wallet_id(owner_id=oid, wallet_type=wtype, currency=cur)
    now = now_iso()
    item: dict[str, Any] = {
        **wallet_key(wid),
        "entityType": "Wallet",
        "walletId": wid,
        "userId": oid,
        "walletType": wtype,
        "currency": cur,
        "name": name or f"{cur} Wallet",
        "externalId": external_id,
        "balance": 0,
        "status": "ACTIVE",
        "createdAt": now,
        "updatedAt": now,
        "gsi1pk": f"USER_WALLETS#{oid}",
        "gsi1sk": f"{wtype}#{cur}#{wid}",
        "gsi2pk": "TYPE#WALLET",
        "gsi2sk": f"{now}#{wid}",
    }
    try:
        get_main_table().put_item(item=item, condition_expression="attribute_not_exists(pk)")
    except DdbConflict:
        existing = get_wallet(wid)
        if existing:
            return existing, False
        raise
    return normalize_wallet(item) or {}, True


def list_user_wallets(user_id: str) -> list[dict[str, Any]]:
    uid = require_id(user_id, "user_id")
    items = get_main_table().query_all(
        index_name="GSI1",
        key_condition_expression=Key("gsi1pk").eq(f"USER_WALLETS#{uid}"),
        scan_index_forward=True,
    )
    return [w for w in (normalize_wallet(it) for it in items) if w]


def list_all_wallets(*, max_items: int = 20000) -> list[dict[str, Any]]:
    items = get_main_table().query_all(
        index_name="GSI2",
        key_condition_expression=Key("gsi2pk").eq("TYPE#WALLET"),
        max_items=max_items,
    )
    return [w for w in (normalize_wallet(it) for it in items) if w]


def set_wallet_status(wallet_id: str, status: str) -> dict[str, Any] | None:
    return normalize_wallet(apply_update(wallet_key(wallet_id), {"status": status}))
