from __future__ import annotations

import hashlib
from typing import Any

from boto3.dynamodb.conditions import Key

from ..db.dynamodb.table import get_main_table
from .common import apply_update, require_id, strip_keys

CARD_STATUSES = ("pending", "active", "frozen", "blocked", "cancelled")
CARD_TYPES = ("virtual", "physical")
CARD_TIERS = ("basic", "standard", "premium", "platinum")

# Never returned to API callers.
_SECRET_FIELDS = ("cardNumber", "cvvHash")


def card_key(card_id: str) -> dict[str, str]:
    cid = require_id(card_id, "card_id")
    return {"pk": f"CARD#{cid}", "sk": "PROFILE"}


def card_number_hash(card_number: str) -> str:
    digits = "".join(ch for ch in str(card_number or "") if ch.isdigit())
    return hashlib.sha256(digits.encode("ascii")).hexdigest()


def card_number_guard_key(card_number: str) -> dict[str, str]:
    return {"pk": f"CARDNUM#{card_number_hash(card_number)}", "sk": "GUARD"}


def normalize_card(item: dict[str, Any] | None, *, include_secrets: bool = False) -> dict[str, Any] | None:
    obj = strip_keys(item)
    if obj is None:
        return None
    if not include_secrets:
        for k in _SECRET_FIELDS:
            obj.pop(k, None)
    obj["_id"] = obj.get("cardId")
    return obj


def put_card_with_guard(item: dict[str, Any]) -> None:
    """Write the card and its number guard atomically; DdbConflict on a duplicate number."""
    t = get_main_table()
    guard = {
        **card_number_guard_key(item["cardNumber"]),
        "entityType": "CardNumberGuard",
        "cardId": item["cardId"],
        "createdAt": item["createdAt"],
    }
    t.transact_write(
        puts=[
            t.tx_put(item=guard, condition_expression="attribute_not_exists(pk)"),
            t.tx_put(item=item, condition_expression="attribute_not_exists(pk)"),
        ]
    )


def get_card_raw(card_id: str) -> dict[str, Any] | None:
    return get_main_table().get_item(key=card_key(card_id))


def get_card(card_id: str) -> dict[str, Any] | None:
    return normalize_card(get_card_raw(card_id))


def find_card_id_by_number(card_number: str) -> str | None:
    guard = get_main_table().get_item(key=card_number_guard_key(card_number))
    return str(guard.get("cardId")) if guard and guard.get("cardId") else None


def list_user_cards(user_id: str) -> list[dict[str, Any]]:
    uid = require_id(user_id, "user_id")
    items = get_main_table().query_all(
        index_name="GSI1",
        key_condition_expression=Key("gsi1pk").eq(f"USER_CARDS#{uid}"),
        scan_index_forward=False,
    )
    return [c for c in (normalize_card(it) for it in items) if c]


def list_all_cards_raw(*, max_items: int = 20000) -> list[dict[str, Any]]:
    return get_main_table().query_all(
        index_name="GSI2",
        key_condition_expression=Key("gsi2pk").eq("TYPE#CARD"),
        scan_index_forward=False,
        max_items=max_items,
    )


def update_card(
    card_id: str, patch: dict[str, Any], *, expected: dict[str, Any] | None = None
) -> dict[str, Any] | None:
    return normalize_card(apply_update(card_key(card_id), patch, expected=expected))
