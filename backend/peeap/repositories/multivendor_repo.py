from __future__ import annotations

from typing import Any

from ..db.dynamodb.table import get_main_table
from .common import apply_update, now_iso, require_id, strip_keys

SUBSCRIPTION_STATUSES = ("none", "trial", "active", "expired", "cancelled")


def multivendor_key(merchant_id: str) -> dict[str, str]:
    mid = require_id(merchant_id, "merchant_id")
    return {"pk": f"MERCHANT#{mid}", "sk": "MULTIVENDOR"}


def normalize_settings(item: dict[str, Any] | None) -> dict[str, Any] | None:
    obj = strip_keys(item)
    if obj is None:
        return None
    obj["_id"] = obj.get("merchantId")
    return obj


def get_settings(merchant_id: str) -> dict[str, Any] | None:
    return normalize_settings(get_main_table().get_item(key=multivendor_key(merchant_id)))


def create_settings(merchant_id: str, fields: dict[str, Any]) -> dict[str, Any]:
    now = now_iso()
    item = {
        **multivendor_key(merchant_id),
        "entityType": "MultivendorSettings",
        "merchantId": merchant_id,
        "isEnabled": False,
        "subscriptionStatus": "none",
        "hasUsedTrial": False,
        "createdAt": now,
        "updatedAt": now,
        **fields,
    }
    get_main_table().put_item(item=item, condition_expression="attribute_not_exists(pk)")
    return normalize_settings(item) or {}


def update_settings(
    merchant_id: str, patch: dict[str, Any], *, expected: dict[str, Any] | None = None
) -> dict[str, Any] | None:
    return normalize_settings(apply_update(multivendor_key(merchant_id), patch, expected=expected))
