from __future__ import annotations

import re
from typing import Any

from boto3.dynamodb.conditions import Key

from ..db.dynamodb.errors import DdbConflict
from ..db.dynamodb.table import get_main_table
from .common import apply_update, require_id, strip_keys

APPROVAL_STATUSES = ("PENDING", "APPROVED", "REJECTED", "SUSPENDED")
BUSINESS_STATUSES = ("ACTIVE", "INACTIVE", "SUSPENDED")
SETTLEMENT_SCHEDULES = ("INSTANT", "DAILY", "WEEKLY", "MONTHLY")

_SECRET_FIELDS = ("liveSecretKey", "testSecretKey", "webhookSecret")


def business_key(business_id: str) -> dict[str, str]:
    bid = require_id(business_id, "business_id")
    return {"pk": f"BUSINESS#{bid}", "sk": "PROFILE"}


def slug_guard_key(slug: str) -> dict[str, str]:
    s = require_id(slug, "slug")
    return {"pk": f"BUSINESS_SLUG#{s}", "sk": "GUARD"}


def slugify(name: str) -> str:
    s = re.sub(r"[^a-z0-9]+", "-", str(name or "").lower()).strip("-")
    return s[:48] or "business"


def normalize_business(item: dict[str, Any] | None, *, include_secrets: bool = True) -> dict[str, Any] | None:
    obj = strip_keys(item)
    if obj is None:
        return None
    if not include_secrets:
        for k in _SECRET_FIELDS:
            obj.pop(k, None)
    obj["_id"] = obj.get("businessId")
    return obj


def create_business_with_slug(item: dict[str, Any], *, max_suffix: int = 50) -> dict[str, Any]:
    """
    Persist a new business, claiming a unique slug (`acme`, `acme-2`, ...).

    The slug guard and the business are written in one transaction.
    """
    t = get_main_table()
    base = slugify(item.get("name") or "")
    for n in range(1, max_suffix + 1):
        slug = base if n == 1 else f"{base}-{n}"
        candidate = {**item, "slug": slug}
        guard = {**slug_guard_key(slug), "entityType": "BusinessSlug", "businessId": item["businessId"]}
        try:
            t.transact_write(
                puts=[
                    t.tx_put(item=guard, condition_expression="attribute_not_exists(pk)"),
                    t.tx_put(item=candidate, condition_expression="attribute_not_exists(pk)"),
                ]
            )
        except DdbConflict:
            continue
        return normalize_business(candidate) or {}
    raise DdbConflict(message="Could not allocate a unique business slug", operation="TransactWriteItems")


def get_business(business_id: str) -> dict[str, Any] | None:
    return normalize_business(get_main_table().get_item(key=business_key(business_id)))


def list_merchant_businesses(merchant_id: str) -> list[dict[str, Any]]:
    mid = require_id(merchant_id, "merchant_id")
    items = get_main_table().query_all(
        index_name="GSI1",
        key_condition_expression=Key("gsi1pk").eq(f"MERCHANT_BUSINESSES#{mid}"),
        scan_index_forward=False,
    )
    return [b for b in (normalize_business(it) for it in items) if b]


def list_all_businesses(*, max_items: int = 10000) -> list[dict[str, Any]]:
    items = get_main_table().query_all(
        index_name="GSI2",
        key_condition_expression=Key("gsi2pk").eq("TYPE#BUSINESS"),
        scan_index_forward=False,
        max_items=max_items,
    )
    return [b for b in (normalize_business(it) for it in items) if b]


def update_business(
    business_id: str, patch: dict[str, Any], *, expected: dict[str, Any] | None = None
) -> dict[str, Any] | None:
    return normalize_business(apply_update(business_key(business_id), patch, expected=expected))


def delete_business(business_id: str, *, slug: str | None) -> None:
    t = get_main_table()
    deletes = [t.tx_delete(key=business_key(business_id), condition_expression="attribute_exists(pk)")]
    if slug:
        deletes.append(t.tx_delete(key=slug_guard_key(slug)))
    t.transact_write(deletes=deletes)


def find_business_by_public_key(public_key: str) -> dict[str, Any] | None:
    """Resolve a `pk_live_` / `pk_test_` key to its business."""
    pk = require_id(public_key, "public_key")
    field = "livePublicKey" if pk.startswith("pk_live_") else "testPublicKey"
    for b in list_all_businesses():
        if b.get(field) == pk:
            return b
    return None
