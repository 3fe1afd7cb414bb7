from __future__ import annotations

from typing import Any

from boto3.dynamodb.conditions import Key

from ..db.dynamodb.errors import DdbConflict
from ..db.dynamodb.table import get_main_table
from .common import apply_update, now_iso, require_id, strip_keys

USER_STATUSES = ("ACTIVE", "SUSPENDED")


def user_key(user_id: str) -> dict[str, str]:
    uid = require_id(user_id, "user_id")
    return {"pk": f"USER#{uid}", "sk": "PROFILE"}


def normalize_user(item: dict[str, Any] | None) -> dict[str, Any] | None:
    obj = strip_keys(item)
    if obj is None:
        return None
    obj["_id"] = obj.get("userId")
    return obj


def get_user(user_id: str) -> dict[str, Any] | None:
    return normalize_user(get_main_table().get_item(key=user_key(user_id)))


def ensure_user(
    *,
    user_id: str,
    email: str | None,
    full_name: str | None = None,
    phone: str | None = None,
    roles: list[str] | None = None,
) -> dict[str, Any]:
    """Create the profile on first sight of a Cognito user; refresh roles afterwards."""
    existing = get_user(user_id)
    if existing:
        if roles is not None and list(existing.get("roles") or []) != list(roles):
            return normalize_user(apply_update(user_key(user_id), {"roles": list(roles)})) or existing
        return existing

    now = now_iso()
    item: dict[str, Any] = {
        **user_key(user_id),
        "entityType": "User",
        "userId": user_id,
        "email": (email or "").strip().lower() or None,
        "fullName": (full_name or "").strip() or None,
        "phone": (phone or "").strip() or None,
        "roles": list(roles or ["user"]),
        "status": "ACTIVE",
        "createdAt": now,
        "updatedAt": now,
        "gsi2pk": "TYPE#USER",
        "gsi2sk": f"{now}#{user_id}",
    }
    try:
        get_main_table().put_item(item=item, condition_expression="attribute_not_exists(pk)")
    except DdbConflict:
        return get_user(user_id) or normalize_user(item) or {}
    return normalize_user(item) or {}


def list_users(*, max_items: int = 5000) -> list[dict[str, Any]]:
    items = get_main_table().query_all(
        index_name="GSI2",
        key_condition_expression=Key("gsi2pk").eq("TYPE#USER"),
        scan_index_forward=False,
        max_items=max_items,
    )
    return [u for u in (normalize_user(it) for it in items) if u]


def update_user(user_id: str, patch: dict[str, Any]) -> dict[str, Any] | None:
    allowed = {"fullName", "phone", "status", "roles", "kycStatus", "suspendedReason", "suspendedAt"}
    updates = {k: v for k, v in (patch or {}).items() if k in allowed}
    if not updates:
        return get_user(user_id)
    return normalize_user(apply_update(user_key(user_id), updates))
