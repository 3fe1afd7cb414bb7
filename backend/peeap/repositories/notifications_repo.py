from __future__ import annotations

import hashlib
from typing import Any

from boto3.dynamodb.conditions import Key

from ..db.dynamodb.table import get_main_table
from .common import apply_update, new_sortable_id, now_iso, require_id, strip_keys


def _user_pk(user_id: str) -> str:
    return f"USER#{require_id(user_id, 'user_id')}"


def notification_key(user_id: str, notification_id: str) -> dict[str, str]:
    nid = require_id(notification_id, "notification_id")
    return {"pk": _user_pk(user_id), "sk": f"NOTIF#{nid}"}


def device_key(user_id: str, token: str) -> dict[str, str]:
    tok = require_id(token, "token")
    return {"pk": _user_pk(user_id), "sk": "DEVICE#" + hashlib.sha256(tok.encode("utf-8")).hexdigest()[:32]}


def prefs_key(user_id: str) -> dict[str, str]:
    return {"pk": _user_pk(user_id), "sk": "NOTIF_PREFS"}


def normalize_notification(item: dict[str, Any] | None) -> dict[str, Any] | None:
    obj = strip_keys(item)
    if obj is None:
        return None
    obj["_id"] = obj.get("notificationId")
    return obj


# -----------------------------
# In-app notifications
# -----------------------------


def create_notification(
    *,
    user_id: str,
    type: str,
    title: str,
    body: str,
    data: dict[str, Any] | None = None,
) -> dict[str, Any]:
    nid = new_sortable_id("ntf")
    now = now_iso()
    item = {
        **notification_key(user_id, nid),
        "entityType": "Notification",
        "notificationId": nid,
        "userId": user_id,
        "type": type,
        "title": title,
        "body": body,
        "data": dict(data or {}),
        "read": False,
        "createdAt": now,
        "updatedAt": now,
    }
    get_main_table().put_item(item=item, condition_expression="attribute_not_exists(pk)")
    return normalize_notification(item) or {}


def list_notifications(user_id: str, *, limit: int = 50, next_token: str | None = None) -> dict[str, Any]:
    pg = get_main_table().query_page(
        key_condition_expression=Key("pk").eq(_user_pk(user_id)) & Key("sk").begins_with("NOTIF#"),
        scan_index_forward=False,
        limit=max(1, min(200, int(limit or 50))),
        next_token=next_token,
    )
    return {"data": [n for n in (normalize_notification(it) for it in pg.items) if n], "nextToken": pg.next_token}


def list_unread_notifications(user_id: str) -> list[dict[str, Any]]:
    items = get_main_table().query_all(
        key_condition_expression=Key("pk").eq(_user_pk(user_id)) & Key("sk").begins_with("NOTIF#"),
        scan_index_forward=False,
        max_items=1000,
    )
    return [n for n in (normalize_notification(it) for it in items) if n and not n.get("read")]


def mark_read(user_id: str, notification_id: str) -> dict[str, Any] | None:
    return normalize_notification(
        apply_update(notification_key(user_id, notification_id), {"read": True, "readAt": now_iso()})
    )


# -----------------------------
# Device tokens
# -----------------------------


def register_device(*, user_id: str, token: str, platform: str) -> dict[str, Any]:
    now = now_iso()
    item = {
        **device_key(user_id, token),
        "entityType": "DeviceToken",
        "userId": user_id,
        "token": token,
        "platform": platform,
        "createdAt": now,
        "updatedAt": now,
    }
    # Re-registering the same token just refreshes it.
    get_main_table().put_item(item=item)
    return strip_keys(item) or {}


def unregister_device(*, user_id: str, token: str) -> None:
    get_main_table().delete_item(key=device_key(user_id, token))


def list_device_tokens(user_id: str) -> list[str]:
    items = get_main_table().query_all(
        key_condition_expression=Key("pk").eq(_user_pk(user_id)) & Key("sk").begins_with("DEVICE#"),
    )
    return [str(it.get("token")) for it in items if it.get("token")]


# -----------------------------
# Preferences
# -----------------------------


def get_preferences(user_id: str) -> dict[str, Any] | None:
    return strip_keys(get_main_table().get_item(key=prefs_key(user_id)))


def put_preferences(user_id: str, prefs: dict[str, bool]) -> dict[str, Any]:
    now = now_iso()
    item = {
        **prefs_key(user_id),
        "entityType": "NotificationPreferences",
        "userId": user_id,
        "preferences": dict(prefs),
        "updatedAt": now,
    }
    get_main_table().put_item(item=item)
    return strip_keys(item) or {}
