from __future__ import annotations

from typing import Any

from ...db.dynamodb.errors import DdbConflict
from ...errors import NotFound, ValidationFailed
from ...infrastructure.push.fcm_client import FcmClient, get_fcm_client
from ...observability.logging import get_logger
from ...repositories import notifications_repo, outbox_repo

log = get_logger("notification_service")

PUSH_EVENT_TYPE = "push.send"

# type -> deep link opened when the push is tapped
NOTIFICATION_TYPES: dict[str, str] = {
    "payment_received": "/dashboard/transactions",
    "payment_sent": "/dashboard/transactions",
    "payment_failed": "/dashboard/transactions",
    "payout_completed": "/merchant/payouts",
    "payout_failed": "/merchant/payouts",
    "low_balance": "/dashboard/wallet",
    "login_alert": "/dashboard/settings",
    "card_transaction": "/dashboard/cards",
    "refund_processed": "/merchant/refunds",
    "kyc_approved": "/dashboard/settings",
    "kyc_rejected": "/dashboard/settings",
    "driver_payment": "/merchant/driver-wallet",
    "merchant_sale": "/merchant/transactions",
    "promotional": "/dashboard",
}

DEFAULT_PREFERENCES: dict[str, bool] = {t: t != "promotional" for t in NOTIFICATION_TYPES}


def _require_type(type: str) -> str:
    t = str(type or "").strip()
    if t not in NOTIFICATION_TYPES:
        raise ValidationFailed(f"unknown notification type: {type}")
    return t


def get_preferences(user_id: str) -> dict[str, bool]:
    stored = notifications_repo.get_preferences(user_id) or {}
    prefs = dict(DEFAULT_PREFERENCES)
    for k, v in (stored.get("preferences") or {}).items():
        if k in prefs:
            prefs[k] = bool(v)
    return prefs


def save_preferences(user_id: str, patch: dict[str, Any]) -> dict[str, bool]:
    unknown = [k for k in (patch or {}) if k not in NOTIFICATION_TYPES]
    if unknown:
        raise ValidationFailed("unknown notification types", details={"types": unknown})
    prefs = {**get_preferences(user_id), **{k: bool(v) for k, v in (patch or {}).items()}}
    notifications_repo.put_preferences(user_id, prefs)
    return prefs


def notify(
    user_id: str,
    type: str,
    title: str,
    body: str,
    data: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """
    Store an in-app notification and, when the user's preference for this
    type is on, queue a push for the outbox worker.
    """
    t = _require_type(type)
    notification = notifications_repo.create_notification(
        user_id=user_id, type=t, title=title, body=body, data=data
    )
    pushed = False
    if get_preferences(user_id).get(t, False):
        outbox_repo.enqueue_event(
            event_type=PUSH_EVENT_TYPE,
            payload={
                "userId": user_id,
                "type": t,
                "title": title,
                "body": body,
                "data": {**(data or {}), "type": t, "url": NOTIFICATION_TYPES[t]},
            },
            dedupe_key=f"push_{notification['notificationId']}",
        )
        pushed = True
    log.info("notification_created", user_id=user_id, type=t, pushed=pushed)
    return {**notification, "pushQueued": pushed}


def send_push_to_users(
    user_ids: list[str], type: str, title: str, body: str, data: dict[str, Any] | None = None
) -> dict[str, Any]:
    """Admin broadcast; users who opted out still get the in-app copy."""
    queued = 0
    seen: set[str] = set()
    for uid in user_ids:
        uid = str(uid or "").strip()
        if not uid or uid in seen:
            continue
        seen.add(uid)
        if notify(uid, type, title, body, data).get("pushQueued"):
            queued += 1
    return {"recipients": len(seen), "pushQueued": queued}


def list_notifications(
    user_id: str, *, unread_only: bool = False, limit: int = 50, next_token: str | None = None
) -> dict[str, Any]:
    if unread_only:
        return {"data": notifications_repo.list_unread_notifications(user_id), "nextToken": None}
    return notifications_repo.list_notifications(user_id, limit=limit, next_token=next_token)


def mark_read(user_id: str, notification_id: str) -> dict[str, Any]:
    try:
        updated = notifications_repo.mark_read(user_id, notification_id)
    except DdbConflict as e:
        raise NotFound("Notification not found", code="notification_not_found") from e
    return updated or {}


def mark_all_read(user_id: str) -> int:
    count = 0
    for n in notifications_repo.list_unread_notifications(user_id):
        notifications_repo.mark_read(user_id, str(n["notificationId"]))
        count += 1
    return count


def register_device(user_id: str, token: str, platform: str = "web") -> dict[str, Any]:
    if not str(token or "").strip():
        raise ValidationFailed("token is required")
    return notifications_repo.register_device(user_id=user_id, token=token.strip(), platform=platform)


def unregister_device(user_id: str, token: str) -> None:
    notifications_repo.unregister_device(user_id=user_id, token=token)


def deliver_push(payload: dict[str, Any], *, client: FcmClient | None = None) -> dict[str, Any]:
    """
    Send a queued `push.send` payload to every device of the user.

    Tokens FCM reports as unregistered are removed. Raises PushDeliveryError
    when FCM itself fails, so the outbox retries the event.
    """
    user_id = str(payload.get("userId") or "").strip()
    if not user_id:
        return {"ok": False, "error": "missing_user"}
    tokens = notifications_repo.list_device_tokens(user_id)
    if not tokens:
        return {"ok": True, "sent": 0, "reason": "no_devices"}
    res = (client or get_fcm_client()).send(
        tokens,
        title=str(payload.get("title") or ""),
        body=str(payload.get("body") or ""),
        data=payload.get("data") if isinstance(payload.get("data"), dict) else None,
    )
    for token in res["invalidTokens"]:
        notifications_repo.unregister_device(user_id=user_id, token=token)
    if res["invalidTokens"]:
        log.info("push_tokens_pruned", user_id=user_id, count=len(res["invalidTokens"]))
    return {"ok": True, "sent": res["success"], "failed": res["failure"]}
