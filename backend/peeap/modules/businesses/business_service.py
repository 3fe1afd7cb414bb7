from __future__ import annotations

import secrets
from typing import Any

from ...db.dynamodb.errors import DdbConflict
from ...errors import InvalidState, NotFound, ValidationFailed
from ...observability.logging import get_logger
from ...repositories import businesses_repo, users_repo
from ...repositories.common import new_id, now_iso

log = get_logger("business_service")

DEFAULT_TRIAL_LIVE_TRANSACTION_LIMIT = 2

UPDATABLE_FIELDS = {
    "name",
    "description",
    "categoryId",
    "email",
    "phone",
    "address",
    "city",
    "websiteUrl",
    "logoUrl",
    "webhookUrl",
    "webhookEvents",
    "settlementSchedule",
    "autoSettlement",
}

_REJECTED_REASON = "Business has been rejected. Please contact support."
_SUSPENDED_REASON = "Business has been suspended. Please contact support."


def _key(prefix: str) -> str:
    return f"{prefix}_{secrets.token_hex(12)}"


def _key_pair(mode: str) -> dict[str, str]:
    return {
        f"{mode}PublicKey": _key(f"pk_{mode}"),
        f"{mode}SecretKey": _key(f"sk_{mode}"),
    }


def _trial_counts(business: dict[str, Any]) -> tuple[int, int]:
    limit = int(business.get("trialLiveTransactionLimit") or DEFAULT_TRIAL_LIVE_TRANSACTION_LIMIT)
    used = int(business.get("trialLiveTransactionsUsed") or 0)
    return limit, used


def _exhausted_reason(limit: int) -> str:
    return (
        f"You have used all {limit} trial live transactions. "
        "Please wait for admin approval to continue processing live payments."
    )


def get_business(business_id: str) -> dict[str, Any]:
    b = businesses_repo.get_business(business_id)
    if not b:
        raise NotFound("Business not found", code="business_not_found")
    return b


def get_my_businesses(merchant_id: str) -> list[dict[str, Any]]:
    return businesses_repo.list_merchant_businesses(merchant_id)


def create_business(merchant_id: str, data: dict[str, Any]) -> dict[str, Any]:
    name = str(data.get("name") or "").strip()
    if not name:
        raise ValidationFailed("name is required")

    bid = new_id("biz")
    now = now_iso()
    item: dict[str, Any] = {
        **businesses_repo.business_key(bid),
        "entityType": "MerchantBusiness",
        "businessId": bid,
        "merchantId": merchant_id,
        "name": name,
        "description": data.get("description"),
        "categoryId": data.get("categoryId"),
        "email": data.get("email"),
        "phone": data.get("phone"),
        "address": data.get("address"),
        "city": data.get("city"),
        "country": data.get("country") or "SL",
        "websiteUrl": data.get("websiteUrl"),
        "logoUrl": data.get("logoUrl"),
        **_key_pair("live"),
        **_key_pair("test"),
        "isLiveMode": False,
        "approvalStatus": "PENDING",
        "approvalNotes": None,
        "approvedBy": None,
        "approvedAt": None,
        "trialLiveTransactionLimit": DEFAULT_TRIAL_LIVE_TRANSACTION_LIMIT,
        "trialLiveTransactionsUsed": 0,
        "webhookUrl": None,
        "webhookSecret": _key("whsec"),
        "webhookEvents": [],
        "settlementSchedule": "DAILY",
        "autoSettlement": True,
        "status": "ACTIVE",
        "enabledFeatures": list(data.get("enabledFeatures") or []),
        "createdAt": now,
        "updatedAt": now,
        "gsi1pk": f"MERCHANT_BUSINESSES#{merchant_id}",
        "gsi1sk": f"{now}#{bid}",
        "gsi2pk": "TYPE#BUSINESS",
        "gsi2sk": f"{now}#{bid}",
    }
    created = businesses_repo.create_business_with_slug(item)
    log.info("business_created", business_id=bid, merchant_id=merchant_id, slug=created.get("slug"))
    return created


def update_business(business_id: str, patch: dict[str, Any]) -> dict[str, Any]:
    get_business(business_id)
    updates = {k: v for k, v in (patch or {}).items() if k in UPDATABLE_FIELDS}
    schedule = updates.get("settlementSchedule")
    if schedule is not None and schedule not in businesses_repo.SETTLEMENT_SCHEDULES:
        raise ValidationFailed(f"invalid settlement schedule: {schedule}")
    if "name" in updates and not str(updates["name"] or "").strip():
        raise ValidationFailed("name cannot be empty")
    if not updates:
        return get_business(business_id)
    return businesses_repo.update_business(business_id, updates) or get_business(business_id)


def toggle_live_mode(business_id: str, is_live: bool) -> dict[str, Any]:
    """
    Test mode is always allowed. Live mode needs APPROVED, or PENDING with
    trial live transactions left.
    """
    business = get_business(business_id)
    if is_live:
        status = business.get("approvalStatus")
        if status == "REJECTED":
            raise InvalidState(_REJECTED_REASON, code="business_rejected")
        if status == "SUSPENDED":
            raise InvalidState(_SUSPENDED_REASON, code="business_suspended")
        if status == "PENDING":
            limit, used = _trial_counts(business)
            if limit - used <= 0:
                raise InvalidState(_exhausted_reason(limit), code="trial_exhausted")
    updated = businesses_repo.update_business(business_id, {"isLiveMode": bool(is_live)})
    log.info("business_live_mode_toggled", business_id=business_id, is_live=bool(is_live))
    return updated or get_business(business_id)


def can_process_live_transaction(business: dict[str, Any]) -> dict[str, Any]:
    status = business.get("approvalStatus")
    if status == "APPROVED":
        return {"allowed": True}
    if status == "REJECTED":
        return {"allowed": False, "reason": _REJECTED_REASON}
    if status == "SUSPENDED":
        return {"allowed": False, "reason": _SUSPENDED_REASON}

    limit, used = _trial_counts(business)
    remaining = limit - used
    if remaining <= 0:
        return {"allowed": False, "reason": _exhausted_reason(limit), "remaining": 0}
    return {
        "allowed": True,
        "remaining": remaining,
        "reason": f"{remaining} trial live transaction(s) remaining before approval required",
    }


def increment_trial_transaction_count(business_id: str) -> dict[str, Any] | None:
    """Count one live transaction against the trial. Only PENDING businesses are counted."""
    for _ in range(3):
        business = get_business(business_id)
        if business.get("approvalStatus") != "PENDING":
            return None
        used = int(business.get("trialLiveTransactionsUsed") or 0)
        try:
            return businesses_repo.update_business(
                business_id,
                {"trialLiveTransactionsUsed": used + 1},
                expected={"approvalStatus": "PENDING", "trialLiveTransactionsUsed": used},
            )
        except DdbConflict:
            continue
    log.warning("trial_count_increment_contention", business_id=business_id)
    return None


def get_transaction_limits_info(business: dict[str, Any]) -> dict[str, str]:
    status = business.get("approvalStatus")
    if status == "APPROVED":
        return {"testTransactions": "Unlimited", "liveTransactions": "Unlimited", "status": "unlimited"}
    if status in ("REJECTED", "SUSPENDED"):
        return {"testTransactions": "Unlimited", "liveTransactions": "Blocked", "status": "blocked"}
    limit, used = _trial_counts(business)
    remaining = max(0, limit - used)
    return {
        "testTransactions": "Unlimited",
        "liveTransactions": f"{remaining} of {limit} trial remaining",
        "status": "trial",
    }


def regenerate_api_keys(business_id: str, key_type: str) -> dict[str, Any]:
    if key_type not in ("live", "test"):
        raise ValidationFailed("key_type must be 'live' or 'test'")
    get_business(business_id)
    updated = businesses_repo.update_business(business_id, _key_pair(key_type))
    log.info("business_api_keys_regenerated", business_id=business_id, key_type=key_type)
    return updated or get_business(business_id)


def regenerate_webhook_secret(business_id: str) -> dict[str, Any]:
    get_business(business_id)
    return businesses_repo.update_business(business_id, {"webhookSecret": _key("whsec")}) or get_business(
        business_id
    )


def delete_business(business_id: str) -> None:
    business = get_business(business_id)
    businesses_repo.delete_business(business_id, slug=business.get("slug"))
    log.info("business_deleted", business_id=business_id)


# -----------------------------
# Admin
# -----------------------------


def _merchant_summary(merchant_id: str, cache: dict[str, dict[str, Any] | None]) -> dict[str, Any] | None:
    if merchant_id not in cache:
        user = users_repo.get_user(merchant_id) if merchant_id else None
        cache[merchant_id] = (
            {"id": merchant_id, "email": user.get("email"), "fullName": user.get("fullName")} if user else None
        )
    return cache[merchant_id]


def _matches_search(business: dict[str, Any], needle: str) -> bool:
    merchant = business.get("merchant") or {}
    haystack = [
        business.get("name"),
        business.get("email"),
        merchant.get("email"),
        merchant.get("fullName"),
    ]
    return any(needle in str(v).lower() for v in haystack if v)


def get_all_businesses(
    *,
    approval_status: str | None = None,
    status: str | None = None,
    search: str | None = None,
) -> list[dict[str, Any]]:
    """Admin listing; "all" or empty filters are ignored. Newest first."""
    out: list[dict[str, Any]] = []
    merchants: dict[str, dict[str, Any] | None] = {}
    needle = str(search or "").strip().lower()
    for b in businesses_repo.list_all_businesses():
        if approval_status and approval_status != "all" and b.get("approvalStatus") != approval_status:
            continue
        if status and status != "all" and b.get("status") != status:
            continue
        b = {**b, "merchant": _merchant_summary(str(b.get("merchantId") or ""), merchants)}
        if needle and not _matches_search(b, needle):
            continue
        out.append(b)
    return out


def _set_approval(business_id: str, patch: dict[str, Any], event: str, admin_id: str | None) -> dict[str, Any]:
    get_business(business_id)
    updated = businesses_repo.update_business(business_id, patch)
    log.info(event, business_id=business_id, admin_id=admin_id)
    return updated or get_business(business_id)


def approve_business(business_id: str, admin_id: str, notes: str | None = None) -> dict[str, Any]:
    return _set_approval(
        business_id,
        {
            "approvalStatus": "APPROVED",
            "approvalNotes": notes or "Approved by admin",
            "approvedBy": admin_id,
            "approvedAt": now_iso(),
        },
        "business_approved",
        admin_id,
    )


def reject_business(business_id: str, admin_id: str, notes: str) -> dict[str, Any]:
    if not str(notes or "").strip():
        raise ValidationFailed("A rejection reason is required")
    return _set_approval(
        business_id,
        {"approvalStatus": "REJECTED", "approvalNotes": notes.strip(), "isLiveMode": False},
        "business_rejected",
        admin_id,
    )


def suspend_business(business_id: str, admin_id: str, notes: str | None = None) -> dict[str, Any]:
    return _set_approval(
        business_id,
        {
            "approvalStatus": "SUSPENDED",
            "status": "SUSPENDED",
            "isLiveMode": False,
            "approvalNotes": notes or "Suspended by admin",
        },
        "business_suspended",
        admin_id,
    )


def reactivate_business(business_id: str, admin_id: str, notes: str | None = None) -> dict[str, Any]:
    return _set_approval(
        business_id,
        {
            "approvalStatus": "APPROVED",
            "status": "ACTIVE",
            "approvalNotes": notes or "Reactivated by admin",
            "approvedBy": admin_id,
            "approvedAt": now_iso(),
        },
        "business_reactivated",
        admin_id,
    )


def business_counts() -> dict[str, int]:
    counts = {s: 0 for s in businesses_repo.APPROVAL_STATUSES}
    total = 0
    for b in businesses_repo.list_all_businesses():
        total += 1
        key = str(b.get("approvalStatus") or "PENDING")
        counts[key] = counts.get(key, 0) + 1
    return {"total": total, **counts}
