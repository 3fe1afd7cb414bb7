from __future__ import annotations

import hashlib
from datetime import date, datetime, timezone
from typing import Any

from ...db.dynamodb.errors import DdbConflict
from ...errors import InvalidState, NotFound, ValidationFailed
from ...money import to_money
from ...observability.logging import get_logger
from ...repositories import cards_repo
from ...repositories.common import iso, new_id
from ..wallets.wallet_service import get_wallet
from .luhn import generate_card_number, generate_cvv, is_valid_card_number, mask_card_number

log = get_logger("card_service")

TIER_LIMITS: dict[str, dict[str, float]] = {
    "basic": {"dailyLimit": 500, "monthlyLimit": 2000, "perTransactionLimit": 200},
    "standard": {"dailyLimit": 2000, "monthlyLimit": 10000, "perTransactionLimit": 1000},
    "premium": {"dailyLimit": 10000, "monthlyLimit": 50000, "perTransactionLimit": 5000},
    "platinum": {"dailyLimit": 50000, "monthlyLimit": 200000, "perTransactionLimit": 25000},
}

DEFAULT_FEATURES = {"nfc": True, "online": True, "international": False, "atm": False}

# action -> (allowed current statuses, resulting status)
_TRANSITIONS: dict[str, tuple[frozenset[str], str]] = {
    "activate": (frozenset({"pending"}), "active"),
    "freeze": (frozenset({"active"}), "frozen"),
    "unfreeze": (frozenset({"frozen"}), "active"),
    "block": (frozenset({"pending", "active", "frozen"}), "blocked"),
    "unblock": (frozenset({"blocked"}), "active"),
    "cancel": (frozenset({"pending", "active", "frozen", "blocked"}), "cancelled"),
}

_STATUS_DECLINE_REASONS = {
    "pending": "Card is not activated",
    "frozen": "Card is frozen",
    "blocked": "Card is blocked",
    "cancelled": "Card is cancelled",
}

_MAX_NUMBER_ATTEMPTS = 5
_MAX_SPEND_RETRIES = 3


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _day(dt: datetime) -> str:
    return dt.strftime("%Y-%m-%d")


def _month(dt: datetime) -> str:
    return dt.strftime("%Y-%m")


def get_card(card_id: str) -> dict[str, Any]:
    card = cards_repo.get_card(card_id)
    if not card:
        raise NotFound("Card not found", code="card_not_found")
    return card


def _get_raw(card_id: str) -> dict[str, Any]:
    raw = cards_repo.get_card_raw(card_id)
    if not raw:
        raise NotFound("Card not found", code="card_not_found")
    return raw


def list_user_cards(user_id: str) -> list[dict[str, Any]]:
    return cards_repo.list_user_cards(user_id)


def issue_card(
    *,
    user_id: str,
    wallet_id: str,
    card_type: str = "virtual",
    tier: str = "basic",
    cardholder_name: str | None = None,
) -> dict[str, Any]:
    """
    Issue a card against one of the user's wallets.

    Virtual cards are usable immediately; physical cards start `pending`
    until activated. The full number and CVV are returned only here.
    """
    if card_type not in cards_repo.CARD_TYPES:
        raise ValidationFailed(f"invalid card type: {card_type}")
    if tier not in TIER_LIMITS:
        raise ValidationFailed(f"invalid card tier: {tier}")

    wallet = get_wallet(wallet_id)
    if wallet.get("userId") != user_id:
        raise ValidationFailed("Wallet does not belong to this user")

    now = _now()
    created_at = iso(now)
    status = "active" if card_type == "virtual" else "pending"

    for attempt in range(1, _MAX_NUMBER_ATTEMPTS + 1):
        card_id = new_id("card")
        number = generate_card_number()
        cvv = generate_cvv()
        item: dict[str, Any] = {
            **cards_repo.card_key(card_id),
            "entityType": "Card",
            "cardId": card_id,
            "userId": user_id,
            "walletId": wallet_id,
            "cardType": card_type,
            "tier": tier,
            "status": status,
            "cardNumber": number,
            "maskedNumber": mask_card_number(number),
            "last4": number[-4:],
            "cardholderName": (cardholder_name or "").strip().upper() or None,
            "expiryMonth": now.month,
            "expiryYear": now.year + 3,
            "cvvHash": hashlib.sha256(f"{card_id}:{cvv}".encode("utf-8")).hexdigest(),
            **TIER_LIMITS[tier],
            "dailySpent": 0,
            "monthlySpent": 0,
            "spentDay": _day(now),
            "spentMonth": _month(now),
            "features": dict(DEFAULT_FEATURES),
            "activatedAt": created_at if status == "active" else None,
            "createdAt": created_at,
            "updatedAt": created_at,
            "gsi1pk": f"USER_CARDS#{user_id}",
            "gsi1sk": f"{created_at}#{card_id}",
            "gsi2pk": "TYPE#CARD",
            "gsi2sk": f"{created_at}#{card_id}",
        }
        try:
            cards_repo.put_card_with_guard(item)
        except DdbConflict:
            log.warning("card_number_collision", attempt=attempt)
            continue
        log.info("card_issued", card_id=card_id, card_type=card_type, tier=tier)
        return {"card": cards_repo.normalize_card(item), "cardNumber": number, "cvv": cvv}

    raise InvalidState("Could not allocate a unique card number", code="card_number_exhausted")


def _transition(card_id: str, action: str, extra: dict[str, Any] | None = None) -> dict[str, Any]:
    allowed, target = _TRANSITIONS[action]
    card = get_card(card_id)
    current = str(card.get("status") or "")
    if current not in allowed:
        raise InvalidState(f"Cannot {action} a card that is {current}", code="invalid_card_status")
    patch = {"status": target, **(extra or {})}
    try:
        updated = cards_repo.update_card(card_id, patch, expected={"status": current})
    except DdbConflict as e:
        raise InvalidState("Card status changed, reload and retry", code="card_status_conflict") from e
    log.info("card_status_changed", card_id=card_id, action=action, status=target)
    return updated or get_card(card_id)


def activate_card(card_id: str) -> dict[str, Any]:
    return _transition(card_id, "activate", {"activatedAt": iso(_now())})


def freeze_card(card_id: str) -> dict[str, Any]:
    return _transition(card_id, "freeze", {"frozenAt": iso(_now())})


def unfreeze_card(card_id: str) -> dict[str, Any]:
    return _transition(card_id, "unfreeze", {"frozenAt": None})


def block_card(card_id: str, *, reason: str | None = None, blocked_by: str | None = None) -> dict[str, Any]:
    return _transition(
        card_id,
        "block",
        {"blockedAt": iso(_now()), "blockedReason": reason or None, "blockedBy": blocked_by},
    )


def unblock_card(card_id: str) -> dict[str, Any]:
    return _transition(card_id, "unblock", {"blockedAt": None, "blockedReason": None, "blockedBy": None})


def cancel_card(card_id: str, *, reason: str | None = None) -> dict[str, Any]:
    return _transition(card_id, "cancel", {"cancelledAt": iso(_now()), "cancelReason": reason or None})


def update_limits(
    card_id: str,
    *,
    daily_limit: float | None = None,
    monthly_limit: float | None = None,
    per_transaction_limit: float | None = None,
) -> dict[str, Any]:
    card = get_card(card_id)
    patch: dict[str, Any] = {}
    for field, value in (
        ("dailyLimit", daily_limit),
        ("monthlyLimit", monthly_limit),
        ("perTransactionLimit", per_transaction_limit),
    ):
        if value is None:
            continue
        if float(value) <= 0:
            raise ValidationFailed(f"{field} must be greater than 0")
        patch[field] = to_money(float(value))
    if not patch:
        return card

    merged = {**card, **patch}
    if not (
        float(merged["perTransactionLimit"]) <= float(merged["dailyLimit"]) <= float(merged["monthlyLimit"])
    ):
        raise ValidationFailed("Limits must satisfy per-transaction <= daily <= monthly")
    return cards_repo.update_card(card_id, patch) or get_card(card_id)


def update_features(card_id: str, **features: bool | None) -> dict[str, Any]:
    card = get_card(card_id)
    current = {**DEFAULT_FEATURES, **(card.get("features") or {})}
    for name, value in features.items():
        if name not in DEFAULT_FEATURES:
            raise ValidationFailed(f"unknown card feature: {name}")
        if value is not None:
            current[name] = bool(value)
    return cards_repo.update_card(card_id, {"features": current}) or get_card(card_id)


def _is_expired(card: dict[str, Any], today: date) -> bool:
    # Valid through the 28th of the expiry month.
    try:
        valid_through = date(int(card["expiryYear"]), int(card["expiryMonth"]), 28)
    except (KeyError, TypeError, ValueError):
        return True
    return today > valid_through


def _effective_spent(card: dict[str, Any], now: datetime) -> tuple[float, float]:
    # Counters roll over lazily when the stored day/month is stale.
    daily = float(card.get("dailySpent") or 0) if card.get("spentDay") == _day(now) else 0.0
    monthly = float(card.get("monthlySpent") or 0) if card.get("spentMonth") == _month(now) else 0.0
    return daily, monthly


def _decline(reason: str, code: str) -> dict[str, Any]:
    return {"approved": False, "reason": reason, "code": code}


def evaluate_spend(card: dict[str, Any], amount: float, *, now: datetime | None = None) -> dict[str, Any]:
    """Checks, in order: status, expiry, per-transaction, daily, monthly."""
    at = now or _now()
    status = str(card.get("status") or "")
    if status != "active":
        return _decline(_STATUS_DECLINE_REASONS.get(status, "Card is not active"), "card_not_active")
    if _is_expired(card, at.date()):
        return _decline("Card has expired", "card_expired")

    amt = to_money(float(amount))
    if amt <= 0:
        return _decline("Amount must be greater than 0", "invalid_amount")
    if amt > float(card.get("perTransactionLimit") or 0):
        return _decline("Amount exceeds per-transaction limit", "per_transaction_limit")

    daily, monthly = _effective_spent(card, at)
    remaining_daily = to_money(float(card.get("dailyLimit") or 0) - daily)
    remaining_monthly = to_money(float(card.get("monthlyLimit") or 0) - monthly)
    if amt > remaining_daily:
        return {**_decline("Daily limit exceeded", "daily_limit"), "remainingDaily": max(0.0, remaining_daily)}
    if amt > remaining_monthly:
        return {
            **_decline("Monthly limit exceeded", "monthly_limit"),
            "remainingMonthly": max(0.0, remaining_monthly),
        }
    return {
        "approved": True,
        "reason": None,
        "code": None,
        "remainingDaily": to_money(remaining_daily - amt),
        "remainingMonthly": to_money(remaining_monthly - amt),
    }


def authorize_spend(card_id: str, amount: float, *, now: datetime | None = None) -> dict[str, Any]:
    return evaluate_spend(_get_raw(card_id), amount, now=now)


def authorize_by_number(card_number: str, amount: float) -> dict[str, Any]:
    """Point-of-sale / NFC lookup: Luhn-check the PAN before touching storage."""
    if not is_valid_card_number(card_number):
        return _decline("Invalid card number", "invalid_card_number")
    card_id = cards_repo.find_card_id_by_number(card_number)
    if not card_id:
        return _decline("Card not found", "card_not_found")
    return {**authorize_spend(card_id, amount), "cardId": card_id}


def record_spend(card_id: str, amount: float) -> dict[str, Any]:
    """Authorize and count a spend against the card's rolling counters."""
    for _ in range(_MAX_SPEND_RETRIES):
        raw = _get_raw(card_id)
        now = _now()
        decision = evaluate_spend(raw, amount, now=now)
        if not decision["approved"]:
            raise InvalidState(str(decision["reason"]), code=str(decision["code"]), details=decision)
        daily, monthly = _effective_spent(raw, now)
        amt = to_money(float(amount))
        try:
            updated = cards_repo.update_card(
                card_id,
                {
                    "dailySpent": to_money(daily + amt),
                    "monthlySpent": to_money(monthly + amt),
                    "spentDay": _day(now),
                    "spentMonth": _month(now),
                    "lastUsedAt": iso(now),
                },
                expected={
                    "status": "active",
                    "dailySpent": raw.get("dailySpent") or 0,
                    "monthlySpent": raw.get("monthlySpent") or 0,
                },
            )
        except DdbConflict:
            continue
        return {"card": updated, "authorization": decision}
    raise InvalidState("Card is busy, retry the operation", code="card_contention")


def reverse_spend(card_id: str, amount: float) -> dict[str, Any]:
    """Undo a recorded spend (refund/void); counters never go below 0."""
    amt = to_money(float(amount))
    if amt <= 0:
        raise ValidationFailed("amount must be greater than 0")
    for _ in range(_MAX_SPEND_RETRIES):
        raw = _get_raw(card_id)
        daily, monthly = _effective_spent(raw, _now())
        try:
            updated = cards_repo.update_card(
                card_id,
                {
                    "dailySpent": max(0.0, to_money(daily - amt)),
                    "monthlySpent": max(0.0, to_money(monthly - amt)),
                },
                expected={
                    "dailySpent": raw.get("dailySpent") or 0,
                    "monthlySpent": raw.get("monthlySpent") or 0,
                },
            )
        except DdbConflict:
            continue
        return updated or get_card(card_id)
    raise InvalidState("Card is busy, retry the operation", code="card_contention")


def _reset(field: str, marker: str, value: str) -> int:
    count = 0
    for raw in cards_repo.list_all_cards_raw():
        spent = raw.get(field) or 0
        if not spent and raw.get(marker) == value:
            continue
        try:
            cards_repo.update_card(str(raw["cardId"]), {field: 0, marker: value}, expected={field: spent})
        except DdbConflict:
            # A concurrent spend already rolled the counter for the new period.
            continue
        count += 1
    return count


def reset_daily_spent(*, now: datetime | None = None) -> int:
    return _reset("dailySpent", "spentDay", _day(now or _now()))


def reset_monthly_spent(*, now: datetime | None = None) -> int:
    return _reset("monthlySpent", "spentMonth", _month(now or _now()))


def card_stats(*, now: datetime | None = None) -> dict[str, Any]:
    at = now or _now()
    by_status = {s: 0 for s in cards_repo.CARD_STATUSES}
    by_type = {t: 0 for t in cards_repo.CARD_TYPES}
    spent_this_month = 0.0
    total = 0
    for raw in cards_repo.list_all_cards_raw():
        total += 1
        by_status[str(raw.get("status"))] = by_status.get(str(raw.get("status")), 0) + 1
        by_type[str(raw.get("cardType"))] = by_type.get(str(raw.get("cardType")), 0) + 1
        _, monthly = _effective_spent(raw, at)
        spent_this_month += monthly
    return {
        "total": total,
        "byStatus": by_status,
        "byType": by_type,
        "totalSpentThisMonth": to_money(spent_this_month),
    }


def list_all_cards(
    *, status: str | None = None, card_type: str | None = None, search: str | None = None
) -> list[dict[str, Any]]:
    """Admin listing; `search` matches the masked number or cardholder name."""
    needle = str(search or "").strip().lower()
    out: list[dict[str, Any]] = []
    for raw in cards_repo.list_all_cards_raw():
        if status and status != "all" and raw.get("status") != status:
            continue
        if card_type and card_type != "all" and raw.get("cardType") != card_type:
            continue
        card = cards_repo.normalize_card(raw) or {}
        if needle and not any(
            needle in str(v).lower() for v in (card.get("maskedNumber"), card.get("cardholderName")) if v
        ):
            continue
        out.append(card)
    return out
