from __future__ import annotations

import math
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from ...db.dynamodb.errors import DdbConflict
from ...errors import InvalidState, ValidationFailed
from ...money import to_money
from ...observability.logging import get_logger
from ...repositories import multivendor_repo
from ...repositories.common import iso, parse_iso
from ..wallets import wallet_service

log = get_logger("multivendor_service")

TRIAL_DAYS = 7


@dataclass(frozen=True, slots=True)
class Plan:
    id: str
    name: str
    price: float
    days: int


PLANS: dict[str, Plan] = {
    "monthly": Plan(id="monthly", name="Monthly", price=50.0, days=30),
    "yearly": Plan(id="yearly", name="Yearly", price=500.0, days=365),
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _plan(plan_id: str) -> Plan:
    plan = PLANS.get(str(plan_id or ""))
    if not plan:
        raise ValidationFailed(f"unknown plan: {plan_id}")
    return plan


def _period_end(settings: dict[str, Any]) -> datetime | None:
    status = settings.get("subscriptionStatus")
    if status == "trial":
        return parse_iso(settings.get("trialEndsAt"))
    if status == "active":
        return parse_iso(settings.get("subscriptionEndsAt"))
    return None


def _effective(settings: dict[str, Any], now: datetime) -> dict[str, Any]:
    """A lapsed trial or subscription reads as expired and disabled."""
    end = _period_end(settings)
    if end is not None and end <= now:
        return {**settings, "subscriptionStatus": "expired", "isEnabled": False}
    return settings


def get_settings(merchant_id: str, *, now: datetime | None = None) -> dict[str, Any] | None:
    stored = multivendor_repo.get_settings(merchant_id)
    if not stored:
        return None
    effective = _effective(stored, now or _now())
    if effective is not stored and stored.get("subscriptionStatus") != "expired":
        # Persist the lapse so listings stop showing the merchant.
        try:
            multivendor_repo.update_settings(
                merchant_id,
                {"subscriptionStatus": "expired", "isEnabled": False},
                expected={"subscriptionStatus": stored.get("subscriptionStatus")},
            )
        except DdbConflict:
            log.info("multivendor_settings_changed_concurrently", merchant_id=merchant_id)
        else:
            log.info("multivendor_period_expired", merchant_id=merchant_id)
    return effective


def is_active(settings: dict[str, Any] | None, *, now: datetime | None = None) -> bool:
    if not settings:
        return False
    eff = _effective(settings, now or _now())
    return eff.get("subscriptionStatus") in ("trial", "active")


def start_trial(merchant_id: str, *, now: datetime | None = None) -> dict[str, Any]:
    now = now or _now()
    fields = {
        "isEnabled": True,
        "subscriptionStatus": "trial",
        "hasUsedTrial": True,
        "trialStartedAt": iso(now),
        "trialEndsAt": iso(now + timedelta(days=TRIAL_DAYS)),
    }
    existing = multivendor_repo.get_settings(merchant_id)
    if existing is None:
        try:
            created = multivendor_repo.create_settings(merchant_id, fields)
        except DdbConflict:
            existing = multivendor_repo.get_settings(merchant_id)
        else:
            log.info("multivendor_trial_started", merchant_id=merchant_id)
            return created
    if existing and existing.get("hasUsedTrial"):
        raise InvalidState("Free trial has already been used", code="trial_already_used")
    try:
        updated = multivendor_repo.update_settings(merchant_id, fields, expected={"hasUsedTrial": False})
    except DdbConflict as e:
        raise InvalidState("Free trial has already been used", code="trial_already_used") from e
    log.info("multivendor_trial_started", merchant_id=merchant_id)
    return updated or {}


def toggle(merchant_id: str, enabled: bool, *, now: datetime | None = None) -> dict[str, Any]:
    current = get_settings(merchant_id, now=now)
    if current is None:
        raise InvalidState("Multivendor has not been set up", code="multivendor_not_setup")
    if enabled and current.get("subscriptionStatus") not in ("trial", "active"):
        raise InvalidState(
            "An active trial or subscription is required to enable multivendor",
            code="subscription_required",
        )
    return multivendor_repo.update_settings(merchant_id, {"isEnabled": bool(enabled)}) or current


def activate_subscription(
    merchant_id: str,
    plan_id: str,
    payment_reference: str,
    amount: Any,
    *,
    now: datetime | None = None,
) -> dict[str, Any]:
    """
    Start or extend a paid subscription. Time left on an active
    subscription is carried over onto the new period.
    """
    plan = _plan(plan_id)
    try:
        paid = float(amount)
    except (TypeError, ValueError) as e:
        raise ValidationFailed("amount must be a number") from e
    if paid < plan.price:
        raise ValidationFailed(f"Amount {paid:.2f} is less than the {plan.name} plan price {plan.price:.2f}")

    now = now or _now()
    current = multivendor_repo.get_settings(merchant_id)
    start = now
    if current and current.get("subscriptionStatus") == "active":
        ends = parse_iso(current.get("subscriptionEndsAt"))
        if ends and ends > now:
            start = ends
    fields = {
        "isEnabled": True,
        "subscriptionStatus": "active",
        "subscriptionPlan": plan.id,
        "subscriptionStartedAt": iso(now),
        "subscriptionEndsAt": iso(start + timedelta(days=plan.days)),
        "lastPaymentReference": payment_reference,
        "lastPaymentAmount": to_money(paid),
        "lastPaymentAt": iso(now),
    }
    if current is None:
        result = multivendor_repo.create_settings(merchant_id, fields)
    else:
        result = multivendor_repo.update_settings(merchant_id, fields) or {}
    log.info(
        "multivendor_subscription_activated",
        merchant_id=merchant_id,
        plan=plan.id,
        reference=payment_reference,
    )
    return result


def subscribe_with_wallet(merchant_id: str, plan_id: str, wallet_id: str) -> dict[str, Any]:
    """Pay the plan price from the merchant's wallet, then activate."""
    plan = _plan(plan_id)
    wallet = wallet_service.get_wallet(wallet_id)
    if wallet.get("userId") != merchant_id:
        raise InvalidState("Wallet does not belong to this merchant", code="wallet_not_owned")
    reference = f"SUB-{int(time.time() * 1000)}"
    wallet_service.debit(
        wallet_id,
        plan.price,
        type="payment",
        description=f"Multivendor {plan.name} Subscription",
        reference=reference,
        metadata={"type": "multivendor_subscription", "plan": plan.id},
    )
    return activate_subscription(merchant_id, plan.id, reference, plan.price)


def cancel_subscription(merchant_id: str) -> dict[str, Any]:
    current = multivendor_repo.get_settings(merchant_id)
    if current is None:
        raise InvalidState("Multivendor has not been set up", code="multivendor_not_setup")
    updated = multivendor_repo.update_settings(
        merchant_id, {"subscriptionStatus": "cancelled", "isEnabled": False}
    )
    log.info("multivendor_subscription_cancelled", merchant_id=merchant_id)
    return updated or current


def get_remaining_trial_days(settings: dict[str, Any] | None, *, now: datetime | None = None) -> int:
    if not settings or settings.get("subscriptionStatus") != "trial":
        return 0
    ends = parse_iso(settings.get("trialEndsAt"))
    if ends is None:
        return 0
    left = (ends - (now or _now())).total_seconds() / 86400
    return max(0, math.ceil(left))


def is_listed(merchant_id: str, *, now: datetime | None = None) -> bool:
    s = get_settings(merchant_id, now=now)
    return bool(s and s.get("isEnabled") and is_active(s, now=now))
