from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from peeap.errors import InvalidState, ValidationFailed
from peeap.modules.multivendor import multivendor_service
from peeap.modules.wallets import wallet_service

NOW = datetime(2026, 5, 1, 9, 0, tzinfo=timezone.utc)


def test_trial_once_per_merchant(fake_table):
    s = multivendor_service.start_trial("m1", now=NOW)
    assert s["subscriptionStatus"] == "trial"
    assert s["isEnabled"] is True
    assert s["hasUsedTrial"] is True
    assert multivendor_service.get_remaining_trial_days(s, now=NOW) == 7
    assert multivendor_service.get_remaining_trial_days(s, now=NOW + timedelta(days=6, hours=1)) == 1

    with pytest.raises(InvalidState) as exc:
        multivendor_service.start_trial("m1", now=NOW)
    assert exc.value.code == "trial_already_used"


def test_lapsed_trial_reads_as_expired_and_is_persisted(fake_table):
    multivendor_service.start_trial("m1", now=NOW)
    later = NOW + timedelta(days=8)

    assert multivendor_service.is_listed("m1", now=NOW) is True
    s = multivendor_service.get_settings("m1", now=later)
    assert s["subscriptionStatus"] == "expired"
    assert s["isEnabled"] is False
    # Stored state caught up, even for readers without a clock override.
    assert multivendor_service.get_settings("m1")["subscriptionStatus"] == "expired"
    assert multivendor_service.is_listed("m1", now=later) is False

    with pytest.raises(InvalidState) as exc:
        multivendor_service.toggle("m1", True, now=later)
    assert exc.value.code == "subscription_required"


def test_activate_subscription_validates_amount(fake_table):
    with pytest.raises(ValidationFailed):
        multivendor_service.activate_subscription("m1", "weekly", "ref", 50)
    with pytest.raises(ValidationFailed):
        multivendor_service.activate_subscription("m1", "monthly", "ref", 49.99)
    with pytest.raises(ValidationFailed):
        multivendor_service.activate_subscription("m1", "monthly", "ref", "fifty")


def test_renewal_carries_remaining_time(fake_table):
    first = multivendor_service.activate_subscription("m1", "monthly", "PAY-1", 50, now=NOW)
    assert first["subscriptionEndsAt"].startswith("2026-05-31")

    renewed = multivendor_service.activate_subscription(
        "m1", "yearly", "PAY-2", 500, now=NOW + timedelta(days=10)
    )
    ends = datetime.fromisoformat(renewed["subscriptionEndsAt"].replace("Z", "+00:00"))
    assert ends == NOW + timedelta(days=30 + 365)
    assert renewed["subscriptionPlan"] == "yearly"
    assert renewed["lastPaymentReference"] == "PAY-2"


def test_subscribe_with_wallet_debits_plan_price(fake_table):
    w = wallet_service.get_or_create_wallet("m1", currency="SLE", wallet_type="merchant")
    wallet_service.credit(w["walletId"], 60)

    s = multivendor_service.subscribe_with_wallet("m1", "monthly", w["walletId"])
    assert s["subscriptionStatus"] == "active"
    assert s["lastPaymentReference"].startswith("SUB-")
    assert wallet_service.get_wallet(w["walletId"])["balance"] == 10

    with pytest.raises(InvalidState):
        multivendor_service.subscribe_with_wallet("m1", "yearly", w["walletId"])
    with pytest.raises(InvalidState):
        multivendor_service.subscribe_with_wallet("m2", "monthly", w["walletId"])


def test_toggle_and_cancel(fake_table):
    with pytest.raises(InvalidState):
        multivendor_service.toggle("m1", True)
    multivendor_service.activate_subscription("m1", "monthly", "PAY-1", 50)

    assert multivendor_service.toggle("m1", False)["isEnabled"] is False
    assert multivendor_service.toggle("m1", True)["isEnabled"] is True

    cancelled = multivendor_service.cancel_subscription("m1")
    assert cancelled["subscriptionStatus"] == "cancelled"
    assert multivendor_service.is_listed("m1") is False
    with pytest.raises(InvalidState):
        multivendor_service.cancel_subscription("nobody")
