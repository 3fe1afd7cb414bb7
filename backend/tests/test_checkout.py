from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import pytest

from peeap.errors import Forbidden, InvalidState, NotFound, UpstreamError, ValidationFailed
from peeap.infrastructure.monime.client import MonimeError
from peeap.infrastructure.monime.signature import sign_header
from peeap.modules.businesses import business_service
from peeap.modules.checkout import checkout_service
from peeap.modules.wallets import wallet_service
from peeap.settings import settings


class FakeMonime:
    def __init__(self, fail: MonimeError | None = None):
        self.fail = fail
        self.calls: list[dict] = []

    def create_hosted_checkout(self, **kw):
        self.calls.append(kw)
        if self.fail:
            raise self.fail
        return {"paymentUrl": f"https://monime.test/{kw['session_id']}", "monimeSessionId": "mcs_1"}


@pytest.fixture()
def business(fake_table):
    return business_service.create_business("merchant_1", {"name": "Acme Store"})


def _merchant_balance() -> float:
    return wallet_service.get_or_create_wallet("merchant_1", currency="SLE", wallet_type="merchant")["balance"]


@pytest.mark.parametrize(
    "cur,amount,expected",
    [("nle", 10, ("SLE", 10)), ("Leone", 5, ("SLE", 5)), ("SLL", 25000, ("SLE", 25.0)), ("usd", 3, ("USD", 3))],
)
def test_normalize_currency(cur, amount, expected):
    assert checkout_service.normalize_currency(cur, amount) == expected


def test_test_mode_session_skips_monime_and_is_idempotent(business):
    monime = FakeMonime()
    first = checkout_service.create_checkout_session(
        business, amount=25, description="Order 7", idempotency_key="order-7", monime=monime
    )
    again = checkout_service.create_checkout_session(
        business, amount=99, description="changed", idempotency_key="order-7", monime=monime
    )

    assert first["sessionId"] == again["sessionId"]
    assert again["amount"] == 25
    assert first["status"] == "OPEN"
    assert first["isTestMode"] is True
    assert first["paymentUrl"].endswith(f"/checkout/pay/{first['sessionId']}")
    assert monime.calls == []
    listed = checkout_service.list_business_sessions(business["businessId"])
    assert [s["sessionId"] for s in listed["data"]] == [first["sessionId"]]


def test_live_session_gets_monime_redirect(business):
    business_service.approve_business(business["businessId"], "admin_1")
    biz = business_service.get_business(business["businessId"])
    monime = FakeMonime()

    s = checkout_service.create_checkout_session(biz, amount="12.50", currency="SLE", is_test_mode=False, monime=monime)

    assert s["isTestMode"] is False
    assert s["monimeSessionId"] == "mcs_1"
    assert s["paymentUrl"] == f"https://monime.test/{s['sessionId']}"
    assert monime.calls[0]["amount"] == 12.5


def test_monime_failure_cancels_live_session(business):
    monime = FakeMonime(fail=MonimeError("rail down", "UNAVAILABLE", 503))
    with pytest.raises(UpstreamError) as exc:
        checkout_service.create_checkout_session(
            business, amount=10, is_test_mode=False, idempotency_key="k1", monime=monime
        )
    assert exc.value.status == 503

    sid = checkout_service._session_id(business["businessId"], "k1")
    s = checkout_service.get_checkout_session(sid)
    assert s["status"] == "CANCELLED"
    assert s["failureReason"] == "rail down"


def test_suspended_or_exhausted_business_cannot_open_live_sessions(business):
    with pytest.raises(ValidationFailed):
        checkout_service.create_checkout_session(business, amount=0)

    exhausted = {**business, "trialLiveTransactionsUsed": 2}
    with pytest.raises(Forbidden) as exc:
        checkout_service.create_checkout_session(exhausted, amount=5, is_test_mode=False, monime=FakeMonime())
    assert exc.value.code == "live_not_allowed"

    with pytest.raises(Forbidden):
        checkout_service.create_checkout_session({**business, "status": "SUSPENDED"}, amount=5)


def test_complete_credits_merchant_once_and_counts_trial(business):
    s = checkout_service.create_checkout_session(business, amount=40, is_test_mode=False, monime=FakeMonime())

    done = checkout_service.complete_checkout_session(s["sessionId"], payment_method="card")
    repeat = checkout_service.complete_checkout_session(s["sessionId"])

    assert done["status"] == "COMPLETE"
    assert done["transactionId"] == f"txn_{s['sessionId']}"
    assert done["metadata"]["transactionRef"].startswith("QR-")
    assert repeat["transactionId"] == done["transactionId"]
    assert _merchant_balance() == 40
    assert business_service.get_business(business["businessId"])["trialLiveTransactionsUsed"] == 1


def test_sandbox_completion_moves_no_money(business):
    s = checkout_service.create_checkout_session(business, amount=5000)

    done = checkout_service.complete_checkout_session(s["sessionId"], payment_method="test")
    again = checkout_service.complete_checkout_session(s["sessionId"])

    assert done["status"] == again["status"] == "COMPLETE"
    assert done["settlement"] == "sandbox"
    assert done.get("transactionId") is None
    assert _merchant_balance() == 0
    assert business_service.get_business(business["businessId"])["trialLiveTransactionsUsed"] == 0


def test_offline_payment_closes_session_without_credit(business):
    s = checkout_service.create_checkout_session(business, amount=30, is_test_mode=False, monime=FakeMonime())

    done = checkout_service.record_offline_payment(s["sessionId"])

    assert done["status"] == "COMPLETE"
    assert done["settlement"] == "offline"
    assert done["paymentMethod"] == "cash"
    assert _merchant_balance() == 0
    # A late Monime completion must not credit a session already closed offline.
    assert checkout_service.complete_checkout_session(s["sessionId"]).get("transactionId") is None
    assert _merchant_balance() == 0


def test_expired_session_cannot_complete(business):
    start = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
    s = checkout_service.create_checkout_session(business, amount=5, now=start)

    with pytest.raises(InvalidState) as exc:
        checkout_service.complete_checkout_session(s["sessionId"], now=start + timedelta(minutes=31))
    assert exc.value.code == "session_expired"
    assert checkout_service.get_checkout_session(s["sessionId"])["status"] == "EXPIRED"


def test_cancel_is_terminal(business):
    s = checkout_service.create_checkout_session(business, amount=5)
    assert checkout_service.cancel_checkout_session(s["sessionId"])["status"] == "CANCELLED"
    assert checkout_service.cancel_checkout_session(s["sessionId"])["status"] == "CANCELLED"
    with pytest.raises(InvalidState):
        checkout_service.expire_checkout_session(s["sessionId"])
    with pytest.raises(InvalidState):
        checkout_service.complete_checkout_session(s["sessionId"])


def test_public_view_hides_internal_fields(business):
    s = checkout_service.create_checkout_session(business, amount=5, customer_email="a@b.c")
    view = checkout_service.public_view(s)
    assert view["merchantName"] == "Acme Store"
    assert "metadata" not in view
    assert "idempotencyKey" not in view


def test_public_key_sessions(business):
    test_s = checkout_service.create_checkout_session_with_public_key(
        business["testPublicKey"], {"amount": 7, "description": "tip"}
    )
    assert test_s["isTestMode"] is True
    assert test_s["businessId"] == business["businessId"]

    with pytest.raises(ValidationFailed):
        checkout_service.create_checkout_session_with_public_key("sk_live_nope", {"amount": 1})
    with pytest.raises(NotFound):
        checkout_service.create_checkout_session_with_public_key("pk_test_unknown", {"amount": 1})


def test_public_live_key_blocked_after_trial(business):
    business_service.increment_trial_transaction_count(business["businessId"])
    business_service.increment_trial_transaction_count(business["businessId"])

    with pytest.raises(Forbidden) as exc:
        checkout_service.create_checkout_session_with_public_key(
            business["livePublicKey"], {"amount": 1}, monime=FakeMonime()
        )
    assert exc.value.code == "trial_exhausted"


def test_webhook_completes_live_session_with_platform_secret(business, monkeypatch):
    monkeypatch.setattr(settings, "monime_webhook_secret", "whsec_platform")
    s = checkout_service.create_checkout_session(business, amount=15, is_test_mode=False, monime=FakeMonime())
    raw = json.dumps(
        {
            "event": {"name": "checkout_session.completed"},
            "data": {"id": "mcs_9", "reference": s["sessionId"], "metadata": {"peeapSessionId": s["sessionId"]}},
        }
    ).encode()

    with pytest.raises(Forbidden):
        checkout_service.handle_monime_webhook(raw, sign_header(raw, "wrong"))
    # The merchant knows its own webhook secret, so it cannot vouch for Monime.
    with pytest.raises(Forbidden):
        checkout_service.handle_monime_webhook(raw, sign_header(raw, business["webhookSecret"]))
    assert _merchant_balance() == 0

    out = checkout_service.handle_monime_webhook(raw, sign_header(raw, "whsec_platform"))

    assert out == {"handled": True, "sessionId": s["sessionId"]}
    done = checkout_service.get_checkout_session(s["sessionId"])
    assert done["status"] == "COMPLETE"
    assert done["monimeReference"] == "mcs_9"
    assert _merchant_balance() == 15


def test_webhook_rejected_when_platform_secret_missing(business, monkeypatch):
    monkeypatch.setattr(settings, "monime_webhook_secret", None)
    s = checkout_service.create_checkout_session(business, amount=15, is_test_mode=False, monime=FakeMonime())
    raw = json.dumps(
        {"event": {"name": "checkout_session.completed"}, "data": {"metadata": {"peeapSessionId": s["sessionId"]}}}
    ).encode()

    with pytest.raises(Forbidden):
        checkout_service.handle_monime_webhook(raw, sign_header(raw, business["webhookSecret"]))
    assert checkout_service.get_checkout_session(s["sessionId"])["status"] == "OPEN"


def test_webhook_ignores_unknown_events(fake_table, monkeypatch):
    monkeypatch.setattr(settings, "monime_webhook_secret", "whsec_cfg")
    raw = json.dumps({"type": "payment.created", "data": {"id": "x"}}).encode()

    out = checkout_service.handle_monime_webhook(raw, sign_header(raw, "whsec_cfg"))

    assert out == {"handled": False, "event": "payment.created"}
    with pytest.raises(ValidationFailed):
        checkout_service.handle_monime_webhook(b"not json", sign_header(b"not json", "whsec_cfg"))
