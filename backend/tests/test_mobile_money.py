from __future__ import annotations

import json

import pytest

from peeap.errors import Forbidden, InvalidState, UpstreamError, ValidationFailed
from peeap.infrastructure.monime.client import MonimeError
from peeap.infrastructure.monime.signature import sign_header
from peeap.modules.checkout import checkout_service
from peeap.modules.mobile_money import mobile_money_service
from peeap.modules.wallets import wallet_service
from peeap.repositories import monime_transactions_repo
from peeap.settings import settings


class FakeMonime:
    def __init__(self, *, payout_error: MonimeError | None = None, remote_status: str = "pending"):
        self.payout_error = payout_error
        self.remote_status = remote_status
        self.payouts: list[dict] = []

    def create_deposit_checkout(self, **kw):
        return {"paymentUrl": f"https://monime.test/{kw['reference']}", "monimeSessionId": "mcs_dep", "expiresAt": "x"}

    def get_checkout_session(self, session_id):
        return {"id": session_id, "status": self.remote_status}

    def send_to_mobile_money(self, **kw):
        self.payouts.append(kw)
        if self.payout_error:
            raise self.payout_error
        return {"payoutId": "pyt_1", "status": "pending", "fees": [], "totalFee": 0.5}

    def get_payout(self, payout_id):
        return {"id": payout_id, "status": self.remote_status}

    def list_mobile_money_providers(self, country="SL"):
        raise MonimeError("down", "UNAVAILABLE", 503)


@pytest.fixture()
def wallet(fake_table):
    w = wallet_service.get_or_create_wallet("u1", currency="SLE")
    wallet_service.credit(w["walletId"], 100, type="deposit")
    return w


def _balance(wallet_id: str) -> float:
    return wallet_service.get_wallet(wallet_id)["balance"]


def test_deposit_is_credited_once(wallet):
    dep = mobile_money_service.start_deposit("u1", wallet["walletId"], 20, monime=FakeMonime())
    assert dep["status"] == "PENDING"
    assert dep["paymentUrl"].endswith(dep["monimeTxnId"])
    assert dep["monimeReference"] == "mcs_dep"
    assert _balance(wallet["walletId"]) == 100

    done = mobile_money_service.complete_deposit(dep["monimeTxnId"])
    again = mobile_money_service.complete_deposit(dep["monimeTxnId"])

    assert done["status"] == "COMPLETED"
    assert again["transactionId"] == done["transactionId"] == f"txn_{dep['monimeTxnId']}"
    assert _balance(wallet["walletId"]) == 120


def test_deposit_requires_owned_wallet(wallet):
    with pytest.raises(Forbidden):
        mobile_money_service.start_deposit("intruder", wallet["walletId"], 20, monime=FakeMonime())
    with pytest.raises(ValidationFailed):
        mobile_money_service.start_deposit("u1", wallet["walletId"], -1, monime=FakeMonime())


def test_verify_deposit_follows_remote_status(wallet):
    dep = mobile_money_service.start_deposit("u1", wallet["walletId"], 10, monime=FakeMonime())

    pending = mobile_money_service.verify_deposit("u1", dep["monimeTxnId"], monime=FakeMonime())
    assert pending["status"] == "PENDING"

    failed = mobile_money_service.verify_deposit("u1", dep["monimeTxnId"], monime=FakeMonime(remote_status="expired"))
    assert failed["status"] == "FAILED"
    assert failed["failureReason"] == "Monime checkout expired"
    with pytest.raises(InvalidState):
        mobile_money_service.complete_deposit(dep["monimeTxnId"])
    assert _balance(wallet["walletId"]) == 100


def test_withdrawal_debits_and_records_payout(wallet):
    monime = FakeMonime()
    payout = mobile_money_service.withdraw_to_mobile_money(
        "u1", wallet["walletId"], 30, phone_number=" +23276000000 ", provider_id="m17", monime=monime
    )

    assert _balance(wallet["walletId"]) == 70
    assert payout["status"] == "processing"
    assert payout["monimePayoutId"] == "pyt_1"
    assert payout["fee"] == 0.5
    assert monime.payouts[0]["phone_number"] == "+23276000000"
    assert monime.payouts[0]["reference"] == payout["payoutId"]
    txn = monime_transactions_repo.get_monime_txn(payout["payoutId"])
    assert txn["type"] == "WITHDRAWAL"
    assert txn["monimeReference"] == "pyt_1"
    assert [p["payoutId"] for p in mobile_money_service.list_user_payouts("u1")] == [payout["payoutId"]]


def test_rejected_withdrawal_is_refunded(wallet):
    monime = FakeMonime(payout_error=MonimeError("Invalid number", "INVALID_DESTINATION", 400))

    with pytest.raises(UpstreamError) as exc:
        mobile_money_service.withdraw_to_mobile_money(
            "u1", wallet["walletId"], 30, phone_number="123", provider_id="m17", monime=monime
        )

    assert exc.value.code == "monime_payout_failed"
    assert _balance(wallet["walletId"]) == 100


def test_timed_out_withdrawal_stays_processing_until_resolved(wallet):
    timeout = FakeMonime(payout_error=MonimeError("Monime request failed: timed out", "NETWORK_ERROR", 502))

    payout = mobile_money_service.withdraw_to_mobile_money(
        "u1", wallet["walletId"], 30, phone_number="1", provider_id="m17", monime=timeout
    )

    assert payout["status"] == "processing"
    assert payout.get("monimePayoutId") is None
    assert payout["lastError"].endswith("timed out")
    # Monime may have paid out already, so the debit is not reversed.
    assert _balance(wallet["walletId"]) == 70

    retry = FakeMonime()
    resumed = mobile_money_service.refresh_payout("u1", payout["payoutId"], monime=retry)
    assert resumed["status"] == "processing"
    assert resumed["monimePayoutId"] == "pyt_1"
    assert retry.payouts[0]["reference"] == timeout.payouts[0]["reference"] == payout["payoutId"]

    done = mobile_money_service.refresh_payout("u1", payout["payoutId"], monime=FakeMonime(remote_status="completed"))
    assert done["status"] == "completed"
    assert _balance(wallet["walletId"]) == 70


def test_upstream_5xx_is_not_treated_as_rejection(wallet):
    monime = FakeMonime(payout_error=MonimeError("Bad gateway", "UNKNOWN_ERROR", 503))

    payout = mobile_money_service.withdraw_to_mobile_money(
        "u1", wallet["walletId"], 10, phone_number="1", provider_id="m17", monime=monime
    )

    assert payout["status"] == "processing"
    assert _balance(wallet["walletId"]) == 90


def test_early_payout_webhook_is_not_overwritten(wallet):
    class WebhookFirst(FakeMonime):
        def send_to_mobile_money(self, **kw):
            # Monime's completion webhook lands before the API call returns.
            mobile_money_service.settle_payout(kw["reference"], succeeded=True)
            return super().send_to_mobile_money(**kw)

    payout = mobile_money_service.withdraw_to_mobile_money(
        "u1", wallet["walletId"], 25, phone_number="1", provider_id="m17", monime=WebhookFirst()
    )

    assert payout["status"] == "completed"
    assert payout["monimePayoutId"] == "pyt_1"
    assert _balance(wallet["walletId"]) == 75


def test_withdrawal_validation(wallet):
    with pytest.raises(ValidationFailed):
        mobile_money_service.withdraw_to_mobile_money(
            "u1", wallet["walletId"], 5, phone_number="", provider_id="m17", monime=FakeMonime()
        )
    with pytest.raises(InvalidState):
        mobile_money_service.withdraw_to_mobile_money(
            "u1", wallet["walletId"], 500, phone_number="1", provider_id="m17", monime=FakeMonime()
        )


def test_failed_payout_settlement_refunds_once(wallet):
    payout = mobile_money_service.withdraw_to_mobile_money(
        "u1", wallet["walletId"], 40, phone_number="1", provider_id="m17", monime=FakeMonime()
    )

    failed = mobile_money_service.settle_payout(payout["payoutId"], succeeded=False, reason="rejected")
    again = mobile_money_service.settle_payout(payout["payoutId"], succeeded=False)

    assert failed["status"] == again["status"] == "failed"
    assert failed["failureReason"] == "rejected"
    assert _balance(wallet["walletId"]) == 100
    assert monime_transactions_repo.get_monime_txn(payout["payoutId"])["status"] == "FAILED"


def test_refresh_payout_completes_from_remote(wallet):
    payout = mobile_money_service.withdraw_to_mobile_money(
        "u1", wallet["walletId"], 10, phone_number="1", provider_id="m17", monime=FakeMonime()
    )
    with pytest.raises(Forbidden):
        mobile_money_service.refresh_payout("u2", payout["payoutId"], monime=FakeMonime())

    done = mobile_money_service.refresh_payout("u1", payout["payoutId"], monime=FakeMonime(remote_status="completed"))

    assert done["status"] == "completed"
    assert _balance(wallet["walletId"]) == 90


def test_monime_webhooks_settle_deposits_and_payouts(wallet, monkeypatch):
    monkeypatch.setattr(settings, "monime_webhook_secret", "whsec_cfg")
    dep = mobile_money_service.start_deposit("u1", wallet["walletId"], 5, monime=FakeMonime())
    payout = mobile_money_service.withdraw_to_mobile_money(
        "u1", wallet["walletId"], 10, phone_number="1", provider_id="m17", monime=FakeMonime()
    )

    def _send(name: str, data: dict) -> dict:
        raw = json.dumps({"event": {"name": name}, "data": data}).encode()
        return checkout_service.handle_monime_webhook(raw, sign_header(raw, "whsec_cfg"))

    out = _send(
        "checkout_session.completed",
        {"id": "mcs_dep", "reference": dep["monimeTxnId"], "metadata": {"type": "deposit"}},
    )
    assert out == {"handled": True, "monimeTxnId": dep["monimeTxnId"]}

    out = _send(
        "payout.failed",
        {"id": "pyt_1", "metadata": {"peeapPayoutId": payout["payoutId"]}, "failureDetail": {"message": "no"}},
    )
    assert out == {"handled": True, "payoutId": payout["payoutId"]}
    assert _balance(wallet["walletId"]) == 105

    assert _send("payout.completed", {"id": "pyt_x", "metadata": {}}) == {"handled": False, "payoutId": None}


def test_provider_listing_maps_upstream_errors():
    with pytest.raises(UpstreamError) as exc:
        mobile_money_service.list_providers(monime=FakeMonime())
    assert exc.value.status == 503
