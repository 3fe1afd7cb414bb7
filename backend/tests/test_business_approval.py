from __future__ import annotations

import pytest

from peeap.errors import InvalidState, NotFound, ValidationFailed
from peeap.modules.businesses import business_service
from peeap.repositories import businesses_repo, users_repo


def _create(name: str = "Acme Stores", merchant: str = "m1", **data) -> dict:
    return business_service.create_business(merchant, {"name": name, **data})


def test_create_business_defaults(fake_table):
    b = _create(email="shop@acme.sl")

    assert b["slug"] == "acme-stores"
    assert b["approvalStatus"] == "PENDING"
    assert b["isLiveMode"] is False
    assert b["trialLiveTransactionLimit"] == 2
    assert b["trialLiveTransactionsUsed"] == 0
    assert b["livePublicKey"].startswith("pk_live_")
    assert b["testSecretKey"].startswith("sk_test_")
    assert b["webhookSecret"].startswith("whsec_")
    assert b["country"] == "SL"
    assert [x["businessId"] for x in business_service.get_my_businesses("m1")] == [b["businessId"]]


def test_slug_collisions_get_suffix(fake_table):
    a = _create("Acme")
    b = _create("ACME!!")
    c = _create("acme", merchant="m2")
    assert [a["slug"], b["slug"], c["slug"]] == ["acme", "acme-2", "acme-3"]


def test_name_required(fake_table):
    with pytest.raises(ValidationFailed):
        _create("   ")


def test_update_ignores_unknown_fields_and_validates_schedule(fake_table):
    b = _create()
    updated = business_service.update_business(
        b["businessId"], {"description": "Groceries", "approvalStatus": "APPROVED", "settlementSchedule": "WEEKLY"}
    )
    assert updated["description"] == "Groceries"
    assert updated["approvalStatus"] == "PENDING"
    assert updated["settlementSchedule"] == "WEEKLY"

    with pytest.raises(ValidationFailed):
        business_service.update_business(b["businessId"], {"settlementSchedule": "HOURLY"})
    with pytest.raises(ValidationFailed):
        business_service.update_business(b["businessId"], {"name": ""})


def test_trial_allowance_gates_live_mode(fake_table):
    b = _create()
    bid = b["businessId"]

    assert business_service.can_process_live_transaction(b) == {
        "allowed": True,
        "remaining": 2,
        "reason": "2 trial live transaction(s) remaining before approval required",
    }
    assert business_service.toggle_live_mode(bid, True)["isLiveMode"] is True

    business_service.increment_trial_transaction_count(bid)
    business_service.increment_trial_transaction_count(bid)
    b = business_service.get_business(bid)
    assert b["trialLiveTransactionsUsed"] == 2

    check = business_service.can_process_live_transaction(b)
    assert check["allowed"] is False
    assert check["remaining"] == 0
    assert "all 2 trial live transactions" in check["reason"]
    assert business_service.get_transaction_limits_info(b)["liveTransactions"] == "0 of 2 trial remaining"

    with pytest.raises(InvalidState) as exc:
        business_service.toggle_live_mode(bid, True)
    assert exc.value.code == "trial_exhausted"
    # Switching back to test mode is always allowed.
    assert business_service.toggle_live_mode(bid, False)["isLiveMode"] is False


def test_trial_counter_only_moves_while_pending(fake_table):
    bid = _create()["businessId"]
    business_service.approve_business(bid, "admin_1")
    assert business_service.increment_trial_transaction_count(bid) is None
    assert business_service.get_business(bid)["trialLiveTransactionsUsed"] == 0


def test_admin_decisions(fake_table):
    bid = _create()["businessId"]

    approved = business_service.approve_business(bid, "admin_1")
    assert approved["approvalStatus"] == "APPROVED"
    assert approved["approvedBy"] == "admin_1"
    assert approved["approvalNotes"] == "Approved by admin"
    assert business_service.get_transaction_limits_info(approved)["status"] == "unlimited"

    suspended = business_service.suspend_business(bid, "admin_1")
    assert suspended["status"] == "SUSPENDED"
    assert suspended["isLiveMode"] is False
    assert business_service.can_process_live_transaction(suspended)["allowed"] is False
    with pytest.raises(InvalidState):
        business_service.toggle_live_mode(bid, True)

    back = business_service.reactivate_business(bid, "admin_2")
    assert back["status"] == "ACTIVE"
    assert back["approvalStatus"] == "APPROVED"

    with pytest.raises(ValidationFailed):
        business_service.reject_business(bid, "admin_1", " ")
    rejected = business_service.reject_business(bid, "admin_1", "Incomplete KYC")
    assert rejected["approvalNotes"] == "Incomplete KYC"
    assert business_service.get_transaction_limits_info(rejected)["liveTransactions"] == "Blocked"


def test_admin_listing_filters_and_counts(fake_table):
    users_repo.ensure_user(user_id="m1", email="owner@acme.sl", full_name="Ama Owner")
    a = _create("Acme", merchant="m1")
    b = _create("Beta Ltd", merchant="m2")
    business_service.approve_business(b["businessId"], "admin_1")

    pending = business_service.get_all_businesses(approval_status="PENDING")
    assert [x["businessId"] for x in pending] == [a["businessId"]]
    assert pending[0]["merchant"]["email"] == "owner@acme.sl"

    by_owner = business_service.get_all_businesses(search="ama owner")
    assert [x["businessId"] for x in by_owner] == [a["businessId"]]
    assert len(business_service.get_all_businesses(approval_status="all")) == 2

    counts = business_service.business_counts()
    assert counts["total"] == 2
    assert counts["PENDING"] == 1
    assert counts["APPROVED"] == 1


def test_key_rotation_and_lookup(fake_table):
    b = _create()
    rotated = business_service.regenerate_api_keys(b["businessId"], "test")
    assert rotated["testPublicKey"] != b["testPublicKey"]
    assert rotated["livePublicKey"] == b["livePublicKey"]
    with pytest.raises(ValidationFailed):
        business_service.regenerate_api_keys(b["businessId"], "prod")

    assert businesses_repo.find_business_by_public_key(rotated["testPublicKey"])["businessId"] == b["businessId"]
    assert businesses_repo.find_business_by_public_key(b["testPublicKey"]) is None

    secret = business_service.regenerate_webhook_secret(b["businessId"])["webhookSecret"]
    assert secret != b["webhookSecret"]


def test_delete_releases_slug(fake_table):
    b = _create("Acme")
    business_service.delete_business(b["businessId"])
    with pytest.raises(NotFound):
        business_service.get_business(b["businessId"])
    assert _create("Acme")["slug"] == "acme"
