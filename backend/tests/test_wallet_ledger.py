from __future__ import annotations

import pytest

from peeap.errors import InvalidState, NotFound, ValidationFailed
from peeap.money import to_money
from peeap.modules.wallets import transaction_service, wallet_service


def _funded(user_id: str = "u1", amount: float = 100.0, wallet_type: str = "personal") -> dict:
    w = wallet_service.get_or_create_wallet(user_id, currency="SLE", wallet_type=wallet_type)
    if amount:
        wallet_service.credit(w["walletId"], amount, type="deposit")
    return wallet_service.get_wallet(w["walletId"])


def test_wallet_creation_is_idempotent_per_owner_type_currency(fake_table):
    a = wallet_service.get_or_create_wallet("u1", currency="sle")
    b = wallet_service.get_or_create_wallet("u1", currency="SLE")
    c = wallet_service.get_or_create_wallet("u1", currency="SLE", wallet_type="merchant")

    assert a["walletId"] == b["walletId"]
    assert c["walletId"] != a["walletId"]
    assert a["currency"] == "SLE"
    assert a["balance"] == 0
    assert a["status"] == "ACTIVE"
    assert [w["walletId"] for w in wallet_service.list_user_wallets("u1")]


def test_credit_and_debit_write_ledger_rows(fake_table):
    w = _funded(amount=50)
    txn = wallet_service.debit(w["walletId"], 20.255, type="payment", description="coffee")

    assert wallet_service.get_wallet(w["walletId"])["balance"] == pytest.approx(29.74)
    assert txn["type"] == "payment"
    assert txn["status"] == "completed"
    assert txn["amount"] == pytest.approx(20.26)
    page = transaction_service.list_user_transactions("u1")
    assert {t["type"] for t in page["data"]} == {"deposit", "payment"}


@pytest.mark.parametrize(
    "value,expected",
    [(20.255, 20.26), (1.005, 1.01), (2.675, 2.68), (0.1 + 0.2, 0.3), ("7.125", 7.13), (-1.005, -1.01), (3, 3.0)],
)
def test_money_rounds_half_up_to_cents(value, expected):
    assert to_money(value) == expected


@pytest.mark.parametrize("value", ["abc", float("nan"), float("inf")])
def test_money_rejects_non_numbers(value):
    with pytest.raises(ValueError):
        to_money(value)


def test_nan_amount_is_rejected(fake_table):
    w = _funded(amount=10)
    with pytest.raises(ValidationFailed):
        wallet_service.debit(w["walletId"], float("nan"))


def test_debit_rejects_overdraft_and_leaves_balance(fake_table):
    w = _funded(amount=10)
    with pytest.raises(InvalidState) as exc:
        wallet_service.debit(w["walletId"], 10.01)
    assert exc.value.code == "insufficient_balance"
    assert wallet_service.get_wallet(w["walletId"])["balance"] == 10


@pytest.mark.parametrize("bad", [0, -5, "abc", None])
def test_amount_must_be_positive_number(fake_table, bad):
    w = _funded(amount=0)
    with pytest.raises(ValidationFailed):
        wallet_service.credit(w["walletId"], bad)


def test_credit_with_fixed_transaction_id_is_applied_once(fake_table):
    w = _funded(amount=0)
    first = wallet_service.credit(w["walletId"], 25, type="deposit", transaction_id="txn_dep_1")
    again = wallet_service.credit(w["walletId"], 25, type="deposit", transaction_id="txn_dep_1")

    assert first["transactionId"] == again["transactionId"] == "txn_dep_1"
    assert wallet_service.get_wallet(w["walletId"])["balance"] == 25


def test_frozen_wallet_rejects_movements(fake_table):
    w = _funded(amount=30)
    wallet_service.set_wallet_status(w["walletId"], "FROZEN")
    with pytest.raises(InvalidState) as exc:
        wallet_service.debit(w["walletId"], 5)
    assert exc.value.code == "wallet_frozen"

    wallet_service.set_wallet_status(w["walletId"], "ACTIVE")
    wallet_service.debit(w["walletId"], 5)
    assert wallet_service.get_wallet(w["walletId"])["balance"] == 25


def test_invalid_wallet_status_is_rejected(fake_table):
    w = _funded(amount=0)
    with pytest.raises(ValidationFailed):
        wallet_service.set_wallet_status(w["walletId"], "CLOSED")


def test_transfer_moves_funds_with_paired_rows(fake_table):
    src = _funded("alice", 80)
    dst = _funded("bob", 0)

    res = wallet_service.transfer(src["walletId"], dst["walletId"], 30, description="rent")

    assert wallet_service.get_wallet(src["walletId"])["balance"] == 50
    assert wallet_service.get_wallet(dst["walletId"])["balance"] == 30
    assert res["debit"]["type"] == "send"
    assert res["credit"]["type"] == "receive"
    assert res["debit"]["reference"] == res["credit"]["reference"] == res["reference"]
    assert res["credit"]["counterpartyWalletId"] == src["walletId"]


def test_transfer_guards(fake_table):
    src = _funded("alice", 10)
    dst = _funded("bob", 0)
    usd = wallet_service.get_or_create_wallet("bob", currency="USD")

    with pytest.raises(ValidationFailed):
        wallet_service.transfer(src["walletId"], src["walletId"], 1)
    with pytest.raises(ValidationFailed):
        wallet_service.transfer(src["walletId"], usd["walletId"], 1)
    with pytest.raises(InvalidState):
        wallet_service.transfer(src["walletId"], dst["walletId"], 11)
    with pytest.raises(NotFound):
        wallet_service.transfer(src["walletId"], "wal_missing", 1)


def test_transaction_stats_count_transfer_volume_once(fake_table):
    src = _funded("alice", 100)
    dst = _funded("bob", 0)
    wallet_service.transfer(src["walletId"], dst["walletId"], 40)

    stats = transaction_service.transaction_stats()

    assert stats["count"] == 3
    assert stats["byType"] == {"deposit": 1, "send": 1, "receive": 1}
    assert stats["volume"] == {"SLE": 140.0}


def test_platform_transaction_filters(fake_table):
    src = _funded("alice", 100)
    dst = _funded("bob", 0)
    wallet_service.transfer(src["walletId"], dst["walletId"], 5, reference="RENT-42")

    sends = transaction_service.list_platform_transactions(type="send")
    assert [t["type"] for t in sends] == ["send"]
    found = transaction_service.list_platform_transactions(search="rent-42")
    assert len(found) == 2
    assert transaction_service.list_platform_transactions(status="failed") == []
